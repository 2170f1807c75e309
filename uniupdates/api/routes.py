from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse

from uniupdates.api.error_handling import error_response
from uniupdates.api.schemas import (
    AdminCreateRequest,
    AdminUpdateRequest,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OAuthCallbackRequest,
    SendOTPRequest,
    SignupRequest,
    VerifyOTPRequest,
)
from uniupdates.logging import get_logger
from uniupdates.service.errors import (
    AuthenticationError,
    ForbiddenError,
    ServerError,
    ServiceError,
)
from uniupdates.service.runtime import Runtime, TenantServices
from uniupdates.service.sessions import IssuedSession
from uniupdates.service.tenants import ADMIN_AUTH_PREFIX, SITE_AUTH_PREFIX, TenantPolicy
from uniupdates.storage.common import parse_ip_address
from uniupdates.storage.models import (
    ADMIN_ROLES,
    ADMIN_TENANT,
    OTP_PURPOSE_PASSWORD_RESET,
    OTP_PURPOSE_VERIFICATION,
    PUBLIC_ROLE,
    SITE_TENANT,
    SUPERADMIN,
    Account,
)

logger = get_logger(__name__)

ADMIN_USERS_PREFIX = "/api/admin/data/admin-users"

_OTP_TYPES = {
    "verification": OTP_PURPOSE_VERIFICATION,
    "forgot-password": OTP_PURPOSE_PASSWORD_RESET,
}
# purpose used when send-otp omits ``type``
_DEFAULT_OTP_PURPOSE = {
    ADMIN_TENANT: OTP_PURPOSE_PASSWORD_RESET,
    SITE_TENANT: OTP_PURPOSE_VERIFICATION,
}


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _tenant(request: Request, tenant: str) -> TenantServices:
    return get_runtime(request).tenants[tenant]


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return parse_ip_address(forwarded)
    return parse_ip_address(request.client.host if request.client else None)


def require_roles(tenant: str, *roles: str) -> Callable[..., Awaitable[Account]]:
    """Dependency resolving the caller's bearer token to a live account holding one of ``roles``."""
    allowed = frozenset(roles)

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Account:
        gate = _tenant(request, tenant).gate
        account = gate.authorize(authorization, allowed)
        request.state.account = account
        return account

    return dependency


def _set_refresh_cookie(response: Response, policy: TenantPolicy, token: str) -> None:
    response.set_cookie(
        policy.cookie_name,
        token,
        httponly=True,
        secure=policy.cookie_secure,
        samesite="strict",
        max_age=int(policy.refresh_ttl.total_seconds()),
        path=policy.cookie_path,
    )


def _clear_refresh_cookie(response: Response, policy: TenantPolicy) -> None:
    response.delete_cookie(
        policy.cookie_name,
        path=policy.cookie_path,
        secure=policy.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _failure_clearing_cookie(exc: ServiceError, policy: TenantPolicy) -> JSONResponse:
    failed = error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
    _clear_refresh_cookie(failed, policy)
    return failed


def _session_payload(issued: IssuedSession) -> dict:
    return {
        "access_token": issued.access_token,
        "token_type": "bearer",
        "account": issued.account.public_view(),
    }


def build_auth_router(tenant: str) -> APIRouter:
    """Auth endpoints shared by both tenants, bound to one tenant's services."""
    prefix = ADMIN_AUTH_PREFIX if tenant == ADMIN_TENANT else SITE_AUTH_PREFIX
    roles = ADMIN_ROLES if tenant == ADMIN_TENANT else frozenset({PUBLIC_ROLE})
    current_account = require_roles(tenant, *roles)
    router = APIRouter(prefix=prefix, tags=[f"{tenant}-auth"])

    @router.post("/login", response_model=Envelope)
    async def login(body: LoginRequest, request: Request, response: Response):
        services = _tenant(request, tenant)
        issued = await services.sessions.login(
            body.identifier,
            body.password,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        _set_refresh_cookie(response, services.policy, issued.refresh_token)
        return Envelope(status="ok", data=_session_payload(issued))

    @router.post("/refresh-token", response_model=Envelope)
    async def refresh_token(request: Request, response: Response):
        services = _tenant(request, tenant)
        policy = services.policy
        presented = request.cookies.get(policy.cookie_name)
        try:
            issued = await services.sessions.refresh(
                presented,
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        except AuthenticationError as exc:
            # a rejected refresh token is dead; drop it from the browser too
            return _failure_clearing_cookie(exc, policy)
        _set_refresh_cookie(response, policy, issued.refresh_token)
        return Envelope(
            status="ok",
            data={"access_token": issued.access_token, "token_type": "bearer"},
        )

    @router.post("/logout", response_model=Envelope)
    async def logout(request: Request, response: Response):
        services = _tenant(request, tenant)
        policy = services.policy
        _clear_refresh_cookie(response, policy)
        try:
            removed = await services.sessions.logout(request.cookies.get(policy.cookie_name))
        except Exception:
            # the cookie is gone either way; a stale server-side record expires on its own
            logger.exception("logout_failed", tenant=tenant)
            removed = False
        return Envelope(status="ok", data={"logged_out": True, "revoked": removed})

    @router.post("/logout-all-devices", response_model=Envelope)
    async def logout_all_devices(
        request: Request, response: Response, account: Account = Depends(current_account)
    ):
        services = _tenant(request, tenant)
        try:
            updated = await services.sessions.logout_all(account.id)
        except ServiceError as exc:
            logger.warning("logout_all_failed", tenant=tenant, account_id=account.id)
            return _failure_clearing_cookie(exc, services.policy)
        except Exception:
            logger.exception("logout_all_failed", tenant=tenant, account_id=account.id)
            return _failure_clearing_cookie(ServerError("logout failed"), services.policy)
        _clear_refresh_cookie(response, services.policy)
        return Envelope(
            status="ok",
            data={"logged_out": True, "session_version": updated.session_version},
        )

    @router.get("/me", response_model=Envelope)
    async def me(account: Account = Depends(current_account)):
        return Envelope(status="ok", data=account.public_view())

    @router.post("/change-password", response_model=Envelope)
    async def change_password(
        body: ChangePasswordRequest,
        request: Request,
        response: Response,
        account: Account = Depends(current_account),
    ):
        services = _tenant(request, tenant)
        await services.sessions.change_password(
            account, body.current_password, body.new_password
        )
        _clear_refresh_cookie(response, services.policy)
        return Envelope(status="ok", data={"password_changed": True})

    @router.post("/send-otp", response_model=Envelope)
    async def send_otp(body: SendOTPRequest, request: Request):
        services = _tenant(request, tenant)
        purpose = _OTP_TYPES[body.type] if body.type else _DEFAULT_OTP_PURPOSE[tenant]
        await services.sessions.send_otp(body.email, purpose)
        return Envelope(
            status="ok",
            data={"sent": True, "expires_in_minutes": services.policy.otp_ttl_minutes},
        )

    @router.post("/verify-otp", response_model=Envelope)
    async def verify_otp(body: VerifyOTPRequest, request: Request):
        sessions = _tenant(request, tenant).sessions
        if sessions.policy.require_verified_email:
            account = await sessions.verify_email(body.email, body.otp)
            return Envelope(status="ok", data={"verified": True, "account": account.public_view()})
        sessions.confirm_otp(body.email, body.otp)
        return Envelope(status="ok", data={"verified": True})

    @router.post("/forgot-password", response_model=Envelope)
    async def forgot_password(body: ForgotPasswordRequest, request: Request):
        sessions = _tenant(request, tenant).sessions
        await sessions.reset_password(body.email, body.otp, body.new_password)
        return Envelope(status="ok", data={"password_reset": True})

    if tenant == SITE_TENANT:
        _add_site_routes(router)
    return router


def _add_site_routes(router: APIRouter) -> None:
    @router.post("/signup", response_model=Envelope, status_code=201)
    async def signup(body: SignupRequest, request: Request):
        runtime = get_runtime(request)
        if not runtime.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        account = await runtime.site.sessions.signup(
            username=body.username,
            email=body.email,
            password=body.password,
            name=body.name,
            college=body.college,
            passout_year=body.passout_year,
        )
        return Envelope(
            status="ok",
            data={"account": account.public_view(), "verification_required": True},
        )

    @router.post("/oauth/callback", response_model=Envelope)
    async def oauth_callback(body: OAuthCallbackRequest, request: Request, response: Response):
        runtime = get_runtime(request)
        identity = await runtime.identity.verify(body.id_token)
        if identity is None:
            raise AuthenticationError("invalid identity token")
        issued = await runtime.site.sessions.login_with_identity(
            identity,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        _set_refresh_cookie(response, runtime.site.policy, issued.refresh_token)
        return Envelope(status="ok", data=_session_payload(issued))


admin_users_router = APIRouter(prefix=ADMIN_USERS_PREFIX, tags=["admin-users"])
_superadmin = require_roles(ADMIN_TENANT, SUPERADMIN)


@admin_users_router.get("", response_model=Envelope)
async def list_admin_users(request: Request, principal: Account = Depends(_superadmin)):
    admins = get_runtime(request).admins.list_admins()
    return Envelope(status="ok", data={"items": [a.public_view() for a in admins]})


@admin_users_router.post("", response_model=Envelope, status_code=201)
async def create_admin_user(
    body: AdminCreateRequest, request: Request, principal: Account = Depends(_superadmin)
):
    created = get_runtime(request).admins.create_admin(**body.model_dump())
    logger.info("admin_user_created", by=principal.id, admin_id=created.id)
    return Envelope(status="ok", data=created.public_view())


@admin_users_router.get("/{admin_id}", response_model=Envelope)
async def get_admin_user(
    admin_id: str, request: Request, principal: Account = Depends(_superadmin)
):
    return Envelope(status="ok", data=get_runtime(request).admins.get_admin(admin_id).public_view())


@admin_users_router.put("/{admin_id}", response_model=Envelope)
async def update_admin_user(
    admin_id: str,
    body: AdminUpdateRequest,
    request: Request,
    principal: Account = Depends(_superadmin),
):
    updated = get_runtime(request).admins.update_admin(
        admin_id, body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=updated.public_view())


@admin_users_router.delete("/{admin_id}", response_model=Envelope)
async def delete_admin_user(
    admin_id: str, request: Request, principal: Account = Depends(_superadmin)
):
    get_runtime(request).admins.delete_admin(admin_id, acting_admin_id=principal.id)
    return Envelope(status="ok", data={"deleted": True, "admin_id": admin_id})

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from uniupdates.logging import get_logger
from uniupdates.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from uniupdates.service.otp import OTPService
from uniupdates.service.tenants import REFRESH, TenantPolicy
from uniupdates.service.tokens import TokenService, hash_token
from uniupdates.storage.errors import ConstraintViolation, StaleRevision
from uniupdates.storage.models import (
    OTP_PURPOSE_PASSWORD_RESET,
    OTP_PURPOSE_VERIFICATION,
    Account,
    PublicAccount,
    RefreshTokenRecord,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

# refresh outcomes that reject the presented token
_STALE_VERSION = "stale_version"
_UNKNOWN_TOKEN = "unknown_token"


class CredentialStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, tenant: str, account_id: str) -> Optional[Account]: ...

    def find_account(self, tenant: str, identifier: str) -> Optional[Account]: ...

    def get_account_by_email(self, tenant: str, email: str) -> Optional[Account]: ...

    def list_accounts(
        self,
        tenant: str,
        *,
        role: Optional[str] = None,
        college_id: Optional[str] = None,
    ) -> List[Account]: ...

    def save_account(self, account: Account, *, expected_revision: int) -> Account: ...

    def delete_account(self, tenant: str, account_id: str) -> bool: ...


@dataclass
class IssuedSession:
    account: Account
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


@dataclass
class FederatedIdentity:
    """A verified identity claim handed over by the OAuth collaborator."""

    subject: str
    email: str
    name: Optional[str] = None
    email_verified: bool = False


class SessionManager:
    """Login, refresh and revocation flows for one tenant.

    Every account write is a compare-and-swap on ``Account.revision``; see
    ``update_account``.
    """

    MAX_WRITE_ATTEMPTS = 3

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        otp: OTPService,
        policy: TenantPolicy,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.otp = otp
        self.policy = policy
        self.logger = logger.bind(tenant=policy.name)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against on unknown identifiers so both failures cost the same
        self._dummy_hash = self._pwd_hasher.hash("uniupdates-dummy-password")

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            self._burn_password_check(password)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", account_id=account.id)
            return False

    def _burn_password_check(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    # persistence
    def update_account(self, account_id: str, apply: Callable[[Account], T]) -> Tuple[Account, T]:
        """Read, apply and compare-and-swap an account, retrying lost races.

        ``apply`` runs against a fresh copy on every attempt, so checks it
        makes (token membership, version) always see the latest state.
        """
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            account = self.store.get_account(self.policy.name, account_id)
            if account is None:
                raise NotFoundError("account not found", detail={"account_id": account_id})
            expected = account.revision
            result = apply(account)
            try:
                saved = self.store.save_account(account, expected_revision=expected)
            except StaleRevision as exc:
                self.logger.info(
                    "account_write_conflict",
                    account_id=account_id,
                    attempt=attempt,
                    expected=exc.expected,
                    actual=exc.actual,
                )
                continue
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            return saved, result
        self.logger.warning("account_write_retries_exhausted", account_id=account_id)
        raise ConflictError("account was modified concurrently, retry the request")

    # refresh token records
    def _matches(self, record: RefreshTokenRecord, token: str) -> bool:
        candidate = hash_token(token) if record.hashed else token
        return hmac.compare_digest(record.token, candidate)

    def _take_record(self, account: Account, token: str) -> bool:
        """Remove the record for ``token``; True if an unexpired one was present."""
        now = utcnow()
        for index, record in enumerate(account.refresh_tokens):
            if self._matches(record, token):
                del account.refresh_tokens[index]
                return not record.is_expired(now)
        return False

    def _append_record(self, account: Account, record: RefreshTokenRecord) -> None:
        now = utcnow()
        kept = [r for r in account.refresh_tokens if not r.is_expired(now)]
        kept.append(record)
        cap = self.policy.refresh_token_cap
        if cap:
            kept = kept[-cap:]
        account.refresh_tokens = kept

    def _issue_into(
        self,
        account: Account,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Tuple[str, str, datetime]:
        """Mint a token pair stamped with the account's current version and record it."""
        access = self.tokens.issue_access_token(
            account.id, account.role, account.session_version
        )
        refresh = self.tokens.issue_refresh_token(account.id, account.session_version)
        now = utcnow()
        claims = self.tokens.verify(refresh, REFRESH)
        expires_at = (
            self.tokens.refresh_expiry(claims) if claims else now + self.policy.refresh_ttl
        )
        hashed = self.policy.hash_refresh_tokens
        self._append_record(
            account,
            RefreshTokenRecord(
                token=hash_token(refresh) if hashed else refresh,
                hashed=hashed,
                issued_at=now,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
            ),
        )
        return access, refresh, expires_at

    def _check_login_allowed(self, account: Account) -> None:
        if getattr(account, "terminated", False):
            self.logger.warning("login_blocked_terminated", account_id=account.id)
            raise ForbiddenError("account has been terminated")
        if (
            self.policy.require_verified_email
            and not getattr(account, "is_verified", True)
            and not getattr(account, "is_google_login", False)
        ):
            raise ForbiddenError(
                "email not verified", detail={"reason": "email_not_verified"}
            )

    def _start_session(
        self,
        account_id: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedSession:
        def apply(acc: Account) -> Tuple[str, str, datetime]:
            if isinstance(acc, PublicAccount):
                acc.last_login_at = utcnow()
                acc.last_login_ip = ip_address
            return self._issue_into(acc, ip_address=ip_address, user_agent=user_agent)

        account, (access, refresh, expires_at) = self.update_account(account_id, apply)
        return IssuedSession(account, access, refresh, expires_at)

    # flows
    async def login(
        self,
        identifier: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        identifier = (identifier or "").strip()
        if not identifier or not password:
            raise ValidationError("identifier and password are required")
        account = self.store.find_account(self.policy.name, identifier)
        if account is None:
            self._burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()
        if not self.verify_password(account, password):
            self.logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError()
        self._check_login_allowed(account)
        issued = self._start_session(
            account.id, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("login_succeeded", account_id=account.id)
        return issued

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """Exchange a refresh token for a new pair, consuming the presented one.

        A token minted before the last revocation, or one no longer on the
        account's list, is treated as a replay and wipes every refresh token
        the account holds.
        """
        if not refresh_token:
            raise AuthenticationError("refresh token missing")
        claims = self.tokens.verify(refresh_token, REFRESH)
        if claims is None:
            raise AuthenticationError("invalid or expired refresh token")

        def apply(acc: Account):
            if claims["sv"] != acc.session_version:
                acc.refresh_tokens = []
                return _STALE_VERSION
            if not self._take_record(acc, refresh_token):
                acc.refresh_tokens = []
                return _UNKNOWN_TOKEN
            return self._issue_into(acc, ip_address=ip_address, user_agent=user_agent)

        try:
            account, outcome = self.update_account(claims["sub"], apply)
        except NotFoundError:
            raise AuthenticationError("invalid or expired refresh token") from None
        if outcome == _STALE_VERSION:
            self.logger.warning(
                "refresh_token_stale_version",
                account_id=account.id,
                token_version=claims["sv"],
                session_version=account.session_version,
            )
            raise AuthenticationError("session has been revoked, log in again")
        if outcome == _UNKNOWN_TOKEN:
            self.logger.warning("refresh_token_reuse_detected", account_id=account.id)
            raise AuthenticationError("invalid or revoked refresh token, log in again")
        access, refresh, expires_at = outcome
        self.logger.info("refresh_rotated", account_id=account.id)
        return IssuedSession(account, access, refresh, expires_at)

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Forget one refresh token. Never fails on missing or garbled input."""
        if not refresh_token:
            return False
        claims = self.tokens.verify(refresh_token, REFRESH)
        if claims is None:
            return False
        try:
            _, removed = self.update_account(
                claims["sub"], lambda acc: self._take_record(acc, refresh_token)
            )
        except NotFoundError:
            return False
        self.logger.info("logout", account_id=claims["sub"], removed=removed)
        return removed

    async def logout_all(self, account_id: str) -> Account:
        account, _ = self.update_account(account_id, lambda acc: acc.revoke_all())
        self.logger.info(
            "logout_all_devices",
            account_id=account_id,
            session_version=account.session_version,
        )
        return account

    async def set_password(self, account_id: str, new_password: str) -> Account:
        password_hash = self.hash_password(new_password)

        def apply(acc: Account) -> None:
            acc.password_hash = password_hash
            acc.revoke_all()

        account, _ = self.update_account(account_id, apply)
        self.logger.info(
            "password_updated",
            account_id=account_id,
            session_version=account.session_version,
        )
        return account

    async def change_password(
        self, account: Account, current_password: str, new_password: str
    ) -> Account:
        if not self.verify_password(account, current_password):
            raise AuthenticationError("current password is incorrect")
        return await self.set_password(account.id, new_password)

    async def send_otp(self, email: str, purpose: str) -> None:
        account = self.store.get_account_by_email(self.policy.name, email)
        if account is None:
            raise NotFoundError("account not found for this email")
        await self.otp.issue(account.email, purpose, name=getattr(account, "name", None))

    def confirm_otp(self, email: str, code: str, *, purpose: Optional[str] = None) -> None:
        if not self.otp.verify(email, code, purpose=purpose):
            raise ValidationError("invalid or expired otp")

    async def reset_password(self, email: str, code: str, new_password: str) -> Account:
        account = self.store.get_account_by_email(self.policy.name, email)
        if account is None:
            raise NotFoundError("account not found for this email")
        self.confirm_otp(account.email, code, purpose=OTP_PURPOSE_PASSWORD_RESET)
        return await self.set_password(account.id, new_password)

    async def verify_email(self, email: str, code: str) -> Account:
        self.confirm_otp(email, code, purpose=OTP_PURPOSE_VERIFICATION)
        account = self.store.get_account_by_email(self.policy.name, email)
        if account is None:
            raise NotFoundError("account not found for this email")

        def apply(acc: Account) -> None:
            acc.is_verified = True

        verified, _ = self.update_account(account.id, apply)
        self.logger.info("email_verified", account_id=account.id)
        return verified

    async def signup(
        self,
        *,
        username: str,
        email: str,
        password: str,
        name: str,
        college: Optional[str] = None,
        passout_year: Optional[int] = None,
    ) -> Account:
        account = PublicAccount(
            id=Account.new_id(),
            username=username.strip(),
            email=email,
            password_hash=self.hash_password(password),
            name=name,
            college=college,
            passout_year=passout_year,
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "detail")
            raise ConflictError(
                f"user with this {field} already exists", detail=exc.detail
            ) from exc
        self.logger.info("signup_created", account_id=created.id)
        await self.otp.issue(created.email, OTP_PURPOSE_VERIFICATION, name=created.name)
        return created

    async def login_with_identity(
        self,
        identity: FederatedIdentity,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """Sign in (creating the account on first use) from a verified identity."""
        if not identity.email_verified:
            raise ForbiddenError("identity provider has not verified this email")
        account = self.store.get_account_by_email(self.policy.name, identity.email)
        if account is None:
            local_part = identity.email.split("@", 1)[0]
            account = PublicAccount(
                id=Account.new_id(),
                username=f"{local_part}-{identity.subject[-6:]}",
                email=identity.email,
                name=identity.name or local_part,
                is_verified=True,
                is_google_login=True,
                google_subject=identity.subject,
            )
            try:
                account = self.store.create_account(account)
            except ConstraintViolation as exc:
                raise ConflictError(
                    "could not create account for identity", detail=exc.detail
                ) from exc
            self.logger.info("federated_account_created", account_id=account.id)
        else:

            def link(acc: Account) -> None:
                acc.is_google_login = True
                acc.is_verified = True
                acc.google_subject = acc.google_subject or identity.subject

            account, _ = self.update_account(account.id, link)
        return self._start_session(account.id, ip_address=ip_address, user_agent=user_agent)

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from uniupdates.config import Settings, get_settings
from uniupdates.logging import get_logger
from uniupdates.service.admins import AdminDirectory
from uniupdates.service.email import EmailService
from uniupdates.service.gate import AuthorizationGate
from uniupdates.service.identity import GoogleIdentityVerifier
from uniupdates.service.otp import OTPService
from uniupdates.service.sessions import SessionManager
from uniupdates.service.tenants import TenantPolicy, build_tenant_policies
from uniupdates.service.tokens import TokenService
from uniupdates.storage.memory import MemoryStore
from uniupdates.storage.models import ADMIN_TENANT, SITE_TENANT
from uniupdates.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


@dataclass
class TenantServices:
    policy: TenantPolicy
    tokens: TokenService
    otp: OTPService
    sessions: SessionManager
    gate: AuthorizationGate


class Runtime:
    """Holds the store client and per-tenant service instances for the app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.policies = build_tenant_policies(self.settings)
        self.tenants: Dict[str, TenantServices] = {
            name: self._build_tenant(policy) for name, policy in self.policies.items()
        }
        self.admins = AdminDirectory(self.store, self.tenants[ADMIN_TENANT].sessions)
        self.identity = GoogleIdentityVerifier(
            self.settings.google_client_id, allow_registered=self.settings.test_mode
        )
        self._closed = False

        logger.info(
            "runtime_initialized",
            tenants=sorted(self.tenants),
            email_configured=self.email.is_configured,
            google_configured=self.identity.is_configured,
            environment=self.settings.environment,
        )

    def _build_tenant(self, policy: TenantPolicy) -> TenantServices:
        tokens = TokenService(policy)
        otp = OTPService(self.store, self.email, policy)
        return TenantServices(
            policy=policy,
            tokens=tokens,
            otp=otp,
            sessions=SessionManager(self.store, tokens, otp, policy),
            gate=AuthorizationGate(self.store, tokens, policy),
        )

    @property
    def admin(self) -> TenantServices:
        return self.tenants[ADMIN_TENANT]

    @property
    def site(self) -> TenantServices:
        return self.tenants[SITE_TENANT]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.store.close()
        logger.info("runtime_closed")

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, FrozenSet, Optional

from uniupdates.config import Settings
from uniupdates.storage.models import (
    ADMIN_ROLES,
    ADMIN_TENANT,
    PUBLIC_ROLE,
    SITE_TENANT,
)

ADMIN_AUTH_PREFIX = "/api/admin/auth"
SITE_AUTH_PREFIX = "/api/auth"

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TenantPolicy:
    """Everything that differs between the admin panel and the public site.

    One set of services is built per policy; nothing else in the auth core
    branches on the tenant name.
    """

    name: str
    issuer: str
    audience: str
    access_secret: str
    refresh_secret: str
    access_ttl: timedelta
    refresh_ttl: timedelta
    refresh_token_cap: Optional[int]
    hash_refresh_tokens: bool
    otp_ttl_minutes: int
    cookie_name: str
    cookie_path: str
    cookie_secure: bool
    roles: FrozenSet[str]
    require_verified_email: bool = False

    def secret_for(self, kind: str) -> str:
        if kind == ACCESS:
            return self.access_secret
        if kind == REFRESH:
            return self.refresh_secret
        raise ValueError(f"unknown token kind {kind!r}")


def derive_secret(master: str, tenant: str, kind: str) -> str:
    """Derive a signing key bound to one tenant and token kind."""
    label = f"{tenant}:{kind}".encode()
    return hmac.new(master.encode(), label, hashlib.sha256).hexdigest()


def build_tenant_policies(settings: Settings) -> Dict[str, TenantPolicy]:
    master = settings.jwt_secret
    admin = TenantPolicy(
        name=ADMIN_TENANT,
        issuer=f"{settings.jwt_issuer}:{ADMIN_TENANT}",
        audience=settings.jwt_audience,
        access_secret=settings.admin_access_token_secret
        or derive_secret(master, ADMIN_TENANT, ACCESS),
        refresh_secret=settings.admin_refresh_token_secret
        or derive_secret(master, ADMIN_TENANT, REFRESH),
        access_ttl=timedelta(minutes=settings.admin_access_token_ttl_minutes),
        refresh_ttl=timedelta(minutes=settings.admin_refresh_token_ttl_minutes),
        refresh_token_cap=settings.admin_refresh_token_cap,
        hash_refresh_tokens=settings.admin_hash_refresh_tokens,
        otp_ttl_minutes=settings.admin_otp_ttl_minutes,
        cookie_name="admin_refresh_token",
        cookie_path=ADMIN_AUTH_PREFIX,
        cookie_secure=settings.is_production,
        roles=ADMIN_ROLES,
    )
    site = TenantPolicy(
        name=SITE_TENANT,
        issuer=f"{settings.jwt_issuer}:{SITE_TENANT}",
        audience=settings.jwt_audience,
        access_secret=settings.site_access_token_secret
        or derive_secret(master, SITE_TENANT, ACCESS),
        refresh_secret=settings.site_refresh_token_secret
        or derive_secret(master, SITE_TENANT, REFRESH),
        access_ttl=timedelta(minutes=settings.site_access_token_ttl_minutes),
        refresh_ttl=timedelta(minutes=settings.site_refresh_token_ttl_minutes),
        refresh_token_cap=settings.site_refresh_token_cap,
        hash_refresh_tokens=settings.site_hash_refresh_tokens,
        otp_ttl_minutes=settings.site_otp_ttl_minutes,
        cookie_name="refresh_token",
        cookie_path=SITE_AUTH_PREFIX,
        cookie_secure=settings.is_production,
        roles=frozenset({PUBLIC_ROLE}),
        require_verified_email=True,
    )
    return {admin.name: admin, site.name: site}

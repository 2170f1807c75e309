from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import ClassVar, List, Optional

ADMIN_TENANT = "admin"
SITE_TENANT = "site"

SUPERADMIN = "superadmin"
UNIADMIN = "uniadmin"
PUBLIC_ROLE = "user"
ADMIN_ROLES = frozenset({SUPERADMIN, UNIADMIN})

OTP_PURPOSE_VERIFICATION = "verification"
OTP_PURPOSE_PASSWORD_RESET = "password_reset"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshTokenRecord:
    """One honored refresh token held on an account.

    ``token`` is either the raw JWT or its SHA-256 hex digest, as recorded by
    ``hashed``.
    """

    token: str
    issued_at: datetime
    expires_at: datetime
    hashed: bool = True
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    session_version: int = 0
    refresh_tokens: List[RefreshTokenRecord] = field(default_factory=list)
    revision: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    tenant: ClassVar[str] = ""
    role: str = PUBLIC_ROLE

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def revoke_all(self) -> None:
        """Invalidate every outstanding token minted for this account."""
        self.session_version += 1
        self.refresh_tokens = []

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "session_version": self.session_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class AdminAccount(Account):
    tenant: ClassVar[str] = ADMIN_TENANT

    name: str = ""
    role: str = UNIADMIN
    college_id: Optional[str] = None
    phone: Optional[str] = None
    passout_year: Optional[int] = None
    img_url: Optional[str] = None
    terminated: bool = False
    termination_reason: Optional[str] = None

    def public_view(self) -> dict:
        view = super().public_view()
        view.update(
            {
                "name": self.name,
                "college_id": self.college_id,
                "phone": self.phone,
                "passout_year": self.passout_year,
                "img_url": self.img_url,
                "terminated": self.terminated,
                "termination_reason": self.termination_reason,
            }
        )
        return view


@dataclass
class PublicAccount(Account):
    tenant: ClassVar[str] = SITE_TENANT

    name: str = ""
    college: Optional[str] = None
    passout_year: Optional[int] = None
    is_verified: bool = False
    is_google_login: bool = False
    google_subject: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    def public_view(self) -> dict:
        view = super().public_view()
        view.update(
            {
                "name": self.name,
                "college": self.college,
                "passout_year": self.passout_year,
                "is_verified": self.is_verified,
                "is_google_login": self.is_google_login,
                "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
                "last_login_ip": self.last_login_ip,
            }
        )
        return view


@dataclass
class OTPRecord:
    id: str
    tenant: str
    email: str
    purpose: str
    code_hash: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, tenant: str, email: str, purpose: str, code_hash: str, ttl_minutes: int
    ) -> "OTPRecord":
        now = utcnow()
        return cls(
            id=uuid.uuid4().hex,
            tenant=tenant,
            email=email,
            purpose=purpose,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

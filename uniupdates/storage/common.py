"""Serialization helpers shared by the memory and Postgres stores.

Both backends persist accounts as flat JSON documents so the two stay
interchangeable; only the indexing columns differ.
"""

from __future__ import annotations

from dataclasses import fields
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, Optional, Type

from uniupdates.storage.models import (
    ADMIN_TENANT,
    SITE_TENANT,
    Account,
    AdminAccount,
    OTPRecord,
    PublicAccount,
    RefreshTokenRecord,
)

ACCOUNT_TYPES: Dict[str, Type[Account]] = {
    ADMIN_TENANT: AdminAccount,
    SITE_TENANT: PublicAccount,
}

_DATETIME_FIELDS = {"created_at", "updated_at", "last_login_at"}


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def deserialize_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a canonical IP string, or None when the value is not an address."""
    if not raw_ip:
        return None
    # X-Forwarded-For may carry a chain; the first entry is the client
    candidate = str(raw_ip).split(",")[0].strip()
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def account_type_for(tenant: str) -> Type[Account]:
    try:
        return ACCOUNT_TYPES[tenant]
    except KeyError:
        raise ValueError(f"unknown tenant {tenant!r}") from None


def serialize_refresh_token(record: RefreshTokenRecord) -> dict:
    return {
        "token": record.token,
        "hashed": record.hashed,
        "issued_at": serialize_datetime(record.issued_at),
        "expires_at": serialize_datetime(record.expires_at),
        "ip_address": record.ip_address,
        "user_agent": record.user_agent,
    }


def deserialize_refresh_token(data: dict) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token=data["token"],
        hashed=bool(data.get("hashed", True)),
        issued_at=deserialize_datetime(data["issued_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
    )


def serialize_account(account: Account) -> dict:
    doc: Dict[str, Any] = {"tenant": account.tenant}
    for name in (f.name for f in fields(account)):
        value = getattr(account, name)
        if name == "refresh_tokens":
            doc[name] = [serialize_refresh_token(r) for r in value]
        elif name in _DATETIME_FIELDS:
            doc[name] = serialize_datetime(value)
        else:
            doc[name] = value
    return doc


def deserialize_account(doc: dict) -> Account:
    cls = account_type_for(doc["tenant"])
    kwargs: Dict[str, Any] = {}
    for name in (f.name for f in fields(cls)):
        if name not in doc:
            continue
        value = doc[name]
        if name == "refresh_tokens":
            value = [deserialize_refresh_token(r) for r in value or []]
        elif name in _DATETIME_FIELDS:
            value = deserialize_datetime(value)
        kwargs[name] = value
    return cls(**kwargs)


def serialize_otp(record: OTPRecord) -> dict:
    return {
        "id": record.id,
        "tenant": record.tenant,
        "email": record.email,
        "purpose": record.purpose,
        "code_hash": record.code_hash,
        "created_at": serialize_datetime(record.created_at),
        "expires_at": serialize_datetime(record.expires_at),
    }


def deserialize_otp(data: dict) -> OTPRecord:
    return OTPRecord(
        id=str(data["id"]),
        tenant=data["tenant"],
        email=data["email"],
        purpose=data["purpose"],
        code_hash=data["code_hash"],
        created_at=deserialize_datetime(data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
    )

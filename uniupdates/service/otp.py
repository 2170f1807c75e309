from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from typing import Optional, Protocol

from uniupdates.logging import get_logger
from uniupdates.service.email import EmailService
from uniupdates.service.errors import ServerError
from uniupdates.service.tenants import TenantPolicy
from uniupdates.storage.models import OTPRecord

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


class OTPStore(Protocol):
    def replace_otp(self, record: OTPRecord) -> OTPRecord: ...

    def latest_otp(self, tenant: str, email: str) -> Optional[OTPRecord]: ...

    def delete_otp(self, otp_id: str) -> bool: ...


class OTPService:
    """Six-digit single-use passcodes, one live code per email and tenant.

    A code is burned by the first verification attempt whether or not it
    matches, so a wrong guess forces a re-issue.
    """

    def __init__(self, store: OTPStore, email: EmailService, policy: TenantPolicy) -> None:
        self.store = store
        self.email = email
        self.policy = policy

    def _generate_code(self) -> str:
        return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))

    def _hash_code(self, email: str, code: str) -> str:
        material = f"{self.policy.name}:{email.strip().lower()}:{code.strip()}"
        return hashlib.sha256(material.encode()).hexdigest()

    async def issue(self, email: str, purpose: str, *, name: Optional[str] = None) -> str:
        code = self._generate_code()
        record = OTPRecord.new(
            self.policy.name,
            email,
            purpose,
            self._hash_code(email, code),
            self.policy.otp_ttl_minutes,
        )
        self.store.replace_otp(record)
        sent = await asyncio.to_thread(
            self.email.send_otp,
            email,
            code,
            purpose=purpose,
            ttl_minutes=self.policy.otp_ttl_minutes,
            name=name,
        )
        if not sent:
            logger.error("otp_delivery_failed", tenant=self.policy.name, purpose=purpose)
            raise ServerError("failed to send otp")
        logger.info("otp_issued", tenant=self.policy.name, purpose=purpose, otp_id=record.id)
        return code

    def verify(self, email: str, code: str, *, purpose: Optional[str] = None) -> bool:
        record = self.store.latest_otp(self.policy.name, email)
        if record is None:
            return False
        # Burn before comparing; losing the delete means another attempt took it
        if not self.store.delete_otp(record.id):
            return False
        if record.is_expired():
            logger.info("otp_expired", tenant=self.policy.name, otp_id=record.id)
            return False
        if purpose is not None and record.purpose != purpose:
            logger.warning(
                "otp_purpose_mismatch",
                tenant=self.policy.name,
                expected=purpose,
                actual=record.purpose,
            )
            return False
        if not hmac.compare_digest(record.code_hash, self._hash_code(email, code or "")):
            logger.warning("otp_mismatch", tenant=self.policy.name, otp_id=record.id)
            return False
        return True

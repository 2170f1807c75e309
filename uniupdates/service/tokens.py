from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from uniupdates.logging import get_logger
from uniupdates.service.tenants import ACCESS, REFRESH, TenantPolicy

logger = get_logger(__name__)

_CLOCK_SKEW_LEEWAY = timedelta(seconds=30)


def hash_token(token: str) -> str:
    """Digest used when refresh tokens are stored hashed."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenService:
    """Mints and verifies HS256 access and refresh tokens for one tenant.

    Every token carries the account's ``session_version`` at mint time under
    the ``sv`` claim; the caller compares it against the live account.
    """

    def __init__(self, policy: TenantPolicy) -> None:
        self.policy = policy

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: str) -> str:
        secret = self.policy.secret_for(kind)
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _claims(self, account_id: str, session_version: int, kind: str, ttl: timedelta) -> dict:
        now = self._now()
        return {
            "iss": self.policy.issuer,
            "aud": self.policy.audience,
            "sub": account_id,
            "sv": session_version,
            "typ": kind,
            "tnt": self.policy.name,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_access_token(self, account_id: str, role: str, session_version: int) -> str:
        payload = self._claims(account_id, session_version, ACCESS, self.policy.access_ttl)
        payload["role"] = role
        return self._encode_jwt(payload, ACCESS)

    def issue_refresh_token(self, account_id: str, session_version: int) -> str:
        payload = self._claims(account_id, session_version, REFRESH, self.policy.refresh_ttl)
        return self._encode_jwt(payload, REFRESH)

    def verify(self, token: Optional[str], kind: str) -> Optional[dict[str, Any]]:
        """Return the claims of a well-formed, correctly signed, unexpired token.

        Any failure yields None; this never raises.
        """
        if not token or not isinstance(token, str) or kind not in (ACCESS, REFRESH):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", tenant=self.policy.name)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                tenant=self.policy.name,
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != kind or payload.get("tnt") != self.policy.name:
            return None
        if payload.get("iss") != self.policy.issuer:
            return None
        if payload.get("aud") != self.policy.audience:
            return None
        if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("sv"), int):
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= time.time() - _CLOCK_SKEW_LEEWAY.total_seconds():
            return None
        return payload

    @staticmethod
    def refresh_expiry(claims: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)

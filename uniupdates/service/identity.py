from __future__ import annotations

from typing import Dict, Optional

import httpx

from uniupdates.logging import get_logger
from uniupdates.service.sessions import FederatedIdentity

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
_GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


class GoogleIdentityVerifier:
    """Turns a Google ID token into a verified identity claim.

    Validation is delegated to Google's tokeninfo endpoint; the audience must
    match the configured client id.
    """

    def __init__(
        self,
        client_id: Optional[str],
        *,
        timeout: float = 10.0,
        allow_registered: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.timeout = timeout
        self.transport = transport
        self.allow_registered = allow_registered
        self._registry: Dict[str, FederatedIdentity] = {}

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def register_identity(self, id_token: str, identity: FederatedIdentity) -> None:
        """Pre-register the identity an ID token resolves to. Test mode only."""
        if not self.allow_registered:
            raise RuntimeError("registered identities are only allowed in test mode")
        self._registry[id_token] = identity

    async def verify(self, id_token: str) -> Optional[FederatedIdentity]:
        if not id_token:
            return None
        if self.allow_registered:
            registered = self._registry.pop(id_token, None)
            if registered is not None:
                return registered
        if not self.client_id:
            logger.error("google_client_id_missing")
            return None

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
                response.raise_for_status()
                info = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "google_token_rejected",
                status_code=e.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("google_token_verification_error", error=str(e))
            return None

        if not isinstance(info, dict):
            logger.error("google_tokeninfo_invalid_format", type=str(type(info)))
            return None
        if info.get("aud") != self.client_id:
            logger.warning("google_token_audience_mismatch")
            return None
        if info.get("iss") not in _GOOGLE_ISSUERS:
            logger.warning("google_token_issuer_mismatch", issuer=info.get("iss"))
            return None
        subject = info.get("sub")
        email = info.get("email")
        if not subject or not email:
            logger.error("google_identity_incomplete")
            return None
        verified = str(info.get("email_verified", "")).lower() == "true"
        return FederatedIdentity(
            subject=str(subject),
            email=email,
            name=info.get("name"),
            email_verified=verified,
        )

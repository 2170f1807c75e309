from __future__ import annotations

from typing import Iterable, Optional

from uniupdates.logging import get_logger
from uniupdates.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from uniupdates.service.sessions import CredentialStore
from uniupdates.service.tenants import ACCESS, TenantPolicy
from uniupdates.service.tokens import TokenService
from uniupdates.storage.models import Account

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthorizationGate:
    """Resolves a bearer access token to the live account allowed to proceed.

    The account is re-read on every call, so revocation via
    ``session_version`` takes effect on the very next request.
    """

    def __init__(self, store: CredentialStore, tokens: TokenService, policy: TenantPolicy) -> None:
        self.store = store
        self.tokens = tokens
        self.policy = policy

    def authorize(
        self, authorization: Optional[str], required_roles: Iterable[str]
    ) -> Account:
        token = extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("authentication required")
        claims = self.tokens.verify(token, ACCESS)
        if claims is None:
            raise AuthenticationError("invalid or expired access token")
        account = self.store.get_account(self.policy.name, claims["sub"])
        if account is None:
            raise NotFoundError("account not found")
        if claims["sv"] != account.session_version:
            logger.info(
                "access_token_revoked",
                tenant=self.policy.name,
                account_id=account.id,
                token_version=claims["sv"],
                session_version=account.session_version,
            )
            raise AuthenticationError("session invalidated, log in again")
        roles = frozenset(required_roles)
        if account.role not in roles:
            logger.warning(
                "access_forbidden",
                tenant=self.policy.name,
                account_id=account.id,
                role=account.role,
                required=sorted(roles),
            )
            raise ForbiddenError("insufficient permissions")
        if getattr(account, "terminated", False):
            raise ForbiddenError("account has been terminated")
        return account

from __future__ import annotations

from typing import Any, Dict, List, Optional

from uniupdates.logging import get_logger
from uniupdates.service.errors import ConflictError, NotFoundError, ValidationError
from uniupdates.service.sessions import CredentialStore, SessionManager
from uniupdates.storage.errors import ConstraintViolation
from uniupdates.storage.models import (
    ADMIN_ROLES,
    ADMIN_TENANT,
    SUPERADMIN,
    UNIADMIN,
    AdminAccount,
    Account,
)

logger = get_logger(__name__)

UNIADMINS_PER_COLLEGE = 2

_PROFILE_FIELDS = ("username", "email", "name", "phone", "passout_year", "img_url")


class AdminDirectory:
    """Superadmin-facing provisioning of admin tenant accounts."""

    def __init__(self, store: CredentialStore, sessions: SessionManager) -> None:
        self.store = store
        self.sessions = sessions

    def list_admins(self) -> List[AdminAccount]:
        return self.store.list_accounts(ADMIN_TENANT)

    def get_admin(self, admin_id: str) -> AdminAccount:
        account = self.store.get_account(ADMIN_TENANT, admin_id)
        if account is None:
            raise NotFoundError("admin not found", detail={"admin_id": admin_id})
        return account

    def _check_role_placement(
        self, role: str, college_id: Optional[str], *, exclude_id: Optional[str] = None
    ) -> None:
        if role not in ADMIN_ROLES:
            raise ValidationError(
                "invalid role", detail={"role": role, "allowed": sorted(ADMIN_ROLES)}
            )
        if role == SUPERADMIN:
            if college_id:
                raise ValidationError("superadmin cannot be assigned to a college")
            return
        if not college_id:
            raise ValidationError("college_id is required for uniadmin")
        peers = [
            acc
            for acc in self.store.list_accounts(ADMIN_TENANT, role=UNIADMIN, college_id=college_id)
            if acc.id != exclude_id
        ]
        if len(peers) >= UNIADMINS_PER_COLLEGE:
            raise ConflictError(
                f"college already has {UNIADMINS_PER_COLLEGE} uniadmins",
                detail={"college_id": college_id},
            )

    def create_admin(
        self,
        *,
        username: str,
        email: str,
        password: str,
        name: str,
        role: str = UNIADMIN,
        college_id: Optional[str] = None,
        phone: Optional[str] = None,
        passout_year: Optional[int] = None,
        img_url: Optional[str] = None,
    ) -> AdminAccount:
        self._check_role_placement(role, college_id)
        account = AdminAccount(
            id=Account.new_id(),
            username=username.strip(),
            email=email,
            password_hash=self.sessions.hash_password(password),
            name=name,
            role=role,
            college_id=college_id if role == UNIADMIN else None,
            phone=phone or None,
            passout_year=passout_year,
            img_url=img_url,
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "detail")
            raise ConflictError(
                f"admin with this {field} already exists", detail=exc.detail
            ) from exc
        logger.info("admin_created", admin_id=created.id, role=created.role)
        return created

    def update_admin(self, admin_id: str, changes: Dict[str, Any]) -> AdminAccount:
        """Apply a partial update; only keys present in ``changes`` are touched."""
        current = self.get_admin(admin_id)
        role = changes.get("role") or current.role
        if "college_id" in changes:
            college_id = changes["college_id"]
        else:
            college_id = current.college_id if role == UNIADMIN else None
        if role != current.role or college_id != current.college_id:
            self._check_role_placement(role, college_id, exclude_id=admin_id)

        password = changes.get("password")
        password_hash = self.sessions.hash_password(password) if password else None

        def apply(acc: AdminAccount) -> None:
            for key in _PROFILE_FIELDS:
                if key in changes and changes[key] is not None:
                    setattr(acc, key, changes[key])
            acc.role = role
            acc.college_id = college_id
            if "termination_reason" in changes:
                acc.termination_reason = changes["termination_reason"]
            newly_terminated = bool(changes.get("terminated")) and not acc.terminated
            if "terminated" in changes and changes["terminated"] is not None:
                acc.terminated = bool(changes["terminated"])
            if not acc.terminated:
                acc.termination_reason = None
            if password_hash or newly_terminated:
                if password_hash:
                    acc.password_hash = password_hash
                acc.revoke_all()

        updated, _ = self.sessions.update_account(admin_id, apply)
        logger.info(
            "admin_updated",
            admin_id=admin_id,
            fields=sorted(k for k, v in changes.items() if v is not None and k != "password"),
            password_changed=bool(password_hash),
            session_version=updated.session_version,
        )
        return updated

    def delete_admin(self, admin_id: str, *, acting_admin_id: Optional[str] = None) -> None:
        if acting_admin_id is not None and admin_id == acting_admin_id:
            raise ValidationError("admins cannot delete their own account")
        if not self.store.delete_account(ADMIN_TENANT, admin_id):
            raise NotFoundError("admin not found", detail={"admin_id": admin_id})
        logger.info("admin_deleted", admin_id=admin_id)

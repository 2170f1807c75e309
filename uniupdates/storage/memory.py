from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from uniupdates.logging import get_logger
from uniupdates.storage.common import (
    ACCOUNT_TYPES,
    deserialize_account,
    deserialize_otp,
    normalize_email,
    serialize_account,
    serialize_otp,
)
from uniupdates.storage.errors import ConstraintViolation, StaleRevision
from uniupdates.storage.models import Account, OTPRecord, utcnow


class MemoryStore:
    """In-process credential store persisted to a JSON file under ``fs_root``.

    Records handed out are copies; changes only land through ``save_account``
    with the revision the caller read.
    """

    def __init__(self, fs_root: str = "/tmp/uniupdates") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Dict[str, Account]] = {
            tenant: {} for tenant in ACCOUNT_TYPES
        }
        self.otps: Dict[str, OTPRecord] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    def verify_connection(self) -> None:
        self._state_path()

    @contextmanager
    def _mutation(self):
        """Persist changes made inside the block, or roll them back if the write fails."""
        accounts = {tenant: dict(collection) for tenant, collection in self.accounts.items()}
        otps = dict(self.otps)
        try:
            yield
            self._persist_state()
        except Exception:
            self.accounts = accounts
            self.otps = otps
            raise

    # accounts
    def _collection(self, tenant: str) -> Dict[str, Account]:
        try:
            return self.accounts[tenant]
        except KeyError:
            raise ValueError(f"unknown tenant {tenant!r}") from None

    def _check_unique(self, account: Account) -> None:
        for existing in self._collection(account.tenant).values():
            if existing.id == account.id:
                continue
            if existing.username == account.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if existing.email == account.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            phone = getattr(account, "phone", None)
            if phone and getattr(existing, "phone", None) == phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

    def create_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        with self._data_lock:
            collection = self._collection(account.tenant)
            if account.id in collection:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            self._check_unique(account)
            account.revision = 0
            account.created_at = account.updated_at = utcnow()
            with self._mutation():
                self.accounts[account.tenant][account.id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def get_account(self, tenant: str, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self._collection(tenant).get(account_id)
            return copy.deepcopy(account) if account else None

    def find_account(self, tenant: str, identifier: str) -> Optional[Account]:
        """Look up an account by username or email."""
        if not identifier:
            return None
        email = normalize_email(identifier)
        with self._data_lock:
            for account in self._collection(tenant).values():
                if account.username == identifier or account.email == email:
                    return copy.deepcopy(account)
        return None

    def get_account_by_email(self, tenant: str, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self._collection(tenant).values():
                if account.email == normalized:
                    return copy.deepcopy(account)
        return None

    def list_accounts(
        self,
        tenant: str,
        *,
        role: Optional[str] = None,
        college_id: Optional[str] = None,
    ) -> List[Account]:
        with self._data_lock:
            results = [
                copy.deepcopy(account)
                for account in self._collection(tenant).values()
                if (role is None or account.role == role)
                and (college_id is None or getattr(account, "college_id", None) == college_id)
            ]
        return sorted(results, key=lambda a: a.created_at)

    def save_account(self, account: Account, *, expected_revision: int) -> Account:
        """Write ``account`` if nobody else has written it since ``expected_revision``."""
        account.email = normalize_email(account.email)
        with self._data_lock:
            collection = self._collection(account.tenant)
            current = collection.get(account.id)
            if current is None:
                raise StaleRevision(account.id, expected_revision, None)
            if current.revision != expected_revision:
                raise StaleRevision(account.id, expected_revision, current.revision)
            self._check_unique(account)
            updated_at = utcnow()
            stored = copy.deepcopy(account)
            stored.revision = expected_revision + 1
            stored.updated_at = updated_at
            with self._mutation():
                self.accounts[account.tenant][account.id] = stored
            account.revision = stored.revision
            account.updated_at = updated_at
            return copy.deepcopy(stored)

    def delete_account(self, tenant: str, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self._collection(tenant):
                return False
            with self._mutation():
                self.accounts[tenant].pop(account_id)
            return True

    # one-time passcodes
    def replace_otp(self, record: OTPRecord) -> OTPRecord:
        """Store ``record`` as the only OTP for its tenant and email."""
        record.email = normalize_email(record.email)
        now = utcnow()
        with self._data_lock:
            stale = [
                otp_id
                for otp_id, existing in self.otps.items()
                if existing.is_expired(now)
                or (existing.tenant == record.tenant and existing.email == record.email)
            ]
            with self._mutation():
                for otp_id in stale:
                    self.otps.pop(otp_id, None)
                self.otps[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def latest_otp(self, tenant: str, email: str) -> Optional[OTPRecord]:
        normalized = normalize_email(email)
        with self._data_lock:
            candidates = [
                otp
                for otp in self.otps.values()
                if otp.tenant == tenant and otp.email == normalized
            ]
            if not candidates:
                return None
            return copy.deepcopy(max(candidates, key=lambda o: o.created_at))

    def delete_otp(self, otp_id: str) -> bool:
        with self._data_lock:
            if otp_id not in self.otps:
                return False
            with self._mutation():
                self.otps.pop(otp_id)
            return True

    def _persist_state(self) -> None:
        state = {
            "accounts": [
                serialize_account(account)
                for collection in self.accounts.values()
                for account in collection.values()
            ],
            "otps": [serialize_otp(otp) for otp in self.otps.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        for raw in data.get("accounts", []):
            account = deserialize_account(raw)
            self._collection(account.tenant)[account.id] = account
        self.otps = {raw["id"]: deserialize_otp(raw) for raw in data.get("otps", [])}
        return True

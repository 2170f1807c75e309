from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from uniupdates.logging import get_logger
from uniupdates.storage.common import (
    deserialize_account,
    deserialize_otp,
    normalize_email,
    serialize_account,
)
from uniupdates.storage.errors import ConstraintViolation, StaleRevision
from uniupdates.storage.models import Account, OTPRecord, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        tenant TEXT NOT NULL,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        role TEXT NOT NULL,
        college_id TEXT,
        revision INTEGER NOT NULL DEFAULT 0,
        doc JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_tenant_username_key UNIQUE (tenant, username),
        CONSTRAINT account_tenant_email_key UNIQUE (tenant, email)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_tenant_phone_key
        ON account (tenant, phone) WHERE phone IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id TEXT PRIMARY KEY,
        tenant TEXT NOT NULL,
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS otp_code_tenant_email_idx
        ON otp_code (tenant, email, created_at DESC)
    """,
)

_UNIQUE_FIELDS = {
    "account_tenant_username_key": "username",
    "account_tenant_email_key": "email",
    "account_tenant_phone_key": "phone",
}


class PostgresStore:
    """Postgres-backed credential store keeping each account as a JSONB document."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _constraint_violation(self, exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        field = _UNIQUE_FIELDS.get(constraint or "", "id")
        return ConstraintViolation(f"{field} already exists", {"field": field})

    @staticmethod
    def _index_columns(account: Account) -> tuple[Any, ...]:
        return (
            account.username,
            account.email,
            getattr(account, "phone", None),
            account.role,
            getattr(account, "college_id", None),
        )

    @staticmethod
    def _row_to_account(row: Optional[dict]) -> Optional[Account]:
        if not row:
            return None
        doc = row["doc"]
        if isinstance(doc, str):
            doc = json.loads(doc)
        # revision column is authoritative over the copy inside the document
        doc["revision"] = row["revision"]
        return deserialize_account(doc)

    # accounts
    def create_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        account.revision = 0
        account.created_at = account.updated_at = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, tenant, username, email, phone, role, college_id,
                                         revision, doc, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.tenant,
                        *self._index_columns(account),
                        account.revision,
                        json.dumps(serialize_account(account)),
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return account

    def get_account(self, tenant: str, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc, revision FROM account WHERE tenant = %s AND id = %s",
                (tenant, account_id),
            ).fetchone()
        return self._row_to_account(row)

    def find_account(self, tenant: str, identifier: str) -> Optional[Account]:
        if not identifier:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT doc, revision FROM account
                WHERE tenant = %s AND (username = %s OR email = %s)
                ORDER BY created_at
                LIMIT 1
                """,
                (tenant, identifier, normalize_email(identifier)),
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_email(self, tenant: str, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc, revision FROM account WHERE tenant = %s AND email = %s",
                (tenant, normalize_email(email)),
            ).fetchone()
        return self._row_to_account(row)

    def list_accounts(
        self,
        tenant: str,
        *,
        role: Optional[str] = None,
        college_id: Optional[str] = None,
    ) -> List[Account]:
        clauses = ["tenant = %s"]
        params: list[Any] = [tenant]
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if college_id is not None:
            clauses.append("college_id = %s")
            params.append(college_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT doc, revision FROM account WHERE {' AND '.join(clauses)} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def save_account(self, account: Account, *, expected_revision: int) -> Account:
        """Compare-and-swap write keyed on the ``revision`` column."""
        account.email = normalize_email(account.email)
        account.revision = expected_revision + 1
        account.updated_at = utcnow()
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE account
                    SET username = %s, email = %s, phone = %s, role = %s, college_id = %s,
                        revision = %s, doc = %s, updated_at = %s
                    WHERE tenant = %s AND id = %s AND revision = %s
                    """,
                    (
                        *self._index_columns(account),
                        account.revision,
                        json.dumps(serialize_account(account)),
                        account.updated_at,
                        account.tenant,
                        account.id,
                        expected_revision,
                    ),
                )
                if cur.rowcount == 0:
                    row = conn.execute(
                        "SELECT revision FROM account WHERE tenant = %s AND id = %s",
                        (account.tenant, account.id),
                    ).fetchone()
                    account.revision = expected_revision
                    raise StaleRevision(
                        account.id, expected_revision, row["revision"] if row else None
                    )
        except errors.UniqueViolation as exc:
            account.revision = expected_revision
            raise self._constraint_violation(exc) from exc
        return account

    def delete_account(self, tenant: str, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM account WHERE tenant = %s AND id = %s", (tenant, account_id)
            )
            return cur.rowcount > 0

    # one-time passcodes
    def replace_otp(self, record: OTPRecord) -> OTPRecord:
        record.email = normalize_email(record.email)
        with self._connect() as conn:
            # lazy purge of anything already past expiry
            conn.execute("DELETE FROM otp_code WHERE expires_at <= %s", (utcnow(),))
            conn.execute(
                "DELETE FROM otp_code WHERE tenant = %s AND email = %s",
                (record.tenant, record.email),
            )
            conn.execute(
                """
                INSERT INTO otp_code (id, tenant, email, purpose, code_hash, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.tenant,
                    record.email,
                    record.purpose,
                    record.code_hash,
                    record.created_at,
                    record.expires_at,
                ),
            )
        return record

    def latest_otp(self, tenant: str, email: str) -> Optional[OTPRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE tenant = %s AND email = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (tenant, normalize_email(email)),
            ).fetchone()
        if not row:
            return None
        return deserialize_otp(row)

    def delete_otp(self, otp_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE id = %s", (otp_id,))
            return cur.rowcount > 0

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleRevision(Exception):
    """Raised when a compare-and-swap write loses against a concurrent writer."""

    def __init__(self, account_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"account {account_id} revision mismatch (expected {expected}, found {actual})"
        )
        self.account_id = account_id
        self.expected = expected
        self.actual = actual


__all__ = ["ConstraintViolation", "StaleRevision"]

"""Exception hierarchy shared by the alumni record store.

Everything above the retry boundary deals only in these classes; raw
transport exceptions from ``googleapiclient``/``httplib2`` are reclassified
by :mod:`alumnistore.retry` before they reach callers.
"""
from __future__ import annotations

from typing import Optional, Sequence


class StoreError(Exception):
    """Base error raised by the alumni record store."""


class SheetsOperationError(StoreError):
    """Raised when a labeled Sheets operation cannot be completed."""

    def __init__(self, label: str, cause: Optional[BaseException] = None, message: str = "") -> None:
        self.label = label
        self.cause = cause
        detail = message or (str(cause) if cause is not None else "unknown error")
        super().__init__(f"{label} failed: {detail}")


class QuotaExceededError(SheetsOperationError):
    """Raised when the provider reports an exhausted quota.

    These are never retried inline. ``retry_after`` is the hint, in seconds,
    handed back to HTTP callers.
    """

    def __init__(
        self,
        label: str,
        cause: Optional[BaseException] = None,
        message: str = "",
        *,
        retry_after: int = 60,
    ) -> None:
        super().__init__(label, cause, message)
        self.retry_after = retry_after


class SchemaError(StoreError):
    """Raised when a tab is missing a header or a required column."""


class VerificationError(StoreError):
    """Raised when a write read-back does not match what was written."""

    def __init__(self, range_a1: str, field: str, expected: str, actual: str) -> None:
        self.range_a1 = range_a1
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Write verification failed for {range_a1}: field {field!r} "
            f"expected {expected!r} but sheet has {actual!r}"
        )


class RecordNotFoundError(StoreError):
    """Raised when a row that an update targets does not exist."""


class ForbiddenError(StoreError):
    """Raised when a caller tries to modify a record they do not own."""


class DuplicateEmailError(StoreError):
    """Raised when an email is already linked to a different record."""

    def __init__(self, email: str, owners: Sequence[str]) -> None:
        self.email = email
        self.owners = list(owners)
        super().__init__(f"Email {email} is already used by {', '.join(self.owners)}")


__all__ = [
    "DuplicateEmailError",
    "StoreError",
    "SheetsOperationError",
    "QuotaExceededError",
    "SchemaError",
    "VerificationError",
    "RecordNotFoundError",
    "ForbiddenError",
]

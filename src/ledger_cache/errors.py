"""Exception hierarchy for the cache and its row store adapter."""

from __future__ import annotations


class LedgerCacheError(Exception):
    """Base class for every error raised by the ledger cache package."""


class LoadFailure(LedgerCacheError):
    """Raised when the backing store cannot be read during a full load."""


class SchemaError(LedgerCacheError):
    """Raised when a sheet header is missing columns the records depend on."""


class MalformedRowError(LedgerCacheError):
    """Raised when a single store row has no usable entity/document key."""

    def __init__(self, row_number: int | None, reason: str) -> None:
        super().__init__(f"Malformed row {row_number}: {reason}")
        self.row_number = row_number
        self.reason = reason


class LockNotHeldError(LedgerCacheError):
    """Raised when a mutating call is made without a live lock token."""


class LockTimeoutError(LedgerCacheError):
    """Raised when the ledger lock cannot be acquired within its timeout."""

"""Enumerations and tuning constants shared across the ledger cache modules.

Keeps the sheet layout, settlement threshold, and cache defaults in one place
so the data access layer, the cache, and the business layer agree on them.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Smallest outstanding balance still treated as unsettled.
SETTLEMENT_EPSILON = Decimal("0.01")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_COMPACT_THRESHOLD = 64
DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_CREATOR = "system"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    DOCUMENTS = "Documents"
    TRANSACTIONS = "Transactions"


class DocumentStatus(str, Enum):
    """Settlement status written to the ``Status`` column of a document."""

    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"


class TransactionType(str, Enum):
    """Enumerate the transaction kinds recorded against documents."""

    PAYMENT = "PAYMENT"
    CREDIT_NOTE = "CREDIT_NOTE"
    ADJUSTMENT = "ADJUSTMENT"


class Partition(str, Enum):
    """Which half of the partitioned document set a row belongs to."""

    ACTIVE = "active"
    INACTIVE = "inactive"


DOCUMENT_COLUMNS: tuple[str, ...] = (
    "Date",
    "EntityName",
    "DocumentNumber",
    "TotalAmount",
    "TotalSettled",
    "BalanceDue",
    "Status",
    "SettledDate",
    "Origin",
    "Creator",
    "CreatedAt",
    "SystemID",
)

TRANSACTION_COLUMNS: tuple[str, ...] = (
    "Date",
    "EntityName",
    "DocumentNumber",
    "Type",
    "Amount",
    "Method",
    "Reference",
    "Origin",
    "Creator",
    "CreatedAt",
    "TransactionID",
    "LinkedDocumentID",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SETTLEMENT_EPSILON",
    "DEFAULT_TTL_SECONDS",
    "DEFAULT_COMPACT_THRESHOLD",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_CREATOR",
    "SheetName",
    "DocumentStatus",
    "TransactionType",
    "Partition",
    "DOCUMENT_COLUMNS",
    "TRANSACTION_COLUMNS",
]

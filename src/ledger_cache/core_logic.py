"""Business logic layer for invoice and payment processing.

This module contains the rules that turn invoice and payment requests into
ledger rows. It consumes the Data Access Layer (DAL) for all store I/O and the
document cache / transaction index for every lookup, and it is the only place
that holds the ledger lock around a read-write-write-through sequence.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    SETTLEMENT_EPSILON,
    DocumentStatus,
    TransactionType,
)
from .document_cache import DocumentCache, DocumentSummary, PartitionStats
from .locking import LedgerLock, LockToken
from .snapshot import Clock
from .transaction_index import TransactionIndex


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced document is unknown."""


class DuplicateDocumentError(BusinessRuleViolation):
    """Raised when an invoice would reuse an existing entity/document key."""


class DuplicateTransactionError(BusinessRuleViolation):
    """Raised when a transaction id has already been processed."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, store handles, caches and the ledger lock."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    document_store: data_manager.RowStore
    transaction_store: data_manager.RowStore
    documents: DocumentCache
    transactions: TransactionIndex
    lock: LedgerLock


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for registering a new receivable document."""

    entity_name: str
    document_number: str
    total_amount: Decimal
    document_date: Optional[date] = None
    origin: Optional[str] = None
    creator: Optional[str] = None
    system_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for settling (part of) an existing document."""

    entity_name: str
    document_number: str
    amount: Decimal
    transaction_id: Optional[str] = None
    transaction_type: TransactionType = TransactionType.PAYMENT
    method: Optional[str] = None
    reference: Optional[str] = None
    origin: Optional[str] = None
    creator: Optional[str] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    clock: Optional[Clock] = None,
) -> RuntimeContext:
    """Wire stores, caches and the lock around an already opened workbook.

    Column mappings are validated here, once, so a workbook with a broken
    header fails at startup rather than on the first lookup.

    Raises:
        SchemaError: If either sheet is missing required columns.
        KeyError: If either sheet is missing entirely.
    """

    document_store = data_manager.open_document_store(workbook)
    transaction_store = data_manager.open_transaction_store(workbook)
    document_store.columns
    transaction_store.columns

    timing = {"clock": clock} if clock is not None else {}
    documents = DocumentCache(
        document_store,
        ttl_seconds=settings.ttl_seconds,
        compact_threshold=settings.compact_threshold,
        **timing,
    )
    transactions = TransactionIndex(transaction_store, ttl_seconds=settings.ttl_seconds, **timing)
    lock = LedgerLock(timeout=settings.lock_timeout_seconds)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        document_store=document_store,
        transaction_store=transaction_store,
        documents=documents,
        transactions=transactions,
        lock=lock,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context with cold caches.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    return open_runtime_context(load_settings(config_path))


def load_settings(config_path: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Locate, read and parse ``config.ini`` without touching the workbook.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    return data_manager.parse_settings(parser, base_path=resolved_config.parent)


def open_runtime_context(settings: data_manager.ConfigSettings) -> RuntimeContext:
    """Open the configured workbook and wire a fresh context around it.

    Raises:
        FileNotFoundError: If the workbook does not exist.
    """

    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def get_document(context: RuntimeContext, entity_name: str, document_number: str) -> data_manager.DocumentRecord:
    """Resolve a document by entity and number.

    Raises:
        MissingReferenceError: If no such document is cached.
    """

    document = context.documents.find_by_key(entity_name, document_number)
    if document is None:
        log.warning("Document lookup failed for %s/%s", entity_name, document_number)
        raise MissingReferenceError(f"Unknown document: {entity_name}/{document_number}")
    return document


def outstanding_balance(context: RuntimeContext, entity_name: str) -> Decimal:
    """Total balance still due from ``entity_name``; never raises."""

    return context.documents.sum_active_balance(entity_name)


def list_open_documents(context: RuntimeContext, entity_name: str) -> List[DocumentSummary]:
    """Documents of ``entity_name`` that still carry a balance."""

    return context.documents.list_active_for_entity(entity_name)


def list_documents(context: RuntimeContext, entity_name: str, *, include_settled: bool = True) -> List[DocumentSummary]:
    return context.documents.list_all_for_entity(entity_name, include_settled)


def list_document_transactions(context: RuntimeContext, entity_name: str, document_number: str) -> List[data_manager.TransactionRecord]:
    return context.transactions.list_for_key(entity_name, document_number)


def partition_stats(context: RuntimeContext) -> PartitionStats:
    return context.documents.get_partition_stats()


def record_invoice(context: RuntimeContext, command: InvoiceCommand) -> data_manager.DocumentRecord:
    """Append a new document to the store and the cache.

    The key check, the store append and the write-through happen inside one
    held ledger lock, in that order.

    Args:
        context (RuntimeContext): Runtime context providing stores and caches.
        command (InvoiceCommand): Structured invoice intent.

    Returns:
        data_manager.DocumentRecord: The stored record, including its row
            number.

    Raises:
        BusinessRuleViolation: If the entity or document number is blank.
        DuplicateDocumentError: If the key is already in use.
        ValueError: If the total amount is negative.
        LockTimeoutError: If the ledger lock cannot be acquired.
    """

    if not command.entity_name.strip() or not command.document_number.strip():
        log.error("Invoice rejected: entity and document number are required")
        raise BusinessRuleViolation("Entity name and document number are required")
    require_nonnegative_money(command.total_amount)

    with context.lock.hold() as token:
        if context.documents.find_by_key(command.entity_name, command.document_number) is not None:
            log.warning("Duplicate invoice %s/%s rejected", command.entity_name, command.document_number)
            raise DuplicateDocumentError(
                f"Document already exists: {command.entity_name}/{command.document_number}"
            )

        timestamp = _resolve_timestamp(command.timestamp)
        record = build_document_record(
            command,
            timestamp=timestamp,
            creator=command.creator or context.settings.default_creator,
        )
        row_number = context.document_store.append_row(data_manager.serialize_document(record))
        record = replace(record, row_number=row_number)
        context.documents.append_document(token, record)

    log.info(
        "Recorded document %s/%s (total=%s, row=%d)",
        record.entity_name,
        record.document_number,
        record.total_amount,
        row_number,
    )
    return record


def record_payment(context: RuntimeContext, command: PaymentCommand) -> data_manager.TransactionRecord:
    """Apply one payment to a document under the ledger lock.

    Raises:
        DuplicateTransactionError: If the transaction id was seen before.
        MissingReferenceError: If the document is unknown.
        BusinessRuleViolation: If the payment exceeds the balance due or the
            balance cannot be read.
        ValueError: If the amount is not positive.
        LockTimeoutError: If the ledger lock cannot be acquired.
    """

    with context.lock.hold() as token:
        try:
            transaction = _apply_payment(context, token, command)
        finally:
            context.documents.invalidate_entity(token, command.entity_name)
    return transaction


def record_payments(context: RuntimeContext, commands: Iterable[PaymentCommand]) -> List[data_manager.TransactionRecord]:
    """Apply several payments inside a single lock acquisition.

    Each touched entity is invalidated once when the batch ends, including
    when a payment in the middle of the batch fails; payments applied before
    the failure stay applied.
    """

    transactions: List[data_manager.TransactionRecord] = []
    touched: dict[str, str] = {}
    with context.lock.hold() as token:
        try:
            for command in commands:
                touched.setdefault(data_manager.normalize_key(command.entity_name), command.entity_name)
                transactions.append(_apply_payment(context, token, command))
        finally:
            for entity_name in touched.values():
                context.documents.invalidate_entity(token, entity_name)
    log.info("Recorded %d payments across %d entities", len(transactions), len(touched))
    return transactions


def _apply_payment(context: RuntimeContext, token: LockToken, command: PaymentCommand) -> data_manager.TransactionRecord:
    timestamp = _resolve_timestamp(command.timestamp)
    transaction_id = command.transaction_id or _unused_transaction_id(context, timestamp)
    if context.transactions.is_duplicate(transaction_id):
        log.warning("Transaction '%s' already processed; ignoring repeat", transaction_id)
        raise DuplicateTransactionError(f"Transaction already recorded: {transaction_id}")

    require_positive_money(command.amount)
    document = get_document(context, command.entity_name, command.document_number)
    if document.balance_due is None:
        log.error("Balance for %s/%s is unreadable", document.entity_name, document.document_number)
        raise BusinessRuleViolation(
            f"Balance for {document.entity_name}/{document.document_number} cannot be read"
        )
    if command.amount > document.balance_due + SETTLEMENT_EPSILON:
        log.error(
            "Payment of %s exceeds balance %s on %s/%s",
            command.amount,
            document.balance_due,
            document.entity_name,
            document.document_number,
        )
        raise BusinessRuleViolation("Payment exceeds the outstanding balance")
    if document.row_number is None:
        raise MissingReferenceError(
            f"Document {document.entity_name}/{document.document_number} has no store row"
        )

    total_settled = document.total_settled + command.amount
    balance_due = document.balance_due - command.amount
    settled = balance_due <= SETTLEMENT_EPSILON
    status = DocumentStatus.PAID.value if settled else DocumentStatus.PARTIAL.value
    settled_date = timestamp.date().isoformat() if settled else None

    transaction = build_transaction_record(
        command,
        document,
        transaction_id=transaction_id,
        timestamp=timestamp,
        creator=command.creator or context.settings.default_creator,
    )
    row_number = context.transaction_store.append_row(data_manager.serialize_transaction(transaction))
    transaction = replace(transaction, row_number=row_number)

    store = context.document_store
    store.write_cell(document.row_number, "TotalSettled", total_settled)
    store.write_cell(document.row_number, "BalanceDue", balance_due)
    store.write_cell(document.row_number, "Status", status)
    if settled_date is not None:
        store.write_cell(document.row_number, "SettledDate", settled_date)

    context.documents.observe_balance(
        token,
        document.entity_name,
        document.document_number,
        balance_due,
        total_settled=total_settled,
        status=status,
        settled_date=settled_date,
    )
    context.transactions.append_transaction(token, transaction)
    log.info(
        "Recorded %s '%s' of %s against %s/%s (balance now %s)",
        transaction.transaction_type,
        transaction_id,
        command.amount,
        document.entity_name,
        document.document_number,
        balance_due,
    )
    return transaction


def generate_transaction_id(*, prefix: str = "TX", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _unused_transaction_id(context: RuntimeContext, when: datetime) -> str:
    """Generate an id for ``when``, suffixing a counter while it is taken."""

    base = generate_transaction_id(when=when)
    candidate = base
    suffix = 0
    while context.transactions.is_duplicate(candidate):
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate


def require_positive_money(amount: Decimal) -> None:
    """Raise ``ValueError`` unless ``amount`` is strictly positive."""

    if amount <= Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Raise ``ValueError`` if ``amount`` is negative."""

    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Caches stay valid because the workbook handle is unchanged after saving.
    """

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved edits and every cached index.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(context.settings, workbook)


def build_document_record(command: InvoiceCommand, *, timestamp: datetime, creator: str) -> data_manager.DocumentRecord:
    """Create the record for a new document from an :class:`InvoiceCommand`.

    The balance starts at the full amount; a zero-amount document is stored
    already settled.
    """

    settled = command.total_amount <= SETTLEMENT_EPSILON
    document_date = command.document_date or timestamp.date()
    return data_manager.DocumentRecord(
        date=document_date.isoformat(),
        entity_name=command.entity_name.strip(),
        document_number=command.document_number.strip(),
        total_amount=command.total_amount,
        total_settled=Decimal("0.00"),
        balance_due=command.total_amount,
        status=DocumentStatus.PAID.value if settled else DocumentStatus.UNPAID.value,
        settled_date=document_date.isoformat() if settled else None,
        origin=command.origin,
        creator=creator,
        created_at=timestamp.isoformat(),
        system_id=command.system_id or generate_transaction_id(prefix="DOC", when=timestamp),
    )


def build_transaction_record(
    command: PaymentCommand,
    document: data_manager.DocumentRecord,
    *,
    transaction_id: str,
    timestamp: datetime,
    creator: str,
) -> data_manager.TransactionRecord:
    """Create the transaction row for a payment against ``document``."""

    return data_manager.TransactionRecord(
        date=timestamp.date().isoformat(),
        entity_name=document.entity_name,
        document_number=document.document_number,
        transaction_type=TransactionType(command.transaction_type).value,
        amount=command.amount,
        method=command.method,
        reference=command.reference,
        origin=command.origin,
        creator=creator,
        created_at=timestamp.isoformat(),
        transaction_id=transaction_id,
        linked_document_id=document.system_id,
    )

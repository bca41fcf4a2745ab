"""Data access layer for the ledger cache.

This module provides low-level helpers that read from and write to the ledger
workbook. Caching and business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Row store access: the :class:`RowStore` protocol and its ``openpyxl``
   backed implementation :class:`WorkbookRowStore`.
4. Record conversion: typed document and transaction records built through a
   validated header-to-column mapping.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_COMPACT_THRESHOLD,
    DEFAULT_CREATOR,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_TTL_SECONDS,
    DOCUMENT_COLUMNS,
    TRANSACTION_COLUMNS,
    SheetName,
)
from .errors import MalformedRowError, SchemaError


CONFIG_FILE_NAME = "config.ini"
HEADER_ROW = 1
FIRST_DATA_ROW = 2


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    compact_threshold: int = DEFAULT_COMPACT_THRESHOLD
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    default_creator: str = DEFAULT_CREATOR


@dataclass(frozen=True)
class DocumentRecord:
    """In-memory view of a row from the ``Documents`` sheet.

    ``balance_due`` is ``None`` when the stored cell held something that could
    not be read as a number. ``row_number`` is the worksheet row the record
    lives on and takes no part in equality.
    """

    date: Optional[str]
    entity_name: str
    document_number: str
    total_amount: Decimal
    total_settled: Decimal
    balance_due: Optional[Decimal]
    status: str
    settled_date: Optional[str]
    origin: Optional[str]
    creator: Optional[str]
    created_at: Optional[str]
    system_id: Optional[str]
    row_number: Optional[int] = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return normalize_key(self.entity_name), normalize_key(self.document_number)


@dataclass(frozen=True)
class TransactionRecord:
    """In-memory view of a row from the ``Transactions`` sheet."""

    date: Optional[str]
    entity_name: str
    document_number: str
    transaction_type: str
    amount: Decimal
    method: Optional[str]
    reference: Optional[str]
    origin: Optional[str]
    creator: Optional[str]
    created_at: Optional[str]
    transaction_id: str
    linked_document_id: Optional[str]
    row_number: Optional[int] = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return normalize_key(self.entity_name), normalize_key(self.document_number)


@dataclass(frozen=True)
class ColumnMap:
    """Header title to 0-based column index mapping for one worksheet."""

    positions: Mapping[str, int]
    width: int

    @classmethod
    def from_header(cls, header: Sequence[object], required: Sequence[str]) -> "ColumnMap":
        """Build a mapping from a header row and validate required titles.

        Titles are compared after stripping whitespace. When a title appears
        more than once the leftmost column wins.

        Args:
            header (Sequence[object]): Raw header cell values in sheet order.
            required (Sequence[str]): Titles that must be present.

        Returns:
            ColumnMap: Mapping covering every non-blank header title.

        Raises:
            SchemaError: If any required title is missing from ``header``.
        """

        positions: dict[str, int] = {}
        for idx, title in enumerate(header):
            if title is None:
                continue
            name = str(title).strip()
            if name and name not in positions:
                positions[name] = idx

        missing = [name for name in required if name not in positions]
        if missing:
            raise SchemaError(f"Missing required columns: {', '.join(missing)}")
        return cls(positions=positions, width=len(header))

    def index(self, name: str) -> int:
        try:
            return self.positions[name]
        except KeyError as exc:
            raise KeyError(f"Unknown column: {name}") from exc

    def get(self, raw_row: Sequence[object], name: str) -> object:
        """Return the cell for ``name``; short rows read as ``None``."""

        idx = self.index(name)
        return raw_row[idx] if idx < len(raw_row) else None

    def layout(self, values: Mapping[str, object]) -> list[object]:
        """Arrange named values into a full-width worksheet row."""

        row: list[object] = [None] * self.width
        for name, value in values.items():
            row[self.index(name)] = value
        return row


class RowStore(Protocol):
    """Minimal interface the cache needs from the system of record."""

    @property
    def columns(self) -> ColumnMap:
        ...

    def read_all(self) -> list[tuple[int, Sequence[object]]]:
        ...

    def append_row(self, values: Mapping[str, object]) -> int:
        ...

    def write_cell(self, row_number: int, field: str, value: object) -> None:
        ...


class WorkbookRowStore:
    """Row store backed by a single ``openpyxl`` worksheet.

    Row numbers handed out and accepted by this class are 1-based worksheet
    rows, so row 1 is always the header.
    """

    def __init__(self, workbook: Workbook, sheet_name: str, required_columns: Sequence[str]) -> None:
        self.workbook = workbook
        self.sheet_name = sheet_name
        self._required = tuple(required_columns)
        self._columns: Optional[ColumnMap] = None

    @property
    def columns(self) -> ColumnMap:
        if self._columns is None:
            sheet = self.workbook[self.sheet_name]
            header = [cell.value for cell in sheet[HEADER_ROW]]
            self._columns = ColumnMap.from_header(header, self._required)
            log.debug("Mapped %d columns on sheet '%s'", len(self._columns.positions), self.sheet_name)
        return self._columns

    def read_all(self) -> list[tuple[int, Sequence[object]]]:
        """Return every non-empty data row together with its row number.

        The whole sheet is materialized before returning so a read error
        surfaces before any caller starts consuming partial results.
        """

        sheet = self.workbook[self.sheet_name]
        rows: list[tuple[int, Sequence[object]]] = []
        for row_number, raw in enumerate(sheet.iter_rows(min_row=FIRST_DATA_ROW, values_only=True), start=FIRST_DATA_ROW):
            # skip fully empty rows
            if any(cell is not None for cell in raw):
                rows.append((row_number, raw))
        return rows

    def append_row(self, values: Mapping[str, object]) -> int:
        sheet = self.workbook[self.sheet_name]
        sheet.append(self.columns.layout(values))
        return sheet.max_row

    def write_cell(self, row_number: int, field: str, value: object) -> None:
        if row_number < FIRST_DATA_ROW:
            raise ValueError(f"Row {row_number} is not a data row on '{self.sheet_name}'")
        sheet = self.workbook[self.sheet_name]
        sheet.cell(row=row_number, column=self.columns.index(field) + 1, value=value)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Cache]``, ``[Locking]`` and
    ``[Defaults]`` sections are optional and fall back to the package
    defaults. Relative ``DataFile`` entries are anchored at ``base_path`` (or
    the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric option cannot be parsed or is not positive.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    ttl_seconds = parser.getfloat("Cache", "TTLSeconds", fallback=DEFAULT_TTL_SECONDS)
    compact_threshold = parser.getint("Cache", "CompactThreshold", fallback=DEFAULT_COMPACT_THRESHOLD)
    lock_timeout = parser.getfloat("Locking", "TimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    default_creator = parser.get("Defaults", "Creator", fallback=DEFAULT_CREATOR)

    if ttl_seconds <= 0 or compact_threshold <= 0 or lock_timeout <= 0:
        raise ValueError("TTLSeconds, CompactThreshold and TimeoutSeconds must be positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        ttl_seconds=ttl_seconds,
        compact_threshold=compact_threshold,
        lock_timeout_seconds=lock_timeout,
        default_creator=default_creator,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def normalize_key(value: object) -> str:
    """Canonical form used for entity names and document numbers in indices."""

    if value is None:
        return ""
    return str(value).strip().casefold()


def parse_decimal(raw: object) -> Optional[Decimal]:
    """Read a worksheet cell as a finite :class:`~decimal.Decimal`.

    Numbers coming back from Excel as ``int``/``float`` go through ``str`` so
    binary float noise is not carried into the decimal. Text may carry
    thousands separators. Anything else, including formulas that were never
    evaluated, yields ``None``.
    """

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    else:
        text = str(raw).strip().replace(",", "")
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    return value if value.is_finite() else None


def _is_blank(raw: object) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def _text(raw: object) -> Optional[str]:
    if _is_blank(raw):
        return None
    if isinstance(raw, (datetime, date)):
        return raw.isoformat()
    return str(raw).strip()


def _money(raw: object) -> Decimal:
    value = parse_decimal(raw)
    return value if value is not None else Decimal("0.00")


def serialize_document(record: DocumentRecord) -> dict[str, object]:
    """Convert a document record into a column-title keyed mapping."""

    return {
        "Date": record.date,
        "EntityName": record.entity_name,
        "DocumentNumber": record.document_number,
        "TotalAmount": record.total_amount,
        "TotalSettled": record.total_settled,
        "BalanceDue": record.balance_due,
        "Status": record.status,
        "SettledDate": record.settled_date,
        "Origin": record.origin,
        "Creator": record.creator,
        "CreatedAt": record.created_at,
        "SystemID": record.system_id,
    }


def serialize_transaction(record: TransactionRecord) -> dict[str, object]:
    """Convert a transaction record into a column-title keyed mapping."""

    return {
        "Date": record.date,
        "EntityName": record.entity_name,
        "DocumentNumber": record.document_number,
        "Type": record.transaction_type,
        "Amount": record.amount,
        "Method": record.method,
        "Reference": record.reference,
        "Origin": record.origin,
        "Creator": record.creator,
        "CreatedAt": record.created_at,
        "TransactionID": record.transaction_id,
        "LinkedDocumentID": record.linked_document_id,
    }


def deserialize_document(raw_row: Sequence[object], columns: ColumnMap, *, row_number: Optional[int] = None) -> DocumentRecord:
    """Convert a raw worksheet row into a strongly typed document record.

    Money columns become :class:`~decimal.Decimal` values defaulting to zero.
    A blank ``BalanceDue`` is derived as ``TotalAmount - TotalSettled``; a
    non-blank value that is not numeric is kept as ``None`` so aggregation can
    flag it.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.
        columns (ColumnMap): Validated mapping for the documents sheet.
        row_number (int | None): Worksheet row the values came from.

    Returns:
        DocumentRecord: Dataclass reflecting the row contents.

    Raises:
        MalformedRowError: If the entity name or document number is blank.
    """

    entity_name = _text(columns.get(raw_row, "EntityName"))
    document_number = _text(columns.get(raw_row, "DocumentNumber"))
    if not entity_name:
        raise MalformedRowError(row_number, "blank EntityName")
    if not document_number:
        raise MalformedRowError(row_number, "blank DocumentNumber")

    total_amount = _money(columns.get(raw_row, "TotalAmount"))
    total_settled = _money(columns.get(raw_row, "TotalSettled"))
    balance_raw = columns.get(raw_row, "BalanceDue")
    if _is_blank(balance_raw):
        balance_due: Optional[Decimal] = total_amount - total_settled
    else:
        balance_due = parse_decimal(balance_raw)

    return DocumentRecord(
        date=_text(columns.get(raw_row, "Date")),
        entity_name=entity_name,
        document_number=document_number,
        total_amount=total_amount,
        total_settled=total_settled,
        balance_due=balance_due,
        status=_text(columns.get(raw_row, "Status")) or "",
        settled_date=_text(columns.get(raw_row, "SettledDate")),
        origin=_text(columns.get(raw_row, "Origin")),
        creator=_text(columns.get(raw_row, "Creator")),
        created_at=_text(columns.get(raw_row, "CreatedAt")),
        system_id=_text(columns.get(raw_row, "SystemID")),
        row_number=row_number,
    )


def deserialize_transaction(raw_row: Sequence[object], columns: ColumnMap, *, row_number: Optional[int] = None) -> TransactionRecord:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Raises:
        MalformedRowError: If the transaction id or entity name is blank. A
            blank document number is allowed for unapplied receipts.
    """

    transaction_id = _text(columns.get(raw_row, "TransactionID"))
    entity_name = _text(columns.get(raw_row, "EntityName"))
    if not transaction_id:
        raise MalformedRowError(row_number, "blank TransactionID")
    if not entity_name:
        raise MalformedRowError(row_number, "blank EntityName")

    return TransactionRecord(
        date=_text(columns.get(raw_row, "Date")),
        entity_name=entity_name,
        document_number=_text(columns.get(raw_row, "DocumentNumber")) or "",
        transaction_type=_text(columns.get(raw_row, "Type")) or "",
        amount=_money(columns.get(raw_row, "Amount")),
        method=_text(columns.get(raw_row, "Method")),
        reference=_text(columns.get(raw_row, "Reference")),
        origin=_text(columns.get(raw_row, "Origin")),
        creator=_text(columns.get(raw_row, "Creator")),
        created_at=_text(columns.get(raw_row, "CreatedAt")),
        transaction_id=transaction_id,
        linked_document_id=_text(columns.get(raw_row, "LinkedDocumentID")),
        row_number=row_number,
    )


def open_document_store(workbook: Workbook) -> WorkbookRowStore:
    return WorkbookRowStore(workbook, SheetName.DOCUMENTS.value, DOCUMENT_COLUMNS)


def open_transaction_store(workbook: Workbook) -> WorkbookRowStore:
    return WorkbookRowStore(workbook, SheetName.TRANSACTIONS.value, TRANSACTION_COLUMNS)

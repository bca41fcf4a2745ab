"""Shared pytest fixtures and utilities for ledger cache tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from ledger_cache import constants, core_logic, data_manager  # noqa: E402
from ledger_cache.document_cache import DocumentCache  # noqa: E402
from ledger_cache.locking import LedgerLock, LockToken  # noqa: E402
from ledger_cache.setup_excel import create_master_workbook  # noqa: E402
from ledger_cache.transaction_index import TransactionIndex  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
TTL_SECONDS = 300.0
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Cache]\n"
    "TTLSeconds = {ttl_seconds}\n"
    "CompactThreshold = {compact_threshold}\n\n"
    "[Locking]\n"
    "TimeoutSeconds = {lock_timeout}\n\n"
    "[Defaults]\n"
    "Creator = tester\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


class ManualClock:
    """Monotonic clock stand-in advanced explicitly by tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class InMemoryRowStore:
    """Row store double that keeps rows in a list and counts full reads."""

    def __init__(self, header: Sequence[str]) -> None:
        self.columns = data_manager.ColumnMap.from_header(list(header), header)
        self.rows: list[list[object]] = []
        self.read_calls = 0
        self.fail_reads = False

    def read_all(self) -> list[tuple[int, Sequence[object]]]:
        self.read_calls += 1
        if self.fail_reads:
            raise OSError("store unavailable")
        return [
            (index + 2, tuple(row))
            for index, row in enumerate(self.rows)
            if any(cell is not None for cell in row)
        ]

    def append_row(self, values: Mapping[str, object]) -> int:
        self.rows.append(self.columns.layout(values))
        return len(self.rows) + 1

    def write_cell(self, row_number: int, field: str, value: object) -> None:
        self.rows[row_number - 2][self.columns.index(field)] = value

    def cell(self, row_number: int, field: str) -> object:
        return self.rows[row_number - 2][self.columns.index(field)]


def make_document(
    entity_name: str,
    document_number: str,
    balance_due: Optional[Decimal | str],
    *,
    total_amount: Optional[Decimal | str] = None,
    row_number: Optional[int] = None,
) -> data_manager.DocumentRecord:
    """Build a document record with sensible defaults for the other columns."""

    balance = Decimal(balance_due) if isinstance(balance_due, str) else balance_due
    total = Decimal(total_amount) if total_amount is not None else (balance if balance is not None else Decimal("0"))
    return data_manager.DocumentRecord(
        date="2026-01-15",
        entity_name=entity_name,
        document_number=document_number,
        total_amount=total,
        total_settled=total - balance if balance is not None else Decimal("0"),
        balance_due=balance,
        status=constants.DocumentStatus.UNPAID.value,
        settled_date=None,
        origin="test",
        creator="tester",
        created_at="2026-01-15T09:00:00+00:00",
        system_id=f"DOC-{document_number}",
        row_number=row_number,
    )


def make_transaction(
    transaction_id: str,
    entity_name: str = "Acme",
    document_number: str = "INV-1",
    amount: Decimal | str = "10.00",
) -> data_manager.TransactionRecord:
    """Build a payment transaction record."""

    return data_manager.TransactionRecord(
        date="2026-01-20",
        entity_name=entity_name,
        document_number=document_number,
        transaction_type=constants.TransactionType.PAYMENT.value,
        amount=Decimal(amount),
        method="transfer",
        reference=None,
        origin="test",
        creator="tester",
        created_at="2026-01-20T10:00:00+00:00",
        transaction_id=transaction_id,
        linked_document_id=f"DOC-{document_number}",
    )


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def document_factory() -> Callable[..., data_manager.DocumentRecord]:
    return make_document


@pytest.fixture
def transaction_factory() -> Callable[..., data_manager.TransactionRecord]:
    return make_transaction


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def document_store() -> InMemoryRowStore:
    return InMemoryRowStore(constants.DOCUMENT_COLUMNS)


@pytest.fixture
def transaction_store() -> InMemoryRowStore:
    return InMemoryRowStore(constants.TRANSACTION_COLUMNS)


@pytest.fixture
def seed_document(document_store: InMemoryRowStore) -> Callable[..., data_manager.DocumentRecord]:
    """Write a document straight into the in-memory store, bypassing the cache."""

    def _seed(entity_name: str, document_number: str, balance_due: Optional[Decimal | str], **kwargs) -> data_manager.DocumentRecord:
        record = make_document(entity_name, document_number, balance_due, **kwargs)
        row_number = document_store.append_row(data_manager.serialize_document(record))
        return replace(record, row_number=row_number)

    return _seed


@pytest.fixture
def document_cache(document_store: InMemoryRowStore, clock: ManualClock) -> DocumentCache:
    return DocumentCache(document_store, ttl_seconds=TTL_SECONDS, clock=clock)


@pytest.fixture
def transaction_index(transaction_store: InMemoryRowStore, clock: ManualClock) -> TransactionIndex:
    return TransactionIndex(transaction_store, ttl_seconds=TTL_SECONDS, clock=clock)


@pytest.fixture
def ledger_lock() -> LedgerLock:
    return LedgerLock("test", timeout=0.05)


@pytest.fixture
def token(ledger_lock: LedgerLock) -> Iterator[LockToken]:
    """A live lock token for the duration of one test."""

    with ledger_lock.hold() as held:
        yield held


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger.xlsx",
        **kwargs,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True, **kwargs)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        ttl_seconds: float = TTL_SECONDS,
        compact_threshold: int = 64,
        lock_timeout: float = 0.05,
        **workbook_kwargs,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", **workbook_kwargs)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                ttl_seconds=ttl_seconds,
                compact_threshold=compact_threshold,
                lock_timeout=lock_timeout,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ledger-cache", description="Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")

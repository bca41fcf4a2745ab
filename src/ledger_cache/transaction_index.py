"""Four-way index over the ``Transactions`` sheet for duplicate detection.

Transactions are indexed by transaction id, document number, entity and the
composite ``(entity, document number)`` key. :meth:`TransactionIndex.is_duplicate`
is a single dictionary membership test and is the guard against processing
the same logical edit twice.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Sequence

from . import log
from .constants import DEFAULT_TTL_SECONDS
from .data_manager import (
    ColumnMap,
    RowStore,
    TransactionRecord,
    deserialize_transaction,
    normalize_key,
)
from .errors import MalformedRowError
from .locking import LockToken, require_token
from .snapshot import Clock, TimedSnapshotCache


def normalize_transaction_id(value: Optional[str]) -> str:
    """Transaction ids are compared exactly, apart from surrounding whitespace."""

    if value is None:
        return ""
    return str(value).strip()


@dataclass
class TransactionSnapshot:
    loaded_at: float
    rows: list[TransactionRecord] = field(default_factory=list)
    by_id: dict[str, int] = field(default_factory=dict)
    by_document: dict[str, list[int]] = field(default_factory=dict)
    by_entity: dict[str, list[int]] = field(default_factory=dict)
    by_composite: dict[tuple[str, str], list[int]] = field(default_factory=dict)
    skipped_rows: int = 0
    duplicate_ids: int = 0


class TransactionIndex(TimedSnapshotCache[TransactionSnapshot]):
    """Indexed view of the transaction log held in a row store."""

    label = "transaction index"

    def __init__(
        self,
        store: RowStore,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__(store, ttl_seconds=ttl_seconds, clock=clock)

    def _build(self, columns: ColumnMap, raw_rows: Sequence[tuple[int, Sequence[object]]], loaded_at: float) -> TransactionSnapshot:
        snapshot = TransactionSnapshot(loaded_at=loaded_at)
        for row_number, raw in raw_rows:
            try:
                record = deserialize_transaction(raw, columns, row_number=row_number)
            except MalformedRowError as exc:
                snapshot.skipped_rows += 1
                log.warning("Skipping transaction row %s: %s", row_number, exc.reason)
                continue
            self._insert(snapshot, record)

        log.info(
            "Loaded %d transactions (%d skipped, %d repeated ids)",
            len(snapshot.rows),
            snapshot.skipped_rows,
            snapshot.duplicate_ids,
        )
        return snapshot

    def _insert(self, snapshot: TransactionSnapshot, record: TransactionRecord) -> int:
        position = len(snapshot.rows)
        snapshot.rows.append(record)

        transaction_id = normalize_transaction_id(record.transaction_id)
        if transaction_id in snapshot.by_id:
            snapshot.duplicate_ids += 1
            log.warning(
                "Transaction id '%s' appears again at row %s; keeping the first occurrence",
                transaction_id,
                record.row_number,
            )
        else:
            snapshot.by_id[transaction_id] = position

        entity, number = record.key
        snapshot.by_entity.setdefault(entity, []).append(position)
        if number:
            snapshot.by_document.setdefault(number, []).append(position)
            snapshot.by_composite.setdefault((entity, number), []).append(position)
        return position

    def is_duplicate(self, transaction_id: Optional[str]) -> bool:
        """Whether ``transaction_id`` has already been recorded.

        Blank ids are never duplicates and do not trigger a load.
        """

        transaction_id = normalize_transaction_id(transaction_id)
        if not transaction_id:
            return False
        return transaction_id in self._ensure_fresh().by_id

    def find_by_id(self, transaction_id: Optional[str]) -> Optional[TransactionRecord]:
        transaction_id = normalize_transaction_id(transaction_id)
        if not transaction_id:
            return None
        snapshot = self._ensure_fresh()
        position = snapshot.by_id.get(transaction_id)
        return snapshot.rows[position] if position is not None else None

    def list_for_document(self, document_number: Optional[str]) -> list[TransactionRecord]:
        """Transactions referencing ``document_number`` for any entity."""

        number = normalize_key(document_number)
        if not number:
            return []
        snapshot = self._ensure_fresh()
        return [snapshot.rows[position] for position in snapshot.by_document.get(number, ())]

    def list_for_entity(self, entity_name: Optional[str]) -> list[TransactionRecord]:
        entity = normalize_key(entity_name)
        if not entity:
            return []
        snapshot = self._ensure_fresh()
        return [snapshot.rows[position] for position in snapshot.by_entity.get(entity, ())]

    def list_for_key(self, entity_name: Optional[str], document_number: Optional[str]) -> list[TransactionRecord]:
        key = (normalize_key(entity_name), normalize_key(document_number))
        if not all(key):
            return []
        snapshot = self._ensure_fresh()
        return [snapshot.rows[position] for position in snapshot.by_composite.get(key, ())]

    def total_for_key(self, entity_name: Optional[str], document_number: Optional[str]) -> Decimal:
        """Sum of transaction amounts recorded against one document."""

        return sum(
            (record.amount for record in self.list_for_key(entity_name, document_number)),
            Decimal("0"),
        )

    def append_transaction(self, token: LockToken, record: TransactionRecord) -> int:
        """Index a transaction that has just been written to the store.

        The append is unconditional; callers consult :meth:`is_duplicate`
        before writing the store.

        Raises:
            LockNotHeldError: If ``token`` is not a live lock token.
            MalformedRowError: If the record has no transaction id.
        """

        require_token(token)
        transaction_id = normalize_transaction_id(record.transaction_id)
        if not transaction_id:
            raise MalformedRowError(record.row_number, "blank TransactionID on append")

        loads_before = self.loads
        snapshot = self._ensure_fresh()
        if self.loads != loads_before and transaction_id in snapshot.by_id:
            return snapshot.by_id[transaction_id]

        position = self._insert(snapshot, record)
        log.debug("Appended transaction '%s' at position %d", transaction_id, position)
        return position

"""Read-optimized index over the ``Documents`` sheet.

One full scan builds four structures:

* ``rows``: every document record by position (``None`` marks a tombstone).
* ``primary_index``: ``(entity, document number) -> position``.
* ``entity_index``: ``entity -> [position, ...]`` for every document.
* an :class:`ActivePartition` holding only documents with an outstanding
  balance above :data:`~ledger_cache.constants.SETTLEMENT_EPSILON`.

Keys are normalized with :func:`~ledger_cache.data_manager.normalize_key`.
Lookups are O(1) and per-entity walks touch only that entity's positions.
New documents and balance changes are written through after the caller has
written the store, inside the ledger lock; the cache itself never talks back
to the store except for full loads.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Iterator, Optional, Sequence

from . import log
from .constants import (
    DEFAULT_COMPACT_THRESHOLD,
    DEFAULT_TTL_SECONDS,
    SETTLEMENT_EPSILON,
    Partition,
)
from .data_manager import (
    ColumnMap,
    DocumentRecord,
    RowStore,
    deserialize_document,
    normalize_key,
)
from .errors import LoadFailure, MalformedRowError
from .locking import LockToken, require_token
from .snapshot import Clock, TimedSnapshotCache


SKIP_TOMBSTONE = "TOMBSTONE"
SKIP_DANGLING = "DANGLING_POSITION"
SKIP_INDEX_MISMATCH = "INDEX_MISMATCH"
SKIP_UNPARSEABLE_BALANCE = "UNPARSEABLE_BALANCE"
SKIP_PROCESSING_ERROR = "PROCESSING_ERROR"

DocumentKey = tuple[str, str]


@dataclass(frozen=True)
class DocumentSummary:
    """Lightweight listing entry tagged with the partition it was found in."""

    entity_name: str
    document_number: str
    total_amount: Decimal
    total_settled: Decimal
    balance_due: Optional[Decimal]
    status: str
    partition: Partition
    position: int


@dataclass(frozen=True)
class PartitionStats:
    """Diagnostic counters for the active/inactive split."""

    active_count: int
    inactive_count: int
    transitions: int
    tombstones: int
    memory_reduction_estimate: float


class ActivePartition:
    """Arena of active document positions plus a per-entity slot index.

    ``active_rows`` is append-only between compactions: removing a document
    writes ``None`` into its slot instead of shifting the array, so both
    admission and eviction are O(1). :meth:`compact` rebuilds the arena
    without tombstones.
    """

    def __init__(self) -> None:
        self.active_rows: list[Optional[int]] = []
        self.by_entity: dict[str, dict[int, int]] = {}
        self.tombstones = 0
        self.transitions = 0

    def __len__(self) -> int:
        return len(self.active_rows) - self.tombstones

    def contains(self, entity: str, position: int) -> bool:
        return position in self.by_entity.get(entity, ())

    def admit(self, entity: str, position: int, *, transition: bool = False) -> bool:
        slots = self.by_entity.setdefault(entity, {})
        if position in slots:
            return False
        slots[position] = len(self.active_rows)
        self.active_rows.append(position)
        if transition:
            self.transitions += 1
        return True

    def evict(self, entity: str, position: int, *, transition: bool = False) -> bool:
        slots = self.by_entity.get(entity)
        if not slots or position not in slots:
            return False
        slot = slots.pop(position)
        if not slots:
            del self.by_entity[entity]
        self.active_rows[slot] = None
        self.tombstones += 1
        if transition:
            self.transitions += 1
        return True

    def slots_for(self, entity: str) -> list[Optional[int]]:
        """Arena contents for one entity, in admission order."""

        slots = self.by_entity.get(entity)
        if not slots:
            return []
        return [self.active_rows[slot] for slot in slots.values()]

    def replace_entity(self, entity: str, positions: Sequence[int]) -> int:
        """Make ``positions`` the active set of ``entity``.

        Only positions that left the set are tombstoned and only new ones are
        admitted; slots that stay keep their place in the arena.

        Returns:
            int: Number of slots evicted or admitted.
        """

        wanted = set(positions)
        current = self.by_entity.get(entity, {})
        changes = 0
        for position in [p for p in current if p not in wanted]:
            self.evict(entity, position)
            changes += 1
        for position in positions:
            if self.admit(entity, position):
                changes += 1
        return changes

    def compact(self) -> int:
        """Rebuild the arena without tombstones and return how many were reclaimed."""

        live = [position for position in self.active_rows if position is not None]
        new_slots = {position: slot for slot, position in enumerate(live)}
        for slots in self.by_entity.values():
            for position in slots:
                slots[position] = new_slots[position]
        reclaimed = self.tombstones
        self.active_rows = live
        self.tombstones = 0
        return reclaimed


@dataclass
class DocumentSnapshot:
    """Everything derived from one full scan of the documents sheet."""

    loaded_at: float
    rows: list[Optional[DocumentRecord]] = field(default_factory=list)
    primary_index: dict[DocumentKey, int] = field(default_factory=dict)
    entity_index: dict[str, list[int]] = field(default_factory=dict)
    partition: ActivePartition = field(default_factory=ActivePartition)
    skipped_rows: int = 0
    duplicate_keys: int = 0


class DocumentCache(TimedSnapshotCache[DocumentSnapshot]):
    """Indexed, partitioned view of the documents held in a row store.

    Read methods are safe to call at any time. :meth:`append_document`,
    :meth:`observe_balance`, :meth:`invalidate_all`, :meth:`invalidate_entity`
    and :meth:`compact` require a live :class:`~ledger_cache.locking.LockToken`
    and must only be called after the matching store write has completed.
    """

    label = "document cache"

    def __init__(
        self,
        store: RowStore,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        compact_threshold: int = DEFAULT_COMPACT_THRESHOLD,
        epsilon: Decimal = SETTLEMENT_EPSILON,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__(store, ttl_seconds=ttl_seconds, clock=clock)
        self.compact_threshold = compact_threshold
        self.epsilon = epsilon
        self._totals: dict[str, Decimal] = {}

    # ------------------------------------------------------------------
    # Loading and partition maintenance
    # ------------------------------------------------------------------

    def is_active_balance(self, balance_due: Optional[Decimal]) -> bool:
        """Whether a balance keeps its document in the active partition.

        An unreadable balance (``None``) counts as active so the document stays
        visible to aggregation, which reports it as skipped.
        """

        return balance_due is None or balance_due > self.epsilon

    def _build(self, columns: ColumnMap, raw_rows: Sequence[tuple[int, Sequence[object]]], loaded_at: float) -> DocumentSnapshot:
        snapshot = DocumentSnapshot(loaded_at=loaded_at)
        for row_number, raw in raw_rows:
            try:
                record = deserialize_document(raw, columns, row_number=row_number)
            except MalformedRowError as exc:
                snapshot.skipped_rows += 1
                log.warning("Skipping document row %s: %s", row_number, exc.reason)
                continue
            self._insert(snapshot, record)

        log.info(
            "Loaded %d documents (%d active, %d skipped, %d duplicate keys)",
            len(snapshot.primary_index),
            len(snapshot.partition),
            snapshot.skipped_rows,
            snapshot.duplicate_keys,
        )
        return snapshot

    def _on_install(self) -> None:
        self._totals.clear()

    def _on_drop(self) -> None:
        self._totals.clear()

    def _insert(self, snapshot: DocumentSnapshot, record: DocumentRecord) -> int:
        key = record.key
        entity = key[0]
        position = len(snapshot.rows)
        snapshot.rows.append(record)

        shadowed = snapshot.primary_index.get(key)
        if shadowed is not None:
            snapshot.duplicate_keys += 1
            log.warning(
                "DuplicateKeyOnAppend: document %s/%s at position %d shadows position %d",
                record.entity_name,
                record.document_number,
                position,
                shadowed,
            )
            self._withdraw(snapshot, entity, shadowed)

        snapshot.primary_index[key] = position
        snapshot.entity_index.setdefault(entity, []).append(position)
        if self.is_active_balance(record.balance_due):
            snapshot.partition.admit(entity, position)
        return position

    def _withdraw(self, snapshot: DocumentSnapshot, entity: str, position: int) -> None:
        positions = snapshot.entity_index.get(entity)
        if positions and position in positions:
            positions.remove(position)
        snapshot.partition.evict(entity, position)

    def _reclassify(self, snapshot: DocumentSnapshot, entity: str, position: int, balance_due: Optional[Decimal]) -> None:
        partition = snapshot.partition
        should_be_active = self.is_active_balance(balance_due)
        is_active = partition.contains(entity, position)
        if should_be_active and not is_active:
            partition.admit(entity, position, transition=True)
            log.debug("Document at position %d moved to the active partition", position)
        elif is_active and not should_be_active:
            partition.evict(entity, position, transition=True)
            log.debug("Document at position %d moved to the inactive partition", position)
            self._maybe_compact(snapshot)

    def _maybe_compact(self, snapshot: DocumentSnapshot) -> None:
        if snapshot.partition.tombstones >= self.compact_threshold:
            reclaimed = snapshot.partition.compact()
            log.info("Compacted active partition, reclaimed %d tombstones", reclaimed)

    def compact(self, token: LockToken) -> int:
        """Rebuild the active arena without tombstones.

        Returns:
            int: Number of tombstoned slots reclaimed (0 when nothing is
                loaded).
        """

        require_token(token)
        if self._snapshot is None:
            return 0
        reclaimed = self._snapshot.partition.compact()
        log.info("Compacted active partition on request, reclaimed %d tombstones", reclaimed)
        return reclaimed

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _resolve(self, snapshot: DocumentSnapshot, entity: str, position: Optional[int]) -> tuple[Optional[DocumentRecord], Optional[str]]:
        """Fetch the row an entity index points at, re-checking its key."""

        if position is None:
            return None, SKIP_TOMBSTONE
        if not 0 <= position < len(snapshot.rows):
            log.warning("Entity '%s' references missing position %d", entity, position)
            return None, SKIP_DANGLING
        record = snapshot.rows[position]
        if record is None:
            return None, SKIP_TOMBSTONE
        actual = record.key[0]
        if actual != entity:
            log.warning(
                "IndexMismatch: row %s (%s/%s) reached via entity index; expected '%s', found '%s'",
                record.row_number,
                record.entity_name,
                record.document_number,
                entity,
                actual,
            )
            return None, SKIP_INDEX_MISMATCH
        return record, None

    def find_by_key(self, entity_name: Optional[str], document_number: Optional[str]) -> Optional[DocumentRecord]:
        """Return the document stored under ``(entity_name, document_number)``.

        Both parts are stripped and case-folded. Blank input returns ``None``
        without touching (or loading) the cache.

        Raises:
            LoadFailure: If a load is needed and the store cannot be read.
        """

        entity = normalize_key(entity_name)
        number = normalize_key(document_number)
        if not entity or not number:
            return None

        snapshot = self._ensure_fresh()
        position = snapshot.primary_index.get((entity, number))
        if position is None:
            return None
        return snapshot.rows[position]

    def _iter_active(self, snapshot: DocumentSnapshot, entity: str) -> Iterator[tuple[Optional[int], Optional[DocumentRecord], Optional[str]]]:
        for position in snapshot.partition.slots_for(entity):
            record, reason = self._resolve(snapshot, entity, position)
            yield position, record, reason

    def list_active_for_entity(self, entity_name: Optional[str]) -> list[DocumentSummary]:
        """Summaries of the entity's documents that still carry a balance.

        Unknown or blank entities yield an empty list. Tombstoned slots are
        skipped silently.
        """

        entity = normalize_key(entity_name)
        if not entity:
            return []

        snapshot = self._ensure_fresh()
        summaries = []
        for position, record, _reason in self._iter_active(snapshot, entity):
            if record is None:
                continue
            summaries.append(_summarize(record, position, Partition.ACTIVE))
        return summaries

    def list_all_for_entity(self, entity_name: Optional[str], include_settled: bool = True) -> list[DocumentSummary]:
        """Summaries of every document for the entity, tagged by partition.

        Args:
            entity_name (str | None): Entity to list; matched case-insensitively.
            include_settled (bool): When ``False`` inactive (settled)
                documents are left out.

        Returns:
            list[DocumentSummary]: Entries in the order documents were loaded
                or appended.
        """

        entity = normalize_key(entity_name)
        if not entity:
            return []

        snapshot = self._ensure_fresh()
        summaries = []
        for position in snapshot.entity_index.get(entity, ()):
            record, _reason = self._resolve(snapshot, entity, position)
            if record is None:
                continue
            if snapshot.partition.contains(entity, position):
                partition = Partition.ACTIVE
            elif include_settled:
                partition = Partition.INACTIVE
            else:
                continue
            summaries.append(_summarize(record, position, partition))
        return summaries

    def sum_active_balance(self, entity_name: Optional[str]) -> Decimal:
        """Total outstanding balance across the entity's active documents.

        Never raises. Rows that cannot contribute are skipped with a reason
        code; one warning per call summarizes them. When the store cannot be
        loaded the failure is logged and ``Decimal("0")`` is returned.
        """

        entity = normalize_key(entity_name)
        if not entity:
            return Decimal("0")

        try:
            snapshot = self._ensure_fresh()
        except LoadFailure as exc:
            log.error("Active balance for '%s' unavailable: %s", entity_name, exc)
            return Decimal("0")

        cached = self._totals.get(entity)
        if cached is not None:
            return cached

        total = Decimal("0")
        skipped: Counter[str] = Counter()
        for position in snapshot.partition.slots_for(entity):
            try:
                record, reason = self._resolve(snapshot, entity, position)
                if record is None:
                    skipped[reason or SKIP_PROCESSING_ERROR] += 1
                    log.debug("Skipped active slot %s for '%s': %s", position, entity, reason)
                    continue
                if record.balance_due is None:
                    skipped[SKIP_UNPARSEABLE_BALANCE] += 1
                    log.debug(
                        "Skipped %s/%s (row %s): %s",
                        record.entity_name,
                        record.document_number,
                        record.row_number,
                        SKIP_UNPARSEABLE_BALANCE,
                    )
                    continue
                total += record.balance_due
            except Exception as exc:
                skipped[SKIP_PROCESSING_ERROR] += 1
                log.debug("Skipped active slot %s for '%s': %s (%s)", position, entity, SKIP_PROCESSING_ERROR, exc)

        if skipped:
            log.warning(
                "Active balance for '%s' is best-effort: skipped %d row(s) [%s]",
                entity_name,
                sum(skipped.values()),
                ", ".join(f"{reason}={count}" for reason, count in sorted(skipped.items())),
            )
        else:
            self._totals[entity] = total
        return total

    def get_partition_stats(self) -> PartitionStats:
        snapshot = self._ensure_fresh()
        total = len(snapshot.primary_index)
        active = len(snapshot.partition)
        inactive = max(total - active, 0)
        return PartitionStats(
            active_count=active,
            inactive_count=inactive,
            transitions=snapshot.partition.transitions,
            tombstones=snapshot.partition.tombstones,
            memory_reduction_estimate=(inactive / total) if total else 0.0,
        )

    # ------------------------------------------------------------------
    # Write-through and invalidation
    # ------------------------------------------------------------------

    def append_document(self, token: LockToken, record: DocumentRecord) -> int:
        """Index a document that has just been written to the store.

        No duplicate check is made; callers look the key up before writing
        the store. A repeated key shadows the earlier position (last write
        wins) and the earlier row drops out of the entity listings.

        Returns:
            int: Position of the record in the cache.

        Raises:
            LockNotHeldError: If ``token`` is not a live lock token.
            MalformedRowError: If the record has a blank key.
        """

        require_token(token)
        entity, number = record.key
        if not entity or not number:
            raise MalformedRowError(record.row_number, "blank entity or document number on append")

        loads_before = self.loads
        snapshot = self._ensure_fresh()
        if self.loads != loads_before:
            existing = snapshot.primary_index.get(record.key)
            if existing is not None:
                log.debug("Document %s/%s already present after reload", record.entity_name, record.document_number)
                return existing

        position = self._insert(snapshot, record)
        self._totals.pop(entity, None)
        log.debug("Appended document %s/%s at position %d", record.entity_name, record.document_number, position)
        return position

    def observe_balance(
        self,
        token: LockToken,
        entity_name: str,
        document_number: str,
        balance_due: Optional[Decimal],
        *,
        total_settled: Optional[Decimal] = None,
        status: Optional[str] = None,
        settled_date: Optional[str] = None,
    ) -> Optional[DocumentRecord]:
        """Record a freshly read balance and move the document between partitions.

        The store stays the source of truth for derived amounts; this only
        mirrors what the caller has just written or read there.

        Returns:
            DocumentRecord | None: The updated record, or ``None`` when the
                document is not cached.
        """

        require_token(token)
        key = (normalize_key(entity_name), normalize_key(document_number))
        snapshot = self._ensure_fresh()
        position = snapshot.primary_index.get(key)
        current = snapshot.rows[position] if position is not None else None
        if position is None or current is None:
            log.warning("Balance observed for uncached document %s/%s", entity_name, document_number)
            return None

        changes: dict[str, object] = {"balance_due": balance_due}
        if total_settled is not None:
            changes["total_settled"] = total_settled
        if status is not None:
            changes["status"] = status
        if settled_date is not None:
            changes["settled_date"] = settled_date

        updated = replace(current, **changes)
        snapshot.rows[position] = updated
        self._reclassify(snapshot, key[0], position, updated.balance_due)
        self._totals.pop(key[0], None)
        return updated

    def invalidate_entity(self, token: LockToken, entity_name: str) -> None:
        """Re-derive one entity's index slices from the cached rows.

        The rest of the snapshot is left alone. Positions whose row no longer
        belongs to the entity, or that are shadowed in the primary index, are
        dropped; the active slice is rebuilt from current balances and the
        memoized balance total is discarded.
        """

        require_token(token)
        entity = normalize_key(entity_name)
        self._totals.pop(entity, None)
        snapshot = self._snapshot
        if snapshot is None or not entity:
            return
        if self.is_expired():
            self._drop()
            return

        kept: list[int] = []
        active: list[int] = []
        for position in snapshot.entity_index.get(entity, ()):
            record, _reason = self._resolve(snapshot, entity, position)
            if record is None or snapshot.primary_index.get(record.key) != position:
                continue
            kept.append(position)
            if self.is_active_balance(record.balance_due):
                active.append(position)

        if kept:
            snapshot.entity_index[entity] = kept
        else:
            snapshot.entity_index.pop(entity, None)
        changes = snapshot.partition.replace_entity(entity, active)
        if changes:
            self._maybe_compact(snapshot)
        log.debug(
            "Re-derived index slices for '%s' (%d documents, %d active, %d slot changes)",
            entity,
            len(kept),
            len(active),
            changes,
        )


def _summarize(record: DocumentRecord, position: int, partition: Partition) -> DocumentSummary:
    return DocumentSummary(
        entity_name=record.entity_name,
        document_number=record.document_number,
        total_amount=record.total_amount,
        total_settled=record.total_settled,
        balance_due=record.balance_due,
        status=record.status,
        partition=partition,
        position=position,
    )

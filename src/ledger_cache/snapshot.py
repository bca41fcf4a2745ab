"""Time-bounded, store-backed snapshot shared by the document and transaction caches.

A snapshot is built by one full scan of a :class:`~ledger_cache.data_manager.RowStore`
and lives until it is invalidated or its TTL runs out. Subclasses decide what
a snapshot contains; this module owns the load/expire/drop lifecycle.
"""

from __future__ import annotations

import time
from typing import Callable, Generic, Optional, Sequence, TypeVar

from . import log
from .constants import DEFAULT_TTL_SECONDS
from .data_manager import ColumnMap, RowStore
from .errors import LoadFailure
from .locking import LockToken, require_token


SnapshotT = TypeVar("SnapshotT")
Clock = Callable[[], float]


class TimedSnapshotCache(Generic[SnapshotT]):
    """Lazily loaded snapshot guarded by a TTL check on every access."""

    label = "snapshot"

    def __init__(
        self,
        store: RowStore,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[SnapshotT] = None
        self._loaded_at: Optional[float] = None
        self.loads = 0

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def loaded_at(self) -> Optional[float]:
        return self._loaded_at

    def is_expired(self) -> bool:
        if self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at > self.ttl_seconds

    def load(self) -> SnapshotT:
        """Scan the whole store and install a fresh snapshot.

        Raises:
            LoadFailure: If the store cannot be read. The previously installed
                snapshot, if any, is left untouched.
        """

        try:
            columns = self.store.columns
            raw_rows = self.store.read_all()
        except Exception as exc:
            log.error("Failed to load %s from store: %s", self.label, exc)
            raise LoadFailure(f"Unable to read {self.label} store: {exc}") from exc

        loaded_at = self._clock()
        snapshot = self._build(columns, raw_rows, loaded_at)
        self._snapshot = snapshot
        self._loaded_at = loaded_at
        self.loads += 1
        self._on_install()
        return snapshot

    def invalidate_all(self, token: LockToken) -> None:
        """Drop the snapshot so the next access performs a full load."""

        require_token(token)
        if self._snapshot is not None:
            log.info("Invalidated %s", self.label)
        self._drop()

    def _ensure_fresh(self) -> SnapshotT:
        if self._snapshot is not None and self.is_expired():
            log.info("%s expired after %.1fs; reloading", self.label.capitalize(), self.ttl_seconds)
            self._drop()
        if self._snapshot is None:
            return self.load()
        return self._snapshot

    def _drop(self) -> None:
        self._snapshot = None
        self._loaded_at = None
        self._on_drop()

    def _build(self, columns: ColumnMap, raw_rows: Sequence[tuple[int, Sequence[object]]], loaded_at: float) -> SnapshotT:
        raise NotImplementedError

    def _on_install(self) -> None:
        pass

    def _on_drop(self) -> None:
        pass

"""Ledger mutual exclusion and the capability token proving it is held.

The cache never locks on its own. Mutating cache calls instead demand a
:class:`LockToken`, which only :meth:`LedgerLock.hold` hands out and which is
revoked the moment the critical section ends.

:class:`LedgerLock` only serializes threads sharing one process.
:func:`hold_data_file` adds an on-disk lock next to the workbook so separate
processes (two CLI invocations, say) take turns between loading the workbook
and saving it.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock, Timeout

from . import log
from .constants import DEFAULT_LOCK_TIMEOUT_SECONDS
from .errors import LockNotHeldError, LockTimeoutError


class LockToken:
    """Proof that the holder is inside a :class:`LedgerLock` critical section."""

    __slots__ = ("_lock", "_active")

    def __init__(self, lock: "LedgerLock") -> None:
        self._lock = lock
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def revoke(self) -> None:
        self._active = False

    def __repr__(self) -> str:
        state = "active" if self._active else "revoked"
        return f"<LockToken {self._lock.name} {state}>"


class LedgerLock:
    """Non-reentrant lock guarding read-modify-write sequences on the ledger."""

    def __init__(self, name: str = "ledger", *, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self.name = name
        self.timeout = timeout
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, timeout: Optional[float] = None) -> Iterator[LockToken]:
        """Acquire the lock and yield a token valid until the block exits.

        Raises:
            LockTimeoutError: If the lock is not acquired within ``timeout``
                seconds (defaults to the lock's configured timeout). The
                caller must treat the operation as failed.
        """

        wait = self.timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            log.error("Timed out after %.1fs waiting for lock '%s'", wait, self.name)
            raise LockTimeoutError(f"Could not acquire lock '{self.name}' within {wait}s")

        token = LockToken(self)
        try:
            yield token
        finally:
            token.revoke()
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


def require_token(token: object) -> None:
    """Raise :class:`LockNotHeldError` unless ``token`` is a live lock token."""

    if not isinstance(token, LockToken) or not token.active:
        raise LockNotHeldError("This operation must run inside a held ledger lock")


def lock_path_for(data_file: Path) -> Path:
    """Location of the on-disk lock guarding ``data_file``."""

    data_file = Path(data_file)
    return data_file.with_name(f"{data_file.name}.lock")


@contextmanager
def hold_data_file(data_file: Path, *, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> Iterator[Path]:
    """Hold the inter-process lock of ``data_file`` for the whole block.

    Everything between opening the workbook and saving it belongs inside the
    block, so a second process only loads the workbook once the first one has
    written its changes.

    Raises:
        LockTimeoutError: If another process keeps the lock for longer than
            ``timeout`` seconds.
    """

    lock_path = lock_path_for(data_file)
    file_lock = FileLock(str(lock_path), timeout=timeout)
    try:
        file_lock.acquire()
    except Timeout as exc:
        log.error("Timed out after %.1fs waiting for '%s'", timeout, lock_path)
        raise LockTimeoutError(f"Workbook '{data_file}' is locked by another process") from exc

    log.debug("Acquired '%s'", lock_path)
    try:
        yield lock_path
    finally:
        file_lock.release()

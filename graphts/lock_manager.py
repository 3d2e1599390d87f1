"""Shared and exclusive key locks for serializable transactions."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field

from graphts.errors import TsTimeoutError

_RETRY_INTERVAL_S = 0.01
DEFAULT_LOCK_TIMEOUT_MS = 10_000


class LockMode(enum.Enum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


@dataclass
class _LockInfo:
    tx_id: int
    mode: LockMode
    acquired_at: float = field(default_factory=time.monotonic)


class LockManager:
    """Key locks: many shared holders, or one transaction holding exclusively."""

    def __init__(self, lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS) -> None:
        self.lock_timeout_ms = lock_timeout_ms
        self._locks: dict[bytes, list[_LockInfo]] = {}
        self._mutex = threading.Lock()

    def _grantable(self, holders: list[_LockInfo], tx_id: int, mode: LockMode) -> bool:
        if mode is LockMode.SHARED:
            return not any(h.mode is LockMode.EXCLUSIVE and h.tx_id != tx_id for h in holders)
        return not any(h.tx_id != tx_id for h in holders)

    def try_acquire_lock(self, tx_id: int, key: bytes, mode: LockMode, timeout_ms: int) -> None:
        """Wait for the lock, polling, and raise TsTimeoutError after timeout_ms."""
        key = bytes(key)
        start = time.monotonic()
        while True:
            if (time.monotonic() - start) * 1000 > timeout_ms:
                raise TsTimeoutError(
                    f"transaction {tx_id} timed out waiting for lock on key "
                    f"{key.decode('utf-8', errors='replace')!r}"
                )
            with self._mutex:
                holders = self._locks.setdefault(key, [])
                if self._grantable(holders, tx_id, mode):
                    holders.append(_LockInfo(tx_id, mode))
                    return
            time.sleep(_RETRY_INTERVAL_S)

    def release_locks(self, tx_id: int) -> None:
        """Drop every lock held by the transaction."""
        with self._mutex:
            remaining = {}
            for key, holders in self._locks.items():
                kept = [h for h in holders if h.tx_id != tx_id]
                if kept:
                    remaining[key] = kept
            self._locks = remaining

    def is_locked(self, key: bytes) -> bool:
        with self._mutex:
            return bool(self._locks.get(bytes(key)))

    def locked_keys_count(self) -> int:
        with self._mutex:
            return len(self._locks)

    def lock_holders(self, key: bytes) -> list[tuple[int, LockMode]]:
        """(tx_id, mode) of every lock on key, in acquisition order."""
        with self._mutex:
            return [(h.tx_id, h.mode) for h in self._locks.get(bytes(key), ())]

    def has_exclusive_lock(self, tx_id: int, key: bytes) -> bool:
        return (tx_id, LockMode.EXCLUSIVE) in self.lock_holders(key)

    def has_shared_lock(self, tx_id: int, key: bytes) -> bool:
        return (tx_id, LockMode.SHARED) in self.lock_holders(key)
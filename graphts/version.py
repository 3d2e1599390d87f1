"""Transaction ids and the snapshot version handed to new transactions."""

from __future__ import annotations

import asyncio
import threading
from typing import Optional, Protocol

from graphts.context import IsolationLevel


class _MaxVersionSource(Protocol):
    async def get_max_committed_version(self) -> int: ...


class VersionManager:
    """Issues transaction ids and keeps the current snapshot version."""

    def __init__(
        self,
        initial_tx_id: int,
        initial_snapshot_version: int,
        ls_client: _MaxVersionSource,
        client_lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self._next_tx_id = initial_tx_id
        self._snapshot_version = initial_snapshot_version
        self._ls_client = ls_client
        self._client_lock = client_lock if client_lock is not None else asyncio.Lock()
        self._lock = threading.Lock()

    def next_transaction_id(self) -> int:
        """Return a fresh transaction id."""
        with self._lock:
            tx_id = self._next_tx_id
            self._next_tx_id += 1
            return tx_id

    @property
    def snapshot_version(self) -> int:
        with self._lock:
            return self._snapshot_version

    def update_snapshot_version(self, new_version: int) -> None:
        """Advance the snapshot version; older versions are ignored."""
        with self._lock:
            if new_version > self._snapshot_version:
                self._snapshot_version = new_version

    async def _latest_from_ls(self) -> int:
        async with self._client_lock:
            return await self._ls_client.get_max_committed_version()

    async def refresh_snapshot_version(self) -> int:
        """Advance to the log service's latest committed version and return the result."""
        latest = await self._latest_from_ls()
        with self._lock:
            if latest > self._snapshot_version:
                self._snapshot_version = latest
            return self._snapshot_version

    async def snapshot_version_for_tx(self, isolation_level: IsolationLevel) -> int:
        """Snapshot version a new transaction starts at."""
        if isolation_level is IsolationLevel.READ_COMMITTED:
            return await self._latest_from_ls()
        return self.snapshot_version
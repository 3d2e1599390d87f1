"""Commit-time conflict detection over read and write sets."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional

from graphts.context import IsolationLevel, TransactionState
from graphts.errors import TransactionNotFoundError


def _show_key(key: bytes) -> str:
    return '"' + key.decode("utf-8", errors="replace") + '"'


@dataclass(frozen=True)
class ConflictResult:
    """Outcome of a conflict check."""

    has_conflict: bool
    conflict_key: Optional[bytes] = None
    conflict_version: Optional[int] = None
    conflict_type: str = ""
    message: str = ""

    @classmethod
    def no_conflict(cls) -> ConflictResult:
        return cls(has_conflict=False)

    @classmethod
    def read_write_conflict(
        cls, key: bytes, write_version: int, snapshot_version: int
    ) -> ConflictResult:
        key = bytes(key)
        return cls(
            has_conflict=True,
            conflict_key=key,
            conflict_version=write_version,
            conflict_type="ReadWrite",
            message=(
                f"read-write conflict: key {_show_key(key)} was modified by version "
                f"{write_version} after the transaction started (snapshot version="
                f"{snapshot_version})"
            ),
        )

    @classmethod
    def write_write_conflict(
        cls, key: bytes, write_version: int, snapshot_version: int
    ) -> ConflictResult:
        key = bytes(key)
        return cls(
            has_conflict=True,
            conflict_key=key,
            conflict_version=write_version,
            conflict_type="WriteWrite",
            message=(
                f"write-write conflict: key {_show_key(key)} was modified by version "
                f"{write_version} after the transaction started (snapshot version="
                f"{snapshot_version})"
            ),
        )


@dataclass
class _ActiveTransactionInfo:
    graph_id: int
    snapshot_version: int
    read_keys: list[bytes] = field(default_factory=list)
    write_keys: list[bytes] = field(default_factory=list)
    state: TransactionState = TransactionState.ACTIVE


class ConflictDetector:
    """Tracks last-written versions per key and the keys each transaction touches."""

    def __init__(self) -> None:
        # graph_id -> key -> last committed version that wrote it
        self._key_versions: dict[int, dict[bytes, int]] = {}
        self._active: dict[int, _ActiveTransactionInfo] = {}
        self._lock = threading.RLock()

    def register_transaction(self, tx_id: int, graph_id: int, snapshot_version: int) -> None:
        with self._lock:
            self._active[tx_id] = _ActiveTransactionInfo(graph_id, snapshot_version)

    def _info(self, tx_id: int) -> _ActiveTransactionInfo:
        try:
            return self._active[tx_id]
        except KeyError:
            raise TransactionNotFoundError(tx_id) from None

    def record_read(self, tx_id: int, key: bytes) -> None:
        """Add key to the transaction's read keys; raise if it is not registered."""
        key = bytes(key)
        with self._lock:
            info = self._info(tx_id)
            if key not in info.read_keys:
                info.read_keys.append(key)

    def record_write(self, tx_id: int, key: bytes) -> None:
        """Add key to the transaction's write keys; raise if it is not registered."""
        key = bytes(key)
        with self._lock:
            info = self._info(tx_id)
            if key not in info.write_keys:
                info.write_keys.append(key)

    def update_transaction_state(self, tx_id: int, state: TransactionState) -> None:
        with self._lock:
            self._info(tx_id).state = state

    def check_transaction_conflicts(
        self, tx_id: int, isolation_level: IsolationLevel
    ) -> ConflictResult:
        """Check whether the transaction may commit under the given isolation level."""
        with self._lock:
            info = self._active.get(tx_id)
            if info is None:
                return ConflictResult(
                    has_conflict=True,
                    conflict_type="TransactionNotFound",
                    message=f"transaction {tx_id} does not exist",
                )
            if info.state is not TransactionState.ACTIVE:
                return ConflictResult(
                    has_conflict=True,
                    conflict_type="InvalidState",
                    message=f"transaction {tx_id} is not active",
                )

            if isolation_level is IsolationLevel.READ_COMMITTED:
                return self._check_write_write(info)

            result = self._check_read_write(info)
            if result.has_conflict:
                return result
            result = self._check_write_write(info)
            if result.has_conflict or isolation_level is not IsolationLevel.SERIALIZABLE:
                return result
            return self._check_write_read(tx_id, info)

    def _newer_write(
        self, info: _ActiveTransactionInfo, keys: Iterable[bytes]
    ) -> Optional[tuple[bytes, int]]:
        graph_versions = self._key_versions.get(info.graph_id)
        if not graph_versions:
            return None
        for key in keys:
            version = graph_versions.get(key)
            if version is not None and version > info.snapshot_version:
                return key, version
        return None

    def _check_read_write(self, info: _ActiveTransactionInfo) -> ConflictResult:
        found = self._newer_write(info, info.read_keys)
        if found is None:
            return ConflictResult.no_conflict()
        key, version = found
        return ConflictResult.read_write_conflict(key, version, info.snapshot_version)

    def _check_write_write(self, info: _ActiveTransactionInfo) -> ConflictResult:
        found = self._newer_write(info, info.write_keys)
        if found is None:
            return ConflictResult.no_conflict()
        key, version = found
        return ConflictResult.write_write_conflict(key, version, info.snapshot_version)

    def _check_write_read(self, tx_id: int, info: _ActiveTransactionInfo) -> ConflictResult:
        others: Mapping[int, _ActiveTransactionInfo] = self._active
        for other_id, other in others.items():
            if other_id == tx_id or other.state is not TransactionState.ACTIVE:
                continue
            if other.snapshot_version <= info.snapshot_version:
                continue
            for key in info.write_keys:
                if key in other.read_keys:
                    return ConflictResult(
                        has_conflict=True,
                        conflict_key=key,
                        conflict_type="WriteRead",
                        message=(
                            f"write-read conflict: key {_show_key(key)} was read by "
                            f"transaction {other_id}, but the current transaction modified it"
                        ),
                    )
        return ConflictResult.no_conflict()

    def update_key_versions(
        self, tx_id: int, graph_id: int, commit_version: int, write_keys: Iterable[bytes]
    ) -> None:
        """Record the commit version for each written key and forget the transaction."""
        with self._lock:
            keys = [bytes(k) for k in write_keys]
            if keys:
                graph_versions = self._key_versions.setdefault(graph_id, {})
                for key in keys:
                    graph_versions[key] = commit_version
            self._active.pop(tx_id, None)

    def cleanup_transaction(self, tx_id: int) -> None:
        with self._lock:
            self._active.pop(tx_id, None)

    def key_last_version(self, graph_id: int, key: bytes) -> Optional[int]:
        with self._lock:
            return self._key_versions.get(graph_id, {}).get(bytes(key))

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def cleanup_old_versions(self, min_version_to_keep: int) -> None:
        """Forget key versions older than min_version_to_keep."""
        with self._lock:
            for graph_id, versions in self._key_versions.items():
                self._key_versions[graph_id] = {
                    k: v for k, v in versions.items() if v >= min_version_to_keep
                }
"""Transaction manager: begin, read, write, delete, two-phase commit and rollback."""

from __future__ import annotations

import asyncio
import copy
import logging
import os
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from graphts.conflict_detector import ConflictDetector
from graphts.context import IsolationLevel, LogEntry, Transaction, TransactionState, WriteSet
from graphts.errors import (
    InvalidArgumentError,
    LsError,
    ReadConflictError,
    TransactionNotFoundError,
    TsError,
    TsTimeoutError,
    UnknownError,
    WriteConflictError,
)
from graphts.lock_manager import LockManager, LockMode
from graphts.recovery import RecoveryManager
from graphts.undo_log import UndoLog, UndoOp, UndoOpKind, build_rollback_write_set
from graphts.validation import validate_constraints, validate_write
from graphts.version import VersionManager
from graphts.wal import WalEntry, WalEntryType, WalManager

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_MS = 5000
DEFAULT_TX_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class AppendEntryResult:
    """Reply of the log service to an append."""

    ok: bool
    message: str = ""


class LogServiceClient(Protocol):
    """Client of the log service; failures are raised as TsError subclasses."""

    async def get_max_committed_version(self) -> int: ...

    async def append_entry(self, log_entry: LogEntry) -> AppendEntryResult: ...


class StorageServiceClient(Protocol):
    """Client of the storage service; failures are raised as TsError subclasses."""

    async def get(self, graph_id: int, key: bytes, version: int) -> Optional[bytes]: ...


@dataclass
class _Prepared:
    prev_commit_version: int
    commit_version: int
    graph_id: int
    write_set: WriteSet
    read_only: bool


class TransactionManager:
    """Coordinates transactions against the log and storage services."""

    def __init__(
        self,
        ls_client: LogServiceClient,
        ss_client: StorageServiceClient,
        wal_manager: WalManager,
        initial_snapshot: int = 0,
    ) -> None:
        self._ls_client = ls_client
        self._ss_client = ss_client
        self._ls_lock = asyncio.Lock()
        self._ss_lock = asyncio.Lock()
        self._version_manager = VersionManager(1, initial_snapshot, ls_client, self._ls_lock)
        self._conflict_detector = ConflictDetector()
        self._lock_manager = LockManager()
        self._wal_manager = wal_manager
        self._recovery_manager = RecoveryManager(wal_manager)
        self._state_lock = threading.RLock()
        self._active: dict[int, Transaction] = {}
        self._undo_logs: dict[int, UndoLog] = {}
        # key -> ids of transactions that wrote it and have not finished
        self._uncommitted_keys: dict[bytes, set[int]] = {}

    @classmethod
    async def create(
        cls,
        ls_client: LogServiceClient,
        ss_client: StorageServiceClient,
        wal_dir: Union[str, os.PathLike],
    ) -> TransactionManager:
        """Start a manager: fetch the initial snapshot, open the WAL and run recovery."""
        try:
            initial_snapshot = await ls_client.get_max_committed_version()
        except TsError as exc:
            logger.warning("could not read max committed version from LS: %s", exc)
            initial_snapshot = 0
        logger.info("initial snapshot version from LS: %d", initial_snapshot)

        wal_manager = WalManager(wal_dir, True)
        manager = cls(ls_client, ss_client, wal_manager, initial_snapshot)
        result = manager._recovery_manager.recover()
        logger.info("crash recovery result: %s", result)
        return manager

    # ---- helpers -------------------------------------------------------

    def _write_wal(
        self,
        entry_type: WalEntryType,
        tx_id: int,
        graph_id: int,
        key: Optional[bytes] = None,
        value: Optional[bytes] = None,
        old_value: Optional[bytes] = None,
    ) -> None:
        self._wal_manager.append_entry(
            WalEntry(entry_type, tx_id, graph_id, key=key, value=value, old_value=old_value)
        )

    def _get_transaction(self, tx_id: int) -> Transaction:
        with self._state_lock:
            tx = self._active.get(tx_id)
        if tx is None:
            raise TransactionNotFoundError(tx_id)
        return tx

    @staticmethod
    def _ensure_active(tx: Transaction) -> None:
        if tx.state is not TransactionState.ACTIVE:
            raise InvalidArgumentError(f"transaction {tx.id} is not active")

    async def _check_timeout(self, tx: Transaction) -> None:
        if tx.is_timed_out():
            await self.abort_transaction(tx.id, "transaction timed out")
            raise TsTimeoutError(f"transaction {tx.id} has timed out")

    async def _acquire_lock(self, tx_id: int, key: bytes, mode: LockMode) -> None:
        await asyncio.to_thread(
            self._lock_manager.try_acquire_lock, tx_id, key, mode, LOCK_TIMEOUT_MS
        )

    async def _latest_committed_version(self) -> int:
        async with self._ls_lock:
            return await self._ls_client.get_max_committed_version()

    async def _current_value(self, graph_id: int, key: bytes) -> Optional[bytes]:
        async with self._ss_lock:
            try:
                return await self._ss_client.get(graph_id, key, 0)
            except TsError as exc:
                logger.warning("could not read old value from SS: %s", exc)
                return None

    def _record_undo(self, tx_id: int, op: UndoOp) -> None:
        with self._state_lock:
            undo = self._undo_logs.get(tx_id)
        if undo is not None:
            undo.record(tx_id, op)

    def _track_write(self, tx: Transaction, key: bytes, value: Optional[bytes]) -> None:
        with self._state_lock:
            tx.record_write(key, value)
            self._uncommitted_keys.setdefault(key, set()).add(tx.id)
        try:
            self._conflict_detector.record_write(tx.id, key)
        except TransactionNotFoundError as exc:
            logger.warning("failed to record write: %s", exc)

    async def _acquire_locks_for_write_set(self, tx: Transaction) -> None:
        if tx.isolation_level is not IsolationLevel.SERIALIZABLE:
            return
        for key in list(tx.write_set):
            await self._acquire_lock(tx.id, key, LockMode.EXCLUSIVE)
        for key in list(tx.read_keys):
            if key not in tx.write_set:
                await self._acquire_lock(tx.id, key, LockMode.SHARED)

    def _cleanup_transaction(self, tx_id: int) -> None:
        with self._state_lock:
            self._active.pop(tx_id, None)
            self._undo_logs.pop(tx_id, None)
            for key in list(self._uncommitted_keys):
                writers = self._uncommitted_keys[key]
                writers.discard(tx_id)
                if not writers:
                    del self._uncommitted_keys[key]
        self._lock_manager.release_locks(tx_id)
        self._conflict_detector.cleanup_transaction(tx_id)

    def _set_state(self, tx: Transaction, state: TransactionState) -> None:
        with self._state_lock:
            tx.state = state
        try:
            self._conflict_detector.update_transaction_state(tx.id, state)
        except TransactionNotFoundError:
            pass

    # ---- public operations ---------------------------------------------

    async def begin_transaction(
        self,
        graph_id: int,
        isolation_level: IsolationLevel = IsolationLevel.SNAPSHOT,
        timeout_ms: int = DEFAULT_TX_TIMEOUT_MS,
    ) -> Transaction:
        """Start a transaction and return a copy of it."""
        logger.info("beginning transaction: graph=%d, isolation=%s", graph_id, isolation_level)
        snapshot_version = await self._version_manager.snapshot_version_for_tx(isolation_level)
        tx_id = self._version_manager.next_transaction_id()

        self._write_wal(WalEntryType.BEGIN, tx_id, graph_id)
        self._wal_manager.flush()

        self._conflict_detector.register_transaction(tx_id, graph_id, snapshot_version)
        tx = Transaction(
            id=tx_id,
            graph_id=graph_id,
            snapshot_version=snapshot_version,
            isolation_level=isolation_level,
            timeout_ms=timeout_ms,
        )
        with self._state_lock:
            self._undo_logs[tx_id] = UndoLog()
            self._active[tx_id] = tx
        logger.info("transaction %d started at snapshot version %d", tx_id, snapshot_version)
        return copy.deepcopy(tx)

    async def read(
        self, tx_id: int, key: bytes, specified_version: Optional[int] = None
    ) -> Optional[bytes]:
        """Read key within the transaction; its own writes are seen first."""
        key = bytes(key)
        tx = self._get_transaction(tx_id)
        self._ensure_active(tx)
        await self._check_timeout(tx)

        with self._state_lock:
            own = key in tx.write_set
            own_value = tx.write_set.get(key)
            if own:
                tx.record_read(key, tx.snapshot_version, own_value)
        if own:
            try:
                self._conflict_detector.record_read(tx_id, key)
            except TransactionNotFoundError:
                pass
            return own_value

        level = tx.isolation_level
        if level is IsolationLevel.SERIALIZABLE:
            await self._acquire_lock(tx_id, key, LockMode.SHARED)

        if level is IsolationLevel.READ_COMMITTED:
            read_version = await self._latest_committed_version()
        else:
            read_version = tx.snapshot_version

        if specified_version is not None:
            if level is not IsolationLevel.READ_COMMITTED and (
                specified_version > tx.snapshot_version
            ):
                raise InvalidArgumentError(
                    f"cannot read version {specified_version} under snapshot isolation "
                    f"(snapshot version: {tx.snapshot_version})"
                )
            read_version = specified_version

        async with self._ss_lock:
            value = await self._ss_client.get(tx.graph_id, key, read_version)

        with self._state_lock:
            self._ensure_active(tx)
            tx.record_read(key, read_version, value)
        try:
            self._conflict_detector.record_read(tx_id, key)
        except TransactionNotFoundError as exc:
            logger.warning("failed to record read: %s", exc)
        return value

    async def write(self, tx_id: int, key: bytes, value: bytes) -> None:
        """Write value to key within the transaction."""
        key = bytes(key)
        value = bytes(value)
        tx = self._get_transaction(tx_id)
        self._ensure_active(tx)
        await self._check_timeout(tx)

        if tx.isolation_level is IsolationLevel.SERIALIZABLE:
            await self._acquire_lock(tx_id, key, LockMode.EXCLUSIVE)

        old_value = await self._current_value(tx.graph_id, key)
        self._write_wal(WalEntryType.WRITE, tx_id, tx.graph_id, key, value, old_value)

        if old_value is not None:
            self._record_undo(tx_id, UndoOp(UndoOpKind.UPDATE, key, old_value))
        else:
            self._record_undo(tx_id, UndoOp(UndoOpKind.INSERT, key, value))

        validate_write(key, value)

        self._ensure_active(tx)
        self._track_write(tx, key, value)
        self._wal_manager.flush()

    async def delete(self, tx_id: int, key: bytes) -> None:
        """Delete key within the transaction."""
        key = bytes(key)
        tx = self._get_transaction(tx_id)
        self._ensure_active(tx)
        await self._check_timeout(tx)

        if tx.isolation_level is IsolationLevel.SERIALIZABLE:
            await self._acquire_lock(tx_id, key, LockMode.EXCLUSIVE)

        old_value = await self._current_value(tx.graph_id, key)
        self._write_wal(WalEntryType.WRITE, tx_id, tx.graph_id, key, None, old_value)

        if old_value is not None:
            self._record_undo(tx_id, UndoOp(UndoOpKind.DELETE, key, old_value))

        self._track_write(tx, key, None)
        self._wal_manager.flush()

    async def _prepare_commit(self, tx_id: int) -> _Prepared:
        tx = self._get_transaction(tx_id)
        self._ensure_active(tx)
        with self._state_lock:
            write_set = tx.to_write_set()
            read_only = not tx.write_set
        await self._check_timeout(tx)

        if read_only:
            return _Prepared(0, 0, tx.graph_id, write_set, True)

        validate_constraints(tx)
        await self._acquire_locks_for_write_set(tx)

        conflict = self._conflict_detector.check_transaction_conflicts(
            tx_id, tx.isolation_level
        )
        if conflict.has_conflict:
            logger.warning("transaction %d failed conflict check: %s", tx_id, conflict.message)
            if conflict.conflict_type == "ReadWrite":
                raise ReadConflictError(conflict.message)
            if conflict.conflict_type in ("WriteWrite", "WriteRead"):
                raise WriteConflictError(conflict.message)
            raise UnknownError(conflict.message)

        with self._state_lock:
            tx.state = TransactionState.PREPARING
        self._write_wal(WalEntryType.PREPARE, tx_id, tx.graph_id)
        self._wal_manager.flush()

        prev_commit_version = await self._latest_committed_version()
        with self._state_lock:
            tx.state = TransactionState.PREPARED
        return _Prepared(
            prev_commit_version, prev_commit_version + 1, tx.graph_id, write_set, False
        )

    async def commit_transaction(self, tx_id: int) -> int:
        """Commit with two phases and return the commit version."""
        logger.info("committing transaction %d (2PC)", tx_id)
        prepared = await self._prepare_commit(tx_id)

        if prepared.read_only:
            tx = self._get_transaction(tx_id)
            with self._state_lock:
                tx.state = TransactionState.COMMITTED
            self._cleanup_transaction(tx_id)
            logger.info("read-only transaction %d committed without a log entry", tx_id)
            return self._version_manager.snapshot_version

        log_entry = LogEntry(
            prev_commit_version=prepared.prev_commit_version,
            commit_version=prepared.commit_version,
            graph_id=prepared.graph_id,
            write_set=copy.deepcopy(prepared.write_set),
        )
        async with self._ls_lock:
            result = await self._ls_client.append_entry(log_entry)
        if not result.ok:
            await self.rollback_transaction(tx_id, result.message)
            raise LsError(result.message)

        self._write_wal(WalEntryType.COMMIT, tx_id, prepared.graph_id)
        self._wal_manager.flush()
        self._wal_manager.create_checkpoint()

        tx = self._get_transaction(tx_id)
        self._set_state(tx, TransactionState.COMMITTED)

        write_keys = [kv.key for kv in prepared.write_set.upsert_kvs]
        write_keys.extend(prepared.write_set.deleted_keys)
        self._conflict_detector.update_key_versions(
            tx_id, prepared.graph_id, prepared.commit_version, write_keys
        )
        self._version_manager.update_snapshot_version(prepared.commit_version)
        self._cleanup_transaction(tx_id)
        logger.info(
            "transaction %d committed (2PC) at version %d", tx_id, prepared.commit_version
        )
        return prepared.commit_version

    async def rollback_transaction(self, tx_id: int, reason: str) -> None:
        """Undo the transaction's writes through the log service and end it."""
        logger.info("rolling back transaction %d: %s", tx_id, reason)
        try:
            tx = self._get_transaction(tx_id)
        except TransactionNotFoundError:
            logger.warning("transaction %d does not exist; nothing to roll back", tx_id)
            return

        with self._state_lock:
            undo = self._undo_logs.get(tx_id)
        rollback_set = None
        if undo is not None and not undo.is_empty(tx_id):
            rollback_set = build_rollback_write_set(undo, tx_id)

        if rollback_set is not None and not rollback_set.is_empty():
            async with self._ls_lock:
                prev_commit_version = await self._ls_client.get_max_committed_version()
                commit_version = prev_commit_version + 1
                result = await self._ls_client.append_entry(
                    LogEntry(prev_commit_version, commit_version, tx.graph_id, rollback_set)
                )
            if result.ok:
                logger.info("rollback write set written to LS at version %d", commit_version)
            else:
                logger.warning("writing rollback to LS failed: %s", result.message)

        self._write_wal(WalEntryType.ROLLBACK, tx_id, tx.graph_id)
        self._wal_manager.flush()
        self._set_state(tx, TransactionState.ROLLED_BACK)
        self._cleanup_transaction(tx_id)
        logger.info("transaction %d rolled back", tx_id)

    async def abort_transaction(self, tx_id: int, reason: str) -> None:
        """End the transaction by force, rolling back any writes first."""
        logger.info("aborting transaction %d: %s", tx_id, reason)
        try:
            tx = self._get_transaction(tx_id)
        except TransactionNotFoundError:
            return

        if tx.write_set:
            try:
                await self.rollback_transaction(tx_id, reason)
            except TsError as exc:
                logger.warning("rollback during abort failed: %s", exc)

        self._write_wal(WalEntryType.ROLLBACK, tx_id, tx.graph_id)
        self._wal_manager.flush()
        self._set_state(tx, TransactionState.ABORTED)
        self._cleanup_transaction(tx_id)
        logger.info("transaction %d aborted", tx_id)

    # ---- status --------------------------------------------------------

    def active_transaction_count(self) -> int:
        with self._state_lock:
            return len(self._active)

    def wal_size(self) -> int:
        return self._wal_manager.wal_size()

    def locked_keys_count(self) -> int:
        return self._lock_manager.locked_keys_count()

    def is_key_locked(self, key: bytes) -> bool:
        return self._lock_manager.is_locked(key)
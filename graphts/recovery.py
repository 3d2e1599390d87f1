"""Crash recovery: finish incomplete transactions found in the WAL."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from graphts.wal import WalEntry, WalEntryType, WalManager

logger = logging.getLogger(__name__)

_MAX_FUTURE_SECONDS = 86400


@dataclass
class RecoveryResult:
    total_entries: int
    recovered_transactions: int
    rolled_back_transactions: int


@dataclass
class _TxRecoveryState:
    tx_id: int
    graph_id: int
    has_begin: bool = False
    has_prepare: bool = False
    has_commit: bool = False
    has_rollback: bool = False
    writes: list[tuple[bytes, bytes]] = field(default_factory=list)


class RecoveryManager:
    """Rolls back transactions that began but never committed or rolled back."""

    def __init__(self, wal_manager: WalManager) -> None:
        self.wal_manager = wal_manager

    def recover(self) -> RecoveryResult:
        logger.info("starting crash recovery")
        entries = self.wal_manager.read_all_entries()
        logger.info("read %d WAL entries", len(entries))

        states: dict[int, _TxRecoveryState] = {}
        for entry in entries:
            state = states.setdefault(entry.tx_id, _TxRecoveryState(entry.tx_id, entry.graph_id))
            if entry.entry_type is WalEntryType.BEGIN:
                state.has_begin = True
            elif entry.entry_type is WalEntryType.WRITE:
                if entry.key is not None and entry.value is not None:
                    state.writes.append((entry.key, entry.value))
            elif entry.entry_type is WalEntryType.PREPARE:
                state.has_prepare = True
            elif entry.entry_type is WalEntryType.COMMIT:
                state.has_commit = True
            elif entry.entry_type is WalEntryType.ROLLBACK:
                state.has_rollback = True

        recovered = 0
        rolled_back = 0
        for state in states.values():
            if state.has_commit:
                logger.info("transaction %d committed; nothing to recover", state.tx_id)
                continue
            if state.has_rollback:
                logger.info("transaction %d rolled back; nothing to recover", state.tx_id)
                continue
            if state.has_begin:
                logger.warning(
                    "transaction %d incomplete (begin=%s, prepare=%s, commit=%s); rolling back",
                    state.tx_id,
                    state.has_begin,
                    state.has_prepare,
                    state.has_commit,
                )
                self.wal_manager.append_entry(
                    WalEntry(WalEntryType.ROLLBACK, state.tx_id, state.graph_id)
                )
                self.wal_manager.flush()
                rolled_back += 1
            recovered += 1

        self.wal_manager.create_checkpoint()
        result = RecoveryResult(len(entries), recovered, rolled_back)
        logger.info("crash recovery finished: %s", result)
        return result

    def validate_wal_integrity(self) -> bool:
        """False if any record has transaction id 0 or a timestamp over a day ahead."""
        for entry in self.wal_manager.read_all_entries():
            if entry.tx_id == 0:
                return False
            if entry.timestamp > int(time.time()) + _MAX_FUTURE_SECONDS:
                return False
        return True
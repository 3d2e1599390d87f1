"""Undo records used to reverse a transaction's changes on rollback."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Optional

from graphts.context import Kv, WriteSet


class UndoOpKind(enum.Enum):
    """What the recorded change was."""

    INSERT = "insert"  # undo deletes the key
    UPDATE = "update"  # undo restores the old value
    DELETE = "delete"  # undo restores the deleted value
    CLEAR = "clear"  # left to the caller


@dataclass(frozen=True)
class UndoOp:
    """One change to undo: the key and, for INSERT the new value, otherwise the old one."""

    kind: UndoOpKind
    key: bytes
    value: Optional[bytes] = None


@dataclass(frozen=True)
class UndoLogEntry:
    tx_id: int
    seq_no: int
    op: UndoOp


class UndoLog:
    """Per-transaction undo records in the order they were made."""

    def __init__(self) -> None:
        self._entries: dict[int, list[UndoLogEntry]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def record(self, tx_id: int, op: UndoOp) -> None:
        with self._lock:
            self._seq += 1
            self._entries.setdefault(tx_id, []).append(UndoLogEntry(tx_id, self._seq, op))

    def entries_for_tx(self, tx_id: int) -> list[UndoLogEntry]:
        """Entries of one transaction, oldest first."""
        with self._lock:
            return list(self._entries.get(tx_id, ()))

    def clear_tx(self, tx_id: int) -> None:
        with self._lock:
            self._entries.pop(tx_id, None)

    def total_entries(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._entries.values())

    def active_tx_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_empty(self, tx_id: int) -> bool:
        with self._lock:
            return not self._entries.get(tx_id)


def build_rollback_write_set(undo_log: UndoLog, tx_id: int) -> WriteSet:
    """Write set that reverses a transaction's changes, newest change first."""
    result = WriteSet()
    for entry in reversed(undo_log.entries_for_tx(tx_id)):
        op = entry.op
        if op.kind is UndoOpKind.INSERT:
            result.deleted_keys.append(op.key)
        elif op.kind in (UndoOpKind.UPDATE, UndoOpKind.DELETE):
            result.upsert_kvs.append(Kv(op.key, op.value if op.value is not None else b""))
    return result
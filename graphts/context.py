"""Transaction state, read/write sets and the records sent to the log service."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Optional


class TransactionState(enum.Enum):
    """Lifecycle of a transaction."""

    ACTIVE = "active"
    PREPARING = "preparing"
    PREPARED = "prepared"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


class IsolationLevel(enum.Enum):
    """Isolation level a transaction runs under."""

    READ_COMMITTED = "read_committed"
    SNAPSHOT = "snapshot"
    SERIALIZABLE = "serializable"


@dataclass(frozen=True)
class Kv:
    """A key and the value written to it."""

    key: bytes
    value: bytes


@dataclass
class WriteSet:
    """Upserted pairs and deleted keys of one commit."""

    upsert_kvs: list[Kv] = field(default_factory=list)
    deleted_keys: list[bytes] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.upsert_kvs and not self.deleted_keys


@dataclass
class LogEntry:
    """An entry appended to the log service."""

    prev_commit_version: int
    commit_version: int
    graph_id: int
    write_set: Optional[WriteSet] = None


@dataclass
class ReadRecord:
    """A key read by a transaction, with the version and value seen."""

    key: bytes
    version: int
    value: Optional[bytes]


@dataclass
class Transaction:
    """A transaction with its read and write sets."""

    id: int
    graph_id: int
    snapshot_version: int
    isolation_level: IsolationLevel
    timeout_ms: int
    state: TransactionState = TransactionState.ACTIVE
    start_time: float = field(default_factory=time.monotonic)
    read_set: list[ReadRecord] = field(default_factory=list)
    # key -> value; None marks a delete
    write_set: dict[bytes, Optional[bytes]] = field(default_factory=dict)
    read_keys: set[bytes] = field(default_factory=set)

    def is_timed_out(self) -> bool:
        """True once more than timeout_ms have passed since the start."""
        return (time.monotonic() - self.start_time) * 1000 > self.timeout_ms

    def record_read(self, key: bytes, version: int, value: Optional[bytes]) -> None:
        """Remember the first read of a key; later reads of it are ignored."""
        key = bytes(key)
        if key not in self.read_keys:
            self.read_set.append(ReadRecord(key, version, value))
            self.read_keys.add(key)

    def record_write(self, key: bytes, value: Optional[bytes]) -> None:
        """Record a write of value to key, or a delete when value is None."""
        self.write_set[bytes(key)] = value

    def has_read_key(self, key: bytes) -> bool:
        return bytes(key) in self.read_keys

    def read_version(self, key: bytes) -> Optional[int]:
        """Version at which key was read, or None if it was not read."""
        key = bytes(key)
        return next((r.version for r in self.read_set if r.key == key), None)

    def to_write_set(self) -> WriteSet:
        """Split the write set into upserts and deletes."""
        result = WriteSet()
        for key, value in self.write_set.items():
            if value is None:
                result.deleted_keys.append(key)
            else:
                result.upsert_kvs.append(Kv(key, value))
        return result

    def to_log_entry(self, prev_commit_version: int, commit_version: int) -> LogEntry:
        return LogEntry(
            prev_commit_version=prev_commit_version,
            commit_version=commit_version,
            graph_id=self.graph_id,
            write_set=self.to_write_set(),
        )
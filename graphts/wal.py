"""Write-ahead log: length-prefixed binary records in rotating files."""

from __future__ import annotations

import enum
import logging
import os
import re
import struct
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional, Union

from graphts.errors import SerializationError, UnknownError

logger = logging.getLogger(__name__)

NONE_MARKER = 0xFFFFFFFF
MAX_ENTRY_LEN = 100 * 1024 * 1024
ROTATE_EVERY = 1000
CHECKPOINT_MARKER = b"CHECKPOINT"

_HEADER = struct.Struct(">BQIQ")
_LEN = struct.Struct(">I")
_U64_MAX = 0xFFFFFFFFFFFFFFFF
_FILE_STEM = re.compile(r"wal_\+?([0-9]+)")


class WalEntryType(enum.IntEnum):
    """Kind of a WAL record; the value is the byte stored on disk."""

    BEGIN = 1
    WRITE = 2
    PREPARE = 3
    COMMIT = 4
    ROLLBACK = 5


def _now_seconds() -> int:
    return int(time.time())


def _encode_optional(value: Optional[bytes]) -> bytes:
    if value is None:
        return _LEN.pack(NONE_MARKER)
    if len(value) >= NONE_MARKER:
        raise SerializationError(f"field of {len(value)} bytes is too long for a WAL entry")
    return _LEN.pack(len(value)) + bytes(value)


def _decode_optional(data: memoryview, offset: int) -> tuple[Optional[bytes], int]:
    if offset + _LEN.size > len(data):
        raise SerializationError("truncated WAL entry: missing field length")
    (length,) = _LEN.unpack_from(data, offset)
    offset += _LEN.size
    if length == NONE_MARKER:
        return None, offset
    end = offset + length
    if end > len(data):
        raise SerializationError("truncated WAL entry: field shorter than its length")
    return bytes(data[offset:end]), end


@dataclass
class WalEntry:
    """One record of the write-ahead log."""

    entry_type: WalEntryType
    tx_id: int
    graph_id: int
    key: Optional[bytes] = None
    value: Optional[bytes] = None
    old_value: Optional[bytes] = None
    timestamp: int = field(default_factory=_now_seconds)

    def to_bytes(self) -> bytes:
        """Encode the record body (without the length prefix)."""
        try:
            header = _HEADER.pack(int(self.entry_type), self.tx_id, self.graph_id, self.timestamp)
        except struct.error as exc:
            raise SerializationError(f"cannot encode WAL entry: {exc}") from exc
        return b"".join(
            (
                header,
                _encode_optional(self.key),
                _encode_optional(self.value),
                _encode_optional(self.old_value),
            )
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> WalEntry:
        """Decode a record body; raise SerializationError if it is malformed."""
        view = memoryview(bytes(data))
        if not view:
            raise SerializationError("empty WAL entry")
        try:
            entry_type = WalEntryType(view[0])
        except ValueError as exc:
            raise SerializationError(f"invalid WAL entry type: {view[0]}") from exc
        if len(view) < _HEADER.size:
            raise SerializationError("truncated WAL entry header")
        _, tx_id, graph_id, timestamp = _HEADER.unpack_from(view, 0)
        offset = _HEADER.size
        key, offset = _decode_optional(view, offset)
        value, offset = _decode_optional(view, offset)
        old_value, offset = _decode_optional(view, offset)
        return cls(
            entry_type=entry_type,
            tx_id=tx_id,
            graph_id=graph_id,
            key=key,
            value=value,
            old_value=old_value,
            timestamp=timestamp,
        )


def _find_max_seq_no(wal_dir: Path) -> int:
    max_seq = 0
    try:
        children = list(wal_dir.iterdir())
    except OSError:
        return 0
    for path in children:
        if path.suffix != ".log":
            continue
        match = _FILE_STEM.fullmatch(path.stem)
        if match:
            number = int(match.group(1))
            if number <= _U64_MAX:
                max_seq = max(max_seq, number)
    return max_seq


def _write_all(file: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = file.write(view)
        if not written:
            raise OSError("failed to write WAL data")
        view = view[written:]


class WalManager:
    """Appends WAL records to the current file and reads all files back."""

    def __init__(self, wal_dir: Union[str, os.PathLike], enable_fsync: bool = True) -> None:
        self._wal_dir = Path(wal_dir)
        self._wal_dir.mkdir(parents=True, exist_ok=True)
        self._enable_fsync = enable_fsync
        self._lock = threading.RLock()
        self._file: Optional[BinaryIO] = None
        self._seq_no = _find_max_seq_no(self._wal_dir)
        self._last_checkpoint = 0
        self._rotate()

    def __enter__(self) -> WalManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def wal_dir(self) -> Path:
        return self._wal_dir

    @property
    def seq_no(self) -> int:
        """Sequence number of the file currently written to."""
        with self._lock:
            return self._seq_no

    @property
    def checkpoint(self) -> int:
        """Sequence number recorded by the last checkpoint."""
        with self._lock:
            return self._last_checkpoint

    def _sync(self, file: BinaryIO) -> None:
        file.flush()
        if self._enable_fsync:
            os.fsync(file.fileno())

    def _rotate(self) -> None:
        with self._lock:
            self._seq_no += 1
            path = self._wal_dir / f"wal_{self._seq_no:010d}.log"
            try:
                new_file = open(path, "xb+", buffering=0)
            except FileExistsError:
                logger.warning("WAL file %s already exists; truncating it", path)
                new_file = open(path, "wb+", buffering=0)
            logger.info("created WAL file %s", path)
            old_file, self._file = self._file, new_file
            if old_file is not None:
                self._sync(old_file)
                old_file.close()

    def _current(self) -> BinaryIO:
        if self._file is None:
            raise UnknownError("WAL file not initialised")
        return self._file

    def append_entry(self, entry: WalEntry) -> None:
        """Append one record; every thousandth transaction id starts a new file."""
        data = entry.to_bytes()
        with self._lock:
            file = self._current()
            _write_all(file, _LEN.pack(len(data)) + data)
            if self._enable_fsync:
                os.fsync(file.fileno())
            if entry.tx_id % ROTATE_EVERY == 0:
                self._rotate()

    def read_all_entries(self) -> list[WalEntry]:
        """Read every record of every WAL file, skipping damaged or partial ones."""
        entries: list[WalEntry] = []
        paths = sorted(p for p in self._wal_dir.iterdir() if p.suffix == ".log")
        for path in paths:
            try:
                file = open(path, "rb")
            except OSError as exc:
                logger.warning("cannot open WAL file %s for recovery: %s; skipping", path, exc)
                continue
            with file:
                entries.extend(self._read_file(path, file))
        return entries

    def _read_file(self, path: Path, file: BinaryIO) -> list[WalEntry]:
        entries: list[WalEntry] = []
        while True:
            prefix = file.read(_LEN.size)
            if len(prefix) < _LEN.size:
                break
            (length,) = _LEN.unpack(prefix)
            if length > MAX_ENTRY_LEN:
                logger.warning(
                    "WAL file %s has an implausible length %d; skipping the rest", path, length
                )
                break
            data = file.read(length)
            if len(data) < length:
                logger.warning("WAL file %s ends with a partial entry; skipping it", path)
                break
            try:
                entries.append(WalEntry.from_bytes(data))
            except SerializationError:
                logger.warning("WAL file %s has an undecodable entry; skipping it", path)
        return entries

    def create_checkpoint(self) -> None:
        """Record the current file number and write a checkpoint marker."""
        with self._lock:
            self._last_checkpoint = self._seq_no
            if self._file is not None:
                _write_all(self._file, CHECKPOINT_MARKER)
                if self._enable_fsync:
                    os.fsync(self._file.fileno())
            logger.info("WAL checkpoint created: seq_no=%d", self._last_checkpoint)

    def flush(self) -> None:
        with self._lock:
            if self._file is not None:
                self._sync(self._file)

    def wal_size(self) -> int:
        """Total size in bytes of everything in the WAL directory."""
        total = 0
        with os.scandir(self._wal_dir) as it:
            for entry in it:
                try:
                    total += entry.stat().st_size
                except OSError:
                    continue
        return total

    def close(self) -> None:
        """Flush and close the current file; later appends fail."""
        with self._lock:
            if self._file is not None:
                try:
                    self._sync(self._file)
                finally:
                    self._file.close()
                    self._file = None
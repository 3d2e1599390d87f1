# graphts

`graphts` is the transaction layer for a versioned graph key-value store.
It starts transactions at a snapshot version taken from a log service and
keeps their read and write sets. It detects conflicts at commit time, takes
key locks for serializable transactions and records undo information for
rollback. Every step goes to a write-ahead log, and when a manager starts it
replays that log and rolls back unfinished transactions.

## Installing

```
pip install graphts
```

To run the test suite:

```
pip install "graphts[test]"
pytest
```

## Modules

- `graphts.errors`: `TsError` is the base class. Its subclasses are
  `GrpcError`, `TransactionNotFoundError`,
  `TransactionAlreadyCommittedError`, `TransactionAlreadyRolledBackError`,
  `VersionConflictError`, `ReadConflictError`, `WriteConflictError`,
  `TsTimeoutError` (also a `TimeoutError`), `InvalidArgumentError` (also a
  `ValueError`), `LsError`, `SsError`, `SerializationError` and
  `UnknownError`.
- `graphts.config`: `TsConfig` holds a `ServerConfig`, an `LsConfig` and an
  `SsConfig`. Every address defaults to 127.0.0.1. The default ports are
  25003 for the transaction service, 25002 for the log service and 25001
  for the storage service. The other defaults are a 5000 ms timeout, 4
  worker threads and at most 1000 transactions. `TsConfig.from_dict` needs
  the `server`, `ls` and `ss` tables. A field missing from a table takes
  its default, and a bad value raises `SerializationError`. `to_dict`
  converts back. `server_addr()` returns a `(host, port)` tuple, and
  `ls_addr()` and `ss_addr()` return `http://host:port` strings.
- `graphts.context`: `Transaction`, `TransactionState`, `IsolationLevel`
  (`READ_COMMITTED`, `SNAPSHOT`, `SERIALIZABLE`), `ReadRecord`, `WriteSet`,
  `Kv` and `LogEntry`.
- `graphts.undo_log`: `UndoLog`, `UndoOp`, `UndoOpKind` and
  `build_rollback_write_set`, which turns a transaction's undo records into
  a write set that reverses them, newest first. An insert becomes a delete.
  An update or a delete restores the old value.
- `graphts.lock_manager`: `LockManager` and `LockMode`. Each key has shared
  and exclusive locks. `try_acquire_lock` polls until the lock is granted
  and raises `TsTimeoutError` when the timeout runs out.
- `graphts.wal`: `WalManager`, `WalEntry` and `WalEntryType`. Each entry is
  big-endian, with a length prefix, in numbered `wal_NNNNNNNNNN.log` files.
  A new file is started whenever an entry with a transaction id that is a
  multiple of 1000 is appended. `read_all_entries` skips entries that are
  damaged or only partly written.
- `graphts.recovery`: `RecoveryManager.recover` writes a Rollback record
  for every transaction that began but never committed or rolled back, and
  then writes a checkpoint. `validate_wal_integrity` returns false for
  entries with transaction id 0 or with a timestamp more than a day in the
  future.
- `graphts.conflict_detector`: `ConflictDetector` and `ConflictResult`.
  Read committed checks write-write conflicts. Snapshot checks read-write
  and write-write conflicts. Serializable also checks write-read conflicts
  against newer active transactions.
- `graphts.version`: `VersionManager` hands out transaction ids and keeps
  the current snapshot version.
- `graphts.validation`: `validate_write` and `validate_constraints`. A key
  must not be empty and may be at most 1024 bytes. A value may be at most
  1 MiB. `validate_constraints` also rejects keys that contain a NUL byte.
- `graphts.manager`: `TransactionManager`, the `LogServiceClient` and
  `StorageServiceClient` protocols it uses, and `AppendEntryResult`.

## Using the transaction manager

`TransactionManager` works with any async objects that have the methods of
`LogServiceClient` (`get_max_committed_version`, `append_entry`) and
`StorageServiceClient` (`get`). An in-memory object is enough. A client
should raise a `TsError` subclass when it fails.

```python
from pathlib import Path

from graphts.context import IsolationLevel
from graphts.manager import TransactionManager


async def run(ls_client, ss_client):
    manager = await TransactionManager.create(ls_client, ss_client, Path("./wal_logs"))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.write(tx.id, b"alice", b"knows bob")
    value = await manager.read(tx.id, b"alice", None)
    commit_version = await manager.commit_transaction(tx.id)
    return value, commit_version
```

`create` reads the initial snapshot from the log service, using 0 if that
fails. It then opens the WAL directory with fsync enabled and runs crash
recovery.

A read sees the transaction's own writes first. A transaction that has
passed its timeout is aborted on its next operation, and that operation
raises `TsTimeoutError`.

A read-only transaction commits without a log entry and returns the current
snapshot version. Any other commit runs in two phases:

1. The constraints are checked and, for serializable transactions, locks
   are taken.
2. Conflicts are detected, a Prepare record is written to the WAL, and the
   write set is appended to the log service at version `max_committed + 1`.
3. A Commit record and a checkpoint are written.

If the log service refuses the append, the transaction is rolled back and
`LsError` is raised. A rollback builds the inverse of the transaction's
writes from its undo log, sends it to the log service, and writes a
Rollback record.

The status methods are `active_transaction_count()`, `wal_size()`,
`locked_keys_count()` and `is_key_locked(key)`.

## What it does not do

The package is a library only. It has no network server, no command-line
program and no clients for a real log service or storage service. Callers
supply those clients, and any remote protocol that exposes the manager is
left to the caller. Data is stored by the storage service, not here. The
only files this package writes are those in the WAL directory.
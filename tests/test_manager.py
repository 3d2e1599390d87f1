import asyncio

import pytest

from graphts.context import IsolationLevel, Kv, LogEntry
from graphts.errors import (
    InvalidArgumentError,
    LsError,
    ReadConflictError,
    TransactionNotFoundError,
    TsTimeoutError,
    WriteConflictError,
)
from graphts.manager import AppendEntryResult, TransactionManager
from graphts.wal import WalEntryType, WalManager


class FakeLs:
    def __init__(self, version=0, ok=True, fail_version=False):
        self.version = version
        self.ok = ok
        self.fail_version = fail_version
        self.entries: list[LogEntry] = []

    async def get_max_committed_version(self):
        if self.fail_version:
            raise LsError("unreachable")
        return self.version

    async def append_entry(self, log_entry):
        if not self.ok:
            return AppendEntryResult(False, "disk full")
        self.entries.append(log_entry)
        self.version = log_entry.commit_version
        return AppendEntryResult(True, "")


class FakeSs:
    def __init__(self, data=None):
        self.data = dict(data or {})
        self.requested_versions: list[int] = []

    async def get(self, graph_id, key, version):
        self.requested_versions.append(version)
        return self.data.get(key)


async def make(tmp_path, ls=None, ss=None):
    ls = ls or FakeLs()
    ss = ss or FakeSs()
    manager = await TransactionManager.create(ls, ss, tmp_path / "wal")
    return manager, ls, ss


@pytest.mark.asyncio
async def test_begin_uses_ls_version_as_snapshot(tmp_path):
    manager, _, _ = await make(tmp_path, ls=FakeLs(version=7))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    assert tx.snapshot_version == 7
    assert tx.id == 1
    assert manager.active_transaction_count() == 1


@pytest.mark.asyncio
async def test_unreachable_ls_starts_at_zero(tmp_path):
    manager, _, _ = await make(tmp_path, ls=FakeLs(version=9, fail_version=True))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    assert tx.snapshot_version == 0


@pytest.mark.asyncio
async def test_read_your_own_write(tmp_path):
    manager, _, ss = await make(tmp_path, ss=FakeSs({b"k": b"stored"}))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.write(tx.id, b"k", b"mine")
    assert await manager.read(tx.id, b"k") == b"mine"


@pytest.mark.asyncio
async def test_read_uses_snapshot_version(tmp_path):
    manager, _, ss = await make(tmp_path, ls=FakeLs(version=3), ss=FakeSs({b"k": b"v"}))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    assert await manager.read(tx.id, b"k") == b"v"
    assert ss.requested_versions[-1] == 3


@pytest.mark.asyncio
async def test_read_committed_reads_latest(tmp_path):
    manager, ls, ss = await make(tmp_path, ls=FakeLs(version=2), ss=FakeSs({b"k": b"v"}))
    tx = await manager.begin_transaction(1, IsolationLevel.READ_COMMITTED, 5000)
    ls.version = 5
    await manager.read(tx.id, b"k")
    assert ss.requested_versions[-1] == 5


@pytest.mark.asyncio
async def test_specified_version_beyond_snapshot_rejected(tmp_path):
    manager, _, _ = await make(tmp_path, ls=FakeLs(version=2))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    with pytest.raises(InvalidArgumentError):
        await manager.read(tx.id, b"k", 3)


@pytest.mark.asyncio
async def test_specified_version_allowed_under_read_committed(tmp_path):
    manager, _, ss = await make(tmp_path, ls=FakeLs(version=2), ss=FakeSs({b"k": b"v"}))
    tx = await manager.begin_transaction(1, IsolationLevel.READ_COMMITTED, 5000)
    assert await manager.read(tx.id, b"k", 10) == b"v"
    assert ss.requested_versions[-1] == 10


@pytest.mark.asyncio
async def test_unknown_transaction(tmp_path):
    manager, _, _ = await make(tmp_path)
    with pytest.raises(TransactionNotFoundError):
        await manager.write(42, b"k", b"v")


@pytest.mark.asyncio
async def test_commit_appends_log_entry(tmp_path):
    manager, ls, _ = await make(tmp_path, ls=FakeLs(version=7))
    tx = await manager.begin_transaction(4, IsolationLevel.SNAPSHOT, 5000)
    await manager.write(tx.id, b"k", b"v")
    version = await manager.commit_transaction(tx.id)
    assert len(ls.entries) == 1
    entry = ls.entries[0]
    assert entry.prev_commit_version == 7
    assert entry.commit_version == version
    assert entry.graph_id == 4
    assert entry.write_set.upsert_kvs == [Kv(b"k", b"v")]
    assert manager.active_transaction_count() == 0


@pytest.mark.asyncio
async def test_read_only_commit_writes_nothing(tmp_path):
    manager, ls, _ = await make(tmp_path, ls=FakeLs(version=7))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.read(tx.id, b"k")
    assert await manager.commit_transaction(tx.id) == 7
    assert ls.entries == []


@pytest.mark.asyncio
async def test_write_write_conflict(tmp_path):
    manager, _, _ = await make(tmp_path)
    tx1 = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    tx2 = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.write(tx1.id, b"k", b"a")
    await manager.write(tx2.id, b"k", b"b")
    await manager.commit_transaction(tx1.id)
    with pytest.raises(WriteConflictError):
        await manager.commit_transaction(tx2.id)


@pytest.mark.asyncio
async def test_read_write_conflict(tmp_path):
    manager, _, _ = await make(tmp_path)
    tx1 = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    tx2 = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.read(tx2.id, b"k")
    await manager.write(tx1.id, b"k", b"a")
    await manager.commit_transaction(tx1.id)
    await manager.write(tx2.id, b"other", b"b")
    with pytest.raises(ReadConflictError):
        await manager.commit_transaction(tx2.id)


@pytest.mark.asyncio
async def test_rollback_restores_old_values(tmp_path):
    manager, ls, _ = await make(tmp_path, ss=FakeSs({b"a": b"old"}))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.write(tx.id, b"a", b"new")
    await manager.write(tx.id, b"b", b"x")
    await manager.rollback_transaction(tx.id, "client request")
    assert len(ls.entries) == 1
    write_set = ls.entries[0].write_set
    assert write_set.upsert_kvs == [Kv(b"a", b"old")]
    assert write_set.deleted_keys == [b"b"]
    assert manager.active_transaction_count() == 0


@pytest.mark.asyncio
async def test_failed_append_rolls_back(tmp_path):
    manager, _, _ = await make(tmp_path, ls=FakeLs(ok=False))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.write(tx.id, b"k", b"v")
    with pytest.raises(LsError, match="disk full"):
        await manager.commit_transaction(tx.id)
    assert manager.active_transaction_count() == 0


@pytest.mark.asyncio
async def test_empty_key_rejected(tmp_path):
    manager, _, _ = await make(tmp_path)
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    with pytest.raises(InvalidArgumentError):
        await manager.write(tx.id, b"", b"v")


@pytest.mark.asyncio
async def test_delete_commits_deleted_key(tmp_path):
    manager, ls, _ = await make(tmp_path, ss=FakeSs({b"a": b"v"}))
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    await manager.delete(tx.id, b"a")
    assert await manager.read(tx.id, b"a") is None
    await manager.commit_transaction(tx.id)
    assert ls.entries[0].write_set.deleted_keys == [b"a"]
    assert ls.entries[0].write_set.upsert_kvs == []


@pytest.mark.asyncio
async def test_serializable_write_holds_lock_until_commit(tmp_path):
    manager, _, _ = await make(tmp_path)
    tx = await manager.begin_transaction(1, IsolationLevel.SERIALIZABLE, 5000)
    await manager.write(tx.id, b"k", b"v")
    assert manager.is_key_locked(b"k")
    assert manager.locked_keys_count() == 1
    await manager.commit_transaction(tx.id)
    assert not manager.is_key_locked(b"k")
    assert manager.locked_keys_count() == 0


@pytest.mark.asyncio
async def test_timed_out_transaction_is_aborted(tmp_path):
    manager, _, _ = await make(tmp_path)
    tx = await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 0)
    await asyncio.sleep(0.01)
    with pytest.raises(TsTimeoutError):
        await manager.write(tx.id, b"k", b"v")
    assert manager.active_transaction_count() == 0


@pytest.mark.asyncio
async def test_abort_unknown_transaction_is_quiet(tmp_path):
    manager, _, _ = await make(tmp_path)
    await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    assert await manager.abort_transaction(99, "nothing") is None
    assert manager.active_transaction_count() == 1


@pytest.mark.asyncio
async def test_wal_grows_on_begin(tmp_path):
    manager, _, _ = await make(tmp_path)
    before = manager.wal_size()
    await manager.begin_transaction(1, IsolationLevel.SNAPSHOT, 5000)
    assert manager.wal_size() > before
import time

from graphts.recovery import RecoveryManager, RecoveryResult
from graphts.wal import WalEntry, WalEntryType, WalManager


def _write(tmp_path, entries):
    with WalManager(tmp_path, enable_fsync=False) as wal:
        for entry in entries:
            wal.append_entry(entry)


def test_empty_wal(tmp_path):
    with WalManager(tmp_path, enable_fsync=False) as wal:
        result = RecoveryManager(wal).recover()
    assert result == RecoveryResult(0, 0, 0)


def test_begin_only_is_rolled_back(tmp_path):
    _write(tmp_path, [WalEntry(WalEntryType.BEGIN, 5, 3)])
    with WalManager(tmp_path, enable_fsync=False) as wal:
        result = RecoveryManager(wal).recover()
        assert result.total_entries == 1
        assert result.recovered_transactions == 1
        assert result.rolled_back_transactions == 1
        assert wal.checkpoint == wal.seq_no
    with WalManager(tmp_path, enable_fsync=False) as wal:
        rollbacks = [e for e in wal.read_all_entries() if e.entry_type is WalEntryType.ROLLBACK]
    assert [(e.tx_id, e.graph_id) for e in rollbacks] == [(5, 3)]


def test_prepared_but_uncommitted_is_rolled_back(tmp_path):
    _write(
        tmp_path,
        [
            WalEntry(WalEntryType.BEGIN, 6, 1),
            WalEntry(WalEntryType.WRITE, 6, 1, key=b"k", value=b"v"),
            WalEntry(WalEntryType.PREPARE, 6, 1),
        ],
    )
    with WalManager(tmp_path, enable_fsync=False) as wal:
        result = RecoveryManager(wal).recover()
    assert result.total_entries == 3
    assert result.rolled_back_transactions == 1


def test_committed_and_rolled_back_are_skipped(tmp_path):
    _write(
        tmp_path,
        [
            WalEntry(WalEntryType.BEGIN, 1, 1),
            WalEntry(WalEntryType.COMMIT, 1, 1),
            WalEntry(WalEntryType.BEGIN, 2, 1),
            WalEntry(WalEntryType.ROLLBACK, 2, 1),
        ],
    )
    with WalManager(tmp_path, enable_fsync=False) as wal:
        result = RecoveryManager(wal).recover()
    assert result == RecoveryResult(4, 0, 0)


def test_transaction_without_begin_counts_as_recovered_only(tmp_path):
    _write(tmp_path, [WalEntry(WalEntryType.WRITE, 9, 1, key=b"k", value=b"v")])
    with WalManager(tmp_path, enable_fsync=False) as wal:
        result = RecoveryManager(wal).recover()
    assert result.recovered_transactions == 1
    assert result.rolled_back_transactions == 0


def test_recovery_is_idempotent_across_restarts(tmp_path):
    _write(tmp_path, [WalEntry(WalEntryType.BEGIN, 11, 2)])
    with WalManager(tmp_path, enable_fsync=False) as wal:
        first = RecoveryManager(wal).recover()
    with WalManager(tmp_path, enable_fsync=False) as wal:
        second = RecoveryManager(wal).recover()
    assert first.rolled_back_transactions == 1
    assert second.rolled_back_transactions == 0
    assert second.total_entries == first.total_entries + 1


def test_integrity_ok_for_normal_entries(tmp_path):
    _write(tmp_path, [WalEntry(WalEntryType.BEGIN, 1, 1), WalEntry(WalEntryType.COMMIT, 1, 1)])
    with WalManager(tmp_path, enable_fsync=False) as wal:
        assert RecoveryManager(wal).validate_wal_integrity() is True


def test_integrity_fails_for_zero_tx_id(tmp_path):
    _write(tmp_path, [WalEntry(WalEntryType.BEGIN, 0, 1)])
    with WalManager(tmp_path, enable_fsync=False) as wal:
        assert RecoveryManager(wal).validate_wal_integrity() is False


def test_integrity_fails_for_future_timestamp(tmp_path):
    future = int(time.time()) + 86400 * 2
    _write(tmp_path, [WalEntry(WalEntryType.BEGIN, 1, 1, timestamp=future)])
    with WalManager(tmp_path, enable_fsync=False) as wal:
        assert RecoveryManager(wal).validate_wal_integrity() is False
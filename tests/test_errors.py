import pytest

from graphts.errors import (
    GrpcError,
    InvalidArgumentError,
    LsError,
    ReadConflictError,
    SerializationError,
    SsError,
    TransactionAlreadyCommittedError,
    TransactionAlreadyRolledBackError,
    TransactionNotFoundError,
    TsError,
    TsTimeoutError,
    UnknownError,
    VersionConflictError,
    WriteConflictError,
)


@pytest.mark.parametrize(
    "cls",
    [
        GrpcError,
        ReadConflictError,
        WriteConflictError,
        TsTimeoutError,
        InvalidArgumentError,
        LsError,
        SsError,
        SerializationError,
        UnknownError,
    ],
)
def test_message_errors_carry_detail(cls):
    err = cls("something broke")
    assert isinstance(err, TsError)
    assert err.detail == "something broke"
    assert str(err).endswith("something broke")
    assert str(err).startswith(cls.label)


@pytest.mark.parametrize(
    "cls",
    [
        TransactionNotFoundError,
        TransactionAlreadyCommittedError,
        TransactionAlreadyRolledBackError,
    ],
)
def test_transaction_id_errors(cls):
    err = cls(42)
    assert err.tx_id == 42
    assert "42" in str(err)
    with pytest.raises(TsError):
        raise err


def test_version_conflict_keeps_both_versions():
    err = VersionConflictError(expected=7, actual=9)
    assert (err.expected, err.actual) == (7, 9)
    assert "7" in str(err) and "9" in str(err)
    assert str(err).index("7") < str(err).index("9")


def test_timeout_is_builtin_timeout():
    err = TsTimeoutError("lock wait")
    assert isinstance(err, TimeoutError)
    assert err.detail == "lock wait"
    assert str(err).endswith("lock wait")


def test_invalid_argument_is_value_error():
    err = InvalidArgumentError("empty key")
    assert isinstance(err, ValueError)
    assert err.detail == "empty key"
    assert str(err).endswith("empty key")
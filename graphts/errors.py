"""Exception hierarchy for the transaction service."""

from __future__ import annotations


class TsError(Exception):
    """Base class of every error raised by the transaction service."""

    label = "error"

    def __init__(self, detail: object = "") -> None:
        self.detail = str(detail)
        super().__init__(f"{self.label}: {self.detail}")


class GrpcError(TsError):
    """A remote call failed at the transport or RPC layer."""

    label = "gRPC error"


class _TransactionIdError(TsError):
    def __init__(self, tx_id: int) -> None:
        self.tx_id = tx_id
        super().__init__(tx_id)


class TransactionNotFoundError(_TransactionIdError):
    """No active transaction has the given id."""

    label = "transaction not found"


class TransactionAlreadyCommittedError(_TransactionIdError):
    """The transaction has already been committed."""

    label = "transaction already committed"


class TransactionAlreadyRolledBackError(_TransactionIdError):
    """The transaction has already been rolled back."""

    label = "transaction already rolled back"


class VersionConflictError(TsError):
    """A version other than the expected one was found."""

    label = "version conflict"

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected {expected}, actual {actual}")


class ReadConflictError(TsError):
    """A key read by the transaction was changed by a later commit."""

    label = "read conflict"


class WriteConflictError(TsError):
    """A key written by the transaction conflicts with another transaction."""

    label = "write conflict"


class TsTimeoutError(TsError, TimeoutError):
    """An operation or a transaction ran out of time."""

    label = "timeout"


class InvalidArgumentError(TsError, ValueError):
    """A request carried an argument that is not acceptable."""

    label = "invalid argument"


class LsError(TsError):
    """The log service reported a failure."""

    label = "LS error"


class SsError(TsError):
    """The storage service reported a failure."""

    label = "SS error"


class SerializationError(TsError):
    """Data could not be encoded or decoded."""

    label = "serialization error"


class UnknownError(TsError):
    """Any other failure."""

    label = "unknown error"
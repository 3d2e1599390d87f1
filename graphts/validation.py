"""Constraint checks applied to writes and to transactions before commit."""

from __future__ import annotations

import logging

from graphts.context import Transaction
from graphts.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

MAX_KEY_LEN = 1024
MAX_VALUE_LEN = 1024 * 1024


def _show_key(key: bytes) -> str:
    return key.decode("utf-8", errors="replace")


def _check_key(key: bytes) -> None:
    if not key:
        raise InvalidArgumentError("key must not be empty")
    if len(key) > MAX_KEY_LEN:
        raise InvalidArgumentError(f"key too long: {len(key)} bytes (max {MAX_KEY_LEN})")


def _check_value(value: bytes) -> None:
    if len(value) > MAX_VALUE_LEN:
        raise InvalidArgumentError(f"value too long: {len(value)} bytes (max 1MB)")


def validate_write(key: bytes, value: bytes) -> None:
    """Check the size limits of a single write; raise InvalidArgumentError if broken."""
    _check_key(bytes(key))
    _check_value(bytes(value))


def validate_constraints(tx: Transaction) -> None:
    """Check a transaction's write and read sets before it commits.

    Every written key must be non-empty, at most 1024 bytes and free of null
    bytes; every written value at most 1 MB; every read record must belong to
    the transaction's read keys.
    """
    for key, value in tx.write_set.items():
        _check_key(key)
        if value is not None:
            _check_value(value)
        if b"\x00" in key:
            raise InvalidArgumentError(f"key '{_show_key(key)}' contains a null byte")

    for record in tx.read_set:
        if record.key not in tx.read_keys:
            raise InvalidArgumentError(
                f"inconsistent read record: key {_show_key(record.key)!r} is not in the read keys"
            )

    logger.info("constraint validation passed (transaction %d)", tx.id)
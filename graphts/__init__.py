"""Transaction core: snapshots, conflict detection, key locks, undo logs and a write-ahead log."""

__version__ = "0.1.0"
"""
Protocol definition for the key-value backend.

The backend is a flat map of JSON values shared by many processes.  Each
key is written atomically on its own; there are no multi-key transactions
and no locks.  The record store is written against this contract only.

Implemented by:
- SqliteKeyValueStore (local file, the default)
- MemoryBackend (in-process, tests and ephemeral use)
"""

from typing import Any, Optional, Protocol, Sequence, runtime_checkable


@runtime_checkable
class KeyValueBackendProtocol(Protocol):
    """
    Flat, quota-bounded key-value store.

    Values are JSON-compatible (dict, list, str, int, float, bool, None).
    Reads return structural copies: mutating a returned value never
    changes the stored one.

    All methods raise :class:`vibrary.errors.BackendUnavailable` on I/O
    failure; ``set`` raises :class:`vibrary.errors.QuotaExceeded` when the
    write would exceed ``quota_bytes``.
    """

    quota_bytes: int

    def get(self, keys: Sequence[str]) -> dict[str, Any]:
        """Read the given keys; missing keys are omitted from the result."""
        ...

    def set(self, items: dict[str, Any]) -> None:
        """Write each key (each key independently atomic)."""
        ...

    def remove(self, keys: Sequence[str]) -> None:
        """Delete the given keys; missing keys are ignored."""
        ...

    def bytes_in_use(self, keys: Optional[Sequence[str]] = None) -> int:
        """Stored size in bytes (key + JSON value) of the given keys, or of all keys."""
        ...

    def close(self) -> None:
        ...

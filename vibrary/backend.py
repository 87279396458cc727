"""
Pluggable key-value backend factory.

Creates the backend named by configuration.  ``sqlite`` (default) stores
everything in one SQLite file in the store directory; ``memory`` keeps it
in-process.  External backends register via the ``vibrary.backends`` entry
point group.

External backend packages provide a factory function::

    def create_backend(config: StoreConfig) -> KeyValueBackendProtocol:
        ...

and register it in their pyproject.toml::

    [project.entry-points."vibrary.backends"]
    my-backend = "my_package.backend:create_backend"
"""

import json
import threading
from typing import Any, Optional, Sequence

from .config import StoreConfig
from .errors import QuotaExceeded
from .protocol import KeyValueBackendProtocol

DEFAULT_QUOTA_BYTES = 10 * 1024 * 1024


def encoded_size(key: str, value_json: str) -> int:
    """Bytes charged against the quota for one key."""
    return len(key.encode("utf-8")) + len(value_json.encode("utf-8"))


class MemoryBackend:
    """
    In-process backend holding JSON-encoded values.

    Values are stored encoded so every read returns a fresh structure,
    matching a real storage round trip.
    """

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, keys: Sequence[str]) -> dict[str, Any]:
        with self._lock:
            return {k: json.loads(self._data[k]) for k in keys if k in self._data}

    def set(self, items: dict[str, Any]) -> None:
        encoded = {k: json.dumps(v, ensure_ascii=False) for k, v in items.items()}
        with self._lock:
            if self.quota_bytes > 0:
                total = sum(
                    encoded_size(k, v) for k, v in self._data.items() if k not in encoded
                ) + sum(encoded_size(k, v) for k, v in encoded.items())
                if total > self.quota_bytes:
                    raise QuotaExceeded(
                        f"Write of {sorted(encoded)} needs {total} bytes "
                        f"(quota {self.quota_bytes})"
                    )
            self._data.update(encoded)

    def remove(self, keys: Sequence[str]) -> None:
        with self._lock:
            for k in keys:
                self._data.pop(k, None)

    def bytes_in_use(self, keys: Optional[Sequence[str]] = None) -> int:
        with self._lock:
            if keys is None:
                return sum(encoded_size(k, v) for k, v in self._data.items())
            return sum(encoded_size(k, self._data[k]) for k in keys if k in self._data)

    def close(self) -> None:
        pass


def create_memory_backend(config: StoreConfig) -> MemoryBackend:
    return MemoryBackend(quota_bytes=config.quota_bytes)


def create_backend(config: StoreConfig) -> KeyValueBackendProtocol:
    """
    Create the key-value backend from configuration.

    For ``backend = "sqlite"`` (default), opens ``vibrary.db`` in the store
    directory.  For ``"memory"``, an in-process map.  Other values are
    loaded via the ``vibrary.backends`` entry point group.
    """
    if config.backend == "sqlite":
        from .kv_store import SqliteKeyValueStore
        return SqliteKeyValueStore(config.path / "vibrary.db", quota_bytes=config.quota_bytes)
    if config.backend == "memory":
        return create_memory_backend(config)
    return _load_backend(config.backend, config)


def _load_backend(name: str, config: StoreConfig) -> KeyValueBackendProtocol:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="vibrary.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: sqlite, memory, {', '.join(available)}"
        )
    raise ValueError(f"Unknown backend: {name!r}. Available: sqlite, memory")

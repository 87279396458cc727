"""
Shared pytest fixtures for vibrary tests.

Provides an in-memory backend, a controllable millisecond clock, and a
record store wired to both, so no test touches the user's real store.
"""

from typing import Any, Callable, Optional, Sequence

import pytest

from vibrary.backend import MemoryBackend
from vibrary.errors import BackendUnavailable
from vibrary.identity import IdentityResolver
from vibrary.store import RecordStore
from vibrary.types import Detection

DAY_MS = 86_400_000
HOUR_MS = 3_600_000

# 2026-01-15T00:00:00Z
T0 = 1_768_435_200_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FlakyBackend:
    """MemoryBackend wrapper that fails reads or writes on demand."""

    def __init__(self, real: Optional[MemoryBackend] = None):
        self._real = real or MemoryBackend()
        self.fail_get = False
        self.fail_set = False
        self.fail_set_keys: set[str] = set()
        self.set_calls: list[list[str]] = []
        # Called with the written keys after each successful write
        self.after_set: Optional[Callable[[list[str]], None]] = None

    @property
    def quota_bytes(self) -> int:
        return self._real.quota_bytes

    def get(self, keys: Sequence[str]) -> dict[str, Any]:
        if self.fail_get:
            raise BackendUnavailable("simulated read failure")
        return self._real.get(keys)

    def set(self, items: dict[str, Any]) -> None:
        self.set_calls.append(sorted(items))
        if self.fail_set or self.fail_set_keys & set(items):
            raise BackendUnavailable("simulated write failure")
        self._real.set(items)
        if self.after_set is not None:
            self.after_set(sorted(items))

    def remove(self, keys: Sequence[str]) -> None:
        self._real.remove(keys)

    def bytes_in_use(self, keys: Optional[Sequence[str]] = None) -> int:
        return self._real.bytes_in_use(keys)

    def close(self) -> None:
        pass


def yt(video_id: str, title: str = "A Perfectly Normal Video", **kwargs) -> Detection:
    """YouTube watch-page detection."""
    return Detection(title=title, url=f"https://www.youtube.com/watch?v={video_id}", **kwargs)


def page(path: str, title: str, host: str = "example.com", **kwargs) -> Detection:
    """Detection on a site without native ids."""
    return Detection(title=title, url=f"https://{host}{path}", **kwargs)


def video_id(n: int) -> str:
    """An 11-character YouTube-style id for test record ``n``."""
    return f"vid{n:08d}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend(quota_bytes=0)


@pytest.fixture
def resolver():
    return IdentityResolver()


@pytest.fixture
def store(backend, clock):
    """Initialized record store on an unlimited in-memory backend."""
    s = RecordStore(backend, clock=clock)
    s.initialize()
    return s


@pytest.fixture(autouse=True)
def isolated_store_path(tmp_path, monkeypatch):
    """Keep error logs and default store paths inside tmp_path."""
    monkeypatch.setenv("VIBRARY_STORE_PATH", str(tmp_path / "default-store"))

"""Tests for failure modes.

Covers the scenarios that matter when the backend misbehaves:
- Write failures between ordered writes (never a dangling playlist member)
- Quota exhaustion during intake
- Background intake swallowing backend errors
- Corrupt partitions healed on read
- Maintenance aborted part-way
"""

import pytest

from vibrary.api import Vibrary
from vibrary.backend import MemoryBackend
from vibrary.config import StoreConfig
from vibrary.errors import BackendUnavailable, QuotaExceeded
from vibrary.lifecycle import LifecycleManager
from vibrary.store import HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY, RecordStore

from tests.conftest import DAY_MS, HOUR_MS, FlakyBackend, video_id, yt


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def flaky():
    return FlakyBackend(MemoryBackend(quota_bytes=0))


@pytest.fixture
def flaky_store(flaky, clock):
    s = RecordStore(flaky, clock=clock)
    s.initialize()
    return s


def _no_dangling(store):
    library = store.load_partition(LIBRARY_KEY)
    for members in store.list_playlists().values():
        assert all(m in library for m in members)


# ---------------------------------------------------------------------------
# Ordered writes
# ---------------------------------------------------------------------------

class TestOrderedWrites:

    def test_add_to_playlist_writes_library_first(self, flaky, flaky_store):
        rid = flaky_store.upsert(yt(video_id(1), "Some Video Title")).record_id
        flaky_store.create_playlist("P")
        flaky.set_calls.clear()
        flaky_store.add_to_playlist(rid, "P")
        assert flaky.set_calls == [[LIBRARY_KEY], [PLAYLISTS_KEY]]

    def test_add_interrupted_leaves_orphan_not_dangling(self, flaky, flaky_store, clock):
        rid = flaky_store.upsert(yt(video_id(1), "Some Video Title")).record_id
        flaky_store.create_playlist("P")
        flaky.fail_set_keys = {PLAYLISTS_KEY}
        with pytest.raises(BackendUnavailable):
            flaky_store.add_to_playlist(rid, "P")
        flaky.fail_set_keys = set()

        _no_dangling(flaky_store)
        assert rid in flaky_store.load_partition(LIBRARY_KEY)
        # A fresh copy may still be waiting for its playlist write
        assert flaky_store.repair() == {"dangling": 0, "orphans": 0}
        clock.advance(HOUR_MS)
        assert flaky_store.repair() == {"dangling": 0, "orphans": 1}

    def test_remove_interrupted_leaves_orphan_not_dangling(self, flaky, flaky_store, clock):
        rid = flaky_store.upsert(yt(video_id(1), "Some Video Title")).record_id
        flaky_store.add_to_playlist(rid, "P", create=True)
        flaky.fail_set_keys = {LIBRARY_KEY}
        with pytest.raises(BackendUnavailable):
            flaky_store.remove_from_playlist(rid, "P")
        flaky.fail_set_keys = set()

        assert flaky_store.list_playlists() == {"P": []}
        _no_dangling(flaky_store)
        clock.advance(HOUR_MS)
        assert flaky_store.repair()["orphans"] == 1

    def test_cycle_between_library_and_playlist_writes(self, clock):
        shared = MemoryBackend(quota_bytes=0)
        flaky = FlakyBackend(shared)
        ui = RecordStore(flaky, clock=clock)
        ui.initialize()
        rid = ui.upsert(yt(video_id(1), "Some Video Title")).record_id
        ui.create_playlist("Keep")
        ui.set_retention_policy(7)

        maintenance = LifecycleManager(RecordStore(shared, clock=clock), clock=clock)
        cycles = []

        def cycle_after_library_write(keys):
            if keys == [LIBRARY_KEY] and not cycles:
                cycles.append(maintenance.run_cycle())
        flaky.after_set = cycle_after_library_write

        ui.add_to_playlist(rid, "Keep")

        assert not cycles[0].skipped
        assert cycles[0].repaired == {"dangling": 0, "orphans": 0}
        assert ui.list_playlists() == {"Keep": [rid]}
        _no_dangling(ui)

    def test_edit_interrupted_between_partitions(self, flaky, flaky_store):
        rid = flaky_store.upsert(yt(video_id(1), "Some Video Title")).record_id
        flaky_store.add_to_playlist(rid, "P", create=True)
        flaky.fail_set_keys = {LIBRARY_KEY}
        with pytest.raises(BackendUnavailable):
            flaky_store.set_rating(rid, 5)
        # History was written first; the library copy lags until the next edit
        assert flaky_store.load_partition(HISTORY_KEY)[rid].rating == 5
        assert flaky_store.load_partition(LIBRARY_KEY)[rid].rating == 0


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------

class TestQuota:

    def test_upsert_over_quota_raises_and_keeps_state(self, clock):
        backend = MemoryBackend(quota_bytes=0)
        store = RecordStore(backend, clock=clock)
        store.initialize()
        store.upsert(yt(video_id(1), "First Video Title"))
        backend.quota_bytes = backend.bytes_in_use()

        with pytest.raises(QuotaExceeded):
            store.upsert(yt(video_id(2), "Second Video Title"))
        assert list(store.load_partition(HISTORY_KEY)) == ["youtube:" + video_id(1)]

    def test_quota_relief_makes_room(self, clock):
        backend = MemoryBackend(quota_bytes=0)
        store = RecordStore(backend, clock=clock)
        store.initialize()
        for n in range(12):
            store.upsert(yt(video_id(n), f"Video Title {n}"))
            clock.advance(1_000)
        backend.quota_bytes = backend.bytes_in_use()

        LifecycleManager(store, clock=clock).run_quota_check()
        store.upsert(yt(video_id(99), "Fits Again Now"))
        assert len(store.load_partition(HISTORY_KEY)) == 3


# ---------------------------------------------------------------------------
# Background intake
# ---------------------------------------------------------------------------

class TestBackgroundIntake:

    @pytest.fixture
    def vb(self, tmp_path, flaky, clock):
        v = Vibrary(config=StoreConfig(path=tmp_path, backend="memory"), backend=flaky, clock=clock)
        yield v
        v.close()

    def test_write_failure_is_swallowed(self, vb, flaky):
        flaky.fail_set = True
        vb.submit_detection(yt(video_id(1), "Some Video Title"))
        vb.flush(timeout=5)
        flaky.fail_set = False
        assert vb.list_history() == []

    def test_later_detections_still_recorded(self, vb, flaky, clock):
        flaky.fail_set = True
        vb.submit_detection(yt(video_id(1), "Some Video Title"))
        vb.flush(timeout=5)
        flaky.fail_set = False
        clock.advance(60_000)
        vb.submit_detection(yt(video_id(2), "Another Video Title"))
        vb.flush(timeout=5)
        assert [r.id for r in vb.list_history()] == ["youtube:" + video_id(2)]

    def test_read_failure_is_swallowed(self, vb, flaky):
        flaky.fail_get = True
        vb.submit_detection(yt(video_id(1), "Some Video Title"))
        vb.flush(timeout=5)
        flaky.fail_get = False
        assert vb.list_history() == []

    def test_startup_survives_unavailable_backend_for_maintenance(self, tmp_path, clock):
        class SweepFails(FlakyBackend):
            def get(self, keys):
                if sorted(keys) == sorted([HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY]):
                    raise BackendUnavailable("simulated read failure")
                return super().get(keys)

        v = Vibrary(config=StoreConfig(path=tmp_path, backend="memory"), backend=SweepFails(), clock=clock)
        try:
            assert v.list_history() == []
        finally:
            v.close()


# ---------------------------------------------------------------------------
# Corruption and aborted maintenance
# ---------------------------------------------------------------------------

class TestCorruption:

    def test_every_key_heals(self, backend, store):
        backend.set({HISTORY_KEY: 1, LIBRARY_KEY: "x", PLAYLISTS_KEY: [1, 2]})
        assert store.stats()["history"] == 0
        data = backend.get([HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY])
        assert data == {HISTORY_KEY: {}, LIBRARY_KEY: {}, PLAYLISTS_KEY: {}}

    def test_aborted_cycle_keeps_library(self, flaky, flaky_store, clock):
        flaky_store.set_retention_policy(1)
        ids = []
        for n in range(3):
            ids.append(flaky_store.upsert(yt(video_id(n), f"Video Title {n}")).record_id)
        flaky_store.add_to_playlist(ids[0], "P", create=True)
        clock.advance(2 * DAY_MS)

        flaky.fail_set_keys = {HISTORY_KEY}
        with pytest.raises(BackendUnavailable):
            LifecycleManager(flaky_store, clock=clock).run_cycle()
        flaky.fail_set_keys = set()

        assert len(flaky_store.load_partition(HISTORY_KEY)) == 3
        assert set(flaky_store.load_partition(LIBRARY_KEY)) == {ids[0]}
        assert flaky_store.get_settings().last_cleanup_at is None

"""Tests for migrating the single-partition ``videos`` layout."""

import pytest

from vibrary.migration import SOFT_DELETE_FLAG, migrate_legacy, plan_migration
from vibrary.store import (
    HISTORY_KEY,
    LEGACY_VIDEOS_KEY,
    LIBRARY_KEY,
    PLAYLISTS_KEY,
)

from tests.conftest import T0, yt


def _legacy(video_id, title, watched_at=T0, **extra):
    entry = {
        "id": f"legacy-{video_id}",
        "url": f"https://www.youtube.com/watch?v={video_id}",
        "title": title,
        "thumb": f"https://img.youtube.com/vi/{video_id}/mqdefault.jpg",
        "watchedAt": watched_at,
        "rating": 3,
        "dedupeKey": f"yt-{video_id}",
    }
    entry.update(extra)
    return entry


@pytest.fixture
def legacy_snapshot():
    videos = {
        "legacy-aaaaaaaaaaa": _legacy("aaaaaaaaaaa", "Plain History Entry"),
        "legacy-bbbbbbbbbbb": _legacy("bbbbbbbbbbb", "Kept In Playlist", **{SOFT_DELETE_FLAG: True}),
        "legacy-ccccccccccc": _legacy("ccccccccccc", "Watched And Curated"),
        "legacy-ddddddddddd": _legacy("ddddddddddd", "Deleted Forever", **{SOFT_DELETE_FLAG: True}),
    }
    playlists = {
        "Favourites": ["legacy-bbbbbbbbbbb", "legacy-ccccccccccc", "legacy-missing"],
    }
    return videos, playlists


# ---------------------------------------------------------------------------
# plan_migration()
# ---------------------------------------------------------------------------

class TestPlanMigration:

    def test_partitions(self, legacy_snapshot):
        plan = plan_migration(*legacy_snapshot)
        assert set(plan.history) == {"legacy-aaaaaaaaaaa", "legacy-ccccccccccc"}
        assert set(plan.library) == {"legacy-bbbbbbbbbbb", "legacy-ccccccccccc"}
        assert plan.playlists == {"Favourites": ["legacy-bbbbbbbbbbb", "legacy-ccccccccccc"]}
        assert plan.soft_deleted == 2
        assert plan.dangling == 1

    def test_soft_delete_flag_not_carried(self, legacy_snapshot):
        plan = plan_migration(*legacy_snapshot)
        assert SOFT_DELETE_FLAG not in plan.library["legacy-bbbbbbbbbbb"].to_dict()

    def test_identity_rederived(self, legacy_snapshot):
        plan = plan_migration(*legacy_snapshot)
        rec = plan.history["legacy-aaaaaaaaaaa"]
        assert rec.dedupe_key == "youtube:aaaaaaaaaaa"
        assert rec.platform == "youtube"
        assert rec.platform_video_id == "aaaaaaaaaaa"

    def test_legacy_fields_preserved(self, legacy_snapshot):
        rec = plan_migration(*legacy_snapshot).history["legacy-aaaaaaaaaaa"]
        assert rec.rating == 3
        assert rec.watched_at == T0
        assert rec.thumbnail == "https://img.youtube.com/vi/aaaaaaaaaaa/mqdefault.jpg"

    def test_library_copies_are_independent(self, legacy_snapshot):
        plan = plan_migration(*legacy_snapshot)
        plan.library["legacy-ccccccccccc"].rating = 5
        assert plan.history["legacy-ccccccccccc"].rating == 3

    def test_input_not_mutated(self, legacy_snapshot):
        videos, playlists = legacy_snapshot
        plan_migration(videos, playlists)
        assert videos["legacy-bbbbbbbbbbb"][SOFT_DELETE_FLAG] is True
        assert len(playlists["Favourites"]) == 3

    def test_malformed_entries_skipped(self):
        plan = plan_migration({"x": "nope", "y": _legacy("yyyyyyyyyyy", "Fine Entry")}, {})
        assert list(plan.history) == ["y"]


# ---------------------------------------------------------------------------
# migrate_legacy()
# ---------------------------------------------------------------------------

class TestMigrateLegacy:

    @pytest.fixture
    def legacy_backend(self, backend, legacy_snapshot):
        videos, playlists = legacy_snapshot
        backend.set({LEGACY_VIDEOS_KEY: videos, PLAYLISTS_KEY: playlists})
        return backend

    def test_writes_partitions_and_removes_legacy_key(self, legacy_backend, store):
        plan = migrate_legacy(store)
        assert plan is not None
        data = legacy_backend.get([HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY, LEGACY_VIDEOS_KEY])
        assert LEGACY_VIDEOS_KEY not in data
        assert set(data[HISTORY_KEY]) == {"legacy-aaaaaaaaaaa", "legacy-ccccccccccc"}
        assert set(data[LIBRARY_KEY]) == {"legacy-bbbbbbbbbbb", "legacy-ccccccccccc"}
        assert data[PLAYLISTS_KEY] == {"Favourites": ["legacy-bbbbbbbbbbb", "legacy-ccccccccccc"]}

    def test_second_run_is_noop(self, legacy_backend, store):
        migrate_legacy(store)
        before = legacy_backend.get([HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY])
        assert migrate_legacy(store) is None
        assert legacy_backend.get([HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY]) == before

    def test_skipped_when_history_populated(self, legacy_backend, store):
        store.upsert(yt("zzzzzzzzzzz", "Already Migrated Elsewhere"))
        assert migrate_legacy(store) is None
        assert LEGACY_VIDEOS_KEY in legacy_backend.get([LEGACY_VIDEOS_KEY])

    def test_nothing_to_migrate(self, store):
        assert migrate_legacy(store) is None

    def test_non_map_legacy_value_left_alone(self, backend, store):
        backend.set({LEGACY_VIDEOS_KEY: ["what"]})
        assert migrate_legacy(store) is None
        assert backend.get([LEGACY_VIDEOS_KEY])[LEGACY_VIDEOS_KEY] == ["what"]

    def test_migrated_store_is_usable(self, legacy_backend, store):
        migrate_legacy(store)
        store.remove_from_playlist("legacy-bbbbbbbbbbb", "Favourites")
        assert "legacy-bbbbbbbbbbb" not in store.load_partition(LIBRARY_KEY)
        assert store.get("legacy-bbbbbbbbbbb") is None

"""Tests for the SQLite key-value backend."""

import sqlite3

import pytest

from vibrary.errors import BackendUnavailable, QuotaExceeded
from vibrary.kv_store import SqliteKeyValueStore
from vibrary.store import HISTORY_KEY, RecordStore

from tests.conftest import yt


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "store" / "vibrary.db"


@pytest.fixture
def kv(db_path):
    store = SqliteKeyValueStore(db_path, quota_bytes=0)
    yield store
    store.close()


class TestBasicOperations:

    def test_creates_parent_directory(self, kv, db_path):
        assert db_path.exists()

    def test_set_and_get(self, kv):
        kv.set({"history": {"a": {"title": "Ünïcode Title"}}, "playlists": {"P": ["a"]}})
        assert kv.get(["history", "playlists"]) == {
            "history": {"a": {"title": "Ünïcode Title"}},
            "playlists": {"P": ["a"]},
        }

    def test_missing_keys_omitted(self, kv):
        kv.set({"history": {}})
        assert kv.get(["history", "library"]) == {"history": {}}
        assert kv.get([]) == {}

    def test_overwrite(self, kv):
        kv.set({"settings": {"retentionPolicy": "off"}})
        kv.set({"settings": {"retentionPolicy": 30}})
        assert kv.get(["settings"])["settings"]["retentionPolicy"] == 30

    def test_remove(self, kv):
        kv.set({"videos": {"x": {}}, "history": {}})
        kv.remove(["videos"])
        assert kv.get(["videos", "history"]) == {"history": {}}

    def test_bytes_in_use(self, kv):
        kv.set({"history": {"a": 1}, "library": {}})
        total = kv.bytes_in_use()
        assert total == kv.bytes_in_use(["history"]) + kv.bytes_in_use(["library"])
        assert kv.bytes_in_use(["history"]) == len("history") + len('{"a": 1}')
        assert kv.bytes_in_use([]) == 0

    def test_persists_across_reopen(self, db_path):
        with SqliteKeyValueStore(db_path) as first:
            first.set({"history": {"a": {"title": "Kept"}}})
        with SqliteKeyValueStore(db_path) as second:
            assert second.get(["history"])["history"]["a"]["title"] == "Kept"

    def test_closed_store_raises(self, db_path):
        kv = SqliteKeyValueStore(db_path)
        kv.close()
        with pytest.raises(BackendUnavailable):
            kv.get(["history"])
        kv.close()  # idempotent


class TestQuota:

    def test_write_over_quota_rejected(self, db_path):
        with SqliteKeyValueStore(db_path, quota_bytes=64) as kv:
            kv.set({"history": {"a": "x"}})
            with pytest.raises(QuotaExceeded):
                kv.set({"library": {"b": "y" * 100}})
            assert kv.get(["history", "library"]) == {"history": {"a": "x"}}

    def test_replacing_a_key_counts_new_size_only(self, db_path):
        with SqliteKeyValueStore(db_path, quota_bytes=40) as kv:
            kv.set({"history": {"a": "x" * 20}})
            kv.set({"history": {"b": "y" * 20}})
            assert list(kv.get(["history"])["history"]) == ["b"]

    def test_quota_exceeded_is_backend_unavailable(self):
        assert issubclass(QuotaExceeded, BackendUnavailable)


class TestCorruptValues:

    def _write_raw(self, db_path, key, text):
        conn = sqlite3.connect(str(db_path))
        conn.execute(
            "INSERT OR REPLACE INTO kv (key, value_json, updated_at) VALUES (?, ?, ?)",
            (key, text, "2026-01-01T00:00:00"),
        )
        conn.commit()
        conn.close()

    def test_undecodable_value_returned_raw(self, kv, db_path):
        self._write_raw(db_path, "history", "{not json")
        assert kv.get(["history"]) == {"history": "{not json"}

    def test_record_store_heals_undecodable_partition(self, kv, db_path):
        store = RecordStore(kv)
        store.initialize()
        self._write_raw(db_path, HISTORY_KEY, "{not json")
        assert store.load_partition(HISTORY_KEY) == {}
        store.upsert(yt("dQw4w9WgXcQ", "Never Gonna Give You Up"))
        assert list(store.load_partition(HISTORY_KEY)) == ["youtube:dQw4w9WgXcQ"]


def test_two_connections_share_data(db_path):
    with SqliteKeyValueStore(db_path) as a, SqliteKeyValueStore(db_path) as b:
        a.set({"playlists": {"Shared": []}})
        assert b.get(["playlists"]) == {"playlists": {"Shared": []}}

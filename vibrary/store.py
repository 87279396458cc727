"""
Record store: the two-partition video map and the playlist index.

Persisted layout (one backend key each)::

    history:   {record_id: record}       every watched video, evictable
    library:   {record_id: record}       copies of playlist-referenced videos
    playlists: {name: [record_id, ...]}  ordered, duplicate-free
    settings:  {retentionPolicy, lastCleanupAt}

Every operation is read -> mutate in memory -> write, one key at a time.
There is no cross-key transaction and no lock; concurrent writers can lose
each other's updates.  Writes are ordered so that an interrupted operation
never leaves a playlist pointing at a missing library record: library
copies are written before playlist references are added, and playlist
references are removed before library copies are dropped.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .config import REMOVAL_IMMEDIATE, REMOVAL_POLICIES
from .dedupe import (
    admit,
    group_duplicates,
    merge_detection,
    mirror_shared_fields,
    new_record,
    pick_survivor,
)
from .errors import SchemaCorruption
from .identity import IdentityResolver
from .protocol import KeyValueBackendProtocol
from .types import (
    SOURCE_IMPORT,
    Action,
    Admission,
    Clock,
    Detection,
    Settings,
    VideoRecord,
    now_ms,
    parse_retention_policy,
    validate_rating,
)

logger = logging.getLogger(__name__)

HISTORY_KEY = "history"
LIBRARY_KEY = "library"
PLAYLISTS_KEY = "playlists"
SETTINGS_KEY = "settings"
LEGACY_VIDEOS_KEY = "videos"

PARTITIONS = (HISTORY_KEY, LIBRARY_KEY)

# Unreferenced library copies younger than this may belong to an add_to_playlist
# still between its library write and its playlist write.
ORPHAN_GRACE_MS = 3_600_000

SORT_DATE = "date"
SORT_RATING = "rating"

EXPORT_FORMAT = "vibrary-export"
EXPORT_VERSION = 1

KEEP_EXISTING = "keep-existing"
KEEP_INCOMING = "keep-incoming"

MAX_PLAYLIST_NAME_LENGTH = 200

# (kind, key, existing, incoming) -> KEEP_EXISTING | KEEP_INCOMING
ConflictResolver = Callable[[str, str, Any, Any], str]


@dataclass
class HistoryFilter:
    """Filter for list_history(); unset fields match everything."""
    rating: Optional[int] = None        # exact rating
    min_rating: Optional[int] = None
    platform: Optional[str] = None
    text: Optional[str] = None          # case-insensitive title substring

    def matches(self, record: VideoRecord) -> bool:
        if self.rating is not None and record.rating != self.rating:
            return False
        if self.min_rating is not None and record.rating < self.min_rating:
            return False
        if self.platform and record.platform != self.platform:
            return False
        if self.text and self.text.casefold() not in record.title.casefold():
            return False
        return True


def sort_records(records: Iterable[VideoRecord], sort: str = SORT_DATE) -> list[VideoRecord]:
    """Sort newest first, or by rating (highest first, then newest)."""
    if sort == SORT_DATE:
        return sorted(records, key=lambda r: (-r.watched_at, r.id))
    if sort == SORT_RATING:
        return sorted(records, key=lambda r: (-r.rating, -r.watched_at, r.id))
    raise ValueError(f"Unknown sort: {sort!r} (expected {SORT_DATE!r} or {SORT_RATING!r})")


def _validate_playlist_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_PLAYLIST_NAME_LENGTH:
        raise ValueError(f"Playlist name must be 1-{MAX_PLAYLIST_NAME_LENGTH} characters")
    return name


def referenced_ids(playlists: Mapping[str, list[str]]) -> set[str]:
    """Union of all playlist members (the protected set)."""
    ids: set[str] = set()
    for members in playlists.values():
        ids.update(members)
    return ids


class RecordStore:
    """
    History/library partitions and playlists over a flat key-value backend.

    Example:
        store = RecordStore(MemoryBackend())
        store.upsert(Detection(title="Intro to SQLite", url="https://youtu.be/abcdefghijk"))
        store.create_playlist("Databases")
        store.add_to_playlist("youtube:abcdefghijk", "Databases")
    """

    def __init__(
        self,
        backend: KeyValueBackendProtocol,
        *,
        resolver: Optional[IdentityResolver] = None,
        clock: Optional[Clock] = None,
        removal_policy: str = REMOVAL_IMMEDIATE,
    ) -> None:
        if removal_policy not in REMOVAL_POLICIES:
            raise ValueError(f"Unknown library removal policy: {removal_policy!r}")
        self._backend = backend
        self._resolver = resolver or IdentityResolver()
        self._clock: Clock = clock or now_ms
        self._removal_policy = removal_policy

    @property
    def backend(self) -> KeyValueBackendProtocol:
        return self._backend

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    @property
    def removal_policy(self) -> str:
        return self._removal_policy

    # -------------------------------------------------------------------------
    # Partition access (with self-healing of corrupt partitions)
    # -------------------------------------------------------------------------

    def _read(self, *keys: str) -> dict[str, Any]:
        return self._backend.get(list(keys))

    def _heal(self, key: str, raw: Any) -> None:
        err = SchemaCorruption(f"{key!r} is {type(raw).__name__}, not a map")
        logger.warning("Schema corruption: %s; resetting to empty", err)
        self._backend.set({key: {}})

    def _records(self, raw: Any, key: str) -> dict[str, VideoRecord]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            self._heal(key, raw)
            return {}
        records: dict[str, VideoRecord] = {}
        for record_id, value in raw.items():
            if not isinstance(value, dict):
                logger.warning("Dropping malformed %s entry %r", key, record_id)
                continue
            records[record_id] = VideoRecord.from_dict(value, id=record_id)
        return records

    def _playlists(self, raw: Any) -> dict[str, list[str]]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            self._heal(PLAYLISTS_KEY, raw)
            return {}
        playlists: dict[str, list[str]] = {}
        for name, members in raw.items():
            if not isinstance(members, list):
                logger.warning("Playlist %r members are not a list; emptying", name)
                members = []
            seen: set[str] = set()
            clean: list[str] = []
            for m in members:
                if isinstance(m, str) and m not in seen:
                    seen.add(m)
                    clean.append(m)
            playlists[name] = clean
        return playlists

    def _settings(self, raw: Any) -> Settings:
        if raw is None:
            return Settings()
        if not isinstance(raw, dict):
            self._heal(SETTINGS_KEY, raw)
            return Settings()
        return Settings.from_dict(raw)

    def _write_records(self, key: str, records: Mapping[str, VideoRecord]) -> None:
        self._backend.set({key: {rid: rec.to_dict() for rid, rec in records.items()}})

    def _write_playlists(self, playlists: Mapping[str, list[str]]) -> None:
        self._backend.set({PLAYLISTS_KEY: {name: list(m) for name, m in playlists.items()}})

    def _write_settings(self, settings: Settings) -> None:
        self._backend.set({SETTINGS_KEY: settings.to_dict()})

    def load_partition(self, key: str) -> dict[str, VideoRecord]:
        """Read one partition (``history`` or ``library``) as records by id."""
        if key not in PARTITIONS:
            raise ValueError(f"Unknown partition: {key!r}")
        return self._records(self._read(key).get(key), key)

    def list_playlists(self) -> dict[str, list[str]]:
        """All playlists: name -> ordered member ids."""
        return self._playlists(self._read(PLAYLISTS_KEY).get(PLAYLISTS_KEY))

    def initialize(self) -> list[str]:
        """
        Create any missing top-level keys as empty maps.

        Returns:
            The keys that were created
        """
        keys = (HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY, SETTINGS_KEY)
        present = self._read(*keys)
        missing = {k: (Settings().to_dict() if k == SETTINGS_KEY else {})
                   for k in keys if k not in present}
        if missing:
            self._backend.set(missing)
            logger.info("Initialized storage keys: %s", ", ".join(sorted(missing)))
        return sorted(missing)

    # -------------------------------------------------------------------------
    # Detection intake
    # -------------------------------------------------------------------------

    def upsert(self, detection: Detection) -> Admission:
        """
        Admit a detection and write the result.

        Creates land in ``history`` only.  An update refreshes the history
        copy and mirrors the detection-maintained fields into the library
        copy when one exists.

        Returns:
            The admission decision (REJECT means nothing was written)
        """
        raw = self._read(HISTORY_KEY, LIBRARY_KEY)
        history = self._records(raw.get(HISTORY_KEY), HISTORY_KEY)
        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)

        admission = admit(detection, {**library, **history}, self._resolver)
        if admission.action is Action.REJECT:
            logger.debug("Detection rejected: %s", admission.reason)
            return admission

        identity = admission.identity
        now = self._clock()

        if admission.action is Action.CREATE:
            record = new_record(identity, detection, now)
            history[record.id] = record
            self._write_records(HISTORY_KEY, history)
            logger.info("Recorded %s: %s", record.id, record.title)
            return admission

        existing_id = admission.existing_id
        base = history.get(existing_id) or library[existing_id]
        merged = merge_detection(base, identity, detection, now)
        merged.library_added_at = 0
        history[existing_id] = merged
        self._write_records(HISTORY_KEY, history)
        if existing_id in library:
            library[existing_id] = mirror_shared_fields(library[existing_id], merged)
            self._write_records(LIBRARY_KEY, library)
        logger.debug("Refreshed %s", existing_id)
        return admission

    # -------------------------------------------------------------------------
    # User edits (applied to history, then library)
    # -------------------------------------------------------------------------

    def _edit(self, record_id: str, mutate: Callable[[VideoRecord], None]) -> VideoRecord:
        raw = self._read(HISTORY_KEY, LIBRARY_KEY)
        history = self._records(raw.get(HISTORY_KEY), HISTORY_KEY)
        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        if record_id not in history and record_id not in library:
            raise KeyError(f"Unknown record: {record_id}")

        result = None
        if record_id in history:
            mutate(history[record_id])
            self._write_records(HISTORY_KEY, history)
            result = history[record_id]
        # Brief divergence window between these two writes is accepted
        if record_id in library:
            mutate(library[record_id])
            self._write_records(LIBRARY_KEY, library)
            result = result or library[record_id]
        return result

    def set_rating(self, record_id: str, rating: int) -> VideoRecord:
        """Set a record's rating (0-5, 0 = unrated) in both partitions."""
        rating = validate_rating(rating)

        def apply(rec: VideoRecord) -> None:
            rec.rating = rating

        return self._edit(record_id, apply)

    def edit_title(self, record_id: str, title: str) -> VideoRecord:
        """Replace a record's title in both partitions."""
        title = (title or "").strip()
        if not title:
            raise ValueError("Title must not be empty")

        def apply(rec: VideoRecord) -> None:
            rec.title = title

        return self._edit(record_id, apply)

    # -------------------------------------------------------------------------
    # Playlists
    # -------------------------------------------------------------------------

    def create_playlist(self, name: str) -> str:
        """Create an empty playlist; raises ValueError if the name is taken."""
        name = _validate_playlist_name(name)
        playlists = self.list_playlists()
        if name in playlists:
            raise ValueError(f"Playlist already exists: {name}")
        playlists[name] = []
        self._write_playlists(playlists)
        logger.info("Created playlist %r", name)
        return name

    def rename_playlist(self, old: str, new: str) -> str:
        """Rename a playlist, keeping its position and members."""
        new = _validate_playlist_name(new)
        playlists = self.list_playlists()
        if old not in playlists:
            raise KeyError(f"Unknown playlist: {old}")
        if new == old:
            return new
        if new in playlists:
            raise ValueError(f"Playlist already exists: {new}")
        renamed = {(new if name == old else name): members for name, members in playlists.items()}
        self._write_playlists(renamed)
        logger.info("Renamed playlist %r -> %r", old, new)
        return new

    def delete_playlist(self, name: str) -> list[str]:
        """
        Delete a playlist.

        Members no longer referenced by any other playlist leave the library
        (immediately, or at the next maintenance pass under the deferred
        removal policy).

        Returns:
            Ids dropped from the library
        """
        raw = self._read(LIBRARY_KEY, PLAYLISTS_KEY)
        playlists = self._playlists(raw.get(PLAYLISTS_KEY))
        if name not in playlists:
            raise KeyError(f"Unknown playlist: {name}")
        members = playlists.pop(name)
        self._write_playlists(playlists)
        logger.info("Deleted playlist %r (%d members)", name, len(members))

        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        return self._drop_unreferenced(members, library, playlists)

    def add_to_playlist(self, record_id: str, name: str, *, create: bool = False) -> bool:
        """
        Add a record to a playlist, copying it into the library first.

        Args:
            record_id: Record to add (must exist in history or library)
            name: Playlist name
            create: Create the playlist if it does not exist

        Returns:
            True if added, False if it was already a member
        """
        raw = self._read(HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY)
        playlists = self._playlists(raw.get(PLAYLISTS_KEY))
        if name not in playlists:
            if not create:
                raise KeyError(f"Unknown playlist: {name}")
            name = _validate_playlist_name(name)
            playlists.setdefault(name, [])

        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        if record_id not in library:
            history = self._records(raw.get(HISTORY_KEY), HISTORY_KEY)
            if record_id not in history:
                raise KeyError(f"Unknown record: {record_id}")
            library[record_id] = self._library_copy(history[record_id])
            self._write_records(LIBRARY_KEY, library)
            logger.info("Promoted %s to library", record_id)

        members = playlists[name]
        if record_id in members:
            if create:
                self._write_playlists(playlists)
            return False
        members.append(record_id)
        self._write_playlists(playlists)
        return True

    def remove_from_playlist(self, record_id: str, name: str) -> bool:
        """
        Remove a record from a playlist.

        If no playlist references it any more it leaves the library; the
        history copy (if any) is untouched.

        Returns:
            True if it was a member
        """
        raw = self._read(LIBRARY_KEY, PLAYLISTS_KEY)
        playlists = self._playlists(raw.get(PLAYLISTS_KEY))
        if name not in playlists:
            raise KeyError(f"Unknown playlist: {name}")
        members = playlists[name]
        if record_id not in members:
            return False
        members.remove(record_id)
        self._write_playlists(playlists)

        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        self._drop_unreferenced([record_id], library, playlists)
        return True

    def _library_copy(self, record: VideoRecord) -> VideoRecord:
        copy = record.copy()
        copy.library_added_at = self._clock()
        return copy

    def _drop_unreferenced(
        self,
        candidates: Iterable[str],
        library: dict[str, VideoRecord],
        playlists: Mapping[str, list[str]],
    ) -> list[str]:
        """Drop candidates from the library if nothing references them (immediate policy)."""
        if self._removal_policy != REMOVAL_IMMEDIATE:
            return []
        referenced = referenced_ids(playlists)
        dropped = [rid for rid in candidates if rid in library and rid not in referenced]
        if dropped:
            for rid in dropped:
                del library[rid]
            self._write_records(LIBRARY_KEY, library)
            logger.info("Removed from library: %s", ", ".join(dropped))
        return dropped

    # -------------------------------------------------------------------------
    # Deletion and eviction
    # -------------------------------------------------------------------------

    def delete_from_history(self, record_id: str) -> bool:
        """
        Delete a record from history at the user's request.

        The library copy survives while any playlist references the record;
        otherwise it is deleted too.  Automatic cleanup uses
        :meth:`evict_from_history` instead, which never touches the library.

        Returns:
            True if anything was deleted
        """
        raw = self._read(HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY)
        history = self._records(raw.get(HISTORY_KEY), HISTORY_KEY)
        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        playlists = self._playlists(raw.get(PLAYLISTS_KEY))

        deleted = False
        if record_id in history:
            del history[record_id]
            self._write_records(HISTORY_KEY, history)
            deleted = True
        if record_id in library and record_id not in referenced_ids(playlists):
            del library[record_id]
            self._write_records(LIBRARY_KEY, library)
            deleted = True
        if deleted:
            logger.info("Deleted %s from history", record_id)
        return deleted

    def evict_from_history(
        self,
        select: Callable[[Mapping[str, VideoRecord]], Iterable[str]],
        protected: set[str],
    ) -> list[str]:
        """
        Remove selected records from history only.

        ``select`` runs against a fresh read of history; any id it returns
        that is in ``protected`` is skipped.  The library is never read or
        written.

        Returns:
            Evicted ids
        """
        history = self._records(self._read(HISTORY_KEY).get(HISTORY_KEY), HISTORY_KEY)
        evicted = [rid for rid in select(history) if rid in history and rid not in protected]
        if not evicted:
            return []
        for rid in evicted:
            del history[rid]
        self._write_records(HISTORY_KEY, history)
        return evicted

    def protected_ids(self) -> set[str]:
        """Ids referenced by at least one playlist."""
        return referenced_ids(self.list_playlists())

    def library_size(self) -> int:
        return len(self.load_partition(LIBRARY_KEY))

    # -------------------------------------------------------------------------
    # Maintenance: duplicate sweep and invariant repair
    # -------------------------------------------------------------------------

    def dedupe_sweep(self, partition: str = HISTORY_KEY) -> list[str]:
        """
        Collapse records sharing a dedupe key into one survivor.

        The survivor has a real (non-placeholder) title, then the longest
        title, then the most recent ``watched_at``.  Losers are deleted from
        the partition.

        Loser references are substituted rather than purged: playlists that
        referenced a loser reference the survivor instead, so the loser id
        disappears from every playlist without losing the curated video.
        A history survivor that thereby becomes a playlist member is copied
        into the library with no separate ``add_to_playlist``, and the
        library copy is written before the playlists.

        Returns:
            Ids removed from the partition
        """
        if partition not in PARTITIONS:
            raise ValueError(f"Unknown partition: {partition!r}")
        raw = self._read(HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY)
        records = self._records(raw.get(partition), partition)

        backfilled = self._backfill_identity(records)
        groups = group_duplicates(records.values(), key=lambda r: r.dedupe_key)
        replaced: dict[str, str] = {}
        for group in groups.values():
            survivor = pick_survivor(group)
            for rec in group:
                if rec.id != survivor.id:
                    replaced[rec.id] = survivor.id

        if not replaced:
            if backfilled:
                self._write_records(partition, records)
            return []

        survivors = {rid: records[rid] for rid in set(replaced.values())}
        for loser in replaced:
            del records[loser]

        if partition == HISTORY_KEY:
            self._write_records(HISTORY_KEY, records)
            library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        else:
            library = records

        playlists = self._playlists(raw.get(PLAYLISTS_KEY))
        playlists_changed = False
        library_changed = False
        for name, members in playlists.items():
            if not any(m in replaced for m in members):
                continue
            updated: list[str] = []
            for m in members:
                target = replaced.get(m, m)
                if target not in updated:
                    updated.append(target)
                if target != m and target not in library:
                    library[target] = self._library_copy(survivors[target])
                    library_changed = True
            playlists[name] = updated
            playlists_changed = True

        if library_changed and partition == HISTORY_KEY:
            self._write_records(LIBRARY_KEY, library)
        if playlists_changed:
            self._write_playlists(playlists)

        if partition == LIBRARY_KEY:
            self._write_records(LIBRARY_KEY, library)
        else:
            self._drop_unreferenced(list(replaced), library, playlists)

        logger.info("Dedupe sweep of %s removed %d duplicates", partition, len(replaced))
        return sorted(replaced)

    def _backfill_identity(self, records: dict[str, VideoRecord]) -> bool:
        """Fill in dedupe keys (and platform ids) missing from older records."""
        changed = False
        for rec in records.values():
            if rec.dedupe_key:
                continue
            identity = self._resolver.identity_for_record(rec)
            rec.dedupe_key = identity.dedupe_key
            if rec.platform != identity.platform:
                rec.platform = identity.platform
            if not rec.platform_video_id and identity.native_id:
                rec.platform_video_id = identity.native_id
            changed = True
        return changed

    def repair(self) -> dict[str, int]:
        """
        Repair library/playlist invariant violations with the cheapest safe action.

        - A playlist member with no library record is dropped from the playlist.
        - A library record no playlist references is dropped from the library.
          Under the immediate removal policy such a record can only be left
          by an interrupted add or remove, or be the copy a concurrent
          ``add_to_playlist`` wrote before its playlist write, so copies
          younger than ``ORPHAN_GRACE_MS`` are left alone.

        Returns:
            Counts: {"dangling": N, "orphans": N}
        """
        raw = self._read(LIBRARY_KEY, PLAYLISTS_KEY)
        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        playlists = self._playlists(raw.get(PLAYLISTS_KEY))

        dangling = 0
        for name, members in playlists.items():
            kept = [m for m in members if m in library]
            if len(kept) != len(members):
                logger.warning(
                    "Invariant violation: playlist %r references %d missing records",
                    name, len(members) - len(kept),
                )
                dangling += len(members) - len(kept)
                playlists[name] = kept
        if dangling:
            self._write_playlists(playlists)

        referenced = referenced_ids(playlists)
        orphans = [rid for rid in library if rid not in referenced]
        if self._removal_policy == REMOVAL_IMMEDIATE:
            cutoff = self._clock() - ORPHAN_GRACE_MS
            orphans = [rid for rid in orphans if library[rid].library_added_at <= cutoff]
        if orphans:
            logger.info("Dropping %d unreferenced library records", len(orphans))
            for rid in orphans:
                del library[rid]
            self._write_records(LIBRARY_KEY, library)
        return {"dangling": dangling, "orphans": len(orphans)}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, record_id: str) -> Optional[VideoRecord]:
        """Get a record by id (history copy preferred over library copy)."""
        raw = self._read(HISTORY_KEY, LIBRARY_KEY)
        history = self._records(raw.get(HISTORY_KEY), HISTORY_KEY)
        if record_id in history:
            return history[record_id]
        return self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY).get(record_id)

    def list_history(
        self,
        filter: Optional[HistoryFilter] = None,
        sort: str = SORT_DATE,
        limit: Optional[int] = None,
    ) -> list[VideoRecord]:
        """List history records, filtered and sorted for display."""
        records = self.load_partition(HISTORY_KEY).values()
        if filter is not None:
            records = [r for r in records if filter.matches(r)]
        result = sort_records(records, sort)
        return result[:limit] if limit is not None else result

    def list_library(self, playlist: Optional[str] = None) -> list[VideoRecord]:
        """
        List library records.

        Args:
            playlist: Only this playlist's members, in playlist order.
                All library records newest first when omitted.
        """
        raw = self._read(LIBRARY_KEY, PLAYLISTS_KEY)
        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        if playlist is None:
            return sort_records(library.values(), SORT_DATE)
        playlists = self._playlists(raw.get(PLAYLISTS_KEY))
        if playlist not in playlists:
            raise KeyError(f"Unknown playlist: {playlist}")
        return [library[m] for m in playlists[playlist] if m in library]

    def stats(self) -> dict[str, Any]:
        """Counts and storage usage for display."""
        raw = self._read(HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY)
        return {
            "history": len(self._records(raw.get(HISTORY_KEY), HISTORY_KEY)),
            "library": len(self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)),
            "playlists": len(self._playlists(raw.get(PLAYLISTS_KEY))),
            "bytes_in_use": self._backend.bytes_in_use(),
            "quota_bytes": self._backend.quota_bytes,
        }

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_settings(self) -> Settings:
        return self._settings(self._read(SETTINGS_KEY).get(SETTINGS_KEY))

    def set_retention_policy(self, policy: Union[str, int]) -> Settings:
        """Set the retention policy ("off" or days) shared by all processes."""
        settings = self.get_settings()
        settings.retention_policy = parse_retention_policy(policy)
        self._write_settings(settings)
        logger.info("Retention policy set to %s", settings.retention_policy)
        return settings

    def record_cleanup(self, timestamp: int) -> None:
        settings = self.get_settings()
        settings.last_cleanup_at = timestamp
        self._write_settings(settings)

    # -------------------------------------------------------------------------
    # Data Export / Import
    # -------------------------------------------------------------------------

    def export_data(self) -> dict[str, Any]:
        """
        Export the full persisted schema as a JSON-ready dict::

            {"format": "vibrary-export", "version": 1, "exported_at": "...",
             "history": {...}, "library": {...}, "playlists": {...},
             "settings": {...}}
        """
        raw = self._read(HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY, SETTINGS_KEY)
        history = self._records(raw.get(HISTORY_KEY), HISTORY_KEY)
        library = self._records(raw.get(LIBRARY_KEY), LIBRARY_KEY)
        return {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
            HISTORY_KEY: {rid: rec.to_dict() for rid, rec in history.items()},
            LIBRARY_KEY: {rid: rec.to_dict() for rid, rec in library.items()},
            PLAYLISTS_KEY: self._playlists(raw.get(PLAYLISTS_KEY)),
            SETTINGS_KEY: self._settings(raw.get(SETTINGS_KEY)).to_dict(),
        }

    def import_data(
        self,
        data: dict[str, Any],
        *,
        conflict: Union[str, ConflictResolver] = KEEP_EXISTING,
    ) -> dict[str, Any]:
        """
        Merge an export snapshot into the store.

        Conflicts (the same record id in the same partition, the same
        playlist name, the retention policy) are settled per key by
        ``conflict``: ``"keep-existing"``, ``"keep-incoming"``, or a callable
        ``(kind, key, existing, incoming) -> "keep-existing" | "keep-incoming"``
        where kind is ``history``, ``library``, ``playlists`` or ``settings``.

        Afterwards playlist members are guaranteed a library copy (taken
        from history when the snapshot lacked one) or dropped, and both
        partitions are swept for duplicates.

        Returns:
            Per-kind counts of added / replaced / kept keys, plus "swept"
        """
        if data.get("format") != EXPORT_FORMAT:
            raise ValueError(f"Invalid export format (expected {EXPORT_FORMAT!r})")
        if data.get("version", 0) > EXPORT_VERSION:
            raise ValueError(
                f"Export format version {data['version']} is not supported "
                f"(this version supports up to {EXPORT_VERSION})"
            )
        choose = self._conflict_resolver(conflict)

        raw = self._read(HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY, SETTINGS_KEY)
        stats: dict[str, Any] = {}

        partitions: dict[str, dict[str, VideoRecord]] = {}
        for key in PARTITIONS:
            existing = self._records(raw.get(key), key)
            incoming = self._incoming_records(data.get(key), key)
            stats[key] = self._merge_keys(key, existing, incoming, choose)
            self._backfill_identity(existing)
            partitions[key] = existing
        history, library = partitions[HISTORY_KEY], partitions[LIBRARY_KEY]

        playlists = self._playlists(raw.get(PLAYLISTS_KEY))
        incoming_playlists = self._playlists(data.get(PLAYLISTS_KEY) or {})
        stats[PLAYLISTS_KEY] = self._merge_keys(PLAYLISTS_KEY, playlists, incoming_playlists, choose)

        settings = self._settings(raw.get(SETTINGS_KEY))
        incoming_settings = data.get(SETTINGS_KEY)
        if isinstance(incoming_settings, dict) and "retentionPolicy" in incoming_settings:
            policy = parse_retention_policy(incoming_settings["retentionPolicy"])
            if policy != settings.retention_policy and \
                    choose(SETTINGS_KEY, "retentionPolicy", settings.retention_policy, policy) == KEEP_INCOMING:
                settings.retention_policy = policy

        # Every playlist member needs a library copy
        for members in playlists.values():
            for rid in members:
                if rid not in library and rid in history:
                    library[rid] = self._library_copy(history[rid])
        for name, members in playlists.items():
            playlists[name] = [m for m in members if m in library]

        self._write_records(HISTORY_KEY, history)
        self._write_records(LIBRARY_KEY, library)
        self._write_playlists(playlists)
        self._write_settings(settings)
        self._drop_unreferenced(list(library), library, playlists)

        swept = self.dedupe_sweep(HISTORY_KEY) + self.dedupe_sweep(LIBRARY_KEY)
        stats["swept"] = len(swept)
        logger.info("Imported snapshot: %s", stats)
        return stats

    @staticmethod
    def _conflict_resolver(conflict: Union[str, ConflictResolver]) -> ConflictResolver:
        if callable(conflict):
            return conflict
        if conflict not in (KEEP_EXISTING, KEEP_INCOMING):
            raise ValueError(
                f"conflict must be {KEEP_EXISTING!r}, {KEEP_INCOMING!r} or a callable: {conflict!r}"
            )
        return lambda kind, key, existing, incoming: conflict

    def _incoming_records(self, raw: Any, key: str) -> dict[str, VideoRecord]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Export {key!r} must be a map of records")
        records = {
            rid: VideoRecord.from_dict(value, id=rid)
            for rid, value in raw.items() if isinstance(value, dict)
        }
        for rec in records.values():
            if not rec.source:
                rec.source = SOURCE_IMPORT
        return records

    @staticmethod
    def _merge_keys(
        kind: str,
        existing: dict[str, Any],
        incoming: Mapping[str, Any],
        choose: ConflictResolver,
    ) -> dict[str, int]:
        added = replaced = kept = 0
        for key, value in incoming.items():
            if key not in existing:
                existing[key] = value
                added += 1
                continue
            decision = choose(kind, key, existing[key], value)
            if decision == KEEP_INCOMING:
                existing[key] = value
                replaced += 1
            elif decision == KEEP_EXISTING:
                kept += 1
            else:
                raise ValueError(f"Conflict resolver returned {decision!r} for {kind} {key!r}")
        return {"added": added, "replaced": replaced, "kept": kept}

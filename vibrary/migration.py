"""
Migration from the single-partition ``videos`` schema.

Older stores kept every record in one ``videos`` map, with
``deletedFromHistory: true`` marking records the user had removed from
history but kept in a playlist.  The current schema splits them::

    history = videos minus soft-deleted entries
    library = copies of every playlist-referenced video

The transform is pure (:func:`plan_migration`) and the write is guarded:
if ``history`` or ``library`` already holds records, nothing happens.  The
legacy key is removed only after all destination keys are written.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .identity import IdentityResolver
from .store import (
    HISTORY_KEY,
    LEGACY_VIDEOS_KEY,
    LIBRARY_KEY,
    PLAYLISTS_KEY,
    RecordStore,
    referenced_ids,
)
from .types import VideoRecord

logger = logging.getLogger(__name__)

SOFT_DELETE_FLAG = "deletedFromHistory"


@dataclass
class MigrationPlan:
    history: dict[str, VideoRecord] = field(default_factory=dict)
    library: dict[str, VideoRecord] = field(default_factory=dict)
    playlists: dict[str, list[str]] = field(default_factory=dict)
    soft_deleted: int = 0
    dangling: int = 0


def _legacy_record(record_id: str, value: Mapping[str, Any], resolver: IdentityResolver) -> tuple[VideoRecord, bool]:
    """Parse one legacy entry; returns (record, soft_deleted)."""
    record = VideoRecord.from_dict(dict(value), id=record_id)
    deleted = bool(record.extra.pop(SOFT_DELETE_FLAG, False))

    identity = resolver.identity_for_record(record)
    # Legacy dedupe keys used a different format; always rederive
    record.dedupe_key = identity.dedupe_key
    record.platform = identity.platform
    if not record.platform_video_id and identity.native_id:
        record.platform_video_id = identity.native_id
    return record, deleted


def plan_migration(
    videos: Mapping[str, Any],
    playlists: Mapping[str, list[str]],
    resolver: Optional[IdentityResolver] = None,
) -> MigrationPlan:
    """
    Compute the two-partition layout for a legacy snapshot.

    Record ids are kept as they are so playlist references stay valid.
    Playlist members with no legacy record are dropped.
    """
    resolver = resolver or IdentityResolver()
    plan = MigrationPlan()

    records: dict[str, VideoRecord] = {}
    for record_id, value in videos.items():
        if not isinstance(value, dict):
            logger.warning("Skipping malformed legacy entry %r", record_id)
            continue
        record, deleted = _legacy_record(record_id, value, resolver)
        records[record_id] = record
        if deleted:
            plan.soft_deleted += 1
        else:
            plan.history[record_id] = record

    for name, members in playlists.items():
        kept = [m for m in members if m in records]
        plan.dangling += len(members) - len(kept)
        plan.playlists[name] = kept

    for record_id in sorted(referenced_ids(plan.playlists)):
        plan.library[record_id] = records[record_id].copy()
    return plan


def migrate_legacy(store: RecordStore) -> Optional[MigrationPlan]:
    """
    Migrate a legacy ``videos`` map into ``history``/``library``.

    Returns:
        The applied plan, or None when there was nothing to migrate or the
        destination partitions already hold records
    """
    backend = store.backend
    raw = backend.get([LEGACY_VIDEOS_KEY, HISTORY_KEY, LIBRARY_KEY, PLAYLISTS_KEY])
    videos = raw.get(LEGACY_VIDEOS_KEY)
    if videos is None:
        return None
    if not isinstance(videos, dict):
        logger.warning("Legacy %r is not a map; leaving it untouched", LEGACY_VIDEOS_KEY)
        return None
    if raw.get(HISTORY_KEY) or raw.get(LIBRARY_KEY):
        logger.info("Skipping legacy migration: destination partitions are not empty")
        return None

    playlists = store.list_playlists()
    plan = plan_migration(videos, playlists, store.resolver)

    backend.set({
        HISTORY_KEY: {rid: rec.to_dict() for rid, rec in plan.history.items()},
        LIBRARY_KEY: {rid: rec.to_dict() for rid, rec in plan.library.items()},
    })
    backend.set({PLAYLISTS_KEY: plan.playlists})
    backend.remove([LEGACY_VIDEOS_KEY])

    logger.info(
        "Migrated %d legacy records: %d history, %d library (%d soft-deleted, %d dangling refs dropped)",
        len(videos), len(plan.history), len(plan.library), plan.soft_deleted, plan.dangling,
    )
    return plan

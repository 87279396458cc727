"""
Admission control and merge policy for detections.

``admit()`` decides whether a detection creates a record, refreshes an
existing one, or is rejected.  The decision order is:

1. reject if the identity resolver rejects
2. update the record with the same native platform id
3. update a record on the same host+path whose title is similar
   (same platform only; different native ids never merge)
4. create

``merge_detection()`` applies the deterministic update policy: refresh
``watched_at``, upgrade ``url`` only to a better canonical video page,
fill an empty ``thumbnail``, never touch ``title`` or ``rating``.
"""

import logging
from collections import defaultdict
from typing import Callable, Iterable, Mapping, Optional

from .errors import InvalidDetection
from .identity import (
    VIDEO_PAGE_PATTERN,
    IdentityResolver,
    best_artwork,
    host_path,
    is_media_file_url,
    is_placeholder_title,
    normalize_title,
    platform_for_host,
    titles_similar,
    website_name,
    youtube_thumbnail,
)
from .types import (
    GENERIC,
    YOUTUBE,
    Action,
    Admission,
    Detection,
    Identity,
    VideoRecord,
)

logger = logging.getLogger(__name__)


def admit(
    detection: Detection,
    records: Mapping[str, VideoRecord],
    resolver: IdentityResolver,
) -> Admission:
    """
    Decide what a detection does to the record population.

    Args:
        detection: Raw detection tuple
        records: Existing records by id (history and library combined)
        resolver: Identity resolver

    Returns:
        Admission with action CREATE, UPDATE (``existing_id`` set) or REJECT
    """
    try:
        identity = resolver.resolve_or_raise(detection)
    except InvalidDetection as e:
        return Admission(Action.REJECT, reason=str(e))

    existing_id = find_match(identity, records)
    if existing_id is not None:
        return Admission(Action.UPDATE, identity=identity, existing_id=existing_id)
    return Admission(Action.CREATE, identity=identity)


def find_match(identity: Identity, records: Mapping[str, VideoRecord]) -> Optional[str]:
    """Return the id of the record this identity refers to, if any."""
    if identity.record_id in records:
        return identity.record_id

    # Most recently watched first, so repeated scans pick the same record
    ordered = sorted(records.values(), key=lambda r: (-r.watched_at, r.id))

    if identity.native_id:
        for rec in ordered:
            if rec.platform == identity.platform and rec.platform_video_id == identity.native_id:
                return rec.id

    for rec in ordered:
        if rec.platform != identity.platform:
            continue
        if identity.native_id and rec.platform_video_id and rec.platform_video_id != identity.native_id:
            continue
        if host_path(rec.url) != identity.host_path:
            continue
        if titles_similar(normalize_title(rec.title), identity.normalized_title):
            return rec.id
    return None


def refreshed_watched_at(previous: int, now: int) -> int:
    """A re-watch moves ``watched_at`` forward, never back."""
    return max(now, previous + 1)


def new_record(identity: Identity, detection: Detection, now: int) -> VideoRecord:
    """Build a fresh record for a CREATE admission."""
    host = identity.host_path.split("/", 1)[0]
    thumbnail = detection.thumbnail or best_artwork(detection.artwork)
    if not thumbnail and identity.platform == YOUTUBE and identity.native_id:
        thumbnail = youtube_thumbnail(identity.native_id)
    return VideoRecord(
        id=identity.record_id,
        url=identity.url,
        title=identity.title,
        thumbnail=thumbnail,
        platform=identity.platform,
        platform_video_id=identity.native_id,
        watched_at=now,
        rating=0,
        dedupe_key=identity.dedupe_key,
        website=website_name(host),
        favicon=detection.favicon or (f"https://{host}/favicon.ico" if host else ""),
        source=detection.source,
    )


def merge_detection(
    existing: VideoRecord,
    identity: Identity,
    detection: Detection,
    now: int,
) -> VideoRecord:
    """
    Merge a re-detection into an existing record (returns a new record).

    Title and rating are never changed here; only explicit user edits do that.
    """
    merged = existing.copy()
    merged.watched_at = refreshed_watched_at(existing.watched_at, now)

    if is_better_url(identity.url, existing.url):
        merged.url = identity.url

    thumbnail = detection.thumbnail or best_artwork(detection.artwork)
    if not existing.thumbnail and thumbnail:
        merged.thumbnail = thumbnail

    if not existing.platform_video_id and identity.native_id and existing.platform == identity.platform:
        merged.platform_video_id = identity.native_id
    if not existing.website:
        merged.website = website_name(identity.host_path.split("/", 1)[0])
    if not existing.favicon and detection.favicon:
        merged.favicon = detection.favicon
    return merged


def mirror_shared_fields(target: VideoRecord, source: VideoRecord) -> VideoRecord:
    """
    Copy the detection-maintained fields of ``source`` onto a copy of ``target``.

    Used to keep a library copy in step with its history copy.  User-edited
    fields (title, rating) are left alone.
    """
    mirrored = target.copy()
    mirrored.watched_at = max(target.watched_at, source.watched_at)
    mirrored.url = source.url or target.url
    mirrored.thumbnail = target.thumbnail or source.thumbnail
    mirrored.platform = source.platform
    mirrored.platform_video_id = source.platform_video_id or target.platform_video_id
    mirrored.website = target.website or source.website
    mirrored.favicon = target.favicon or source.favicon
    return mirrored


# ---------------------------------------------------------------------------
# Canonical URL ranking
# ---------------------------------------------------------------------------


def url_rank(url: str) -> int:
    """Rank a URL as a canonical video page: 0 (unusable) upwards."""
    if not url or is_media_file_url(url):
        return 0
    score = 1
    if VIDEO_PAGE_PATTERN.search(url):
        score += 2
    if platform_for_host(host_path(url).split("/", 1)[0]) != GENERIC:
        score += 1
    return score


def is_better_url(new: str, old: str) -> bool:
    """
    True if ``new`` should replace ``old`` as a record's url.

    A direct media-file URL is never better.  Otherwise the higher
    :func:`url_rank` wins; on a tie the more specific URL (same host,
    longer path under the old one) wins.
    """
    if not new or new == old or is_media_file_url(new):
        return False
    new_rank, old_rank = url_rank(new), url_rank(old)
    if new_rank != old_rank:
        return new_rank > old_rank
    old_hp, new_hp = host_path(old), host_path(new)
    return bool(old_hp) and new_hp.startswith(old_hp + "/")


# ---------------------------------------------------------------------------
# Duplicate groups and survivor selection
# ---------------------------------------------------------------------------


def survivor_rank(record: VideoRecord) -> tuple:
    """Sort key: real title over placeholder, then longer title, then most recent."""
    return (
        not is_placeholder_title(record.title),
        len(record.title.strip()),
        record.watched_at,
    )


def pick_survivor(records: Iterable[VideoRecord]) -> VideoRecord:
    """Choose the record to keep from a group of duplicates."""
    # id as final tie-break keeps the choice deterministic
    return max(records, key=lambda r: (survivor_rank(r), r.id))


def group_duplicates(
    records: Iterable[VideoRecord],
    key: Callable[[VideoRecord], str],
) -> dict[str, list[VideoRecord]]:
    """Group records by ``key``; return only groups with more than one member."""
    groups: dict[str, list[VideoRecord]] = defaultdict(list)
    for rec in records:
        k = key(rec)
        if k:
            groups[k].append(rec)
    return {k: v for k, v in groups.items() if len(v) > 1}

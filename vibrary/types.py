"""
Data types for the video record store.

Records are persisted as JSON maps using the camelCase attribute names of
the browser extension schema (``watchedAt``, ``platformVideoId``,
``dedupeKey``), so snapshots written by one implementation can be read by
another.  Python code uses the snake_case attributes.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional


# Platform tags.  Unknown hosts are "generic".
YOUTUBE = "youtube"
VIMEO = "vimeo"
PORNHUB = "pornhub"
DAILYMOTION = "dailymotion"
TWITCH = "twitch"
GENERIC = "generic"

KNOWN_PLATFORMS = frozenset({YOUTUBE, VIMEO, PORNHUB, DAILYMOTION, TWITCH, GENERIC})

MIN_RATING = 0
MAX_RATING = 5

# Detection sources reported by the detection layer
SOURCE_MEDIA_SESSION = "media-session"
SOURCE_VIDEO_ELEMENT = "video-element"
SOURCE_PAGE = "page"
SOURCE_IMPORT = "import"

DETECTION_SOURCES = frozenset({SOURCE_MEDIA_SESSION, SOURCE_VIDEO_ELEMENT, SOURCE_PAGE, SOURCE_IMPORT})

# DOM-derived sources are prone to picking up channel names instead of titles
DOM_SOURCES = frozenset({SOURCE_VIDEO_ELEMENT, SOURCE_PAGE})

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso(ms: int) -> str:
    """Render epoch milliseconds as a UTC timestamp: YYYY-MM-DDTHH:MM:SS."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def ms_to_local_date(ms: int) -> str:
    """Epoch milliseconds to a local-timezone date string (YYYY-MM-DD)."""
    if not ms:
        return ""
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone().strftime("%Y-%m-%d")
    except (ValueError, OverflowError, OSError):
        return ""


def clamp_rating(value: Any) -> int:
    """Coerce a stored rating into 0..5 (0 = unrated)."""
    try:
        rating = int(value)
    except (TypeError, ValueError):
        return MIN_RATING
    return max(MIN_RATING, min(MAX_RATING, rating))


def validate_rating(value: Any) -> int:
    """Validate a user-supplied rating; raises ValueError outside 0..5."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Rating must be an integer {MIN_RATING}-{MAX_RATING}: {value!r}")
    if not MIN_RATING <= value <= MAX_RATING:
        raise ValueError(f"Rating must be {MIN_RATING}-{MAX_RATING}: {value}")
    return value


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


# Persisted name -> attribute name
_FIELD_MAP = {
    "id": "id",
    "url": "url",
    "title": "title",
    "thumbnail": "thumbnail",
    "platform": "platform",
    "platformVideoId": "platform_video_id",
    "watchedAt": "watched_at",
    "rating": "rating",
    "dedupeKey": "dedupe_key",
    "website": "website",
    "favicon": "favicon",
    "source": "source",
    "libraryAddedAt": "library_added_at",
}

# Legacy aliases seen in older extension builds
_LEGACY_ALIASES = {"thumb": "thumbnail"}


@dataclass
class VideoRecord:
    """
    One detected/watched video.

    ``id`` and ``dedupe_key`` are permanent once the record exists.
    ``rating`` and ``title`` change only through explicit user edits;
    ``thumbnail``, ``url`` and ``watched_at`` are refreshed by re-detection.

    Unrecognized persisted attributes are carried in ``extra`` so a
    read-modify-write cycle never drops data written by another version.
    """
    id: str
    url: str = ""
    title: str = ""
    thumbnail: str = ""
    platform: str = GENERIC
    platform_video_id: Optional[str] = None
    watched_at: int = 0
    rating: int = 0
    dedupe_key: str = ""
    website: str = ""
    favicon: str = ""
    source: str = ""
    library_added_at: int = 0      # set on library copies only
    extra: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "VideoRecord":
        """Structural copy (no shared mutable state)."""
        return replace(self, extra=dict(self.extra))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase map."""
        d: dict[str, Any] = dict(self.extra)
        for key, attr in _FIELD_MAP.items():
            value = getattr(self, attr)
            if attr == "platform_video_id" and value is None:
                continue
            if attr == "library_added_at" and not value:
                continue
            d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, id: Optional[str] = None) -> "VideoRecord":
        """Deserialize a persisted map, tolerating legacy and partial entries.

        Args:
            data: Persisted record map
            id: Key the record was stored under; wins over a missing or
                mismatched ``id`` attribute.
        """
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in _FIELD_MAP:
                values[_FIELD_MAP[key]] = value
            elif key in _LEGACY_ALIASES:
                values.setdefault(_LEGACY_ALIASES[key], value)
            else:
                extra[key] = value

        record_id = id if id is not None else str(values.get("id") or "")
        native = values.get("platform_video_id")
        return cls(
            id=record_id,
            url=str(values.get("url") or ""),
            title=str(values.get("title") or ""),
            thumbnail=str(values.get("thumbnail") or ""),
            platform=str(values.get("platform") or GENERIC),
            platform_video_id=str(native) if native else None,
            watched_at=_int_or_zero(values.get("watched_at")),
            rating=clamp_rating(values.get("rating")),
            dedupe_key=str(values.get("dedupe_key") or ""),
            website=str(values.get("website") or ""),
            favicon=str(values.get("favicon") or ""),
            source=str(values.get("source") or ""),
            library_added_at=_int_or_zero(values.get("library_added_at")),
            extra=extra,
        )

    def __str__(self) -> str:
        return f"{self.id}: {self.title[:60]}"


@dataclass(frozen=True)
class Artwork:
    """A thumbnail candidate as reported by the Media Session API."""
    src: str
    sizes: str = ""


@dataclass(frozen=True)
class Detection:
    """
    A raw detection tuple from the detection layer.

    Attributes:
        title: Title as scraped (cleaned by the resolver)
        url: Page URL the video was watched on
        thumbnail: Thumbnail URI, or empty
        platform: Platform tag hint; the URL's host wins when it is known
        native_id: Platform-native id if the detection layer already knows it
        artwork: Additional thumbnail candidates; the largest is used
        source: How the video was detected (media-session, video-element, page)
        favicon: Site icon URI, or empty
    """
    title: str
    url: str
    thumbnail: str = ""
    platform: str = ""
    native_id: Optional[str] = None
    artwork: tuple[Artwork, ...] = ()
    source: str = ""
    favicon: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Detection":
        """Build from a loosely-typed map (camelCase or snake_case keys)."""
        artwork = tuple(
            Artwork(src=str(a.get("src", "")), sizes=str(a.get("sizes", "")))
            for a in (data.get("artwork") or ())
            if isinstance(a, dict)
        )
        native = data.get("native_id") or data.get("platformVideoId")
        return cls(
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            thumbnail=str(data.get("thumbnail") or ""),
            platform=str(data.get("platform") or ""),
            native_id=str(native) if native else None,
            artwork=artwork,
            source=str(data.get("source") or ""),
            favicon=str(data.get("favicon") or ""),
        )


@dataclass(frozen=True)
class Identity:
    """
    Resolved identity of a detection.

    ``record_id`` is the storage key; ``dedupe_key`` is the looser key used to
    group records that are the same video under different ids.
    """
    record_id: str
    dedupe_key: str
    platform: str
    native_id: Optional[str]
    title: str              # cleaned display title
    normalized_title: str
    url: str                # normalized page URL
    host_path: str


class Action(Enum):
    """Outcome of admission control for one detection."""
    CREATE = "create"
    UPDATE = "update"
    REJECT = "reject"


@dataclass(frozen=True)
class Admission:
    """Decision returned by the deduplication engine."""
    action: Action
    identity: Optional[Identity] = None
    existing_id: Optional[str] = None
    reason: str = ""

    @property
    def record_id(self) -> Optional[str]:
        """Id of the record that was (or would be) written."""
        if self.action is Action.UPDATE:
            return self.existing_id
        if self.action is Action.CREATE and self.identity is not None:
            return self.identity.record_id
        return None


@dataclass
class Settings:
    """Persisted maintenance settings shared by all processes."""
    retention_policy: str | int = "off"
    last_cleanup_at: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def retention_days(self) -> Optional[int]:
        """Retention in days, or None when the policy is off."""
        if self.retention_policy == "off":
            return None
        return int(self.retention_policy)

    def to_dict(self) -> dict[str, Any]:
        d = dict(self.extra)
        d["retentionPolicy"] = self.retention_policy
        d["lastCleanupAt"] = self.last_cleanup_at
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        extra = {k: v for k, v in data.items() if k not in ("retentionPolicy", "lastCleanupAt")}
        last = data.get("lastCleanupAt")
        return cls(
            retention_policy=parse_retention_policy(data.get("retentionPolicy", "off")),
            last_cleanup_at=int(last) if isinstance(last, (int, float)) and not isinstance(last, bool) else None,
            extra=extra,
        )


def parse_retention_policy(value: Any) -> str | int:
    """Parse a retention policy: "off" or a positive number of days.

    Invalid values degrade to "off" so a corrupt setting never causes eviction.
    """
    if value is None or isinstance(value, bool):
        return "off"
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("", "off", "never", "none"):
            return "off"
        if text.endswith("d"):
            text = text[:-1]
        try:
            value = int(text)
        except ValueError:
            return "off"
    if isinstance(value, float):
        value = int(value)
    if isinstance(value, int) and value > 0:
        return value
    return "off"

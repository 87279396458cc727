"""
Identity resolution for raw video detections.

A detection is reduced to two keys:

- ``record_id``: ``<platform>:<native id>`` when a platform-native id can be
  extracted from the URL, otherwise ``<platform>:%<hash>`` of the normalized
  host+path and title.
- ``dedupe_key``: the looser key used to group records that are the same
  video under different ids.

Native ids come from an ordered list of extraction strategies; the first
strategy whose host matches and whose pattern finds an id wins.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import InvalidDetection
from .types import (
    DAILYMOTION,
    DOM_SOURCES,
    GENERIC,
    KNOWN_PLATFORMS,
    PORNHUB,
    TWITCH,
    VIMEO,
    YOUTUBE,
    Artwork,
    Detection,
    Identity,
    VideoRecord,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# URL normalization
# ---------------------------------------------------------------------------

TRACKING_PARAMS = frozenset({
    "fbclid", "gclid", "ref", "source", "tracking", "track",
    "gallery", "edit", "share", "social", "from", "via",
})
TRACKING_PREFIXES = ("utm_",)

YOUTUBE_HOSTS = ("youtube.com", "youtu.be", "youtube-nocookie.com")
YOUTUBE_KEEP_PARAMS = ("v", "t", "list", "index")
DAILYMOTION_DROP_PARAMS = frozenset({"autoplay", "mute", "ui-start-screen-info"})

MEDIA_FILE_EXTENSIONS = (
    ".mp4", ".webm", ".m4v", ".mov", ".mkv", ".avi", ".flv", ".ogv",
    ".3gp", ".ts", ".m3u8", ".mpd",
)

# Path/query fragments that mark a canonical video page
VIDEO_PAGE_PATTERN = re.compile(
    r"/watch\b|[?&]v=|/embed/|/shorts/|/video/|/videos/|[?&]viewkey=|/clip/",
    re.IGNORECASE,
)


def host_matches(host: str, domains: Iterable[str]) -> bool:
    """True if host is one of the domains or a subdomain of one."""
    return any(host == d or host.endswith("." + d) for d in domains)


def bare_host(host: str) -> str:
    """Lower-cased host without a leading ``www.`` or ``m.``."""
    host = (host or "").lower()
    for prefix in ("www.", "m."):
        if host.startswith(prefix):
            return host[len(prefix):]
    return host


def is_media_file_url(url: str) -> bool:
    """True for direct media-file URLs (``.mp4``, ``.webm``, blob: ...)."""
    if not url:
        return False
    lowered = url.strip().lower()
    if lowered.startswith(("blob:", "data:")):
        return True
    path = urlsplit(lowered).path
    return path.endswith(MEDIA_FILE_EXTENSIONS)


def normalize_url(url: str, extra_tracking_params: Iterable[str] = ()) -> str:
    """
    Strip tracking and UI-only query parameters from a page URL.

    - Drops ``utm_*`` and the fixed tracking denylist (plus any extras).
    - YouTube URLs keep only ``v``, ``t``, ``list`` and ``index``.
    - Dailymotion drops its player UI parameters.
    - Scheme and host are lower-cased; the fragment is dropped.

    URLs that cannot be parsed are returned stripped but otherwise unchanged.
    """
    url = (url or "").strip()
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme or not host:
        return url

    denied = TRACKING_PARAMS | frozenset(p.lower() for p in extra_tracking_params)
    params = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in denied and not k.lower().startswith(TRACKING_PREFIXES)
    ]

    if host_matches(host, YOUTUBE_HOSTS):
        params = [(k, v) for k, v in params if k in YOUTUBE_KEEP_PARAMS]
    elif host_matches(host, ("dailymotion.com",)):
        params = [(k, v) for k, v in params if k not in DAILYMOTION_DROP_PARAMS]

    netloc = f"{host}:{port}" if port else host
    return urlunsplit((parts.scheme.lower(), netloc, parts.path or "/", urlencode(params), ""))


def host_path(url: str) -> str:
    """Reduce a URL to ``hostname + pathname`` (no www., no trailing slash)."""
    try:
        parts = urlsplit((url or "").strip())
    except ValueError:
        return (url or "").strip().lower()
    path = parts.path.rstrip("/")
    return f"{bare_host(parts.hostname or '')}{path}"


def website_name(host: str) -> str:
    """Human display name for a site, e.g. ``youtube.com`` -> ``YouTube``."""
    host = bare_host(host)
    if not host:
        return "Unknown"
    if host in SITE_NAMES:
        return SITE_NAMES[host]
    name = host.split(".")[0]
    return name[:1].upper() + name[1:]


SITE_NAMES = {
    "youtube.com": "YouTube",
    "youtu.be": "YouTube",
    "vimeo.com": "Vimeo",
    "dailymotion.com": "Dailymotion",
    "twitch.tv": "Twitch",
    "netflix.com": "Netflix",
    "hulu.com": "Hulu",
    "disneyplus.com": "Disney+",
    "amazon.com": "Prime Video",
    "primevideo.com": "Prime Video",
    "pornhub.com": "Pornhub",
    "xvideos.com": "XVideos",
    "xhamster.com": "xHamster",
    "redtube.com": "RedTube",
    "hqporner.com": "HQPorner",
}


# ---------------------------------------------------------------------------
# Title normalization
# ---------------------------------------------------------------------------

_PLATFORM_NAMES = r"(?:YouTube|Vimeo|Dailymotion|Twitch)"

_TITLE_CLEANERS = (
    re.compile(r"^\(\d+\)\s*"),                                  # "(3) " unread badge
    re.compile(rf"^{_PLATFORM_NAMES}\s*[-–—]\s*", re.IGNORECASE),
    re.compile(rf"\s*[-–—]\s*{_PLATFORM_NAMES}$", re.IGNORECASE),
    re.compile(r"\s+on Vimeo$", re.IGNORECASE),
    re.compile(r"^\s*Watch\s+", re.IGNORECASE),
    re.compile(r"\s*\|\s*.*$"),                                   # everything after a pipe
)

PLACEHOLDER_TITLE_PATTERN = re.compile(
    r"^(?:shorts|loading|untitled|player|debug|error|404|undefined|null|"
    r"watch|video|video player|live|home|"
    r"comments?(?: \d+)?|\d+ comments?|"
    r"youtube|youtube music|vimeo|dailymotion|twitch|pornhub)$"
)

MIN_TITLE_CHARS = 3

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def clean_title(title: Optional[str]) -> str:
    """Remove platform decorations from a scraped title."""
    text = _WHITESPACE.sub(" ", (title or "")).strip()
    for pattern in _TITLE_CLEANERS:
        text = pattern.sub("", text).strip()
    return text


def normalize_title(title: Optional[str]) -> str:
    """Lower-case, strip punctuation, collapse whitespace."""
    text = _NON_WORD.sub(" ", (title or "").lower()).replace("_", " ")
    return _WHITESPACE.sub(" ", text).strip()


def is_placeholder_title(title: Optional[str]) -> bool:
    """True for empty, near-empty (< 3 meaningful chars) or placeholder titles."""
    normalized = normalize_title(title)
    meaningful = sum(1 for c in normalized if c.isalnum())
    if meaningful < MIN_TITLE_CHARS:
        return True
    return bool(PLACEHOLDER_TITLE_PATTERN.match(normalized))


def looks_like_author_name(title: str, *, strict: bool = False) -> bool:
    """Heuristic for channel/author names scraped instead of a video title.

    Args:
        strict: Also treat a short single word as a name (DOM-derived titles).
    """
    text = (title or "").strip()
    if len(text) < MIN_TITLE_CHARS:
        return False
    if text.startswith("@") or text.lower().startswith("by "):
        return True
    if text.endswith(" Channel") or text == "Channel":
        return True
    if strict and len(text) < 8 and " " not in text:
        return True
    return False


def titles_similar(a: str, b: str) -> bool:
    """Normalized titles are identical or one contains the other."""
    if not a or not b:
        return False
    return a == b or a in b or b in a


def best_artwork(artwork: Sequence[Artwork]) -> str:
    """Pick the largest artwork candidate by its ``WxH`` sizes string."""
    best_src = ""
    best_area = -1
    for art in artwork:
        if not art.src:
            continue
        area = 0
        match = re.search(r"(\d+)x(\d+)", art.sizes or "")
        if match:
            area = int(match.group(1)) * int(match.group(2))
        if area > best_area:
            best_src, best_area = art.src, area
    return best_src


def youtube_thumbnail(native_id: str) -> str:
    """Default thumbnail for a YouTube video id."""
    return f"https://img.youtube.com/vi/{native_id}/mqdefault.jpg"


# ---------------------------------------------------------------------------
# Native id extraction
# ---------------------------------------------------------------------------

_NATIVE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class ExtractionStrategy:
    """
    One platform-specific way of pulling a native id out of a URL.

    The pattern is searched in ``path?query`` of the URL; group 1 is the id.
    """
    platform: str
    hosts: tuple[str, ...]
    pattern: re.Pattern

    def extract(self, host: str, path_query: str) -> Optional[str]:
        if not host_matches(host, self.hosts):
            return None
        match = self.pattern.search(path_query)
        if match:
            return match.group(1)
        return None


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy(YOUTUBE, ("youtube.com", "youtube-nocookie.com"),
                       re.compile(r"[?&]v=([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])")),
    ExtractionStrategy(YOUTUBE, ("youtube.com", "youtube-nocookie.com"),
                       re.compile(r"^/(?:shorts|embed|live|v)/([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])")),
    ExtractionStrategy(YOUTUBE, ("youtu.be",),
                       re.compile(r"^/([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])")),
    ExtractionStrategy(VIMEO, ("vimeo.com",),
                       re.compile(r"^/(?:video/|channels/[\w-]+/|groups/[\w-]+/videos/)?(\d+)(?:[/?]|$)")),
    ExtractionStrategy(PORNHUB, ("pornhub.com",),
                       re.compile(r"[?&]viewkey=([0-9A-Za-z]+)")),
    ExtractionStrategy(DAILYMOTION, ("dailymotion.com",),
                       re.compile(r"/video/([0-9A-Za-z]+)")),
    ExtractionStrategy(DAILYMOTION, ("dai.ly",),
                       re.compile(r"^/([0-9A-Za-z]+)")),
    ExtractionStrategy(TWITCH, ("twitch.tv",),
                       re.compile(r"^/videos/(\d+)")),
    ExtractionStrategy(TWITCH, ("clips.twitch.tv",),
                       re.compile(r"^/([\w-]+)")),
    ExtractionStrategy(TWITCH, ("twitch.tv",),
                       re.compile(r"/clip/([\w-]+)")),
)

PLATFORM_HOSTS = {
    YOUTUBE: YOUTUBE_HOSTS,
    VIMEO: ("vimeo.com",),
    PORNHUB: ("pornhub.com",),
    DAILYMOTION: ("dailymotion.com", "dai.ly"),
    TWITCH: ("twitch.tv",),
}


def platform_for_host(host: str) -> str:
    """Platform tag for a hostname; ``generic`` when unknown."""
    host = (host or "").lower()
    for platform, domains in PLATFORM_HOSTS.items():
        if host_matches(host, domains):
            return platform
    return GENERIC


def _split_url(url: str) -> tuple[str, str]:
    """Return (lower-cased host, ``path?query``) for a URL."""
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
    except ValueError:
        return "", ""
    path_query = parts.path + (f"?{parts.query}" if parts.query else "")
    return host, path_query


def _digest(host_path_value: str, normalized_title: str) -> str:
    key = f"{host_path_value}\n{normalized_title}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class IdentityResolver:
    """
    Derives stable record ids and dedupe keys from raw detections.

    Stateless apart from its configuration; safe to share across threads.
    """

    def __init__(
        self,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
        *,
        extra_tracking_params: Iterable[str] = (),
    ) -> None:
        self._strategies = tuple(strategies)
        self._extra_tracking_params = tuple(extra_tracking_params)

    def normalize_url(self, url: str) -> str:
        return normalize_url(url, self._extra_tracking_params)

    def extract_native_id(self, url: str) -> Optional[tuple[str, str]]:
        """First-match native id extraction: (platform, native_id) or None."""
        host, path_query = _split_url(url)
        if not host:
            return None
        for strategy in self._strategies:
            native = strategy.extract(host, path_query)
            if native:
                return strategy.platform, native
        return None

    def resolve(self, detection: Detection) -> Optional[Identity]:
        """Resolve a detection, or return None if it has no usable identity."""
        try:
            return self.resolve_or_raise(detection)
        except InvalidDetection as e:
            logger.debug("Rejected detection %r: %s", detection.title, e)
            return None

    def resolve_or_raise(self, detection: Detection) -> Identity:
        """
        Resolve a detection into an Identity.

        Raises:
            InvalidDetection: missing/media-file URL, placeholder or
                near-empty title, or a title that is really a channel name
        """
        raw_url = (detection.url or "").strip()
        if not raw_url:
            raise InvalidDetection("missing url")
        if is_media_file_url(raw_url):
            raise InvalidDetection(f"direct media-file url: {raw_url}")

        title = clean_title(detection.title)
        if is_placeholder_title(title):
            raise InvalidDetection(f"placeholder title: {detection.title!r}")
        if looks_like_author_name(title, strict=detection.source in DOM_SOURCES):
            raise InvalidDetection(f"title looks like an author name: {title!r}")

        url = self.normalize_url(raw_url)
        host, _ = _split_url(url)
        platform, native = self._platform_and_native(url, host, detection)
        return self._build(url, title, platform, native)

    def identity_for_record(self, record: VideoRecord) -> Identity:
        """
        Derive identity fields for an already-stored record.

        Used by migration, import and sweeps to fill in fields older
        schemas lacked.  Never rejects: stored user data is kept even when
        its title would not pass admission today.
        """
        url = self.normalize_url(record.url) if record.url else ""
        host, _ = _split_url(url)
        platform = record.platform if record.platform in KNOWN_PLATFORMS else GENERIC
        native = record.platform_video_id
        extracted = self.extract_native_id(url) if url else None
        if extracted:
            platform, native = extracted
        elif platform == GENERIC:
            platform = platform_for_host(host)
        title = clean_title(record.title) or record.title
        return self._build(url, title, platform, native)

    def _platform_and_native(
        self, url: str, host: str, detection: Detection,
    ) -> tuple[str, Optional[str]]:
        extracted = self.extract_native_id(url)
        if extracted:
            return extracted

        platform = platform_for_host(host)
        hint = (detection.platform or "").strip().lower()
        if platform == GENERIC and hint in KNOWN_PLATFORMS:
            platform = hint

        native = (detection.native_id or "").strip()
        if native and _NATIVE_ID_RE.match(native):
            return platform, native
        return platform, None

    def _build(self, url: str, title: str, platform: str, native: Optional[str]) -> Identity:
        normalized = normalize_title(title)
        hp = host_path(url)
        if native:
            record_id = f"{platform}:{native}"
            dedupe_key = record_id
        else:
            record_id = f"{platform}:%{_digest(hp, normalized)}"
            dedupe_key = f"{platform}|{hp}|{normalized}"
        return Identity(
            record_id=record_id,
            dedupe_key=dedupe_key,
            platform=platform,
            native_id=native,
            title=title,
            normalized_title=normalized,
            url=url,
            host_path=hp,
        )

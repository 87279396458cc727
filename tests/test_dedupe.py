"""Tests for admission control, the merge policy and survivor selection."""

from vibrary.dedupe import (
    admit,
    find_match,
    group_duplicates,
    is_better_url,
    merge_detection,
    mirror_shared_fields,
    new_record,
    pick_survivor,
    refreshed_watched_at,
)
from vibrary.types import Action, Artwork, Detection, VideoRecord

from tests.conftest import T0, page, yt


def _create(resolver, detection, now=T0):
    identity = resolver.resolve(detection)
    return new_record(identity, detection, now)


# ---------------------------------------------------------------------------
# admit()
# ---------------------------------------------------------------------------

class TestAdmit:

    def test_create_when_unknown(self, resolver):
        adm = admit(yt("dQw4w9WgXcQ", "Never Gonna Give You Up"), {}, resolver)
        assert adm.action is Action.CREATE
        assert adm.record_id == "youtube:dQw4w9WgXcQ"

    def test_reject_placeholder(self, resolver):
        adm = admit(yt("dQw4w9WgXcQ", "Loading"), {}, resolver)
        assert adm.action is Action.REJECT
        assert adm.record_id is None
        assert "placeholder" in adm.reason

    def test_update_same_native_id(self, resolver):
        rec = _create(resolver, yt("dQw4w9WgXcQ", "Never Gonna Give You Up"))
        adm = admit(
            Detection(title="Different Title Entirely", url="https://youtu.be/dQw4w9WgXcQ"),
            {rec.id: rec}, resolver,
        )
        assert adm.action is Action.UPDATE
        assert adm.existing_id == rec.id

    def test_update_native_id_match_under_other_record_id(self, resolver):
        # A record stored under a legacy id but carrying the native id
        legacy = VideoRecord(
            id="legacy-7", url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            title="Never Gonna Give You Up", platform="youtube",
            platform_video_id="dQw4w9WgXcQ", watched_at=T0,
        )
        adm = admit(yt("dQw4w9WgXcQ", "Never Gonna Give You Up"), {legacy.id: legacy}, resolver)
        assert adm.action is Action.UPDATE
        assert adm.existing_id == "legacy-7"

    def test_update_same_page_similar_title(self, resolver):
        rec = _create(resolver, page("/videos/talk", "Keynote: The Future of Storage"))
        adm = admit(
            page("/videos/talk?utm_source=x", "Keynote: The Future of Storage (Full)"),
            {rec.id: rec}, resolver,
        )
        assert adm.action is Action.UPDATE
        assert adm.existing_id == rec.id

    def test_same_page_unrelated_title_creates(self, resolver):
        rec = _create(resolver, page("/player", "Lecture One"))
        adm = admit(page("/player", "Cooking With Gas"), {rec.id: rec}, resolver)
        assert adm.action is Action.CREATE

    def test_different_native_ids_never_merge(self, resolver):
        rec = _create(resolver, yt("aaaaaaaaaaa", "Same Title Here"))
        adm = admit(yt("bbbbbbbbbbb", "Same Title Here"), {rec.id: rec}, resolver)
        assert adm.action is Action.CREATE

    def test_platforms_never_merge(self, resolver):
        a = VideoRecord(
            id="generic:%x", url="https://example.com/v", title="Shared Title",
            platform="generic", watched_at=T0,
        )
        b = resolver.resolve(Detection(title="Shared Title", url="https://example.com/v", platform="vimeo"))
        assert b.platform == "vimeo"
        assert find_match(b, {a.id: a}) is None


# ---------------------------------------------------------------------------
# Merge policy
# ---------------------------------------------------------------------------

class TestMerge:

    def test_watched_at_strictly_increases(self):
        assert refreshed_watched_at(100, 500) == 500
        assert refreshed_watched_at(500, 500) == 501
        assert refreshed_watched_at(900, 500) == 901

    def test_title_and_rating_preserved(self, resolver):
        rec = _create(resolver, yt("dQw4w9WgXcQ", "Never Gonna Give You Up"))
        rec.rating = 4
        det = yt("dQw4w9WgXcQ", "A Completely Different Scraped Title")
        merged = merge_detection(rec, resolver.resolve(det), det, T0 + 1000)
        assert merged.title == "Never Gonna Give You Up"
        assert merged.rating == 4
        assert merged.watched_at == T0 + 1000
        assert rec.watched_at == T0  # original untouched

    def test_thumbnail_filled_only_when_empty(self, resolver):
        det = page("/videos/talk", "Keynote Talk", thumbnail="")
        rec = _create(resolver, det)
        assert rec.thumbnail == ""

        with_thumb = page("/videos/talk", "Keynote Talk", thumbnail="https://img/one.jpg")
        merged = merge_detection(rec, resolver.resolve(with_thumb), with_thumb, T0 + 1)
        assert merged.thumbnail == "https://img/one.jpg"

        other = page("/videos/talk", "Keynote Talk", thumbnail="https://img/two.jpg")
        again = merge_detection(merged, resolver.resolve(other), other, T0 + 2)
        assert again.thumbnail == "https://img/one.jpg"

    def test_url_upgraded_to_canonical_page(self, resolver):
        short = Detection(title="Never Gonna Give You Up", url="https://youtu.be/dQw4w9WgXcQ")
        rec = _create(resolver, short)
        watch = yt("dQw4w9WgXcQ", "Never Gonna Give You Up")
        merged = merge_detection(rec, resolver.resolve(watch), watch, T0 + 1)
        assert merged.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    def test_url_never_downgraded(self, resolver):
        rec = _create(resolver, yt("dQw4w9WgXcQ", "Never Gonna Give You Up"))
        short = Detection(title="Never Gonna Give You Up", url="https://youtu.be/dQw4w9WgXcQ")
        merged = merge_detection(rec, resolver.resolve(short), short, T0 + 1)
        assert merged.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    def test_media_file_url_is_never_better(self):
        assert not is_better_url("https://cdn.example.com/v.mp4", "https://example.com/page")
        assert is_better_url("https://example.com/videos/42", "https://example.com/")

    def test_mirror_keeps_user_fields(self):
        lib = VideoRecord(id="x", url="https://a/1", title="My Title", rating=5, watched_at=T0)
        hist = VideoRecord(id="x", url="https://a/2", title="Scraped", rating=0, watched_at=T0 + 9)
        mirrored = mirror_shared_fields(lib, hist)
        assert mirrored.title == "My Title"
        assert mirrored.rating == 5
        assert mirrored.watched_at == T0 + 9
        assert mirrored.url == "https://a/2"


class TestNewRecord:

    def test_youtube_thumbnail_fallback(self, resolver):
        rec = _create(resolver, yt("dQw4w9WgXcQ", "Never Gonna Give You Up"))
        assert rec.thumbnail == "https://img.youtube.com/vi/dQw4w9WgXcQ/mqdefault.jpg"
        assert rec.website == "YouTube"
        assert rec.favicon == "https://youtube.com/favicon.ico"
        assert rec.rating == 0
        assert rec.watched_at == T0

    def test_artwork_used_when_no_thumbnail(self, resolver):
        det = page("/v/1", "Some Good Video", artwork=(
            Artwork("https://i/s.jpg", "96x96"), Artwork("https://i/l.jpg", "512x512"),
        ))
        assert _create(resolver, det).thumbnail == "https://i/l.jpg"

    def test_source_recorded(self, resolver):
        rec = _create(resolver, yt("dQw4w9WgXcQ", "Never Gonna Give You Up", source="media-session"))
        assert rec.source == "media-session"


# ---------------------------------------------------------------------------
# Survivors
# ---------------------------------------------------------------------------

class TestSurvivors:

    def test_real_title_beats_placeholder(self):
        a = VideoRecord(id="a", title="Loading", watched_at=T0 + 100)
        b = VideoRecord(id="b", title="Real Title", watched_at=T0)
        assert pick_survivor([a, b]).id == "b"

    def test_longer_title_wins(self):
        a = VideoRecord(id="a", title="Never Gonna Give You Up", watched_at=T0 + 100)
        b = VideoRecord(id="b", title="Never Gonna Give You Up (Official Video)", watched_at=T0)
        assert pick_survivor([a, b]).id == "b"

    def test_most_recent_breaks_ties(self):
        a = VideoRecord(id="a", title="Same Length A", watched_at=T0)
        b = VideoRecord(id="b", title="Same Length B", watched_at=T0 + 1)
        assert pick_survivor([a, b]).id == "b"

    def test_group_duplicates_only_multi_member_groups(self):
        recs = [
            VideoRecord(id="1", dedupe_key="k1"),
            VideoRecord(id="2", dedupe_key="k1"),
            VideoRecord(id="3", dedupe_key="k2"),
            VideoRecord(id="4", dedupe_key=""),
            VideoRecord(id="5", dedupe_key=""),
        ]
        groups = group_duplicates(recs, key=lambda r: r.dedupe_key)
        assert list(groups) == ["k1"]
        assert [r.id for r in groups["k1"]] == ["1", "2"]

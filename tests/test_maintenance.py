import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from streamwatch.database import Database
from streamwatch.adapters import AdapterRegistry
from streamwatch.maintenance import (
    CoverRepairer,
    DuplicateMerger,
    JobRunner,
    purge_stopped_sessions,
    title_matches,
)
from streamwatch.models import HistoryRecord, Session

T0 = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "maintenance.db")
    await database.connect()
    try:
        yield database
    finally:
        await database.close()


def _history(stream_duration: int, percent: int, watched_at: datetime, **overrides) -> HistoryRecord:
    data = dict(
        server_type="audiobookshelf",
        user_id="user-1",
        username="alice",
        media_type="audiobook",
        media_id="book-1",
        title="A Book",
        watched_at=watched_at,
        stream_duration=stream_duration,
        percent_complete=percent,
    )
    data.update(overrides)
    return HistoryRecord(**data)


@pytest.mark.asyncio
async def test_merge_sums_duration_and_keeps_max_percent(db):
    await db.insert_history(_history(100, 40, T0, merged_session_ids="a"))
    newest = await db.insert_history(
        _history(50, 30, T0 + timedelta(days=2), merged_session_ids="b")
    )
    await db.insert_history(_history(20, 60, T0 + timedelta(days=1), merged_session_ids="c"))

    result = await DuplicateMerger(db, ["audiobookshelf"]).merge()

    assert result == {"merged": 1, "duplicate_sets": 1}
    rows = await db.get_history()
    assert len(rows) == 1
    assert rows[0].id == newest
    assert rows[0].stream_duration == 170
    assert rows[0].percent_complete == 60
    assert sorted(rows[0].merged_session_ids.split(",")) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_merge_ignores_other_server_types(db):
    await db.insert_history(_history(100, 40, T0, server_type="jellyfin", session_id="x"))
    await db.insert_history(_history(100, 40, T0, server_type="jellyfin", session_id="y"))

    result = await DuplicateMerger(db, ["audiobookshelf"]).merge()

    assert result == {"merged": 0, "duplicate_sets": 0}
    assert await db.count_history() == 2


@pytest.mark.asyncio
async def test_failing_group_is_rolled_back(db, monkeypatch):
    await db.insert_history(_history(100, 40, T0))
    await db.insert_history(_history(50, 30, T0 + timedelta(days=1)))

    async def _broken_delete(_ids):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "delete_history", _broken_delete)

    result = await DuplicateMerger(db, ["audiobookshelf"]).merge()

    assert result == {"merged": 0, "duplicate_sets": 1}
    durations = sorted(r.stream_duration for r in await db.get_history())
    assert durations == [50, 100]


@pytest.mark.asyncio
async def test_purge_stopped_sessions_respects_retention(db):
    old = datetime.now(timezone.utc) - timedelta(hours=48)
    await db.create_session(
        Session(
            session_key="s1",
            segment_id="seg-1",
            server_type="jellyfin",
            user_id="user-1",
            username="alice",
            media_type="movie",
            media_id="m1",
            title="Movie",
            state="stopped",
            started_at=old,
            stopped_at=old,
            updated_at=old,
        )
    )

    assert await purge_stopped_sessions(db, retention_hours=24) == {"deleted": 1}
    assert await db.get_session("s1") is None


@pytest.mark.asyncio
async def test_job_runner_skips_overlapping_run():
    runner = JobRunner()
    release = asyncio.Event()
    started = asyncio.Event()

    async def _slow_job():
        started.set()
        await release.wait()
        return {"ok": True}

    runner.register("slow", "Slow", _slow_job, interval_seconds=60)

    first = asyncio.create_task(runner.run("slow"))
    await started.wait()

    assert runner.is_running("slow")
    assert await runner.run("slow") == {"skipped": True, "reason": "already running"}

    release.set()
    result = await first
    assert result["success"] is True
    assert result["result"] == {"ok": True}
    assert not runner.is_running("slow")


@pytest.mark.asyncio
async def test_job_runner_reports_failure():
    runner = JobRunner()

    async def _failing_job():
        raise RuntimeError("nope")

    runner.register("bad", "Bad", _failing_job, interval_seconds=60)

    result = await runner.run("bad")

    assert result["success"] is False
    assert result["error"] == "nope"
    assert runner.status()[0]["last_status"] == "error"


@pytest.mark.asyncio
async def test_unknown_job_raises():
    with pytest.raises(ValueError):
        await JobRunner().run("missing")


class _CoverAdapter:
    def __init__(self, name, server_type, items=None, found=None):
        self.name = name
        self.server_type = server_type
        self.items = items or {}
        self.found = found or {}
        self.searches = []

    async def get_item_info(self, media_id):
        return self.items.get(media_id, {"exists": False, "cover_url": None})

    async def search_by_title(self, title, media_type=None):
        self.searches.append(title)
        return self.found.get(title)


def test_title_matches_prefers_series_name():
    entry = _history(0, 0, T0, title="Pilot", grandparent_title="The Show")

    assert title_matches({"title": "Episode 1", "grandparent_title": "the show"}, entry)
    assert not title_matches({"title": "Pilot", "grandparent_title": "Another Show"}, entry)
    assert title_matches({"title": "a book"}, _history(0, 0, T0, title="A Book"))


@pytest.mark.asyncio
async def test_repair_covers_updates_and_refinds_items(db):
    updated = await db.insert_history(_history(60, 10, T0, media_id="book-1", title="A Book"))
    valid = await db.insert_history(
        _history(60, 10, T0, media_id="book-2", title="Kept", thumb="http://abs/book-2")
    )
    moved = await db.insert_history(_history(60, 10, T0, media_id="book-3", title="Moved"))
    gone = await db.insert_history(_history(60, 10, T0, media_id="book-4", title="Gone"))
    movie = await db.insert_history(
        _history(60, 90, T0, server_type="plex", media_type="movie", media_id="10", title="Film")
    )

    audiobookshelf = _CoverAdapter(
        "Audiobookshelf",
        "audiobookshelf",
        items={
            "book-1": {"exists": True, "cover_url": "http://abs/book-1", "title": "A Book"},
            "book-2": {"exists": True, "cover_url": "http://abs/book-2", "title": "Kept"},
            "book-3": {"exists": True, "cover_url": "http://abs/book-3", "title": "Someone Else"},
        },
        found={"Moved": {"id": "book-9", "title": "Moved", "cover_url": "http://abs/book-9"}},
    )
    plex = _CoverAdapter(
        "Plex",
        "plex",
        items={"10": {"exists": True, "cover_url": "http://plex/10.jpg", "title": "Film"}},
    )

    result = await CoverRepairer(db, AdapterRegistry([plex, audiobookshelf])).repair()

    assert result == {
        "audiobookshelf": {
            "cover_updated": 1,
            "repaired": 1,
            "not_found": 1,
            "already_valid": 1,
            "total": 4,
        },
        "plex": {"cover_updated": 1, "repaired": 0, "not_found": 0, "already_valid": 0, "total": 1},
    }
    assert (await db.get_history_entry(updated)).thumb == "http://abs/book-1"
    assert (await db.get_history_entry(valid)).thumb == "http://abs/book-2"
    refound = await db.get_history_entry(moved)
    assert (refound.media_id, refound.thumb) == ("book-9", "http://abs/book-9")
    assert (await db.get_history_entry(gone)).media_id == "book-4"
    assert (await db.get_history_entry(movie)).thumb == "http://plex/10.jpg"
    assert audiobookshelf.searches == ["Moved", "Gone"]

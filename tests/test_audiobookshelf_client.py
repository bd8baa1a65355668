import json
from datetime import datetime, timedelta, timezone

import pytest

from streamwatch.audiobookshelf_client import AudiobookshelfAdapter

T0 = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        pass


class _FakeClient:
    def __init__(self):
        self.open_sessions = []
        self.pages = []

    async def get(self, path, params=None):
        if path == "/api/sessions" and params and params.get("filterBy") == "open":
            return _FakeResponse({"sessions": list(self.open_sessions)})
        if path == "/api/sessions":
            page = params["page"]
            return _FakeResponse({"sessions": self.pages[page], "numPages": len(self.pages)})
        if path == "/api/users":
            return _FakeResponse({"users": [{"id": "user-1", "username": "alice"}]})
        raise AssertionError(f"unexpected request {path}")

    async def aclose(self):
        pass


class _FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)


def _open_session(current_time: float, session_id: str = "sess-1") -> dict:
    return {
        "id": session_id,
        "userId": "user-1",
        "libraryItemId": "book-1",
        "mediaType": "book",
        "displayTitle": "A Book",
        "mediaMetadata": {"title": "A Book", "series": [{"name": "A Series"}], "publishedYear": "2001"},
        "duration": 36000.0,
        "currentTime": current_time,
        "deviceInfo": {"clientName": "Abs Android", "deviceName": "Pixel", "ipAddress": "10.0.0.5"},
    }


def _adapter() -> AudiobookshelfAdapter:
    adapter = AudiobookshelfAdapter("Audiobookshelf", "http://abs.test/", "key", 300)
    adapter.client = _FakeClient()
    return adapter


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.mark.asyncio
async def test_session_reported_once_progress_is_seen():
    adapter = _adapter()
    adapter.client.open_sessions = [_open_session(100.0)]

    assert await adapter.get_active_streams(_at(0)) == []

    adapter.client.open_sessions = [_open_session(130.0)]
    activities = await adapter.get_active_streams(_at(30))

    assert len(activities) == 1
    activity = activities[0]
    assert activity.state == "playing"
    assert activity.username == "alice"
    assert activity.media_id == "book-1"
    assert activity.parent_title == "A Series"
    assert activity.year == 2001
    assert activity.position == 130
    assert activity.duration == 36000
    assert activity.thumb == "http://abs.test/api/items/book-1/cover"


@pytest.mark.asyncio
async def test_quiet_session_reported_stopped_once():
    adapter = _adapter()
    adapter.client.open_sessions = [_open_session(100.0)]
    await adapter.get_active_streams(_at(0))
    adapter.client.open_sessions = [_open_session(130.0)]
    await adapter.get_active_streams(_at(30))

    still_active = await adapter.get_active_streams(_at(200))
    assert [a.state for a in still_active] == ["playing"]

    gone_quiet = await adapter.get_active_streams(_at(400))
    assert [a.state for a in gone_quiet] == ["stopped"]

    assert await adapter.get_active_streams(_at(430)) == []


@pytest.mark.asyncio
async def test_vanished_session_reported_stopped():
    adapter = _adapter()
    adapter.client.open_sessions = [_open_session(100.0)]
    await adapter.get_active_streams(_at(0))
    adapter.client.open_sessions = [_open_session(130.0)]
    await adapter.get_active_streams(_at(30))

    adapter.client.open_sessions = []
    activities = await adapter.get_active_streams(_at(60))

    assert [(a.session_key, a.state) for a in activities] == [("sess-1", "stopped")]
    assert "sess-1" not in adapter.tracker


@pytest.mark.asyncio
async def test_progress_event_makes_new_session_active():
    adapter = _adapter()
    calls = []

    async def _handler():
        calls.append(1)

    adapter._on_live_event = _handler
    await adapter.handle_socket_event(
        "user_item_progress_updated", {"id": "sess-1", "currentTime": 100}, now=_at(0)
    )

    adapter.client.open_sessions = [_open_session(100.0)]
    activities = await adapter.get_active_streams(_at(5))

    assert [a.state for a in activities] == ["playing"]
    assert calls == [1]


@pytest.mark.asyncio
async def test_engine_io_handshake_and_events():
    adapter = _adapter()
    calls = []

    async def _handler():
        calls.append(1)

    adapter._on_live_event = _handler
    ws = _FakeWebSocket()

    await adapter._handle_message(ws, '0{"sid":"abc","pingInterval":25000}')
    await adapter._handle_message(ws, '40{"sid":"def"}')
    await adapter._handle_message(ws, "2")
    await adapter._handle_message(ws, '42["stream_closed",{"id":"sess-1"}]')
    await adapter._handle_message(ws, '42["library_scan",{}]')

    assert ws.sent == ["40", "42" + json.dumps(["auth", "key"]), "3"]
    assert calls == [1]


@pytest.mark.asyncio
async def test_listening_sessions_are_paged_and_filtered():
    adapter = _adapter()
    recent = int(_at(0).timestamp() * 1000)
    old = int((_at(0) - timedelta(days=60)).timestamp() * 1000)
    adapter.client.pages = [
        [
            {
                "id": "ls-2",
                "userId": "user-1",
                "libraryItemId": "book-1",
                "mediaType": "book",
                "mediaMetadata": {"title": "A Book"},
                "duration": 1000,
                "currentTime": 500,
                "timeListening": 600,
                "updatedAt": recent,
            },
            {"id": "ls-old", "userId": "user-1", "libraryItemId": "book-1", "updatedAt": old},
        ],
        [
            {
                "id": "ls-1",
                "userId": "user-1",
                "libraryItemId": "book-2",
                "displayTitle": "Other Book",
                "timeListening": 120,
                "updatedAt": recent - 1000,
            },
        ],
    ]

    sessions = await adapter.get_listening_sessions(_at(0) - timedelta(days=30))

    assert [s.source_session_id for s in sessions] == ["ls-1", "ls-2"]
    assert sessions[1].time_listening == 600
    assert sessions[1].username == "alice"
    assert sessions[0].title == "Other Book"

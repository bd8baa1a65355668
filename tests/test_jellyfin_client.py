import json

import httpx
import pytest

from streamwatch.jellyfin_client import JellyfinAdapter


class _FakeResponse:
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("GET", "http://jf.test")
            raise httpx.HTTPStatusError(
                "error", request=request, response=httpx.Response(self.status_code, request=request)
            )


class _FakeClient:
    def __init__(self, routes: dict):
        self.routes = routes
        self.requested = []

    async def get(self, path, params=None):
        self.requested.append(path)
        return self.routes[path]

    async def aclose(self):
        pass


class _FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)


def _session(**overrides) -> dict:
    session = {
        "Id": "sess-1",
        "UserId": "user-1",
        "UserName": "alice",
        "Client": "Jellyfin Web",
        "DeviceName": "Firefox",
        "RemoteEndPoint": "203.0.113.9",
        "IsLocal": False,
        "NowPlayingItem": {
            "Id": "ep-1",
            "Name": "Pilot",
            "Type": "Episode",
            "SeriesName": "The Show",
            "SeriesId": "series-1",
            "ParentIndexNumber": 1,
            "IndexNumber": 2,
            "RunTimeTicks": 36_000_000_000,
            "Container": "mkv",
            "MediaStreams": [
                {"Type": "Video", "Codec": "h264", "Width": 1920, "Height": 1080},
                {"Type": "Audio", "Codec": "aac"},
            ],
            "MediaSources": [{"Bitrate": 8_000_000}],
        },
        "PlayState": {"PositionTicks": 9_000_000_000, "IsPaused": False},
    }
    session.update(overrides)
    return session


def test_parse_session_normalizes_fields():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096/", "key")

    activity = adapter.parse_session(_session())

    assert activity.session_key == "sess-1"
    assert activity.media_type == "episode"
    assert activity.state == "playing"
    assert activity.duration == 3600
    assert activity.position == 900
    assert activity.progress_percent == 25
    assert activity.bitrate == "8.00"
    assert activity.resolution == "1920x1080"
    assert activity.video_codec == "h264"
    assert activity.location == "wan"
    assert activity.transcoding is False
    assert activity.thumb == "http://jf.test:8096/Items/series-1/Images/Primary?api_key=key"


def test_parse_session_paused_and_transcoding():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")

    activity = adapter.parse_session(
        _session(
            PlayState={"PositionTicks": None, "IsPaused": True},
            TranscodingInfo={"IsVideoDirect": False, "Bitrate": 4_000_000},
            IsLocal=True,
        )
    )

    assert activity.state == "paused"
    assert activity.position == 0
    assert activity.transcoding is True
    assert activity.bitrate == "4.00"
    assert activity.location == "lan"


def test_idle_session_is_skipped():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")
    assert adapter.parse_session({"Id": "idle", "UserName": "alice"}) is None


@pytest.mark.asyncio
async def test_get_active_streams_only_returns_playing_sessions():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")
    adapter.client = _FakeClient(
        {"/Sessions": _FakeResponse(200, [_session(), {"Id": "idle", "UserName": "bob"}])}
    )

    activities = await adapter.get_active_streams()

    assert [a.session_key for a in activities] == ["sess-1"]


@pytest.mark.asyncio
async def test_get_active_streams_raises_on_auth_failure():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "bad")
    adapter.client = _FakeClient({"/Sessions": _FakeResponse(401, {})})

    with pytest.raises(httpx.HTTPStatusError):
        await adapter.get_active_streams()


@pytest.mark.asyncio
async def test_get_item_info_missing_item():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")
    adapter.client = _FakeClient(
        {
            "/Users": _FakeResponse(200, [{"Id": "user-1"}]),
            "/Users/user-1/Items/gone": _FakeResponse(404, {}),
        }
    )

    assert await adapter.get_item_info("gone") == {"exists": False, "cover_url": None}


@pytest.mark.asyncio
async def test_test_connection_reports_version():
    adapter = JellyfinAdapter("Emby", "http://emby.test", "key", server_type="emby")
    adapter.client = _FakeClient(
        {"/System/Info": _FakeResponse(200, {"ServerName": "Home", "Version": "4.8.0"})}
    )

    result = await adapter.test_connection()

    assert result["success"] is True
    assert result["server_name"] == "Home"
    assert result["message"] == "Connected to Emby 4.8.0"


@pytest.mark.asyncio
async def test_session_messages_trigger_live_handler():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")
    calls = []

    async def _handler():
        calls.append(1)

    adapter._on_live_event = _handler
    ws = _FakeWebSocket()

    await adapter._handle_message(ws, json.dumps({"MessageType": "PlaybackStart", "Data": {}}))
    await adapter._handle_message(ws, json.dumps({"MessageType": "KeepAlive"}))
    await adapter._handle_message(ws, "not json")

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_repeated_sessions_pushes_wake_once_per_change():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")
    calls = []

    async def _handler():
        calls.append(1)

    adapter._on_live_event = _handler
    ws = _FakeWebSocket()

    def _push(paused: bool, item_id: str = "item-1") -> str:
        sessions = [
            {"Id": "s1", "NowPlayingItem": {"Id": item_id}, "PlayState": {"IsPaused": paused}},
            {"Id": "idle", "UserName": "bob"},
        ]
        return json.dumps({"MessageType": "Sessions", "Data": sessions})

    for _ in range(5):
        await adapter._handle_message(ws, _push(False))
    assert len(calls) == 1

    await adapter._handle_message(ws, _push(True))
    await adapter._handle_message(ws, _push(True))
    await adapter._handle_message(ws, _push(True, item_id="item-2"))
    await adapter._handle_message(ws, json.dumps({"MessageType": "PlaybackProgress", "Data": {}}))

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_on_open_subscribes_to_sessions():
    adapter = JellyfinAdapter("Jellyfin", "http://jf.test:8096", "key")
    ws = _FakeWebSocket()

    await adapter._on_open(ws)

    assert json.loads(ws.sent[0]) == {"MessageType": "SessionsStart", "Data": "0,1500"}


def test_ws_url():
    adapter = JellyfinAdapter("Jellyfin", "https://jf.test", "abc123")
    assert adapter.ws_url.startswith("wss://jf.test/socket?api_key=abc123&deviceId=")

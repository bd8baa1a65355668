import json
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .adapters import LiveEventHandler
from .live_events import WebSocketListener
from .liveness import LivenessTracker
from .models import PLAYING, STOPPED, Activity, ListeningSession

logger = logging.getLogger(__name__)

START_EVENTS = {"stream_open", "playback_session_started"}
STOP_EVENTS = {"stream_closed", "playback_session_ended"}
PROGRESS_EVENTS = {"stream_progress", "user_item_progress_updated"}
LIVE_EVENTS = START_EVENTS | STOP_EVENTS | PROGRESS_EVENTS | {"user_stream_update", "stream_ready"}


def _event_session_id(data) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    session_id = data.get("id") or data.get("sessionId") or data.get("playSessionId")
    if not session_id and isinstance(data.get("session"), dict):
        session_id = data["session"].get("id") or data["session"].get("sessionId")
    return session_id


def _from_millis(value) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class AudiobookshelfAdapter:
    """Audiobookshelf adapter.

    Audiobookshelf keeps playback sessions open long after a listener walks
    away, so whether a session is live is decided by a LivenessTracker rather
    than by the server. Sessions that go quiet are reported once as stopped.
    """

    server_type = "audiobookshelf"

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        inactivity_threshold_seconds: int = 300,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10.0,
        )
        self.tracker = LivenessTracker(inactivity_threshold_seconds)
        self._active: dict[str, Activity] = {}
        self._usernames: dict[str, str] = {}
        self._on_live_event: Optional[LiveEventHandler] = None
        self.listener = WebSocketListener(name, self.ws_url, self._handle_message)

    @property
    def ws_url(self) -> str:
        url = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{url}/socket.io/?EIO=4&transport=websocket"

    async def _username(self, user_id: str) -> str:
        if user_id not in self._usernames:
            try:
                response = await self.client.get("/api/users")
                response.raise_for_status()
                for user in response.json().get("users") or []:
                    self._usernames[user["id"]] = user.get("username") or "Unknown User"
            except httpx.HTTPError as e:
                logger.warning(f"Could not fetch {self.name} users: {e}")
        return self._usernames.get(user_id, "Unknown User")

    async def _open_sessions(self) -> list[dict]:
        response = await self.client.get(
            "/api/sessions", params={"filterBy": "open", "sort": "updatedAt", "desc": 1}
        )
        response.raise_for_status()
        data = response.json()
        if isinstance(data, dict):
            return data.get("sessions") or []
        return data or []

    async def get_active_streams(self, now: Optional[datetime] = None) -> list[Activity]:
        now = now or datetime.now(timezone.utc)
        sessions = [
            s
            for s in await self._open_sessions()
            if s and s.get("id") and s.get("libraryItemId") and s.get("currentTime") is not None
        ]

        activities = []
        for session in sessions:
            session_key = session["id"]
            is_active = self.tracker.observe(session_key, float(session["currentTime"]), now)
            if is_active:
                activity = await self.parse_playback_session(session, PLAYING)
                self._active[session_key] = activity
                activities.append(activity)
            elif session_key in self._active:
                logger.info(f"No recent activity, reporting stopped: {session.get('displayTitle')}")
                activities.append(self._active.pop(session_key).model_copy(update={"state": STOPPED}))

        for session_key in self.tracker.prune(s["id"] for s in sessions):
            if session_key in self._active:
                activities.append(self._active.pop(session_key).model_copy(update={"state": STOPPED}))

        logger.debug(
            f"{self.name}: {len(self._active)} active of {len(sessions)} open sessions"
        )
        return activities

    async def parse_playback_session(self, session: dict, state: str) -> Activity:
        metadata = session.get("mediaMetadata") or {}
        series = metadata.get("series") or []
        series_name = series[0].get("name") if series and isinstance(series[0], dict) else None
        device = session.get("deviceInfo") or {}
        duration = session.get("duration")
        position = session.get("currentTime") or 0
        user_id = session.get("userId") or "unknown"
        username = (session.get("user") or {}).get("username") or await self._username(user_id)

        return Activity(
            session_key=session["id"],
            user_id=user_id,
            username=username,
            media_type=session.get("mediaType") or "audiobook",
            media_id=session["libraryItemId"],
            title=metadata.get("title") or session.get("displayTitle") or "Unknown Title",
            parent_title=series_name,
            year=int(metadata["publishedYear"]) if str(metadata.get("publishedYear") or "").isdigit() else None,
            thumb=f"{self.base_url}/api/items/{session['libraryItemId']}/cover",
            state=state,
            progress_percent=round(position / duration * 100) if duration else 0,
            duration=round(duration) if duration else None,
            position=round(position),
            client_name=device.get("clientName") or "Audiobookshelf",
            device_name=device.get("deviceName") or "Unknown Device",
            ip_address=device.get("ipAddress"),
        )

    async def get_listening_sessions(self, since: datetime) -> list[ListeningSession]:
        """Closed listening sessions updated since the cutoff, oldest first."""
        results: list[ListeningSession] = []
        page = 0
        while True:
            response = await self.client.get(
                "/api/sessions", params={"itemsPerPage": 100, "page": page}
            )
            response.raise_for_status()
            data = response.json()
            for session in data.get("sessions") or []:
                if not session.get("id") or not session.get("libraryItemId"):
                    continue
                updated_at = _from_millis(session.get("updatedAt"))
                if updated_at < since:
                    continue
                metadata = session.get("mediaMetadata") or {}
                duration = session.get("duration")
                user_id = session.get("userId") or "unknown"
                results.append(
                    ListeningSession(
                        source_session_id=session["id"],
                        user_id=user_id,
                        username=(session.get("user") or {}).get("username")
                        or await self._username(user_id),
                        media_type=session.get("mediaType") or "audiobook",
                        media_id=session["libraryItemId"],
                        title=metadata.get("title") or session.get("displayTitle") or "Unknown Title",
                        parent_title=metadata.get("seriesName"),
                        duration=round(duration) if duration else None,
                        position=round(session.get("currentTime") or 0),
                        time_listening=round(session.get("timeListening") or 0),
                        thumb=f"{self.base_url}/api/items/{session['libraryItemId']}/cover",
                        updated_at=updated_at,
                    )
                )
            page += 1
            if page >= (data.get("numPages") or 0):
                break
        results.sort(key=lambda s: s.updated_at)
        return results

    async def test_connection(self) -> dict:
        try:
            response = await self.client.get("/api/me")
            response.raise_for_status()
            status = await self.client.get("/status")
            version = status.json().get("serverVersion") if status.status_code == 200 else None
        except (httpx.HTTPError, ValueError) as e:
            return {"success": False, "error": f"Connection failed: {e}"}
        return {
            "success": True,
            "server_name": "Audiobookshelf",
            "version": version or "Unknown",
            "message": "Connected successfully",
        }

    async def get_item_info(self, media_id: str) -> dict:
        missing = {"exists": False, "cover_url": None}
        try:
            response = await self.client.get(f"/api/items/{media_id}")
            if response.status_code == 404:
                return missing
            response.raise_for_status()
            item = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Error fetching {self.name} item {media_id}: {e}")
            return missing
        media = item.get("media") or {}
        metadata = media.get("metadata") or {}
        return {
            "exists": True,
            "cover_url": f"{self.base_url}/api/items/{media_id}/cover" if media.get("coverPath") else None,
            "title": metadata.get("title"),
            "grandparent_title": metadata.get("seriesName"),
        }

    async def search_by_title(self, title: str, media_type: Optional[str] = None) -> Optional[dict]:
        try:
            response = await self.client.get("/api/libraries")
            response.raise_for_status()
            libraries = response.json().get("libraries") or []
            for library in libraries:
                result = await self.client.get(
                    f"/api/libraries/{library['id']}/search", params={"q": title, "limit": 10}
                )
                result.raise_for_status()
                for match in result.json().get("book") or []:
                    item = match.get("libraryItem") or {}
                    metadata = (item.get("media") or {}).get("metadata") or {}
                    if (metadata.get("title") or "").lower() == title.lower():
                        return {
                            "id": item["id"],
                            "title": metadata.get("title"),
                            "cover_url": f"{self.base_url}/api/items/{item['id']}/cover",
                        }
        except httpx.HTTPError as e:
            logger.error(f"Error searching {self.name} by title: {e}")
        return None

    async def subscribe_live_events(self, handler: LiveEventHandler) -> None:
        self._on_live_event = handler
        self.listener.start()

    async def unsubscribe(self) -> None:
        self._on_live_event = None
        await self.listener.stop()

    async def _handle_message(self, ws, message: str) -> None:
        """Speak just enough Engine.IO v4 / Socket.IO to receive events."""
        if message == "2":
            await ws.send("3")
        elif message.startswith("0"):
            await ws.send("40")
        elif message.startswith("40"):
            await ws.send("42" + json.dumps(["auth", self.api_key]))
        elif message.startswith("42"):
            try:
                event, *args = json.loads(message[2:])
            except (json.JSONDecodeError, ValueError):
                logger.warning(f"Invalid Socket.IO event: {message[:100]}")
                return
            await self.handle_socket_event(event, args[0] if args else None)

    async def handle_socket_event(self, event: str, data, now: Optional[datetime] = None) -> None:
        if event not in LIVE_EVENTS:
            return
        now = now or datetime.now(timezone.utc)
        session_id = _event_session_id(data)
        if session_id:
            if event in STOP_EVENTS:
                self.tracker.mark_stopped(session_id)
            elif event in START_EVENTS or event in PROGRESS_EVENTS:
                position = data.get("currentTime") or 0
                self.tracker.mark_event(session_id, now, position=position)
        if self._on_live_event:
            await self._on_live_event()

    def status(self) -> dict:
        return self.listener.status()

    async def close(self) -> None:
        await self.client.aclose()

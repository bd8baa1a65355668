import json
import logging
from typing import Optional

import httpx

from .adapters import LiveEventHandler
from .geolocation import is_private_address
from .live_events import WebSocketListener
from .models import BUFFERING, PAUSED, PLAYING, STOPPED, Activity

logger = logging.getLogger(__name__)

_STATES = {"playing": PLAYING, "paused": PAUSED, "buffering": BUFFERING, "stopped": STOPPED}
LIVE_MESSAGE_TYPES = {"session.start", "session.update", "session.pause", "session.stop"}

# Anything longer than 100 hours was reported in milliseconds.
MAX_PLAUSIBLE_DURATION = 360000


def _whole(value) -> Optional[int]:
    return int(value) if str(value or "").isdigit() else None


class SapphoAdapter:
    """Sappho audiobook server adapter.

    Sappho tracks its own listening sessions and reports each with an explicit
    state, so it is polled like the video servers.
    """

    server_type = "sappho"

    def __init__(self, name: str, base_url: str, api_key: str):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10.0,
        )
        self._on_live_event: Optional[LiveEventHandler] = None
        self.listener = WebSocketListener(name, self.ws_url, self._handle_message)

    @property
    def ws_url(self) -> str:
        url = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{url}/ws/notifications?token={self.api_key}"

    def _cover_url(self, audiobook_id) -> str:
        return f"{self.base_url}/api/audiobooks/{audiobook_id}/cover"

    async def get_active_streams(self) -> list[Activity]:
        response = await self.client.get("/api/sessions")
        response.raise_for_status()
        activities = []
        for session in response.json().get("sessions") or []:
            activity = self.parse_session(session)
            if activity:
                activities.append(activity)
        return activities

    def parse_session(self, session: dict) -> Optional[Activity]:
        if not session.get("sessionId") or session.get("audiobookId") is None:
            return None

        duration = round(session["duration"]) if session.get("duration") else None
        position = round(session.get("position") or 0)
        if duration and duration > MAX_PLAUSIBLE_DURATION:
            duration = round(duration / 1000)
            position = round(position / 1000)

        progress = round(session.get("progressPercent") or 0)
        if not progress and duration and position:
            progress = round(position / duration * 100)

        if session.get("state"):
            state = _STATES.get(str(session["state"]).lower(), PLAYING)
        elif session.get("paused") or session.get("isPaused"):
            state = PAUSED
        elif session.get("stopped") or session.get("isStopped"):
            state = STOPPED
        else:
            state = PLAYING

        ip_address = session.get("ipAddress")
        bitrate = session.get("bitrate")
        return Activity(
            session_key=str(session["sessionId"]),
            user_id=str(session.get("userId") or "unknown"),
            username=session.get("username") or "Sappho User",
            media_type="audiobook",
            media_id=str(session["audiobookId"]),
            title=session.get("title") or "Unknown Title",
            parent_title=session.get("series"),
            season_number=_whole(session.get("seriesPosition")),
            year=_whole(session.get("year")),
            thumb=self._cover_url(session["audiobookId"]),
            state=state,
            progress_percent=progress,
            duration=duration,
            position=position,
            bitrate=f"{bitrate / 1000:.2f}" if bitrate else None,
            audio_codec=session.get("audioCodec"),
            container=session.get("container"),
            client_name=session.get("clientName") or "Sappho Web Player",
            device_name=session.get("platform") or "Web",
            ip_address=ip_address,
            location=("lan" if is_private_address(ip_address) else "wan") if ip_address else None,
        )

    async def test_connection(self) -> dict:
        try:
            response = await self.client.get("/api/health")
            response.raise_for_status()
            version = response.json().get("version") or "Unknown"
        except (httpx.HTTPError, ValueError) as e:
            return {"success": False, "error": f"Connection failed: {e}"}
        return {
            "success": True,
            "server_name": "Sappho",
            "version": version,
            "message": f"Connected to Sappho {version}",
        }

    async def get_item_info(self, media_id: str) -> dict:
        missing = {"exists": False, "cover_url": None}
        try:
            response = await self.client.get(f"/api/audiobooks/{media_id}")
            if response.status_code == 404:
                return missing
            response.raise_for_status()
            item = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching {self.name} audiobook {media_id}: {e}")
            return missing
        return {
            "exists": True,
            "cover_url": self._cover_url(media_id),
            "title": item.get("title"),
            "grandparent_title": item.get("series"),
        }

    async def search_by_title(self, title: str, media_type: Optional[str] = None) -> Optional[dict]:
        try:
            response = await self.client.get("/api/audiobooks", params={"search": title})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error searching {self.name} by title: {e}")
            return None
        if isinstance(data, dict):
            data = data.get("audiobooks")
        for book in data or []:
            if (book.get("title") or "").lower() == title.lower() and book.get("id") is not None:
                return {
                    "id": str(book["id"]),
                    "title": book.get("title"),
                    "cover_url": self._cover_url(book["id"]),
                }
        return None

    async def subscribe_live_events(self, handler: LiveEventHandler) -> None:
        self._on_live_event = handler
        self.listener.start()

    async def unsubscribe(self) -> None:
        self._on_live_event = None
        await self.listener.stop()

    async def _handle_message(self, ws, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON message: {message[:100]}")
            return
        if isinstance(data, dict) and data.get("type") in LIVE_MESSAGE_TYPES:
            title = ((data.get("session") or {}).get("audiobook") or {}).get("title")
            logger.debug(f"{self.name} event {data['type']}: {title}")
            if self._on_live_event:
                await self._on_live_event()

    def status(self) -> dict:
        return self.listener.status()

    async def close(self) -> None:
        await self.client.aclose()

import json
import logging
from typing import Optional

import httpx

from .adapters import LiveEventHandler
from .live_events import WebSocketListener
from .models import BUFFERING, PAUSED, PLAYING, Activity

logger = logging.getLogger(__name__)

_PLAYER_STATES = {"playing": PLAYING, "paused": PAUSED, "buffering": BUFFERING}


def _seconds(milliseconds) -> Optional[int]:
    if not milliseconds:
        return None
    return round(int(milliseconds) / 1000)


class PlexAdapter:
    """Plex Media Server session adapter using the JSON flavour of the API."""

    server_type = "plex"

    def __init__(self, name: str, base_url: str, token: str):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Plex-Token": token, "Accept": "application/json"},
            timeout=10.0,
        )
        self._on_live_event: Optional[LiveEventHandler] = None
        self.listener = WebSocketListener(name, self.ws_url, self._handle_message)

    @property
    def ws_url(self) -> str:
        url = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{url}/:/websockets/notifications?X-Plex-Token={self.token}"

    def _photo_url(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        return f"{self.base_url}{path}?X-Plex-Token={self.token}"

    async def _metadata(self, path: str, **params) -> list[dict]:
        response = await self.client.get(path, params=params or None)
        response.raise_for_status()
        return (response.json().get("MediaContainer") or {}).get("Metadata") or []

    async def get_active_streams(self) -> list[Activity]:
        activities = []
        for entry in await self._metadata("/status/sessions"):
            activity = self.parse_session(entry)
            if activity:
                activities.append(activity)
        return activities

    def parse_session(self, entry: dict) -> Optional[Activity]:
        """Translate one /status/sessions entry."""
        session = entry.get("Session") or {}
        session_key = session.get("id") or entry.get("sessionKey")
        if not session_key or not entry.get("ratingKey"):
            return None

        user = entry.get("User") or {}
        player = entry.get("Player") or {}
        media = (entry.get("Media") or [{}])[0]
        transcode = entry.get("TranscodeSession") or {}
        media_type = (entry.get("type") or "unknown").lower()

        duration = _seconds(entry.get("duration"))
        position = _seconds(entry.get("viewOffset")) or 0
        progress = round(position / duration * 100) if duration else 0

        thumb_path = entry.get("grandparentThumb") if media_type == "episode" else None
        bitrate = media.get("bitrate")

        return Activity(
            session_key=str(session_key),
            user_id=str(user.get("id") or ""),
            username=user.get("title") or "Unknown",
            user_thumb=user.get("thumb"),
            media_type=media_type,
            media_id=str(entry["ratingKey"]),
            title=entry.get("title") or "Unknown",
            parent_title=entry.get("parentTitle"),
            grandparent_title=entry.get("grandparentTitle"),
            season_number=entry.get("parentIndex"),
            episode_number=entry.get("index"),
            year=entry.get("year"),
            thumb=self._photo_url(thumb_path or entry.get("thumb")),
            state=_PLAYER_STATES.get(player.get("state"), PLAYING),
            progress_percent=progress,
            duration=duration,
            position=position,
            bitrate=f"{bitrate / 1000:.2f}" if bitrate else None,
            transcoding=(
                transcode.get("videoDecision") == "transcode"
                or transcode.get("audioDecision") == "transcode"
            ),
            video_codec=media.get("videoCodec"),
            audio_codec=media.get("audioCodec"),
            container=media.get("container"),
            resolution=media.get("videoResolution"),
            client_name=player.get("product"),
            device_name=player.get("title"),
            ip_address=player.get("address"),
            location=session.get("location") or ("lan" if player.get("local") else "wan"),
        )

    async def test_connection(self) -> dict:
        try:
            response = await self.client.get("/identity")
            response.raise_for_status()
            container = response.json().get("MediaContainer") or {}
        except (httpx.HTTPError, ValueError) as e:
            return {"success": False, "error": str(e)}
        version = container.get("version")
        return {
            "success": True,
            "server_name": container.get("friendlyName") or "Plex",
            "version": version,
            "message": f"Connected to Plex {version}",
        }

    async def get_item_info(self, media_id: str) -> dict:
        missing = {"exists": False, "cover_url": None}
        try:
            items = await self._metadata(f"/library/metadata/{media_id}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                logger.error(f"Error fetching Plex item {media_id}: {e}")
            return missing
        except httpx.HTTPError as e:
            logger.error(f"Error fetching Plex item {media_id}: {e}")
            return missing
        if not items:
            return missing
        item = items[0]
        return {
            "exists": True,
            "cover_url": self._photo_url(item.get("grandparentThumb") or item.get("thumb")),
            "title": item.get("title"),
            "grandparent_title": item.get("grandparentTitle"),
        }

    async def search_by_title(self, title: str, media_type: Optional[str] = None) -> Optional[dict]:
        try:
            items = await self._metadata("/search", query=title)
        except httpx.HTTPError as e:
            logger.error(f"Error searching Plex by title: {e}")
            return None
        for item in items:
            if media_type and (item.get("type") or "").lower() != media_type:
                continue
            if (item.get("title") or "").lower() != title.lower():
                continue
            return {
                "id": str(item.get("ratingKey")),
                "title": item.get("title"),
                "cover_url": self._photo_url(item.get("grandparentThumb") or item.get("thumb")),
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
        container = data.get("NotificationContainer") or {}
        if container.get("type") == "playing" and self._on_live_event:
            await self._on_live_event()

    def status(self) -> dict:
        return self.listener.status()

    async def close(self) -> None:
        await self.client.aclose()

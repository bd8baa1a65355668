import json
import logging
import uuid
from typing import Optional

import httpx

from .adapters import LiveEventHandler
from .live_events import WebSocketListener
from .models import PAUSED, PLAYING, Activity

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 10_000_000

# Messages that mean a playback started or ended. "Sessions" pushes are
# handled separately since they repeat on every subscription tick.
LIVE_MESSAGE_TYPES = {
    "PlaybackStart",
    "PlaybackStopped",
    "SessionEnded",
}


def _sessions_signature(sessions) -> frozenset:
    """What a poll would notice in a Sessions push: who plays what, paused or not."""
    return frozenset(
        (
            s.get("Id"),
            s["NowPlayingItem"].get("Id"),
            bool((s.get("PlayState") or {}).get("IsPaused")),
        )
        for s in sessions or []
        if isinstance(s, dict) and isinstance(s.get("NowPlayingItem"), dict)
    )


def _mbps(bits_per_second) -> Optional[str]:
    if not bits_per_second:
        return None
    return f"{bits_per_second / 1_000_000:.2f}"


class JellyfinAdapter:
    """Jellyfin (and Emby, which shares the API) session adapter."""

    def __init__(self, name: str, base_url: str, api_key: str, server_type: str = "jellyfin"):
        self.name = name
        self.server_type = server_type
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.device_id = str(uuid.uuid4())
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-Emby-Token": api_key,
                "Authorization": f'MediaBrowser Token="{api_key}"',
            },
            timeout=10.0,
        )
        self._on_live_event: Optional[LiveEventHandler] = None
        self._last_sessions: Optional[frozenset] = None
        self.listener = WebSocketListener(
            name, self.ws_url, self._handle_message, on_open=self._on_open
        )

    @property
    def ws_url(self) -> str:
        """Get WebSocket URL from HTTP URL."""
        url = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{url}/socket?api_key={self.api_key}&deviceId={self.device_id}"

    def _image_url(self, item_id: str, kind: str = "Primary") -> str:
        return f"{self.base_url}/Items/{item_id}/Images/{kind}?api_key={self.api_key}"

    def _cover_url(self, item: dict) -> Optional[str]:
        if (item.get("Type") or "").lower() == "episode" and (
            item.get("SeriesId") or item.get("SeriesPrimaryImageTag")
        ):
            return self._image_url(item.get("SeriesId") or item.get("ParentId"))
        if (item.get("ImageTags") or {}).get("Primary"):
            return self._image_url(item["Id"])
        return None

    async def get_active_streams(self) -> list[Activity]:
        response = await self.client.get("/Sessions")
        response.raise_for_status()
        activities = []
        for session in response.json():
            activity = self.parse_session(session)
            if activity:
                activities.append(activity)
        return activities

    def parse_session(self, session: dict) -> Optional[Activity]:
        """Translate one /Sessions entry; sessions without a playing item are skipped."""
        item = session.get("NowPlayingItem")
        if not item or not session.get("Id"):
            return None

        play_state = session.get("PlayState") or {}
        transcode = session.get("TranscodingInfo") or {}
        streams = item.get("MediaStreams") or []
        video = next((s for s in streams if s.get("Type") == "Video"), None)
        audio = next((s for s in streams if s.get("Type") == "Audio"), None)
        sources = item.get("MediaSources") or []

        position_ticks = play_state.get("PositionTicks") or 0
        runtime_ticks = item.get("RunTimeTicks") or 0
        progress = round(position_ticks / runtime_ticks * 100) if runtime_ticks else 0

        user_id = session.get("UserId") or ""
        user_thumb = None
        if session.get("UserPrimaryImageTag"):
            user_thumb = f"{self.base_url}/Users/{user_id}/Images/Primary?api_key={self.api_key}"

        return Activity(
            session_key=session["Id"],
            user_id=user_id,
            username=session.get("UserName") or "Unknown",
            user_thumb=user_thumb,
            media_type=(item.get("Type") or "unknown").lower(),
            media_id=item.get("Id") or "",
            title=item.get("Name") or "Unknown",
            parent_title=item.get("SeriesName"),
            grandparent_title=item.get("SeriesName"),
            season_number=item.get("ParentIndexNumber"),
            episode_number=item.get("IndexNumber"),
            year=item.get("ProductionYear"),
            thumb=self._cover_url(item),
            state=PAUSED if play_state.get("IsPaused") else PLAYING,
            progress_percent=progress,
            duration=round(runtime_ticks / TICKS_PER_SECOND) if runtime_ticks else None,
            position=round(position_ticks / TICKS_PER_SECOND),
            bitrate=(
                _mbps(transcode.get("Bitrate"))
                or _mbps(sources[0].get("Bitrate") if sources else None)
                or _mbps(video.get("BitRate") if video else None)
            ),
            transcoding=(
                transcode.get("IsVideoDirect") is False or transcode.get("IsAudioDirect") is False
            ),
            video_codec=(video or {}).get("Codec") or transcode.get("VideoCodec"),
            audio_codec=(audio or {}).get("Codec") or transcode.get("AudioCodec"),
            container=item.get("Container"),
            resolution=f"{video.get('Width')}x{video.get('Height')}" if video else None,
            client_name=session.get("Client"),
            device_name=session.get("DeviceName"),
            ip_address=session.get("RemoteEndPoint"),
            location="wan" if session.get("IsLocal") is False else "lan",
        )

    async def test_connection(self) -> dict:
        try:
            response = await self.client.get("/System/Info")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return {"success": False, "error": str(e)}
        version = data.get("Version")
        return {
            "success": True,
            "server_name": data.get("ServerName"),
            "version": version,
            "message": f"Connected to {self.server_type.title()} {version}",
        }

    async def _first_user_id(self) -> Optional[str]:
        response = await self.client.get("/Users")
        response.raise_for_status()
        users = response.json()
        return users[0]["Id"] if users else None

    async def get_item_info(self, media_id: str) -> dict:
        missing = {"exists": False, "cover_url": None}
        try:
            user_id = await self._first_user_id()
            if not user_id:
                return missing
            response = await self.client.get(f"/Users/{user_id}/Items/{media_id}")
            if response.status_code == 404:
                return missing
            response.raise_for_status()
            item = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Error fetching {self.name} item {media_id}: {e}")
            return missing
        return {
            "exists": True,
            "cover_url": self._cover_url(item),
            "title": item.get("Name"),
            "grandparent_title": item.get("SeriesName"),
        }

    async def search_by_title(self, title: str, media_type: Optional[str] = None) -> Optional[dict]:
        try:
            response = await self.client.get(
                "/Search/Hints", params={"SearchTerm": title, "Limit": 10}
            )
            response.raise_for_status()
            hints = response.json().get("SearchHints") or []
        except httpx.HTTPError as e:
            logger.error(f"Error searching {self.name} by title: {e}")
            return None

        for hint in hints:
            item_type = (hint.get("Type") or "").lower()
            if media_type and item_type != media_type:
                continue
            name = hint.get("Name") or ""
            if name.lower() != title.lower():
                continue
            item_id = hint.get("ItemId") or hint.get("Id")
            cover_id = hint.get("SeriesId") if item_type == "episode" and hint.get("SeriesId") else item_id
            return {"id": item_id, "title": name, "cover_url": self._image_url(cover_id)}
        return None

    async def subscribe_live_events(self, handler: LiveEventHandler) -> None:
        """Start the WebSocket listener; every relevant message triggers the handler."""
        self._on_live_event = handler
        self.listener.start()

    async def unsubscribe(self) -> None:
        self._on_live_event = None
        await self.listener.stop()

    async def _on_open(self, ws) -> None:
        await ws.send(json.dumps({"MessageType": "SessionsStart", "Data": "0,1500"}))
        logger.info(f"Subscribed to {self.name} session updates")

    async def _handle_message(self, ws, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON message: {message[:100]}")
            return
        message_type = data.get("MessageType")
        if message_type == "Sessions":
            signature = _sessions_signature(data.get("Data"))
            if signature == self._last_sessions:
                return
            self._last_sessions = signature
        elif message_type not in LIVE_MESSAGE_TYPES:
            return
        if self._on_live_event:
            await self._on_live_event()

    def status(self) -> dict:
        return self.listener.status()

    async def close(self) -> None:
        await self.client.aclose()

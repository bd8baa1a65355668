import json
import logging

from fastapi import WebSocket

from streamwatch.models import Session

logger = logging.getLogger(__name__)


def activity_message(sessions: list[Session]) -> dict:
    return {"type": "activity", "data": [session.model_dump(mode="json") for session in sessions]}


class Broadcaster:
    """Fan the open-session list out to connected dashboard WebSockets."""

    def __init__(self):
        self.active: list[WebSocket] = []
        self.latest: list[Session] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.active.append(ws)
        await ws.send_text(json.dumps(activity_message(self.latest)))

    def remove(self, ws: WebSocket) -> None:
        if ws in self.active:
            self.active.remove(ws)

    async def broadcast(self, sessions: list[Session]) -> None:
        self.latest = list(sessions)
        data = json.dumps(activity_message(sessions))
        stale = []
        for ws in self.active:
            try:
                await ws.send_text(data)
            except Exception as e:
                logger.debug(f"Dropping dashboard client: {e}")
                stale.append(ws)
        for ws in stale:
            self.remove(ws)

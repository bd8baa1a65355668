import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

import websockets

logger = logging.getLogger(__name__)

MessageCallback = Callable[[object, str], Awaitable[None]]
OpenCallback = Callable[[object], Awaitable[None]]


class WebSocketListener:
    """A reconnecting WebSocket reader that feeds each message to a callback."""

    def __init__(
        self,
        name: str,
        url: str,
        on_message: MessageCallback,
        on_open: Optional[OpenCallback] = None,
        max_size: int = 16 * 1024 * 1024,
    ):
        self.name = name
        self.url = url
        self._on_message = on_message
        self._on_open = on_open
        self._max_size = max_size
        self.ws = None
        self._running = False
        self._reconnect_delay = 1
        self._max_reconnect_delay = 60
        self._task: Optional[asyncio.Task] = None
        self._connected = False
        self._last_message_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._running = False
        if self.ws:
            await self.ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        """Keep the connection open with exponential backoff."""
        while self._running:
            try:
                await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} WebSocket error: {e}")
            if self._running:
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    async def _connect(self) -> None:
        logger.info(f"Connecting to {self.name} WebSocket: {self.url.split('?')[0]}...")
        async with websockets.connect(self.url, max_size=self._max_size) as ws:
            self.ws = ws
            self._reconnect_delay = 1
            self._connected = True
            logger.info(f"Connected to {self.name} WebSocket")
            try:
                if self._on_open:
                    await self._on_open(ws)
                async for message in ws:
                    self._last_message_at = datetime.now()
                    try:
                        await self._on_message(ws, message)
                    except Exception as e:
                        logger.error(f"Error handling {self.name} message: {e}")
            finally:
                self._connected = False
                self.ws = None

    def status(self) -> dict:
        """Expose listener status for health/metrics."""
        return {
            "connected": self._connected,
            "last_message_at": (
                self._last_message_at.isoformat() if self._last_message_at else None
            ),
        }

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from .adapters import AdapterRegistry, LiveEventSource, MediaAdapter
from .database import Database
from .models import STOPPED, Activity, Session
from .reconciler import SessionReconciler
from .sweep import StaleSweep

logger = logging.getLogger(__name__)

Broadcast = Callable[[list[Session]], Awaitable[None]]


class ActivityMonitor:
    """The single reconciliation loop.

    A cycle polls every adapter concurrently, feeds the results through the
    reconciler one at a time, sweeps stale sessions and hands the open
    sessions to the broadcaster. Cycles run on a timer and can be nudged
    early with wake(); wakes during a cycle collapse into one follow-up cycle.
    """

    def __init__(
        self,
        db: Database,
        registry: AdapterRegistry,
        reconciler: SessionReconciler,
        sweep: StaleSweep,
        poll_interval_seconds: float = 30,
        adapter_timeout_seconds: float = 10.0,
        broadcast: Optional[Broadcast] = None,
    ):
        self.db = db
        self.registry = registry
        self.reconciler = reconciler
        self.sweep = sweep
        self.poll_interval_seconds = poll_interval_seconds
        self.adapter_timeout_seconds = adapter_timeout_seconds
        self.broadcast = broadcast
        self._lock = asyncio.Lock()
        self._wake_event = asyncio.Event()
        self._pending = False
        self._in_cycle = False
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.last_cycle_at: Optional[datetime] = None
        self.adapter_errors: dict[str, str] = {}

    def wake(self) -> None:
        """Request a cycle as soon as possible."""
        if self._in_cycle:
            self._pending = True
        else:
            self._wake_event.set()

    async def _on_live_event(self) -> None:
        self.wake()

    async def start(self) -> None:
        for adapter in self.registry.live_sources():
            try:
                await adapter.subscribe_live_events(self._on_live_event)
            except Exception as e:
                logger.warning(f"Live events unavailable for {adapter.name}: {e}")
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Activity monitor started: {len(self.registry)} server(s), "
            f"polling every {self.poll_interval_seconds}s"
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await self._run_until_settled()
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

    async def _run_until_settled(self) -> None:
        while True:
            self._pending = False
            await self.run_cycle()
            if not self._pending:
                return

    async def run_cycle(self, now: Optional[datetime] = None) -> list[Session]:
        """Run one reconciliation pass. Failures are logged, never raised."""
        async with self._lock:
            self._in_cycle = True
            try:
                return await self._cycle(now)
            except Exception as e:
                logger.error(f"Activity cycle failed: {e}")
                return []
            finally:
                self._in_cycle = False

    async def _cycle(self, now: Optional[datetime]) -> list[Session]:
        adapters = list(self.registry)
        results = await asyncio.gather(*(self._poll(adapter) for adapter in adapters))
        now = now or datetime.now(timezone.utc)

        active_keys: dict[str, set[str]] = {}
        for adapter, activities in zip(adapters, results):
            if activities is None:
                continue
            active_keys[adapter.name] = {a.session_key for a in activities if a.state != STOPPED}
            for activity in activities:
                await self.reconciler.apply(activity, adapter.server_type, adapter.name, now)

        await self.sweep.run(active_keys, now)
        sessions = await self.db.get_open_sessions()

        self.cycles += 1
        self.last_cycle_at = now
        if self.broadcast:
            try:
                await self.broadcast(sessions)
            except Exception as e:
                logger.error(f"Broadcast failed: {e}")
        return sessions

    async def _poll(self, adapter: MediaAdapter) -> Optional[list[Activity]]:
        """Poll one adapter; None means the poll failed and nothing is known."""
        try:
            activities = await asyncio.wait_for(
                adapter.get_active_streams(), timeout=self.adapter_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.adapter_errors[adapter.name] = "timeout"
            logger.error(f"{adapter.name} did not respond within {self.adapter_timeout_seconds}s")
            return None
        except Exception as e:
            self.adapter_errors[adapter.name] = str(e)
            logger.error(f"Error polling {adapter.name}: {e}")
            return None
        self.adapter_errors.pop(adapter.name, None)
        return activities

    def status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "cycles": self.cycles,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "adapter_errors": dict(self.adapter_errors),
            "live_events": {
                adapter.name: adapter.status()
                for adapter in self.registry
                if isinstance(adapter, LiveEventSource) and hasattr(adapter, "status")
            },
        }

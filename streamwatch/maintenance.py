import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from .adapters import AdapterRegistry
from .database import Database
from .models import HistoryRecord

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[Any]]


class DuplicateMerger:
    """Consolidate History rows for the same item and user from imported sources.

    Closed listening sessions are imported one per sitting, so a single book
    accumulates many rows. The most recently watched row is kept and absorbs
    the others.
    """

    def __init__(self, db: Database, server_types: list[str]):
        self.db = db
        self.server_types = list(server_types)

    async def merge(self) -> dict:
        groups = await self.db.find_duplicate_groups(self.server_types)
        merged = 0
        for media_id, user_id in groups:
            try:
                if await self._merge_group(media_id, user_id):
                    merged += 1
            except Exception as e:
                logger.error(f"Failed to merge history for {media_id}/{user_id}: {e}")
        if groups:
            logger.info(f"Merged {merged} of {len(groups)} duplicate history sets")
        return {"merged": merged, "duplicate_sets": len(groups)}

    async def _merge_group(self, media_id: str, user_id: str) -> bool:
        async with self.db.transaction():
            entries = await self.db.get_history_group(media_id, user_id, self.server_types)
            if len(entries) <= 1:
                return False
            keep, rest = entries[0], entries[1:]
            session_ids = [e.merged_session_ids for e in entries if e.merged_session_ids]
            await self.db.update_history_totals(
                keep.id,
                stream_duration=sum(e.stream_duration for e in entries),
                percent_complete=max(e.percent_complete for e in entries),
                merged_session_ids=",".join(session_ids) or None,
            )
            await self.db.delete_history([e.id for e in rest])
        return True


def title_matches(item: dict, entry: HistoryRecord) -> bool:
    """Whether a server item is still the thing the history row describes."""
    server_series = (item.get("grandparent_title") or "").lower()
    history_series = (entry.grandparent_title or "").lower()
    if server_series and history_series:
        return server_series == history_series
    return (item.get("title") or "").lower() == (entry.title or "").lower()


class CoverRepairer:
    """Refresh History cover art from the servers that own the items.

    Item ids get reused or reassigned when libraries are rebuilt, so a row
    whose id no longer resolves to the same title is re-found by title.
    """

    def __init__(self, db: Database, registry: AdapterRegistry):
        self.db = db
        self.registry = registry

    async def repair(self) -> dict:
        results = {}
        for server_type in sorted(self.registry.server_types()):
            adapter = self.registry.by_type(server_type)[0]
            results[server_type] = await self._repair_server(adapter, server_type)
        return results

    async def _repair_server(self, adapter, server_type: str) -> dict:
        counts = {"cover_updated": 0, "repaired": 0, "not_found": 0, "already_valid": 0}
        entries = await self.db.get_history_for_server_type(server_type)
        counts["total"] = len(entries)
        for entry in entries:
            try:
                counts[await self._repair_entry(adapter, entry)] += 1
            except Exception as e:
                logger.error(f"Failed to repair cover for history {entry.id}: {e}")
        if entries:
            logger.info(f"Cover repair for {server_type}: {counts}")
        return counts

    async def _repair_entry(self, adapter, entry: HistoryRecord) -> str:
        item = await adapter.get_item_info(entry.media_id)
        if item.get("exists") and title_matches(item, entry):
            cover_url = item.get("cover_url")
            if cover_url and cover_url != entry.thumb:
                await self.db.update_history_cover(entry.id, cover_url)
                return "cover_updated"
            return "already_valid"

        if item.get("exists"):
            logger.info(
                f"Title mismatch for {entry.media_id}: expected {entry.title!r}, "
                f"server has {item.get('title')!r}"
            )
        found = await adapter.search_by_title(entry.title)
        if not found:
            return "not_found"
        await self.db.update_history_cover(entry.id, found.get("cover_url"), media_id=found["id"])
        return "repaired"


async def purge_stopped_sessions(db: Database, retention_hours: int) -> dict:
    """Drop stopped session rows nobody has touched within the retention window."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    deleted = await db.purge_stopped_sessions(cutoff)
    if deleted:
        logger.info(f"Purged {deleted} stopped sessions")
    return {"deleted": deleted}


@dataclass
class Job:
    id: str
    name: str
    handler: JobHandler
    interval_seconds: float
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_result: Any = None
    last_duration: Optional[int] = None
    _task: Optional[asyncio.Task] = field(default=None, repr=False)


class JobRunner:
    """Run maintenance handlers on fixed intervals, never two runs of one job at once."""

    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self._running: set[str] = set()

    def register(self, job_id: str, name: str, handler: JobHandler, interval_seconds: float) -> None:
        self.jobs[job_id] = Job(job_id, name, handler, interval_seconds)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    async def run(self, job_id: str) -> dict:
        job = self.jobs.get(job_id)
        if job is None:
            raise ValueError(f"Unknown job: {job_id}")

        if job_id in self._running:
            logger.info(f"Job {job.name} already running, skipping")
            return {"skipped": True, "reason": "already running"}

        self._running.add(job_id)
        start = time.monotonic()
        duration = 0
        logger.info(f"Running job: {job.name}")
        try:
            result = await job.handler()
            duration = int((time.monotonic() - start) * 1000)
            job.last_status, job.last_result = "success", result
            logger.info(f"Job {job.name} completed in {duration}ms: {result}")
            return {"success": True, "result": result, "duration": duration}
        except Exception as e:
            duration = int((time.monotonic() - start) * 1000)
            job.last_status, job.last_result = "error", {"error": str(e)}
            logger.error(f"Job {job.name} failed: {e}")
            return {"success": False, "error": str(e), "duration": duration}
        finally:
            job.last_run = datetime.now(timezone.utc)
            job.last_duration = duration
            self._running.discard(job_id)

    async def _loop(self, job: Job) -> None:
        while True:
            await asyncio.sleep(job.interval_seconds)
            await self.run(job.id)

    def start(self) -> None:
        for job in self.jobs.values():
            if job._task is None or job._task.done():
                job._task = asyncio.create_task(self._loop(job))

    async def stop(self) -> None:
        for job in self.jobs.values():
            if job._task:
                job._task.cancel()
                try:
                    await job._task
                except asyncio.CancelledError:
                    pass
                job._task = None

    def status(self) -> list[dict]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "interval_seconds": job.interval_seconds,
                "running": job.id in self._running,
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "last_status": job.last_status,
                "last_duration": job.last_duration,
            }
            for job in self.jobs.values()
        ]

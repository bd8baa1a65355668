import logging
from datetime import datetime, timedelta, timezone

import httpx

from .adapters import AdapterRegistry, build_registry
from .config import Settings
from .database import Database
from .history import HistoryDeriver, is_excluded
from .models import HistoryRecord, ListeningSession

logger = logging.getLogger(__name__)


class HistoryImporter:
    """Import closed listening sessions that sources log on their own.

    Each imported row remembers the source session id in merged_session_ids,
    which is how re-imports and operator deletions are recognized.
    """

    def __init__(self, db: Database, registry: AdapterRegistry):
        self.db = db
        self.registry = registry
        self.history = HistoryDeriver(db)

    async def import_all(self, days: int = 30) -> int:
        """Import listening sessions from the last N days from every capable server."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        logger.info(f"Importing listening sessions from last {days} days...")

        imported = 0
        for adapter in self.registry:
            if not hasattr(adapter, "get_listening_sessions"):
                continue
            try:
                sessions = await adapter.get_listening_sessions(since)
            except (httpx.HTTPError, KeyError, ValueError) as e:
                logger.error(f"Failed to fetch listening sessions from {adapter.name}: {e}")
                continue
            if not sessions:
                logger.info(f"No listening sessions found on {adapter.name}")
                continue
            imported += await self._import_sessions(adapter.server_type, sessions)
        return imported

    async def _import_sessions(self, server_type: str, sessions: list[ListeningSession]) -> int:
        filters = await self.history.load_filters()
        imported = 0
        skipped = 0

        for listening in sessions:
            source_id = listening.source_session_id
            if await self.db.has_imported_session(source_id) or await self.db.is_import_ignored(
                source_id
            ):
                skipped += 1
                continue
            if not await self.history.is_history_enabled(listening.user_id):
                skipped += 1
                continue
            if is_excluded(listening.title, filters.exclusion_patterns):
                skipped += 1
                continue
            if listening.time_listening < filters.min_duration:
                skipped += 1
                continue

            percent = 0
            if listening.duration:
                percent = min(round(listening.position / listening.duration * 100), 100)

            record = HistoryRecord(
                session_id=None,
                server_type=server_type,
                user_id=listening.user_id,
                username=listening.username,
                media_type=listening.media_type,
                media_id=listening.media_id,
                title=listening.title,
                parent_title=listening.parent_title,
                watched_at=listening.updated_at,
                duration=listening.duration,
                percent_complete=percent,
                stream_duration=listening.time_listening,
                thumb=listening.thumb,
                merged_session_ids=source_id,
            )
            try:
                if await self.db.get_user(listening.user_id) is None:
                    await self.db.upsert_user(
                        listening.user_id, listening.username, server_type, None, listening.updated_at
                    )
                async with self.db.transaction():
                    await self.db.insert_history(record)
                    await self.db.add_user_play(listening.user_id, listening.time_listening)
                imported += 1
            except Exception as e:
                logger.warning(f"Failed to import listening session {source_id}: {e}")
                skipped += 1

        logger.info(f"Import complete: {imported} imported, {skipped} skipped")
        return imported


async def run_import(config: Settings, days: int = 30) -> int:
    """Run the import process."""
    db = Database(config.database_path_resolved)
    await db.connect()
    registry = build_registry(config)
    try:
        importer = HistoryImporter(db, registry)
        return await importer.import_all(days=days)
    finally:
        await registry.close()
        await db.close()

import logging
from datetime import datetime
from typing import Iterable, Mapping

from .config import Settings
from .database import Database
from .history import HistoryDeriver
from .models import PAUSED, Session

logger = logging.getLogger(__name__)


class StaleSweep:
    """Close sessions that paused too long or vanished from their server.

    Sources that decide liveness themselves normally report closures
    explicitly. Their rows are only closed here once the adapter has stopped
    reporting them for longer than its inactivity window, which covers rows
    left open by a previous process.
    """

    def __init__(
        self,
        db: Database,
        history: HistoryDeriver,
        paused_timeout_seconds: int = 30,
        missing_grace_seconds: int = 60,
        grace_server_types: Iterable[str] = ("plex",),
        self_managed_server_types: Iterable[str] = ("audiobookshelf",),
        self_managed_idle_seconds: int = 300,
    ):
        self.db = db
        self.history = history
        self.paused_timeout_seconds = paused_timeout_seconds
        self.missing_grace_seconds = missing_grace_seconds
        self.grace_server_types = set(grace_server_types)
        self.self_managed_server_types = set(self_managed_server_types)
        self.self_managed_idle_seconds = self_managed_idle_seconds

    @classmethod
    def from_settings(cls, db: Database, history: HistoryDeriver, config: Settings) -> "StaleSweep":
        return cls(
            db,
            history,
            paused_timeout_seconds=config.paused_timeout_seconds,
            missing_grace_seconds=config.missing_grace_seconds,
            grace_server_types=config.missing_grace_server_types_list,
            self_managed_server_types=config.self_managed_server_types_list,
            self_managed_idle_seconds=config.liveness_inactivity_seconds,
        )

    async def run(self, active_keys: Mapping[str, set[str]], now: datetime) -> list[Session]:
        """Sweep open sessions against the keys each server reported this cycle.

        `active_keys` maps server name to reported session keys. Servers missing
        from the mapping were not polled successfully and their sessions are
        only checked for the paused timeout.
        """
        closed: list[Session] = []
        sessions = await self.db.get_open_sessions()
        async with self.db.transaction():
            for session in sessions:
                try:
                    async with self.db.transaction():
                        if await self._check(session, active_keys, now):
                            closed.append(session)
                except Exception as e:
                    logger.error(f"Error sweeping session {session.session_key}: {e}")
        if closed:
            logger.info(f"Sweep closed {len(closed)} session(s)")
        return closed

    async def _check(self, session: Session, active_keys: Mapping[str, set[str]], now: datetime) -> bool:
        if session.server_type in self.self_managed_server_types:
            return await self._check_self_managed(session, active_keys, now)
        if session.state == PAUSED:
            paused_for = (now - session.updated_at).total_seconds()
            if paused_for > self.paused_timeout_seconds:
                logger.info(
                    f"Closing session paused for {int(paused_for)}s: "
                    f"{session.username} - {session.title}"
                )
                await self.history.close_segment(session, now)
                return True

        reported = active_keys.get(session.server_name)
        if reported is None or session.session_key in reported:
            return False

        if session.server_type in self.grace_server_types:
            if session.missing_since is None:
                logger.debug(f"Session missing, starting grace window: {session.session_key}")
                await self.db.set_missing_since(session.id, now)
                return False
            if (now - session.missing_since).total_seconds() <= self.missing_grace_seconds:
                return False

        logger.info(f"Closing stale session: {session.username} - {session.title}")
        await self.history.close_segment(session, now)
        return True

    async def _check_self_managed(
        self, session: Session, active_keys: Mapping[str, set[str]], now: datetime
    ) -> bool:
        reported = active_keys.get(session.server_name)
        if reported is None or session.session_key in reported:
            return False
        idle_for = (now - session.updated_at).total_seconds()
        if idle_for <= self.self_managed_idle_seconds:
            return False
        logger.info(
            f"Closing session unreported for {int(idle_for)}s: "
            f"{session.username} - {session.title}"
        )
        await self.history.close_segment(session, now)
        return True

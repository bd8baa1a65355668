import logging
import sqlite3
from datetime import datetime
from typing import Iterable, Optional

from .database import Database
from .models import AUDIO_CONTINUOUS_TYPES, PLAYING, STOPPED, HistoryFilters, HistoryRecord, Session

logger = logging.getLogger(__name__)

SETTING_KEYS = (
    "history_min_duration",
    "history_min_percent",
    "history_exclusion_patterns",
    "history_group_successive",
)

# Below this many accrued seconds the accrual is treated as unreliable.
MIN_RELIABLE_PLAYBACK = 5


def parse_exclusion_patterns(value: Optional[str]) -> list[str]:
    if value is None:
        return list(HistoryFilters().exclusion_patterns)
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid numeric setting {value!r}")
        return default
    return parsed if parsed >= 0 else default


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return default


def is_excluded(title: str, patterns: Iterable[str]) -> bool:
    lowered = (title or "").lower()
    return any(pattern in lowered for pattern in patterns)


def calculate_stream_duration(session: Session, now: datetime) -> int:
    """Seconds actually watched in a segment, never more than wall time or runtime."""
    duration = session.playback_time
    if (
        duration < MIN_RELIABLE_PLAYBACK
        and session.state == PLAYING
        and session.last_position_update is not None
    ):
        duration = int((now - session.last_position_update).total_seconds())

    wall_time = int((now - session.started_at).total_seconds())
    duration = min(duration, max(wall_time, 0))
    if session.duration:
        duration = min(duration, session.duration)
    return max(duration, 0)


def group_successive(records: list[HistoryRecord]) -> list[HistoryRecord]:
    """Fold runs of adjacent rows for the same user and item into one entry.

    Rows are expected newest first; the newest row of a run represents it.
    """
    grouped: list[HistoryRecord] = []
    for record in records:
        previous = grouped[-1] if grouped else None
        if previous and previous.user_id == record.user_id and previous.media_id == record.media_id:
            grouped[-1] = previous.model_copy(
                update={
                    "stream_duration": previous.stream_duration + record.stream_duration,
                    "percent_complete": max(previous.percent_complete, record.percent_complete),
                }
            )
        else:
            grouped.append(record)
    return grouped


class HistoryDeriver:
    """Decides whether a closed segment becomes a History row, and writes it."""

    def __init__(self, db: Database):
        self.db = db

    async def load_filters(self) -> HistoryFilters:
        """Read the history policy; missing or broken values fall back to defaults."""
        defaults = HistoryFilters()
        try:
            values = await self.db.get_settings(SETTING_KEYS)
        except Exception as e:
            logger.warning(f"Could not read history settings, using defaults: {e}")
            return defaults
        return HistoryFilters(
            min_duration=_parse_int(values.get("history_min_duration"), defaults.min_duration),
            min_percent=_parse_int(values.get("history_min_percent"), defaults.min_percent),
            exclusion_patterns=parse_exclusion_patterns(values.get("history_exclusion_patterns")),
            group_successive=_parse_bool(
                values.get("history_group_successive"), defaults.group_successive
            ),
        )

    async def is_history_enabled(self, user_id: str) -> bool:
        user = await self.db.get_user(user_id)
        return user is None or user.history_enabled

    async def rejection_reason(
        self, session: Session, stream_duration: int, filters: HistoryFilters
    ) -> Optional[str]:
        """Why a segment is not history-worthy, or None when it is."""
        if not await self.is_history_enabled(session.user_id):
            return "history disabled for user"
        if is_excluded(session.title, filters.exclusion_patterns):
            return "title excluded"
        if stream_duration < filters.min_duration:
            return f"watched {stream_duration}s < {filters.min_duration}s"
        if (
            session.media_type.lower() not in AUDIO_CONTINUOUS_TYPES
            and session.progress_percent < filters.min_percent
        ):
            return f"progress {session.progress_percent}% < {filters.min_percent}%"
        return None

    async def record_segment(self, session: Session, now: datetime) -> Optional[int]:
        """Write a closed segment to History if it qualifies. Safe to call twice."""
        filters = await self.load_filters()
        stream_duration = calculate_stream_duration(session, now)
        reason = await self.rejection_reason(session, stream_duration, filters)
        if reason:
            logger.info(f"Not recording history for {session.username} - {session.title}: {reason}")
            return None

        if await self.db.get_history_for_segment(session.segment_id, session.media_id):
            logger.debug(f"History already recorded for segment {session.segment_id}")
            return None

        record = HistoryRecord(
            session_id=session.segment_id,
            server_type=session.server_type,
            user_id=session.user_id,
            username=session.username,
            media_type=session.media_type,
            media_id=session.media_id,
            title=session.title,
            parent_title=session.parent_title,
            grandparent_title=session.grandparent_title,
            watched_at=session.started_at,
            duration=session.duration,
            percent_complete=session.progress_percent,
            stream_duration=stream_duration,
            thumb=session.thumb,
            ip_address=session.ip_address,
            location=session.location,
            city=session.city,
            region=session.region,
            country=session.country,
        )
        try:
            async with self.db.transaction():
                history_id = await self.db.insert_history(record)
                await self.db.add_user_play(session.user_id, stream_duration)
        except sqlite3.IntegrityError:
            logger.debug(f"History already recorded for segment {session.segment_id}")
            return None

        logger.info(
            f"History recorded: {session.username} - {session.title} "
            f"({stream_duration}s, {session.progress_percent}%)"
        )
        return history_id

    async def close_segment(self, session: Session, now: datetime) -> Session:
        """Evaluate a segment for History, then mark its row stopped."""
        await self.record_segment(session, now)
        closed = session.model_copy(
            update={"state": STOPPED, "stopped_at": now, "updated_at": now, "missing_since": None}
        )
        await self.db.update_session(closed)
        return closed

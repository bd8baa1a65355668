import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Optional

from .database import Database
from .geolocation import Geolocator
from .history import HistoryDeriver
from .models import BUFFERING, PAUSED, PLAYING, STOPPED, Activity, GeoInfo, Session

logger = logging.getLogger(__name__)

RESUME_STATES = (PLAYING, BUFFERING)


class SessionReconciler:
    """Merge one normalized activity into the stored session state.

    Each external session key owns a single row. A row holds one segment at a
    time: a continuous attempt at one item. Media changes and resumes after a
    close start a new segment in the same row.
    """

    def __init__(
        self,
        db: Database,
        history: HistoryDeriver,
        geolocator: Optional[Geolocator] = None,
    ):
        self.db = db
        self.history = history
        self.geolocator = geolocator

    async def apply(
        self, activity: Activity, server_type: str, server_name: str, now: datetime
    ) -> Optional[Session]:
        """Apply one activity; errors are logged and the activity skipped."""
        session = None
        try:
            session = await self._apply(activity, server_type, server_name, now)
        except sqlite3.IntegrityError as e:
            logger.warning(f"Skipping activity {activity.session_key}, conflicting write: {e}")
        except Exception as e:
            logger.error(f"Error reconciling activity {activity.session_key}: {e}")

        try:
            await self.db.upsert_user(
                activity.user_id, activity.username, server_type, activity.user_thumb, now
            )
        except Exception as e:
            logger.error(f"Error updating user {activity.user_id}: {e}")
        return session

    async def _apply(
        self, activity: Activity, server_type: str, server_name: str, now: datetime
    ) -> Optional[Session]:
        existing = await self.db.get_session(activity.session_key)

        if existing is None:
            if activity.state == STOPPED:
                return None
            session = await self._new_segment(activity, server_type, server_name, now)
            session.id = await self.db.create_session(session)
            logger.info(f"Session started: {session.username} - {session.title} ({server_name})")
            return session

        if not existing.is_open:
            if activity.state not in RESUME_STATES:
                logger.debug(f"Discarding echo for stopped session {activity.session_key}")
                return None
            session = await self._new_segment(
                activity, server_type, server_name, now, row_id=existing.id
            )
            await self.db.update_session(session)
            logger.info(f"Session resumed as new viewing: {session.username} - {session.title}")
            return session

        if existing.media_id != activity.media_id:
            return await self._change_media(existing, activity, server_type, server_name, now)

        return await self._update_open(existing, activity, now)

    async def _change_media(
        self,
        existing: Session,
        activity: Activity,
        server_type: str,
        server_name: str,
        now: datetime,
    ) -> Session:
        if activity.state == STOPPED:
            logger.info(f"Session stopped: {existing.username} - {existing.title}")
            return await self.history.close_segment(existing, now)

        await self.history.record_segment(existing, now)
        session = await self._new_segment(
            activity, server_type, server_name, now, row_id=existing.id
        )
        await self.db.update_session(session)
        logger.info(
            f"Media changed for {session.username}: {existing.title} -> {session.title}"
        )
        return session

    async def _update_open(self, existing: Session, activity: Activity, now: datetime) -> Session:
        previous_state = existing.state
        playback_time = existing.playback_time
        last_position_update = now if activity.state == PLAYING else existing.last_position_update
        if previous_state == PLAYING and activity.state == PLAYING and existing.last_position_update:
            # Credit whole seconds only; the remainder carries into the next update.
            credited = max(int((now - existing.last_position_update).total_seconds()), 0)
            playback_time += credited
            last_position_update = existing.last_position_update + timedelta(seconds=credited)

        wall_time = int((now - existing.started_at).total_seconds())
        playback_time = min(playback_time, max(wall_time, 0))
        duration = activity.duration or existing.duration
        if duration:
            playback_time = min(playback_time, duration)

        # Staying paused leaves updated_at alone so the pause can time out.
        still_paused = activity.state == PAUSED and previous_state == PAUSED
        update = activity.model_dump(exclude={"session_key", "state"})
        update.update(
            {
                "state": activity.state if activity.state != STOPPED else previous_state,
                "duration": duration,
                "playback_time": playback_time,
                "paused_counter": existing.paused_counter
                + (1 if previous_state == PLAYING and activity.state == PAUSED else 0),
                "last_position_update": last_position_update,
                "updated_at": existing.updated_at if still_paused else now,
                "missing_since": None,
            }
        )
        if activity.ip_address != existing.ip_address:
            update.update(self._geo_fields(await self._lookup(activity.ip_address)))
        session = existing.model_copy(update=update)

        if activity.state == STOPPED:
            logger.info(f"Session stopped: {session.username} - {session.title}")
            return await self.history.close_segment(session, now)

        await self.db.update_session(session)
        return session

    async def _new_segment(
        self,
        activity: Activity,
        server_type: str,
        server_name: str,
        now: datetime,
        row_id: Optional[int] = None,
    ) -> Session:
        geo = await self._lookup(activity.ip_address)
        return Session(
            id=row_id,
            segment_id=str(uuid.uuid4()),
            server_type=server_type,
            server_name=server_name,
            playback_time=0,
            paused_counter=0,
            last_position_update=now if activity.state == PLAYING else None,
            started_at=now,
            stopped_at=None,
            updated_at=now,
            missing_since=None,
            **self._geo_fields(geo),
            **activity.model_dump(),
        )

    async def _lookup(self, ip_address: Optional[str]) -> GeoInfo:
        if not self.geolocator or not ip_address:
            return GeoInfo()
        try:
            return await self.geolocator.lookup(ip_address)
        except Exception as e:
            logger.warning(f"Geolocation failed for {ip_address}: {e}")
            return GeoInfo()

    @staticmethod
    def _geo_fields(geo: GeoInfo) -> dict:
        return {"city": geo.city, "region": geo.region, "country": geo.country}

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Tracked:
    position: float
    last_checked: datetime
    last_progress_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None


class LivenessTracker:
    """Infer whether a reported session is genuinely progressing.

    Used for sources that keep sessions "open" long after the listener has
    stopped. A session counts as active when its position advanced since the
    previous poll, or when progress or a push event was seen within the
    inactivity threshold.
    """

    def __init__(self, inactivity_threshold_seconds: int = 300):
        self.threshold = timedelta(seconds=inactivity_threshold_seconds)
        self._tracked: dict[str, _Tracked] = {}
        self._event_active: set[str] = set()

    def __contains__(self, session_key: str) -> bool:
        return session_key in self._tracked

    def observe(self, session_key: str, position: float, now: datetime) -> bool:
        """Record a polled position and return whether the session is active."""
        tracked = self._tracked.get(session_key)
        if tracked is None:
            # Discovered mid-pause looks identical to discovered mid-play, so
            # only a prior push event may vouch for it.
            active_by_event = session_key in self._event_active
            self._tracked[session_key] = _Tracked(
                position=position,
                last_checked=now,
                last_event_at=now if active_by_event else None,
            )
            return active_by_event

        progressed = position > tracked.position
        if progressed:
            tracked.last_progress_at = now
        tracked.position = position
        tracked.last_checked = now

        if progressed:
            return True
        last_activity = max(
            (t for t in (tracked.last_progress_at, tracked.last_event_at) if t is not None),
            default=None,
        )
        if last_activity is None:
            return False
        return now - last_activity < self.threshold

    def mark_event(self, session_key: str, now: datetime, position: float = 0) -> None:
        """A push event reported progress or a start for this session."""
        self._event_active.add(session_key)
        tracked = self._tracked.get(session_key)
        if tracked:
            tracked.last_event_at = now
        else:
            self._tracked[session_key] = _Tracked(
                position=position,
                last_checked=now,
                last_event_at=now,
            )

    def mark_stopped(self, session_key: str) -> None:
        """A push event reported the session closed."""
        self._event_active.discard(session_key)
        tracked = self._tracked.get(session_key)
        if tracked:
            tracked.last_event_at = None
            tracked.last_progress_at = None

    def prune(self, reported_keys: Iterable[str]) -> list[str]:
        """Forget sessions the source no longer reports; return the forgotten keys."""
        reported = set(reported_keys)
        removed = [key for key in self._tracked if key not in reported]
        for key in removed:
            logger.debug(f"Removing stale session from tracker: {key}")
            del self._tracked[key]
            self._event_active.discard(key)
        return removed

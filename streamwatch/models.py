from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

SessionState = Literal["playing", "paused", "buffering", "stopped"]

PLAYING = "playing"
PAUSED = "paused"
BUFFERING = "buffering"
STOPPED = "stopped"
OPEN_STATES = (PLAYING, PAUSED, BUFFERING)

# Consumed over many short sittings, so percent thresholds do not apply.
AUDIO_CONTINUOUS_TYPES = ("audiobook", "track", "book")

LOCAL_NETWORK = "Local Network"


class Activity(BaseModel):
    """One adapter's normalized snapshot of a single playback attempt."""

    session_key: str
    user_id: str
    username: str
    user_thumb: Optional[str] = None
    media_type: str
    media_id: str
    title: str
    parent_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    year: Optional[int] = None
    thumb: Optional[str] = None
    state: SessionState
    progress_percent: int = 0
    duration: Optional[int] = None
    position: int = 0
    bitrate: Optional[str] = None
    transcoding: bool = False
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    container: Optional[str] = None
    resolution: Optional[str] = None
    client_name: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None


class GeoInfo(BaseModel):
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None


class Session(BaseModel):
    id: Optional[int] = None
    session_key: str
    segment_id: str
    server_type: str
    server_name: str = ""
    user_id: str
    username: str
    user_thumb: Optional[str] = None
    media_type: str
    media_id: str
    title: str
    parent_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    year: Optional[int] = None
    thumb: Optional[str] = None
    state: SessionState
    progress_percent: int = 0
    duration: Optional[int] = None
    position: int = 0
    playback_time: int = 0
    paused_counter: int = 0
    last_position_update: Optional[datetime] = None
    started_at: datetime
    stopped_at: Optional[datetime] = None
    updated_at: datetime
    missing_since: Optional[datetime] = None
    bitrate: Optional[str] = None
    transcoding: bool = False
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    container: Optional[str] = None
    resolution: Optional[str] = None
    client_name: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state != STOPPED


class HistoryRecord(BaseModel):
    """A durable record that a user watched or listened to an item."""

    id: Optional[int] = None
    session_id: Optional[str] = None
    server_type: str
    user_id: str
    username: str
    media_type: str
    media_id: str
    title: str
    parent_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    watched_at: datetime
    duration: Optional[int] = None
    percent_complete: int = 0
    stream_duration: int = 0
    thumb: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    merged_session_ids: Optional[str] = None


class User(BaseModel):
    id: str
    server_type: str
    username: str
    thumb: Optional[str] = None
    history_enabled: bool = True
    total_plays: int = 0
    total_duration: int = 0
    last_seen: Optional[datetime] = None


class HistoryFilters(BaseModel):
    """History-worthiness thresholds read from the settings table."""

    min_duration: int = 30
    min_percent: int = 10
    exclusion_patterns: list[str] = ["theme", "preview", "trailer"]
    group_successive: bool = True


class ListeningSession(BaseModel):
    """A closed session from a source's own listening log, used for retroactive import."""

    source_session_id: str
    user_id: str
    username: str
    media_type: str
    media_id: str
    title: str
    parent_title: Optional[str] = None
    duration: Optional[int] = None
    position: int = 0
    time_listening: int = 0
    thumb: Optional[str] = None
    updated_at: datetime

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

import aiosqlite

from .config import settings
from .models import GeoInfo, HistoryRecord, Session, User

SESSION_COLUMNS = (
    "session_key",
    "segment_id",
    "server_type",
    "server_name",
    "user_id",
    "username",
    "user_thumb",
    "media_type",
    "media_id",
    "title",
    "parent_title",
    "grandparent_title",
    "season_number",
    "episode_number",
    "year",
    "thumb",
    "state",
    "progress_percent",
    "duration",
    "position",
    "playback_time",
    "paused_counter",
    "last_position_update",
    "started_at",
    "stopped_at",
    "updated_at",
    "missing_since",
    "bitrate",
    "transcoding",
    "video_codec",
    "audio_codec",
    "container",
    "resolution",
    "client_name",
    "device_name",
    "ip_address",
    "location",
    "city",
    "region",
    "country",
)

HISTORY_COLUMNS = (
    "session_id",
    "server_type",
    "user_id",
    "username",
    "media_type",
    "media_id",
    "title",
    "parent_title",
    "grandparent_title",
    "watched_at",
    "duration",
    "percent_complete",
    "stream_duration",
    "thumb",
    "ip_address",
    "location",
    "city",
    "region",
    "country",
    "merged_session_ids",
)

_DATETIME_FIELDS = {
    "last_position_update",
    "started_at",
    "stopped_at",
    "updated_at",
    "missing_since",
    "watched_at",
    "last_seen",
}


def _to_db(name: str, value):
    if name in _DATETIME_FIELDS and isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class Database:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or settings.database_path_resolved
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None
        self._savepoints = 0

    async def connect(self) -> None:
        """Connect to the database and create tables if needed."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._create_tables()
        await self._ensure_columns()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Database"]:
        """Run the enclosed writes as one all-or-nothing unit.

        A transaction opened while the current task already holds one becomes
        a savepoint, so its failure only undoes its own writes.
        """
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            self._savepoints += 1
            name = f"sp_{self._savepoints}"
            await self.conn.execute(f"SAVEPOINT {name}")
            try:
                yield self
                await self.conn.execute(f"RELEASE SAVEPOINT {name}")
            except BaseException:
                await self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                await self.conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            return

        async with self._write_lock:
            self._tx_owner = asyncio.current_task()
            await self.conn.execute("BEGIN")
            try:
                yield self
                await self.conn.commit()
            except BaseException:
                await self.conn.rollback()
                raise
            finally:
                self._tx_owner = None

    async def _write(self, sql: str, params: Iterable = ()) -> aiosqlite.Cursor:
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            return await self.conn.execute(sql, tuple(params))
        async with self._write_lock:
            try:
                cursor = await self.conn.execute(sql, tuple(params))
            except BaseException:
                if self.conn.in_transaction:
                    await self.conn.rollback()
                raise
            await self.conn.commit()
            return cursor

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_key TEXT UNIQUE NOT NULL,
                segment_id TEXT NOT NULL,
                server_type TEXT NOT NULL,
                server_name TEXT,
                user_id TEXT NOT NULL,
                username TEXT NOT NULL,
                user_thumb TEXT,
                media_type TEXT NOT NULL,
                media_id TEXT NOT NULL,
                title TEXT NOT NULL,
                parent_title TEXT,
                grandparent_title TEXT,
                season_number INTEGER,
                episode_number INTEGER,
                year INTEGER,
                thumb TEXT,
                state TEXT NOT NULL,
                progress_percent INTEGER DEFAULT 0,
                duration INTEGER,
                position INTEGER DEFAULT 0,
                playback_time INTEGER DEFAULT 0,
                paused_counter INTEGER DEFAULT 0,
                last_position_update TIMESTAMP,
                started_at TIMESTAMP NOT NULL,
                stopped_at TIMESTAMP,
                updated_at TIMESTAMP NOT NULL,
                missing_since TIMESTAMP,
                bitrate TEXT,
                transcoding BOOLEAN DEFAULT FALSE,
                video_codec TEXT,
                audio_codec TEXT,
                container TEXT,
                resolution TEXT,
                client_name TEXT,
                device_name TEXT,
                ip_address TEXT,
                location TEXT,
                city TEXT,
                region TEXT,
                country TEXT
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                server_type TEXT NOT NULL,
                user_id TEXT NOT NULL,
                username TEXT NOT NULL,
                media_type TEXT NOT NULL,
                media_id TEXT NOT NULL,
                title TEXT NOT NULL,
                parent_title TEXT,
                grandparent_title TEXT,
                watched_at TIMESTAMP NOT NULL,
                duration INTEGER,
                percent_complete INTEGER DEFAULT 0,
                stream_duration INTEGER DEFAULT 0,
                thumb TEXT,
                ip_address TEXT,
                location TEXT,
                city TEXT,
                region TEXT,
                country TEXT,
                merged_session_ids TEXT
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                server_type TEXT NOT NULL,
                username TEXT NOT NULL,
                thumb TEXT,
                history_enabled BOOLEAN DEFAULT TRUE,
                total_plays INTEGER DEFAULT 0,
                total_duration INTEGER DEFAULT 0,
                last_seen TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS ip_cache (
                ip_address TEXT PRIMARY KEY,
                city TEXT,
                region TEXT,
                country TEXT,
                country_code TEXT,
                lookup_at TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS ignored_import_sessions (
                source_session_id TEXT PRIMARY KEY,
                title TEXT,
                ignored_at TIMESTAMP
            )
        """)
        await self.conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state)")
        await self.conn.execute("CREATE INDEX IF NOT EXISTS idx_history_user ON history(user_id)")
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_watched ON history(watched_at)"
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_media_user ON history(media_id, user_id)"
        )
        await self.conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_history_segment_media
            ON history(session_id, media_id)
            """
        )
        await self.conn.commit()

    async def _ensure_columns(self) -> None:
        """Add missing columns for backwards-compatible upgrades."""
        upgrades = {
            "sessions": {"missing_since": "TIMESTAMP"},
            "history": {"merged_session_ids": "TEXT"},
        }
        added = False
        for table, columns in upgrades.items():
            cursor = await self.conn.execute(f"PRAGMA table_info({table})")
            rows = await cursor.fetchall()
            existing = {row["name"] for row in rows}
            for column, definition in columns.items():
                if column not in existing:
                    await self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                    added = True
        if added:
            await self.conn.commit()

    # Sessions

    async def create_session(self, session: Session) -> int:
        """Insert a new session row.

        Raises sqlite3.IntegrityError when the session key is already taken.
        """
        placeholders = ", ".join("?" for _ in SESSION_COLUMNS)
        cursor = await self._write(
            f"INSERT INTO sessions ({', '.join(SESSION_COLUMNS)}) VALUES ({placeholders})",
            [_to_db(name, getattr(session, name)) for name in SESSION_COLUMNS],
        )
        return cursor.lastrowid

    async def update_session(self, session: Session) -> None:
        """Write every mutable column of a session back by its surrogate id."""
        if session.id is None:
            raise ValueError("Cannot update a session without an id")
        assignments = ", ".join(f"{name} = ?" for name in SESSION_COLUMNS)
        await self._write(
            f"UPDATE sessions SET {assignments} WHERE id = ?",
            [_to_db(name, getattr(session, name)) for name in SESSION_COLUMNS] + [session.id],
        )

    async def get_session(self, session_key: str) -> Optional[Session]:
        """Get the session row for an external session key, open or stopped."""
        cursor = await self.conn.execute(
            "SELECT * FROM sessions WHERE session_key = ?",
            (session_key,),
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_session(row)
        return None

    async def get_open_sessions(self) -> list[Session]:
        """Get all sessions that are not stopped, newest first."""
        cursor = await self.conn.execute(
            """
            SELECT * FROM sessions
            WHERE state != 'stopped'
            ORDER BY started_at DESC
            """
        )
        rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def set_missing_since(self, session_id: int, missing_since: Optional[datetime]) -> None:
        await self._write(
            "UPDATE sessions SET missing_since = ? WHERE id = ?",
            (missing_since.isoformat() if missing_since else None, session_id),
        )

    async def purge_stopped_sessions(self, before: datetime) -> int:
        """Delete stopped session rows last touched before the cutoff."""
        cursor = await self._write(
            "DELETE FROM sessions WHERE state = 'stopped' AND updated_at < ?",
            (before.isoformat(),),
        )
        return cursor.rowcount

    # History

    async def get_history_for_segment(
        self, segment_id: str, media_id: str
    ) -> Optional[HistoryRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM history WHERE session_id = ? AND media_id = ?",
            (segment_id, media_id),
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_history(row)
        return None

    async def insert_history(self, record: HistoryRecord) -> int:
        placeholders = ", ".join("?" for _ in HISTORY_COLUMNS)
        cursor = await self._write(
            f"INSERT INTO history ({', '.join(HISTORY_COLUMNS)}) VALUES ({placeholders})",
            [_to_db(name, getattr(record, name)) for name in HISTORY_COLUMNS],
        )
        return cursor.lastrowid

    async def get_history(
        self, limit: int = 50, user_id: Optional[str] = None
    ) -> list[HistoryRecord]:
        """Get history rows, most recently watched first."""
        if user_id:
            cursor = await self.conn.execute(
                "SELECT * FROM history WHERE user_id = ? ORDER BY watched_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            )
        else:
            cursor = await self.conn.execute(
                "SELECT * FROM history ORDER BY watched_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_history(row) for row in rows]

    async def find_duplicate_groups(self, server_types: list[str]) -> list[tuple[str, str]]:
        """Find (media_id, user_id) pairs with more than one history row."""
        if not server_types:
            return []
        placeholders = ", ".join("?" for _ in server_types)
        cursor = await self.conn.execute(
            f"""
            SELECT media_id, user_id, COUNT(*) as count
            FROM history
            WHERE server_type IN ({placeholders})
            GROUP BY media_id, user_id
            HAVING COUNT(*) > 1
            """,
            server_types,
        )
        rows = await cursor.fetchall()
        return [(row["media_id"], row["user_id"]) for row in rows]

    async def count_history(self) -> int:
        cursor = await self.conn.execute("SELECT COUNT(*) AS count FROM history")
        row = await cursor.fetchone()
        return row["count"]

    async def get_history_entry(self, history_id: int) -> Optional[HistoryRecord]:
        cursor = await self.conn.execute("SELECT * FROM history WHERE id = ?", (history_id,))
        row = await cursor.fetchone()
        if row:
            return self._row_to_history(row)
        return None

    async def get_history_group(
        self, media_id: str, user_id: str, server_types: list[str]
    ) -> list[HistoryRecord]:
        placeholders = ", ".join("?" for _ in server_types)
        cursor = await self.conn.execute(
            f"""
            SELECT * FROM history
            WHERE media_id = ? AND user_id = ? AND server_type IN ({placeholders})
            ORDER BY watched_at DESC, id DESC
            """,
            (media_id, user_id, *server_types),
        )
        rows = await cursor.fetchall()
        return [self._row_to_history(row) for row in rows]

    async def update_history_totals(
        self,
        history_id: int,
        stream_duration: int,
        percent_complete: int,
        merged_session_ids: Optional[str],
    ) -> None:
        await self._write(
            """
            UPDATE history
            SET stream_duration = ?, percent_complete = ?, merged_session_ids = ?
            WHERE id = ?
            """,
            (stream_duration, percent_complete, merged_session_ids, history_id),
        )

    async def get_history_for_server_type(self, server_type: str) -> list[HistoryRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM history WHERE server_type = ? ORDER BY id", (server_type,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_history(row) for row in rows]

    async def update_history_cover(
        self, history_id: int, thumb: Optional[str], media_id: Optional[str] = None
    ) -> None:
        """Point a history row at a new cover, and optionally at a re-found item."""
        if media_id is None:
            await self._write("UPDATE history SET thumb = ? WHERE id = ?", (thumb, history_id))
        else:
            await self._write(
                "UPDATE history SET thumb = ?, media_id = ? WHERE id = ?",
                (thumb, media_id, history_id),
            )

    async def delete_history(self, history_ids: list[int]) -> int:
        if not history_ids:
            return 0
        placeholders = ", ".join("?" for _ in history_ids)
        cursor = await self._write(
            f"DELETE FROM history WHERE id IN ({placeholders})",
            history_ids,
        )
        return cursor.rowcount

    async def delete_history_entry(self, history_id: int) -> bool:
        """Delete one history row, remembering its imported sessions so they stay deleted."""
        record = await self.get_history_entry(history_id)
        if record is None:
            return False
        async with self.transaction():
            if record.merged_session_ids:
                for source_id in record.merged_session_ids.split(","):
                    await self.ignore_import_session(source_id, record.title)
            await self.delete_history([history_id])
        return True

    async def has_imported_session(self, source_session_id: str) -> bool:
        cursor = await self.conn.execute(
            """
            SELECT 1 FROM history
            WHERE (',' || merged_session_ids || ',') LIKE ?
            LIMIT 1
            """,
            (f"%,{source_session_id},%",),
        )
        return await cursor.fetchone() is not None

    async def ignore_import_session(self, source_session_id: str, title: Optional[str]) -> None:
        await self._write(
            """
            INSERT OR IGNORE INTO ignored_import_sessions (source_session_id, title, ignored_at)
            VALUES (?, ?, ?)
            """,
            (source_session_id, title, datetime.now().astimezone().isoformat()),
        )

    async def is_import_ignored(self, source_session_id: str) -> bool:
        cursor = await self.conn.execute(
            "SELECT 1 FROM ignored_import_sessions WHERE source_session_id = ?",
            (source_session_id,),
        )
        return await cursor.fetchone() is not None

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        cursor = await self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        if row:
            return self._row_to_user(row)
        return None

    async def upsert_user(
        self,
        user_id: str,
        username: str,
        server_type: str,
        thumb: Optional[str],
        last_seen: datetime,
    ) -> None:
        """Record that a user was seen, creating the aggregate row on first sight."""
        await self._write(
            """
            INSERT INTO users (id, server_type, username, thumb, last_seen)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = excluded.username,
                thumb = excluded.thumb,
                last_seen = excluded.last_seen
            """,
            (user_id, server_type, username, thumb, last_seen.isoformat()),
        )

    async def add_user_play(self, user_id: str, stream_duration: int) -> None:
        await self._write(
            """
            UPDATE users
            SET total_plays = total_plays + 1,
                total_duration = total_duration + ?
            WHERE id = ?
            """,
            (stream_duration, user_id),
        )

    async def set_user_history_enabled(self, user_id: str, enabled: bool) -> None:
        await self._write(
            "UPDATE users SET history_enabled = ? WHERE id = ?",
            (enabled, user_id),
        )

    # Settings

    async def get_settings(self, keys: Iterable[str]) -> dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        cursor = await self.conn.execute(
            f"SELECT key, value FROM settings WHERE key IN ({placeholders})",
            keys,
        )
        rows = await cursor.fetchall()
        return {row["key"]: row["value"] for row in rows}

    async def set_setting(self, key: str, value: str) -> None:
        await self._write(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    # Geolocation cache

    async def get_cached_geo(self, ip_address: str) -> Optional[GeoInfo]:
        cursor = await self.conn.execute(
            "SELECT * FROM ip_cache WHERE ip_address = ?",
            (ip_address,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return GeoInfo(
            city=row["city"],
            region=row["region"],
            country=row["country"],
            country_code=row["country_code"],
        )

    async def cache_geo(self, ip_address: str, geo: GeoInfo, lookup_at: datetime) -> None:
        await self._write(
            """
            INSERT INTO ip_cache (ip_address, city, region, country, country_code, lookup_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(ip_address) DO UPDATE SET
                city = excluded.city,
                region = excluded.region,
                country = excluded.country,
                country_code = excluded.country_code,
                lookup_at = excluded.lookup_at
            """,
            (
                ip_address,
                geo.city,
                geo.region,
                geo.country,
                geo.country_code,
                lookup_at.isoformat(),
            ),
        )

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        """Convert a database row to a Session model."""
        data = {name: row[name] for name in SESSION_COLUMNS}
        for name in SESSION_COLUMNS:
            if name in _DATETIME_FIELDS:
                data[name] = _parse_dt(data[name])
        data["transcoding"] = bool(data["transcoding"])
        data["playback_time"] = data["playback_time"] or 0
        data["paused_counter"] = data["paused_counter"] or 0
        data["position"] = data["position"] or 0
        data["progress_percent"] = data["progress_percent"] or 0
        data["server_name"] = data["server_name"] or ""
        return Session(id=row["id"], **data)

    def _row_to_history(self, row: aiosqlite.Row) -> HistoryRecord:
        data = {name: row[name] for name in HISTORY_COLUMNS}
        data["watched_at"] = _parse_dt(data["watched_at"])
        data["percent_complete"] = data["percent_complete"] or 0
        data["stream_duration"] = data["stream_duration"] or 0
        return HistoryRecord(id=row["id"], **data)

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        return User(
            id=row["id"],
            server_type=row["server_type"],
            username=row["username"],
            thumb=row["thumb"],
            history_enabled=bool(row["history_enabled"]),
            total_plays=row["total_plays"] or 0,
            total_duration=row["total_duration"] or 0,
            last_seen=_parse_dt(row["last_seen"]),
        )

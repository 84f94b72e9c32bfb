"""
SQLite Store
============

ChannelStore and DetectionConfigStore backed by a local SQLite file.

Schema:
    channels                  id, username
    object_detection_configs  one row per channel
    object_detection_rules    UNIQUE(config_id, object_class)
    object_detection_logs     one row per sent notification
    schema_meta               schema version

Design Rules:
    - One connection, guarded by a lock, used from worker threads
    - Every public coroutine runs its SQL via asyncio.to_thread
    - sqlite3.Error propagates; callers decide whether it is fatal
"""

import asyncio
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, List, Optional

from streamwatch_agent.models.channel import Channel, DetectionConfig, DetectionRule
from streamwatch_agent.models.detection import DetectionEvent
from streamwatch_agent.stores.base import CONFIG_UPDATABLE_FIELDS


logger = logging.getLogger(__name__)


# Schema version - increment when schema changes
EXPECTED_SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    schema_version INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS channels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS object_detection_configs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id INTEGER NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
    is_enabled INTEGER DEFAULT 0,
    stream_url TEXT,
    frame_interval_ms INTEGER,
    max_concurrent_detections INTEGER DEFAULT 1,
    cooldown_seconds INTEGER DEFAULT 30,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(channel_id)
);

CREATE TABLE IF NOT EXISTS object_detection_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL REFERENCES object_detection_configs(id) ON DELETE CASCADE,
    object_class TEXT NOT NULL,
    min_confidence REAL DEFAULT 0.5,
    cooldown_seconds INTEGER,
    message_template TEXT,
    is_enabled INTEGER DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(config_id, object_class)
);

CREATE TABLE IF NOT EXISTS object_detection_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL REFERENCES object_detection_configs(id) ON DELETE CASCADE,
    rule_id INTEGER REFERENCES object_detection_rules(id) ON DELETE SET NULL,
    object_class TEXT NOT NULL,
    confidence REAL NOT NULL,
    message_sent TEXT,
    detected_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_object_detection_rules_config
    ON object_detection_rules(config_id);
CREATE INDEX IF NOT EXISTS idx_object_detection_logs_config
    ON object_detection_logs(config_id);
CREATE INDEX IF NOT EXISTS idx_object_detection_logs_detected_at
    ON object_detection_logs(detected_at);
"""


def _row_to_config(row: sqlite3.Row) -> DetectionConfig:
    return DetectionConfig(
        id=row["id"],
        channel_id=row["channel_id"],
        stream_url=row["stream_url"],
        frame_interval_ms=row["frame_interval_ms"],
        cooldown_seconds=row["cooldown_seconds"],
        is_enabled=bool(row["is_enabled"]),
    )


def _row_to_rule(row: sqlite3.Row) -> DetectionRule:
    return DetectionRule(
        id=row["id"],
        config_id=row["config_id"],
        object_class=row["object_class"],
        min_confidence=row["min_confidence"],
        cooldown_seconds=row["cooldown_seconds"],
        message_template=row["message_template"],
        is_enabled=bool(row["is_enabled"]),
    )


class SqliteStore:
    """
    SQLite-backed channel and detection-config store.

    Example:
        store = SqliteStore("data/streamwatch.db")
        store.initialize()
        channel = store.create_channel("somestreamer")
        config = store.create_config(channel.id, stream_url=url)
    """

    def __init__(self, database_path: str) -> None:
        """
        Initialize the store.

        Args:
            database_path: Path to the SQLite file (":memory:" allowed)
        """
        self.database_path = database_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        db_dir = os.path.dirname(database_path)
        if db_dir and database_path != ":memory:":
            os.makedirs(db_dir, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.database_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def initialize(self) -> None:
        """Create tables if missing and record the schema version."""
        with self._lock:
            conn = self._get_connection()
            conn.executescript(_SCHEMA)
            row = conn.execute("SELECT schema_version FROM schema_meta WHERE id = 1").fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_meta (id, schema_version) VALUES (1, ?)",
                    (EXPECTED_SCHEMA_VERSION,),
                )
                logger.info(f"Created schema version {EXPECTED_SCHEMA_VERSION}")
            elif row["schema_version"] != EXPECTED_SCHEMA_VERSION:
                logger.warning(
                    f"Schema version mismatch: found {row['schema_version']}, "
                    f"expected {EXPECTED_SCHEMA_VERSION}"
                )
            conn.commit()

        logger.info(f"Database initialized at {self.database_path}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -------------------------------------------------------------------------
    # Sync helpers (run under the lock, usually in a worker thread)
    # -------------------------------------------------------------------------

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._get_connection().execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._get_connection().execute(sql, params).fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        """Run a write and commit. Returns lastrowid."""
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.lastrowid

    # -------------------------------------------------------------------------
    # Seeding / admin (sync)
    # -------------------------------------------------------------------------

    def create_channel(self, username: str) -> Channel:
        channel_id = self._execute("INSERT INTO channels (username) VALUES (?)", (username,))
        return Channel(id=channel_id, username=username)

    def create_config(
        self,
        channel_id: int,
        stream_url: Optional[str] = None,
        frame_interval_ms: Optional[int] = None,
        cooldown_seconds: int = 30,
        is_enabled: bool = False,
    ) -> DetectionConfig:
        config_id = self._execute(
            """
            INSERT INTO object_detection_configs
                (channel_id, stream_url, frame_interval_ms, cooldown_seconds, is_enabled)
            VALUES (?, ?, ?, ?, ?)
            """,
            (channel_id, stream_url, frame_interval_ms, cooldown_seconds, int(is_enabled)),
        )
        row = self._fetchone("SELECT * FROM object_detection_configs WHERE id = ?", (config_id,))
        return _row_to_config(row)

    def create_rule(
        self,
        config_id: int,
        object_class: str,
        min_confidence: float = 0.5,
        message_template: Optional[str] = None,
        cooldown_seconds: Optional[int] = None,
        is_enabled: bool = True,
    ) -> DetectionRule:
        # Validate through the model before touching the table
        candidate = DetectionRule(
            id=0,
            config_id=config_id,
            object_class=object_class,
            min_confidence=min_confidence,
            message_template=message_template,
            cooldown_seconds=cooldown_seconds,
            is_enabled=is_enabled,
        )
        rule_id = self._execute(
            """
            INSERT INTO object_detection_rules
                (config_id, object_class, min_confidence, cooldown_seconds,
                 message_template, is_enabled)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                config_id,
                candidate.object_class,
                candidate.min_confidence,
                candidate.cooldown_seconds,
                candidate.message_template,
                int(candidate.is_enabled),
            ),
        )
        return candidate.model_copy(update={"id": rule_id})

    def count_detection_logs(self, config_id: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM object_detection_logs WHERE config_id = ?",
            (config_id,),
        )
        return row["n"]

    # -------------------------------------------------------------------------
    # ChannelStore
    # -------------------------------------------------------------------------

    async def find_by_id(self, channel_id: int) -> Optional[Channel]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT id, username FROM channels WHERE id = ?", (channel_id,)
        )
        return Channel(id=row["id"], username=row["username"]) if row else None

    # -------------------------------------------------------------------------
    # DetectionConfigStore
    # -------------------------------------------------------------------------

    async def get_config(self, channel_id: int) -> Optional[DetectionConfig]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM object_detection_configs WHERE channel_id = ?",
            (channel_id,),
        )
        return _row_to_config(row) if row else None

    async def get_enabled_configs(self) -> List[DetectionConfig]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM object_detection_configs WHERE is_enabled = 1 ORDER BY id",
        )
        return [_row_to_config(r) for r in rows]

    async def get_enabled_rules(self, config_id: int) -> List[DetectionRule]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM object_detection_rules
            WHERE config_id = ? AND is_enabled = 1
            ORDER BY id
            """,
            (config_id,),
        )
        return [_row_to_rule(r) for r in rows]

    async def update_config(self, config_id: int, **patch: Any) -> Optional[DetectionConfig]:
        updates = {k: v for k, v in patch.items() if k in CONFIG_UPDATABLE_FIELDS}
        if updates:
            assignments = ", ".join(f"{field} = ?" for field in updates)
            params = tuple(
                int(v) if isinstance(v, bool) else v for v in updates.values()
            )
            await asyncio.to_thread(
                self._execute,
                f"UPDATE object_detection_configs "
                f"SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                params + (config_id,),
            )
            logger.debug(f"Config {config_id} updated: {sorted(updates)}")

        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM object_detection_configs WHERE id = ?", (config_id,)
        )
        return _row_to_config(row) if row else None

    async def log_detection(
        self,
        config_id: int,
        rule_id: Optional[int],
        event: DetectionEvent,
    ) -> None:
        detected_at = datetime.fromtimestamp(event.timestamp, tz=timezone.utc)
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO object_detection_logs
                (config_id, rule_id, object_class, confidence, message_sent, detected_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                config_id,
                rule_id,
                event.object_class,
                event.confidence,
                event.message,
                detected_at.strftime("%Y-%m-%d %H:%M:%S"),
            ),
        )

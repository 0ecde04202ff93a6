import sqlite3
from contextlib import contextmanager
from typing import Generator

from src.config import Config
from src.services.errors import PersistenceFailure


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(Config.DATABASE_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceFailure(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schedules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                platform TEXT NOT NULL DEFAULT 'youtube',
                schedule_type TEXT NOT NULL DEFAULT 'daily'
                    CHECK (schedule_type IN ('daily', 'weekly', 'custom')),
                timezone TEXT NOT NULL DEFAULT 'UTC',
                priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 5),
                active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schedule_slots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER NOT NULL,
                day_of_week TEXT NOT NULL,
                check_time TEXT NOT NULL,
                priority_modifier INTEGER NOT NULL DEFAULT 0,
                temporary BOOLEAN NOT NULL DEFAULT FALSE,
                revert_at TEXT,
                FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS quota_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER,
                usage_date TEXT NOT NULL,
                api_calls_used INTEGER NOT NULL DEFAULT 0,
                videos_found INTEGER NOT NULL DEFAULT 0,
                efficiency_score REAL NOT NULL DEFAULT 0,
                UNIQUE (schedule_id, usage_date),
                FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS outcomes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER,
                channel_id TEXT,
                check_time TEXT NOT NULL,
                content_found BOOLEAN NOT NULL DEFAULT FALSE,
                api_calls_made INTEGER NOT NULL DEFAULT 1 CHECK (api_calls_made >= 1),
                result_type TEXT NOT NULL
                    CHECK (result_type IN ('scheduled', 'fallback', 'emergency')),
                response_time_ms INTEGER,
                FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS learned_patterns (
                schedule_id INTEGER NOT NULL,
                day_of_week TEXT NOT NULL,
                hour INTEGER NOT NULL,
                success_count INTEGER NOT NULL,
                avg_response_time REAL,
                rank INTEGER NOT NULL,
                PRIMARY KEY (schedule_id, day_of_week, hour)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schedule_suggestions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                suggestion_type TEXT NOT NULL,
                day_of_week TEXT,
                check_time TEXT,
                reason TEXT NOT NULL,
                confidence REAL,
                details TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS insights (
                name TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                cache_key TEXT PRIMARY KEY,
                content_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                checksum TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS content_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content_id TEXT UNIQUE NOT NULL,
                channel_id TEXT NOT NULL,
                platform TEXT NOT NULL DEFAULT 'youtube',
                title TEXT NOT NULL,
                live_status TEXT NOT NULL DEFAULT 'none',
                published_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                store_key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scheduler_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                is_paused BOOLEAN DEFAULT FALSE,
                last_run_at TEXT,
                updated_at TEXT
            )
        """)

        cursor.execute("""
            INSERT OR IGNORE INTO scheduler_state (id, is_paused)
            VALUES (1, FALSE)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_schedules_channel_active ON schedules(channel_id, active)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_slots_schedule_day ON schedule_slots(schedule_id, day_of_week)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcomes_schedule_time ON outcomes(schedule_id, check_time)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcomes_check_time ON outcomes(check_time)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_quota_usage_date ON quota_usage(usage_date)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)
        """)

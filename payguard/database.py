import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from payguard.config import get_settings

_connection: Optional[sqlite3.Connection] = None


def get_connection() -> sqlite3.Connection:
    global _connection
    if _connection is None:
        _connection = sqlite3.connect(get_settings().database_path, check_same_thread=False)
        _connection.row_factory = sqlite3.Row
        _connection.execute("PRAGMA journal_mode=WAL")
        _connection.execute("PRAGMA foreign_keys=ON")
    return _connection


def close_connection() -> None:
    global _connection
    if _connection is not None:
        _connection.close()
        _connection = None


def init_schema() -> None:
    conn = get_connection()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS transaction_history (
            transaction_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            amount INTEGER NOT NULL,
            payment_method TEXT NOT NULL,
            success INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_history_user_time
            ON transaction_history (user_id, created_at);

        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS fraud_patterns (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            conditions TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            priority INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
    """)
    conn.commit()


def seed_default_patterns() -> None:
    """Seed the built-in fraud patterns if none exist."""
    conn = get_connection()
    row = conn.execute("SELECT COUNT(*) as cnt FROM fraud_patterns").fetchone()
    if row["cnt"] > 0:
        return

    now = datetime.now(timezone.utc).isoformat()
    default_patterns = [
        {
            "id": "pattern_001",
            "name": "Burst of payments",
            "description": "More than three payments within the last hour",
            "conditions": json.dumps([
                {"field": "transactions_last_hour", "operator": "gt", "value": 3},
            ]),
            "priority": 1,
        },
        {
            "id": "pattern_002",
            "name": "Amount far above user average",
            "description": "Amount exceeds five times the user's historical average",
            "conditions": json.dumps([
                {"field": "amount_to_average_ratio", "operator": "gt", "value": 5},
            ]),
            "priority": 2,
        },
    ]

    for pattern in default_patterns:
        conn.execute(
            """INSERT OR IGNORE INTO fraud_patterns
               (id, name, description, conditions, is_active, priority, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                pattern["id"],
                pattern["name"],
                pattern["description"],
                pattern["conditions"],
                1,
                pattern["priority"],
                now,
            ),
        )
    conn.commit()


def init_db() -> None:
    """Initialize database: create schema and seed default fraud patterns."""
    init_schema()
    seed_default_patterns()

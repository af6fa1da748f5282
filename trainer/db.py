"""Database layer for persisted review records."""

import json
import os
from contextlib import contextmanager

import psycopg

SCHEMA = """
CREATE TABLE IF NOT EXISTS review_records (
    line_key TEXT PRIMARY KEY,
    record JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.environ.get(
        "DATABASE_URL",
        "postgresql://localhost:5432/repertoire_trainer?user=postgres&password=postgres",
    )


@contextmanager
def get_connection():
    """Context manager for database connections."""
    conn = psycopg.connect(get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA)


def fetch_review(conn: psycopg.Connection, line_key: str) -> dict | None:
    """Fetch the stored review record for a line key."""
    with conn.cursor() as cur:
        cur.execute("SELECT record FROM review_records WHERE line_key = %s", (line_key,))
        row = cur.fetchone()
    if not row:
        return None
    record = row[0]
    # jsonb comes back decoded; plain text columns do not
    if isinstance(record, str):
        record = json.loads(record)
    return record


def upsert_review(conn: psycopg.Connection, line_key: str, record: dict) -> None:
    """Insert or replace a line's review record."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO review_records (line_key, record)
            VALUES (%s, %s::jsonb)
            ON CONFLICT (line_key) DO UPDATE SET
                record = EXCLUDED.record,
                updated_at = NOW()
            """,
            (line_key, json.dumps(record)),
        )


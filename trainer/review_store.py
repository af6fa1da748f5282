"""
Review record storage

Key-value persistence for review records, keyed "{opening_id}:{line_id}".
Every store tolerates its backend failing: reads fall back to no record and
writes are logged and skipped, so the scheduler keeps working in memory.
"""

import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Protocol

import psycopg

sys.path.insert(0, str(Path(__file__).resolve().parent))
from db import ensure_schema, fetch_review, get_connection, upsert_review

logger = logging.getLogger(__name__)

REVIEW_STORE = os.environ.get("REVIEW_STORE", "json")
REVIEW_STORE_PATH = os.environ.get("REVIEW_STORE_PATH", "data/review_records.json")


class ReviewStore(Protocol):
    def load(self, line_key: str) -> dict | None: ...

    def save(self, line_key: str, record: dict) -> None: ...


class MemoryReviewStore:
    def __init__(self, records: dict[str, dict] | None = None):
        self.records = dict(records or {})

    def load(self, line_key: str) -> dict | None:
        record = self.records.get(line_key)
        return dict(record) if record is not None else None

    def save(self, line_key: str, record: dict) -> None:
        self.records[line_key] = dict(record)


class JsonFileReviewStore:
    """All records in one JSON object on disk.

    A corrupt file is copied to .bak and the store starts empty. Each save
    re-reads the file and replaces only its own key, so writers on different
    lines keep each other's records. Two writers on the same line are
    last-writer-wins, and a scheduler in another process keeps serving its
    cached copy of that record until restarted.
    """

    def __init__(self, path: str | Path = REVIEW_STORE_PATH):
        self.path = Path(path)
        self._records: dict[str, dict] | None = None

    def _read_file(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError:
            self._back_up()
            return {}
        except OSError as e:
            logger.warning("Could not read review file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            self._back_up()
            return {}
        return data

    def _back_up(self) -> None:
        backup_path = self.path.with_suffix(".bak")
        logger.warning("Review file %s is corrupt; backing up to %s", self.path, backup_path)
        try:
            shutil.copy2(self.path, backup_path)
        except OSError as e:
            logger.warning("Could not back up review file %s: %s", self.path, e)

    def _read(self) -> dict[str, dict]:
        if self._records is None:
            self._records = self._read_file()
        return self._records

    def load(self, line_key: str) -> dict | None:
        record = self._read().get(line_key)
        return record if isinstance(record, dict) else None

    def save(self, line_key: str, record: dict) -> None:
        # records on disk win; the cache only fills in when the file is unreadable
        records = {**(self._records or {}), **self._read_file()}
        records[line_key] = record
        self._records = records
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning("Could not write review file %s: %s", self.path, e)


class PostgresReviewStore:
    """Records in the review_records table; one connection per call."""

    def __init__(self, create_schema: bool = True):
        self._schema_ready = not create_schema

    def _prepare(self, conn) -> None:
        if not self._schema_ready:
            ensure_schema(conn)
            self._schema_ready = True

    def load(self, line_key: str) -> dict | None:
        try:
            with get_connection() as conn:
                self._prepare(conn)
                return fetch_review(conn, line_key)
        except psycopg.Error as e:
            logger.warning("Could not load review record %s: %s", line_key, e)
            return None

    def save(self, line_key: str, record: dict) -> None:
        try:
            with get_connection() as conn:
                self._prepare(conn)
                upsert_review(conn, line_key, record)
        except psycopg.Error as e:
            logger.warning("Could not save review record %s: %s", line_key, e)


def store_from_env(kind: str | None = None) -> ReviewStore:
    """Pick the review store named by REVIEW_STORE (json, postgres or memory)."""
    kind = (kind or REVIEW_STORE).lower()
    if kind == "postgres":
        return PostgresReviewStore()
    if kind == "memory":
        return MemoryReviewStore()
    if kind != "json":
        logger.warning("Unknown REVIEW_STORE '%s'; using json", kind)
    return JsonFileReviewStore(REVIEW_STORE_PATH)

"""Tests for review_store.py and db.py"""

import json
import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import psycopg

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from db import fetch_review, upsert_review
from review_store import (
    JsonFileReviewStore,
    MemoryReviewStore,
    PostgresReviewStore,
    store_from_env,
)

RECORD = {"due": "2024-03-11", "interval_days": 1, "reps": 1}


def mock_connection():
    conn = MagicMock()
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)
    return conn


def test_memory_store_copies_records():
    store = MemoryReviewStore()
    store.save("o:l", RECORD)
    loaded = store.load("o:l")
    loaded["reps"] = 99
    assert store.load("o:l")["reps"] == 1
    assert store.load("o:other") is None


def test_json_store_persists_between_instances(tmp_path):
    path = tmp_path / "data" / "reviews.json"
    JsonFileReviewStore(path).save("o:l", RECORD)
    assert json.loads(path.read_text())["o:l"] == RECORD
    assert JsonFileReviewStore(path).load("o:l") == RECORD
    assert not path.with_suffix(".tmp").exists()


def test_json_store_backs_up_corrupt_file(tmp_path, caplog):
    path = tmp_path / "reviews.json"
    path.write_text("{not json")
    store = JsonFileReviewStore(path)
    with caplog.at_level(logging.WARNING):
        assert store.load("o:l") is None
    assert path.with_suffix(".bak").read_text() == "{not json"
    assert "corrupt" in caplog.text

    store.save("o:l", RECORD)
    assert JsonFileReviewStore(path).load("o:l") == RECORD


def test_json_store_rejects_non_object(tmp_path):
    path = tmp_path / "reviews.json"
    path.write_text("[1, 2]")
    assert JsonFileReviewStore(path).load("o:l") is None
    assert path.with_suffix(".bak").exists()


def test_postgres_store_reads_and_writes():
    conn = mock_connection()
    with patch("review_store.get_connection", return_value=conn), \
         patch("review_store.ensure_schema") as ensure, \
         patch("review_store.fetch_review", return_value=RECORD) as fetch, \
         patch("review_store.upsert_review") as upsert:
        store = PostgresReviewStore()
        assert store.load("o:l") == RECORD
        store.save("o:l", RECORD)

    ensure.assert_called_once_with(conn)
    fetch.assert_called_once_with(conn, "o:l")
    upsert.assert_called_once_with(conn, "o:l", RECORD)


def test_postgres_store_tolerates_database_errors(caplog):
    with patch("review_store.get_connection", side_effect=psycopg.OperationalError("down")):
        store = PostgresReviewStore()
        with caplog.at_level(logging.WARNING):
            assert store.load("o:l") is None
            store.save("o:l", RECORD)
    assert "Could not load review record o:l" in caplog.text
    assert "Could not save review record o:l" in caplog.text


def test_fetch_review_decodes_rows():
    conn = mock_connection()
    cur = conn.cursor.return_value.__enter__.return_value
    cur.fetchone.return_value = (json.dumps(RECORD),)
    assert fetch_review(conn, "o:l") == RECORD
    cur.fetchone.return_value = (RECORD,)
    assert fetch_review(conn, "o:l") == RECORD
    cur.fetchone.return_value = None
    assert fetch_review(conn, "o:l") is None


def test_upsert_review_sends_json():
    conn = mock_connection()
    cur = conn.cursor.return_value.__enter__.return_value
    upsert_review(conn, "o:l", RECORD)
    sql, params = cur.execute.call_args[0]
    assert "ON CONFLICT (line_key)" in sql
    assert params == ("o:l", json.dumps(RECORD))


def test_store_from_env_kinds():
    assert isinstance(store_from_env("memory"), MemoryReviewStore)
    assert isinstance(store_from_env("postgres"), PostgresReviewStore)
    assert isinstance(store_from_env("json"), JsonFileReviewStore)
    assert isinstance(store_from_env("bogus"), JsonFileReviewStore)


def test_json_store_survives_failed_backup(tmp_path, caplog):
    path = tmp_path / "reviews.json"
    path.write_text("{not json")
    with patch("review_store.shutil.copy2", side_effect=PermissionError("read-only directory")):
        with caplog.at_level(logging.WARNING):
            assert JsonFileReviewStore(path).load("o:l") is None
    assert "Could not back up review file" in caplog.text


def test_scheduler_gets_default_record_when_backup_fails(tmp_path):
    from scheduler import ReviewScheduler

    path = tmp_path / "reviews.json"
    path.write_text("{not json")
    with patch("review_store.shutil.copy2", side_effect=PermissionError("read-only directory")):
        record = ReviewScheduler(JsonFileReviewStore(path)).get("o:l")
    assert record.reps == 0
    assert record.stats.completed == 0


def test_json_store_save_keeps_other_writers_lines(tmp_path):
    path = tmp_path / "reviews.json"
    first = JsonFileReviewStore(path)
    second = JsonFileReviewStore(path)
    assert first.load("o:a") is None
    assert second.load("o:b") is None

    first.save("o:a", RECORD)
    second.save("o:b", {**RECORD, "reps": 2})

    on_disk = json.loads(path.read_text())
    assert on_disk["o:a"] == RECORD
    assert on_disk["o:b"]["reps"] == 2
    assert second.load("o:a") == RECORD

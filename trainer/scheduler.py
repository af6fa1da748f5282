"""
Spaced repetition scheduler

One review record per line, updated SM-2 style when a practice run
completes. Records are read through a ReviewStore and kept in memory, so a
store that fails to load or save never blocks a session.
"""

import logging
import math
import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

sys.path.insert(0, str(Path(__file__).resolve().parent))
from models import DEFAULT_EASE, MIN_EASE, Line, ReviewRecord, ReviewStats

logger = logging.getLogger(__name__)

PASSING_QUALITY = 3
PERFECT_QUALITY = 5


def _parse_date(value: Any) -> date | None:
    """Accept dates, datetimes and ISO strings; datetimes become local dates."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.astimezone().date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return _parse_date(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            logger.warning("Ignoring unparseable review date %r", value)
            return None
    return None


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return default


def _float(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value) if math.isfinite(value) else default


def record_from_dict(data: dict | None) -> ReviewRecord:
    """Build a record from stored JSON, defaulting every missing or bad field."""
    if not isinstance(data, dict):
        return ReviewRecord()
    stats = data.get("stats")
    if not isinstance(stats, dict):
        stats = {}
    return ReviewRecord(
        last_practiced=_parse_date(data.get("last_practiced", data.get("lastPracticedISO"))),
        due=_parse_date(data.get("due", data.get("dueISO"))),
        interval_days=_int(data.get("interval_days", data.get("intervalDays"))),
        ease=max(MIN_EASE, _float(data.get("ease"), DEFAULT_EASE)),
        reps=_int(data.get("reps")),
        lapses=_int(data.get("lapses")),
        stats=ReviewStats(
            completed=_int(stats.get("completed")),
            studied=_int(stats.get("studied")),
            perfect=_int(stats.get("perfect")),
            total_mistakes=_int(stats.get("total_mistakes", stats.get("totalMistakes"))),
            total_attempts=_int(stats.get("total_attempts", stats.get("totalAttempts"))),
        ),
    )


def record_to_dict(record: ReviewRecord) -> dict:
    return {
        "last_practiced": record.last_practiced.isoformat() if record.last_practiced else None,
        "due": record.due.isoformat() if record.due else None,
        "interval_days": record.interval_days,
        "ease": record.ease,
        "reps": record.reps,
        "lapses": record.lapses,
        "stats": {
            "completed": record.stats.completed,
            "studied": record.stats.studied,
            "perfect": record.stats.perfect,
            "total_mistakes": record.stats.total_mistakes,
            "total_attempts": record.stats.total_attempts,
        },
    }


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def apply_review(record: ReviewRecord, quality: int, mistake_count: int, today: date) -> ReviewRecord:
    """Update ``record`` in place for one completed practice run."""
    if not 0 <= quality <= 5:
        raise ValueError(f"quality must be between 0 and 5, got {quality}")

    record.last_practiced = today
    record.stats.completed += 1
    record.stats.total_attempts += 1
    record.stats.total_mistakes += max(0, mistake_count)

    if quality < PASSING_QUALITY:
        record.interval_days = 1
        record.lapses += 1
    else:
        record.reps += 1
        if record.reps == 1:
            record.interval_days = 1
        elif record.reps == 2:
            record.interval_days = 3
        else:
            record.interval_days = round_half_up(record.interval_days * record.ease)

    if quality == PERFECT_QUALITY:
        record.stats.perfect += 1

    miss = 5 - quality
    record.ease = max(MIN_EASE, record.ease + 0.1 - miss * (0.08 + miss * 0.02))
    record.due = today + timedelta(days=record.interval_days)
    return record


def apply_study(record: ReviewRecord) -> ReviewRecord:
    record.stats.studied += 1
    return record


def is_due(record: ReviewRecord | None, today: date) -> bool:
    if record is None or record.due is None:
        return True
    return record.due <= today


def selection_weight(line: Line, record: ReviewRecord) -> float:
    """Lines seen less often are picked more often."""
    return line.priority / (1 + record.stats.completed + record.stats.studied)


def session_quality(mistakes: int, had_lapse: bool) -> int:
    if had_lapse:
        return 1
    if mistakes == 0:
        return PERFECT_QUALITY
    return PASSING_QUALITY


def format_due_label(record: ReviewRecord, today: date) -> str:
    if record.due is None:
        return "Today"
    diff = (record.due - today).days
    if diff <= 0:
        return "Today"
    return f"{diff} days"


def format_due_info(record: ReviewRecord, today: date) -> str:
    return f"Due: {format_due_label(record, today)} • Interval: {record.interval_days}d"


def progress_text(record: ReviewRecord) -> str:
    due = record.due.isoformat() if record.due else "Today"
    return (
        f"Completed: {record.stats.completed} • Perfect: {record.stats.perfect} • Due: {due} • "
        f"Interval: {record.interval_days}d • Reps: {record.reps} • Ease: {record.ease:.2f}"
    )


class ReviewScheduler:
    """Reads, updates and writes review records through a store."""

    def __init__(self, store, clock: Callable[[], date] = date.today):
        self.store = store
        self.clock = clock
        self._cache: dict[str, ReviewRecord] = {}

    def today(self) -> date:
        return self.clock()

    def get(self, line_key: str) -> ReviewRecord:
        if line_key in self._cache:
            return self._cache[line_key]
        record = record_from_dict(self.store.load(line_key))
        self._cache[line_key] = record
        return record

    def _save(self, line_key: str, record: ReviewRecord) -> None:
        self._cache[line_key] = record
        self.store.save(line_key, record_to_dict(record))

    def record_review(self, line_key: str, quality: int, mistake_count: int = 0) -> ReviewRecord:
        record = apply_review(self.get(line_key), quality, mistake_count, self.today())
        self._save(line_key, record)
        logger.info("Reviewed %s: quality %d, next due %s", line_key, quality, record.due)
        return record

    def record_study(self, line_key: str) -> ReviewRecord:
        record = apply_study(self.get(line_key))
        self._save(line_key, record)
        return record

    def is_due(self, line_key: str) -> bool:
        return is_due(self.get(line_key), self.today())

    def weight(self, line: Line, line_key: str) -> float:
        return selection_weight(line, self.get(line_key))

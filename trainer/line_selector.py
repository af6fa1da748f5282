"""Chooses the next line to drill: due lines first, weighted toward the least practiced."""

import math
import random
import sys
from pathlib import Path
from typing import Callable, Sequence, TypeVar

sys.path.insert(0, str(Path(__file__).resolve().parent))
from graph_builder import Repertoire
from models import Line, line_key
from scheduler import ReviewScheduler

T = TypeVar("T")


def playable_lines(repertoire: Repertoire) -> list[Line]:
    """Lines that can start a session: a drill side and at least one root."""
    return [
        line for line_id, line in repertoire.lines.items()
        if line.drill_side is not None and repertoire.roots.get(line_id)
    ]


def due_lines(repertoire: Repertoire, scheduler: ReviewScheduler) -> list[Line]:
    opening_id = repertoire.opening.opening_id
    return [line for line in playable_lines(repertoire) if scheduler.is_due(line_key(opening_id, line.line_id))]


def filter_pool(pool: Sequence[T], keep: Callable[[T], bool]) -> list[T]:
    """Filtered pool, or the whole pool when nothing passes the filter."""
    filtered = [item for item in pool if keep(item)]
    return filtered or list(pool)


def _usable_weight(weight: float) -> float:
    return weight if math.isfinite(weight) and weight > 0 else 1.0


def weighted_pick(items: Sequence[T], weight_fn: Callable[[T], float] | None, rng: random.Random) -> T | None:
    if not items:
        return None
    weights = [_usable_weight(weight_fn(item)) if weight_fn else 1.0 for item in items]
    roll = rng.random() * sum(weights)
    for item, weight in zip(items, weights):
        roll -= weight
        if roll <= 0:
            return item
    return items[0]


def pick_line(
    repertoire: Repertoire,
    scheduler: ReviewScheduler,
    *,
    due_only: bool = False,
    rng: random.Random | None = None,
) -> Line | None:
    """Pick a playable line; with ``due_only`` prefer lines due today."""
    rng = rng or random.Random()
    opening_id = repertoire.opening.opening_id
    pool = playable_lines(repertoire)
    if due_only:
        pool = filter_pool(pool, lambda line: scheduler.is_due(line_key(opening_id, line.line_id)))
    return weighted_pick(pool, lambda line: scheduler.weight(line, line_key(opening_id, line.line_id)), rng)

"""Tests for line_selector.py"""

import random
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from graph_builder import build_repertoire
from line_selector import due_lines, filter_pool, pick_line, playable_lines, weighted_pick
from models import Line, NodeRecord, Opening


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


WEIGHTS = {"a": 1, "b": 2, "c": 1}


def test_weighted_pick_walks_cumulative_weights():
    items = ["a", "b", "c"]
    assert weighted_pick(items, WEIGHTS.get, FixedRandom(0.0)) == "a"
    assert weighted_pick(items, WEIGHTS.get, FixedRandom(0.25)) == "a"
    assert weighted_pick(items, WEIGHTS.get, FixedRandom(0.5)) == "b"
    assert weighted_pick(items, WEIGHTS.get, FixedRandom(0.99)) == "c"


def test_unusable_weights_count_as_one():
    items = ["a", "b", "c"]
    weights = {"a": float("nan"), "b": -3, "c": float("inf")}
    assert weighted_pick(items, weights.get, FixedRandom(0.4)) == "b"
    assert weighted_pick(items, weights.get, FixedRandom(0.9)) == "c"


def test_weighted_pick_empty_pool():
    assert weighted_pick([], None, random.Random(0)) is None


def test_filter_pool_falls_back_to_everything():
    assert filter_pool([1, 2, 3], lambda x: x > 1) == [2, 3]
    assert filter_pool([1, 2, 3], lambda x: x > 5) == [1, 2, 3]


def test_playable_lines_need_side_and_root(simple):
    assert [line.line_id for line in playable_lines(simple)] == ["s1", "s2"]
    rep = build_repertoire(
        Opening("o"),
        [Line("no_side", "o"), Line("no_nodes", "o", drill_side="white"), Line("ok", "o", drill_side="black")],
        [NodeRecord("no_side", "1", "e2e4"), NodeRecord("ok", "1", "e2e4")],
    )
    assert [line.line_id for line in playable_lines(rep)] == ["ok"]


def test_due_only_prefers_due_lines(italian, scheduler):
    scheduler.record_review("italian:main", 5)
    scheduler.record_review("italian:alt", 5)
    assert [line.line_id for line in due_lines(italian, scheduler)] == ["bc4first"]
    for seed in range(10):
        line = pick_line(italian, scheduler, due_only=True, rng=random.Random(seed))
        assert line.line_id == "bc4first"


def test_due_only_falls_back_when_nothing_is_due(simple, scheduler):
    scheduler.record_review("simple:s1", 5)
    scheduler.record_review("simple:s2", 5)
    assert due_lines(simple, scheduler) == []
    assert pick_line(simple, scheduler, due_only=True, rng=random.Random(0)) is not None


def test_pick_line_weights_toward_less_practiced(simple, scheduler):
    # s1: 1 / (1 + 3) = 0.25, s2: 1 / 1 = 1.0; total 1.25
    for _ in range(3):
        scheduler.record_review("simple:s1", 5)
    assert pick_line(simple, scheduler, rng=FixedRandom(0.1)).line_id == "s1"
    assert pick_line(simple, scheduler, rng=FixedRandom(0.3)).line_id == "s2"

"""Tests for transposition_index.py"""

import sys
from pathlib import Path

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from positions import normalize_fen


def key_after(*ucis):
    board = chess.Board()
    for uci in ucis:
        board.push_uci(uci)
    return normalize_fen(board.fen())


def refs(nodes):
    return [n.ref for n in nodes]


def test_key_ignores_move_counters():
    fen = "rnbqkbnr/pppp1ppp/8/4p3/4P3/8/PPPP1PPP/RNBQKBNR w KQkq - 0 2"
    assert normalize_fen(fen) == normalize_fen(fen.replace("0 2", "7 31"))
    assert normalize_fen(fen) == "rnbqkbnr/pppp1ppp/8/4p3/4P3/8/PPPP1PPP/RNBQKBNR w KQkq -"


def test_lookup_prefers_priority_then_stable_order(italian):
    key = key_after("e2e4", "e7e5")
    assert refs(italian.index.lookup(key)) == [("alt", "3"), ("bc4first", "3"), ("main", "3")]


def test_active_line_comes_first(italian):
    key = key_after("e2e4", "e7e5")
    assert refs(italian.index.lookup(key, active_line_id="main")) == [
        ("main", "3"),
        ("alt", "3"),
        ("bc4first", "3"),
    ]
    assert italian.index.best(key, active_line_id="bc4first").ref == ("bc4first", "3")


def test_exclude_line(italian):
    key = key_after("e2e4", "e7e5")
    assert refs(italian.index.lookup(key, exclude_line_id="alt")) == [("bc4first", "3"), ("main", "3")]


def test_miss_is_empty(italian):
    assert italian.index.lookup(key_after("d2d4")) == []
    assert italian.index.best(key_after("d2d4")) is None
    assert key_after("d2d4") not in italian.index


def test_nodes_for_move_filters_by_move_and_exclusions(italian):
    key = key_after("e2e4", "e7e5")
    found = italian.index.nodes_for_move(key, "f1c4", active_line_id="main", exclude=[("main", "3")])
    assert refs(found) == [("alt", "3"), ("bc4first", "3")]
    assert italian.index.nodes_for_move(key, "d2d4") == []


def test_transpositions_lists_shared_positions(italian):
    shared = dict(italian.index.transpositions())
    assert key_after("e2e4", "e7e5", "f1c4") in shared
    assert key_after("e2e4", "e7e5", "g1f3", "b8c6") not in shared
    assert len(shared) == 4

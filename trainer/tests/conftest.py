"""Pytest configuration."""

import os
import random
import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from graph_builder import build_catalog
from records import bundle_from_rows
from review_store import MemoryReviewStore
from scheduler import ReviewScheduler


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: mark test as requiring a live database or engine (skipped in CI by default)"
    )


os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/repertoire_trainer?user=postgres&password=postgres")
os.environ.setdefault("REVIEW_STORE", "memory")

TODAY = date(2024, 3, 10)


def move_row(line_id, node_id, move_uci, parent=None, **extra):
    row = {"line_id": line_id, "node_id": node_id, "move_uci": move_uci, "parent_node_id": parent or ""}
    row.update(extra)
    return row


OPENING_ROWS = [
    {
        "opening_id": "italian",
        "opening_name": "Italian Game",
        "starting_fen": "start",
        "book_max_plies_game_mode": "4",
        "allow_transpositions": "TRUE",
        "published": "true",
    },
    {"opening_id": "simple", "opening_name": "King's Pawn", "starting_fen": "", "published": "true"},
    {"opening_id": "draft", "opening_name": "Draft", "published": "false"},
]

LINE_ROWS = [
    {"line_id": "main", "opening_id": "italian", "line_name": "Main Line", "line_priority": "1", "drill_side": "white"},
    {"line_id": "alt", "opening_id": "italian", "line_name": "Bishop First", "line_priority": "2", "drill_side": "white"},
    {"line_id": "bc4first", "opening_id": "italian", "line_name": "Bc4 Nc6", "line_priority": "1", "drill_side": "white"},
    {"line_id": "s1", "opening_id": "simple", "line_name": "Straight", "line_priority": "abc", "drill_side": "white"},
    {"line_id": "s2", "opening_id": "simple", "line_name": "As Black", "drill_side": "Black"},
]

MOVE_ROWS = [
    # main: 1.e4 e5 2.Nf3 Nc6 3.Bc4
    move_row("main", "1", "e2e4", learn_prompt="Start with the king pawn."),
    move_row("main", "2", "e7e5", "1"),
    move_row(
        "main", "3", "g1f3", "2",
        practice_hint="Develop toward the center.",
        practice_deep_hint="The knight attacks e5.",
        practice_bad="Develop a piece.",
        mistake_map="d1h5>EARLY_QUEEN|f2f4>GAMBIT",
        learn_explain="The knight hits e5.",
    ),
    move_row("main", "4", "b8c6", "3"),
    move_row("main", "5", "f1c4", "4"),
    # alt: 1.e4 e5 2.Bc4 Nf6 3.d3
    move_row("alt", "1", "e2e4"),
    move_row("alt", "2", "e7e5", "1"),
    move_row("alt", "3", "f1c4", "2"),
    move_row("alt", "4", "g8f6", "3"),
    move_row("alt", "5", "d2d3", "4"),
    # bc4first: 1.e4 e5 2.Bc4 Nc6
    move_row("bc4first", "1", "e2e4"),
    move_row("bc4first", "2", "e7e5", "1"),
    move_row("bc4first", "3", "f1c4", "2"),
    move_row("bc4first", "4", "b8c6", "3"),
    # s1: linear sheet rows, 1.e4 e5 2.Nf3
    {"line_id": "s1", "ply": "2", "move_uci": "e7e5"},
    {"line_id": "s1", "ply": "1", "move_uci": "e2e4"},
    {"line_id": "s1", "ply": "3", "move_uci": "g1f3"},
    # s2: learner plays black, 1.d4 d5 2.c4
    move_row("s2", "1", "d2d4"),
    move_row("s2", "2", "d7d5", "1"),
    move_row("s2", "3", "c2c4", "2"),
    move_row("s2", "4", "e7e6", "3"),
]

TEMPLATE_ROWS = [
    {
        "mistake_code": "EARLY_QUEEN",
        "coach_message": "Too early for the queen.",
        "why_wrong": "The queen gets chased around.",
        "hint": "Develop minor pieces first.",
    },
]


@pytest.fixture
def bundle():
    return bundle_from_rows(OPENING_ROWS, LINE_ROWS, MOVE_ROWS, TEMPLATE_ROWS)


@pytest.fixture
def catalog(bundle):
    return build_catalog(bundle)


@pytest.fixture
def italian(catalog):
    return catalog.repertoire("italian")


@pytest.fixture
def simple(catalog):
    return catalog.repertoire("simple")


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def scheduler():
    return ReviewScheduler(MemoryReviewStore(), clock=lambda: TODAY)

"""Data models for the Chess Repertoire Trainer."""

from dataclasses import dataclass, field
from datetime import date
from typing import Literal

import chess

Side = Literal["white", "black"]

DEFAULT_EASE = 2.5
MIN_EASE = 1.3


@dataclass(frozen=True)
class Opening:
    """Opening metadata: starting position and free-play book settings."""

    opening_id: str
    name: str = ""
    starting_fen: str = chess.STARTING_FEN
    book_max_plies: int = 0
    allow_transpositions: bool = False
    published: bool = True


@dataclass(frozen=True)
class Line:
    """Named training line belonging to one opening."""

    line_id: str
    opening_id: str
    name: str = ""
    priority: float = 1.0
    drill_side: Side | None = None
    start_fen: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.line_id


@dataclass(frozen=True)
class NodeRecord:
    """One ply of a line as it arrives from the feed, before replay."""

    line_id: str
    node_id: str
    move_uci: str
    parent_node_id: str | None = None
    accept_uci: tuple[str, ...] = ()
    move_san: str | None = None
    learn_prompt: str = ""
    learn_explain: str = ""
    practice_good: str = ""
    practice_bad: str = ""
    practice_hint: str = ""
    practice_deep_hint: str = ""
    mistake_map: dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def acceptable_moves(self) -> tuple[str, ...]:
        return tuple(m for m in (self.move_uci, *self.accept_uci) if m)


@dataclass(frozen=True)
class RepertoireNode:
    """A replayed node: the record plus the positions computed for it."""

    record: NodeRecord
    fen_before: str
    position_key: str
    fen_after: str
    depth: int
    move_san: str
    children: tuple[str, ...] = ()

    @property
    def line_id(self) -> str:
        return self.record.line_id

    @property
    def node_id(self) -> str:
        return self.record.node_id

    @property
    def parent_node_id(self) -> str | None:
        return self.record.parent_node_id

    @property
    def move_uci(self) -> str:
        return self.record.move_uci

    @property
    def ref(self) -> tuple[str, str]:
        return (self.record.line_id, self.record.node_id)

    @property
    def is_leaf(self) -> bool:
        return not self.children


@dataclass(frozen=True)
class MistakeTemplate:
    """Global coaching message for a mapped mistake code."""

    code: str
    coach_message: str = ""
    why_wrong: str = ""
    hint: str = ""


@dataclass
class ReviewStats:
    completed: int = 0
    studied: int = 0
    perfect: int = 0
    total_mistakes: int = 0
    total_attempts: int = 0


@dataclass
class ReviewRecord:
    """Spaced-repetition state for one line."""

    last_practiced: date | None = None
    due: date | None = None
    interval_days: int = 0
    ease: float = DEFAULT_EASE
    reps: int = 0
    lapses: int = 0
    stats: ReviewStats = field(default_factory=ReviewStats)


@dataclass(frozen=True)
class BuildDiagnostic:
    """A record the graph builder had to drop, and why."""

    opening_id: str
    line_id: str | None
    node_id: str | None
    message: str

    def __str__(self) -> str:
        where = ":".join(p for p in (self.opening_id, self.line_id, self.node_id) if p)
        return f"{where}: {self.message}"


def line_key(opening_id: str, line_id: str) -> str:
    """Stable persistence key for a line's review record."""
    return f"{opening_id}:{line_id}"


def node_sort_key(record: NodeRecord) -> tuple:
    """Deterministic order: node id (numeric ids numerically), then move text."""
    node_id = record.node_id
    ident = (0, int(node_id), "") if node_id.isascii() and node_id.isdigit() else (1, 0, node_id)
    return (ident, record.move_uci)

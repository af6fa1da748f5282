"""
Record loading

Turns feed rows (dicts keyed by the sheet's column headers) into typed
records. The feeds themselves are fetched and parsed elsewhere; this module
only reads the already-parsed rows, either handed over directly or from a
JSON bundle on disk:

  {"openings": [...], "lines": [...], "moves": [...], "mistake_templates": [...]}
"""

import json
import logging
import math
import sys
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from models import Line, MistakeTemplate, NodeRecord, Opening
from positions import resolve_fen

logger = logging.getLogger(__name__)

DRILL_SIDES = ("white", "black")


@dataclass
class RecordBundle:
    openings: list[Opening] = field(default_factory=list)
    lines: list[Line] = field(default_factory=list)
    nodes: list[NodeRecord] = field(default_factory=list)
    mistake_templates: dict[str, MistakeTemplate] = field(default_factory=dict)


def _text(row: dict, key: str) -> str:
    value = row.get(key)
    if value is None:
        return ""
    return str(value).strip()


def is_true(value) -> bool:
    """Feed booleans are the literal string 'true' in any case."""
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() == "true"


def parse_priority(value) -> float:
    """Line priority; non-numeric, non-finite or non-positive values become 1."""
    try:
        priority = float(value)
    except (TypeError, ValueError):
        return 1.0
    if not math.isfinite(priority) or priority <= 0:
        return 1.0
    return priority


def parse_int(value, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_accept_moves(value: str) -> tuple[str, ...]:
    """Parse 'g1f3|b1c3' into ('g1f3', 'b1c3')."""
    return tuple(m.strip() for m in (value or "").split("|") if m.strip())


def parse_mistake_map(value: str) -> dict[str, str]:
    """Parse 'd2d4>EARLY_QUEEN|f2f3>WEAK_KING' into {move: code}."""
    mapping: dict[str, str] = {}
    for entry in (value or "").split("|"):
        entry = entry.strip()
        if not entry or ">" not in entry:
            continue
        move, code = entry.split(">", 1)
        if move.strip() and code.strip():
            mapping[move.strip()] = code.strip()
    return mapping


def opening_from_row(row: dict) -> Opening:
    return Opening(
        opening_id=_text(row, "opening_id"),
        name=_text(row, "opening_name"),
        starting_fen=resolve_fen(_text(row, "starting_fen")),
        book_max_plies=parse_int(row.get("book_max_plies_game_mode"), 0),
        allow_transpositions=is_true(row.get("allow_transpositions")),
        published=is_true(row.get("published", "true")),
    )


def line_from_row(row: dict) -> Line:
    side = _text(row, "drill_side").lower()
    return Line(
        line_id=_text(row, "line_id"),
        opening_id=_text(row, "opening_id"),
        name=_text(row, "line_name"),
        priority=parse_priority(row.get("line_priority", 1)),
        drill_side=side if side in DRILL_SIDES else None,
        start_fen=_text(row, "start_fen") or None,
    )


def node_from_row(row: dict, node_id: str | None = None, parent_node_id: str | None = None) -> NodeRecord:
    return NodeRecord(
        line_id=_text(row, "line_id"),
        node_id=node_id if node_id is not None else _text(row, "node_id"),
        parent_node_id=parent_node_id if parent_node_id is not None else (_text(row, "parent_node_id") or None),
        move_uci=_text(row, "move_uci"),
        accept_uci=parse_accept_moves(_text(row, "accept_uci")),
        move_san=_text(row, "move_san") or None,
        learn_prompt=_text(row, "learn_prompt"),
        learn_explain=_text(row, "learn_explain"),
        practice_good=_text(row, "practice_good"),
        practice_bad=_text(row, "practice_bad"),
        practice_hint=_text(row, "practice_hint"),
        practice_deep_hint=_text(row, "practice_deep_hint"),
        mistake_map=parse_mistake_map(_text(row, "mistake_map")),
    )


def nodes_from_rows(rows: list[dict]) -> list[NodeRecord]:
    """
    Build node records. Rows with an explicit node_id are taken as-is; rows
    from linear sheets (only a 'ply' column) are chained ply by ply within
    their line.
    """
    nodes: list[NodeRecord] = []
    linear: dict[str, list[dict]] = defaultdict(list)
    for row in rows:
        if _text(row, "node_id"):
            nodes.append(node_from_row(row))
        elif _text(row, "ply"):
            linear[_text(row, "line_id")].append(row)
        else:
            logger.warning("Skipping move row without node_id or ply: %s", row)

    for line_id, line_rows in linear.items():
        line_rows.sort(key=lambda r: parse_int(r.get("ply"), 0))
        parent = None
        for row in line_rows:
            node_id = _text(row, "ply")
            nodes.append(node_from_row(row, node_id=node_id, parent_node_id=parent))
            parent = node_id
    return nodes


def template_from_row(row: dict) -> MistakeTemplate:
    return MistakeTemplate(
        code=_text(row, "mistake_code"),
        coach_message=_text(row, "coach_message"),
        why_wrong=_text(row, "why_wrong"),
        hint=_text(row, "hint"),
    )


def bundle_from_rows(
    openings: list[dict],
    lines: list[dict],
    moves: list[dict],
    mistake_templates: list[dict] | None = None,
) -> RecordBundle:
    templates = {}
    for row in mistake_templates or []:
        tmpl = template_from_row(row)
        if tmpl.code:
            templates[tmpl.code] = tmpl
    return RecordBundle(
        openings=[opening_from_row(r) for r in openings if _text(r, "opening_id")],
        lines=[line_from_row(r) for r in lines if _text(r, "line_id")],
        nodes=nodes_from_rows(moves),
        mistake_templates=templates,
    )


def load_bundle(path: str | Path) -> RecordBundle:
    """Load a JSON bundle of feed rows."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Repertoire bundle {path} does not exist")
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Repertoire bundle must be a JSON object")
    return bundle_from_rows(
        data.get("openings", []),
        data.get("lines", []),
        data.get("moves", []),
        data.get("mistake_templates", []),
    )

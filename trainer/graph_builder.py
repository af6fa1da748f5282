#!/usr/bin/env python3
"""
Repertoire graph builder

Replays every line of an opening from its start position, annotates each
node with the position it is played from, and indexes the result by
normalized position. Nodes that cannot be replayed are dropped with a
diagnostic; the rest of the opening still builds.

Usage:
  python graph_builder.py --bundle data/repertoire.json
  python graph_builder.py --bundle data/repertoire.json --strict
"""

import argparse
import logging
import sys
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

sys.path.insert(0, str(Path(__file__).resolve().parent))
from errors import UnknownLineError, UnknownOpeningError
from models import (
    BuildDiagnostic,
    Line,
    MistakeTemplate,
    NodeRecord,
    Opening,
    RepertoireNode,
    node_sort_key,
)
from positions import ChessPositionEngine, PositionEngine, normalize_fen
from records import RecordBundle, load_bundle
from transposition_index import TranspositionIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Repertoire:
    """Built trees and transposition index for one opening."""

    opening: Opening
    lines: Mapping[str, Line]
    nodes: Mapping[tuple[str, str], RepertoireNode]
    roots: Mapping[str, tuple[str, ...]]
    index: TranspositionIndex
    diagnostics: tuple[BuildDiagnostic, ...] = ()

    def line(self, line_id: str) -> Line:
        try:
            return self.lines[line_id]
        except KeyError:
            raise UnknownLineError(line_id) from None

    def node(self, line_id: str, node_id: str) -> RepertoireNode | None:
        return self.nodes.get((line_id, node_id))

    def root_nodes(self, line_id: str) -> list[RepertoireNode]:
        return [self.nodes[(line_id, nid)] for nid in self.roots.get(line_id, ())]

    def children(self, node: RepertoireNode) -> list[RepertoireNode]:
        return [self.nodes[(node.line_id, cid)] for cid in node.children]

    def parent(self, node: RepertoireNode) -> RepertoireNode | None:
        if node.parent_node_id is None:
            return None
        return self.nodes.get((node.line_id, node.parent_node_id))

    def line_nodes(self, line_id: str) -> list[RepertoireNode]:
        return [n for (lid, _), n in self.nodes.items() if lid == line_id]

    def start_fen(self, line_id: str) -> str:
        line = self.line(line_id)
        return line.start_fen or self.opening.starting_fen


@dataclass(frozen=True)
class Catalog:
    """Every opening's repertoire plus the global mistake templates."""

    repertoires: Mapping[str, Repertoire]
    mistake_templates: Mapping[str, MistakeTemplate]
    diagnostics: tuple[BuildDiagnostic, ...] = ()

    def repertoire(self, opening_id: str) -> Repertoire:
        try:
            return self.repertoires[opening_id]
        except KeyError:
            raise UnknownOpeningError(opening_id) from None

    def published(self) -> list[Opening]:
        return [r.opening for r in self.repertoires.values() if r.opening.published]


class _LineReplay:
    """Replays the node records of one line into RepertoireNodes."""

    def __init__(self, opening_id: str, line_id: str, records: Mapping[str, NodeRecord], engine: PositionEngine, report):
        self.opening_id = opening_id
        self.line_id = line_id
        self.records = records
        self.engine = engine
        self.report = report
        self.children: dict[str, list[NodeRecord]] = defaultdict(list)
        self.roots: list[NodeRecord] = []
        self.built: dict[str, RepertoireNode] = {}
        self.diagnosed: set[str] = set()

        for record in sorted(records.values(), key=node_sort_key):
            if record.parent_node_id is None:
                self.roots.append(record)
            elif record.parent_node_id not in records:
                self._drop(record.node_id, f"parent node '{record.parent_node_id}' does not exist")
            else:
                self.children[record.parent_node_id].append(record)

    def _drop(self, node_id: str, message: str) -> None:
        self.diagnosed.add(node_id)
        self.report(self.line_id, node_id, message)

    def _drop_subtree(self, record: NodeRecord, cause: str) -> None:
        for child in self.children.get(record.node_id, []):
            self._drop(child.node_id, f"depends on dropped node '{cause}'")
            self._drop_subtree(child, cause)

    def _replay(self, record: NodeRecord, board, depth: int) -> bool:
        result = self.engine.apply_move(board, record.move_uci)
        fen_before = board.fen()
        if not result.legal:
            self._drop(record.node_id, f"illegal move '{record.move_uci}' in {fen_before}")
            self._drop_subtree(record, record.node_id)
            return False
        after = self.engine.load(result.new_fen)
        kept = tuple(
            child.node_id
            for child in self.children.get(record.node_id, [])
            if self._replay(child, after, depth + 1)
        )
        self.built[record.node_id] = RepertoireNode(
            record=record,
            fen_before=fen_before,
            position_key=normalize_fen(fen_before),
            fen_after=result.new_fen,
            depth=depth,
            move_san=result.san or record.move_san or record.move_uci,
            children=kept,
        )
        return True

    def run(self, start_fen: str) -> tuple[str, ...]:
        try:
            start = self.engine.load(start_fen)
        except ValueError as e:
            for node_id in self.records:
                self.diagnosed.add(node_id)
            self.report(self.line_id, None, f"invalid start position '{start_fen}': {e}")
            return ()
        root_ids = tuple(r.node_id for r in self.roots if self._replay(r, start, 1))
        for node_id in sorted(set(self.records) - set(self.built) - self.diagnosed):
            self._drop(node_id, "not reachable from any root of the line")
        return root_ids


def build_repertoire(
    opening: Opening,
    lines: Iterable[Line],
    nodes: Iterable[NodeRecord],
    engine: PositionEngine | None = None,
) -> Repertoire:
    """Build the node trees and transposition index for one opening."""
    engine = engine or ChessPositionEngine()
    diagnostics: list[BuildDiagnostic] = []

    def report(line_id: str | None, node_id: str | None, message: str) -> None:
        diag = BuildDiagnostic(opening.opening_id, line_id, node_id, message)
        logger.warning("Dropped %s", diag)
        diagnostics.append(diag)

    opening_lines = {line.line_id: line for line in lines if line.opening_id == opening.opening_id}

    records_by_line: dict[str, dict[str, NodeRecord]] = defaultdict(dict)
    # feed order decides which duplicate wins
    for record in nodes:
        if record.line_id not in opening_lines:
            continue
        if not record.move_uci:
            report(record.line_id, record.node_id, "node has no move")
            continue
        if record.node_id in records_by_line[record.line_id]:
            report(record.line_id, record.node_id, "duplicate node id")
            continue
        records_by_line[record.line_id][record.node_id] = record

    built: dict[tuple[str, str], RepertoireNode] = {}
    roots: dict[str, tuple[str, ...]] = {}
    for line_id in sorted(opening_lines):
        line = opening_lines[line_id]
        replay = _LineReplay(opening.opening_id, line_id, records_by_line.get(line_id, {}), engine, report)
        roots[line_id] = replay.run(line.start_fen or opening.starting_fen)
        for node_id, node in replay.built.items():
            built[(line_id, node_id)] = node

    index = TranspositionIndex.build(
        built.values(), {line_id: line.priority for line_id, line in opening_lines.items()}
    )
    return Repertoire(
        opening=opening,
        lines=MappingProxyType(opening_lines),
        nodes=MappingProxyType(built),
        roots=MappingProxyType(roots),
        index=index,
        diagnostics=tuple(diagnostics),
    )


def build_catalog(bundle: RecordBundle, engine: PositionEngine | None = None) -> Catalog:
    """Build a repertoire for every opening in the bundle."""
    engine = engine or ChessPositionEngine()
    diagnostics: list[BuildDiagnostic] = []
    opening_ids = {o.opening_id for o in bundle.openings}
    line_ids = set()

    for line in bundle.lines:
        line_ids.add(line.line_id)
        if line.opening_id not in opening_ids:
            diag = BuildDiagnostic(line.opening_id or "?", line.line_id, None, "line belongs to an unknown opening")
            logger.warning("Dropped %s", diag)
            diagnostics.append(diag)
    for record in bundle.nodes:
        if record.line_id not in line_ids:
            diag = BuildDiagnostic("?", record.line_id or None, record.node_id or None, "node belongs to an unknown line")
            logger.warning("Dropped %s", diag)
            diagnostics.append(diag)

    repertoires = {}
    for opening in bundle.openings:
        repertoire = build_repertoire(opening, bundle.lines, bundle.nodes, engine)
        repertoires[opening.opening_id] = repertoire
        diagnostics.extend(repertoire.diagnostics)

    return Catalog(
        repertoires=MappingProxyType(repertoires),
        mistake_templates=MappingProxyType(dict(bundle.mistake_templates)),
        diagnostics=tuple(diagnostics),
    )


def main():
    parser = argparse.ArgumentParser(description="Build and validate a repertoire bundle")
    parser.add_argument("--bundle", required=True, help="JSON bundle of openings, lines, moves and mistake templates")
    parser.add_argument("--strict", action="store_true", help="Exit non-zero when any record was dropped")
    args = parser.parse_args()

    logging.basicConfig(level=logging.ERROR, format="%(levelname)s %(name)s: %(message)s")
    try:
        bundle = load_bundle(args.bundle)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    catalog = build_catalog(bundle)
    for opening_id, repertoire in catalog.repertoires.items():
        shared = sum(1 for _ in repertoire.index.transpositions())
        print(
            f"{opening_id}: {len(repertoire.lines)} lines, {len(repertoire.nodes)} nodes, "
            f"{len(repertoire.index)} positions, {shared} shared between lines"
        )
    if catalog.diagnostics:
        print(f"Dropped {len(catalog.diagnostics)} records:", file=sys.stderr)
        for diag in catalog.diagnostics:
            print(f"  {diag}", file=sys.stderr)
        if args.strict:
            sys.exit(1)


if __name__ == "__main__":
    main()

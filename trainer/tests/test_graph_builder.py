"""Tests for graph_builder.py"""

import json
import sys
from pathlib import Path

import chess
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import UnknownLineError, UnknownOpeningError
from graph_builder import build_catalog, build_repertoire, main
from models import Line, NodeRecord, Opening
from positions import normalize_fen
from records import bundle_from_rows


def build(*records, start_fen=None):
    opening = Opening("o", starting_fen=chess.STARTING_FEN)
    line = Line("l", "o", drill_side="white", start_fen=start_fen)
    return build_repertoire(opening, [line], list(records))


def test_every_node_is_built(italian):
    assert len(italian.nodes) == 14
    assert italian.diagnostics == ()


def test_replay_reproduces_position_before(italian):
    for node in italian.nodes.values():
        parent = italian.parent(node)
        if parent is None:
            assert node.fen_before == chess.STARTING_FEN
            assert node.depth == 1
        else:
            board = chess.Board(parent.fen_before)
            board.push_uci(parent.move_uci)
            assert node.fen_before == board.fen()
            assert node.depth == parent.depth + 1


def test_node_carries_key_and_san(italian):
    node = italian.node("main", "3")
    assert node.move_san == "Nf3"
    assert node.position_key == normalize_fen(node.fen_before)
    assert node.children == ("4",)


def test_linear_rows_build_a_chain(simple):
    roots = simple.root_nodes("s1")
    assert [n.node_id for n in roots] == ["1"]
    assert simple.children(roots[0])[0].move_uci == "e7e5"


def test_children_sorted_numerically_then_by_move():
    rep = build(
        NodeRecord("l", "1", "e2e4"),
        NodeRecord("l", "10", "c7c5", parent_node_id="1"),
        NodeRecord("l", "9", "e7e5", parent_node_id="1"),
    )
    assert rep.node("l", "1").children == ("9", "10")


def test_illegal_move_drops_node_and_subtree():
    rep = build(
        NodeRecord("l", "1", "e2e4"),
        NodeRecord("l", "2", "e2e4", parent_node_id="1"),
        NodeRecord("l", "3", "g1f3", parent_node_id="2"),
        NodeRecord("l", "4", "e7e5", parent_node_id="1"),
    )
    assert set(nid for _, nid in rep.nodes) == {"1", "4"}
    messages = {d.node_id: d.message for d in rep.diagnostics}
    assert "illegal move" in messages["2"]
    assert "depends on dropped node" in messages["3"]
    assert rep.node("l", "1").children == ("4",)


def test_missing_parent_and_duplicate_ids_are_diagnosed():
    rep = build(
        NodeRecord("l", "1", "e2e4"),
        NodeRecord("l", "1", "d2d4"),
        NodeRecord("l", "5", "e7e5", parent_node_id="4"),
    )
    messages = [d.message for d in rep.diagnostics]
    assert "duplicate node id" in messages
    assert any("parent node '4' does not exist" in m for m in messages)
    assert rep.node("l", "1").move_uci == "e2e4"
    assert rep.node("l", "5") is None


def test_parent_cycle_is_unreachable():
    rep = build(
        NodeRecord("l", "1", "e2e4"),
        NodeRecord("l", "2", "e7e5", parent_node_id="3"),
        NodeRecord("l", "3", "g1f3", parent_node_id="2"),
    )
    unreachable = {d.node_id for d in rep.diagnostics if "not reachable" in d.message}
    assert unreachable == {"2", "3"}


def test_invalid_start_position_drops_line():
    rep = build(NodeRecord("l", "1", "e2e4"), start_fen="not a fen")
    assert rep.nodes == {}
    assert rep.root_nodes("l") == []
    assert "invalid start position" in rep.diagnostics[0].message


def test_catalog_reports_orphans(bundle):
    bundle.lines.append(Line("ghost", "nowhere", drill_side="white"))
    bundle.nodes.append(NodeRecord("missing", "1", "e2e4"))
    catalog = build_catalog(bundle)
    messages = [d.message for d in catalog.diagnostics]
    assert "line belongs to an unknown opening" in messages
    assert "node belongs to an unknown line" in messages


def test_catalog_lookup_errors(catalog):
    with pytest.raises(UnknownOpeningError):
        catalog.repertoire("nope")
    with pytest.raises(UnknownLineError):
        catalog.repertoire("italian").line("nope")


def test_published_hides_drafts(catalog):
    assert [o.opening_id for o in catalog.published()] == ["italian", "simple"]


def test_cli_strict_exits_on_diagnostics(tmp_path, monkeypatch, capsys):
    path = tmp_path / "bundle.json"
    path.write_text(json.dumps({
        "openings": [{"opening_id": "o"}],
        "lines": [{"line_id": "l", "opening_id": "o", "drill_side": "white"}],
        "moves": [
            {"line_id": "l", "node_id": "1", "move_uci": "e2e4"},
            {"line_id": "l", "node_id": "2", "move_uci": "e2e4", "parent_node_id": "1"},
        ],
    }))
    monkeypatch.setattr(sys, "argv", ["graph_builder.py", "--bundle", str(path), "--strict"])
    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert "o: 1 lines, 1 nodes" in captured.out
    assert "illegal move" in captured.err


def test_bundle_rows_roundtrip_into_catalog():
    bundle = bundle_from_rows(
        [{"opening_id": "o"}],
        [{"line_id": "l", "opening_id": "o", "drill_side": "black"}],
        [{"line_id": "l", "ply": "1", "move_uci": "d2d4"}],
    )
    rep = build_catalog(bundle).repertoire("o")
    assert rep.line("l").drill_side == "black"
    assert rep.node("l", "1").move_san == "d4"

"""
Session plans

A plan is the ordered path from a line root to one chosen leaf. Deeper
leaves are always preferred; among leaves of equal maximum depth one is
drawn from the injected random source. A plan built from a mid-line node
still holds the full root-to-leaf path and records the node it was anchored
at, so depth always counts plies from the line's start position.
"""

import logging
import random
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

sys.path.insert(0, str(Path(__file__).resolve().parent))
from graph_builder import Repertoire
from models import RepertoireNode
from positions import normalize_fen

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionPlan:
    line_id: str
    nodes: tuple[RepertoireNode, ...]
    anchor: int = 0
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    positions: Mapping[str, tuple[int, ...]] = field(default_factory=dict, compare=False)

    @classmethod
    def from_path(cls, nodes: list[RepertoireNode], anchor: int = 0) -> "SessionPlan":
        positions: dict[str, list[int]] = {}
        for i, node in enumerate(nodes):
            positions.setdefault(node.position_key, []).append(i)
        positions.setdefault(normalize_fen(nodes[-1].fen_after), []).append(len(nodes))
        return cls(
            line_id=nodes[-1].line_id,
            nodes=tuple(nodes),
            anchor=anchor,
            positions={k: tuple(v) for k, v in positions.items()},
        )

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def leaf(self) -> RepertoireNode:
        return self.nodes[-1]

    @property
    def terminal_fen(self) -> str:
        return self.leaf.fen_after

    @property
    def terminal_key(self) -> str:
        return normalize_fen(self.leaf.fen_after)

    def node_at(self, depth: int) -> RepertoireNode | None:
        if 0 <= depth < len(self.nodes):
            return self.nodes[depth]
        return None

    def depth_of(self, position_key: str, hint: int = 0) -> int | None:
        """Index of the position in the plan; the first at or after ``hint`` wins."""
        indices = self.positions.get(position_key)
        if not indices:
            return None
        return next((i for i in indices if i >= hint), indices[0])

    def contains(self, node: RepertoireNode) -> bool:
        return any(n.ref == node.ref for n in self.nodes)


def collect_leaves(repertoire: Repertoire, start_nodes: list[RepertoireNode]) -> list[RepertoireNode]:
    """Every leaf reachable from the start nodes, in deterministic tree order."""
    leaves = []
    stack = list(reversed(start_nodes))
    while stack:
        node = stack.pop()
        if node.is_leaf:
            leaves.append(node)
        else:
            stack.extend(reversed(repertoire.children(node)))
    return leaves


def select_leaf(
    repertoire: Repertoire,
    start_nodes: list[RepertoireNode],
    rng: random.Random,
) -> RepertoireNode | None:
    leaves = collect_leaves(repertoire, start_nodes)
    if not leaves:
        return None
    deepest = max(leaf.depth for leaf in leaves)
    return rng.choice([leaf for leaf in leaves if leaf.depth == deepest])


def path_to(repertoire: Repertoire, leaf: RepertoireNode) -> list[RepertoireNode]:
    path = [leaf]
    parent = repertoire.parent(leaf)
    while parent is not None:
        path.append(parent)
        parent = repertoire.parent(parent)
    path.reverse()
    return path


def build_plan(
    repertoire: Repertoire,
    line_id: str,
    rng: random.Random | None = None,
    from_node: RepertoireNode | None = None,
) -> SessionPlan | None:
    """Plan from the line roots, or from ``from_node`` when branching mid-line."""
    rng = rng or random.Random()
    if from_node is not None:
        line_id = from_node.line_id
        start_nodes = [from_node]
    else:
        start_nodes = repertoire.root_nodes(line_id)

    leaf = select_leaf(repertoire, start_nodes, rng)
    if leaf is None:
        return None

    path = path_to(repertoire, leaf)
    for prev, node in zip(path, path[1:]):
        if prev.position_key == node.position_key:
            logger.warning("Line %s repeats position at node %s; no plan", line_id, node.node_id)
            return None

    anchor = 0
    if from_node is not None:
        anchor = next(i for i, n in enumerate(path) if n.ref == from_node.ref)
    return SessionPlan.from_path(path, anchor)

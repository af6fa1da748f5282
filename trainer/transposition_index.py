"""
Transposition index

Maps a normalized position key to every repertoire node, across all lines of
one opening, that is played from that position. Buckets are stored in the
deterministic node order; the preference order depends on which line the
session is currently drilling, so it is computed per lookup.
"""

import sys
from collections import defaultdict
from pathlib import Path
from typing import Iterable, Iterator, Mapping

sys.path.insert(0, str(Path(__file__).resolve().parent))
from models import RepertoireNode, node_sort_key


def _stable_key(node: RepertoireNode) -> tuple:
    return (node_sort_key(node.record), node.line_id)


class TranspositionIndex:
    def __init__(self, buckets: Mapping[str, tuple[RepertoireNode, ...]], priorities: Mapping[str, float]):
        self._buckets = dict(buckets)
        self._priorities = dict(priorities)

    @classmethod
    def build(cls, nodes: Iterable[RepertoireNode], priorities: Mapping[str, float]) -> "TranspositionIndex":
        """Insert every valid node under its own position key."""
        grouped: dict[str, list[RepertoireNode]] = defaultdict(list)
        for node in nodes:
            grouped[node.position_key].append(node)
        buckets = {key: tuple(sorted(group, key=_stable_key)) for key, group in grouped.items()}
        return cls(buckets, priorities)

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, position_key: str) -> bool:
        return position_key in self._buckets

    def keys(self) -> Iterable[str]:
        return self._buckets.keys()

    def priority(self, line_id: str) -> float:
        return self._priorities.get(line_id, 1.0)

    def _preference(self, active_line_id: str | None):
        def key(node: RepertoireNode) -> tuple:
            in_session = active_line_id is not None and node.line_id == active_line_id
            return (0 if in_session else 1, -self.priority(node.line_id), _stable_key(node))

        return key

    def lookup(
        self,
        position_key: str,
        active_line_id: str | None = None,
        exclude_line_id: str | None = None,
    ) -> list[RepertoireNode]:
        """Nodes played from this position, best candidate first."""
        bucket = self._buckets.get(position_key, ())
        candidates = [n for n in bucket if exclude_line_id is None or n.line_id != exclude_line_id]
        return sorted(candidates, key=self._preference(active_line_id))

    def best(
        self,
        position_key: str,
        active_line_id: str | None = None,
        exclude_line_id: str | None = None,
    ) -> RepertoireNode | None:
        matches = self.lookup(position_key, active_line_id, exclude_line_id)
        return matches[0] if matches else None

    def nodes_for_move(
        self,
        position_key: str,
        uci: str,
        active_line_id: str | None = None,
        exclude: Iterable[tuple[str, str]] = (),
    ) -> list[RepertoireNode]:
        """Repertoire nodes from this position whose move is ``uci``."""
        skip = set(exclude)
        return [
            n for n in self.lookup(position_key, active_line_id)
            if n.ref not in skip and uci in n.record.acceptable_moves
        ]

    def transpositions(self) -> Iterator[tuple[str, tuple[RepertoireNode, ...]]]:
        """Positions reached by more than one line."""
        for key, bucket in self._buckets.items():
            if len({n.line_id for n in bucket}) > 1:
                yield key, bucket

"""Position engine adapter over python-chess.

The trainer only needs three things from a chess engine: load a position,
apply a coordinate move to it, and list the legal moves. Everything here is
side-effect free; ``apply_move`` never mutates the handle it is given.
"""

from dataclasses import dataclass
from typing import Protocol

import chess


@dataclass(frozen=True)
class MoveResult:
    legal: bool
    new_fen: str | None = None
    is_capture: bool = False
    san: str | None = None


class PositionEngine(Protocol):
    def load(self, fen: str) -> chess.Board: ...

    def apply_move(self, board: chess.Board, uci: str) -> MoveResult: ...

    def legal_moves(self, board: chess.Board) -> list[str]: ...


def resolve_fen(fen: str | None) -> str:
    """Map empty or 'start' placeholders to the standard starting position."""
    if not fen or not fen.strip() or fen.strip().lower() == "start":
        return chess.STARTING_FEN
    return fen.strip()


def normalize_fen(fen: str) -> str:
    """Keep placement, side to move, castling and en-passant; drop move counters."""
    if not fen:
        return ""
    parts = fen.strip().split()
    if len(parts) < 4:
        return fen.strip()
    return " ".join(parts[:4])


class ChessPositionEngine:
    """PositionEngine backed by chess.Board."""

    def load(self, fen: str) -> chess.Board:
        """Raises ValueError for a malformed FEN."""
        return chess.Board(resolve_fen(fen))

    def apply_move(self, board: chess.Board, uci: str) -> MoveResult:
        try:
            move = chess.Move.from_uci(uci.strip())
        except (ValueError, AttributeError):
            return MoveResult(legal=False)
        if move not in board.legal_moves:
            return MoveResult(legal=False)
        san = board.san(move)
        is_capture = board.is_capture(move)
        after = board.copy(stack=False)
        after.push(move)
        return MoveResult(legal=True, new_fen=after.fen(), is_capture=is_capture, san=san)

    def legal_moves(self, board: chess.Board) -> list[str]:
        return sorted(move.uci() for move in board.legal_moves)

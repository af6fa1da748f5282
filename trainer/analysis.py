"""
Analysis engine adapter

Best-move and evaluation queries for free-play mode, answered by Stockfish
through python-chess's UCI driver. The engine process starts lazily on the
first query and is reused until closed.

  STOCKFISH_PATH=/usr/bin/stockfish
"""

import logging
import os
from dataclasses import dataclass
from typing import Protocol

import chess
import chess.engine

logger = logging.getLogger(__name__)

STOCKFISH_PATH = os.environ.get("STOCKFISH_PATH", "stockfish")

MOVE_TIMES = {
    "beginner": 150,
    "intermediate": 300,
    "strong": 700,
}
DEFAULT_MOVE_TIME = 250


class EngineUnavailableError(Exception):
    """The analysis engine could not be started or stopped responding."""


@dataclass(frozen=True)
class AnalysisResult:
    uci: str | None
    eval_text: str = ""


class AnalysisEngine(Protocol):
    def best_move(self, fen: str, movetime_ms: int) -> AnalysisResult: ...


def move_time_for(strength: str | None) -> int:
    return MOVE_TIMES.get(strength or "", DEFAULT_MOVE_TIME)


def format_eval(score: chess.engine.PovScore | None) -> str:
    """Eval text from White's perspective, e.g. 'Engine eval: -0.35'."""
    if score is None:
        return ""
    white_score = score.white()
    if white_score.is_mate():
        return f"Engine eval: Mate in {abs(white_score.mate())}"
    return f"Engine eval: {white_score.score() / 100:.2f}"


class StockfishAnalysis:
    def __init__(self, stockfish_path: str = STOCKFISH_PATH):
        self.stockfish_path = stockfish_path
        self._engine: chess.engine.SimpleEngine | None = None

    def _ensure_engine(self) -> chess.engine.SimpleEngine:
        if self._engine is None:
            try:
                self._engine = chess.engine.SimpleEngine.popen_uci(self.stockfish_path)
            except FileNotFoundError:
                raise EngineUnavailableError(
                    "Stockfish not found. Install it or set STOCKFISH_PATH."
                ) from None
        return self._engine

    def best_move(self, fen: str, movetime_ms: int) -> AnalysisResult:
        engine = self._ensure_engine()
        board = chess.Board(fen)
        try:
            result = engine.play(
                board, chess.engine.Limit(time=movetime_ms / 1000), info=chess.engine.INFO_SCORE
            )
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError) as e:
            logger.warning("Engine query failed for %s: %s", fen, e)
            self.close()
            raise EngineUnavailableError(str(e)) from e
        if result.move is None:
            return AnalysisResult(uci=None)
        return AnalysisResult(uci=result.move.uci(), eval_text=format_eval(result.info.get("score")))

    def close(self) -> None:
        if self._engine is not None:
            try:
                self._engine.quit()
            except chess.engine.EngineTerminatedError:
                pass
            self._engine = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

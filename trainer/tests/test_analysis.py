"""Tests for analysis.py"""

import shutil
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import chess
import chess.engine
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from analysis import EngineUnavailableError, StockfishAnalysis, format_eval, move_time_for

AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


def test_move_times_by_strength():
    assert move_time_for("beginner") == 150
    assert move_time_for("intermediate") == 300
    assert move_time_for("strong") == 700
    assert move_time_for(None) == 250
    assert move_time_for("grandmaster") == 250


def test_eval_is_from_whites_perspective():
    assert format_eval(chess.engine.PovScore(chess.engine.Cp(35), chess.WHITE)) == "Engine eval: 0.35"
    assert format_eval(chess.engine.PovScore(chess.engine.Cp(35), chess.BLACK)) == "Engine eval: -0.35"
    assert format_eval(chess.engine.PovScore(chess.engine.Mate(3), chess.BLACK)) == "Engine eval: Mate in 3"
    assert format_eval(None) == ""


def test_best_move_queries_engine_once_started():
    engine = MagicMock()
    engine.play.return_value = chess.engine.PlayResult(
        chess.Move.from_uci("e7e5"), None, {"score": chess.engine.PovScore(chess.engine.Cp(20), chess.BLACK)}
    )
    with patch("chess.engine.SimpleEngine.popen_uci", return_value=engine) as popen:
        analysis = StockfishAnalysis("/opt/stockfish")
        first = analysis.best_move(AFTER_E4, 300)
        analysis.best_move(AFTER_E4, 300)
        analysis.close()

    popen.assert_called_once_with("/opt/stockfish")
    assert first.uci == "e7e5"
    assert first.eval_text == "Engine eval: -0.20"
    board, limit = engine.play.call_args[0]
    assert board.fen() == AFTER_E4
    assert limit.time == 0.3
    engine.quit.assert_called_once()


def test_missing_binary_is_unavailable():
    with patch("chess.engine.SimpleEngine.popen_uci", side_effect=FileNotFoundError):
        with pytest.raises(EngineUnavailableError):
            StockfishAnalysis("missing").best_move(AFTER_E4, 100)


def test_engine_error_closes_process():
    engine = MagicMock()
    engine.play.side_effect = chess.engine.EngineTerminatedError("gone")
    with patch("chess.engine.SimpleEngine.popen_uci", return_value=engine):
        analysis = StockfishAnalysis()
        with pytest.raises(EngineUnavailableError):
            analysis.best_move(AFTER_E4, 100)
    engine.quit.assert_called_once()


@pytest.mark.integration
@pytest.mark.skipif(shutil.which("stockfish") is None, reason="stockfish not installed")
def test_real_stockfish_answers_with_legal_move():
    with StockfishAnalysis("stockfish") as analysis:
        result = analysis.best_move(AFTER_E4, 100)
    assert chess.Move.from_uci(result.uci) in chess.Board(AFTER_E4).legal_moves

"""
Free-play (game mode) session

The opponent answers from the repertoire for the first plies of the game,
then hands over to the analysis engine. Leaving the book, or playing past the
opening's book limit, ends the book phase for the rest of the game.
"""

import logging
import random
import sys
import uuid
from pathlib import Path

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent))
from analysis import AnalysisEngine, EngineUnavailableError, move_time_for
from errors import MissingConfigurationError, NoPlanError
from graph_builder import Repertoire
from models import RepertoireNode
from positions import ChessPositionEngine, PositionEngine, normalize_fen
from session_engine import MoveOutcome, OutcomeKind, PendingStep
from session_plan import SessionPlan, build_plan

logger = logging.getLogger(__name__)


class FreePlaySession:
    def __init__(
        self,
        repertoire: Repertoire,
        analysis: AnalysisEngine | None = None,
        *,
        strength: str | None = None,
        rng: random.Random | None = None,
        engine: PositionEngine | None = None,
        reply_delay: float = 0.0,
    ):
        self.repertoire = repertoire
        self.analysis = analysis
        self.strength = strength
        self.rng = rng or random.Random()
        self.engine = engine or ChessPositionEngine()
        self.reply_delay = reply_delay

        self.game_id = uuid.uuid4().hex
        self.line_id: str | None = None
        self.plan: SessionPlan | None = None
        self.user_side = "white"
        self.board: chess.Board = self.engine.load(repertoire.opening.starting_fen)
        self.book_max_plies = repertoire.opening.book_max_plies
        self.book_plies = 0
        self.in_book = False
        self.moves: list[str] = []
        self.eval_text = ""
        self.status = "Select a line to begin."
        self.comment = ""
        self.pending: PendingStep | None = None
        self._pending_from_book = False
        self._generation = 0
        self._history: list[tuple[str, int, bool]] = []
        self.started = False

    @property
    def fen(self) -> str:
        return self.board.fen()

    @property
    def turn(self) -> str:
        return "white" if self.board.turn == chess.WHITE else "black"

    @property
    def game_over(self) -> bool:
        return self.board.is_game_over()

    @property
    def movetime_ms(self) -> int:
        return move_time_for(self.strength)

    def start(self, line_id: str) -> MoveOutcome:
        line = self.repertoire.line(line_id)
        if line.drill_side is None:
            raise MissingConfigurationError(line_id, "drill_side")
        plan = build_plan(self.repertoire, line_id, self.rng)
        if plan is None:
            raise NoPlanError(line_id)

        self._generation += 1
        self.pending = None
        self.line_id = line_id
        self.plan = plan
        self.user_side = line.drill_side
        self.board = self.engine.load(self.repertoire.start_fen(line_id))
        self.book_plies = 0
        self.in_book = self.book_max_plies > 0
        self.moves = []
        self._history = []
        self.eval_text = ""
        self.started = True
        self.status = "Game mode: your move."
        self.comment = "Play through the opening book, then test yourself against the engine."

        outcome = MoveOutcome(kind=OutcomeKind.STARTED)
        self._next_turn(outcome)
        return outcome

    def book_node(self) -> RepertoireNode | None:
        """The book move for the live position: the planned line first, then any line."""
        key = normalize_fen(self.fen)
        if self.plan is not None:
            depth = self.plan.depth_of(key)
            node = self.plan.node_at(depth) if depth is not None else None
            if node is not None:
                return node
        return self.repertoire.index.best(key, active_line_id=self.line_id)

    def handle_move(self, uci: str) -> MoveOutcome:
        outcome = MoveOutcome(kind=OutcomeKind.INACTIVE, uci=uci)
        if not self.started or self.game_over:
            return outcome
        if self.turn != self.user_side or self.pending is not None:
            outcome.kind = OutcomeKind.NOT_YOUR_TURN
            return outcome

        # book expectation is taken from the position before the move
        before = (self.fen, self.book_plies, self.in_book)
        expected = self.book_node() if self.in_book else None
        result = self.engine.apply_move(self.board, uci)
        if not result.legal:
            outcome.kind = OutcomeKind.ILLEGAL
            self.status = "Illegal move."
            return outcome

        if self.in_book:
            if expected is None or self.book_plies >= self.book_max_plies:
                self.in_book = False
            elif uci in expected.record.acceptable_moves:
                self.book_plies += 1
            else:
                self.in_book = False
                self.comment = "You left the book. The engine takes over."

        outcome.kind = OutcomeKind.ACCEPTED
        outcome.san = result.san
        outcome.is_capture = result.is_capture
        self._push(result.new_fen, result.san, before)
        self._next_turn(outcome)
        return outcome

    def fire(self, step: PendingStep) -> MoveOutcome | None:
        if (
            self.pending is None
            or step.generation != self._generation
            or step.plan_id != self.game_id
            or step.fen != self.fen
            or step.uci != self.pending.uci
        ):
            return None
        self.pending = None
        outcome = MoveOutcome(kind=OutcomeKind.REPLIED)
        if self._play(step.uci, outcome, self._pending_from_book):
            self._next_turn(outcome)
        return outcome

    def undo(self) -> int:
        if not self._history:
            return 0
        self._generation += 1
        self.pending = None
        undone = 0
        while self._history:
            fen, self.book_plies, self.in_book = self._history.pop()
            self.board = self.engine.load(fen)
            self.moves.pop()
            undone += 1
            if self.turn == self.user_side:
                break
        self.status = "Move taken back."
        if self.turn != self.user_side:
            self._next_turn(MoveOutcome(kind=OutcomeKind.REPLIED))
        return undone

    def _push(self, new_fen: str, san: str | None, before: tuple | None = None) -> None:
        self._history.append(before or (self.fen, self.book_plies, self.in_book))
        self.board = self.engine.load(new_fen)
        self.moves.append(san)

    def _play(self, uci: str, outcome: MoveOutcome, from_book: bool) -> bool:
        result = self.engine.apply_move(self.board, uci)
        if not result.legal:
            self.status = "Engine move failed."
            return False
        self._push(result.new_fen, result.san)
        if from_book:
            self.book_plies += 1
            if self.book_plies >= self.book_max_plies:
                self.in_book = False
        outcome.replies.append(uci)
        self.status = "Opponent move played."
        return True

    def _choose_reply(self) -> tuple[str, bool] | None:
        """The opponent move and whether it comes from the book."""
        if self.in_book:
            node = self.book_node()
            if node is not None and self.engine.apply_move(self.board, node.move_uci).legal:
                return node.move_uci, True
            self.in_book = False

        if self.analysis is None:
            self.status = "Engine unavailable."
            return None
        try:
            result = self.analysis.best_move(self.fen, self.movetime_ms)
        except EngineUnavailableError as e:
            logger.warning("Analysis engine unavailable: %s", e)
            self.status = "Engine unavailable."
            return None
        if result.eval_text:
            self.eval_text = result.eval_text
        if not result.uci or result.uci == "(none)":
            self.status = "Engine found no move."
            return None
        return result.uci, False

    def _next_turn(self, outcome: MoveOutcome) -> None:
        while True:
            if self.game_over:
                self.status = "Game over."
                return
            if self.turn == self.user_side:
                if not outcome.replies:
                    self.status = "Your move."
                return
            reply = self._choose_reply()
            if reply is None:
                return
            uci, from_book = reply
            if self.reply_delay > 0:
                self.pending = PendingStep(self._generation, self.game_id, self.fen, uci)
                self._pending_from_book = from_book
                outcome.pending = self.pending
                self.status = "Opponent is thinking."
                return
            if not self._play(uci, outcome, from_book):
                return

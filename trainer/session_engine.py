"""
Drill session engine

Walks a learner through one session plan. Every committed move goes through
the same sync step: the live position is looked up in the plan, then (where
transpositions are allowed) in the opening's transposition index, and the
session either advances, re-roots onto another line, completes, or stops as
out of line.

States: idle -> planned -> advancing -> (out_of_line | completed)
"""

import logging
import random
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent))
from errors import MissingConfigurationError, NoPlanError
from graph_builder import Repertoire
from models import MistakeTemplate, RepertoireNode
from positions import ChessPositionEngine, MoveResult, PositionEngine, normalize_fen
from scheduler import session_quality
from session_plan import SessionPlan, build_plan

logger = logging.getLogger(__name__)

LEARNING = "learning"
PRACTICE = "practice"
DRILL_MODES = (LEARNING, PRACTICE)

WRONG_ATTEMPTS_FOR_LAPSE = 3


class SessionState(str, Enum):
    IDLE = "idle"
    PLANNED = "planned"
    ADVANCING = "advancing"
    OUT_OF_LINE = "out_of_line"
    COMPLETED = "completed"


class OutcomeKind(str, Enum):
    STARTED = "started"
    ACCEPTED = "accepted"
    BRANCHED = "branched"
    REPLIED = "replied"
    MISTAKE = "mistake"
    NOT_IN_REPERTOIRE = "not_in_repertoire"
    ILLEGAL = "illegal"
    NOT_YOUR_TURN = "not_your_turn"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class BranchSwitch:
    from_line_id: str | None
    to_line_id: str
    node_id: str
    reason: str  # "branch" or "transposition"


@dataclass(frozen=True)
class MistakeFeedback:
    code: str
    coach_message: str
    why_wrong: str
    hint: str


@dataclass(frozen=True)
class PendingStep:
    """An opponent reply scheduled for later; stale once the session moves on."""

    generation: int
    plan_id: str
    fen: str
    uci: str

    @property
    def token(self) -> str:
        return f"{self.generation}:{self.plan_id}"


@dataclass
class MoveOutcome:
    kind: OutcomeKind
    uci: str | None = None
    san: str | None = None
    is_capture: bool = False
    expected_uci: str | None = None
    expected_san: str | None = None
    mistake: MistakeFeedback | None = None
    branches: list[BranchSwitch] = field(default_factory=list)
    replies: list[str] = field(default_factory=list)
    pending: PendingStep | None = None
    completed: bool = False


@dataclass(frozen=True)
class _Snapshot:
    fen: str
    plan: SessionPlan | None
    line_id: str | None
    depth: int
    traversed: int
    state: SessionState


class SessionEngine:
    """One learner drilling one opening in learning or practice mode."""

    def __init__(
        self,
        repertoire: Repertoire,
        mistake_templates: Mapping[str, MistakeTemplate] | None = None,
        *,
        mode: str = PRACTICE,
        rng: random.Random | None = None,
        engine: PositionEngine | None = None,
        reply_delay: float = 0.0,
    ):
        if mode not in DRILL_MODES:
            raise ValueError(f"Unknown drill mode '{mode}'")
        self.repertoire = repertoire
        self.mistake_templates = mistake_templates or {}
        self.mode = mode
        self.rng = rng or random.Random()
        self.engine = engine or ChessPositionEngine()
        self.reply_delay = reply_delay

        self.state = SessionState.IDLE
        self.plan: SessionPlan | None = None
        self.line_id: str | None = None
        self.user_side = "white"
        self.board: chess.Board = self.engine.load(repertoire.opening.starting_fen)
        self.depth = 0
        self.traversed = 0
        self.moves: list[str] = []
        self.branches: list[BranchSwitch] = []
        self.pending: PendingStep | None = None
        self.status = "Select a line to begin."
        self.comment = ""
        self._history: list[_Snapshot] = []
        self._generation = 0
        self._reset_counters()

    # -- properties ---------------------------------------------------------

    @property
    def opening_id(self) -> str:
        return self.repertoire.opening.opening_id

    @property
    def fen(self) -> str:
        return self.board.fen()

    @property
    def position_key(self) -> str:
        return normalize_fen(self.board.fen())

    @property
    def turn(self) -> str:
        return "white" if self.board.turn == chess.WHITE else "black"

    @property
    def transpositions_allowed(self) -> bool:
        return self.repertoire.opening.allow_transpositions and self.mode == PRACTICE

    @property
    def completed(self) -> bool:
        return self.state == SessionState.COMPLETED

    @property
    def out_of_line(self) -> bool:
        return self.state == SessionState.OUT_OF_LINE

    @property
    def quality(self) -> int:
        return session_quality(self.mistakes, self.had_lapse)

    # -- lifecycle ----------------------------------------------------------

    def _reset_counters(self) -> None:
        self.mistakes = 0
        self.had_lapse = False
        self._reset_ply_counters()

    def _reset_ply_counters(self) -> None:
        self.wrong_attempts = 0
        self.hint_level = 0
        self.reveal_stage = 0

    def reset(self) -> None:
        """Back to idle; any pending reply becomes stale."""
        self._generation += 1
        self.state = SessionState.IDLE
        self.plan = None
        self.line_id = None
        self.board = self.engine.load(self.repertoire.opening.starting_fen)
        self.depth = 0
        self.traversed = 0
        self.moves = []
        self.branches = []
        self.pending = None
        self._history = []
        self._reset_counters()
        self.status = "Select a line to begin."
        self.comment = ""

    def start(self, line_id: str, node_id: str | None = None) -> MoveOutcome:
        """Plan a drill of ``line_id``, optionally from a mid-line node."""
        line = self.repertoire.line(line_id)
        if line.drill_side is None:
            raise MissingConfigurationError(line_id, "drill_side")

        from_node = None
        if node_id is not None:
            from_node = self.repertoire.node(line_id, node_id)
            if from_node is None:
                raise NoPlanError(line_id, node_id)
        plan = build_plan(self.repertoire, line_id, self.rng, from_node)
        if plan is None:
            raise NoPlanError(line_id, node_id)

        self.reset()
        self.plan = plan
        self.line_id = line_id
        self.user_side = line.drill_side
        start_fen = from_node.fen_before if from_node else self.repertoire.start_fen(line_id)
        self.board = self.engine.load(start_fen)
        self.depth = plan.anchor
        self.traversed = plan.anchor
        self.state = SessionState.PLANNED

        outcome = MoveOutcome(kind=OutcomeKind.STARTED)
        self._after_advance(outcome)
        return outcome

    # -- queries ------------------------------------------------------------

    def expected_node(self) -> RepertoireNode | None:
        """The repertoire move for the live position, or None off-plan."""
        if self.plan is None or self.state in (SessionState.IDLE, SessionState.COMPLETED):
            return None
        key = self.position_key
        if self.state != SessionState.OUT_OF_LINE:
            node = self.plan.node_at(self.depth)
            if node is not None and node.position_key == key:
                return node
        if self.transpositions_allowed:
            return self.repertoire.index.best(key, active_line_id=self.line_id)
        return None

    def line_status(self) -> str:
        if self.line_id is None or self.plan is None:
            return "Select a line to begin."
        line = self.repertoire.line(self.line_id)
        total = len(self.plan)
        return f"Line: {line.label} • Ply {min(self.depth + 1, total)} of {total}"

    # -- moves --------------------------------------------------------------

    def handle_move(self, uci: str) -> MoveOutcome:
        """Apply a learner move in UCI notation."""
        outcome = MoveOutcome(kind=OutcomeKind.INACTIVE, uci=uci)
        if self.state not in (SessionState.PLANNED, SessionState.ADVANCING):
            if self.state == SessionState.COMPLETED:
                self.status = "Line complete."
            elif self.state == SessionState.OUT_OF_LINE:
                self.status = "Out of line. Undo or restart."
            return outcome
        if self.turn != self.user_side:
            outcome.kind = OutcomeKind.NOT_YOUR_TURN
            return outcome

        expected = self.expected_node()
        if expected is None:
            self.status = "No repertoire move here. Undo or restart."
            return outcome

        result = self.engine.apply_move(self.board, uci)
        if not result.legal:
            outcome.kind = OutcomeKind.ILLEGAL
            self.status = "Illegal move."
            return outcome
        outcome.san = result.san
        outcome.is_capture = result.is_capture

        if uci in expected.record.acceptable_moves:
            outcome.kind = OutcomeKind.ACCEPTED
            self._push(result, self._snapshot())
            if self.mode == LEARNING:
                self.comment = expected.record.learn_explain or "Good move. Continue."
            else:
                self.comment = expected.record.practice_good or "Correct."
            self._sync(outcome)
            self._after_advance(outcome, keep_comment=True)
            return outcome

        snapshot = self._snapshot()
        for branch in self._branch_candidates(uci, expected):
            if not self._reroot(branch, outcome, reason="branch"):
                continue
            self._push(result, snapshot)
            if branch.line_id == snapshot.line_id:
                # another branch of the line being drilled
                outcome.kind = OutcomeKind.ACCEPTED
                self.comment = branch.record.practice_good or "Correct."
                if self.mode == LEARNING:
                    self.comment = branch.record.learn_explain or "Good move. Continue."
            else:
                outcome.kind = OutcomeKind.BRANCHED
                self.mistakes += 1
                self.had_lapse = True
                self.comment = f"Switched to {self.repertoire.line(branch.line_id).label}."
            self._sync(outcome)
            self._after_advance(outcome, keep_comment=True)
            return outcome

        self._record_wrong_move(uci, expected, outcome)
        return outcome

    def _can_reroot_onto(self, node: RepertoireNode) -> bool:
        """Only lines drilled from the learner's side can take over the session."""
        return self.repertoire.line(node.line_id).drill_side == self.user_side

    def _branch_candidates(self, uci: str, expected: RepertoireNode) -> list[RepertoireNode]:
        candidates = self.repertoire.index.nodes_for_move(
            self.position_key, uci, active_line_id=self.line_id, exclude=[expected.ref]
        )
        return [n for n in candidates if self._can_reroot_onto(n)]

    def _record_wrong_move(self, uci: str, expected: RepertoireNode, outcome: MoveOutcome) -> None:
        self.mistakes += 1
        self.wrong_attempts += 1
        if self.wrong_attempts >= WRONG_ATTEMPTS_FOR_LAPSE:
            self.had_lapse = True

        outcome.expected_uci = expected.move_uci
        outcome.expected_san = expected.move_san
        outcome.mistake = self.lookup_mistake(uci, expected)
        outcome.kind = OutcomeKind.MISTAKE if outcome.mistake else OutcomeKind.NOT_IN_REPERTOIRE

        if self.mode == LEARNING:
            self.comment = expected.record.practice_bad or "Try again."
            self.status = "Not quite. Try again."
            return
        if outcome.mistake is not None:
            self.comment = outcome.mistake.coach_message or outcome.mistake.why_wrong
        else:
            self.comment = expected.record.practice_bad or "Not in your repertoire. Try again."
        self.status = "Incorrect. Try again."

    def lookup_mistake(self, uci: str, expected: RepertoireNode) -> MistakeFeedback | None:
        code = expected.record.mistake_map.get(uci)
        if not code:
            return None
        template = self.mistake_templates.get(code)
        if template is None:
            return None
        return MistakeFeedback(code, template.coach_message, template.why_wrong, template.hint)

    def fire(self, step: PendingStep) -> MoveOutcome | None:
        """Play a delayed opponent reply if it still matches the session."""
        if (
            self.pending is None
            or step.generation != self._generation
            or self.plan is None
            or step.plan_id != self.plan.plan_id
            or step.fen != self.fen
        ):
            return None
        expected = self.expected_node()
        if expected is None or expected.move_uci != step.uci:
            return None
        self.pending = None
        outcome = MoveOutcome(kind=OutcomeKind.REPLIED)
        self._play_reply(expected, outcome)
        self._after_advance(outcome)
        return outcome

    def undo(self) -> int:
        """Take back plies until it is the learner's turn again."""
        if not self._history:
            return 0
        self._generation += 1
        self.pending = None
        undone = 0
        while self._history:
            snapshot = self._history.pop()
            self._restore(snapshot)
            undone += 1
            if self.turn == self.user_side:
                break
        del self.moves[len(self._history):]
        self._reset_ply_counters()
        self.status = "Move taken back."
        if self.turn != self.user_side:
            # only scripted opponent plies were left to take back
            self._after_advance(MoveOutcome(kind=OutcomeKind.REPLIED))
        return undone

    # -- hints --------------------------------------------------------------

    def hint(self) -> str | None:
        if self.mode != PRACTICE:
            return None
        node = self.expected_node()
        if node is None:
            return None
        if self.hint_level == 0 and node.record.practice_hint:
            self.comment = f"Hint: {node.record.practice_hint}"
            self.hint_level = 1
        elif self.hint_level == 1 and node.record.practice_deep_hint:
            self.comment = f"Deep hint: {node.record.practice_deep_hint}"
            self.hint_level = 2
        else:
            self.comment = "Keep trying. Make a few attempts to unlock more hints."
        return self.comment

    def reveal(self) -> str | None:
        """First reveal shows the deep hint; the next shows the move and counts as a lapse."""
        if self.mode != PRACTICE:
            return None
        node = self.expected_node()
        if node is None:
            return None
        if self.reveal_stage == 0 and self.hint_level < 2 and node.record.practice_deep_hint:
            self.comment = f"Deep hint: {node.record.practice_deep_hint}"
            self.hint_level = 2
            self.reveal_stage = 1
            return self.comment
        self.comment = f"Correct move: {node.move_san}"
        self.reveal_stage = 2
        self.had_lapse = True
        return self.comment

    # -- internals ----------------------------------------------------------

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(self.fen, self.plan, self.line_id, self.depth, self.traversed, self.state)

    def _restore(self, snapshot: _Snapshot) -> None:
        self.board = self.engine.load(snapshot.fen)
        self.plan = snapshot.plan
        self.line_id = snapshot.line_id
        self.depth = snapshot.depth
        self.traversed = snapshot.traversed
        self.state = snapshot.state

    def _push(self, result: MoveResult, snapshot: _Snapshot) -> None:
        self._history.append(snapshot)
        self.board = self.engine.load(result.new_fen)
        self.moves.append(result.san)
        self.traversed += 1

    def _reroot(self, node: RepertoireNode, outcome: MoveOutcome, reason: str) -> bool:
        plan = build_plan(self.repertoire, node.line_id, self.rng, from_node=node)
        if plan is None:
            return False
        switch = BranchSwitch(self.line_id, node.line_id, node.node_id, reason)
        logger.info("Session re-rooted from %s to %s at node %s (%s)", self.line_id, node.line_id, node.node_id, reason)
        self.plan = plan
        self.line_id = node.line_id
        self.depth = plan.anchor
        self.traversed = plan.anchor
        self.branches.append(switch)
        outcome.branches.append(switch)
        return True

    def _sync(self, outcome: MoveOutcome) -> None:
        """Place the live position in the plan, re-root, or mark out of line."""
        key = self.position_key
        depth = self.plan.depth_of(key, hint=self.depth)
        if depth is not None:
            self.depth = depth
            plan_length = len(self.plan)
            if key == self.plan.terminal_key and depth == plan_length and self.traversed == plan_length:
                self.state = SessionState.COMPLETED
                outcome.completed = True
            else:
                self.state = SessionState.ADVANCING
            return

        if self.transpositions_allowed:
            for node in self.repertoire.index.lookup(key, active_line_id=self.line_id):
                if self.plan.contains(node) or not self._can_reroot_onto(node):
                    continue
                if self._reroot(node, outcome, reason="transposition"):
                    self.state = SessionState.ADVANCING
                    return

        self.state = SessionState.OUT_OF_LINE

    def _play_reply(self, expected: RepertoireNode, outcome: MoveOutcome) -> bool:
        result = self.engine.apply_move(self.board, expected.move_uci)
        if not result.legal:
            self.status = "Opponent move failed."
            self.state = SessionState.OUT_OF_LINE
            return False
        self._push(result, self._snapshot())
        self._reset_ply_counters()
        outcome.replies.append(expected.move_uci)
        self._sync(outcome)
        return True

    def _after_advance(self, outcome: MoveOutcome, keep_comment: bool = False) -> None:
        """Auto-play opponent plies, then set the learner-facing status."""
        while self.state in (SessionState.PLANNED, SessionState.ADVANCING) and self.turn != self.user_side:
            expected = self.expected_node()
            if expected is None:
                break
            if self.reply_delay > 0:
                self.pending = PendingStep(self._generation, self.plan.plan_id, self.fen, expected.move_uci)
                outcome.pending = self.pending
                self.status = "Opponent is thinking."
                return
            if not self._play_reply(expected, outcome):
                return

        if self.state == SessionState.COMPLETED:
            self.status = "Line complete."
            self.comment = "Line complete. Great work!"
        elif self.state == SessionState.OUT_OF_LINE:
            self.status = "Out of line. Undo or restart."
        elif self.turn == self.user_side:
            expected = self.expected_node()
            if expected is None:
                self.status = "No repertoire move here. Undo or restart."
            else:
                self.status = "Your move." if not outcome.replies else "Opponent move played."
                prompt = expected.record.learn_prompt
                if self.mode == LEARNING and (prompt or not keep_comment):
                    self.comment = prompt or "Your move."

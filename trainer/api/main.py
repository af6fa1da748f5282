"""
FastAPI Training API for the Chess Repertoire Trainer

Endpoints:
  GET /openings  - Published openings
  GET /openings/{opening_id}/lines?due_only=...  - Lines with review info
  GET /openings/{opening_id}/diagnostics  - Records dropped while building
  POST /sessions  - Start a learning, practice or game session
  GET /sessions/{session_id}  - Session view
  DELETE /sessions/{session_id}  - End a session
  POST /sessions/{session_id}/moves  - Play a learner move
  POST /sessions/{session_id}/undo  - Take back to the learner's last turn
  POST /sessions/{session_id}/hint  - Next hint for the expected move
  POST /sessions/{session_id}/reveal  - Deep hint, then the move itself
  POST /sessions/{session_id}/reply  - Play a delayed opponent reply
"""

import logging
import os
import random
import sys
import threading
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from analysis import StockfishAnalysis
from errors import MissingConfigurationError, NoPlanError, TrainerError, UnknownLineError, UnknownOpeningError
from free_play import FreePlaySession
from graph_builder import Catalog, build_catalog
from line_selector import filter_pool, pick_line, playable_lines
from models import line_key
from records import load_bundle
from review_store import store_from_env
from scheduler import ReviewScheduler, format_due_info, format_due_label, is_due, progress_text, selection_weight
from session_engine import LEARNING, PRACTICE, MoveOutcome, SessionEngine

logger = logging.getLogger(__name__)

REPERTOIRE_PATH = os.environ.get("REPERTOIRE_PATH", "data/repertoire.json")
OPPONENT_REPLY_DELAY_MS = int(os.environ.get("OPPONENT_REPLY_DELAY_MS", "0"))
SESSION_IDLE_SECONDS = int(os.environ.get("SESSION_IDLE_SECONDS", "1800"))
MAX_SESSIONS = int(os.environ.get("MAX_SESSIONS", "500"))

_catalog: Catalog | None = None
_scheduler: ReviewScheduler | None = None
# guards SESSIONS and the shared scheduler; each session has its own lock
_state_lock = threading.Lock()


def get_catalog() -> Catalog:
    """Build the catalog from REPERTOIRE_PATH on first use."""
    global _catalog
    if _catalog is None:
        try:
            bundle = load_bundle(REPERTOIRE_PATH)
        except (FileNotFoundError, ValueError) as e:
            raise HTTPException(status_code=503, detail=f"Repertoire unavailable: {e}")
        _catalog = build_catalog(bundle)
        if _catalog.diagnostics:
            logger.warning("Repertoire built with %d dropped records", len(_catalog.diagnostics))
    return _catalog


def get_scheduler() -> ReviewScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = ReviewScheduler(store_from_env())
    return _scheduler


@dataclass
class ActiveSession:
    session: SessionEngine | FreePlaySession
    opening_id: str
    mode: str
    recorded_plan_id: str | None = None
    analysis: StockfishAnalysis | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_used: float = field(default_factory=time.monotonic)

    def close(self) -> None:
        """Stop the analysis engine once no request is using the session."""
        if self.analysis is not None:
            with self.lock:
                self.analysis.close()


SESSIONS: dict[str, ActiveSession] = {}


def evict_sessions(now: float | None = None) -> list[ActiveSession]:
    """Drop idle sessions, then the least recently used ones beyond MAX_SESSIONS.

    Caller holds _state_lock and closes the returned sessions after releasing it.
    """
    now = time.monotonic() if now is None else now
    evicted = []
    for session_id, active in list(SESSIONS.items()):
        if now - active.last_used > SESSION_IDLE_SECONDS:
            evicted.append(SESSIONS.pop(session_id))
    overflow = len(SESSIONS) - MAX_SESSIONS
    if overflow > 0:
        oldest = sorted(SESSIONS, key=lambda sid: SESSIONS[sid].last_used)[:overflow]
        evicted.extend(SESSIONS.pop(sid) for sid in oldest)
    if evicted:
        logger.info("Evicted %d sessions", len(evicted))
    return evicted


def close_all_sessions() -> None:
    with _state_lock:
        sessions = list(SESSIONS.values())
        SESSIONS.clear()
    for active in sessions:
        active.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_all_sessions()


app = FastAPI(title="Chess Repertoire Trainer API", version="1.0.0", lifespan=lifespan)


class CreateSessionRequest(BaseModel):
    opening_id: str
    line_id: str = "any"
    node_id: str | None = None
    mode: Literal["learning", "practice", "game"] = "practice"
    due_only: bool = False
    strength: str | None = None


class MoveRequest(BaseModel):
    uci: str


class ReplyRequest(BaseModel):
    token: str


def raise_for(error: TrainerError):
    """Map trainer errors onto HTTP status codes."""
    if isinstance(error, (UnknownOpeningError, UnknownLineError)):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, NoPlanError):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, MissingConfigurationError):
        raise HTTPException(status_code=422, detail=str(error))
    raise HTTPException(status_code=400, detail=str(error))


def get_active(session_id: str) -> ActiveSession:
    active = SESSIONS.get(session_id)
    if active is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return active


@contextmanager
def locked_session(session_id: str):
    """Hold one session's lock; other sessions keep running meanwhile."""
    with _state_lock:
        active = get_active(session_id)
        active.last_used = time.monotonic()
    with active.lock:
        yield active


def outcome_to_response(outcome: MoveOutcome | None) -> dict | None:
    if outcome is None:
        return None
    return {
        "kind": outcome.kind.value,
        "uci": outcome.uci,
        "san": outcome.san,
        "is_capture": outcome.is_capture,
        "expected_uci": outcome.expected_uci,
        "expected_san": outcome.expected_san,
        "mistake": {
            "code": outcome.mistake.code,
            "coach_message": outcome.mistake.coach_message,
            "why_wrong": outcome.mistake.why_wrong,
            "hint": outcome.mistake.hint,
        } if outcome.mistake else None,
        "branches": [
            {
                "from_line_id": b.from_line_id,
                "to_line_id": b.to_line_id,
                "node_id": b.node_id,
                "reason": b.reason,
            }
            for b in outcome.branches
        ],
        "replies": outcome.replies,
        "completed": outcome.completed,
    }


def session_to_response(session_id: str, active: ActiveSession) -> dict:
    """Convert a session to its API view."""
    session = active.session
    pending = session.pending
    view = {
        "session_id": session_id,
        "opening_id": active.opening_id,
        "mode": active.mode,
        "line_id": session.line_id,
        "fen": session.fen,
        "turn": session.turn,
        "user_side": session.user_side,
        "moves": list(session.moves),
        "legal_moves": session.engine.legal_moves(session.board),
        "status": session.status,
        "comment": session.comment,
        "pending_reply": {"token": pending.token, "delay_ms": OPPONENT_REPLY_DELAY_MS} if pending else None,
    }
    if isinstance(session, FreePlaySession):
        view.update({
            "in_book": session.in_book,
            "book_plies": session.book_plies,
            "eval": session.eval_text,
            "game_over": session.game_over,
        })
        return view

    expected = session.expected_node() if active.mode == LEARNING else None
    view.update({
        "state": session.state.value,
        "line_status": session.line_status(),
        "expected_move": {"uci": expected.move_uci, "san": expected.move_san} if expected else None,
        "out_of_line": session.out_of_line,
        "completed": session.completed,
        "mistakes": session.mistakes,
        "branches": [
            {"from_line_id": b.from_line_id, "to_line_id": b.to_line_id, "node_id": b.node_id, "reason": b.reason}
            for b in session.branches
        ],
    })
    if session.line_id is not None:
        scheduler = get_scheduler()
        with _state_lock:
            record = scheduler.get(line_key(active.opening_id, session.line_id))
        view["progress"] = progress_text(record)
        view["due_info"] = format_due_info(record, scheduler.today())
    return view


def record_completion(active: ActiveSession) -> None:
    """Record a finished drill once per plan."""
    session = active.session
    if not isinstance(session, SessionEngine) or not session.completed:
        return
    if active.recorded_plan_id == session.plan.plan_id:
        return
    active.recorded_plan_id = session.plan.plan_id
    key = line_key(active.opening_id, session.line_id)
    scheduler = get_scheduler()
    with _state_lock:
        if active.mode == PRACTICE:
            scheduler.record_review(key, session.quality, session.mistakes)
        else:
            scheduler.record_study(key)


@app.get("/openings")
def list_openings():
    """Published openings."""
    catalog = get_catalog()
    return [
        {
            "opening_id": o.opening_id,
            "name": o.name or o.opening_id,
            "book_max_plies": o.book_max_plies,
            "allow_transpositions": o.allow_transpositions,
            "line_count": len(playable_lines(catalog.repertoire(o.opening_id))),
        }
        for o in catalog.published()
    ]


@app.get("/openings/{opening_id}/lines")
def list_lines(opening_id: str, due_only: bool = Query(False)):
    """Playable lines with due info; the due filter falls back to every line."""
    try:
        repertoire = get_catalog().repertoire(opening_id)
    except TrainerError as e:
        raise_for(e)
    scheduler = get_scheduler()
    today = scheduler.today()
    lines = playable_lines(repertoire)
    with _state_lock:
        if due_only:
            lines = filter_pool(lines, lambda line: scheduler.is_due(line_key(opening_id, line.line_id)))
        records = [scheduler.get(line_key(opening_id, line.line_id)) for line in lines]
    result = []
    for line, record in zip(lines, records):
        result.append({
            "line_id": line.line_id,
            "name": line.label,
            "priority": line.priority,
            "drill_side": line.drill_side,
            "due": is_due(record, today),
            "due_label": format_due_label(record, today),
            "due_info": format_due_info(record, today),
            "progress": progress_text(record),
            "weight": selection_weight(line, record),
        })
    return result


@app.get("/openings/{opening_id}/diagnostics")
def list_diagnostics(opening_id: str):
    try:
        repertoire = get_catalog().repertoire(opening_id)
    except TrainerError as e:
        raise_for(e)
    return [
        {"line_id": d.line_id, "node_id": d.node_id, "message": d.message}
        for d in repertoire.diagnostics
    ]


@app.post("/sessions", status_code=201)
def create_session(body: CreateSessionRequest):
    """Start a session on a chosen line, or let the selector pick one."""
    try:
        repertoire = get_catalog().repertoire(body.opening_id)
    except TrainerError as e:
        raise_for(e)
    catalog = get_catalog()
    scheduler = get_scheduler()
    reply_delay = OPPONENT_REPLY_DELAY_MS / 1000

    line_id = body.line_id
    if line_id == "any":
        with _state_lock:
            line = pick_line(repertoire, scheduler, due_only=body.due_only, rng=random.Random())
        if line is None:
            raise HTTPException(status_code=409, detail="No playable lines for this opening")
        line_id = line.line_id

    analysis = None
    try:
        if body.mode == "game":
            analysis = StockfishAnalysis()
            session = FreePlaySession(
                repertoire, analysis, strength=body.strength, reply_delay=reply_delay
            )
            session.start(line_id)
        else:
            session = SessionEngine(
                repertoire, catalog.mistake_templates, mode=body.mode, reply_delay=reply_delay
            )
            session.start(line_id, body.node_id)
    except TrainerError as e:
        if analysis is not None:
            analysis.close()
        raise_for(e)

    session_id = uuid.uuid4().hex
    active = ActiveSession(session=session, opening_id=body.opening_id, mode=body.mode, analysis=analysis)
    with _state_lock:
        SESSIONS[session_id] = active
        evicted = evict_sessions()
    for old in evicted:
        old.close()
    with active.lock:
        record_completion(active)
        return session_to_response(session_id, active)


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    with locked_session(session_id) as active:
        return session_to_response(session_id, active)


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    with _state_lock:
        active = SESSIONS.pop(session_id, None)
    if active is None:
        raise HTTPException(status_code=404, detail="Session not found")
    active.close()
    return {"deleted": session_id}


@app.post("/sessions/{session_id}/moves")
def play_move(session_id: str, body: MoveRequest):
    with locked_session(session_id) as active:
        outcome = active.session.handle_move(body.uci.strip())
        record_completion(active)
        view = session_to_response(session_id, active)
        view["outcome"] = outcome_to_response(outcome)
        return view


@app.post("/sessions/{session_id}/undo")
def undo_move(session_id: str):
    with locked_session(session_id) as active:
        undone = active.session.undo()
        view = session_to_response(session_id, active)
        view["undone"] = undone
        return view


@app.post("/sessions/{session_id}/hint")
def request_hint(session_id: str):
    with locked_session(session_id) as active:
        if not isinstance(active.session, SessionEngine):
            raise HTTPException(status_code=409, detail="Hints are not available in game mode")
        hint = active.session.hint()
        view = session_to_response(session_id, active)
        view["hint"] = hint
        return view


@app.post("/sessions/{session_id}/reveal")
def reveal_move(session_id: str):
    with locked_session(session_id) as active:
        if not isinstance(active.session, SessionEngine):
            raise HTTPException(status_code=409, detail="Reveal is not available in game mode")
        revealed = active.session.reveal()
        view = session_to_response(session_id, active)
        view["hint"] = revealed
        return view


@app.post("/sessions/{session_id}/reply")
def play_reply(session_id: str, body: ReplyRequest):
    """Play the pending opponent reply named by ``token``; stale tokens are rejected."""
    with locked_session(session_id) as active:
        pending = active.session.pending
        if pending is None or pending.token != body.token:
            raise HTTPException(status_code=409, detail="Reply is no longer pending")
        outcome = active.session.fire(pending)
        if outcome is None:
            raise HTTPException(status_code=409, detail="Reply is no longer pending")
        record_completion(active)
        view = session_to_response(session_id, active)
        view["outcome"] = outcome_to_response(outcome)
        return view


@app.get("/health")
def health():
    return {"status": "ok"}

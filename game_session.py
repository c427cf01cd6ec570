# game_session.py — one game's lifecycle: stream → decide → move
"""
Game session controller.

One controller owns one game and runs on its own thread.  It consumes the
game stream strictly in order, replays the full move history on every
update, and when it is the bot's turn asks the MoveSelector for a move,
submits it, and optionally starts pondering on the predicted reply.

Error policy:
  * unreadable update        -> logged, skipped
  * bad/illegal move history -> PositionIntegrityError, session ends
  * engine trouble           -> handled in the selector (book / random move)
  * move submission failure  -> logged, session continues
"""
import random
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import chess

from bot_config import BotProfile
from bot_log import game_log_close, game_log_open, game_log_write, log, log_exc
from compute_time_management import Clock, ponder_clock
from lichess_api import API_ERRORS, LichessApi
from move_selector import MoveChoice, MoveSelector, MoveSource
from opening_book import OpeningBook
from ponder_tracker import PonderOutcome, PonderTracker
from position import PositionIntegrityError, position_key, replay_moves, split_moves
from search_engine import UciSearch, spawn_search

TERMINAL_STATUSES = {
    "aborted", "mate", "resign", "stalemate", "timeout", "outoftime",
    "draw", "nostart", "cheat", "variantend", "unknownfinish",
}
ONGOING_STATUSES = {"created", "started"}
IGNORED_EVENTS = {"chatLine", "opponentGone"}


class SharedBotState:
    """
    Status mirror readable from outside the game threads.

    Every write takes the lock for a single field update only.
    """

    _fields = ("current_position_key", "engine_thinking", "streaming")

    def __init__(self):
        self._lock = threading.Lock()
        self.current_position_key: Optional[str] = None
        self.engine_thinking = False
        self.streaming = False

    def update(self, **changes):
        for name, value in changes.items():
            if name not in self._fields:
                raise AttributeError(f"SharedBotState has no field {name!r}")
            with self._lock:
                setattr(self, name, value)

    def snapshot(self) -> dict:
        with self._lock:
            return {name: getattr(self, name) for name in self._fields}


def player_name(p: Optional[dict]) -> str:
    p = p or {}
    if p.get("aiLevel") is not None:
        return f"Stockfish AI level {p['aiLevel']}"
    return p.get("name") or p.get("id") or "?"


def _same_player(bot_name: str, p: Optional[dict]) -> bool:
    me = (bot_name or "").lower()
    if not me:
        return False
    p = p or {}
    return me in {(p.get("name") or "").lower(), (p.get("id") or "").lower(), player_name(p).lower()}


@dataclass
class GameSession:
    game_id: str
    bot_color: Optional[chess.Color] = None
    clock: Clock = field(default_factory=Clock)
    moves_played: List[str] = field(default_factory=list)
    current_position_key: str = field(default_factory=lambda: position_key(chess.Board()))
    search: Optional[UciSearch] = None
    ponder: PonderTracker = field(default_factory=PonderTracker)
    sources: Counter = field(default_factory=Counter)

    @property
    def pending_ponder(self) -> Optional[str]:
        return self.ponder.pending

    def apply_history(self, moves: List[str]) -> chess.Board:
        """Replay `moves` from the start; the history may only grow."""
        if moves[:len(self.moves_played)] != self.moves_played:
            raise PositionIntegrityError(
                f"history rewritten: had {len(self.moves_played)} plies, got {' '.join(moves) or '(empty)'}"
            )
        board = replay_moves(moves)
        self.moves_played = list(moves)
        self.current_position_key = position_key(board)
        return board


class GameSessionController:
    def __init__(
        self,
        game_id: str,
        api: LichessApi,
        profile: BotProfile,
        book: Optional[OpeningBook] = None,
        shared: Optional[SharedBotState] = None,
        search_factory: Callable[[BotProfile, str], Optional[UciSearch]] = spawn_search,
        rng: Optional[random.Random] = None,
        timer_factory=threading.Timer,
    ):
        self.game_id = game_id
        self.api = api
        self.profile = profile
        self.book = book
        self.shared = shared or SharedBotState()
        self.search_factory = search_factory
        self.rng = rng or random.Random()
        self.timer_factory = timer_factory

        self.session = GameSession(game_id)
        self.selector: Optional[MoveSelector] = None
        self.opponent = "?"
        self.finished_status: Optional[str] = None
        self._last_played_ply: Optional[int] = None
        self._abort_timer = None
        self._progress = False
        self._closed = False
        self._guard = threading.Lock()

    # ----------------
    # Lifecycle
    # ----------------

    def start(self):
        gid = self.game_id
        log(f"Starting game {gid}", "🎬", gid=gid)
        game_log_open(gid)
        self._arm_abort_timer()
        self.session.search = self.search_factory(self.profile, gid)
        if self.session.search is None:
            log("No engine for this game; book and random moves only.", "ℹ️", gid=gid)
        self.selector = MoveSelector(
            book=self.book,
            mixedness=self.profile.book_mixedness,
            max_book_depth=self.profile.max_book_depth,
            search=self.session.search,
            overhead_ms=self.profile.move_overhead_ms,
            rng=self.rng,
            gid=gid,
        )

    def run(self):
        """Play the game until its stream ends or its position can't be trusted."""
        try:
            self.start()
            for event in self.api.stream_game_state(self.game_id):
                self.handle_event(event)
        except PositionIntegrityError as e:
            log(f"Position integrity lost ({e}); leaving the game.", "🛑", gid=self.game_id)
        except API_ERRORS as e:
            log_exc("game stream", e, gid=self.game_id)
        finally:
            self.close()

    def close(self):
        with self._guard:
            if self._closed:
                return
            self._closed = True
        self._cancel_abort_timer()
        search = self.session.search
        if self.session.ponder.cancel():
            log("Discarding speculative search.", "🧹", gid=self.game_id)
        if search is not None:
            search.stop()
            search.quit()
            self.session.search = None
        s = self.session
        summary = {
            "plies": len(s.moves_played),
            "book": s.sources[MoveSource.BOOK.value],
            "search": s.sources[MoveSource.SEARCH.value],
            "random": s.sources[MoveSource.RANDOM_FALLBACK.value],
            "ponder_hits": s.ponder.hits,
            "ponder_misses": s.ponder.misses,
        }
        log(
            f"Finished game {self.game_id} ({self.finished_status or 'stream closed'}) | "
            + " ".join(f"{k}={v}" for k, v in summary.items()),
            "🏁", gid=self.game_id,
        )
        game_log_write(self.game_id, {"type": "game_end", "gid": self.game_id,
                                      "status": self.finished_status, **summary})
        game_log_close(self.game_id)

    # ----------------
    # Abort timer
    # ----------------

    def _arm_abort_timer(self):
        grace = self.profile.abort_grace_sec
        if not grace or grace <= 0:
            return
        self._abort_timer = self.timer_factory(grace, self._abort_if_idle)
        self._abort_timer.daemon = True
        self._abort_timer.start()

    def _cancel_abort_timer(self):
        timer, self._abort_timer = self._abort_timer, None
        if timer is not None:
            timer.cancel()

    def _note_progress(self):
        with self._guard:
            if self._progress:
                return
            self._progress = True
        self._cancel_abort_timer()

    def _abort_if_idle(self):
        with self._guard:
            if self._progress or self._closed:
                return
        log(f"No move within {self.profile.abort_grace_sec:.0f}s; aborting.", "⏳", gid=self.game_id)
        self.api.abort_game(self.game_id)

    # ----------------
    # Updates
    # ----------------

    def handle_event(self, event: dict):
        """Process one stream update. Unreadable updates are logged and skipped."""
        try:
            turn = self._ingest(event)
        except PositionIntegrityError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            log_exc("unreadable game update", e, gid=self.game_id)
            return
        if turn is not None:
            self._play(*turn)

    def _ingest(self, event: dict) -> Optional[Tuple[chess.Board, List[str]]]:
        """Apply an update; returns (board, moves) when the bot has to move."""
        et = (event.get("type") or "").strip()
        if et == "gameFull":
            self._on_full(event)
            state = event.get("state") or {}
        elif et == "gameState":
            state = event
        elif et in IGNORED_EVENTS:
            return None
        else:
            log(f"Unhandled game event {et or '?'}", "❓", gid=self.game_id)
            return None
        return self._on_state(state)

    def _on_full(self, ev: dict):
        white, black = ev.get("white") or {}, ev.get("black") or {}
        color = chess.BLACK if _same_player(self.profile.name, black) else chess.WHITE
        self.session.bot_color = color
        opp = black if color == chess.WHITE else white
        self.opponent = player_name(opp)
        coltxt = "White" if color == chess.WHITE else "Black"
        speed = ev.get("speed") or "?"
        log(f"{player_name(white)} - {player_name(black)} | bot plays {coltxt} | {speed}", "♟️", gid=self.game_id)
        game_log_write(self.game_id, {
            "type": "game_start",
            "gid": self.game_id,
            "color": coltxt.lower(),
            "opponent": self.opponent,
            "opponent_rating": opp.get("rating"),
            "speed": speed,
            "rated": ev.get("rated"),
        })

    def _on_state(self, st: dict) -> Optional[Tuple[chess.Board, List[str]]]:
        status = (st.get("status") or "started").lower()
        if status not in ONGOING_STATUSES:
            # informational; the stream's end is what finishes the session
            winner = st.get("winner") or "n/a"
            log(f"Status update: {status} (winner={winner})", "🔚", gid=self.game_id)
            if status in TERMINAL_STATUSES:
                self.finished_status = status
            return None

        moves = split_moves(st.get("moves"))
        board = self.session.apply_history(moves)
        if moves:
            self._note_progress()
        self.session.clock = Clock.from_state(st)
        self.shared.update(current_position_key=self.session.current_position_key)

        if not self.is_bot_turn(board):
            return None
        if self._last_played_ply == len(moves):
            return None  # repeated state (draw offer etc.), already answered
        return board, moves

    def is_bot_turn(self, board: chess.Board) -> bool:
        return self.session.bot_color is not None and board.turn == self.session.bot_color

    # ----------------
    # Decision
    # ----------------

    def _play(self, board: chess.Board, moves: List[str]):
        s = self.session
        outcome = s.ponder.reconcile(moves[-1] if moves else None)
        if outcome != PonderOutcome.NONE:
            log(f"Ponder {outcome.value} on {moves[-1]}", "🔮", gid=self.game_id)

        t0 = time.perf_counter()
        self.shared.update(engine_thinking=True)
        try:
            choice = self.selector.select_move(board, moves, s.clock, outcome)
        finally:
            self.shared.update(engine_thinking=False)
            s.ponder.finish()
        elapsed_ms = int((time.perf_counter() - t0) * 1000)

        if choice.source == MoveSource.NONE:
            log(f"No legal move ({'checkmate' if board.is_check() else 'stalemate'}).", "🔚", gid=self.game_id)
            return

        s.sources[choice.source.value] += 1
        my_ms = s.clock.remaining(board.turn)
        log(
            f"Move {board.fullmove_number}: {choice.move} [{choice.source.value} | {elapsed_ms}ms | "
            f"clock={my_ms // 1000 if my_ms is not None else 'n/a'}s | ponder={choice.predicted_reply or '-'}]",
            "📖" if choice.source == MoveSource.BOOK else "♟️", gid=self.game_id,
        )
        ok = self.api.submit_move(self.game_id, choice.move, offering_draw=False)
        game_log_write(self.game_id, {
            "type": "move_played",
            "gid": self.game_id,
            "ply": len(moves) + 1,
            "uci": choice.move,
            "source": choice.source.value,
            "ponder_outcome": outcome.value,
            "predicted_reply": choice.predicted_reply,
            "elapsed_ms": elapsed_ms,
            "submitted": ok,
        })
        if not ok:
            return
        self._last_played_ply = len(moves)
        self._start_ponder(moves, choice, elapsed_ms)

    def _start_ponder(self, moves: List[str], choice: MoveChoice, elapsed_ms: int):
        s = self.session
        if not (self.profile.ponder and choice.predicted_reply and s.search is not None):
            return
        line = moves + [choice.move, choice.predicted_reply]
        if s.search.start_ponder(line, ponder_clock(s.clock, elapsed_ms)):
            s.ponder.start(choice.predicted_reply)

# search_engine.py — per-game UCI search process (python-chess SimpleEngine)
import asyncio
import concurrent.futures
import os
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional

import chess
import chess.engine

from bot_config import BotProfile
from bot_log import log, log_exc
from compute_time_management import UNKNOWN_CLOCK_MOVETIME_MS, Clock
from position import replay_moves

ENGINE_ERRORS = (chess.engine.EngineError, asyncio.TimeoutError, TimeoutError, OSError)
ENGINE_STARTUP_TIMEOUT_S = float(os.getenv("ENGINE_STARTUP_TIMEOUT_S", "10.0"))
SEARCH_HANG_GRACE_S = float(os.getenv("SEARCH_HANG_GRACE_S", "2.0"))


@dataclass(frozen=True)
class SearchResult:
    best_move: Optional[str]
    predicted_reply: Optional[str] = None


def _uci(mv: Optional[chess.Move]) -> Optional[str]:
    return mv.uci() if mv else None


def search_limit(clock: Clock) -> chess.engine.Limit:
    if not clock.known:
        return chess.engine.Limit(time=UNKNOWN_CLOCK_MOVETIME_MS / 1000.0)
    return chess.engine.Limit(
        white_clock=clock.wtime / 1000.0,
        black_clock=clock.btime / 1000.0,
        white_inc=clock.winc / 1000.0,
        black_inc=clock.binc / 1000.0,
    )


class UciSearch:
    """
    One engine process owned by one game.

    A search and a ponder are both background analyses; at most one runs at a
    time.  Not thread-safe apart from the internal stop timer.
    """

    def __init__(self, engine: chess.engine.SimpleEngine, options: Mapping = None, gid: Optional[str] = None):
        self._engine = engine
        self.gid = gid
        self._running: Optional[chess.engine.SimpleAnalysisResult] = None
        self.options = self._supported(options or {})

    @property
    def closed(self) -> bool:
        return self._engine is None

    def _supported(self, options: Mapping) -> Dict[str, object]:
        """Keep only options the engine advertises and python-chess lets us set."""
        advertised = self._engine.options
        out, skipped = {}, []
        for name, value in options.items():
            opt = advertised.get(name)
            if opt is None or opt.is_managed():
                skipped.append(name)
                continue
            out[name] = value
        if skipped:
            log(f"Engine ignores options: {', '.join(skipped)}", "ℹ️", gid=self.gid)
        return out

    # --------- requests ---------

    def _launch(self, moves: Iterable[str], clock: Clock):
        self._discard()
        board = replay_moves(moves)
        self._running = self._engine.analysis(board, search_limit(clock), options=self.options)

    def _wait(self, running: chess.engine.SimpleAnalysisResult, timeout_s: float) -> chess.engine.BestMove:
        # same as running.wait(), but an engine that never answers can't block us forever
        fut = asyncio.run_coroutine_threadsafe(running.inner.wait(), self._engine.protocol.loop)
        try:
            return fut.result(timeout=timeout_s)
        except concurrent.futures.TimeoutError:
            fut.cancel()
            raise

    def _collect(self, window_ms: int) -> Optional[SearchResult]:
        running, self._running = self._running, None
        if running is None:
            return None
        # stop() makes the engine report its best move so far
        window_s = max(0.0, window_ms / 1000.0)
        timer = threading.Timer(window_s, running.stop)
        timer.daemon = True
        timer.start()
        try:
            best = self._wait(running, window_s + SEARCH_HANG_GRACE_S)
        except concurrent.futures.TimeoutError:
            log(f"engine silent {window_s + SEARCH_HANG_GRACE_S:.1f}s after go; dropping it.", "🧯", gid=self.gid)
            self._abandon()
            return None
        finally:
            timer.cancel()
        move, ponder = best.move, best.ponder
        if move is None:
            pv = running.info.get("pv") or []
            move = pv[0] if pv else None
            ponder = pv[1] if len(pv) > 1 else None
        return SearchResult(_uci(move), _uci(ponder))

    def _abandon(self):
        """Close an unresponsive engine; the handle is unusable afterwards."""
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.close()
        except ENGINE_ERRORS as e:
            log(f"engine close failed: {e}", "🧯", gid=self.gid)

    def _discard(self):
        running, self._running = self._running, None
        if running is not None:
            try:
                running.stop()
            except ENGINE_ERRORS as e:
                log(f"engine stop failed: {e}", "🧯", gid=self.gid)

    def start_search(self, moves: Iterable[str], clock: Clock, window_ms: int) -> Optional[SearchResult]:
        """Search the position after `moves`; None when the engine fails."""
        if self.closed:
            return None
        try:
            self._launch(moves, clock)
            return self._collect(window_ms)
        except ENGINE_ERRORS as e:
            log(f"search failed: {e}; falling back.", "🧯", gid=self.gid)
            self._running = None
            return None

    def start_ponder(self, moves: Iterable[str], clock: Clock) -> bool:
        """Start searching a predicted position without waiting for the result."""
        if self.closed:
            return False
        try:
            self._launch(moves, clock)
            return True
        except ENGINE_ERRORS as e:
            log(f"ponder start failed: {e}", "🧯", gid=self.gid)
            self._running = None
            return False

    def ponder_hit(self, window_ms: int) -> Optional[SearchResult]:
        """The prediction was right: the speculative search becomes the real one."""
        if self.closed:
            return None
        try:
            return self._collect(window_ms)
        except ENGINE_ERRORS as e:
            log(f"ponder result failed: {e}; falling back.", "🧯", gid=self.gid)
            return None

    def ponder_miss(self):
        """The prediction was wrong: throw the speculative search away."""
        self._discard()

    def stop(self):
        self._discard()

    def quit(self):
        if self.closed:
            return
        engine, self._engine = self._engine, None
        try:
            engine.quit()
        except ENGINE_ERRORS as e:
            log(f"engine quit failed: {e}", "🧯", gid=self.gid)


def spawn_search(profile: BotProfile, gid: Optional[str] = None) -> Optional[UciSearch]:
    """
    Start the configured engine for one game and apply the fixed options.
    Returns None when no engine is configured or it fails to start.
    """
    if not profile.engine_path:
        return None
    try:
        eng = chess.engine.SimpleEngine.popen_uci(profile.engine_path, timeout=ENGINE_STARTUP_TIMEOUT_S)
    except ENGINE_ERRORS as e:
        log_exc(f"engine start ({profile.engine_path})", e, gid=gid)
        return None

    search = UciSearch(eng, profile.search_options, gid=gid)
    try:
        if search.options:
            eng.configure(search.options)
        eng.ping()  # handshake
    except ENGINE_ERRORS as e:
        log_exc("engine configure", e, gid=gid)
        search.quit()
        return None

    log(
        f"[UCI] {eng.id.get('name', os.path.basename(profile.engine_path))} | "
        + (" | ".join(f"{k}={v}" for k, v in search.options.items()) or "defaults"),
        "⚙️", gid=gid,
    )
    return search

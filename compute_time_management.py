# compute_time_management.py — clock bookkeeping and think-time budgets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

import chess

MIN_PONDER_CLOCK_MS = 100
SEARCH_GRACE_MS = 1000       # extra wait on top of the think budget before forcing a stop
UNKNOWN_CLOCK_MOVETIME_MS = 1000


def to_ms(value) -> Optional[int]:
    """Convert a Lichess clock field to milliseconds int, or None if invalid."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Clock:
    """Remaining time and increment per side, in milliseconds."""
    wtime: Optional[int] = None
    btime: Optional[int] = None
    winc: int = 0
    binc: int = 0

    @classmethod
    def from_state(cls, st: dict) -> "Clock":
        return cls(
            wtime=to_ms(st.get("wtime")),
            btime=to_ms(st.get("btime")),
            winc=to_ms(st.get("winc")) or 0,
            binc=to_ms(st.get("binc")) or 0,
        )

    @property
    def known(self) -> bool:
        return self.wtime is not None and self.btime is not None

    def remaining(self, color: chess.Color) -> Optional[int]:
        return self.wtime if color == chess.WHITE else self.btime

    def increment(self, color: chess.Color) -> int:
        return self.winc if color == chess.WHITE else self.binc

    def minus(self, elapsed_ms: int, floor_ms: int = MIN_PONDER_CLOCK_MS) -> "Clock":
        def sub(t):
            return None if t is None else max(floor_ms, t - max(0, elapsed_ms))
        return replace(self, wtime=sub(self.wtime), btime=sub(self.btime))


def ponder_clock(clock: Clock, elapsed_ms: int) -> Clock:
    """Both budgets less the time just spent deciding, never below 100ms."""
    return clock.minus(elapsed_ms, MIN_PONDER_CLOCK_MS)


def compute_movetime(
    remaining_ms: int,
    increment_ms: int,
    ply: int,
    overhead_ms: int = 0,
) -> int:
    """
    Think-time budget for one move, in milliseconds.

    Keeps a safety reserve of 3s + one increment, spreads the rest over the
    expected number of remaining moves, and spends a little more in the
    opening and middlegame.
    """
    T = max(0, remaining_ms - max(0, overhead_ms))
    inc = max(0, increment_ms)
    P = max(0, ply)

    safe_bank = 3000 + inc
    if T <= safe_bank:
        # sudden death: play almost instantly
        return max(50, T // 4)

    # expect more moves in longer games
    if remaining_ms >= 15 * 60_000:
        moves_left = 35
    elif remaining_ms >= 5 * 60_000:
        moves_left = 25
    else:
        moves_left = 15

    pool = (T - safe_bank) + 0.5 * inc * moves_left
    budget = pool / moves_left

    if P < 20:
        budget *= 1.5
    elif P < 60:
        budget *= 1.2

    budget = min(budget, T - safe_bank)   # never spend the bank
    budget = min(budget, 60_000)          # absolute cap per move
    return int(max(budget, 50))


def search_window_ms(clock: Clock, color: chess.Color, ply: int, overhead_ms: int = 0) -> int:
    """How long a search for `color` may run before a stop is requested."""
    my_ms = clock.remaining(color)
    if my_ms is None:
        return UNKNOWN_CLOCK_MOVETIME_MS + SEARCH_GRACE_MS
    planned = compute_movetime(my_ms, clock.increment(color), ply, overhead_ms)
    # the engine manages its own clock; this only bounds a hung search
    return min(planned + SEARCH_GRACE_MS, max(MIN_PONDER_CLOCK_MS, my_ms - overhead_ms))

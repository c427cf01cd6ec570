# ponder_tracker.py — predicted-reply bookkeeping for pondering
"""
Ponder state machine.

    IDLE --start(predicted)--> PONDERING
    PONDERING --reconcile(observed == predicted)--> HIT
    PONDERING --reconcile(observed != predicted)--> MISS
    HIT | MISS --finish()--> IDLE
    PONDERING --cancel()--> IDLE        (session end)

The pending prediction is cleared exactly once, by reconcile() or cancel().
"""
from enum import Enum
from typing import Optional


class PonderState(Enum):
    IDLE = "idle"
    PONDERING = "pondering"
    HIT = "hit"
    MISS = "miss"


class PonderOutcome(Enum):
    NONE = "none"   # nothing was in flight
    HIT = "hit"
    MISS = "miss"


class PonderStateError(RuntimeError):
    pass


class PonderTracker:
    def __init__(self):
        self.state = PonderState.IDLE
        self.pending: Optional[str] = None
        self.hits = 0
        self.misses = 0

    @property
    def pondering(self) -> bool:
        return self.state == PonderState.PONDERING

    def start(self, predicted: str):
        if self.state != PonderState.IDLE:
            raise PonderStateError(f"cannot start pondering from {self.state.value}")
        if not predicted:
            raise PonderStateError("empty prediction")
        self.pending = predicted
        self.state = PonderState.PONDERING

    def reconcile(self, observed: Optional[str]) -> PonderOutcome:
        if self.state != PonderState.PONDERING:
            return PonderOutcome.NONE
        predicted, self.pending = self.pending, None
        if observed is not None and observed == predicted:
            self.state = PonderState.HIT
            self.hits += 1
            return PonderOutcome.HIT
        self.state = PonderState.MISS
        self.misses += 1
        return PonderOutcome.MISS

    def finish(self):
        if self.state in (PonderState.HIT, PonderState.MISS):
            self.state = PonderState.IDLE

    def cancel(self) -> bool:
        """Drop any speculation in flight. Returns True if there was one."""
        was = self.state == PonderState.PONDERING
        self.pending = None
        self.state = PonderState.IDLE
        return was

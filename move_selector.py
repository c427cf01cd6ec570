# move_selector.py — book → search → random fallback
import random
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import chess

from bot_log import log, log_exc
from compute_time_management import Clock, search_window_ms
from opening_book import OpeningBook
from ponder_tracker import PonderOutcome
from search_engine import SearchResult, UciSearch


class MoveSource(Enum):
    NONE = "none"          # no legal move: game over for this side
    BOOK = "book"
    SEARCH = "search"
    RANDOM_FALLBACK = "random"


@dataclass(frozen=True)
class MoveChoice:
    source: MoveSource
    move: Optional[str] = None
    predicted_reply: Optional[str] = None

    @classmethod
    def none(cls) -> "MoveChoice":
        return cls(MoveSource.NONE)

    @classmethod
    def book(cls, move: str) -> "MoveChoice":
        return cls(MoveSource.BOOK, move)

    @classmethod
    def search(cls, move: str, predicted_reply: Optional[str] = None) -> "MoveChoice":
        return cls(MoveSource.SEARCH, move, predicted_reply)

    @classmethod
    def fallback(cls, move: str) -> "MoveChoice":
        return cls(MoveSource.RANDOM_FALLBACK, move)


class MoveSelector:
    def __init__(
        self,
        book: Optional[OpeningBook] = None,
        mixedness: int = 100,
        max_book_depth: int = 0,
        search: Optional[UciSearch] = None,
        overhead_ms: int = 0,
        rng: Optional[random.Random] = None,
        gid: Optional[str] = None,
    ):
        self.book = book
        self.mixedness = mixedness
        self.max_book_depth = max_book_depth
        self.search = search
        self.overhead_ms = overhead_ms
        self.rng = rng or random.Random()
        self.gid = gid

    def book_move(self, board: chess.Board, moves: List[str]) -> Optional[str]:
        if self.book is None or len(moves) > self.max_book_depth:
            return None
        try:
            mv = self.book.pick(board, self.mixedness, self.rng)
        except (ValueError, OSError, IndexError) as e:
            log_exc("book lookup", e, gid=self.gid)
            return None
        return mv.uci() if mv else None

    def _discard_ponder(self):
        if self.search is not None:
            self.search.ponder_miss()

    def _search(self, moves: List[str], clock: Clock, board: chess.Board, ponder: PonderOutcome) -> Optional[SearchResult]:
        window = search_window_ms(clock, board.turn, len(moves), self.overhead_ms)
        if ponder == PonderOutcome.HIT:
            res = self.search.ponder_hit(window)
            if res and res.best_move:
                return res
            log("ponder hit gave no move; searching again.", "🔁", gid=self.gid)
        return self.search.start_search(moves, clock, window)

    @staticmethod
    def _legal_prediction(board: chess.Board, move: str, predicted: Optional[str]) -> Optional[str]:
        if not predicted:
            return None
        after = board.copy(stack=False)
        after.push_uci(move)
        try:
            return predicted if after.is_legal(chess.Move.from_uci(predicted)) else None
        except ValueError:
            return None

    def select_move(
        self,
        board: chess.Board,
        moves: List[str],
        clock: Clock,
        ponder: PonderOutcome = PonderOutcome.NONE,
    ) -> MoveChoice:
        """
        Choose the bot's move in `board` (reached by `moves`).

        `ponder` is the reconciled outcome of any speculation in flight: a MISS
        is discarded up front, a HIT is consumed by the search step or
        discarded if the book answers first.
        """
        if ponder == PonderOutcome.MISS:
            self._discard_ponder()

        legal = list(board.legal_moves)
        if not legal:
            if ponder == PonderOutcome.HIT:
                self._discard_ponder()
            return MoveChoice.none()
        legal_ucis = {m.uci() for m in legal}
        fallback = self.rng.choice(legal).uci()

        bm = self.book_move(board, moves)
        if bm:
            if ponder == PonderOutcome.HIT:
                self._discard_ponder()
            return MoveChoice.book(bm)

        if self.search is not None:
            res = self._search(moves, clock, board, ponder)
            if res and res.best_move in legal_ucis:
                return MoveChoice.search(
                    res.best_move,
                    self._legal_prediction(board, res.best_move, res.predicted_reply),
                )
            if res and res.best_move:
                log(f"engine move {res.best_move} is not legal here; falling back.", "🧯", gid=self.gid)

        return MoveChoice.fallback(fallback)

# opening_book.py — read-only opening repertoire (polyglot .bin or PGN)
import os
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple

import chess
import chess.pgn
import chess.polyglot

from bot_log import log, log_exc
from position import position_key


@dataclass(frozen=True)
class BookCandidate:
    move: str
    weight: int


@dataclass(frozen=True)
class BookEntry:
    position_key: str
    candidates: Tuple[BookCandidate, ...]


def choose_weighted(
    candidates: Sequence[BookCandidate],
    mixedness: int,
    rng: Optional[random.Random] = None,
) -> Optional[BookCandidate]:
    """
    Weighted draw restricted to the heaviest candidates that together hold
    `mixedness` percent of the total weight.

    mixedness=100 draws over every candidate; mixedness=0 always returns the
    heaviest one.
    """
    if not candidates:
        return None
    rng = rng or random
    ranked = sorted(candidates, key=lambda c: (-c.weight, c.move))
    weights = [max(1, c.weight) for c in ranked]
    threshold = sum(weights) * max(0, min(100, mixedness)) / 100.0

    kept, kept_w, acc = [], [], 0
    for c, w in zip(ranked, weights):
        kept.append(c)
        kept_w.append(w)
        acc += w
        if acc >= threshold:
            break
    return rng.choices(kept, weights=kept_w, k=1)[0]


class OpeningBook:
    """Immutable lookup from a position to weighted candidate replies."""

    label = "book"

    def entry(self, board: chess.Board) -> Optional[BookEntry]:
        raise NotImplementedError

    def pick(self, board: chess.Board, mixedness: int = 100, rng=None) -> Optional[chess.Move]:
        e = self.entry(board)
        if not e:
            return None
        c = choose_weighted(e.candidates, mixedness, rng)
        if c is None:
            return None
        mv = chess.Move.from_uci(c.move)
        # a corrupt book must never produce an illegal move
        return mv if board.is_legal(mv) else None

    def close(self):
        pass


class TableBook(OpeningBook):
    def __init__(self, entries: Dict[str, BookEntry], label: str = "table"):
        self._entries = dict(entries)
        self.label = label

    def __len__(self):
        return len(self._entries)

    def entry(self, board: chess.Board) -> Optional[BookEntry]:
        return self._entries.get(position_key(board))

    @classmethod
    def from_games(cls, games: Iterable[chess.pgn.Game], max_plies: int, label: str = "pgn") -> "TableBook":
        counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for game in games:
            board = game.board()
            for ply, mv in enumerate(game.mainline_moves()):
                if ply >= max_plies:
                    break
                counts[position_key(board)][mv.uci()] += 1
                board.push(mv)
        entries = {
            key: BookEntry(key, tuple(BookCandidate(u, w) for u, w in moves.items()))
            for key, moves in counts.items()
        }
        return cls(entries, label=label)

    @classmethod
    def from_pgn(cls, path: str, max_plies: int) -> "TableBook":
        def games():
            with open(path, "r", encoding="utf-8", errors="replace") as fh:
                while True:
                    game = chess.pgn.read_game(fh)
                    if game is None:
                        break
                    yield game
        return cls.from_games(games(), max_plies, label=os.path.basename(path))


class PolyglotBook(OpeningBook):
    def __init__(self, reader: chess.polyglot.MemoryMappedReader, label: str = "polyglot"):
        self._reader = reader
        self.label = label

    @classmethod
    def open(cls, path: str) -> "PolyglotBook":
        return cls(chess.polyglot.open_reader(path), label=os.path.basename(path))

    def entry(self, board: chess.Board) -> Optional[BookEntry]:
        merged: Dict[str, int] = {}
        for e in self._reader.find_all(board):
            u = e.move.uci()
            merged[u] = max(merged.get(u, 0), int(e.weight))
        if not merged:
            return None
        return BookEntry(
            f"{chess.polyglot.zobrist_hash(board):016x}",
            tuple(BookCandidate(u, w) for u, w in merged.items()),
        )

    def close(self):
        self._reader.close()


def load_book(path: Optional[str], max_plies: int) -> Optional[OpeningBook]:
    """Open the configured repertoire once at startup; None when unavailable."""
    if not path:
        return None
    if not os.path.exists(path):
        log(f"Opening book not found: {path}; playing without book.", "📚")
        return None
    try:
        if path.lower().endswith(".pgn"):
            book = TableBook.from_pgn(path, max_plies)
            log(f"Opening book {book.label}: {len(book)} positions (≤{max_plies} plies)", "📚")
        else:
            book = PolyglotBook.open(path)
            log(f"Opening book {book.label} (polyglot)", "📚")
        return book
    except (OSError, ValueError) as e:
        log_exc(f"Opening book load ({path})", e)
        return None

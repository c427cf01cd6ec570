# position.py — move-history replay and canonical position keys
from typing import Iterable, List, Union

import chess


class PositionIntegrityError(ValueError):
    """A move token in the history cannot be parsed or is illegal."""


def position_key(board: chess.Board) -> str:
    """Board, side to move, castling and en passant; the square only when a capture is legal."""
    return board.epd(en_passant="legal")


def split_moves(moves: Union[str, Iterable[str], None]) -> List[str]:
    if not moves:
        return []
    if isinstance(moves, str):
        return moves.split()
    return [m for m in moves if m]


def replay_moves(moves: Union[str, Iterable[str], None], start_fen: str = chess.STARTING_FEN) -> chess.Board:
    """Replay a full UCI history from the start position; never trusts deltas."""
    board = chess.Board(start_fen)
    for ply, token in enumerate(split_moves(moves), start=1):
        try:
            mv = chess.Move.from_uci(token)
        except ValueError as e:
            raise PositionIntegrityError(f"ply {ply}: unparsable move {token!r}") from e
        if not board.is_legal(mv):
            raise PositionIntegrityError(f"ply {ply}: illegal move {token!r} in {board.fen()}")
        board.push(mv)
    return board

"""Tests for the per-game session controller (Lichess and engine mocked)."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import chess
import pytest

from bot_config import BotProfile
from game_session import GameSession, GameSessionController, SharedBotState, player_name
from ponder_tracker import PonderState
from position import PositionIntegrityError, position_key, replay_moves
from search_engine import SearchResult

BOT = "HyperBot"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeTimer:
    def __init__(self, interval, fn):
        self.interval = interval
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


def _profile(**kw) -> BotProfile:
    kw.setdefault("abort_grace_sec", 30)
    return BotProfile(name=BOT, token="t", **kw)


def _full(bot_black: bool, moves: str = "", status: str = "started") -> dict:
    me = {"id": BOT.lower(), "name": BOT, "rating": 2000}
    other = {"id": "someone", "name": "Someone", "rating": 1900}
    return {
        "type": "gameFull",
        "id": "g1",
        "speed": "blitz",
        "rated": False,
        "white": other if bot_black else me,
        "black": me if bot_black else other,
        "state": _state(moves, status),
    }


def _state(moves: str, status: str = "started") -> dict:
    return {
        "type": "gameState",
        "moves": moves,
        "wtime": 180000,
        "btime": 180000,
        "winc": 2000,
        "binc": 2000,
        "status": status,
    }


def _api(events=(), submit_ok: bool = True) -> MagicMock:
    api = MagicMock()
    api.stream_game_state.return_value = iter(list(events))
    api.submit_move.return_value = submit_ok
    return api


def _search(result: SearchResult | None = None) -> MagicMock:
    s = MagicMock()
    s.start_search.return_value = result
    s.ponder_hit.return_value = result
    s.start_ponder.return_value = True
    return s


def _controller(api, search=None, profile=None, shared=None, timers=None) -> GameSessionController:
    timers = timers if timers is not None else []

    def timer_factory(interval, fn):
        t = FakeTimer(interval, fn)
        timers.append(t)
        return t

    return GameSessionController(
        "g1",
        api,
        profile or _profile(),
        shared=shared,
        search_factory=lambda p, gid: search,
        rng=random.Random(0),
        timer_factory=timer_factory,
    )


def _submitted(api) -> list[str]:
    return [c.args[1] for c in api.submit_move.call_args_list]


# ---------------------------------------------------------------------------
# Color and turn
# ---------------------------------------------------------------------------


def test_black_bot_moves_only_on_odd_ply_counts() -> None:
    api = _api([
        _full(bot_black=True),
        _state("e2e4"),
        _state("e2e4 e7e5"),
        _state("e2e4 e7e5 g1f3"),
    ])
    ctl = _controller(api)
    ctl.run()
    assert ctl.session.bot_color == chess.BLACK
    assert api.submit_move.call_count == 2
    first = chess.Move.from_uci(_submitted(api)[0])
    assert first in replay_moves("e2e4").legal_moves


def test_white_bot_moves_on_game_full() -> None:
    api = _api([_full(bot_black=False)])
    ctl = _controller(api, search=_search(SearchResult("d2d4", None)))
    ctl.run()
    assert ctl.session.bot_color == chess.WHITE
    api.submit_move.assert_called_once_with("g1", "d2d4", offering_draw=False)


def test_color_match_is_case_insensitive_and_handles_ai() -> None:
    ev = _full(bot_black=True)
    ev["black"] = {"name": BOT.upper()}
    ctl = _controller(_api([ev]))
    ctl.run()
    assert ctl.session.bot_color == chess.BLACK

    ev = _full(bot_black=False)
    ev["black"] = {"aiLevel": 3}
    ctl = _controller(_api([ev]))
    ctl.run()
    assert ctl.session.bot_color == chess.WHITE


def test_player_name() -> None:
    assert player_name({"aiLevel": 5}) == "Stockfish AI level 5"
    assert player_name({"id": "abc"}) == "abc"
    assert player_name(None) == "?"


# ---------------------------------------------------------------------------
# Position integrity
# ---------------------------------------------------------------------------


def test_illegal_history_ends_session_and_releases_engine() -> None:
    search = _search(SearchResult("e7e5", None))
    api = _api([
        _full(bot_black=True),
        _state("e2e4 e2e4"),
        _state("e2e4"),
    ])
    _controller(api, search=search).run()
    api.submit_move.assert_not_called()
    search.stop.assert_called_once()
    search.quit.assert_called_once()


def test_history_may_only_grow() -> None:
    s = GameSession("g1")
    s.apply_history(["e2e4", "e7e5"])
    with pytest.raises(PositionIntegrityError):
        s.apply_history(["d2d4"])


def test_position_key_tracks_full_history() -> None:
    shared = SharedBotState()
    api = _api([_full(bot_black=True), _state("e2e4 e7e5")])
    ctl = _controller(api, shared=shared)
    ctl.run()
    expected = position_key(replay_moves("e2e4 e7e5"))
    assert ctl.session.current_position_key == expected
    assert shared.snapshot()["current_position_key"] == expected
    assert ctl.session.moves_played == ["e2e4", "e7e5"]


# ---------------------------------------------------------------------------
# Failures that keep the session alive
# ---------------------------------------------------------------------------


def test_submission_failure_does_not_end_session() -> None:
    api = _api([
        _full(bot_black=True),
        _state("e2e4"),
        _state("e2e4 e7e5 g1f3"),
    ], submit_ok=False)
    _controller(api).run()
    assert api.submit_move.call_count == 2


def test_unreadable_update_is_skipped() -> None:
    bad = _state("e2e4")
    bad["moves"] = 12345
    api = _api([_full(bot_black=True), bad, _state("e2e4")])
    _controller(api).run()
    assert api.submit_move.call_count == 1


def test_aborted_status_is_informational() -> None:
    api = _api([
        _full(bot_black=True),
        _state("e2e4", status="aborted"),
        _state("e2e4"),
    ])
    ctl = _controller(api)
    ctl.run()
    assert api.submit_move.call_count == 1
    assert ctl.finished_status == "aborted"


def test_repeated_state_answered_once() -> None:
    api = _api([_full(bot_black=True), _state("e2e4"), _state("e2e4")])
    _controller(api).run()
    assert api.submit_move.call_count == 1


def test_checkmated_bot_submits_nothing() -> None:
    api = _api([_full(bot_black=False, moves="f2f3 e7e5 g2g4 d8h4")])
    _controller(api).run()
    api.submit_move.assert_not_called()


def test_other_event_types_ignored() -> None:
    api = _api([_full(bot_black=True), {"type": "chatLine", "text": "hi"}, {"type": "mystery"}])
    _controller(api).run()
    api.submit_move.assert_not_called()


# ---------------------------------------------------------------------------
# Ponder cycle
# ---------------------------------------------------------------------------


def test_ponder_started_after_move_with_prediction() -> None:
    search = _search(SearchResult("e2e4", "e7e5"))
    api = _api([_full(bot_black=False), _state("e2e4")])
    ctl = _controller(api, search=search)
    ctl.start()
    for ev in api.stream_game_state.return_value:
        ctl.handle_event(ev)
    assert ctl.session.pending_ponder == "e7e5"
    assert ctl.session.ponder.state == PonderState.PONDERING
    line = search.start_ponder.call_args.args[0]
    assert line == ["e2e4", "e7e5"]
    pclock = search.start_ponder.call_args.args[1]
    assert 100 <= pclock.wtime <= 180000


def test_ponder_hit_consumes_speculation() -> None:
    search = _search(SearchResult("e2e4", "e7e5"))
    search.ponder_hit.return_value = SearchResult("g1f3", None)
    api = _api([_full(bot_black=False), _state("e2e4"), _state("e2e4 e7e5")])
    ctl = _controller(api, search=search)
    ctl.run()
    assert _submitted(api) == ["e2e4", "g1f3"]
    search.ponder_hit.assert_called_once()
    search.ponder_miss.assert_not_called()
    assert ctl.session.ponder.hits == 1


def test_ponder_miss_restarts_search() -> None:
    search = _search(SearchResult("e2e4", "e7e5"))
    api = _api([_full(bot_black=False), _state("e2e4"), _state("e2e4 c7c5")])
    ctl = _controller(api, search=search)
    ctl.run()
    search.ponder_miss.assert_called()
    search.ponder_hit.assert_not_called()
    assert search.start_search.call_count == 2
    assert ctl.session.ponder.misses == 1


def test_no_ponder_when_disabled() -> None:
    search = _search(SearchResult("e2e4", "e7e5"))
    api = _api([_full(bot_black=False)])
    ctl = _controller(api, search=search, profile=_profile(ponder=False))
    ctl.run()
    search.start_ponder.assert_not_called()


def test_no_ponder_after_failed_submission() -> None:
    search = _search(SearchResult("e2e4", "e7e5"))
    api = _api([_full(bot_black=False)], submit_ok=False)
    ctl = _controller(api, search=search)
    ctl.run()
    search.start_ponder.assert_not_called()


def test_session_end_stops_then_quits_engine() -> None:
    search = _search(SearchResult("e2e4", "e7e5"))
    api = _api([_full(bot_black=False)])
    ctl = _controller(api, search=search)
    ctl.run()
    names = [c[0] for c in search.method_calls]
    assert names.index("stop") < names.index("quit")
    assert ctl.session.pending_ponder is None
    assert ctl.session.search is None


# ---------------------------------------------------------------------------
# Abort timer
# ---------------------------------------------------------------------------


def test_abort_timer_cancelled_by_first_move() -> None:
    timers: list[FakeTimer] = []
    api = _api([_full(bot_black=True), _state("e2e4")])
    _controller(api, timers=timers).run()
    assert len(timers) == 1
    assert timers[0].started and timers[0].cancelled
    api.abort_game.assert_not_called()


def test_abort_timer_fires_without_progress() -> None:
    timers: list[FakeTimer] = []
    api = _api([_full(bot_black=True)])
    ctl = _controller(api, timers=timers)
    ctl.start()
    for ev in api.stream_game_state.return_value:
        ctl.handle_event(ev)
    timers[0].fn()
    api.abort_game.assert_called_once_with("g1")


def test_abort_timer_noop_after_progress() -> None:
    timers: list[FakeTimer] = []
    api = _api([_full(bot_black=True), _state("e2e4")])
    ctl = _controller(api, timers=timers)
    ctl.start()
    for ev in api.stream_game_state.return_value:
        ctl.handle_event(ev)
    timers[0].fn()
    api.abort_game.assert_not_called()


def test_abort_timer_disabled() -> None:
    timers: list[FakeTimer] = []
    _controller(_api([]), profile=_profile(abort_grace_sec=0), timers=timers).run()
    assert timers == []


# ---------------------------------------------------------------------------
# SharedBotState
# ---------------------------------------------------------------------------


def test_shared_state_rejects_unknown_fields() -> None:
    shared = SharedBotState()
    shared.update(engine_thinking=True)
    assert shared.snapshot()["engine_thinking"] is True
    with pytest.raises(AttributeError):
        shared.update(bogus=1)


def test_engine_thinking_reset_after_decision() -> None:
    shared = SharedBotState()
    api = _api([_full(bot_black=False)])
    _controller(api, search=_search(SearchResult("e2e4", None)), shared=shared).run()
    assert shared.snapshot()["engine_thinking"] is False


# ---------------------------------------------------------------------------
# Decision faults
# ---------------------------------------------------------------------------


def test_decision_fault_is_not_an_unreadable_update() -> None:
    api = _api([_full(bot_black=True)])
    ctl = _controller(api)
    ctl.start()
    ctl.handle_event(next(api.stream_game_state.return_value))
    ctl.selector = MagicMock()
    ctl.selector.select_move.side_effect = ValueError("selector bug")
    with pytest.raises(ValueError, match="selector bug"):
        ctl.handle_event(_state("e2e4"))
    assert ctl.session.moves_played == ["e2e4"]


def test_decision_fault_ends_session_and_releases_engine() -> None:
    search = _search(SearchResult("e7e5", None))
    api = _api([_full(bot_black=True), _state("e2e4")])
    ctl = _controller(api, search=search)
    ctl.start()
    ctl.selector = MagicMock()
    ctl.selector.select_move.side_effect = TypeError("selector bug")
    ctl.start = MagicMock()
    with pytest.raises(TypeError):
        ctl.run()
    search.stop.assert_called_once()
    search.quit.assert_called_once()

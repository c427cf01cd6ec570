"""Tests for the launcher exit codes."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

import run_hyperbot
from lichess_api import RetriesExhausted


@pytest.fixture(autouse=True)
def no_signals(monkeypatch):
    monkeypatch.setattr(run_hyperbot.signal, "signal", MagicMock())
    for k in ("LICHESS_API_TOKEN", "LICHESS_BOT_NAME", "BOOK_PATH", "STOCKFISH_PATH"):
        monkeypatch.delenv(k, raising=False)


def _config(tmp_path, name: str = "") -> str:
    p = tmp_path / "config.yml"
    p.write_text(f"token: t\nname: '{name}'\n", encoding="utf-8")
    return str(p)


class FakeDispatcher:
    instances = []

    def __init__(self, api, profile, book=None, shared=None, fail=None, still_running=0):
        self.profile = profile
        self.stop_event = threading.Event()
        self.fail = fail
        self.active_games = {"g1"} if still_running else set()
        self.still_running = still_running
        self.joins = 0
        self.stopped_before_join = None
        FakeDispatcher.instances.append(self)

    def join_games(self, timeout=None):
        if self.stopped_before_join is None:
            self.stopped_before_join = self.stop_event.is_set()
        self.joins += 1
        return self.joins <= self.still_running

    def run(self):
        if self.fail:
            raise self.fail

    def stop(self):
        self.stop_event.set()


def test_config_error_exit_code(tmp_path) -> None:
    assert run_hyperbot.main(["--config", str(tmp_path / "absent.yml")]) == 2


def test_account_lookup_failure(tmp_path) -> None:
    api = MagicMock()
    api.account_name.side_effect = RetriesExhausted("down")
    with patch.object(run_hyperbot.LichessApi, "from_token", return_value=api):
        assert run_hyperbot.main(["--config", _config(tmp_path)]) == 1


def test_clean_stream_end_exits_zero(tmp_path) -> None:
    api = MagicMock()
    api.account_name.return_value = "HyperBot"
    FakeDispatcher.instances.clear()
    with patch.object(run_hyperbot.LichessApi, "from_token", return_value=api), \
            patch.object(run_hyperbot, "EventDispatcher", FakeDispatcher):
        assert run_hyperbot.main(["--config", _config(tmp_path)]) == 0
    # empty configured name is filled from the account
    assert FakeDispatcher.instances[0].profile.name == "HyperBot"


def test_stream_failure_exits_nonzero(tmp_path) -> None:
    api = MagicMock()
    api.account_name.return_value = "HyperBot"

    def failing(*args, **kw):
        return FakeDispatcher(*args, fail=RetriesExhausted("gone"), **kw)

    with patch.object(run_hyperbot.LichessApi, "from_token", return_value=api), \
            patch.object(run_hyperbot, "EventDispatcher", failing):
        assert run_hyperbot.main(["--config", _config(tmp_path, "HyperBot")]) == 1


def test_waits_for_running_games_after_stop(tmp_path) -> None:
    api = MagicMock()
    api.account_name.return_value = "HyperBot"
    FakeDispatcher.instances.clear()

    def busy(*args, **kw):
        return FakeDispatcher(*args, still_running=2, **kw)

    with patch.object(run_hyperbot.LichessApi, "from_token", return_value=api), \
            patch.object(run_hyperbot, "EventDispatcher", busy):
        assert run_hyperbot.main(["--config", _config(tmp_path)]) == 0
    d = FakeDispatcher.instances[0]
    assert d.stopped_before_join is True
    assert d.joins == 3

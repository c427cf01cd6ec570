#!/usr/bin/env python3
# run_hyperbot.py — launcher: config → client → event loop
import argparse
import signal
import sys
import threading

from bot_config import ConfigError, load_profile
from bot_log import log, log_exc
from game_session import SharedBotState
from hyperbot import EventDispatcher
from lichess_api import API_ERRORS, LichessApi
from opening_book import load_book


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Lichess bot with opening book, engine search and pondering.")
    ap.add_argument("--config", default="config.yml", help="YAML config file (default: config.yml)")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        profile = load_profile(args.config)
    except ConfigError as e:
        log(str(e), "🛑")
        return 2

    api = LichessApi.from_token(profile.token)
    try:
        account = api.account_name()
    except API_ERRORS as e:
        log_exc("account lookup", e)
        return 1
    if not profile.name:
        profile = profile.with_name(account)
    elif account and account.lower() != profile.name.lower():
        log(f"Configured name {profile.name!r} differs from account {account!r}", "❓")

    book = load_book(profile.book_path, profile.max_book_depth)
    dispatcher = EventDispatcher(api, profile, book=book, shared=SharedBotState())

    def on_signal(signum, _frame):
        log(f"Signal {signum}: no longer accepting events.", "👋")
        dispatcher.stop()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    failure = []

    def run_loop():
        try:
            dispatcher.run()
        except Exception as e:
            failure.append(e)
            log_exc("event stream", e)
        finally:
            dispatcher.stop()

    log(f"Bot {profile.name} | engine={profile.engine_path or 'none'} | "
        f"book={profile.book_path or 'none'} | ponder={profile.ponder}", "🚀")
    loop = threading.Thread(target=run_loop, name="events", daemon=True)
    loop.start()
    while not dispatcher.stop_event.wait(1.0):
        pass
    # no new games are started; let running ones end and quit their engines
    if dispatcher.active_games:
        log(f"Waiting for {len(dispatcher.active_games)} game(s) to finish…", "⏳")
    while dispatcher.join_games(1.0):
        pass
    return 1 if failure else 0


if __name__ == "__main__":
    sys.exit(main())

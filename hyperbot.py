# hyperbot.py — account event dispatcher: challenges and game starts
"""
Top-level incoming-event loop.

Challenges go through the policy evaluator; accepts are answered inline,
declines on a throwaway thread so a slow decline never holds up the stream.
Each gameStart gets its own GameSessionController thread, at most one per
game id.
"""
import threading
from typing import Callable, Dict, Optional

from bot_config import BotProfile
from bot_log import log, log_exc
from challenge_policy import challenge_from_event, evaluate
from game_session import GameSessionController, SharedBotState
from lichess_api import LichessApi
from opening_book import OpeningBook


def _spawn_daemon(target, *args, name: Optional[str] = None) -> threading.Thread:
    t = threading.Thread(target=target, args=args, name=name, daemon=True)
    t.start()
    return t


class EventDispatcher:
    def __init__(
        self,
        api: LichessApi,
        profile: BotProfile,
        book: Optional[OpeningBook] = None,
        shared: Optional[SharedBotState] = None,
        controller_factory: Callable[..., GameSessionController] = GameSessionController,
        spawn: Callable[..., threading.Thread] = _spawn_daemon,
    ):
        self.api = api
        self.profile = profile
        self.book = book
        self.shared = shared or SharedBotState()
        self.controller_factory = controller_factory
        self.spawn = spawn
        self.stop_event = threading.Event()
        self.active_games = set()  # game ids with a running handler
        self._game_threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    # ----------------
    # Game bookkeeping
    # ----------------

    def claim_game(self, gid: str) -> bool:
        """Mark gid as active if not already; return True if we claimed it."""
        with self._lock:
            if gid in self.active_games:
                return False
            self.active_games.add(gid)
            return True

    def release_game(self, gid: str):
        with self._lock:
            self.active_games.discard(gid)
            self._game_threads.pop(gid, None)

    def join_games(self, timeout: Optional[float] = None) -> bool:
        """Wait for running game threads; True while any is still alive."""
        with self._lock:
            threads = list(self._game_threads.values())
        for t in threads:
            t.join(timeout)
        return any(t.is_alive() for t in threads)

    # ----------------
    # Events
    # ----------------

    def dispatch(self, event: dict):
        et = (event.get("type") or "").strip()
        if et == "challenge":
            self._on_challenge(event.get("challenge") or {})
        elif et == "gameStart":
            self._on_game_start(event.get("game") or {})
        elif et == "gameFinish":
            g = event.get("game") or {}
            log(f"Game finished: {g.get('gameId') or g.get('id') or '?'}", "🏁")
        # other types (challengeCanceled, challengeDeclined, ...) are ignored

    def _on_challenge(self, ch: dict):
        cid = ch.get("id")
        if not cid:
            return
        challenger = ch.get("challenger") or {}
        me = (self.profile.name or "").lower()
        if me and me in {(challenger.get("id") or "").lower(), (challenger.get("name") or "").lower()}:
            return  # our own outgoing challenge echoed back

        challenge = challenge_from_event(ch)
        decision = evaluate(challenge, self.profile)
        who = challenger.get("name") or challenger.get("id") or "?"
        desc = f"{challenge.variant}/{challenge.speed}/{'rated' if challenge.rated else 'casual'}"
        if decision.accept:
            log(f"Accepting challenge {cid} from {who} ({desc})", "🤝")
            self.api.accept_challenge(cid)
        else:
            log(f"Declining challenge {cid} from {who} ({desc}): {'; '.join(decision.reasons)}", "🚫")
            self.spawn(self.api.decline_challenge, cid, decision.decline_code.value, name=f"decline-{cid}")

    def _on_game_start(self, g: dict):
        gid = g.get("gameId") or g.get("id")
        if not gid:
            return
        if not self.claim_game(gid):
            log(f"Ignoring duplicate gameStart for {gid}", "🔁")
            return
        t = self.spawn(self._play_game, gid, name=f"game-{gid}")
        with self._lock:
            if gid in self.active_games:
                self._game_threads[gid] = t

    def _play_game(self, gid: str):
        try:
            controller = self.controller_factory(gid, self.api, self.profile, book=self.book, shared=self.shared)
            controller.run()
        except Exception as e:
            # nothing from one game may reach the dispatcher or other games
            log_exc("game session", e, gid=gid)
        finally:
            self.release_game(gid)

    # ----------------
    # Loop
    # ----------------

    def run(self):
        """Consume account events until stopped; stream failures propagate."""
        log("Listening for events…", "🛰️")
        self.shared.update(streaming=True)
        try:
            for event in self.api.stream_incoming_events():
                if self.stop_event.is_set():
                    break
                try:
                    self.dispatch(event)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    log_exc("unreadable account event", e)
        finally:
            self.shared.update(streaming=False)
        log("Event loop stopped.", "👋")

    def stop(self):
        self.stop_event.set()

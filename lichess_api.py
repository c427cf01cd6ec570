# lichess_api.py — berserk client wrapper: retries, reconnecting streams, safe calls
import os
import threading
import time
from typing import Callable, Iterator, Optional

import berserk
import requests
from berserk.exceptions import ApiError, ResponseError
from requests.exceptions import ChunkedEncodingError, ConnectionError, ReadTimeout

from bot_log import log, log_exc

LICHESS_URL = os.getenv("LICHESS_URL", "https://lichess.org").rstrip("/")
RECONNECT_DELAY_SEC = float(os.getenv("RECONNECT_DELAY_SEC", "5.0"))
MAX_NET_RETRIES = int(os.getenv("MAX_NET_RETRIES", "6"))
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "10.0"))

API_ERRORS = (ApiError, ResponseError, requests.RequestException, RuntimeError)


class RetriesExhausted(RuntimeError):
    pass


def is_transient_net_err(e: Exception) -> bool:
    s = str(e).lower()
    return any([
        isinstance(e, (ConnectionError, ReadTimeout, ChunkedEncodingError)),
        "remote end closed connection" in s,
        "connection aborted" in s,
        "protocolerror" in s,
        "temporarily unavailable" in s,
        "gateway timeout" in s,
        "bad gateway" in s,
        "connection reset" in s,
        "api timeout" in s,
    ])


def is_404(e: Exception) -> bool:
    code = getattr(e, "status_code", None)
    if code is None:
        code = getattr(getattr(e, "response", None), "status_code", None)
    if code == 404:
        return True
    msg = str(e).lower()
    return "404" in msg or "not found" in msg


def is_429(e: Exception) -> bool:
    code = getattr(e, "status_code", None)
    if code is None:
        code = getattr(getattr(e, "response", None), "status_code", None)
    return code == 429 or "429" in str(e)


def _retry_after(e: Exception, default: int) -> int:
    resp = getattr(e, "response", None)
    headers = getattr(resp, "headers", None) or {}
    try:
        return int(headers.get("Retry-After", default))
    except (TypeError, ValueError):
        return default


class LichessApi:
    def __init__(
        self,
        client: berserk.Client,
        session: Optional[requests.Session] = None,
        base_url: str = LICHESS_URL,
        max_retries: int = MAX_NET_RETRIES,
        reconnect_delay: float = RECONNECT_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.session = session
        self.base_url = base_url
        self.max_retries = max_retries
        self.reconnect_delay = reconnect_delay
        self._sleep = sleep
        self._http_lock = threading.Lock()

    @classmethod
    def from_token(cls, token: str, base_url: str = LICHESS_URL) -> "LichessApi":
        session = berserk.TokenSession(token)
        client = berserk.Client(session=session, base_url=base_url)
        return cls(client, session=session, base_url=base_url)

    # ----------------------
    # Retry wrapper
    # ----------------------

    def _retry_call(self, desc: str, fn, *args, gid=None, **kwargs):
        """Serialized call with 429 backoff and bounded retries on transient errors."""
        attempt = 0
        backoff_429 = 60  # doubles up to 30min
        while True:
            try:
                with self._http_lock:  # no parallel requests
                    return fn(*args, **kwargs)
            except Exception as e:
                if is_429(e):
                    wait = _retry_after(e, backoff_429)
                    log(f"{desc}: 429 Too Many Requests. Sleeping {wait}s before retry…", "⚠️", gid=gid)
                    self._sleep(wait)
                    backoff_429 = min(backoff_429 * 2, 1800)
                    continue
                if is_transient_net_err(e):
                    attempt += 1
                    if attempt > self.max_retries:
                        raise RetriesExhausted(f"{desc}: exceeded retries ({self.max_retries})") from e
                    log(f"{desc}: transient net error; retry {attempt}/{self.max_retries} "
                        f"after {self.reconnect_delay:.0f}s", "🔁", gid=gid)
                    self._sleep(self.reconnect_delay)
                    continue
                raise

    # ----------------------
    # Account
    # ----------------------

    def account_name(self) -> str:
        acct = self._retry_call("account", self.client.account.get) or {}
        return acct.get("username") or acct.get("id") or ""

    # ----------------------
    # Streams
    # ----------------------

    def _reconnecting(self, desc: str, open_stream, gid=None, forever: bool = False) -> Iterator[dict]:
        attempt = 0
        while True:
            try:
                for ev in open_stream():
                    attempt = 0
                    yield ev
                if not forever:
                    return
                log(f"{desc} closed; reconnecting…", "🔌", gid=gid)
            except Exception as e:
                if not is_transient_net_err(e):
                    raise
                attempt += 1
                if attempt > self.max_retries:
                    raise RetriesExhausted(f"{desc}: exceeded retries ({self.max_retries})") from e
                log(f"{desc} dropped; reconnecting ({attempt}/{self.max_retries})…", "🔌", gid=gid)
            self._sleep(self.reconnect_delay)

    def stream_incoming_events(self) -> Iterator[dict]:
        """Account events; reconnects on clean close and transient drops, raises otherwise."""
        return self._reconnecting("Incoming stream", self.client.bots.stream_incoming_events, forever=True)

    def stream_game_state(self, game_id: str) -> Iterator[dict]:
        """Game updates; ends when Lichess closes the stream."""
        return self._reconnecting(
            "Game stream", lambda: self.client.bots.stream_game_state(game_id), gid=game_id,
        )

    # ----------------------
    # Challenges
    # ----------------------

    def _swallow_or_log(self, where: str, e: Exception, gid=None) -> bool:
        """Returns True if the error is an 'already gone' 404 race we can ignore."""
        if is_404(e):
            log(f"{where}: 404 not found — ignoring.", "ℹ️", gid=gid)
            return True
        log_exc(where, e, gid=gid)
        return False

    def accept_challenge(self, cid: str) -> bool:
        try:
            self._retry_call("accept_challenge", self.client.bots.accept_challenge, cid)
            log(f"Accepted challenge {cid}.", "💪")
            return True
        except API_ERRORS as e:
            self._swallow_or_log(f"accept_challenge({cid})", e)
            return False

    def decline_challenge(self, cid: str, reason: str = "generic") -> bool:
        try:
            self._retry_call("decline_challenge", self.client.bots.decline_challenge, cid, reason=reason)
            log(f"Declined challenge {cid} ({reason}).", "⛔")
            return True
        except API_ERRORS as e:
            self._swallow_or_log(f"decline_challenge({cid})", e)
            return False

    # ----------------------
    # Game actions
    # ----------------------

    def _post_move_offering_draw(self, game_id: str, move: str):
        # berserk's make_move has no draw flag; same endpoint with the query param
        r = self.session.post(
            f"{self.base_url}/api/bot/game/{game_id}/move/{move}",
            params={"offeringDraw": "true"},
            timeout=HTTP_TIMEOUT_SEC,
        )
        r.raise_for_status()

    def submit_move(self, game_id: str, move: str, offering_draw: bool = False) -> bool:
        """Never raises; False when Lichess refused or the call failed."""
        try:
            if offering_draw and self.session is not None:
                self._retry_call("make_move", self._post_move_offering_draw, game_id, move, gid=game_id)
            else:
                self._retry_call("make_move", self.client.bots.make_move, game_id, move, gid=game_id)
            return True
        except Exception as e:
            s = str(e).lower()
            if "not your turn" in s or "game already over" in s:
                log(f"Not our turn / game over ({move})", "ℹ️", gid=game_id)
            else:
                log_exc(f"make_move({move})", e, gid=game_id)
            return False

    def abort_game(self, game_id: str) -> bool:
        try:
            self._retry_call("abort_game", self.client.bots.abort_game, game_id, gid=game_id)
            log("Aborted game.", "🛑", gid=game_id)
            return True
        except API_ERRORS as e:
            self._swallow_or_log("abort_game", e, gid=game_id)
            return False

# bot_log.py — console + per-game JSONL logging for hyperbot
import json
import os
import sys
import threading
import time
import traceback
from datetime import datetime
from typing import Optional

# If true, write structured JSONL per game into LOG_DIR/<gid>.jsonl
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "false").lower() in ("1", "true", "yes", "y", "on")
LOG_DIR = os.getenv("LOG_DIR", "logs").strip()

_game_logs = {}  # gid -> file handle
_logs_guard = threading.Lock()


def log(msg: str, emoji: str = "", gid: Optional[str] = None):
    now = datetime.now().strftime("[%H:%M:%S]")
    tag = f" [{gid}]" if gid else ""
    try:
        print(f"{now}{tag} {emoji} {msg}")
    except UnicodeEncodeError:
        print(f"{now}{tag} {msg}")
    sys.stdout.flush()


def log_exc(where: str, e: Exception, gid: Optional[str] = None):
    tb = traceback.format_exc(limit=8)
    log(f"[!] {where}: {e}\n{tb}", "⚠️", gid=gid)


# ------------- JSONL per-game logging -------------

def game_log_open(gid: str):
    if not LOG_TO_FILE:
        return
    with _logs_guard:
        if gid in _game_logs:
            return
        os.makedirs(LOG_DIR, exist_ok=True)
        fp = os.path.join(LOG_DIR, f"{gid}.jsonl")
        try:
            _game_logs[gid] = open(fp, "a", encoding="utf-8")
        except OSError as e:
            log_exc("game_log_open", e, gid=gid)


def game_log_write(gid: str, record: dict):
    if not LOG_TO_FILE:
        return
    record = dict(record or {})
    record.setdefault("ts", int(time.time()))
    try:
        with _logs_guard:
            f = _game_logs.get(gid)
            if not f:
                return
            f.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")
            f.flush()
    except (OSError, TypeError, ValueError) as e:
        log_exc("game_log_write", e, gid=gid)


def game_log_close(gid: str):
    if not LOG_TO_FILE:
        return
    with _logs_guard:
        f = _game_logs.pop(gid, None)
        if f:
            try:
                f.close()
            except OSError as e:
                log_exc("game_log_close", e, gid=gid)

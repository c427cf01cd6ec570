# bot_config.py — config.yml + env → immutable BotProfile
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_ABORT_GRACE_SEC = 30.0
DEFAULT_MOVE_OVERHEAD_MS = 100


class ConfigError(Exception):
    """Raised when the bot cannot start with the given configuration."""


def _truthy(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    v = v.strip()
    return v or None


@dataclass(frozen=True)
class BotProfile:
    name: str
    token: str = field(default="", repr=False)
    engine_path: Optional[str] = None
    search_options: Mapping[str, Any] = field(default_factory=dict)
    ponder: bool = True
    move_overhead_ms: int = DEFAULT_MOVE_OVERHEAD_MS

    # acceptance policy
    enable_classical: bool = False
    enable_rapid: bool = False
    disable_blitz: bool = False
    disable_bullet: bool = False
    enable_ultrabullet: bool = False
    enable_casual: bool = False
    disable_rated: bool = False

    book_path: Optional[str] = None
    book_mixedness: int = 100
    max_book_depth: int = 20

    abort_grace_sec: float = DEFAULT_ABORT_GRACE_SEC

    def __post_init__(self):
        # shared read-only across game threads
        object.__setattr__(self, "search_options", MappingProxyType(dict(self.search_options)))
        object.__setattr__(self, "book_mixedness", max(0, min(100, int(self.book_mixedness))))
        object.__setattr__(self, "max_book_depth", max(0, int(self.max_book_depth)))

    def with_name(self, name: str) -> "BotProfile":
        return replace(self, name=name)


def read_config_file(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML ({e})") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return cfg


def profile_from_dict(cfg: Dict[str, Any]) -> BotProfile:
    """Build a BotProfile from a config mapping, applying env overrides."""
    eng = cfg.get("engine") or {}
    ch = cfg.get("challenge") or {}
    book = cfg.get("book") or {}

    token = _env("LICHESS_API_TOKEN") or (cfg.get("token") or "").strip()
    if not token:
        raise ConfigError("Missing Lichess API token (config 'token' or LICHESS_API_TOKEN).")

    name = _env("LICHESS_BOT_NAME") or (cfg.get("name") or "").strip()
    engine_path = _env("STOCKFISH_PATH") or (eng.get("path") or "").strip() or None

    options = dict(eng.get("uci_options") or {})

    book_path = _env("BOOK_PATH") or (book.get("path") or "").strip() or None
    max_depth = _env("BOOK_MAX_DEPTH") or book.get("max_depth", 20)
    mixedness = _env("BOOK_MIXEDNESS") or book.get("mixedness", 100)
    grace = _env("ABORT_GRACE_SEC") or cfg.get("abort_grace_sec", DEFAULT_ABORT_GRACE_SEC)

    try:
        return BotProfile(
            name=name,
            token=token,
            engine_path=engine_path,
            search_options=options,
            ponder=_truthy(eng.get("ponder", True)),
            move_overhead_ms=int(eng.get("move_overhead_ms", DEFAULT_MOVE_OVERHEAD_MS)),
            enable_classical=_truthy(ch.get("enable_classical", False)),
            enable_rapid=_truthy(ch.get("enable_rapid", False)),
            disable_blitz=_truthy(ch.get("disable_blitz", False)),
            disable_bullet=_truthy(ch.get("disable_bullet", False)),
            enable_ultrabullet=_truthy(ch.get("enable_ultrabullet", False)),
            enable_casual=_truthy(ch.get("enable_casual", False)),
            disable_rated=_truthy(ch.get("disable_rated", False)),
            book_path=book_path,
            book_mixedness=int(mixedness),
            max_book_depth=int(max_depth),
            abort_grace_sec=float(grace),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e


def load_profile(path: str = "config.yml") -> BotProfile:
    return profile_from_dict(read_config_file(path))

# challenge_policy.py — accept/decline policy for incoming challenges
"""
Pure challenge policy.

The policy is an ordered table of independent rules.  Every rule runs; each
one that fails adds its reason and the decline code of the *last* failing rule
is what gets sent back to Lichess, unless a sticky rule (the variant check)
failed first: a non-standard variant is always declined as `variant`.
Nothing here touches the network.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Tuple

from bot_config import BotProfile


class DeclineCode(str, Enum):
    GENERIC = "generic"
    VARIANT = "variant"
    TIME_CONTROL = "timeControl"
    RATED = "rated"
    CASUAL = "casual"


@dataclass(frozen=True)
class Challenge:
    id: str
    variant: str
    speed: str
    rated: bool


@dataclass(frozen=True)
class ChallengeDecision:
    accept: bool
    reasons: Tuple[str, ...] = ()
    decline_code: Optional[DeclineCode] = None


def challenge_from_event(ch: dict) -> Challenge:
    """Build a Challenge from the `challenge` payload of an account event."""
    return Challenge(
        id=ch["id"],
        variant=((ch.get("variant") or {}).get("key") or "").strip(),
        speed=(ch.get("speed") or "").strip(),
        rated=bool(ch.get("rated", False)),
    )


def _speed(ch: Challenge) -> str:
    # Lichess spells it "ultraBullet"
    return ch.speed.lower()


# Each check returns a reason string when violated, None otherwise.
Check = Callable[[Challenge, BotProfile], Optional[str]]


class Rule(NamedTuple):
    name: str
    code: DeclineCode
    check: Check
    # once a sticky rule fails, later failures add reasons but keep its code
    sticky: bool = False


def _variant(ch, profile):
    if ch.variant != "standard":
        return f"variant {ch.variant or '?'} is not standard"


def _correspondence(ch, profile):
    if _speed(ch) == "correspondence":
        return "correspondence is never accepted"


_SPEED_GATES = {
    "classical": lambda p: p.enable_classical,
    "rapid": lambda p: p.enable_rapid,
    "blitz": lambda p: not p.disable_blitz,
    "bullet": lambda p: not p.disable_bullet,
    "ultrabullet": lambda p: p.enable_ultrabullet,
}


def _speed_allowed(ch, profile):
    gate = _SPEED_GATES.get(_speed(ch))
    if gate is not None and not gate(profile):
        return f"{ch.speed} is disabled"


def _rated(ch, profile):
    if ch.rated and profile.disable_rated:
        return "rated games are disabled"


def _casual(ch, profile):
    if not ch.rated and not profile.enable_casual:
        return "casual games are disabled"


RULES: Tuple[Rule, ...] = (
    Rule("variant", DeclineCode.VARIANT, _variant, sticky=True),
    Rule("correspondence", DeclineCode.TIME_CONTROL, _correspondence),
    Rule("speed", DeclineCode.TIME_CONTROL, _speed_allowed),
    Rule("rated", DeclineCode.RATED, _rated),
    Rule("casual", DeclineCode.CASUAL, _casual),
)


def evaluate(challenge: Challenge, profile: BotProfile, rules=RULES) -> ChallengeDecision:
    reasons: List[str] = []
    code = None
    locked = False
    for rule in rules:
        why = rule.check(challenge, profile)
        if not why:
            continue
        reasons.append(why)
        if not locked:
            code = rule.code
            locked = rule.sticky
    if not reasons:
        return ChallengeDecision(accept=True)
    return ChallengeDecision(accept=False, reasons=tuple(reasons), decline_code=code)

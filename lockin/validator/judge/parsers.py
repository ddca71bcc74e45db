"""Ordered parser chain for model output.

Each strategy takes the raw model text and returns an AdjudicationResult or
None. ``parse_response`` runs them in order and the first result wins. The
last strategy always succeeds with a conservative rejection, so an
ambiguous answer can never unlock a resource.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional

from lockin.validator.models import AdjudicationResult, clamp_confidence

ParseStrategy = Callable[[str], Optional[AdjudicationResult]]

REASONING_LIMIT = 500
# Upper bounds on how much model output the fallback strategies look at.
SCAN_LIMIT = 64 * 1024
MAX_CANDIDATES = 32

# A heuristic verdict needs one of these cues; plain prose falls through.
_VERDICT_CUE = re.compile(r"\b(approved?|rejected?|verdict)\b|\bconfidence\D{0,20}\d", re.I)
_AFFIRM = re.compile(
    r"\bapproved?\b(?:\W{0,5}(?:true|yes)\b)?|\bverdict\W{1,5}(?:approved?|yes|pass(?:ed)?)\b",
    re.I,
)
_NEGATE = re.compile(
    r"\bnot\s+approved?\b|\bdisapprov\w*|\breject(?:ed)?\b|\bapproved?\W{0,5}(?:false|no)\b",
    re.I,
)
_CONFIDENCE = re.compile(r"confidence\D{0,20}?(\d{1,3})", re.I)
_MANIPULATION = re.compile(r"manipulat\w*|\bfake\w*|\bfraud\w*|\bdishonest\w*", re.I)
_NO_MANIPULATION = re.compile(
    r"\b(?:no|not|without|none)\b[^.]{0,30}?(?:manipulat|fake|fraud|dishonest)"
    r"|manipulation_detected\W{0,5}(?:false|no)\b",
    re.I,
)


def _truncate(raw: str) -> str:
    return raw.strip()[:REASONING_LIMIT]


def _from_mapping(data: Any) -> AdjudicationResult | None:
    """Build a result from a decoded JSON object, or None if it lacks a verdict."""
    if not isinstance(data, dict):
        return None
    approved = data.get("approved", data.get("verified"))
    if not isinstance(approved, bool):
        return None
    reasoning = data.get("reasoning")
    return AdjudicationResult(
        approved=approved,
        confidence=clamp_confidence(data.get("confidence"), default=50),
        reasoning=str(reasoning) if reasoning else "No reasoning provided",
        manipulation_suspected=data.get("manipulation_detected") is True,
    )


def parse_strict_json(raw: str) -> AdjudicationResult | None:
    """The whole response is the JSON object."""
    try:
        return _from_mapping(json.loads(raw))
    except (ValueError, RecursionError):
        return None


def _balanced_objects(raw: str):
    """Yield balanced ``{...}`` substrings in order of their opening brace.

    Single pass over at most SCAN_LIMIT characters, keeping a stack of open
    brace positions. At most MAX_CANDIDATES spans are yielded.
    """
    text = raw[:SCAN_LIMIT]
    opened: list[int] = []
    spans: list[tuple[int, int]] = []
    in_str = False
    escaped = False
    for i, ch in enumerate(text):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            # Strings only matter inside an object.
            in_str = bool(opened)
        elif ch == "{":
            opened.append(i)
        elif ch == "}" and opened:
            spans.append((opened.pop(), i + 1))
    spans.sort()
    for start, end in spans[:MAX_CANDIDATES]:
        yield text[start:end]


def parse_embedded_json(raw: str) -> AdjudicationResult | None:
    """JSON object embedded in prose or a code fence."""
    for candidate in _balanced_objects(raw):
        try:
            result = _from_mapping(json.loads(candidate))
        except (ValueError, RecursionError):
            continue
        if result is not None:
            return result
    return None


def parse_keywords(raw: str) -> AdjudicationResult | None:
    """Keyword heuristics over free text that still states a verdict."""
    raw = raw[:SCAN_LIMIT]
    if not _VERDICT_CUE.search(raw):
        return None

    approved = bool(_AFFIRM.search(raw)) and not _NEGATE.search(raw)
    match = _CONFIDENCE.search(raw)
    confidence = clamp_confidence(match.group(1) if match else None, default=50)
    manipulation = bool(_MANIPULATION.search(raw)) and not _NO_MANIPULATION.search(raw)

    return AdjudicationResult(
        approved=approved,
        confidence=confidence,
        reasoning=_truncate(raw),
        manipulation_suspected=manipulation,
        degraded=True,
    )


def conservative_reject(raw: str, note: str = "") -> AdjudicationResult:
    """Reject with zero confidence, keeping the raw text as reasoning."""
    reasoning = _truncate(raw) or note or "Empty model response"
    return AdjudicationResult(
        approved=False,
        confidence=0,
        reasoning=reasoning,
        manipulation_suspected=False,
        degraded=True,
    )


DEFAULT_STRATEGIES: tuple[ParseStrategy, ...] = (
    parse_strict_json,
    parse_embedded_json,
    parse_keywords,
)


def parse_response(
    raw: str | None,
    strategies: tuple[ParseStrategy, ...] = DEFAULT_STRATEGIES,
) -> AdjudicationResult:
    """Run the strategy chain; the conservative reject closes it."""
    text = raw or ""
    if text.strip():
        for strategy in strategies:
            result = strategy(text)
            if result is not None:
                return result
    return conservative_reject(text)


__all__ = [
    "DEFAULT_STRATEGIES",
    "REASONING_LIMIT",
    "ParseStrategy",
    "conservative_reject",
    "parse_embedded_json",
    "parse_keywords",
    "parse_response",
    "parse_strict_json",
]

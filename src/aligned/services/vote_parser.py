"""Extract a YES/NO/UNSURE vote and a one-line reason from free model output.

Extraction is an ordered list of named strategies; the first that matches
wins and the result records which one it was. A structured JSON reply is
tried before any of them.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from ..domain.poll_models import VOTE_TYPES

DEFAULT_VOTE = "UNSURE"
DEFAULT_REASON = "No reason provided."
EMPTY_REPLY = "VOTE: UNSURE\nREASON: Not enough context."

_VOTE_WORD = r"(YES|NO|UNSURE)"
_LABELLED_VOTE = re.compile(r"\*?\*?VOTE:?\*?\*?\s*" + _VOTE_WORD + r"\b", re.IGNORECASE)
_BARE_VOTE_LINE = re.compile(r"^[\s*_\"'`]*" + _VOTE_WORD + r"[\s*_\"'`.!]*$", re.IGNORECASE | re.MULTILINE)
_LEADING_KEYWORD = re.compile(r"^[\s*_\"'`]*" + _VOTE_WORD + r"\b", re.IGNORECASE)

_REASON_LABELS = ("REASON(?:ING)?", "RATIONALE", "EXPLANATION", "BECAUSE", "WHY")
_LABELLED_REASONS = [re.compile(r"\*?\*?" + label + r":?\*?\*?\s*(.+)", re.IGNORECASE) for label in _REASON_LABELS]
_REASON_PREFIX = re.compile(
    r"^(\*?\*?)?(REASON|REASONING|RATIONALE|EXPLANATION|BECAUSE|WHY):?\*?\*?\s*", re.IGNORECASE
)
_VOTE_LINE = re.compile(r"^(\*?\*?)?VOTE", re.IGNORECASE)
_ONLY_VOTE = re.compile(r"^" + _VOTE_WORD + r"$", re.IGNORECASE)


@dataclass(frozen=True)
class VoteExtraction:
    vote: str
    reason: str
    vote_strategy: str
    reason_strategy: str


VoteStrategy = Tuple[str, Callable[[str], Optional[str]]]
ReasonStrategy = Tuple[str, Callable[[str, str], Optional[str]]]


def _match_vote(pattern: re.Pattern[str]) -> Callable[[str], Optional[str]]:
    def strategy(text: str) -> Optional[str]:
        match = pattern.search(text)
        return match.group(1).upper() if match else None

    return strategy


def _labelled_reason(text: str, vote: str) -> Optional[str]:
    for pattern in _LABELLED_REASONS:
        match = pattern.search(text)
        if match and match.group(1):
            first_line = match.group(1).strip().split("\n")[0].strip()
            if first_line:
                return first_line
    return None


def _first_free_line(text: str, vote: str) -> Optional[str]:
    # only meaningful once a decisive vote was found
    if vote == DEFAULT_VOTE:
        return None
    for line in (l.strip() for l in text.split("\n")):
        if not line or _VOTE_LINE.match(line) or _ONLY_VOTE.match(line):
            continue
        cleaned = _REASON_PREFIX.sub("", line).strip()
        if len(cleaned) > 5:
            return cleaned
    return None


VOTE_STRATEGIES: List[VoteStrategy] = [
    ("labelled_vote", _match_vote(_LABELLED_VOTE)),
    ("bare_vote_line", _match_vote(_BARE_VOTE_LINE)),
    ("leading_keyword", _match_vote(_LEADING_KEYWORD)),
]

REASON_STRATEGIES: List[ReasonStrategy] = [
    ("labelled_reason", _labelled_reason),
    ("first_free_line", _first_free_line),
]


def clean_reason(reason: str) -> str:
    """Strip markdown emphasis and wrapping quotes."""
    reason = re.sub(r"^\*+\s*|\s*\*+$", "", reason).strip()
    reason = reason.replace("**", "").strip()
    reason = re.sub(r"^[\"']|[\"']$", "", reason).strip()
    return re.sub(r"\s*\*+$", "", reason).strip()


def _from_json(text: str) -> Optional[VoteExtraction]:
    candidate = text.strip()
    if candidate.startswith("```"):
        candidate = re.sub(r"^```(?:json)?\s*|\s*```$", "", candidate).strip()
    if not candidate.startswith("{"):
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    vote = str(data.get("vote") or "").strip().upper()
    if vote not in VOTE_TYPES:
        return None
    reason = clean_reason(str(data.get("reason") or "")) or DEFAULT_REASON
    return VoteExtraction(vote=vote, reason=reason, vote_strategy="json", reason_strategy="json")


def extract_vote(text: str) -> VoteExtraction:
    text = (text or "").strip() or EMPTY_REPLY
    structured = _from_json(text)
    if structured is not None:
        return structured

    vote, vote_strategy = DEFAULT_VOTE, "default"
    for name, strategy in VOTE_STRATEGIES:
        found = strategy(text)
        if found in VOTE_TYPES:
            vote, vote_strategy = found, name
            break

    reason, reason_strategy = DEFAULT_REASON, "default"
    for name, strategy in REASON_STRATEGIES:
        found = strategy(text, vote)
        if found:
            reason, reason_strategy = clean_reason(found) or DEFAULT_REASON, name
            break

    return VoteExtraction(vote=vote, reason=reason, vote_strategy=vote_strategy, reason_strategy=reason_strategy)

"""Heuristics that decide whether a request implies more than one action."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Protocol, Sequence

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}")
COORDINATING_WORDS = ("and", "then", "also", "both", "each", "all")
REPEATED_PATTERNS = (r"smile\s+\d+",)

# Keyword indicators used by the analyze_request_complexity tool.
MULTI_STEP_INDICATORS = (
    " and ", " then ", " after ", " also ", " both ", " each ", " all ",
    " every ", " multiple ", "first ", "second ", "finally ", "lastly ",
)
MULTI_STEP_REGEXES = (re.compile(r" to .* and .* to "),)


@dataclass
class Detection:
    """Outcome of running a detector over one request."""

    multi_action: bool
    targets: List[str] = field(default_factory=list)
    reason: str = ""

    def __bool__(self) -> bool:
        return self.multi_action


class MultiActionDetector(Protocol):
    def detect(self, text: str) -> Detection:  # pragma: no cover - interface
        """Classify ``text``."""


def extract_targets(text: str) -> List[str]:
    """Distinct email-shaped tokens in order of first appearance."""
    seen: List[str] = []
    lowered: set = set()
    for match in EMAIL_PATTERN.findall(text or ""):
        if match.lower() not in lowered:
            lowered.add(match.lower())
            seen.append(match)
    return seen


class PatternMultiActionDetector:
    """Production detector based on coordinating language and repeated targets.

    Fires when the text has a coordinating word together with more than one
    distinct email-shaped target, or when any configured repeated pattern
    (e.g. ``smile 1 ... smile 2``) occurs more than once. This is an
    approximation; ambiguous phrasing will be misclassified.
    """

    def __init__(
        self,
        repeated_patterns: Iterable[str] = REPEATED_PATTERNS,
        coordinating_words: Optional[Sequence[str]] = None,
    ) -> None:
        words = list(coordinating_words) if coordinating_words else list(COORDINATING_WORDS)
        self._coordinating = re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)
        self._repeated: List[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in repeated_patterns]

    def detect(self, text: str) -> Detection:
        text = text or ""
        targets = extract_targets(text)
        if len(targets) > 1 and self._coordinating.search(text):
            return Detection(True, targets, "coordinating language with multiple recipients")
        for pattern in self._repeated:
            occurrences = [match.group(0) for match in pattern.finditer(text)]
            if len(occurrences) > 1:
                return Detection(True, targets or occurrences, f"repeated pattern '{pattern.pattern}'")
        return Detection(False, targets)


class StaticMultiActionDetector:
    """Detector that always answers the same way (useful for tests)."""

    def __init__(self, multi_action: bool, targets: Sequence[str] = ()) -> None:
        self.multi_action = multi_action
        self.targets = list(targets)
        self.calls: List[str] = []

    def detect(self, text: str) -> Detection:
        self.calls.append(text)
        return Detection(self.multi_action, list(self.targets), "static")


def needs_multiple_steps(request: str) -> bool:
    lowered = f" {request.lower()} "
    if any(indicator in lowered for indicator in MULTI_STEP_INDICATORS):
        return True
    return any(regex.search(lowered) for regex in MULTI_STEP_REGEXES)

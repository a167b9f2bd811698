from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Protocol, Sequence


@dataclass(frozen=True)
class CapacitySignal:
    exhausted: bool
    matched: str = ""


class TranscriptClassifier(Protocol):
    def classify(self, text: str) -> CapacitySignal: ...


DEFAULT_USAGE_WARNING_PATTERNS: Sequence[str] = (
    r"(?i)approaching.*usage\s*limit",
    r"(?i)9[0-9]%.*limit",
    r"(?i)usage.*limit.*reached",
    r"(?i)exceeded.*limit",
)


class RegexCapacityClassifier:
    """Flags transcripts that show a tool nearing or hitting its usage cap."""

    def __init__(self, patterns: Optional[Iterable[str]] = None) -> None:
        src = list(patterns) if patterns is not None else list(DEFAULT_USAGE_WARNING_PATTERNS)
        self._patterns: Sequence[Pattern[str]] = tuple(re.compile(p) for p in src)

    def classify(self, text: str) -> CapacitySignal:
        for pat in self._patterns:
            m = pat.search(text or "")
            if m:
                return CapacitySignal(exhausted=True, matched=m.group(0))
        return CapacitySignal(exhausted=False)

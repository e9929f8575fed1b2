"""Estimate the capacity cost (weight) of source content."""

from __future__ import annotations

import math
import re
from dataclasses import replace
from typing import Dict, Iterable, Mapping, Optional

from .models import Item

DEFAULT_RATIO = 4.0
MESSAGE_OVERHEAD = 10

COMMENT_LINE_RE = re.compile(r"^(?://|#|/\*|\*|<!--|'|;)")
WORD_SPLIT_RE = re.compile(r"[\s,;(){}\[\]\"'`]+")
STRUCTURAL_CHAR_RE = re.compile(r"[{}();,]")

# Tokens per content unit; markup and config formats pack more tokens per character.
DENSITY: Dict[str, float] = {
    ".py": 3.5,
    ".js": 4.0,
    ".ts": 4.0,
    ".cs": 3.8,
    ".java": 3.8,
    ".cpp": 3.5,
    ".c": 3.5,
    ".h": 3.5,
    ".hpp": 3.5,
    ".go": 3.8,
    ".rs": 3.8,
    ".php": 4.0,
    ".rb": 3.5,
    ".swift": 3.8,
    ".kt": 3.8,
    ".scala": 3.8,
    ".sql": 2.5,
    ".yaml": 2.0,
    ".yml": 2.0,
    ".json": 2.5,
    ".xml": 2.0,
    ".html": 2.5,
    ".css": 2.0,
    ".scss": 2.0,
    ".less": 2.0,
    ".vue": 3.5,
    ".svelte": 3.5,
    ".astro": 3.5,
}
DEFAULT_DENSITY = 4.0


class WeightEstimator:
    """Deterministic token-like cost model used by every other component."""

    def __init__(self, ratio: float = DEFAULT_RATIO, density: Optional[Mapping[str, float]] = None) -> None:
        if ratio <= 0:
            raise ValueError("ratio must be positive")
        self.ratio = ratio
        self._density = dict(DENSITY if density is None else density)

    def estimate(self, content: str) -> int:
        """Return the weight of ``content``; never less than 1."""
        total = 0
        for line in content.split("\n"):
            trimmed = line.strip()
            if not trimmed or COMMENT_LINE_RE.match(trimmed):
                continue
            total += self._line_weight(trimmed)
        return max(1, total)

    def _line_weight(self, line: str) -> int:
        weight = 0.0
        for word in WORD_SPLIT_RE.split(line):
            if word:
                weight += math.ceil(len(word) / self.ratio)
        weight += 0.5 * len(STRUCTURAL_CHAR_RE.findall(line))
        return max(1, math.ceil(weight))

    def density(self, content_type: str) -> float:
        return self._density.get(content_type.lower(), DEFAULT_DENSITY)

    def recalculate(self, item: Item) -> Item:
        """Return a copy of ``item`` with its weight rescaled by content-type density."""
        raw = self.estimate(item.content)
        adjusted = math.ceil(raw * (DEFAULT_DENSITY / self.density(item.content_type)))
        return replace(item, weight=max(1, adjusted))

    def item_weight(self, item: Item) -> int:
        if item.weight > 0:
            return item.weight
        return self.estimate(item.content)

    def total_weight(self, items: Iterable[Item]) -> int:
        return sum(self.item_weight(i) for i in items)

    def message_weight(self, system: str, user: str) -> int:
        return self.estimate(system) + self.estimate(user) + MESSAGE_OVERHEAD

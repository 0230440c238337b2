"""Word-overlap check that rewritten text actually differs from its input.

Disabled unless ``QUALITY_GATE_ENABLED`` is set.
"""
from __future__ import annotations

import math
from typing import NamedTuple

MAX_CONSECUTIVE_MATCHES = 3
MIN_CHANGED_RATIO = 0.4


class QualityResult(NamedTuple):
    ok: bool
    reason: str | None = None


def check_transformation(original: str, rewritten: str) -> QualityResult:
    if original.strip().lower() == rewritten.strip().lower():
        return QualityResult(False, "identical")

    original_words = original.lower().split()
    rewritten_words = rewritten.lower().split()
    original_set = set(original_words)
    rewritten_set = set(rewritten_words)

    longest = current = 0
    for word, following in zip(rewritten_words, rewritten_words[1:]):
        if word in original_set and following in original_set:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    if longest > MAX_CONSECUTIVE_MATCHES:
        return QualityResult(False, "consecutive-matches")

    required = math.floor(len(original_words) * MIN_CHANGED_RATIO)
    changed = sum(1 for word in original_words if word not in rewritten_set)
    if changed < required:
        return QualityResult(False, "too-similar")
    return QualityResult(True)


__all__ = ["QualityResult", "check_transformation"]

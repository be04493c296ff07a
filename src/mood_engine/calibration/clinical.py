"""PHQ-9 / GAD-7 severity bands and reliable-change classification.

Scores here are display-only equivalents derived from journal signals; they
are not an administered questionnaire and never feed back into training.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel


class PHQ9Severity(str, Enum):
    MINIMAL = "minimal"
    MILD = "mild"
    MODERATE = "moderate"
    MODERATELY_SEVERE = "moderately_severe"
    SEVERE = "severe"


class GAD7Severity(str, Enum):
    MINIMAL = "minimal"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class ChangeDirection(str, Enum):
    IMPROVED = "improved"
    WORSENED = "worsened"
    STABLE = "stable"


class ReliableChange(BaseModel):
    changed: bool
    direction: ChangeDirection


# Minimum score difference treated as a reliable change.
RELIABLE_CHANGE_THRESHOLDS: dict[str, int] = {"phq9": 6, "gad7": 4}


def interpret_phq9(score: float) -> PHQ9Severity:
    """Band a PHQ-9 score (0-27); each upper bound is inclusive."""
    if score <= 4:
        return PHQ9Severity.MINIMAL
    if score <= 9:
        return PHQ9Severity.MILD
    if score <= 14:
        return PHQ9Severity.MODERATE
    if score <= 19:
        return PHQ9Severity.MODERATELY_SEVERE
    return PHQ9Severity.SEVERE


def interpret_gad7(score: float) -> GAD7Severity:
    """Band a GAD-7 score (0-21); each upper bound is inclusive."""
    if score <= 4:
        return GAD7Severity.MINIMAL
    if score <= 9:
        return GAD7Severity.MILD
    if score <= 14:
        return GAD7Severity.MODERATE
    return GAD7Severity.SEVERE


def reliable_change(score1: float, score2: float, scale: Literal["phq9", "gad7"]) -> ReliableChange:
    """Classify the move from ``score1`` to ``score2``.

    Higher scores mean more symptoms, so a drop of at least the threshold is
    an improvement.  A difference exactly at the threshold counts as change.
    """
    if scale not in RELIABLE_CHANGE_THRESHOLDS:
        raise ValueError(f"Unknown scale {scale!r}")
    threshold = RELIABLE_CHANGE_THRESHOLDS[scale]
    diff = score2 - score1

    if abs(diff) < threshold:
        return ReliableChange(changed=False, direction=ChangeDirection.STABLE)
    if diff <= -threshold:
        return ReliableChange(changed=True, direction=ChangeDirection.IMPROVED)
    return ReliableChange(changed=True, direction=ChangeDirection.WORSENED)

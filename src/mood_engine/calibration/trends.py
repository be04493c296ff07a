"""Longitudinal mood trend indicators: slopes, volatility, sentiment trend."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Sequence

from pydantic import BaseModel

from mood_engine.models import UtcDatetime, to_naive_utc

_SECONDS_PER_DAY = 24 * 60 * 60
SENTIMENT_SLOPE_THRESHOLD = 0.05  # mood points per day
MIN_POINTS_FOR_SENTIMENT = 3
DEFAULT_ANXIETY = 5.0


class SentimentTrend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


class MoodPoint(BaseModel):
    timestamp: UtcDatetime
    mood: float
    anxiety: float | None = None


class TrendIndicators(BaseModel):
    """Per-day slopes over the trailing windows, plus overall shape."""

    slope_7d: float | None = None
    slope_14d: float | None = None
    anxiety_slope_7d: float | None = None
    anxiety_slope_14d: float | None = None
    volatility_index: float | None = None
    sentiment_trend: SentimentTrend = SentimentTrend.INSUFFICIENT_DATA
    sample_count: int = 0


def linear_slope(points: Sequence[tuple[float, float]]) -> float | None:
    """Least-squares slope of ``(t, v)`` pairs.

    ``None`` for fewer than two points or when every ``t`` is identical.
    """
    n = len(points)
    if n < 2:
        return None
    t0 = points[0][0]
    if all(t == t0 for t, _ in points):
        return None
    mean_t = sum(t for t, _ in points) / n
    mean_v = sum(v for _, v in points) / n
    sxx = sum((t - mean_t) ** 2 for t, _ in points)
    sxy = sum((t - mean_t) * (v - mean_v) for t, v in points)
    if sxx <= 0.0:
        return None
    return sxy / sxx


def daily_slope(points: Sequence[tuple[datetime, float]]) -> float | None:
    """Slope of values against time, in units per day."""
    if not points:
        return None
    origin = points[0][0]
    return linear_slope([((ts - origin).total_seconds() / _SECONDS_PER_DAY, v) for ts, v in points])


def volatility_index(values: Sequence[float]) -> float | None:
    """Mean absolute successive difference; ``None`` for fewer than two values."""
    if len(values) < 2:
        return None
    return sum(abs(b - a) for a, b in zip(values, values[1:])) / (len(values) - 1)


def sentiment_trend(points: Sequence[tuple[datetime, float]]) -> SentimentTrend:
    slope = daily_slope(points)
    if slope is None or len(points) < MIN_POINTS_FOR_SENTIMENT:
        return SentimentTrend.INSUFFICIENT_DATA
    if slope > SENTIMENT_SLOPE_THRESHOLD:
        return SentimentTrend.IMPROVING
    if slope < -SENTIMENT_SLOPE_THRESHOLD:
        return SentimentTrend.DECLINING
    return SentimentTrend.STABLE


def _round(v: float | None, digits: int) -> float | None:
    return None if v is None else round(v, digits)


def compute_trend_indicators(points: Sequence[MoodPoint], *, now: datetime | None = None) -> TrendIndicators:
    """Summarise a user's mood history (any order) relative to ``now``."""
    ordered = sorted(points, key=lambda p: p.timestamp)
    if len(ordered) < 2:
        return TrendIndicators(sample_count=len(ordered))

    now = to_naive_utc(now) if now is not None else datetime.utcnow()
    last_7d = [p for p in ordered if p.timestamp >= now - timedelta(days=7)]
    last_14d = [p for p in ordered if p.timestamp >= now - timedelta(days=14)]

    def _mood(ps: list[MoodPoint]) -> list[tuple[datetime, float]]:
        return [(p.timestamp, p.mood) for p in ps]

    def _anxiety(ps: list[MoodPoint]) -> list[tuple[datetime, float]]:
        return [(p.timestamp, p.anxiety if p.anxiety is not None else DEFAULT_ANXIETY) for p in ps]

    return TrendIndicators(
        slope_7d=_round(daily_slope(_mood(last_7d)), 3),
        slope_14d=_round(daily_slope(_mood(last_14d)), 3),
        anxiety_slope_7d=_round(daily_slope(_anxiety(last_7d)), 3),
        anxiety_slope_14d=_round(daily_slope(_anxiety(last_14d)), 3),
        volatility_index=_round(volatility_index([p.mood for p in ordered]), 2),
        sentiment_trend=sentiment_trend(_mood(ordered)),
        sample_count=len(ordered),
    )

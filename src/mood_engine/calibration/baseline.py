"""Baseline normalisation — time-decayed running statistics and z-scores.

Each user carries one :class:`BaselineStats` per metric (mood, calmness).
New observations are folded in with an exponentially weighted moving
average whose weight decays with the *elapsed time* since the previous
update (half-life in days).

The z-score helpers are hardened for display use:

- a standard-deviation floor prevents division by a near-zero spread,
- the result is clamped to ``±Z_CLAMP``,
- cold-start baselines (fewer than two observations) yield 0.

The clinical-scale mapping is for trend visualisation only and is never fed
back into training.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Literal

from mood_engine.models import BaselineStats, to_naive_utc

# ── Constants ─────────────────────────────────────────────────

STD_FLOOR = 0.75
Z_CLAMP = 5.0
MIN_ENTRIES_FOR_Z = 5  # callers gate on this before trusting a z-score
DEFAULT_HALF_LIFE_DAYS = 45.0

_LN2 = math.log(2)
_MS_PER_DAY = 24 * 60 * 60 * 1000

# Logistic mapping parameters: score = max * sigmoid(-k * (z - b))
_SCALE_PARAMS: dict[str, tuple[int, float, float]] = {
    "phq9": (27, 0.9, -0.6),
    "gad7": (21, 1.0, -0.4),
}


def _clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


# ── Running statistics ────────────────────────────────────────


def update_ewma_stats(
    current: BaselineStats | None,
    value: float,
    *,
    now: datetime | None = None,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> BaselineStats:
    """Fold ``value`` into a time-decayed EWMA mean / variance.

    ``decay = exp(-ln2 * dt / half_life)``; with no prior state the decay is 0,
    i.e. the new value takes full weight.
    """
    now = to_naive_utc(now) if now is not None else datetime.utcnow()
    half_life_ms = max(1.0, half_life_days * _MS_PER_DAY)

    has_prior = current is not None and current.last_updated_at is not None
    prev_mean = current.mean if current is not None and math.isfinite(current.mean) else value
    prev_std = current.std if current is not None and math.isfinite(current.std) else 0.0
    prev_count = max(0, current.count) if current is not None else 0

    if has_prior:
        dt_ms = max(0.0, (now - current.last_updated_at).total_seconds() * 1000)
        decay = math.exp(-_LN2 * dt_ms / half_life_ms)
    else:
        decay = 0.0
    one_minus = 1.0 - decay

    mean = decay * prev_mean + one_minus * value
    var = decay * prev_std * prev_std + one_minus * (value - prev_mean) * (value - mean)

    return BaselineStats(
        mean=mean,
        std=math.sqrt(max(0.0, var)),
        count=prev_count + 1,
        last_updated_at=now,
    )


def update_running_stats(current: BaselineStats | None, value: float) -> BaselineStats:
    """Welford update of an unweighted mean / sample standard deviation.

    ``M2`` is reconstructed from ``(std, count)`` as ``std² * (count - 1)``.
    """
    prev_count = max(0, current.count) if current is not None else 0
    prev_mean = current.mean if current is not None and math.isfinite(current.mean) else 0.0
    prev_std = current.std if current is not None and math.isfinite(current.std) else 0.0
    m2 = prev_std * prev_std * (prev_count - 1) if prev_count >= 2 else 0.0

    count = prev_count + 1
    delta = value - prev_mean
    mean = prev_mean + delta / count
    m2 += delta * (value - mean)
    variance = m2 / (count - 1) if count >= 2 else 0.0

    return BaselineStats(
        mean=mean,
        std=math.sqrt(max(0.0, variance)),
        count=count,
        last_updated_at=current.last_updated_at if current is not None else None,
    )


# ── Z-scores ──────────────────────────────────────────────────


def calculate_z_score(value: float, baseline: BaselineStats | None) -> float:
    """Z-score of ``value`` against ``baseline``, floored and clamped."""
    if value is None or not math.isfinite(value):
        return 0.0
    if baseline is None or baseline.count < 2:
        return 0.0
    std = max(baseline.std, STD_FLOOR)
    if not math.isfinite(std):
        return 0.0
    return _clamp((value - baseline.mean) / std, -Z_CLAMP, Z_CLAMP)


def gated_z_score(value: float, baseline: BaselineStats | None) -> float | None:
    """Like :func:`calculate_z_score` but ``None`` while the baseline is immature."""
    if baseline is None or baseline.count < MIN_ENTRIES_FOR_Z:
        return None
    return calculate_z_score(value, baseline)


def _erf(x: float) -> float:
    """Abramowitz & Stegun 7.1.26 approximation of the error function."""
    sign = -1.0 if x < 0 else 1.0
    ax = abs(x)
    a1, a2, a3, a4, a5 = 0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429
    p = 0.3275911
    t = 1.0 / (1.0 + p * ax)
    y = 1.0 - (((((a5 * t + a4) * t + a3) * t + a2) * t + a1) * t) * math.exp(-ax * ax)
    return sign * y


def z_to_percentile(z: float) -> float:
    """Map a z-score to a percentile in [0, 1] via the normal CDF."""
    if z is None or not math.isfinite(z):
        return 0.5
    return _clamp(0.5 * (1.0 + _erf(z / math.sqrt(2))), 0.0, 1.0)


def map_to_validated_scale(z: float, scale: Literal["phq9", "gad7"]) -> int:
    """Map a (higher = better) z-score onto a bounded symptom scale.

    These are AI-derived equivalents for trend display, not an administered
    questionnaire.
    """
    if scale not in _SCALE_PARAMS:
        raise ValueError(f"Unknown scale {scale!r}; expected one of {sorted(_SCALE_PARAMS)}")
    if z is None or not math.isfinite(z):
        z = 0.0
    max_score, k, b = _SCALE_PARAMS[scale]
    s = 1.0 / (1.0 + math.exp(k * (z - b)))
    return int(_clamp(math.floor(max_score * s + 0.5), 0, max_score))


def anxiety_to_calmness(anxiety_score: float) -> float:
    """Reverse-code anxiety (1-10) so that positive z means "better" for both metrics."""
    return 11 - anxiety_score

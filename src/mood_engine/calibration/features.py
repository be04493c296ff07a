"""Predictor vectorisation and per-user feature vocabulary selection."""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Sequence

from mood_engine.calibration.linalg import clamp
from mood_engine.calibration.models import (
    BASE_PREDICTOR_KEYS,
    FeatureSelection,
    PredictorVector,
    TrainingRow,
)

MIN_FEATURE_SUPPORT = 2
MIN_FEATURES_TO_USE = 5
DEFAULT_MAX_FEATURES = 30


# ── Vectorisation ─────────────────────────────────────────────


def scale_predictors(
    *,
    affect_valence: float | None = None,
    affect_arousal: float | None = None,
    sleep_hours: float | None = None,
    sleep_quality: float | None = None,
    energy_level: float | None = None,
    medication_taken: bool | None = None,
    feature_ids: Iterable[str] = (),
) -> PredictorVector:
    """Scale raw context into ``[0, 1]`` predictors; missing values become 0."""
    return PredictorVector(
        affect_valence=affect_valence or 0.0,
        affect_arousal=affect_arousal or 0.0,
        sleep_hours=clamp((sleep_hours or 0.0) / 12, 0.0, 1.0),
        sleep_quality=clamp((sleep_quality or 0.0) / 10, 0.0, 1.0),
        energy_level=clamp((energy_level or 0.0) / 10, 0.0, 1.0),
        medication_taken=1.0 if medication_taken is True else 0.0,
        feature_ids=frozenset(feature_ids),
    )


def to_predictor_vector(row: TrainingRow) -> PredictorVector:
    return scale_predictors(
        affect_valence=row.affect_valence,
        affect_arousal=row.affect_arousal,
        sleep_hours=row.sleep_hours,
        sleep_quality=row.sleep_quality,
        energy_level=row.energy_level,
        medication_taken=row.medication_taken,
        feature_ids=row.feature_ids,
    )


def vectorize(predictors: PredictorVector, feature_ids: Sequence[str]) -> list[float]:
    """Design-matrix row: bias, six base predictors, then 0/1 indicators."""
    base = [
        1.0,
        predictors.affect_valence,
        predictors.affect_arousal,
        predictors.sleep_hours,
        predictors.sleep_quality,
        predictors.energy_level,
        predictors.medication_taken,
    ]
    indicators = [1.0 if fid in predictors.feature_ids else 0.0 for fid in feature_ids]
    return base + indicators


def build_predictor_keys(feature_ids: Sequence[str]) -> list[str]:
    return [*BASE_PREDICTOR_KEYS, *feature_ids]


# ── Selection ─────────────────────────────────────────────────


def select_features(rows: Sequence[TrainingRow], max_features: int | None = None) -> FeatureSelection:
    """Pick the user's indicator vocabulary from mention frequency.

    The cap is ``min(max_features, floor(N / 2))``.  Features mentioned in
    fewer than ``MIN_FEATURE_SUPPORT`` rows are dropped, and if fewer than
    ``MIN_FEATURES_TO_USE`` survive the cap, no features are used at all.
    """
    limit = DEFAULT_MAX_FEATURES if max_features is None else max_features
    dynamic_max = max(0, min(limit, len(rows) // 2))

    # Counter preserves first-seen order, and sorted() is stable on ties.
    support: Counter[str] = Counter()
    for row in rows:
        support.update(list(dict.fromkeys(row.feature_ids)))

    candidates = [fid for fid, n in support.items() if n >= MIN_FEATURE_SUPPORT]
    ranked = sorted(candidates, key=lambda fid: support[fid], reverse=True)[:dynamic_max]
    use_features = len(ranked) >= MIN_FEATURES_TO_USE

    return FeatureSelection(
        feature_ids=ranked if use_features else [],
        use_features=use_features,
        dynamic_max_features=dynamic_max,
        candidate_count=len(candidates),
        support={fid: support[fid] for fid in ranked},
    )

"""Per-user ridge calibration training and association materialisation."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Sequence

import numpy as np
import structlog

from mood_engine.calibration.bootstrap import DEFAULT_BOOTSTRAP_SAMPLES, bootstrap_weight_variance
from mood_engine.calibration.features import (
    DEFAULT_MAX_FEATURES,
    build_predictor_keys,
    select_features,
    to_predictor_vector,
    vectorize,
)
from mood_engine.calibration.linalg import residual_sd, ridge_regression
from mood_engine.calibration.models import (
    BASE_PREDICTOR_COUNT,
    MODEL_VERSION,
    CalibrationModel,
    FeatureSelection,
    TrainingRow,
)
from mood_engine.models import AssociationEdge
from mood_engine.storage.repository import AssociationRepository

logger = structlog.get_logger(__name__)

DEFAULT_LAMBDA = 1.0
DEFAULT_MIN_TRAINING_N = 10


class CalibrationTrainer:
    """Fit a ridge calibration model from labelled training rows.

    Pure and synchronous; the caller decides where it runs.

    Parameters
    ----------
    lam : float
        Ridge penalty, applied to every coefficient including the bias.
    max_features : int
        Upper bound on the indicator vocabulary before the ``N / 2`` cap.
    bootstrap_samples : int
        Number of bootstrap refits used for the weight variances.
    rng : numpy.random.Generator, optional
        Source of resampling randomness.
    """

    def __init__(
        self,
        lam: float = DEFAULT_LAMBDA,
        max_features: int = DEFAULT_MAX_FEATURES,
        bootstrap_samples: int = DEFAULT_BOOTSTRAP_SAMPLES,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.lam = lam
        self.max_features = max_features
        self.bootstrap_samples = bootstrap_samples
        self._rng = rng

    def fit(self, rows: Sequence[TrainingRow]) -> tuple[CalibrationModel, FeatureSelection]:
        selection = select_features(rows, self.max_features)
        feature_ids = selection.feature_ids

        x = np.array([vectorize(to_predictor_vector(r), feature_ids) for r in rows], dtype=float)
        y = np.array([r.mood for r in rows], dtype=float)

        weights = ridge_regression(x, y, self.lam)
        sd = residual_sd(x, y, weights)
        weight_var = bootstrap_weight_variance(x, y, self.lam, self.bootstrap_samples, rng=self._rng)

        model = CalibrationModel(
            model_version=MODEL_VERSION,
            updated_at=datetime.utcnow(),
            lambda_=self.lam,
            residual_sd=sd,
            predictor_keys=build_predictor_keys(feature_ids),
            weights=[float(w) for w in weights],
            weight_var=[float(v) for v in weight_var],
            training_n=len(rows),
        )
        logger.debug(
            "calibration.fitted",
            training_n=len(rows),
            features=len(feature_ids),
            residual_sd=round(sd, 4),
        )
        return model, selection


def build_association_edges(
    user_id: str,
    model: CalibrationModel,
    rows: Sequence[TrainingRow],
    *,
    now: datetime | None = None,
) -> list[AssociationEdge]:
    """One User→Feature edge per indicator weight of ``model``."""
    now = now or datetime.utcnow()
    edges: list[AssociationEdge] = []
    for i, feature_id in enumerate(model.feature_ids):
        idx = BASE_PREDICTOR_COUNT + i
        support_n = sum(1 for r in rows if feature_id in r.feature_ids)
        edges.append(AssociationEdge(
            user_id=user_id,
            feature_id=feature_id,
            effect_mean=model.weights[idx],
            effect_sd=math.sqrt(max(0.0, model.weight_var[idx])),
            support_n=support_n,
            target="mood",
            lag_days=0,
            method=model.model_version,
            last_updated_at=now,
        ))
    return edges


async def materialize_associations(
    user_id: str,
    model: CalibrationModel,
    rows: Sequence[TrainingRow],
    repo: AssociationRepository,
) -> int:
    """Merge the model's indicator effects as association edges."""
    edges = build_association_edges(user_id, model, rows)
    if not edges:
        return 0
    written = await repo.merge_many(edges)
    logger.info("calibration.associations_materialized", user_id=user_id, count=written)
    return written

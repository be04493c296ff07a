"""Model prediction and model/retrieval blending.

The model estimate propagates parameter uncertainty with a diagonal delta
approximation (``Σ xᵢ² · Var(wᵢ)``); weight covariances are ignored.  The
blend weight leans on retrieval as labelled support grows.
"""

from __future__ import annotations

import math

from mood_engine.calibration.features import vectorize
from mood_engine.calibration.linalg import clamp
from mood_engine.calibration.models import (
    CalibrationModel,
    Estimate,
    ModelEstimate,
    PredictorVector,
    RetrievedEstimate,
)

ALPHA_INTERCEPT = 0.8
ALPHA_SLOPE = 0.05
ALPHA_MIN = 0.25
ALPHA_MAX = 0.75
DISAGREEMENT_WEIGHT = 0.25
DEFAULT_MOOD_MEAN = 5.0
DEFAULT_MOOD_SD = 2.0


def compute_model_prediction(model: CalibrationModel, predictors: PredictorVector) -> ModelEstimate:
    """Evaluate the ridge model on ``predictors`` using the model's own vocabulary."""
    x = vectorize(predictors, model.feature_ids)
    mu = 0.0
    var = model.residual_sd * model.residual_sd
    for i, xi in enumerate(x):
        w = model.weights[i] if i < len(model.weights) else 0.0
        wv = model.weight_var[i] if i < len(model.weight_var) else 0.0
        mu += w * xi
        var += xi * xi * wv
    return ModelEstimate(mean=mu, sd=math.sqrt(max(0.0, var)), training_n=model.training_n)


def compute_alpha(
    support_n: int,
    *,
    alpha_min: float = ALPHA_MIN,
    alpha_max: float = ALPHA_MAX,
) -> float:
    """Model weight: ``clamp(0.8 - 0.05 * support_n, alpha_min, alpha_max)``."""
    return clamp(ALPHA_INTERCEPT - ALPHA_SLOPE * support_n, alpha_min, alpha_max)


def blend(
    model_estimate: Estimate | None,
    retrieved: RetrievedEstimate | None,
    *,
    alpha_min: float = ALPHA_MIN,
    alpha_max: float = ALPHA_MAX,
    disagreement_cap: float | None = None,
) -> tuple[float, float, float]:
    """Fuse the two estimates into ``(mean, sd, alpha)``.

    A missing component is replaced by the other one, and both missing falls
    back to a neutral ``(5, 2)`` prior.  Disagreement between the components
    inflates the variance by ``0.25 * (mu_model - mu_retr)²``, optionally
    capped at ``disagreement_cap`` before weighting.
    """
    if model_estimate is not None:
        mu_model, sd_model = model_estimate.mean, model_estimate.sd
    elif retrieved is not None:
        mu_model, sd_model = retrieved.mean, retrieved.sd
    else:
        mu_model, sd_model = DEFAULT_MOOD_MEAN, DEFAULT_MOOD_SD

    if retrieved is not None:
        mu_retr, sd_retr = retrieved.mean, retrieved.sd
    else:
        mu_retr, sd_retr = mu_model, sd_model

    alpha = compute_alpha(retrieved.support_n if retrieved is not None else 0, alpha_min=alpha_min, alpha_max=alpha_max)

    mu = alpha * mu_model + (1 - alpha) * mu_retr
    disagreement = (mu_model - mu_retr) ** 2
    if disagreement_cap is not None:
        disagreement = min(disagreement, disagreement_cap)
    var = (
        alpha * alpha * sd_model * sd_model
        + (1 - alpha) * (1 - alpha) * sd_retr * sd_retr
        + DISAGREEMENT_WEIGHT * disagreement
    )
    return mu, math.sqrt(max(0.0, var)), alpha

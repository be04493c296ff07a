"""Calibration — personalised mood calibration and hybrid prediction.

This package turns noisy, irregular self-reports plus AI-derived signals into
a calibrated mood estimate with uncertainty.

Architecture
------------
1. **Baseline normalisation** (`baseline.py`)
   - Time-decayed EWMA mean / std per user and metric
   - Floored, clamped z-scores; percentile and display-scale mappings

2. **Training** (`features.py`, `linalg.py`, `bootstrap.py`, `trainer.py`)
   - Base predictors plus a per-user indicator vocabulary
   - Closed-form ridge regression (Gauss-Jordan solve)
   - Bootstrap variance of every coefficient
   - Association edges materialised from the indicator weights

3. **Prediction** (`retrieval.py`, `blending.py`, `pipeline.py`)
   - Cosine retrieval of similar labelled episodes
   - Similarity-weighted retrieval estimate
   - Model / retrieval blend whose weight shifts with retrieval support

4. **Display helpers** (`clinical.py`, `trends.py`)
   - PHQ-9 / GAD-7 banding and reliable change
   - Mood slopes, volatility and sentiment trend

Limitations
-----------
- Weight uncertainty is propagated with a diagonal approximation only.
- Scale equivalents are for trend display, never a screening result.
"""

from mood_engine.calibration.models import (
    BASE_PREDICTOR_KEYS,
    MODEL_VERSION,
    CalibrationModel,
    FeatureSelection,
    MoodPrediction,
    PredictRequest,
    RetrievedEpisode,
    TrainingRow,
    TrainOptions,
    TrainResult,
)

__all__ = [
    "BASE_PREDICTOR_KEYS",
    "MODEL_VERSION",
    "CalibrationModel",
    "FeatureSelection",
    "MoodPrediction",
    "PredictRequest",
    "RetrievedEpisode",
    "TrainingRow",
    "TrainOptions",
    "TrainResult",
]

"""Pydantic models for the calibration & hybrid prediction subsystem.

These models represent:
- Labelled training rows and the predictor vectors derived from them
- The persisted per-user calibration model (ridge weights + bootstrap variance)
- Retrieved historical episodes with their graph context
- Train / predict results returned to callers
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Order of the fixed base predictors; selected feature ids follow them.
BASE_PREDICTOR_KEYS: tuple[str, ...] = (
    "bias",
    "affect_valence",
    "affect_arousal",
    "sleep_hours",
    "sleep_quality",
    "energy_level",
    "medication_taken",
)
BASE_PREDICTOR_COUNT = len(BASE_PREDICTOR_KEYS)

MODEL_VERSION = "calib_ridge_bootstrap_v1"


# ── Training inputs ───────────────────────────────────────────


class TrainingRow(BaseModel):
    """One labelled entry joined with its affect, context and mentions.

    Any predictor may be missing; the vectoriser substitutes zero.
    """

    entry_id: str
    timestamp: datetime
    mood: float
    affect_valence: float | None = None
    affect_arousal: float | None = None
    sleep_hours: float | None = None
    sleep_quality: float | None = None
    energy_level: float | None = None
    medication_taken: bool | None = None
    feature_ids: list[str] = Field(default_factory=list)


class PredictorVector(BaseModel):
    """Scaled base predictors plus the set of mentioned feature ids."""

    affect_valence: float = 0.0
    affect_arousal: float = 0.0
    sleep_hours: float = 0.0  # hours / 12, clamped to [0, 1]
    sleep_quality: float = 0.0  # quality / 10, clamped to [0, 1]
    energy_level: float = 0.0  # energy / 10, clamped to [0, 1]
    medication_taken: float = 0.0
    feature_ids: frozenset[str] = Field(default_factory=frozenset)


class FeatureSelection(BaseModel):
    """Outcome of per-user vocabulary selection."""

    feature_ids: list[str] = Field(default_factory=list)
    use_features: bool = False
    dynamic_max_features: int = 0
    candidate_count: int = 0  # ids passing the support filter, before the cliff
    support: dict[str, int] = Field(default_factory=dict)


class TrainOptions(BaseModel):
    """Per-call overrides for training; ``None`` falls back to settings."""

    model_config = ConfigDict(populate_by_name=True)

    lambda_: float | None = Field(None, alias="lambda", gt=0)
    max_features: int | None = Field(None, ge=0)
    min_training_n: int | None = Field(None, ge=1)
    bootstrap_samples: int | None = Field(None, ge=0)


# ── Persisted model ───────────────────────────────────────────


class CalibrationModel(BaseModel):
    """The single latest ridge calibration model for a user."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_version: str = MODEL_VERSION
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    lambda_: float = Field(1.0, alias="lambda")
    residual_sd: float = 0.0
    predictor_keys: list[str]
    weights: list[float]
    weight_var: list[float]
    training_n: int = 0

    @model_validator(mode="after")
    def _check_lengths(self) -> CalibrationModel:
        if not (len(self.predictor_keys) == len(self.weights) == len(self.weight_var)):
            raise ValueError(
                "predictor_keys, weights and weight_var must have the same length "
                f"({len(self.predictor_keys)}, {len(self.weights)}, {len(self.weight_var)})"
            )
        return self

    @property
    def feature_ids(self) -> list[str]:
        """Indicator vocabulary (everything after the base predictors)."""
        return self.predictor_keys[BASE_PREDICTOR_COUNT:]


class TrainResult(BaseModel):
    """Result of a training request; ``trained=False`` is a normal outcome."""

    trained: bool
    reason: str | None = None
    model: CalibrationModel | None = None
    selection: FeatureSelection | None = None


# ── Retrieval ─────────────────────────────────────────────────


class EntryRef(BaseModel):
    entry_id: str
    timestamp: datetime


class EpisodeEntry(BaseModel):
    entry_id: str
    timestamp: datetime
    source: str | None = None
    text: str | None = None
    similarity: float


class EpisodeSelfReport(BaseModel):
    report_id: str
    timestamp: datetime
    mood: float
    valence: float | None = None
    arousal: float | None = None
    confidence: float | None = None


class EpisodeAffect(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    affect_id: str
    valence: float | None = None
    arousal: float | None = None
    model_version: str | None = None
    computed_at: datetime | None = None


class EpisodeFeature(BaseModel):
    feature_id: str
    type: str
    name: str
    mention: dict[str, Any] = Field(default_factory=dict)
    association: dict[str, Any] | None = None


class RetrievedEpisode(BaseModel):
    """A similar historical entry with its surrounding graph context."""

    entry: EpisodeEntry
    self_report: EpisodeSelfReport | None = None
    affect: EpisodeAffect | None = None
    prev: EntryRef | None = None
    next: EntryRef | None = None
    features: list[EpisodeFeature] = Field(default_factory=list)

    @property
    def mood(self) -> float | None:
        return self.self_report.mood if self.self_report is not None else None


# ── Estimates & predictions ───────────────────────────────────


class Estimate(BaseModel):
    mean: float
    sd: float


class ModelEstimate(Estimate):
    training_n: int


class RetrievedEstimate(Estimate):
    support_n: int


class PredictRequest(BaseModel):
    """Predict for an existing entry (preferred) or for raw text."""

    user_id: str
    entry_id: str | None = None
    text: str | None = None
    limit: int | None = None
    within_days: int | None = None


class EpisodeSummary(BaseModel):
    entry_id: str
    timestamp: datetime
    similarity: float
    mood: float | None = None


class MoodPrediction(BaseModel):
    """Blended posterior mood estimate with its two components."""

    mean: float
    sd: float
    alpha: float
    model: ModelEstimate | None = None
    retrieved: RetrievedEstimate | None = None
    episodes: list[EpisodeSummary] = Field(default_factory=list)

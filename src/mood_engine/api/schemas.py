"""Request / response models shared across API route modules."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from mood_engine.models import AIExtraction, EntrySource, UtcDatetime


class TrainRequest(BaseModel):
    """Optional overrides for a training run."""
    model_config = ConfigDict(populate_by_name=True)

    lambda_: float | None = Field(None, alias="lambda", gt=0)
    max_features: int | None = Field(None, ge=0)
    min_training_n: int | None = Field(None, ge=1)
    bootstrap_samples: int | None = Field(None, ge=0)


class PredictBody(BaseModel):
    entry_id: str | None = None
    text: str | None = None
    limit: int | None = None         # clamped to 1-50
    within_days: int | None = None   # clamped to 1-3650


class RetrieveBody(BaseModel):
    query: str
    limit: int | None = None
    within_days: int | None = None


class SelfReportIn(BaseModel):
    mood: float = Field(ge=1, le=10)
    valence: float | None = Field(None, ge=0.0, le=1.0)
    arousal: float | None = Field(None, ge=0.0, le=1.0)
    confidence: float | None = Field(None, ge=0.0, le=1.0)


class ContextIn(BaseModel):
    sleep_hours: float | None = Field(None, ge=0, le=24)
    sleep_quality: float | None = Field(None, ge=1, le=10)
    medication_taken: bool | None = None
    medication_notes: str | None = None
    energy_level: float | None = Field(None, ge=1, le=10)


class EntryIngestRequest(BaseModel):
    """Upsert one entry with its optional label, context and extraction."""
    user_id: str
    entry_id: str
    timestamp: UtcDatetime | None = None
    text: str = ""
    source: EntrySource = EntrySource.JOURNAL
    embedding: list[float] | None = None  # computed from text when omitted
    language: str | None = None
    self_report: SelfReportIn | None = None
    context: ContextIn | None = None
    extraction: AIExtraction | None = None

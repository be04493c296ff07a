"""Shared Pydantic models for the stored entities (the graph-store schema)."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

# ── Timestamps ────────────────────────────────────────────────


def to_naive_utc(ts: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC.

    Storage columns and every internal clock (``datetime.utcnow()``) are
    naive UTC, so inbound timestamps are normalised on validation.
    """
    if ts.tzinfo is None or ts.utcoffset() is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]

# ── Enums ─────────────────────────────────────────────────────


class EntrySource(str, Enum):
    """Where a journal entry came from."""
    JOURNAL = "journal"
    CHECKIN = "checkin"
    IMPORT = "import"


class FeatureType(str, Enum):
    """Categories of text-derived features mentioned by an entry."""
    THEME = "Theme"  # emotions
    SYMPTOM = "Symptom"
    STRESSOR = "Stressor"  # triggers


class BaselineMetric(str, Enum):
    """Metrics tracked by the per-user EWMA baselines."""
    MOOD = "mood"
    CALMNESS = "calmness"  # reverse-coded anxiety


# ── Feature identity ──────────────────────────────────────────

_WHITESPACE = re.compile(r"\s+")


def normalize_feature_name(name: str) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", name.strip().lower())


def make_feature_id(feature_type: FeatureType | str, name: str) -> str:
    """Canonical feature id, ``"<Type>:<normalized name>"``."""
    type_value = feature_type.value if isinstance(feature_type, FeatureType) else feature_type
    return f"{type_value}:{normalize_feature_name(name)}"


# ── Entities ──────────────────────────────────────────────────


class Entry(BaseModel):
    """A journal entry with its text embedding."""
    entry_id: str
    user_id: str
    timestamp: UtcDatetime
    text: str = ""
    source: EntrySource = EntrySource.JOURNAL
    embedding: list[float] = Field(default_factory=list)
    language: str | None = None


class SelfReportLabel(BaseModel):
    """User-reported mood for an entry; the only ground-truth training label."""
    entry_id: str
    timestamp: UtcDatetime
    mood: float = Field(ge=1, le=10)
    valence: float | None = Field(None, ge=0.0, le=1.0)
    arousal: float | None = Field(None, ge=0.0, le=1.0)
    confidence: float | None = Field(None, ge=0.0, le=1.0)

    @property
    def report_id(self) -> str:
        return f"sr:{self.entry_id}"


class ContextPoint(BaseModel):
    """Structured context logged alongside an entry."""
    entry_id: str
    timestamp: UtcDatetime
    sleep_hours: float | None = Field(None, ge=0, le=24)
    sleep_quality: float | None = Field(None, ge=1, le=10)
    medication_taken: bool | None = None
    medication_notes: str | None = None
    energy_level: float | None = Field(None, ge=1, le=10)

    @property
    def context_id(self) -> str:
        return f"ctx:{self.entry_id}"


class AffectPoint(BaseModel):
    """Model-derived affect for an entry.  Never used as a training label."""
    model_config = ConfigDict(protected_namespaces=())

    entry_id: str
    timestamp: UtcDatetime
    valence: float | None = None
    arousal: float | None = None
    phq9_estimate: float | None = None
    gad7_estimate: float | None = None
    mood_z_score: float | None = None
    anxiety_z_score: float | None = None
    model_version: str

    @property
    def affect_id(self) -> str:
        return f"aff:{self.entry_id}:{self.model_version}"


class Feature(BaseModel):
    """A deduplicated Theme / Symptom / Stressor node."""
    feature_id: str
    type: FeatureType
    name: str

    @classmethod
    def from_name(cls, feature_type: FeatureType, name: str) -> Feature:
        normalized = normalize_feature_name(name)
        return cls(
            feature_id=make_feature_id(feature_type, normalized),
            type=feature_type,
            name=normalized,
        )


class MentionEdge(BaseModel):
    """Entry → Feature mention produced by the extractor."""
    entry_id: str
    feature_id: str
    confidence: float | None = None
    extractor_version: str
    timestamp: UtcDatetime


class AssociationEdge(BaseModel):
    """Derived User → Feature effect size; overwritten on every retrain."""
    user_id: str
    feature_id: str
    effect_mean: float
    effect_sd: float
    support_n: int | None = None
    target: str = "mood"
    lag_days: int = 0
    method: str = ""
    last_updated_at: UtcDatetime = Field(default_factory=datetime.utcnow)


class BaselineStats(BaseModel):
    """Time-decayed running statistics for one (user, metric) pair."""
    mean: float = 0.0
    std: float = 0.0
    count: int = 0
    last_updated_at: UtcDatetime | None = None


class AIExtraction(BaseModel):
    """Output of the text-understanding service for one entry."""
    mood_score: float | None = Field(None, ge=1, le=10)
    anxiety_score: float | None = Field(None, ge=1, le=10)
    phq9_estimate: float | None = Field(None, ge=0, le=27)
    gad7_estimate: float | None = Field(None, ge=0, le=21)
    emotions: list[str] = Field(default_factory=list)
    symptoms: list[str] = Field(default_factory=list)
    triggers: list[str] = Field(default_factory=list)
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    extractor_version: str = "extract_v1"
    affect_model_version: str = "affect_v1"

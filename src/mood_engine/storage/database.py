"""SQLAlchemy async engine, session factory, and ORM table definitions.

The entry graph (users, entries, features and the edges between them) is
stored as plain relational tables: ``mentions`` and ``associations`` are the
Entry→Feature and User→Feature edges, ``entry_links`` holds the time-ordered
NEXT chain of each user's entries.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mood_engine.config import get_settings


# ── Base ──────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ── Nodes ─────────────────────────────────────────────────────

class UserRow(Base):
    """A user, carrying their latest calibration model inline."""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    # Calibration model (overwritten wholesale on retrain)
    calib_model_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    calib_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    calib_lambda: Mapped[float | None] = mapped_column(Float, nullable=True)
    calib_residual_sd: Mapped[float | None] = mapped_column(Float, nullable=True)
    calib_predictor_keys_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    calib_weights_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    calib_weight_var_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    calib_training_n: Mapped[int | None] = mapped_column(Integer, nullable=True)


class EntryRow(Base):
    """Journal entry with its embedding."""

    __tablename__ = "entries"

    entry_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    text: Mapped[str] = mapped_column(Text, default="")
    source: Mapped[str] = mapped_column(String(16), default="journal")
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    embedding_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class SelfReportRow(Base):
    """User-reported mood label for an entry."""

    __tablename__ = "self_reports"

    report_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    entry_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime)
    mood: Mapped[float] = mapped_column(Float)
    valence: Mapped[float | None] = mapped_column(Float, nullable=True)
    arousal: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)


class ContextPointRow(Base):
    """Sleep / energy / medication context for an entry."""

    __tablename__ = "context_points"

    context_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    entry_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime)
    sleep_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    sleep_quality: Mapped[float | None] = mapped_column(Float, nullable=True)
    medication_taken: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    medication_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    energy_level: Mapped[float | None] = mapped_column(Float, nullable=True)


class AffectPointRow(Base):
    """Model-derived affect for an entry, one row per extractor version."""

    __tablename__ = "affect_points"

    affect_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    entry_id: Mapped[str] = mapped_column(String(128), index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime)
    valence: Mapped[float | None] = mapped_column(Float, nullable=True)
    arousal: Mapped[float | None] = mapped_column(Float, nullable=True)
    phq9_estimate: Mapped[float | None] = mapped_column(Float, nullable=True)
    gad7_estimate: Mapped[float | None] = mapped_column(Float, nullable=True)
    mood_z_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    anxiety_z_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    model_version: Mapped[str] = mapped_column(String(64))
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class FeatureRow(Base):
    """Deduplicated Theme / Symptom / Stressor node."""

    __tablename__ = "features"

    feature_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    type: Mapped[str] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(256))


# ── Edges ─────────────────────────────────────────────────────

class MentionRow(Base):
    """Entry → Feature mention."""

    __tablename__ = "mentions"
    __table_args__ = (UniqueConstraint("entry_id", "feature_id", name="uq_mention"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(128), index=True)
    feature_id: Mapped[str] = mapped_column(String(256), index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    extractor_version: Mapped[str] = mapped_column(String(64), default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime)


class AssociationRow(Base):
    """User → Feature effect size derived from the calibration model."""

    __tablename__ = "associations"
    __table_args__ = (
        UniqueConstraint("user_id", "feature_id", "target", "lag_days", name="uq_association"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    feature_id: Mapped[str] = mapped_column(String(256))
    target: Mapped[str] = mapped_column(String(32), default="mood")
    lag_days: Mapped[int] = mapped_column(Integer, default=0)
    effect_mean: Mapped[float] = mapped_column(Float)
    effect_sd: Mapped[float] = mapped_column(Float)
    support_n: Mapped[int | None] = mapped_column(Integer, nullable=True)
    method: Mapped[str] = mapped_column(String(64), default="")
    last_updated_at: Mapped[datetime] = mapped_column(DateTime)


class EntryLinkRow(Base):
    """NEXT edge between consecutive entries of one user."""

    __tablename__ = "entry_links"
    __table_args__ = (UniqueConstraint("from_entry_id", "to_entry_id", name="uq_entry_link"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    from_entry_id: Mapped[str] = mapped_column(String(128), index=True)
    to_entry_id: Mapped[str] = mapped_column(String(128), index=True)
    delta_minutes: Mapped[int] = mapped_column(Integer, default=0)


class BaselineStatsRow(Base):
    """Time-decayed running statistics per (user, metric)."""

    __tablename__ = "baseline_stats"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    metric: Mapped[str] = mapped_column(String(32), primary_key=True)
    mean: Mapped[float] = mapped_column(Float, default=0.0)
    std: Mapped[float] = mapped_column(Float, default=0.0)
    count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class BaselineObservationRow(Base):
    """Which entries have already been folded into a (user, metric) baseline."""

    __tablename__ = "baseline_observations"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    metric: Mapped[str] = mapped_column(String(32), primary_key=True)
    entry_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


# ── Engine & session ──────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, echo=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(_get_engine(), expire_on_commit=False)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency-injectable async session generator (for FastAPI)."""
    factory = get_session_factory()
    async with factory() as session:
        yield session


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (idempotent)."""
    if engine is None:
        url = get_settings().database_url
        if url.startswith("sqlite"):
            # URL format: sqlite+aiosqlite:///path/to/db
            db_path = Path(url.split("///", 1)[-1])
            db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = _get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections and forget the cached engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None

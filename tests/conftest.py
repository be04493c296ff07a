"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta

import numpy as np
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from mood_engine.calibration.models import TrainingRow
from mood_engine.calibration.retrieval import RetrievalEngine
from mood_engine.config import Settings
from mood_engine.storage.database import init_db
from mood_engine.storage.repository import (
    AssociationRepository,
    BaselineRepository,
    CalibrationModelRepository,
    EntryRepository,
    EpisodeRepository,
)

EMBED_DIM = 4
NOW = datetime(2026, 3, 1, 12, 0, 0)

# Features cycled through the synthetic history: five frequent, one rare.
FEATURE_CYCLE = [
    ["Theme:joy", "Stressor:work"],
    ["Theme:sadness", "Symptom:fatigue"],
    ["Theme:joy", "Theme:calm"],
    ["Stressor:work", "Symptom:fatigue"],
    ["Theme:calm", "Theme:sadness"],
]


def make_training_rows(n: int, *, start: datetime | None = None) -> list[TrainingRow]:
    """Deterministic labelled history with mood driven by valence and sleep."""
    start = start or NOW - timedelta(days=n)
    rows = []
    for i in range(n):
        valence = (i % 7) / 6
        sleep = 5 + (i % 4)
        features = list(FEATURE_CYCLE[i % len(FEATURE_CYCLE)])
        if i == 0:
            features.append("Theme:awe")
        rows.append(TrainingRow(
            entry_id=f"e{i:03d}",
            timestamp=start + timedelta(days=i),
            mood=round(2 + 6 * valence + 0.3 * (sleep - 5), 2),
            affect_valence=valence,
            affect_arousal=1 - valence,
            sleep_hours=sleep,
            sleep_quality=6,
            energy_level=5 + (i % 3),
            medication_taken=i % 2 == 0,
            feature_ids=features,
        ))
    return rows


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        embedding_dimensions=EMBED_DIM,
        calibration_bootstrap_samples=20,
    )


@pytest.fixture
async def session_factory(settings: Settings):
    """Temporary SQLite database with all tables created."""
    engine = create_async_engine(settings.database_url)
    await init_db(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def entry_repo(session_factory) -> EntryRepository:
    return EntryRepository(session_factory)


@pytest.fixture
def episode_repo(session_factory) -> EpisodeRepository:
    return EpisodeRepository(session_factory)


@pytest.fixture
def model_repo(session_factory) -> CalibrationModelRepository:
    return CalibrationModelRepository(session_factory)


@pytest.fixture
def association_repo(session_factory) -> AssociationRepository:
    return AssociationRepository(session_factory)


@pytest.fixture
def baseline_repo(session_factory) -> BaselineRepository:
    return BaselineRepository(session_factory)


@pytest.fixture
def retrieval(episode_repo: EpisodeRepository) -> RetrievalEngine:
    return RetrievalEngine(episode_repo, dimensions=EMBED_DIM)


@pytest.fixture
def make_rows():
    """Factory for the deterministic labelled history."""
    return make_training_rows


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)

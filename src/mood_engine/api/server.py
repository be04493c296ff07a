"""FastAPI application — REST endpoints for ingestion and mood calibration.

This module wires together all infrastructure:
- CORS, request logging and error middleware
- Database initialisation and repositories
- Embedding client for the text-understanding service
- Entry ingestion with baseline z-scores
- Calibration training, prediction and retrieval
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from mood_engine.api.middleware import setup_middleware
from mood_engine.api.routes.calibration import router as calibration_router
from mood_engine.api.routes.entries import router as entries_router
from mood_engine.calibration.pipeline import CalibrationPipeline
from mood_engine.calibration.retrieval import RetrievalEngine
from mood_engine.config import get_settings
from mood_engine.embeddings import EmbeddingClient
from mood_engine.ingest import IngestService
from mood_engine.logger import setup_logging
from mood_engine.storage.database import dispose_engine, init_db
from mood_engine.storage.repository import (
    AssociationRepository,
    BaselineRepository,
    CalibrationModelRepository,
    EntryRepository,
    EpisodeRepository,
)

logger = structlog.get_logger(__name__)

__version__ = "0.1.0"

# ── Shared state (initialised in lifespan) ────────────────────

_pipeline: CalibrationPipeline | None = None
_ingest_service: IngestService | None = None
_embedder: EmbeddingClient | None = None
_entry_repo: EntryRepository | None = None
_baseline_repo: BaselineRepository | None = None
_association_repo: AssociationRepository | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hooks."""
    global _pipeline, _ingest_service, _embedder
    global _entry_repo, _baseline_repo, _association_repo

    settings = get_settings()
    setup_logging(settings.log_level)

    # 1. Database
    await init_db()
    logger.info("server.db_ready")

    # 2. Repositories
    _entry_repo = EntryRepository()
    _baseline_repo = BaselineRepository()
    _association_repo = AssociationRepository()
    model_repo = CalibrationModelRepository()
    episode_repo = EpisodeRepository()

    # 3. Text-understanding client
    _embedder = EmbeddingClient(settings)

    # 4. Services
    _ingest_service = IngestService(
        entry_repo=_entry_repo,
        baseline_repo=_baseline_repo,
        half_life_days=settings.baseline_half_life_days,
    )
    _pipeline = CalibrationPipeline(
        entry_repo=_entry_repo,
        model_repo=model_repo,
        association_repo=_association_repo,
        retrieval=RetrievalEngine(episode_repo, dimensions=settings.embedding_dimensions),
        embedder=_embedder,
        settings=settings,
    )

    logger.info("server.started", port=settings.api_port)

    yield  # ← application runs

    # Shutdown
    _pipeline = None
    _ingest_service = None
    await dispose_engine()
    logger.info("server.stopped")


app = FastAPI(
    title="Mood Engine API",
    description="Personalised mood calibration and hybrid prediction for journal entries.",
    version=__version__,
    lifespan=lifespan,
)

# ── Middleware ────────────────────────────────────────────────
setup_middleware(app)

# ── Routers ───────────────────────────────────────────────────
app.include_router(entries_router)
app.include_router(calibration_router)


# ── Health ────────────────────────────────────────────────────

@app.get("/health", tags=["system"])
async def health():
    return {"status": "ok", "pipeline_ready": _pipeline is not None}


@app.get("/system/info", tags=["system"])
async def system_info():
    """Engine configuration relevant to operations."""
    settings = get_settings()
    return {
        "version": __version__,
        "pipeline": {"ready": _pipeline is not None},
        "embedding": {
            "model": settings.embedding_model,
            "dimensions": settings.embedding_dimensions,
        },
        "calibration": {
            "lambda": settings.calibration_lambda,
            "max_features": settings.calibration_max_features,
            "min_training_n": settings.calibration_min_training_n,
            "bootstrap_samples": settings.calibration_bootstrap_samples,
        },
    }

"""Entry ingestion, baseline and trend routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException

from mood_engine.api.routes.calibration import to_http_error
from mood_engine.api.schemas import EntryIngestRequest
from mood_engine.calibration.baseline import gated_z_score, z_to_percentile
from mood_engine.calibration.trends import MoodPoint, compute_trend_indicators
from mood_engine.config import get_settings
from mood_engine.errors import EmbeddingDimensionError, MoodEngineError
from mood_engine.models import AIExtraction, ContextPoint, Entry, SelfReportLabel

router = APIRouter(tags=["entries"])


@router.post("/entries", status_code=201)
async def ingest_entry(req: EntryIngestRequest):
    """Upsert an entry with its optional self-report, context and extraction.

    Missing embeddings are computed from the entry text.  Returns the mood
    and calmness z-scores computed against the user's prior baselines.
    """
    from mood_engine.api.server import _embedder, _ingest_service

    if _ingest_service is None or _embedder is None:
        raise HTTPException(503, "Ingest service not ready.")

    settings = get_settings()
    timestamp = req.timestamp or datetime.utcnow()
    try:
        embedding = req.embedding
        if embedding is None and req.text.strip():
            embedding = await _embedder.embed(req.text)
        if embedding and len(embedding) != settings.embedding_dimensions:
            raise EmbeddingDimensionError(settings.embedding_dimensions, len(embedding))
    except MoodEngineError as exc:
        raise to_http_error(exc) from exc

    entry = Entry(
        entry_id=req.entry_id,
        user_id=req.user_id,
        timestamp=timestamp,
        text=req.text,
        source=req.source,
        embedding=embedding or [],
        language=req.language,
    )
    self_report = (
        SelfReportLabel(entry_id=req.entry_id, timestamp=timestamp, **req.self_report.model_dump())
        if req.self_report is not None
        else None
    )
    context = (
        ContextPoint(entry_id=req.entry_id, timestamp=timestamp, **req.context.model_dump())
        if req.context is not None
        else None
    )
    extraction: AIExtraction | None = req.extraction

    result = await _ingest_service.ingest(entry, self_report=self_report, context=context, extraction=extraction)
    return result.model_dump(mode="json")


@router.get("/baselines/{user_id}")
async def get_baselines(user_id: str):
    """Current EWMA baselines per metric."""
    from mood_engine.api.server import _baseline_repo

    if _baseline_repo is None:
        raise HTTPException(503, "Storage not ready.")
    baselines = await _baseline_repo.get_all(user_id)
    return {
        "user_id": user_id,
        "baselines": {metric: stats.model_dump(mode="json") for metric, stats in baselines.items()},
    }


@router.get("/trends/{user_id}")
async def get_trends(user_id: str):
    """Mood slopes, volatility and sentiment trend over labelled entries."""
    from mood_engine.api.server import _baseline_repo, _entry_repo

    if _entry_repo is None or _baseline_repo is None:
        raise HTTPException(503, "Storage not ready.")
    series = await _entry_repo.list_mood_series(user_id)
    indicators = compute_trend_indicators(
        [MoodPoint(timestamp=ts, mood=mood, anxiety=anxiety) for ts, mood, anxiety in series]
    )

    latest_percentile = None
    if series:
        mood_baseline = await _baseline_repo.get(user_id, "mood")
        z = gated_z_score(series[-1][1], mood_baseline)
        latest_percentile = z_to_percentile(z) if z is not None else None

    return {
        "user_id": user_id,
        "trends": indicators.model_dump(mode="json"),
        "latest_mood_percentile": latest_percentile,
    }

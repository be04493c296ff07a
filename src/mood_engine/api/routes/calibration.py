"""Calibration routes — train, predict, retrieve, associations."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from mood_engine.api.schemas import PredictBody, RetrieveBody, TrainRequest
from mood_engine.calibration.models import PredictRequest, TrainOptions
from mood_engine.errors import (
    EmbeddingDimensionError,
    EmbeddingServiceError,
    EntryNotFoundError,
    MissingInputsError,
    MoodEngineError,
)

router = APIRouter(prefix="/graph", tags=["calibration"])

_STATUS_BY_ERROR: dict[type[MoodEngineError], int] = {
    MissingInputsError: 400,
    EntryNotFoundError: 404,
    EmbeddingDimensionError: 422,
    EmbeddingServiceError: 502,
}


def to_http_error(exc: MoodEngineError) -> HTTPException:
    """Translate an engine error into the matching HTTP status."""
    for error_type, status in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return HTTPException(status, str(exc))
    return HTTPException(500, "Internal server error.")


def _get_pipeline():
    from mood_engine.api.server import _pipeline

    if _pipeline is None:
        raise HTTPException(503, "Calibration pipeline not ready.")
    return _pipeline


@router.post("/train/{user_id}")
async def train_model(user_id: str, req: TrainRequest | None = None):
    """Fit (or refit) the user's calibration model.

    Too few labelled entries is not an error: the result carries
    ``trained: false`` and a human-readable reason.
    """
    pipeline = _get_pipeline()
    options = TrainOptions(**req.model_dump()) if req is not None else None
    result = await pipeline.train(user_id, options)
    return {"result": result.model_dump(mode="json", by_alias=True, exclude_none=True)}


@router.post("/predict/{user_id}")
async def predict_mood(user_id: str, req: PredictBody):
    """Blended mood estimate for a stored entry (preferred) or raw text."""
    pipeline = _get_pipeline()
    try:
        prediction = await pipeline.predict(PredictRequest(user_id=user_id, **req.model_dump()))
    except MoodEngineError as exc:
        raise to_http_error(exc) from exc
    return {"prediction": prediction.model_dump(mode="json")}


@router.post("/retrieve/{user_id}")
async def retrieve_episodes(user_id: str, req: RetrieveBody):
    """Similar historical episodes for free text, with their graph context."""
    pipeline = _get_pipeline()
    try:
        episodes = await pipeline.retrieve_for_text(
            user_id, req.query, limit=req.limit, within_days=req.within_days
        )
    except MoodEngineError as exc:
        raise to_http_error(exc) from exc
    return {"episodes": [e.model_dump(mode="json") for e in episodes]}


@router.get("/associations/{user_id}")
async def list_associations(user_id: str, limit: int = Query(10, ge=1, le=100)):
    """Strongest feature → mood associations from the latest training run."""
    from mood_engine.api.server import _association_repo

    if _association_repo is None:
        raise HTTPException(503, "Storage not ready.")
    edges = await _association_repo.list_for_user(user_id, limit=limit)
    return {"user_id": user_id, "count": len(edges), "associations": [e.model_dump(mode="json") for e in edges]}

"""Calibration orchestrator — ties training, retrieval and blending together.

:class:`CalibrationPipeline` is wired into the FastAPI lifespan and the CLI.
It coordinates:

1. Loading labelled training rows and fitting the per-user ridge model
2. Persisting the model and materialising association edges
3. Resolving a prediction target (stored entry or raw text)
4. Retrieving similar labelled episodes
5. Blending the model and retrieval estimates
"""

from __future__ import annotations

import asyncio

import numpy as np
import structlog

from mood_engine.calibration.blending import blend, compute_model_prediction
from mood_engine.calibration.features import scale_predictors
from mood_engine.calibration.linalg import clamp
from mood_engine.calibration.models import (
    EpisodeSummary,
    MoodPrediction,
    PredictorVector,
    PredictRequest,
    RetrievedEpisode,
    TrainOptions,
    TrainResult,
)
from mood_engine.calibration.retrieval import RetrievalEngine, compute_retrieved_estimate
from mood_engine.calibration.trainer import CalibrationTrainer, materialize_associations
from mood_engine.config import Settings, get_settings
from mood_engine.embeddings import EmbeddingClient
from mood_engine.errors import EntryNotFoundError, MissingInputsError
from mood_engine.storage.repository import (
    AssociationRepository,
    CalibrationModelRepository,
    EntryRepository,
)

logger = structlog.get_logger(__name__)

MAX_RETRIEVAL_LIMIT = 50
MAX_WITHIN_DAYS = 3650


class CalibrationPipeline:
    """Orchestrator for per-user calibration and hybrid prediction.

    Parameters
    ----------
    entry_repo : EntryRepository
        Training rows and per-entry predictors.
    model_repo : CalibrationModelRepository
        Load / overwrite the user's calibration model.
    association_repo : AssociationRepository
        Merge User→Feature association edges after training.
    retrieval : RetrievalEngine
        Similar-episode search.
    embedder : EmbeddingClient, optional
        Needed only for raw-text predictions.
    settings : Settings, optional
        Engine defaults (falls back to :func:`get_settings`).
    rng : numpy.random.Generator, optional
        Bootstrap randomness, injectable for reproducible training.
    """

    def __init__(
        self,
        entry_repo: EntryRepository,
        model_repo: CalibrationModelRepository,
        association_repo: AssociationRepository,
        retrieval: RetrievalEngine,
        embedder: EmbeddingClient | None = None,
        settings: Settings | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._entry_repo = entry_repo
        self._model_repo = model_repo
        self._association_repo = association_repo
        self._retrieval = retrieval
        self._embedder = embedder
        self._settings = settings or get_settings()
        self._rng = rng

    # ── Training ──────────────────────────────────────────────

    async def train(self, user_id: str, options: TrainOptions | None = None) -> TrainResult:
        """Fit and persist the user's calibration model.

        Too few labelled entries is reported as ``trained=False`` with a
        reason, not raised.
        """
        options = options or TrainOptions()
        s = self._settings
        lam = options.lambda_ if options.lambda_ is not None else s.calibration_lambda
        max_features = options.max_features if options.max_features is not None else s.calibration_max_features
        min_n = options.min_training_n if options.min_training_n is not None else s.calibration_min_training_n
        samples = (
            options.bootstrap_samples if options.bootstrap_samples is not None else s.calibration_bootstrap_samples
        )

        rows = await self._entry_repo.list_training_rows(user_id)
        if len(rows) < min_n:
            logger.info("calibration.insufficient_data", user_id=user_id, labelled=len(rows), required=min_n)
            return TrainResult(
                trained=False,
                reason=f"Need at least {min_n} labeled entries; found {len(rows)}.",
            )

        trainer = CalibrationTrainer(lam=lam, max_features=max_features, bootstrap_samples=samples, rng=self._rng)
        model, selection = await asyncio.to_thread(trainer.fit, rows)

        await self._model_repo.save(user_id, model)
        await materialize_associations(user_id, model, rows, self._association_repo)

        logger.info(
            "calibration.trained",
            user_id=user_id,
            training_n=model.training_n,
            features=len(model.feature_ids),
            use_features=selection.use_features,
            residual_sd=round(model.residual_sd, 4),
        )
        return TrainResult(trained=True, model=model, selection=selection)

    # ── Prediction ────────────────────────────────────────────

    async def predict(self, request: PredictRequest) -> MoodPrediction:
        """Blend the user's model with similar-episode retrieval.

        When both ``entry_id`` and ``text`` are given the stored entry wins and
        the text is ignored.

        Raises
        ------
        MissingInputsError
            Neither ``entry_id`` nor non-blank ``text`` was supplied.
        EntryNotFoundError
            ``entry_id`` does not exist for this user.
        """
        s = self._settings
        user_id = request.user_id
        has_text = bool(request.text and request.text.strip())
        if not request.entry_id and not has_text:
            raise MissingInputsError("entry_id or text is required")

        limit = int(clamp(request.limit if request.limit is not None else s.retrieval_limit, 1, MAX_RETRIEVAL_LIMIT))
        within_days = int(clamp(
            request.within_days if request.within_days is not None else s.retrieval_within_days,
            1,
            MAX_WITHIN_DAYS,
        ))

        exclude_entry_id: str | None = None
        if request.entry_id:
            entry = await self._entry_repo.get(user_id, request.entry_id)
            if entry is None:
                raise EntryNotFoundError(user_id, request.entry_id)
            embedding = entry.embedding
            predictors = await self._entry_predictors(request.entry_id)
            exclude_entry_id = request.entry_id
        else:
            embedding = await self._require_embedder().embed(request.text or "")
            predictors = scale_predictors()

        episodes: list[RetrievedEpisode] = []
        if embedding:
            episodes = await self._retrieval.retrieve(
                user_id,
                embedding,
                limit=limit,
                within_days=within_days,
                exclude_entry_id=exclude_entry_id,
            )
        else:
            logger.warning("calibration.entry_without_embedding", user_id=user_id, entry_id=request.entry_id)

        retrieved = compute_retrieved_estimate(episodes)
        if retrieved is None:
            logger.info("retrieval.no_support", user_id=user_id, hits=len(episodes))

        model = await self._model_repo.get(user_id)
        model_estimate = compute_model_prediction(model, predictors) if model is not None else None

        mean, sd, alpha = blend(
            model_estimate,
            retrieved,
            alpha_min=s.blend_alpha_min,
            alpha_max=s.blend_alpha_max,
            disagreement_cap=s.blend_disagreement_cap,
        )

        logger.info(
            "calibration.predicted",
            user_id=user_id,
            mean=round(mean, 3),
            sd=round(sd, 3),
            alpha=round(alpha, 3),
            has_model=model is not None,
            support_n=retrieved.support_n if retrieved else 0,
        )
        return MoodPrediction(
            mean=mean,
            sd=sd,
            alpha=alpha,
            model=model_estimate,
            retrieved=retrieved,
            episodes=[
                EpisodeSummary(
                    entry_id=e.entry.entry_id,
                    timestamp=e.entry.timestamp,
                    similarity=e.entry.similarity,
                    mood=e.mood,
                )
                for e in episodes
            ],
        )

    async def retrieve_for_text(
        self,
        user_id: str,
        text: str,
        *,
        limit: int | None = None,
        within_days: int | None = None,
    ) -> list[RetrievedEpisode]:
        """Embed ``text`` and return the similar episodes with full context."""
        if not text or not text.strip():
            raise MissingInputsError("query is required")
        s = self._settings
        embedding = await self._require_embedder().embed(text)
        return await self._retrieval.retrieve(
            user_id,
            embedding,
            limit=int(clamp(limit if limit is not None else s.retrieval_limit, 1, MAX_RETRIEVAL_LIMIT)),
            within_days=int(clamp(
                within_days if within_days is not None else s.retrieval_within_days, 1, MAX_WITHIN_DAYS
            )),
        )

    # ── Helpers ───────────────────────────────────────────────

    async def _entry_predictors(self, entry_id: str) -> PredictorVector:
        affect = await self._entry_repo.get_latest_affect(entry_id)
        ctx = await self._entry_repo.get_context(entry_id)
        feature_ids = await self._entry_repo.get_feature_ids(entry_id)
        return scale_predictors(
            affect_valence=affect.valence if affect else None,
            affect_arousal=affect.arousal if affect else None,
            sleep_hours=ctx.sleep_hours if ctx else None,
            sleep_quality=ctx.sleep_quality if ctx else None,
            energy_level=ctx.energy_level if ctx else None,
            medication_taken=ctx.medication_taken if ctx else None,
            feature_ids=feature_ids,
        )

    def _require_embedder(self) -> EmbeddingClient:
        if self._embedder is None:
            self._embedder = EmbeddingClient(self._settings)
        return self._embedder

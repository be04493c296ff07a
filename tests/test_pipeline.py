"""End-to-end tests for training, prediction and retrieval over SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta

import httpx
import pytest

from mood_engine.calibration.models import BASE_PREDICTOR_KEYS, PredictRequest, TrainOptions
from mood_engine.calibration.pipeline import CalibrationPipeline
from mood_engine.embeddings import EmbeddingClient
from mood_engine.errors import (
    EmbeddingDimensionError,
    EmbeddingServiceError,
    EntryNotFoundError,
    MissingInputsError,
)
from mood_engine.models import (
    AffectPoint,
    ContextPoint,
    Entry,
    Feature,
    FeatureType,
    MentionEdge,
    SelfReportLabel,
)


def _embedder(settings, vector: list[float] | None = None, status: int = 200) -> EmbeddingClient:
    """Embedding client answering every request from an in-process transport."""
    vector = vector if vector is not None else [1.0, 0.0, 0.0, 0.0]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"data": [{"embedding": vector}]})

    return EmbeddingClient(settings, transport=httpx.MockTransport(handler))


@pytest.fixture
def seed_history(entry_repo, make_rows):
    """Store ``n`` labelled entries ending today, with embeddings tracking valence."""

    async def seed(n: int, *, user_id: str = "u1") -> list:
        rows = make_rows(n, start=datetime.utcnow() - timedelta(days=n))
        for row in rows:
            v = row.affect_valence
            await entry_repo.upsert_entry(Entry(
                entry_id=row.entry_id,
                user_id=user_id,
                timestamp=row.timestamp,
                text="private text",
                embedding=[v, 1 - v, 0.2, 0.0],
            ))
            await entry_repo.upsert_self_report(
                user_id, SelfReportLabel(entry_id=row.entry_id, timestamp=row.timestamp, mood=row.mood)
            )
            await entry_repo.upsert_context(user_id, ContextPoint(
                entry_id=row.entry_id,
                timestamp=row.timestamp,
                sleep_hours=row.sleep_hours,
                sleep_quality=row.sleep_quality,
                energy_level=row.energy_level,
                medication_taken=row.medication_taken,
            ))
            await entry_repo.upsert_affect(user_id, AffectPoint(
                entry_id=row.entry_id,
                timestamp=row.timestamp,
                valence=row.affect_valence,
                arousal=row.affect_arousal,
                model_version="affect_v1",
            ))
            features = [
                Feature(feature_id=fid, type=FeatureType(fid.split(":")[0]), name=fid.split(":", 1)[1])
                for fid in row.feature_ids
            ]
            await entry_repo.upsert_mentions(user_id, features, [
                MentionEdge(entry_id=row.entry_id, feature_id=f.feature_id, extractor_version="x1", timestamp=row.timestamp)
                for f in features
            ])
        return rows

    return seed


@pytest.fixture
def pipeline(entry_repo, model_repo, association_repo, retrieval, settings, rng) -> CalibrationPipeline:
    return CalibrationPipeline(
        entry_repo=entry_repo,
        model_repo=model_repo,
        association_repo=association_repo,
        retrieval=retrieval,
        embedder=_embedder(settings),
        settings=settings,
        rng=rng,
    )


# ── Training ──────────────────────────────────────────────────


class TestTrain:
    async def test_insufficient_data_is_not_an_error(self, pipeline, model_repo, seed_history):
        await seed_history(3)
        result = await pipeline.train("u1")
        assert result.trained is False
        assert result.reason == "Need at least 10 labeled entries; found 3."
        assert await model_repo.get("u1") is None

    async def test_min_training_n_override(self, pipeline, seed_history):
        await seed_history(30)
        result = await pipeline.train("u1", TrainOptions(min_training_n=50))
        assert result.trained is False
        assert result.reason == "Need at least 50 labeled entries; found 30."

    async def test_trains_and_persists(self, pipeline, model_repo, seed_history):
        await seed_history(30)
        result = await pipeline.train("u1")

        assert result.trained is True
        assert result.selection.use_features is True
        assert result.selection.dynamic_max_features == 15
        assert "Theme:awe" not in result.selection.feature_ids

        stored = await model_repo.get("u1")
        assert stored.training_n == 30
        assert stored.predictor_keys[: len(BASE_PREDICTOR_KEYS)] == list(BASE_PREDICTOR_KEYS)
        assert len(stored.weights) == len(BASE_PREDICTOR_KEYS) + 5
        assert all(v >= 0 for v in stored.weight_var)
        assert stored.residual_sd >= 0

    async def test_materializes_associations_idempotently(self, pipeline, association_repo, seed_history):
        await seed_history(30)
        await pipeline.train("u1")
        await pipeline.train("u1", TrainOptions(**{"lambda": 2.0}))

        edges = await association_repo.list_for_user("u1", limit=50)
        assert len(edges) == 5
        assert {e.support_n for e in edges} == {12}
        assert all(e.effect_sd >= 0 for e in edges)
        assert all(e.target == "mood" and e.lag_days == 0 for e in edges)


# ── Prediction ────────────────────────────────────────────────


class TestPredict:
    async def test_requires_entry_or_text(self, pipeline):
        with pytest.raises(MissingInputsError):
            await pipeline.predict(PredictRequest(user_id="u1"))
        with pytest.raises(MissingInputsError):
            await pipeline.predict(PredictRequest(user_id="u1", text="   "))

    async def test_unknown_entry(self, pipeline, seed_history):
        await seed_history(3)
        with pytest.raises(EntryNotFoundError):
            await pipeline.predict(PredictRequest(user_id="u1", entry_id="missing"))
        with pytest.raises(EntryNotFoundError):
            await pipeline.predict(PredictRequest(user_id="someone-else", entry_id="e000"))

    async def test_neutral_prior_without_model_or_support(self, pipeline, entry_repo):
        await entry_repo.upsert_entry(Entry(
            entry_id="only", user_id="u1", timestamp=datetime.utcnow(), embedding=[1.0, 0.0, 0.0, 0.0]
        ))
        prediction = await pipeline.predict(PredictRequest(user_id="u1", entry_id="only"))
        assert prediction.model is None
        assert prediction.retrieved is None
        assert prediction.mean == pytest.approx(5.0)
        assert prediction.alpha == pytest.approx(0.75)
        assert prediction.sd == pytest.approx((0.75**2 * 4 + 0.25**2 * 4) ** 0.5)

    async def test_retrieval_only_without_model(self, pipeline, seed_history):
        await seed_history(12)
        prediction = await pipeline.predict(PredictRequest(user_id="u1", entry_id="e011", limit=5))
        assert prediction.model is None
        assert prediction.retrieved.support_n == 5
        assert prediction.mean == pytest.approx(prediction.retrieved.mean)
        assert "e011" not in [e.entry_id for e in prediction.episodes]

    async def test_blended_prediction_for_entry(self, pipeline, seed_history):
        rows = await seed_history(30)
        await pipeline.train("u1")

        target = rows[-1]
        prediction = await pipeline.predict(PredictRequest(user_id="u1", entry_id=target.entry_id))
        assert prediction.model.training_n == 30
        assert prediction.retrieved.support_n == 20
        assert prediction.alpha == pytest.approx(0.25)
        assert abs(prediction.model.mean - target.mood) < 1.5
        assert 1.0 <= prediction.mean <= 10.0
        assert len(prediction.episodes) == 20
        sims = [e.similarity for e in prediction.episodes]
        assert sims == sorted(sims, reverse=True)

    async def test_limit_is_clamped(self, pipeline, seed_history):
        await seed_history(12)
        low = await pipeline.predict(PredictRequest(user_id="u1", entry_id="e005", limit=0))
        high = await pipeline.predict(PredictRequest(user_id="u1", entry_id="e005", limit=500))
        assert len(low.episodes) == 1
        assert len(high.episodes) == 11

    async def test_entry_without_embedding_skips_retrieval(self, pipeline, entry_repo, seed_history):
        await seed_history(12)
        await entry_repo.upsert_entry(Entry(entry_id="bare", user_id="u1", timestamp=datetime.utcnow()))
        prediction = await pipeline.predict(PredictRequest(user_id="u1", entry_id="bare"))
        assert prediction.episodes == []
        assert prediction.retrieved is None

    async def test_text_prediction_embeds_query(self, pipeline, seed_history):
        await seed_history(12)
        prediction = await pipeline.predict(PredictRequest(user_id="u1", text="felt great today"))
        assert prediction.retrieved is not None
        assert len(prediction.episodes) == 12

    async def test_dimension_mismatch(self, entry_repo, model_repo, association_repo, retrieval, settings):
        pipeline = CalibrationPipeline(
            entry_repo, model_repo, association_repo, retrieval,
            embedder=_embedder(settings, vector=[1.0] * (settings.embedding_dimensions + 1)),
            settings=settings,
        )
        with pytest.raises(EmbeddingDimensionError):
            await pipeline.predict(PredictRequest(user_id="u1", text="hello"))

    async def test_embedding_service_failure(self, entry_repo, model_repo, association_repo, retrieval, settings):
        pipeline = CalibrationPipeline(
            entry_repo, model_repo, association_repo, retrieval,
            embedder=_embedder(settings, status=500),
            settings=settings,
        )
        with pytest.raises(EmbeddingServiceError):
            await pipeline.predict(PredictRequest(user_id="u1", text="hello"))

    async def test_entry_wins_over_text(self, entry_repo, model_repo, association_repo, retrieval, settings, seed_history):
        await seed_history(12)
        pipeline = CalibrationPipeline(
            entry_repo, model_repo, association_repo, retrieval,
            embedder=_embedder(settings, status=500),
            settings=settings,
        )
        prediction = await pipeline.predict(PredictRequest(user_id="u1", entry_id="e011", text="ignored text"))
        assert prediction.retrieved.support_n == 11
        assert "e011" not in [e.entry_id for e in prediction.episodes]


# ── Retrieval ─────────────────────────────────────────────────


class TestRetrieveForText:
    async def test_blank_query(self, pipeline):
        with pytest.raises(MissingInputsError):
            await pipeline.retrieve_for_text("u1", " ")

    async def test_episodes_carry_graph_context(self, pipeline, seed_history):
        await seed_history(30)
        await pipeline.train("u1")
        episodes = await pipeline.retrieve_for_text("u1", "a good day", limit=3)

        assert len(episodes) == 3
        top = episodes[0]
        assert top.self_report is not None
        assert top.affect.model_version == "affect_v1"
        assert top.prev is not None or top.next is not None
        assert top.features
        assert all(f.association is not None for f in top.features if f.feature_id != "Theme:awe")

    async def test_window_excludes_old_entries(self, pipeline, seed_history):
        await seed_history(12)
        episodes = await pipeline.retrieve_for_text("u1", "anything", within_days=5)
        assert 0 < len(episodes) <= 5

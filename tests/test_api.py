"""Tests for the FastAPI server endpoints."""

from datetime import datetime, timedelta, timezone

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from mood_engine.api.server import app
from mood_engine.config import get_settings
from mood_engine.embeddings import EmbeddingClient


@pytest.fixture
async def client(tmp_path, monkeypatch):
    """Async test client against a throwaway database, lifespan fully executed."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setenv("EMBEDDING_DIMENSIONS", "4")
    monkeypatch.setenv("CALIBRATION_BOOTSTRAP_SAMPLES", "10")
    get_settings.cache_clear()

    async def fake_embed(self, text: str) -> list[float]:
        return [1.0, 0.0, 0.0, 0.0] if "good" in text else [0.0, 1.0, 0.0, 0.0]

    monkeypatch.setattr(EmbeddingClient, "embed", fake_embed)

    async with LifespanManager(app) as manager:
        transport = ASGITransport(app=manager.app)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    get_settings.cache_clear()


async def _post_history(client: AsyncClient, n: int, user_id: str = "P001") -> None:
    start = datetime.utcnow() - timedelta(days=n)
    for i in range(n):
        good = i % 2 == 0
        resp = await client.post("/entries", json={
            "user_id": user_id,
            "entry_id": f"{user_id}-{i}",
            "timestamp": (start + timedelta(days=i)).isoformat(),
            "text": "a good day" if good else "a rough day",
            "self_report": {"mood": 8 if good else 3},
            "context": {"sleep_hours": 8 if good else 5, "energy_level": 7 if good else 3},
            "extraction": {
                "mood_score": 8 if good else 3,
                "anxiety_score": 3 if good else 7,
                "emotions": ["joy"] if good else ["sadness"],
                "triggers": ["friends"] if good else ["work"],
            },
        })
        assert resp.status_code == 201


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "pipeline_ready": True}


@pytest.mark.asyncio
async def test_system_info(client: AsyncClient):
    resp = await client.get("/system/info")
    assert resp.status_code == 200
    assert resp.json()["embedding"]["dimensions"] == 4


@pytest.mark.asyncio
async def test_ingest_entry(client: AsyncClient):
    resp = await client.post("/entries", json={
        "user_id": "P001",
        "entry_id": "e1",
        "text": "a good day",
        "extraction": {"mood_score": 7, "emotions": ["Joy", "joy"], "symptoms": ["Headache"]},
    })
    assert resp.status_code == 201
    body = resp.json()
    assert body["entry_id"] == "e1"
    assert body["mood_z_score"] is None
    assert body["feature_ids"] == ["Theme:joy", "Symptom:headache"]
    assert body["phq9_severity"] is None


@pytest.mark.asyncio
async def test_ingest_rejects_wrong_dimension(client: AsyncClient):
    resp = await client.post("/entries", json={
        "user_id": "P001", "entry_id": "e1", "text": "x", "embedding": [0.1, 0.2],
    })
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_ingest_accepts_timezone_aware_timestamps(client: AsyncClient):
    first = datetime.now(timezone.utc) - timedelta(days=1)
    for i, ts in enumerate([first, first + timedelta(days=1)]):
        resp = await client.post("/entries", json={
            "user_id": "P001",
            "entry_id": f"tz-{i}",
            "timestamp": ts.isoformat(),
            "text": "a good day",
            "self_report": {"mood": 6},
            "extraction": {"mood_score": 6},
        })
        assert resp.status_code == 201

    resp = await client.post("/graph/retrieve/P001", json={"query": "a good day"})
    assert resp.status_code == 200
    assert len(resp.json()["episodes"]) == 2


@pytest.mark.asyncio
async def test_reposting_entry_counts_once_in_baseline(client: AsyncClient):
    payload = {
        "user_id": "P001",
        "entry_id": "e1",
        "text": "a good day",
        "self_report": {"mood": 7},
        "extraction": {"mood_score": 7, "anxiety_score": 4},
    }
    for _ in range(3):
        resp = await client.post("/entries", json=payload)
        assert resp.status_code == 201

    baselines = (await client.get("/baselines/P001")).json()["baselines"]
    assert baselines["mood"]["count"] == 1
    assert baselines["calmness"]["count"] == 1


@pytest.mark.asyncio
async def test_train_insufficient_data(client: AsyncClient):
    await _post_history(client, 3)
    resp = await client.post("/graph/train/P001")
    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["trained"] is False
    assert result["reason"] == "Need at least 10 labeled entries; found 3."


@pytest.mark.asyncio
async def test_train_predict_and_associations(client: AsyncClient):
    await _post_history(client, 14)

    resp = await client.post("/graph/train/P001", json={"lambda": 2.0})
    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["trained"] is True
    assert result["model"]["lambda"] == 2.0
    assert result["model"]["training_n"] == 14

    resp = await client.post("/graph/predict/P001", json={"entry_id": "P001-13"})
    assert resp.status_code == 200
    prediction = resp.json()["prediction"]
    assert 0.25 <= prediction["alpha"] <= 0.75
    assert prediction["model"]["training_n"] == 14
    assert all(e["entry_id"] != "P001-13" for e in prediction["episodes"])

    resp = await client.post("/graph/predict/P001", json={"text": "a good day", "limit": 3})
    assert resp.status_code == 200
    assert len(resp.json()["prediction"]["episodes"]) == 3

    resp = await client.get("/graph/associations/P001", params={"limit": 2})
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] <= 2
    assert all(a["target"] == "mood" for a in body["associations"])


@pytest.mark.asyncio
async def test_predict_errors(client: AsyncClient):
    resp = await client.post("/graph/predict/P001", json={})
    assert resp.status_code == 400
    resp = await client.post("/graph/predict/P001", json={"entry_id": "nope"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_retrieve(client: AsyncClient):
    await _post_history(client, 6)
    resp = await client.post("/graph/retrieve/P001", json={"query": "a good day", "limit": 2})
    assert resp.status_code == 200
    episodes = resp.json()["episodes"]
    assert len(episodes) == 2
    assert episodes[0]["entry"]["similarity"] == pytest.approx(1.0)
    assert episodes[0]["features"][0]["feature_id"] == "Theme:joy"

    resp = await client.post("/graph/retrieve/P001", json={"query": "  "})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_baselines_and_trends(client: AsyncClient):
    await _post_history(client, 8)

    resp = await client.get("/baselines/P001")
    assert resp.status_code == 200
    baselines = resp.json()["baselines"]
    assert baselines["mood"]["count"] == 8
    assert baselines["calmness"]["count"] == 8

    resp = await client.get("/trends/P001")
    assert resp.status_code == 200
    body = resp.json()
    assert body["trends"]["sample_count"] == 8
    assert body["trends"]["volatility_index"] == pytest.approx(5.0)
    assert 0.0 <= body["latest_mood_percentile"] <= 1.0


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    resp = await client.get("/trends/P001", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-123"

    resp = await client.get("/baselines/P001")
    assert resp.headers["X-Request-ID"]

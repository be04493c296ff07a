"""Tests for entry ingestion: baselines, z-scores and extracted features."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mood_engine.calibration.clinical import GAD7Severity, PHQ9Severity
from mood_engine.ingest import IngestService, extraction_features
from mood_engine.models import AIExtraction, ContextPoint, Entry, SelfReportLabel

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def service(entry_repo, baseline_repo) -> IngestService:
    return IngestService(entry_repo, baseline_repo, half_life_days=45.0)


def _entry(i: int) -> Entry:
    return Entry(
        entry_id=f"e{i}",
        user_id="u1",
        timestamp=NOW - timedelta(days=10 - i),
        text="private text",
        embedding=[1.0, 0.0, 0.0, 0.0],
    )


class TestExtractionFeatures:
    def test_dedup_in_type_order(self):
        extraction = AIExtraction(
            emotions=["Joy", " joy ", ""],
            symptoms=["Poor  Sleep"],
            triggers=["Work", "   "],
        )
        ids = [f.feature_id for f in extraction_features(extraction)]
        assert ids == ["Theme:joy", "Symptom:poor sleep", "Stressor:work"]

    def test_empty(self):
        assert extraction_features(AIExtraction()) == []


class TestIngestService:
    async def test_entry_without_extraction(self, service, entry_repo, baseline_repo):
        result = await service.ingest(_entry(0), now=NOW)
        assert result.entry_id == "e0"
        assert result.mood_z_score is None
        assert result.feature_ids == []
        assert await entry_repo.count_for_user("u1") == 1
        assert await baseline_repo.get_all("u1") == {}

    async def test_z_scores_gated_until_baseline_matures(self, service, baseline_repo):
        results = []
        for i in range(6):
            extraction = AIExtraction(mood_score=5 + (i % 2), anxiety_score=4)
            results.append(await service.ingest(_entry(i), extraction=extraction, now=NOW + timedelta(hours=i)))

        assert all(r.mood_z_score is None for r in results[:5])
        assert results[5].mood_z_score is not None
        assert results[5].phq9_estimate is not None
        assert 0 <= results[5].phq9_estimate <= 27

        mood = await baseline_repo.get("u1", "mood")
        calmness = await baseline_repo.get("u1", "calmness")
        assert mood.count == 6
        assert calmness.mean == pytest.approx(7.0)

    async def test_extraction_estimates_are_kept(self, service, entry_repo):
        extraction = AIExtraction(mood_score=7, anxiety_score=3, phq9_estimate=4, gad7_estimate=2)
        result = await service.ingest(_entry(0), extraction=extraction, now=NOW)
        assert result.phq9_estimate == 4
        assert result.gad7_estimate == 2
        assert result.phq9_severity == PHQ9Severity.MINIMAL
        assert result.gad7_severity == GAD7Severity.MINIMAL

        affect = await entry_repo.get_latest_affect("e0")
        assert affect.valence == pytest.approx(6 / 9)
        assert affect.arousal == pytest.approx(2 / 9)
        assert affect.model_version == "affect_v1"

    async def test_self_report_mood_used_when_extraction_has_none(self, service, baseline_repo):
        entry = _entry(0)
        label = SelfReportLabel(entry_id="e0", timestamp=entry.timestamp, mood=8)
        await service.ingest(entry, self_report=label, extraction=AIExtraction(emotions=["calm"]), now=NOW)
        mood = await baseline_repo.get("u1", "mood")
        assert mood.mean == pytest.approx(8.0)
        assert await baseline_repo.get("u1", "calmness") is None

    async def test_writes_training_row(self, service, entry_repo):
        entry = _entry(0)
        await service.ingest(
            entry,
            self_report=SelfReportLabel(entry_id="e0", timestamp=entry.timestamp, mood=6),
            context=ContextPoint(entry_id="e0", timestamp=entry.timestamp, sleep_hours=8, energy_level=7),
            extraction=AIExtraction(mood_score=6, emotions=["Joy"], triggers=["Deadline"], confidence=0.9),
            now=NOW,
        )
        rows = await entry_repo.list_training_rows("u1")
        assert len(rows) == 1
        assert rows[0].feature_ids == ["Theme:joy", "Stressor:deadline"]
        assert rows[0].sleep_hours == 8
        assert rows[0].affect_valence == pytest.approx(5 / 9)

    async def test_reingest_is_idempotent(self, service, entry_repo):
        extraction = AIExtraction(mood_score=6, emotions=["Joy"])
        await service.ingest(_entry(0), extraction=extraction, now=NOW)
        await service.ingest(_entry(0), extraction=extraction, now=NOW)
        assert await entry_repo.count_for_user("u1") == 1
        assert await entry_repo.get_feature_ids("e0") == ["Theme:joy"]

    async def test_reingest_counts_once_in_baselines(self, service, baseline_repo):
        extraction = AIExtraction(mood_score=6, anxiety_score=4)
        for hour in range(3):
            await service.ingest(_entry(0), extraction=extraction, now=NOW + timedelta(hours=hour))

        mood = await baseline_repo.get("u1", "mood")
        calmness = await baseline_repo.get("u1", "calmness")
        assert mood.count == 1
        assert mood.mean == pytest.approx(6.0)
        assert calmness.count == 1

    async def test_self_report_without_extraction_updates_mood_baseline(self, service, entry_repo, baseline_repo):
        entry = _entry(0)
        label = SelfReportLabel(entry_id="e0", timestamp=entry.timestamp, mood=7)
        result = await service.ingest(entry, self_report=label, now=NOW)

        assert result.mood_z_score is None
        assert result.feature_ids == []
        mood = await baseline_repo.get("u1", "mood")
        assert mood.count == 1
        assert mood.mean == pytest.approx(7.0)
        assert await baseline_repo.get("u1", "calmness") is None
        assert await entry_repo.get_latest_affect("e0") is None

    async def test_timezone_aware_clock(self, service, baseline_repo):
        aware_now = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        await service.ingest(_entry(0), extraction=AIExtraction(mood_score=5), now=aware_now)
        await service.ingest(_entry(1), extraction=AIExtraction(mood_score=7), now=NOW + timedelta(days=1))

        mood = await baseline_repo.get("u1", "mood")
        assert mood.count == 2
        assert mood.last_updated_at == NOW + timedelta(days=1)
        assert mood.last_updated_at.tzinfo is None

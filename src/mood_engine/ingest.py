"""Entry ingestion — upserts an entry and everything derived from it.

One call writes, idempotently:

1. The entry node (and re-threads the user's NEXT chain)
2. The self-report label and structured context, when supplied
3. The AI extraction as an affect point plus Theme / Symptom / Stressor
   mentions
4. Mood and calmness z-scores against the user's *prior* baselines, after
   which both EWMA baselines are updated with the new observation.  Mood
   falls back to the self-reported score when there is no extraction, and
   an entry is counted into a baseline only once
"""

from __future__ import annotations

from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from mood_engine.calibration.baseline import (
    DEFAULT_HALF_LIFE_DAYS,
    anxiety_to_calmness,
    gated_z_score,
    map_to_validated_scale,
    update_ewma_stats,
)
from mood_engine.calibration.clinical import GAD7Severity, PHQ9Severity, interpret_gad7, interpret_phq9
from mood_engine.calibration.linalg import clamp
from mood_engine.models import (
    AffectPoint,
    AIExtraction,
    BaselineMetric,
    ContextPoint,
    Entry,
    Feature,
    FeatureType,
    MentionEdge,
    SelfReportLabel,
    to_naive_utc,
)
from mood_engine.storage.repository import BaselineRepository, EntryRepository

logger = structlog.get_logger(__name__)


class IngestResult(BaseModel):
    entry_id: str
    mood_z_score: float | None = None
    anxiety_z_score: float | None = None  # calmness direction: positive = calmer than usual
    phq9_estimate: float | None = None
    gad7_estimate: float | None = None
    phq9_severity: PHQ9Severity | None = None
    gad7_severity: GAD7Severity | None = None
    feature_ids: list[str] = Field(default_factory=list)


def _to_unit(score: float | None) -> float | None:
    """Map a 1-10 score onto [0, 1]."""
    if score is None:
        return None
    return clamp((score - 1) / 9, 0.0, 1.0)


def extraction_features(extraction: AIExtraction) -> list[Feature]:
    """Deduplicated features, in emotion → symptom → trigger order."""
    seen: dict[str, Feature] = {}
    for feature_type, names in (
        (FeatureType.THEME, extraction.emotions),
        (FeatureType.SYMPTOM, extraction.symptoms),
        (FeatureType.STRESSOR, extraction.triggers),
    ):
        for name in names:
            if not name or not name.strip():
                continue
            feature = Feature.from_name(feature_type, name)
            seen.setdefault(feature.feature_id, feature)
    return list(seen.values())


class IngestService:
    """Write one entry and its satellites through the repositories."""

    def __init__(
        self,
        entry_repo: EntryRepository,
        baseline_repo: BaselineRepository,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    ) -> None:
        self._entry_repo = entry_repo
        self._baseline_repo = baseline_repo
        self._half_life_days = half_life_days

    async def ingest(
        self,
        entry: Entry,
        *,
        self_report: SelfReportLabel | None = None,
        context: ContextPoint | None = None,
        extraction: AIExtraction | None = None,
        now: datetime | None = None,
    ) -> IngestResult:
        now = to_naive_utc(now) if now is not None else datetime.utcnow()
        user_id = entry.user_id

        await self._entry_repo.upsert_entry(entry)
        if self_report is not None:
            await self._entry_repo.upsert_self_report(user_id, self_report)
        if context is not None:
            await self._entry_repo.upsert_context(user_id, context)

        mood_raw = extraction.mood_score if extraction is not None else None
        if mood_raw is None and self_report is not None:
            mood_raw = self_report.mood
        calmness_raw = None
        if extraction is not None and extraction.anxiety_score is not None:
            calmness_raw = anxiety_to_calmness(extraction.anxiety_score)

        mood_z = await self._observe(user_id, BaselineMetric.MOOD, entry.entry_id, mood_raw, now)
        calm_z = await self._observe(user_id, BaselineMetric.CALMNESS, entry.entry_id, calmness_raw, now)

        if extraction is None:
            logger.info("ingest.entry_stored", user_id=user_id, entry_id=entry.entry_id, mood_z=mood_z)
            return IngestResult(entry_id=entry.entry_id, mood_z_score=mood_z)

        phq9 = extraction.phq9_estimate
        if phq9 is None and mood_z is not None:
            phq9 = float(map_to_validated_scale(mood_z, "phq9"))
        gad7 = extraction.gad7_estimate
        if gad7 is None and calm_z is not None:
            gad7 = float(map_to_validated_scale(calm_z, "gad7"))

        affect = AffectPoint(
            entry_id=entry.entry_id,
            timestamp=entry.timestamp,
            valence=_to_unit(extraction.mood_score),
            arousal=_to_unit(extraction.anxiety_score),
            phq9_estimate=phq9,
            gad7_estimate=gad7,
            mood_z_score=mood_z,
            anxiety_z_score=calm_z,
            model_version=extraction.affect_model_version,
        )
        await self._entry_repo.upsert_affect(user_id, affect)

        features = extraction_features(extraction)
        mentions = [
            MentionEdge(
                entry_id=entry.entry_id,
                feature_id=f.feature_id,
                confidence=extraction.confidence,
                extractor_version=extraction.extractor_version,
                timestamp=entry.timestamp,
            )
            for f in features
        ]
        await self._entry_repo.upsert_mentions(user_id, features, mentions)

        logger.info(
            "ingest.entry_stored",
            user_id=user_id,
            entry_id=entry.entry_id,
            mentions=len(mentions),
            mood_z=mood_z,
            calmness_z=calm_z,
        )
        return IngestResult(
            entry_id=entry.entry_id,
            mood_z_score=mood_z,
            anxiety_z_score=calm_z,
            phq9_estimate=phq9,
            gad7_estimate=gad7,
            phq9_severity=interpret_phq9(phq9) if phq9 is not None else None,
            gad7_severity=interpret_gad7(gad7) if gad7 is not None else None,
            feature_ids=[f.feature_id for f in features],
        )

    async def _observe(
        self,
        user_id: str,
        metric: BaselineMetric,
        entry_id: str,
        value: float | None,
        now: datetime,
    ) -> float | None:
        """Z-score ``value`` against the prior baseline, then fold it in.

        Each entry is folded into a baseline at most once; re-ingesting it
        only recomputes the z-score.
        """
        if value is None:
            return None
        prior = await self._baseline_repo.get(user_id, metric.value)
        z = gated_z_score(value, prior)
        if await self._baseline_repo.has_observed(user_id, metric.value, entry_id):
            return z
        updated = update_ewma_stats(prior, value, now=now, half_life_days=self._half_life_days)
        await self._baseline_repo.record_observation(user_id, metric.value, entry_id, updated)
        return z

"""Data-access layer — thin async wrappers around SQLAlchemy queries.

Each call opens its own session from the factory and closes it on exit, so
repositories can be shared freely between the API and background work.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Sequence

import numpy as np
import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mood_engine.calibration.models import (
    CalibrationModel,
    EntryRef,
    EpisodeAffect,
    EpisodeEntry,
    EpisodeFeature,
    EpisodeSelfReport,
    RetrievedEpisode,
    TrainingRow,
)
from mood_engine.models import (
    AffectPoint,
    AssociationEdge,
    BaselineStats,
    ContextPoint,
    Entry,
    EntrySource,
    Feature,
    MentionEdge,
    SelfReportLabel,
)
from mood_engine.storage.database import (
    AffectPointRow,
    AssociationRow,
    BaselineObservationRow,
    BaselineStatsRow,
    ContextPointRow,
    EntryLinkRow,
    EntryRow,
    FeatureRow,
    MentionRow,
    SelfReportRow,
    UserRow,
    get_session_factory,
)

logger = structlog.get_logger(__name__)


class BaseRepository:
    """Shared base with session management for all repositories."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _session(self) -> AsyncSession:
        factory = self._session_factory or get_session_factory()
        return factory()


async def _ensure_user(session: AsyncSession, user_id: str) -> UserRow:
    user = await session.get(UserRow, user_id)
    if user is None:
        user = UserRow(user_id=user_id)
        session.add(user)
        await session.flush()
    return user


def _entry_from_row(row: EntryRow) -> Entry:
    return Entry(
        entry_id=row.entry_id,
        user_id=row.user_id,
        timestamp=row.timestamp,
        text=row.text,
        source=EntrySource(row.source),
        embedding=json.loads(row.embedding_json) if row.embedding_json else [],
        language=row.language,
    )


def _delta_minutes(earlier: datetime, later: datetime) -> int:
    return int(round((later - earlier).total_seconds() / 60))


# ── Entries & their satellites ────────────────────────────────


class EntryRepository(BaseRepository):
    """Idempotent upserts for entries and the nodes hanging off them."""

    # ── Write ─────────────────────────────────────────────────

    async def upsert_entry(self, entry: Entry) -> None:
        """Insert or overwrite an entry and re-thread the user's NEXT chain."""
        async with self._session() as session:
            await _ensure_user(session, entry.user_id)
            row = await session.get(EntryRow, entry.entry_id)
            embedding_json = json.dumps(entry.embedding) if entry.embedding else None
            if row is None:
                row = EntryRow(
                    entry_id=entry.entry_id,
                    user_id=entry.user_id,
                    timestamp=entry.timestamp,
                    text=entry.text,
                    source=entry.source.value,
                    language=entry.language,
                    embedding_json=embedding_json,
                )
                session.add(row)
            else:
                row.timestamp = entry.timestamp
                row.text = entry.text
                row.source = entry.source.value
                row.language = entry.language
                if embedding_json is not None:
                    row.embedding_json = embedding_json
                row.updated_at = datetime.utcnow()
            await session.flush()
            await self._relink(session, entry.user_id, entry.entry_id, entry.timestamp)
            await session.commit()

    async def _relink(self, session: AsyncSession, user_id: str, entry_id: str, ts: datetime) -> None:
        await session.execute(
            delete(EntryLinkRow).where(
                EntryLinkRow.user_id == user_id,
                or_(EntryLinkRow.from_entry_id == entry_id, EntryLinkRow.to_entry_id == entry_id),
            )
        )

        prev_row = (
            await session.execute(
                select(EntryRow)
                .where(EntryRow.user_id == user_id, EntryRow.entry_id != entry_id, EntryRow.timestamp < ts)
                .order_by(EntryRow.timestamp.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        next_row = (
            await session.execute(
                select(EntryRow)
                .where(EntryRow.user_id == user_id, EntryRow.entry_id != entry_id, EntryRow.timestamp > ts)
                .order_by(EntryRow.timestamp.asc())
                .limit(1)
            )
        ).scalar_one_or_none()

        if prev_row is not None and next_row is not None:
            await session.execute(
                delete(EntryLinkRow).where(
                    EntryLinkRow.from_entry_id == prev_row.entry_id,
                    EntryLinkRow.to_entry_id == next_row.entry_id,
                )
            )
        if prev_row is not None:
            session.add(EntryLinkRow(
                user_id=user_id,
                from_entry_id=prev_row.entry_id,
                to_entry_id=entry_id,
                delta_minutes=_delta_minutes(prev_row.timestamp, ts),
            ))
        if next_row is not None:
            session.add(EntryLinkRow(
                user_id=user_id,
                from_entry_id=entry_id,
                to_entry_id=next_row.entry_id,
                delta_minutes=_delta_minutes(ts, next_row.timestamp),
            ))

    async def upsert_self_report(self, user_id: str, label: SelfReportLabel) -> None:
        async with self._session() as session:
            row = await session.get(SelfReportRow, label.report_id)
            if row is None:
                row = SelfReportRow(report_id=label.report_id, entry_id=label.entry_id, user_id=user_id)
                session.add(row)
            row.timestamp = label.timestamp
            row.mood = label.mood
            row.valence = label.valence
            row.arousal = label.arousal
            row.confidence = label.confidence
            await session.commit()

    async def upsert_context(self, user_id: str, context: ContextPoint) -> None:
        async with self._session() as session:
            row = await session.get(ContextPointRow, context.context_id)
            if row is None:
                row = ContextPointRow(context_id=context.context_id, entry_id=context.entry_id, user_id=user_id)
                session.add(row)
            row.timestamp = context.timestamp
            row.sleep_hours = context.sleep_hours
            row.sleep_quality = context.sleep_quality
            row.medication_taken = context.medication_taken
            row.medication_notes = context.medication_notes
            row.energy_level = context.energy_level
            await session.commit()

    async def upsert_affect(self, user_id: str, affect: AffectPoint) -> None:
        async with self._session() as session:
            row = await session.get(AffectPointRow, affect.affect_id)
            if row is None:
                row = AffectPointRow(
                    affect_id=affect.affect_id,
                    entry_id=affect.entry_id,
                    user_id=user_id,
                    model_version=affect.model_version,
                )
                session.add(row)
            row.timestamp = affect.timestamp
            row.valence = affect.valence
            row.arousal = affect.arousal
            row.phq9_estimate = affect.phq9_estimate
            row.gad7_estimate = affect.gad7_estimate
            row.mood_z_score = affect.mood_z_score
            row.anxiety_z_score = affect.anxiety_z_score
            row.computed_at = datetime.utcnow()
            await session.commit()

    async def upsert_mentions(
        self,
        user_id: str,
        features: Sequence[Feature],
        mentions: Sequence[MentionEdge],
    ) -> int:
        """Merge feature nodes and Entry→Feature edges; returns edges written."""
        async with self._session() as session:
            for feature in features:
                if await session.get(FeatureRow, feature.feature_id) is None:
                    session.add(FeatureRow(
                        feature_id=feature.feature_id,
                        type=feature.type.value,
                        name=feature.name,
                    ))
            await session.flush()

            for mention in mentions:
                existing = (
                    await session.execute(
                        select(MentionRow).where(
                            MentionRow.entry_id == mention.entry_id,
                            MentionRow.feature_id == mention.feature_id,
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    existing = MentionRow(
                        entry_id=mention.entry_id,
                        feature_id=mention.feature_id,
                        user_id=user_id,
                    )
                    session.add(existing)
                existing.confidence = mention.confidence
                existing.extractor_version = mention.extractor_version
                existing.timestamp = mention.timestamp
            await session.commit()
        return len(mentions)

    # ── Read ──────────────────────────────────────────────────

    async def get(self, user_id: str, entry_id: str) -> Entry | None:
        """Fetch an entry only if it belongs to ``user_id``."""
        async with self._session() as session:
            row = await session.get(EntryRow, entry_id)
            if row is None or row.user_id != user_id:
                return None
            return _entry_from_row(row)

    async def get_self_report(self, entry_id: str) -> SelfReportLabel | None:
        async with self._session() as session:
            row = (
                await session.execute(select(SelfReportRow).where(SelfReportRow.entry_id == entry_id))
            ).scalar_one_or_none()
            if row is None:
                return None
            return SelfReportLabel(
                entry_id=row.entry_id,
                timestamp=row.timestamp,
                mood=row.mood,
                valence=row.valence,
                arousal=row.arousal,
                confidence=row.confidence,
            )

    async def get_context(self, entry_id: str) -> ContextPoint | None:
        async with self._session() as session:
            row = (
                await session.execute(select(ContextPointRow).where(ContextPointRow.entry_id == entry_id))
            ).scalar_one_or_none()
            if row is None:
                return None
            return ContextPoint(
                entry_id=row.entry_id,
                timestamp=row.timestamp,
                sleep_hours=row.sleep_hours,
                sleep_quality=row.sleep_quality,
                medication_taken=row.medication_taken,
                medication_notes=row.medication_notes,
                energy_level=row.energy_level,
            )

    async def get_latest_affect(self, entry_id: str) -> AffectPoint | None:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(AffectPointRow)
                    .where(AffectPointRow.entry_id == entry_id)
                    .order_by(AffectPointRow.computed_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            return AffectPoint(
                entry_id=row.entry_id,
                timestamp=row.timestamp,
                valence=row.valence,
                arousal=row.arousal,
                phq9_estimate=row.phq9_estimate,
                gad7_estimate=row.gad7_estimate,
                mood_z_score=row.mood_z_score,
                anxiety_z_score=row.anxiety_z_score,
                model_version=row.model_version,
            )

    async def get_feature_ids(self, entry_id: str) -> list[str]:
        async with self._session() as session:
            result = await session.execute(
                select(MentionRow.feature_id).where(MentionRow.entry_id == entry_id).order_by(MentionRow.id)
            )
            return list(result.scalars().all())

    async def get_neighbours(self, entry_id: str) -> tuple[str | None, str | None]:
        """Ids of the previous and next entries on the NEXT chain."""
        async with self._session() as session:
            prev_id = (
                await session.execute(
                    select(EntryLinkRow.from_entry_id).where(EntryLinkRow.to_entry_id == entry_id).limit(1)
                )
            ).scalar_one_or_none()
            next_id = (
                await session.execute(
                    select(EntryLinkRow.to_entry_id).where(EntryLinkRow.from_entry_id == entry_id).limit(1)
                )
            ).scalar_one_or_none()
            return prev_id, next_id

    async def list_training_rows(self, user_id: str) -> list[TrainingRow]:
        """All self-report-labelled entries of a user joined with their predictors."""
        async with self._session() as session:
            labelled = (
                await session.execute(
                    select(EntryRow, SelfReportRow)
                    .join(SelfReportRow, SelfReportRow.entry_id == EntryRow.entry_id)
                    .where(EntryRow.user_id == user_id)
                    .order_by(EntryRow.timestamp.asc())
                )
            ).all()
            if not labelled:
                return []
            entry_ids = [entry.entry_id for entry, _ in labelled]

            affects: dict[str, AffectPointRow] = {}
            for row in (
                await session.execute(
                    select(AffectPointRow)
                    .where(AffectPointRow.entry_id.in_(entry_ids))
                    .order_by(AffectPointRow.computed_at.asc())
                )
            ).scalars():
                affects[row.entry_id] = row  # latest wins

            contexts = {
                row.entry_id: row
                for row in (
                    await session.execute(select(ContextPointRow).where(ContextPointRow.entry_id.in_(entry_ids)))
                ).scalars()
            }

            mentions: dict[str, list[str]] = {}
            for entry_id, feature_id in (
                await session.execute(
                    select(MentionRow.entry_id, MentionRow.feature_id)
                    .where(MentionRow.entry_id.in_(entry_ids))
                    .order_by(MentionRow.id)
                )
            ).all():
                mentions.setdefault(entry_id, []).append(feature_id)

        rows: list[TrainingRow] = []
        for entry, report in labelled:
            affect = affects.get(entry.entry_id)
            ctx = contexts.get(entry.entry_id)
            rows.append(TrainingRow(
                entry_id=entry.entry_id,
                timestamp=entry.timestamp,
                mood=report.mood,
                affect_valence=affect.valence if affect else None,
                affect_arousal=affect.arousal if affect else None,
                sleep_hours=ctx.sleep_hours if ctx else None,
                sleep_quality=ctx.sleep_quality if ctx else None,
                energy_level=ctx.energy_level if ctx else None,
                medication_taken=ctx.medication_taken if ctx else None,
                feature_ids=mentions.get(entry.entry_id, []),
            ))
        return rows

    async def list_mood_series(self, user_id: str) -> list[tuple[datetime, float, float | None]]:
        """``(timestamp, mood, anxiety)`` for every labelled entry, oldest first.

        Anxiety is recovered from the latest affect arousal on the 1-10 scale.
        """
        rows = await self.list_training_rows(user_id)
        return [
            (r.timestamp, r.mood, 1 + 9 * r.affect_arousal if r.affect_arousal is not None else None)
            for r in rows
        ]

    async def list_user_ids(self) -> list[str]:
        async with self._session() as session:
            result = await session.execute(select(UserRow.user_id).order_by(UserRow.user_id))
            return list(result.scalars().all())

    async def count_for_user(self, user_id: str) -> int:
        async with self._session() as session:
            stmt = select(func.count()).select_from(EntryRow).where(EntryRow.user_id == user_id)
            return (await session.execute(stmt)).scalar() or 0


# ── Vector search ─────────────────────────────────────────────


def _cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = (matrix @ query) / norms
    return np.where(norms > 0, sims, 0.0)


class EpisodeRepository(BaseRepository):
    """Nearest-neighbour search over a user's embedded entries.

    Similarity is exact cosine over every embedded entry in the window,
    computed with numpy; per-user entry counts stay small enough for this.
    """

    async def search(
        self,
        user_id: str,
        embedding: Sequence[float],
        *,
        limit: int,
        since: datetime,
        exclude_entry_id: str | None = None,
    ) -> list[RetrievedEpisode]:
        query = np.asarray(embedding, dtype=float)

        async with self._session() as session:
            stmt = select(EntryRow).where(
                EntryRow.user_id == user_id,
                EntryRow.timestamp >= since,
                EntryRow.embedding_json.is_not(None),
            )
            if exclude_entry_id is not None:
                stmt = stmt.where(EntryRow.entry_id != exclude_entry_id)
            candidates = []
            vectors = []
            for row in (await session.execute(stmt)).scalars():
                vec = json.loads(row.embedding_json)
                if len(vec) != len(query):
                    continue
                candidates.append(row)
                vectors.append(vec)

            if not candidates:
                return []

            sims = _cosine_similarities(query, np.asarray(vectors, dtype=float))
            order = np.argsort(-sims, kind="stable")[:limit]
            hits = [(candidates[i], float(sims[i])) for i in order]

            episodes = [await self._hydrate(session, user_id, row, sim) for row, sim in hits]

        logger.debug("retrieval.search", user_id=user_id, candidates=len(candidates), hits=len(episodes))
        return episodes

    async def _hydrate(self, session: AsyncSession, user_id: str, row: EntryRow, similarity: float) -> RetrievedEpisode:
        report = (
            await session.execute(select(SelfReportRow).where(SelfReportRow.entry_id == row.entry_id))
        ).scalar_one_or_none()
        affect = (
            await session.execute(
                select(AffectPointRow)
                .where(AffectPointRow.entry_id == row.entry_id)
                .order_by(AffectPointRow.computed_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

        prev_entry = (
            await session.execute(
                select(EntryRow)
                .join(EntryLinkRow, EntryLinkRow.from_entry_id == EntryRow.entry_id)
                .where(EntryLinkRow.to_entry_id == row.entry_id)
                .limit(1)
            )
        ).scalar_one_or_none()
        next_entry = (
            await session.execute(
                select(EntryRow)
                .join(EntryLinkRow, EntryLinkRow.to_entry_id == EntryRow.entry_id)
                .where(EntryLinkRow.from_entry_id == row.entry_id)
                .limit(1)
            )
        ).scalar_one_or_none()

        feature_rows = (
            await session.execute(
                select(FeatureRow, MentionRow, AssociationRow)
                .join(MentionRow, MentionRow.feature_id == FeatureRow.feature_id)
                .outerjoin(
                    AssociationRow,
                    (AssociationRow.feature_id == FeatureRow.feature_id)
                    & (AssociationRow.user_id == user_id)
                    & (AssociationRow.target == "mood")
                    & (AssociationRow.lag_days == 0),
                )
                .where(MentionRow.entry_id == row.entry_id)
                .order_by(MentionRow.id)
            )
        ).all()

        features = [
            EpisodeFeature(
                feature_id=feature.feature_id,
                type=feature.type,
                name=feature.name,
                mention={
                    "confidence": mention.confidence,
                    "extractor_version": mention.extractor_version,
                    "timestamp": mention.timestamp.isoformat(),
                },
                association=None if assoc is None else {
                    "effect_mean": assoc.effect_mean,
                    "effect_sd": assoc.effect_sd,
                    "support_n": assoc.support_n,
                    "method": assoc.method,
                    "last_updated_at": assoc.last_updated_at.isoformat(),
                },
            )
            for feature, mention, assoc in feature_rows
        ]

        return RetrievedEpisode(
            entry=EpisodeEntry(
                entry_id=row.entry_id,
                timestamp=row.timestamp,
                source=row.source,
                text=row.text,
                similarity=similarity,
            ),
            self_report=None if report is None else EpisodeSelfReport(
                report_id=report.report_id,
                timestamp=report.timestamp,
                mood=report.mood,
                valence=report.valence,
                arousal=report.arousal,
                confidence=report.confidence,
            ),
            affect=None if affect is None else EpisodeAffect(
                affect_id=affect.affect_id,
                valence=affect.valence,
                arousal=affect.arousal,
                model_version=affect.model_version,
                computed_at=affect.computed_at,
            ),
            prev=None if prev_entry is None else EntryRef(entry_id=prev_entry.entry_id, timestamp=prev_entry.timestamp),
            next=None if next_entry is None else EntryRef(entry_id=next_entry.entry_id, timestamp=next_entry.timestamp),
            features=features,
        )


# ── Calibration model ─────────────────────────────────────────


class CalibrationModelRepository(BaseRepository):
    """Per-user calibration model stored inline on the user row."""

    async def save(self, user_id: str, model: CalibrationModel) -> None:
        """Overwrite the user's model in one transaction (last write wins)."""
        async with self._session() as session:
            user = await _ensure_user(session, user_id)
            user.calib_model_version = model.model_version
            user.calib_updated_at = model.updated_at
            user.calib_lambda = model.lambda_
            user.calib_residual_sd = model.residual_sd
            user.calib_predictor_keys_json = json.dumps(model.predictor_keys)
            user.calib_weights_json = json.dumps(model.weights)
            user.calib_weight_var_json = json.dumps(model.weight_var)
            user.calib_training_n = model.training_n
            await session.commit()

    async def get(self, user_id: str) -> CalibrationModel | None:
        async with self._session() as session:
            user = await session.get(UserRow, user_id)
            if user is None or user.calib_weights_json is None:
                return None
            return CalibrationModel(
                model_version=user.calib_model_version or "",
                updated_at=user.calib_updated_at or datetime.utcnow(),
                lambda_=user.calib_lambda if user.calib_lambda is not None else 1.0,
                residual_sd=user.calib_residual_sd or 0.0,
                predictor_keys=json.loads(user.calib_predictor_keys_json or "[]"),
                weights=json.loads(user.calib_weights_json),
                weight_var=json.loads(user.calib_weight_var_json or "[]"),
                training_n=user.calib_training_n or 0,
            )


# ── Associations ──────────────────────────────────────────────


def _association_from_row(row: AssociationRow) -> AssociationEdge:
    return AssociationEdge(
        user_id=row.user_id,
        feature_id=row.feature_id,
        effect_mean=row.effect_mean,
        effect_sd=row.effect_sd,
        support_n=row.support_n,
        target=row.target,
        lag_days=row.lag_days,
        method=row.method,
        last_updated_at=row.last_updated_at,
    )


class AssociationRepository(BaseRepository):
    """Idempotent merge of User→Feature association edges."""

    async def merge_many(self, edges: Sequence[AssociationEdge]) -> int:
        async with self._session() as session:
            for edge in edges:
                row = (
                    await session.execute(
                        select(AssociationRow).where(
                            AssociationRow.user_id == edge.user_id,
                            AssociationRow.feature_id == edge.feature_id,
                            AssociationRow.target == edge.target,
                            AssociationRow.lag_days == edge.lag_days,
                        )
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = AssociationRow(
                        user_id=edge.user_id,
                        feature_id=edge.feature_id,
                        target=edge.target,
                        lag_days=edge.lag_days,
                    )
                    session.add(row)
                row.effect_mean = edge.effect_mean
                row.effect_sd = edge.effect_sd
                row.support_n = edge.support_n
                row.method = edge.method
                row.last_updated_at = edge.last_updated_at
            await session.commit()
        return len(edges)

    async def merge(self, edge: AssociationEdge) -> None:
        await self.merge_many([edge])

    async def list_for_user(self, user_id: str, limit: int = 10) -> list[AssociationEdge]:
        """Strongest associations first (by absolute effect)."""
        async with self._session() as session:
            stmt = (
                select(AssociationRow)
                .where(AssociationRow.user_id == user_id)
                .order_by(func.abs(AssociationRow.effect_mean).desc())
                .limit(limit)
            )
            return [_association_from_row(r) for r in (await session.execute(stmt)).scalars()]


# ── Baselines ─────────────────────────────────────────────────


async def _write_stats(session: AsyncSession, user_id: str, metric: str, stats: BaselineStats) -> None:
    row = await session.get(BaselineStatsRow, (user_id, metric))
    if row is None:
        row = BaselineStatsRow(user_id=user_id, metric=metric)
        session.add(row)
    row.mean = stats.mean
    row.std = stats.std
    row.count = stats.count
    row.last_updated_at = stats.last_updated_at


class BaselineRepository(BaseRepository):
    """CRUD for per-(user, metric) :class:`BaselineStats`."""

    async def get(self, user_id: str, metric: str) -> BaselineStats | None:
        async with self._session() as session:
            row = await session.get(BaselineStatsRow, (user_id, metric))
            if row is None:
                return None
            return BaselineStats(
                mean=row.mean, std=row.std, count=row.count, last_updated_at=row.last_updated_at
            )

    async def get_all(self, user_id: str) -> dict[str, BaselineStats]:
        async with self._session() as session:
            rows = (
                await session.execute(select(BaselineStatsRow).where(BaselineStatsRow.user_id == user_id))
            ).scalars()
            return {
                r.metric: BaselineStats(mean=r.mean, std=r.std, count=r.count, last_updated_at=r.last_updated_at)
                for r in rows
            }

    async def upsert(self, user_id: str, metric: str, stats: BaselineStats) -> None:
        async with self._session() as session:
            await _write_stats(session, user_id, metric, stats)
            await session.commit()

    async def has_observed(self, user_id: str, metric: str, entry_id: str) -> bool:
        """Whether ``entry_id`` has already been folded into this baseline."""
        async with self._session() as session:
            row = await session.get(BaselineObservationRow, (user_id, metric, entry_id))
            return row is not None

    async def record_observation(self, user_id: str, metric: str, entry_id: str, stats: BaselineStats) -> None:
        """Store the updated baseline and mark ``entry_id`` as observed, atomically."""
        async with self._session() as session:
            await _write_stats(session, user_id, metric, stats)
            if await session.get(BaselineObservationRow, (user_id, metric, entry_id)) is None:
                session.add(BaselineObservationRow(user_id=user_id, metric=metric, entry_id=entry_id))
            await session.commit()

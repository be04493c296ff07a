"""Retrieval of similar labelled episodes and the estimate they imply."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

import structlog

from mood_engine.calibration.models import RetrievedEpisode, RetrievedEstimate
from mood_engine.errors import EmbeddingDimensionError
from mood_engine.models import to_naive_utc
from mood_engine.storage.repository import EpisodeRepository

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT = 20
DEFAULT_WITHIN_DAYS = 180


class RetrievalEngine:
    """Find a user's historically similar entries with their graph context.

    Parameters
    ----------
    episode_repo : EpisodeRepository
        Vector search plus neighbour / feature joins.
    dimensions : int
        Expected embedding length of the index.
    """

    def __init__(self, episode_repo: EpisodeRepository, dimensions: int) -> None:
        self._episode_repo = episode_repo
        self._dimensions = dimensions

    async def retrieve(
        self,
        user_id: str,
        embedding: Sequence[float],
        *,
        limit: int = DEFAULT_LIMIT,
        within_days: int = DEFAULT_WITHIN_DAYS,
        exclude_entry_id: str | None = None,
        now: datetime | None = None,
    ) -> list[RetrievedEpisode]:
        """Top-``limit`` cosine matches within the last ``within_days`` days."""
        if len(embedding) != self._dimensions:
            raise EmbeddingDimensionError(self._dimensions, len(embedding))

        now = to_naive_utc(now) if now is not None else datetime.utcnow()
        since = now - timedelta(days=within_days)
        episodes = await self._episode_repo.search(
            user_id,
            embedding,
            limit=limit,
            since=since,
            exclude_entry_id=exclude_entry_id,
        )
        logger.info(
            "retrieval.completed",
            user_id=user_id,
            hits=len(episodes),
            labelled=sum(1 for e in episodes if e.self_report is not None),
        )
        return episodes


def compute_retrieved_estimate(episodes: Sequence[RetrievedEpisode]) -> RetrievedEstimate | None:
    """Similarity-weighted mood mean / SD over labelled neighbours.

    Weights are ``max(0, similarity)``; the variance is the weighted
    population variance around the weighted mean.  Returns ``None`` when no
    neighbour carries a label or all weights are zero.
    """
    labelled = [(max(0.0, e.entry.similarity), e.mood) for e in episodes if e.mood is not None]
    if not labelled:
        return None

    weight_sum = sum(w for w, _ in labelled)
    if weight_sum <= 0:
        return None

    mu = sum(w * m for w, m in labelled) / weight_sum
    var = sum(w * (m - mu) ** 2 for w, m in labelled) / weight_sum
    return RetrievedEstimate(mean=mu, sd=max(0.0, var) ** 0.5, support_n=len(labelled))

"""Analysis helpers — pandas-based utilities for research workflows."""

from __future__ import annotations

from typing import Any

import pandas as pd

from mood_engine.storage.repository import EntryRepository


async def mood_series_to_dataframe(
    user_id: str,
    *,
    repo: EntryRepository | None = None,
) -> pd.DataFrame:
    """Load a user's labelled mood history into a :class:`pandas.DataFrame`.

    Columns: ``mood``, ``anxiety``.  The ``timestamp`` column is set as the
    index for easy time-series work.
    """
    repo = repo or EntryRepository()
    series = await repo.list_mood_series(user_id)

    df = pd.DataFrame(series, columns=["timestamp", "mood", "anxiety"])
    if not df.empty:
        df["timestamp"] = pd.to_datetime(df["timestamp"])
        df = df.set_index("timestamp").sort_index()
    return df


def compute_summary(df: pd.DataFrame, column: str = "mood") -> dict[str, Any]:
    """Return summary statistics for one column of a mood DataFrame."""
    if df.empty or column not in df.columns:
        return {"count": 0}

    values = df[column].dropna()
    if values.empty:
        return {"count": 0}
    return {
        "count": int(values.count()),
        "mean": round(float(values.mean()), 2),
        "std": round(float(values.std()), 2) if values.count() > 1 else 0.0,
        "min": float(values.min()),
        "max": float(values.max()),
        "median": float(values.median()),
    }


def daily_means(df: pd.DataFrame) -> pd.DataFrame:
    """Resample a mood DataFrame to one row per calendar day."""
    if df.empty:
        return df
    return df.resample("1D").agg(
        mood_mean=("mood", "mean"),
        anxiety_mean=("anxiety", "mean"),
        count=("mood", "count"),
    ).dropna(subset=["mood_mean"])

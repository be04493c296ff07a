"""Tests for offline evaluation and the pandas analysis helpers."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from mood_engine.models import AffectPoint, Entry, SelfReportLabel
from mood_engine.research.analysis import compute_summary, daily_means, mood_series_to_dataframe
from mood_engine.research.evaluation import (
    EVAL_COLUMNS,
    evaluate_rows,
    evaluate_users,
    expected_calibration_error,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


async def _store(entry_repo, rows, user_id: str = "u1") -> None:
    for row in rows:
        await entry_repo.upsert_entry(Entry(entry_id=f"{user_id}-{row.entry_id}", user_id=user_id, timestamp=row.timestamp))
        await entry_repo.upsert_self_report(
            user_id, SelfReportLabel(entry_id=f"{user_id}-{row.entry_id}", timestamp=row.timestamp, mood=row.mood)
        )
        await entry_repo.upsert_affect(user_id, AffectPoint(
            entry_id=f"{user_id}-{row.entry_id}",
            timestamp=row.timestamp,
            valence=row.affect_valence,
            arousal=row.affect_arousal,
            model_version="affect_v1",
        ))


class TestExpectedCalibrationError:
    def test_perfectly_calibrated(self):
        assert expected_calibration_error([2.0, 5.5, 8.0], [2.0, 5.5, 8.0]) == 0.0

    def test_last_bin_is_closed(self):
        ece = expected_calibration_error([1.5, 1.5, 9.95, 10.0], [1.0, 2.0, 10.0, 9.0])
        assert ece == pytest.approx(0.5 * abs(9.975 - 9.5))

    def test_empty(self):
        assert expected_calibration_error([], []) == 0.0


class TestEvaluateRows:
    def test_too_few_rows(self, rng, make_rows):
        assert evaluate_rows("u1", make_rows(11), rng=rng) is None

    def test_chronological_split(self, rng, make_rows):
        rows = make_rows(20)
        record = evaluate_rows("u1", list(reversed(rows)), rng=rng)
        assert record["train_n"] == 16
        assert record["test_n"] == 4
        assert record["mae"] >= 0
        assert 0.0 <= record["coverage_80"] <= 1.0


class TestEvaluateUsers:
    async def test_one_row_per_evaluated_user(self, entry_repo, rng, make_rows):
        await _store(entry_repo, make_rows(15), user_id="u1")
        await _store(entry_repo, make_rows(4), user_id="u2")

        df = await evaluate_users(repo=entry_repo, rng=rng)
        assert list(df.columns) == EVAL_COLUMNS
        assert df["user_id"].tolist() == ["u1"]
        assert df.iloc[0]["train_n"] == 12

    async def test_no_users(self, entry_repo):
        df = await evaluate_users(repo=entry_repo, user_ids=[])
        assert df.empty
        assert list(df.columns) == EVAL_COLUMNS


class TestAnalysis:
    async def test_series_dataframe(self, entry_repo, make_rows):
        rows = make_rows(6, start=NOW - timedelta(days=3))
        await _store(entry_repo, rows)
        df = await mood_series_to_dataframe("u1", repo=entry_repo)

        assert len(df) == 6
        assert df.index.is_monotonic_increasing
        assert df["anxiety"].iloc[0] == pytest.approx(1 + 9 * rows[0].affect_arousal)

        summary = compute_summary(df)
        assert summary["count"] == 6
        assert summary["min"] == min(r.mood for r in rows)

    async def test_empty_user(self, entry_repo):
        df = await mood_series_to_dataframe("nobody", repo=entry_repo)
        assert df.empty
        assert compute_summary(df) == {"count": 0}
        assert daily_means(df).empty

    def test_daily_means(self):
        import pandas as pd

        idx = pd.to_datetime(["2026-03-01 08:00", "2026-03-01 20:00", "2026-03-03 09:00"])
        df = pd.DataFrame({"mood": [4.0, 6.0, 7.0], "anxiety": [5.0, None, 3.0]}, index=idx)
        daily = daily_means(df)
        assert daily["mood_mean"].tolist() == [5.0, 7.0]
        assert daily["count"].tolist() == [2, 1]

"""Offline evaluation of per-user calibration models.

For every user with enough labelled entries the history is split
chronologically (first 80 % train, last 20 % test), a model is fitted on
the training part only, and the model-side prediction is scored on the test
part:

- ``mae``: mean absolute error
- ``coverage_80``: share of test labels inside ``mean ± 1.2816·sd``
- ``ece_10``: expected calibration error over 10 equal-width bins on 1-10
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd
import structlog

from mood_engine.calibration.blending import compute_model_prediction
from mood_engine.calibration.features import to_predictor_vector
from mood_engine.calibration.models import TrainingRow
from mood_engine.calibration.trainer import CalibrationTrainer
from mood_engine.storage.repository import EntryRepository

logger = structlog.get_logger(__name__)

MIN_EVAL_ROWS = 12
TRAIN_FRACTION = 0.8
EVAL_BOOTSTRAP_SAMPLES = 50
Z_80 = 1.2816
MOOD_MIN = 1.0
MOOD_MAX = 10.0

EVAL_COLUMNS = ["user_id", "train_n", "test_n", "mae", "coverage_80", "ece_10"]


def expected_calibration_error(pred: Sequence[float], y: Sequence[float], bins: int = 10) -> float:
    """Weighted mean |mean(pred) - mean(y)| across equal-width prediction bins.

    The last bin is closed on the right; predictions outside 1-10 are ignored.
    """
    pred_arr = np.asarray(pred, dtype=float)
    y_arr = np.asarray(y, dtype=float)
    n = len(pred_arr)
    if n == 0:
        return 0.0

    edges = np.linspace(MOOD_MIN, MOOD_MAX, bins + 1)
    acc = 0.0
    for b in range(bins):
        lo, hi = edges[b], edges[b + 1]
        if b == bins - 1:
            mask = (pred_arr >= lo) & (pred_arr <= hi)
        else:
            mask = (pred_arr >= lo) & (pred_arr < hi)
        count = int(mask.sum())
        if count == 0:
            continue
        acc += (count / n) * abs(float(pred_arr[mask].mean()) - float(y_arr[mask].mean()))
    return acc


def evaluate_rows(
    user_id: str,
    rows: Sequence[TrainingRow],
    *,
    lam: float = 1.0,
    rng: np.random.Generator | None = None,
) -> dict | None:
    """Chronological holdout metrics for one user, or ``None`` if too few rows."""
    if len(rows) < MIN_EVAL_ROWS:
        return None
    ordered = sorted(rows, key=lambda r: r.timestamp)
    split = int(len(ordered) * TRAIN_FRACTION)
    train, test = ordered[:split], ordered[split:]

    trainer = CalibrationTrainer(lam=lam, bootstrap_samples=EVAL_BOOTSTRAP_SAMPLES, rng=rng)
    model, _ = trainer.fit(train)

    estimates = [compute_model_prediction(model, to_predictor_vector(r)) for r in test]
    pred = np.array([e.mean for e in estimates])
    sd = np.array([e.sd for e in estimates])
    y = np.array([r.mood for r in test])

    covered = (y >= pred - Z_80 * sd) & (y <= pred + Z_80 * sd)
    return {
        "user_id": user_id,
        "train_n": len(train),
        "test_n": len(test),
        "mae": float(np.mean(np.abs(pred - y))),
        "coverage_80": float(np.mean(covered)),
        "ece_10": expected_calibration_error(pred, y, bins=10),
    }


async def evaluate_users(
    *,
    repo: EntryRepository | None = None,
    user_ids: Sequence[str] | None = None,
    lam: float = 1.0,
    rng: np.random.Generator | None = None,
) -> pd.DataFrame:
    """Evaluate every (or the given) user; one DataFrame row per evaluated user."""
    repo = repo or EntryRepository()
    user_ids = list(user_ids) if user_ids is not None else await repo.list_user_ids()

    records = []
    for user_id in user_ids:
        rows = await repo.list_training_rows(user_id)
        record = evaluate_rows(user_id, rows, lam=lam, rng=rng)
        if record is None:
            logger.debug("evaluation.skipped", user_id=user_id, labelled=len(rows))
            continue
        logger.info(
            "evaluation.user",
            user_id=user_id,
            mae=round(record["mae"], 3),
            coverage_80=round(record["coverage_80"], 3),
            ece_10=round(record["ece_10"], 3),
        )
        records.append(record)

    return pd.DataFrame.from_records(records, columns=EVAL_COLUMNS)

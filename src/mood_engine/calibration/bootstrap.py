"""Bootstrap estimate of per-coefficient ridge weight variance."""

from __future__ import annotations

import numpy as np

from mood_engine.calibration.linalg import ridge_regression

DEFAULT_BOOTSTRAP_SAMPLES = 100


def bootstrap_weight_variance(
    x: np.ndarray,
    y: np.ndarray,
    lam: float,
    samples: int = DEFAULT_BOOTSTRAP_SAMPLES,
    *,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Refit ridge on ``samples`` row resamples and return coefficient variances.

    Each resample draws ``N`` row indices with replacement.  The result is the
    sample variance (``ddof=1``) of every coefficient across the refits; with
    fewer than two resamples it is all zeros.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n_rows = x.shape[0] if x.ndim == 2 else 0
    n_coef = x.shape[1] if x.ndim == 2 else 0

    if samples < 2 or n_rows == 0 or n_coef == 0:
        return np.zeros(n_coef)

    rng = rng or np.random.default_rng()
    weights = np.empty((samples, n_coef))
    for b in range(samples):
        idx = rng.integers(0, n_rows, size=n_rows)
        weights[b] = ridge_regression(x[idx], y[idx], lam)

    # Shifted by the first refit; identical refits give exactly zero.
    var = np.var(weights - weights[0], axis=0, ddof=1)
    return np.where(np.isfinite(var), np.maximum(var, 0.0), 0.0)

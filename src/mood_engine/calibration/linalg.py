"""Small dense linear algebra for per-user ridge calibration.

Matrices here are tiny (at most ``7 + max_features`` columns), so a plain
Gauss-Jordan elimination over :mod:`numpy` arrays is sufficient.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(np.asarray(values, dtype=float)))


def variance(values: Sequence[float]) -> float:
    """Sample variance (``ddof=1``); 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.var(np.asarray(values, dtype=float), ddof=1))


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Inner product over the common prefix of ``a`` and ``b``."""
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    return float(np.dot(np.asarray(a[:n], dtype=float), np.asarray(b[:n], dtype=float)))


def solve_linear_system(a: np.ndarray | Sequence[Sequence[float]], b: np.ndarray | Sequence[float]) -> np.ndarray:
    """Solve ``A x = b`` by Gauss-Jordan elimination with partial pivoting.

    An exactly-zero pivot (singular system) yields a zero vector instead of
    raising.  A non-square ``A`` or a ``b`` of the wrong length is a caller
    bug and raises :class:`ValueError`.
    """
    a = np.array(a, dtype=float, copy=True)
    b = np.array(b, dtype=float, copy=True)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError(f"Coefficient matrix must be square, got shape {a.shape}")
    n = a.shape[0]
    if b.shape != (n,):
        raise ValueError(f"Right-hand side must have length {n}, got shape {b.shape}")
    if n == 0:
        return np.zeros(0)

    aug = np.column_stack([a, b])

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(aug[col:, col])))
        pivot = aug[pivot_row, col]
        if pivot == 0.0:
            return np.zeros(n)
        if pivot_row != col:
            aug[[col, pivot_row]] = aug[[pivot_row, col]]

        aug[col] /= aug[col, col]
        for r in range(n):
            if r != col:
                factor = aug[r, col]
                if factor != 0.0:
                    aug[r] -= factor * aug[col]

    return aug[:, n].copy()


def ridge_regression(x: np.ndarray | Sequence[Sequence[float]], y: np.ndarray | Sequence[float], lam: float) -> np.ndarray:
    """Closed-form ridge fit: solve ``(XᵀX + λI) w = Xᵀy``.

    The penalty is applied to every diagonal entry, including the bias.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.size == 0:
        return np.zeros(0)

    xtx = x.T @ x
    xtx[np.diag_indices_from(xtx)] += lam
    xty = x.T @ y
    return solve_linear_system(xtx, xty)


def residual_sd(x: np.ndarray | Sequence[Sequence[float]], y: np.ndarray | Sequence[float], w: np.ndarray | Sequence[float]) -> float:
    """Sample standard deviation of ``y - Xw``; 0 when undefined."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(y) < 2:
        return 0.0
    residuals = y - x @ np.asarray(w, dtype=float)
    sd = math.sqrt(variance(residuals))
    return sd if math.isfinite(sd) else 0.0

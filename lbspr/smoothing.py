"""Fixed-interval smoothing of per-year estimates.

A scalar Kalman filter on a random walk, followed by a Rauch-Tung-Striebel
backward pass:

    state:        x_t = x_{t-1} + w_t,   w_t ~ N(0, q)
    observation:  y_t = x_t + v_t,       v_t ~ N(0, r)

The prior mean is the first observation with variance initial_variance,
so a constant series smooths to itself.
"""

from __future__ import annotations

import numpy as np
import pandas as pd


def forward_fill(raw) -> np.ndarray:
    """Replace missing values with the last preceding non-missing value.

    Leading missing values take the first non-missing value.

    Raises:
        ValueError: If every value is missing.
    """
    series = pd.Series(np.asarray(raw, dtype=np.float64))
    if series.isna().all():
        raise ValueError("cannot smooth a series with no finite values")
    return series.ffill().bfill().to_numpy()


def filter_smooth(raw, r: float = 1.0, q: float = 0.1,
                  initial_variance: float = 100.0) -> np.ndarray:
    """Smoothed estimates, same length as raw.

    Args:
        raw: Per-year estimates; NaN is forward filled first.
        r: Variance of sampling noise.
        q: Variance of random walk increments.
        initial_variance: Variance of the initial state.

    Returns:
        Smoothed values. A single observation is returned unchanged.
    """
    y = forward_fill(raw)
    n = len(y)
    p_pred = np.full(n, float(initial_variance))
    x_pred = np.zeros(n)
    x_corr = np.zeros(n)
    p_corr = np.zeros(n)

    x_pred[0] = y[0]
    for t in range(n):
        if t > 0:
            p_pred[t] = p_corr[t - 1] + q
            x_pred[t] = x_corr[t - 1]
        gain = p_pred[t] / (p_pred[t] + r)
        x_corr[t] = x_pred[t] + gain * (y[t] - x_pred[t])
        p_corr[t] = p_pred[t] - gain * p_pred[t]

    x_smooth = x_corr.copy()
    for t in range(n - 2, -1, -1):
        a = p_corr[t] / p_pred[t + 1]
        x_smooth[t] = x_smooth[t] + a * (x_smooth[t + 1] - x_pred[t + 1])
    return x_smooth


def smooth_estimates(estimates: pd.DataFrame, r: float = 1.0, q: float = 0.1,
                     initial_variance: float = 100.0) -> pd.DataFrame:
    """Apply filter_smooth to every column when there is more than one row.

    Columns with no finite values are left as they are. Results are rounded
    to 2 decimals.
    """
    if len(estimates) > 1:
        estimates = estimates.copy()
        for name in estimates.columns:
            col = estimates[name]
            if col.notna().any():
                estimates[name] = filter_smooth(col.to_numpy(), r, q,
                                                initial_variance)
    return estimates.round(2)

"""Delta-method variances of fitted and derived quantities.

SL50, SL95 and F/M are smooth transforms of the log-space parameters, so
their variances follow analytically from the covariance matrix. SPR has no
closed form: its partial derivatives are taken numerically by re-running
the simulator.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from lbspr.config import FitControl, LifeHistory
from lbspr.likelihood import unpack_log_params
from lbspr.population import simulate
from lbspr.types import FitVariances


def _signif(x: float, digits: int) -> float:
    if x == 0 or not np.isfinite(x):
        return x
    return round(x, digits - 1 - int(np.floor(np.log10(abs(x)))))


def _spr_at(log_params, life: LifeHistory,
            control: Optional[FitControl]) -> float:
    sl50, sl95, fm = unpack_log_params(log_params, life.linf)
    return simulate(life.with_exploitation(sl50, sl95, fm), control).spr


def spr_partial_derivative(
    log_params,
    index: int,
    life: LifeHistory,
    control: Optional[FitControl] = None,
    step: float = 0.01,
    digits: int = 6,
) -> float:
    """∂SPR/∂log_params[index] by symmetric finite difference.

    (f(x + step/2) − f(x − step/2)) / step, rounded to `digits` significant
    digits. The other two parameters are held at their values.
    """
    base = np.asarray(log_params, dtype=np.float64)
    up = base.copy()
    down = base.copy()
    up[index] += 0.5 * step
    down[index] -= 0.5 * step
    deriv = (_spr_at(up, life, control) - _spr_at(down, life, control)) / step
    return _signif(deriv, digits)


def variance_of_spr(
    log_params,
    covariance,
    life: LifeHistory,
    control: Optional[FitControl] = None,
) -> float:
    """Var(SPR) ≈ Σ d_i² V_ii + 2 Σ_{i<j} d_i d_j V_ij."""
    cov = np.asarray(covariance, dtype=np.float64)
    if not np.all(np.isfinite(cov)):
        return np.nan
    d = np.array([spr_partial_derivative(log_params, i, life, control)
                  for i in range(len(log_params))])
    return float(d @ cov @ d)


def parameter_variances(
    log_params,
    covariance,
    life: LifeHistory,
    control: Optional[FitControl] = None,
) -> FitVariances:
    """Variances of SL50, SL95, F/M and SPR.

    SL50 = e^p0·Linf, SL95 = SL50 + e^p1·Linf, F/M = e^p2.
    """
    p = np.asarray(log_params, dtype=np.float64)
    v = np.asarray(covariance, dtype=np.float64)
    linf = life.linf
    g0 = np.exp(p[0]) * linf
    g1 = np.exp(p[1]) * linf
    return FitVariances(
        sl50=float(g0 ** 2 * v[0, 0]),
        sl95=float(g1 ** 2 * v[1, 1] + g0 ** 2 * v[0, 0]
                   + 2.0 * g0 * g1 * v[0, 1]),
        fm=float(np.exp(2.0 * p[2]) * v[2, 2]),
        spr=variance_of_spr(p, v, life, control),
    )

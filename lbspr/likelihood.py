"""Negative log-likelihood of observed length composition.

Parameters are fitted in log space:

    log_params = log(SL50/Linf, (SL95 − SL50)/Linf, F/M)

which keeps SL50, the selectivity spread and F/M positive. The deviance is
the multinomial log-likelihood relative to the saturated model:

    NLL = −Σ obs · log(pred / obs_prop)

A Beta(5, 0.01) density on SL50/Linf, multiplied by the NLL, discourages
selectivity near Linf.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from scipy.stats import beta

from lbspr.config import FitControl, LifeHistory
from lbspr.population import (
    build_gtg_grid,
    gtg_numbers_at_length,
    simulate,
    simulation_bins,
)


# Added to observed and predicted proportions so empty bins stay finite
TINY = 1e-15

PENALTY_SHAPE = (5.0, 0.01)


def unpack_log_params(log_params, linf: float) -> Tuple[float, float, float]:
    """log(SL50/Linf, ΔSL/Linf, F/M) → (SL50, SL95, F/M)."""
    p = np.exp(np.asarray(log_params, dtype=np.float64))
    sl50 = p[0] * linf
    return float(sl50), float(sl50 + p[1] * linf), float(p[2])


def pack_params(sl50: float, sl95: float, fm: float, linf: float) -> np.ndarray:
    """(SL50, SL95, F/M) → log-space parameter vector."""
    return np.log([sl50 / linf, (sl95 - sl50) / linf, fm])


def deviance(counts, pred) -> float:
    counts = np.asarray(counts, dtype=np.float64) + TINY
    obs_prop = counts / counts.sum()
    pred = np.asarray(pred, dtype=np.float64) + TINY
    with np.errstate(divide='ignore', invalid='ignore'):
        return float(-np.sum(counts * np.log(pred / obs_prop)))


def selectivity_penalty(sl50_rel: float, nll_value: float) -> float:
    """Beta(5, 0.01) density on SL50/Linf, scaled by the NLL.

    Where the density is exactly 0 (SL50/Linf ≥ 1 in practice) the penalty
    falls back to NLL · SL50/Linf.
    """
    density = beta.pdf(sl50_rel, *PENALTY_SHAPE)
    if density == 0:
        return nll_value * sl50_rel
    return float(density * nll_value)


def _fail_value(rng: Optional[np.random.Generator]) -> float:
    if rng is None:
        rng = np.random.default_rng()
    return 1e9 + rng.uniform(1e4, 1e5)


def penalized_nll(value: float, sl50_rel: float, penalize: bool = True,
                  rng: Optional[np.random.Generator] = None) -> float:
    """Add the selectivity penalty; non-finite values become a large random
    number so the optimizer steps away."""
    if not np.isfinite(value):
        return _fail_value(rng)
    pen = selectivity_penalty(sl50_rel, value) if penalize else 0.0
    total = value + pen
    if not np.isfinite(total):
        return _fail_value(rng)
    return float(total)


def _check_counts(counts, n_obs: int) -> np.ndarray:
    counts = np.asarray(counts, dtype=np.float64)
    if counts.shape != (n_obs,):
        raise ValueError(
            f"counts has shape {counts.shape} but the model predicts "
            f"{n_obs} length bins"
        )
    return counts


def nll(
    log_params,
    life: LifeHistory,
    counts,
    control: Optional[FitControl] = None,
    penalize: bool = True,
    rng: Optional[np.random.Generator] = None,
) -> float:
    """Objective for one year of length data.

    Args:
        log_params: log(SL50/Linf, (SL95 − SL50)/Linf, F/M).
        life: Life history whose bins match the observed mids.
        counts: Observed counts, one per observed length mid.
        control: Algorithm settings.
        penalize: Apply the SL50 penalty.
        rng: Source of the random failure value.

    Returns:
        Penalized negative log-likelihood.
    """
    sl50, sl95, fm = unpack_log_params(log_params, life.linf)
    sim = simulate(life.with_exploitation(sl50, sl95, fm), control)
    counts = _check_counts(counts, len(sim.p_lcatch))
    return penalized_nll(deviance(counts, sim.p_lcatch), sl50 / life.linf,
                         penalize, rng)


class GTGObjective:
    """GTG objective with the exploitation-independent grid built once.

    Equivalent to nll() for ModelType.GTG, without rebuilding groups, bins
    and M/K on every evaluation.
    """

    def __init__(self, life: LifeHistory, counts,
                 control: Optional[FitControl] = None,
                 penalize: bool = True,
                 rng: Optional[np.random.Generator] = None):
        if control is None:
            control = FitControl()
        self.life = life
        self.penalize = penalize
        self.rng = rng
        bins = simulation_bins(life)
        self.grid, self.notes = build_gtg_grid(life, bins, control)
        self.observed = bins.observed
        self.counts = _check_counts(counts, int(self.observed.sum()))
        self.n_evals = 0

    def predicted_catch(self, log_params) -> np.ndarray:
        """Catch composition over the observed mids."""
        sl50, sl95, fm = unpack_log_params(log_params, self.life.linf)
        _, nat_f, sel = gtg_numbers_at_length(self.grid, sl50, sl95, fm)
        catch = (nat_f * sel[:, None]).sum(axis=1)[self.observed]
        total = catch.sum()
        if total > 0 and np.isfinite(total):
            return catch / total
        return np.zeros_like(catch)

    def __call__(self, log_params) -> float:
        self.n_evals += 1
        pred = self.predicted_catch(log_params)
        sl50_rel = float(np.exp(log_params[0]))
        return penalized_nll(deviance(self.counts, pred), sl50_rel,
                             self.penalize, self.rng)

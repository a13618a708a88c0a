"""Fitting selectivity and F/M to length-frequency data.

For each year:
  1. Derive bin width, BinMin and BinMax from the observed mids
  2. Minimize the penalized NLL over log(SL50/Linf, ΔSL/Linf, F/M)
  3. Invert a finite-difference Hessian for the covariance
  4. Restart from other SL50 guesses if the covariance is unusable
  5. Re-simulate at the estimates for SPR, YPR, yield and catch composition
  6. Delta-method variances and a fit-log diagnostic

Multi-year fits then smooth SL50, SL95, F/M and SPR with a Kalman filter and
RTS smoother. A year whose fit fails numerically is reported as NaN and the
remaining years continue.
"""

from __future__ import annotations

import functools
import warnings
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import OptimizeResult, minimize

from lbspr.bins import bins_from_mids
from lbspr.config import (
    FitControl,
    LBSPRConfig,
    LifeHistory,
    SmootherSection,
    resolve_life_history,
)
from lbspr.likelihood import GTGObjective, nll, unpack_log_params
from lbspr.population import simulate, simulation_bins
from lbspr.smoothing import smooth_estimates
from lbspr.types import (
    FitLog,
    LengthData,
    ModelType,
    MultiYearFit,
    YearFitResult,
)
from lbspr.variance import parameter_variances


# Maximum number of restarts from alternative SL50 starting values
MAX_RESTARTS = 10

HIGH_SL50_RATIO = 0.85
HIGH_FM = 5.0

_FIT_ERRORS = (ArithmeticError, ValueError, np.linalg.LinAlgError)


# ═══════════════════════════════════════════════════════════════════════
# NUMERICAL HELPERS
# ═══════════════════════════════════════════════════════════════════════

def numerical_hessian(f: Callable, x, eps: float = 1e-3) -> np.ndarray:
    """Hessian of f at x by central finite differences."""
    x = np.asarray(x, dtype=np.float64)
    n = len(x)
    hessian = np.zeros((n, n))
    f0 = f(x)

    for i in range(n):
        x_plus_i = x.copy()
        x_plus_i[i] += eps
        x_minus_i = x.copy()
        x_minus_i[i] -= eps

        for j in range(i, n):
            if i == j:
                hessian[i, i] = (f(x_plus_i) - 2 * f0 + f(x_minus_i)) / eps**2
            else:
                x_pp = x.copy()
                x_pp[i] += eps
                x_pp[j] += eps
                x_pm = x.copy()
                x_pm[i] += eps
                x_pm[j] -= eps
                x_mp = x.copy()
                x_mp[i] -= eps
                x_mp[j] += eps
                x_mm = x.copy()
                x_mm[i] -= eps
                x_mm[j] -= eps
                hessian[i, j] = (f(x_pp) - f(x_pm) - f(x_mp) + f(x_mm)) / (4 * eps**2)
                hessian[j, i] = hessian[i, j]

    return hessian


def covariance_from_hessian(hessian) -> Optional[np.ndarray]:
    """Inverse Hessian, or None when it is singular, non-finite or has a
    negative diagonal."""
    hessian = np.asarray(hessian, dtype=np.float64)
    if not np.all(np.isfinite(hessian)):
        return None
    try:
        cov = np.linalg.inv(hessian)
    except np.linalg.LinAlgError:
        return None
    cov = 0.5 * (cov + cov.T)
    if not np.all(np.isfinite(cov)) or np.any(np.diag(cov) < 0):
        return None
    return cov


def _attempt(objective: Callable, start: np.ndarray,
             method: str) -> Tuple[Optional[OptimizeResult], Optional[np.ndarray]]:
    """One optimization with Hessian; (None, None) if anything fails."""
    try:
        opt = minimize(objective, start, method=method)
        cov = covariance_from_hessian(numerical_hessian(objective, opt.x))
    except _FIT_ERRORS:
        return None, None
    return opt, cov


# ═══════════════════════════════════════════════════════════════════════
# SINGLE YEAR
# ═══════════════════════════════════════════════════════════════════════

def starting_values(mids, counts, linf: float) -> np.ndarray:
    """log(mode/Linf, 0.2·mode/Linf, 0.5) from the modal length bin."""
    mode = mids[int(np.argmax(counts))]
    return np.log([mode / linf, 0.2 * mode / linf, 0.5])


def restart_sl50(mids, counts, linf: float, count: int) -> float:
    """SL50/Linf for restart number `count` (1-based).

    Linear quantiles on [0, 0.95] between the first non-empty bin and the
    modal bin.
    """
    quants = np.linspace(0.0, 0.95, MAX_RESTARTS)
    lo = mids[int(np.argmax(counts > 0))] / linf
    hi = mids[int(np.argmax(counts))] / linf
    return float(lo + quants[count - 1] * (hi - lo))


def fit_life_history(life: LifeHistory, mids) -> LifeHistory:
    """Life history with bins taken from the observed mids.

    Raises:
        ValueError: If the observed bins end below Linf.
    """
    width, bin_min, bin_max = bins_from_mids(mids)
    life = life.with_bins(width, bin_min, bin_max)
    simulation_bins(life)
    return life


def fit_year(
    life: LifeHistory,
    mids,
    counts,
    control: Optional[FitControl] = None,
    penalize: bool = True,
    fast_gtg: bool = True,
    year=None,
    rng: Optional[np.random.Generator] = None,
) -> YearFitResult:
    """Fit SL50, SL95 and F/M to one year of length data.

    Args:
        life: Resolved life history; bins are replaced by those of mids.
        mids: Observed length mids (evenly spaced).
        counts: Counts per mid.
        control: Algorithm settings.
        penalize: Apply the SL50 penalty.
        fast_gtg: Use the precomputed GTG objective (GTG model only).
        year: Label stored on the result.
        rng: Source of the random failure value in the objective.

    Returns:
        YearFitResult. Unusable covariance gives fit_log HESSIAN and NaN
        variances, not an exception.

    Raises:
        ValueError: If counts don't match mids or are all zero.
    """
    if control is None:
        control = FitControl()
    mids = np.asarray(mids, dtype=np.float64)
    counts = np.asarray(counts, dtype=np.float64)
    if counts.shape != mids.shape:
        raise ValueError(
            f"{len(counts)} counts for {len(mids)} length mids"
        )
    if counts.sum() <= 0:
        raise ValueError(f"no length observations for year {year}")

    life = fit_life_history(life, mids)
    if fast_gtg and control.model_type is ModelType.GTG:
        objective = GTGObjective(life, counts, control, penalize, rng)
    else:
        objective = functools.partial(nll, life=life, counts=counts,
                                      control=control, penalize=penalize,
                                      rng=rng)

    start = starting_values(mids, counts, life.linf)
    opt, cov = _attempt(objective, start, control.method)

    count = 0
    while cov is None and count < MAX_RESTARTS:
        count += 1
        s_sl50 = restart_sl50(mids, counts, life.linf, count)
        start = np.array([np.log(s_sl50), start[1], start[2]])
        opt, cov = _attempt(objective, start, control.method)

    if cov is None:
        # Last resort: keep the estimates, give up on the covariance
        opt = minimize(objective, start, method=control.method)
        cov = np.full((3, 3), np.nan)

    sl50, sl95, fm = unpack_log_params(opt.x, life.linf)
    fit_log = FitLog.OK
    if not np.all(np.isfinite(cov)) or np.any(np.diag(cov) < 0):
        warnings.warn(
            f"year {year}: the final Hessian is not positive definite. "
            f"Estimates may be unreliable",
            UserWarning,
            stacklevel=2,
        )
        fit_log = FitLog.HESSIAN
    high_sel = sl50 / life.linf > HIGH_SL50_RATIO
    high_fm = fm > HIGH_FM
    if high_sel and high_fm:
        fit_log = FitLog.HIGH_SEL_AND_FM
    elif high_sel:
        fit_log = FitLog.HIGH_SELECTIVITY
    elif high_fm:
        fit_log = FitLog.HIGH_FM

    sim = simulate(life.with_exploitation(sl50, sl95, fm), control)
    return YearFitResult(
        year=year,
        sl50=sl50,
        sl95=sl95,
        fm=fm,
        spr=sim.spr,
        yield_=sim.yield_,
        ypr=sim.ypr,
        nll=float(opt.fun),
        fit_log=fit_log,
        variances=parameter_variances(opt.x, cov, life, control),
        log_params=opt.x,
        covariance=cov,
        simulation=sim,
        n_restarts=count,
        converged=bool(opt.success),
    )


# ═══════════════════════════════════════════════════════════════════════
# MULTIPLE YEARS
# ═══════════════════════════════════════════════════════════════════════

def coerce_years(labels: Sequence) -> List:
    """Numeric year labels; a leading 'X' (as in 'X2001') is stripped.

    Labels that can't be parsed at all are replaced by 1..n with a warning.

    Raises:
        ValueError: If only some labels can be parsed.
    """
    labels = list(labels)
    stripped = [str(label).strip() for label in labels]
    stripped = [s[1:] if s.startswith('X') else s for s in stripped]
    values = pd.to_numeric(pd.Series(stripped, dtype=object), errors='coerce')
    if values.isna().all():
        warnings.warn(
            "year labels are not numeric; using 1 to n",
            UserWarning,
            stacklevel=2,
        )
        return list(range(1, len(labels) + 1))
    if values.isna().any():
        bad = [labels[i] for i in np.flatnonzero(values.isna().to_numpy())]
        raise ValueError(f"year labels could not be converted to numbers: {bad}")
    return [int(v) if float(v).is_integer() else float(v) for v in values]


def fit(
    life: LifeHistory,
    data: LengthData,
    control: Optional[FitControl] = None,
    year_columns: Optional[Sequence[int]] = None,
    penalize: bool = True,
    fast_gtg: bool = True,
    smoother: Optional[SmootherSection] = None,
    verbose: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> MultiYearFit:
    """Fit every selected year of a length-frequency table.

    Args:
        life: Resolved life history.
        data: Length data (mids × years).
        control: Algorithm settings.
        year_columns: 0-based column indices to fit; all years if None.
        penalize: Apply the SL50 penalty.
        fast_gtg: Use the precomputed GTG objective.
        smoother: Smoother variances; defaults to SmootherSection().
        verbose: Print progress.
        rng: Source of the random failure value in the objective.

    Returns:
        MultiYearFit with rounded per-year vectors and smoothed estimates.

    Raises:
        ValueError: For invalid inputs (before any year is fitted).
    """
    if control is None:
        control = FitControl()
    if smoother is None:
        smoother = SmootherSection()
    if year_columns is None:
        year_columns = list(range(data.n_years))
    year_columns = list(year_columns)
    for col in year_columns:
        data.year_counts(col)
    years = coerce_years([data.years[col] for col in year_columns])
    fit_life_history(life, data.mids)

    if verbose:
        print("Fitting model")
    year_fits: List[YearFitResult] = []
    for col, year in zip(year_columns, years):
        if verbose:
            print(f"  Year: {year}")
        try:
            result = fit_year(life, data.mids, data.year_counts(col), control,
                              penalize=penalize, fast_gtg=fast_gtg, year=year,
                              rng=rng)
        except _FIT_ERRORS as exc:
            warnings.warn(f"year {year}: fit failed ({exc})", UserWarning,
                          stacklevel=2)
            result = YearFitResult.failed(year)
        year_fits.append(result)

    n_obs = len(data.mids)
    p_lcatch = np.column_stack([
        r.p_lcatch if len(r.p_lcatch) == n_obs else np.full(n_obs, np.nan)
        for r in year_fits
    ])

    def column(name: str, digits: Optional[int] = 2) -> np.ndarray:
        values = np.array([getattr(r, name) for r in year_fits], dtype=np.float64)
        return values if digits is None else np.round(values, digits)

    sl50 = column('sl50')
    sl95 = column('sl95')
    fm = column('fm')
    spr = column('spr', None)
    raw = pd.DataFrame({'sl50': sl50, 'sl95': sl95, 'fm': fm, 'spr': spr},
                       index=pd.Index(years, name='year'))
    estimates = smooth_estimates(raw, smoother.r, smoother.q,
                                 smoother.initial_variance)

    return MultiYearFit(
        years=years,
        year_fits=year_fits,
        lmids=data.mids.copy(),
        ldata=data.counts[:, year_columns].copy(),
        sl50=sl50,
        sl95=sl95,
        fm=fm,
        spr=spr,
        yield_=column('yield_'),
        ypr=column('ypr'),
        nll=column('nll', None),
        fit_log=np.array([int(r.fit_log) for r in year_fits]),
        variances=np.vstack([r.variances.as_array() for r in year_fits]),
        p_lcatch=p_lcatch,
        estimates=estimates,
        max_fm=control.max_fm,
    )


def fit_from_config(config: LBSPRConfig, data: LengthData,
                    year_columns: Optional[Sequence[int]] = None,
                    rng: Optional[np.random.Generator] = None) -> MultiYearFit:
    """Resolve the configured life history and fit with its fit options."""
    life, notes = resolve_life_history(config.life_history)
    if config.fit.verbose:
        for note in notes:
            print(f"  {note}")
    return fit(life, data, config.control, year_columns=year_columns,
               penalize=config.fit.penalize, fast_gtg=config.fit.fast_gtg,
               smoother=config.smoother, verbose=config.fit.verbose, rng=rng)

"""Simulation entry points: SPR targets, yield curves and target comparisons.

The equilibrium model in lbspr.population is driven by F/M. When the user
supplies a target SPR instead, F/M is found by bounded 1-D minimization of
(target − SPR(F/M))² over [0.001, 7].
"""

from __future__ import annotations

import dataclasses
import warnings
from typing import Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.optimize import minimize_scalar

from lbspr.bins import bins_from_mids
from lbspr.biology import maturity_at_length, selectivity_at_length
from lbspr.config import (
    FitControl,
    LifeHistory,
    LifeHistoryParams,
    control_from_dict,
    resolve_life_history,
)
from lbspr.population import simulate
from lbspr.types import ConfigNote, LengthData, MultiYearFit, SimulationResult


FM_BOUNDS = (0.001, 7.0)


def _as_control(control) -> FitControl:
    if control is None:
        return FitControl()
    if isinstance(control, FitControl):
        return control
    return control_from_dict(control)


def _require_selectivity(life: LifeHistory) -> None:
    if life.sl50 is None or life.sl95 is None:
        raise ValueError("sl50 and sl95 must be supplied")


# ═══════════════════════════════════════════════════════════════════════
# SPR TARGET
# ═══════════════════════════════════════════════════════════════════════

def solve_fm_for_spr(
    life: LifeHistory,
    control: Optional[FitControl] = None,
    bounds: Tuple[float, float] = FM_BOUNDS,
) -> float:
    """F/M that produces life.spr under the given selectivity.

    Raises:
        ValueError: If no SPR target or selectivity is set.
    """
    if life.spr is None:
        raise ValueError("an SPR target is required to solve for F/M")
    _require_selectivity(life)
    control = _as_control(control)
    target = life.spr

    def objective(fm: float) -> float:
        sim = simulate(life.with_exploitation(life.sl50, life.sl95, fm),
                       control)
        return (target - sim.spr) ** 2

    opt = minimize_scalar(objective, bounds=bounds, method='bounded',
                          options={'xatol': 1e-8})
    return float(opt.x)


def simulate_for_target(
    life: LifeHistory,
    control: Optional[FitControl] = None,
) -> SimulationResult:
    """Simulate at the F/M that reaches the SPR target.

    A target that can't be reached within the F/M bounds still returns the
    closest simulation, with a UserWarning.
    """
    control = _as_control(control)
    fm = solve_fm_for_spr(life, control)
    result = simulate(life.with_exploitation(life.sl50, life.sl95, fm),
                      control)
    if round(result.spr, 2) != round(life.spr, 2):
        warnings.warn(
            f"Not possible to reach specified SPR ({life.spr}). SPR may be "
            f"too low for current selectivity pattern. SPR is "
            f"{result.spr:.4f} instead",
            UserWarning,
            stacklevel=2,
        )
    note = ConfigNote('fm', f"solved as {fm:.4f} for SPR target {life.spr}")
    return dataclasses.replace(result, notes=result.notes + (note,))


def run_simulation(
    params: Union[LifeHistoryParams, LifeHistory],
    control: Union[FitControl, Mapping, None] = None,
    verbose: bool = False,
) -> SimulationResult:
    """Public simulation entry.

    Uses the SPR target when one is given (F/M is then ignored), otherwise
    the supplied F/M.

    Args:
        params: Raw or resolved life history with selectivity set.
        control: FitControl, or a mapping of control names.
        verbose: Print the notes recorded while resolving and simulating.

    Returns:
        SimulationResult whose notes include every default applied.

    Raises:
        ValueError: For invalid or incomplete inputs.
    """
    if isinstance(params, LifeHistoryParams):
        life, notes = resolve_life_history(params)
    else:
        life, notes = params, []
    control = _as_control(control)
    _require_selectivity(life)

    if life.spr is not None:
        result = simulate_for_target(life, control)
    elif life.fm is not None:
        result = simulate(life, control)
    else:
        raise ValueError("either an SPR target or fm must be supplied")

    result = dataclasses.replace(result, notes=tuple(notes) + result.notes)
    if verbose:
        for note in result.notes:
            print(f"  {note}")
        print(f"  SPR = {result.spr:.3f}, F/M = {result.fm:.3f}")
    return result


# ═══════════════════════════════════════════════════════════════════════
# YIELD CURVE
# ═══════════════════════════════════════════════════════════════════════

def yield_curve(
    life: LifeHistory,
    control: Optional[FitControl] = None,
    fm_grid=None,
) -> pd.DataFrame:
    """SPR, YPR and yield across a grid of F/M values.

    Args:
        life: Resolved life history with selectivity set. Any SPR target
            or F/M on it is ignored.
        control: Algorithm settings.
        fm_grid: F/M values; default 0 to control.max_fm by 0.05.

    Returns:
        DataFrame with columns fm, spr, ypr, yield, rel_ypr, rel_yield where
        the relative columns are scaled to a maximum of 1.
    """
    _require_selectivity(life)
    control = _as_control(control)
    if fm_grid is None:
        fm_grid = np.arange(0.0, control.max_fm + 1e-9, 0.05)
    base = dataclasses.replace(life, spr=None)

    rows = []
    for fm in np.asarray(fm_grid, dtype=np.float64):
        sim = simulate(base.with_exploitation(life.sl50, life.sl95, fm),
                       control)
        rows.append((fm, sim.spr, sim.ypr, sim.yield_))
    curve = pd.DataFrame(rows, columns=['fm', 'spr', 'ypr', 'yield'])

    for col in ('ypr', 'yield'):
        peak = curve[col].max()
        curve[f'rel_{col}'] = curve[col] / peak if peak > 0 else 0.0
    return curve


# ═══════════════════════════════════════════════════════════════════════
# TARGET SIZE STRUCTURE
# ═══════════════════════════════════════════════════════════════════════

def scale_catch_to_sample(
    pred,
    sample,
    bounds: Tuple[float, float] = (1.0, 5000.0),
) -> Tuple[float, np.ndarray]:
    """Scale a predicted catch composition onto a length sample.

    Only the ascending limb of the sample (up to its mode) is matched,
    each bin weighted by its count.

    Returns:
        (scale, pred * scale)
    """
    pred = np.asarray(pred, dtype=np.float64)
    sample = np.asarray(sample, dtype=np.float64)
    if pred.shape != sample.shape:
        raise ValueError(
            f"prediction has {len(pred)} bins but sample has {len(sample)}"
        )
    top = int(np.argmax(sample)) + 1
    weight = sample[:top]

    def loss(scale: float) -> float:
        return float(np.sum(((pred[:top] * scale - sample[:top]) * weight) ** 2))

    opt = minimize_scalar(loss, bounds=bounds, method='bounded')
    scale = float(opt.x)
    return scale, pred * scale


def compare_to_target(
    life: LifeHistory,
    data: LengthData,
    year_index: int = 0,
    control: Optional[FitControl] = None,
) -> pd.DataFrame:
    """Catch composition at the SPR target, scaled onto one year's sample.

    Bins are taken from the sample's length mids.

    Returns:
        DataFrame with columns lmids, p_lcatch (scaled target) and sample.

    Raises:
        ValueError: If no SPR target or selectivity is set, or the year
            index is out of range.
    """
    if life.spr is None:
        raise ValueError("an SPR target is required")
    _require_selectivity(life)
    sample = data.year_counts(year_index)
    width, bin_min, bin_max = bins_from_mids(data.mids)
    target = simulate_for_target(life.with_bins(width, bin_min, bin_max),
                                 control)
    _, scaled = scale_catch_to_sample(target.p_lcatch, sample)
    return pd.DataFrame({
        'lmids': data.mids,
        'p_lcatch': scaled,
        'sample': sample,
    })


# ═══════════════════════════════════════════════════════════════════════
# MATURITY AND SELECTIVITY CURVES
# ═══════════════════════════════════════════════════════════════════════

def selectivity_curves(
    life: LifeHistory,
    fit: Optional[MultiYearFit] = None,
    use_smooth: bool = True,
) -> pd.DataFrame:
    """Maturity and selectivity at 1-unit length steps.

    Without a fit, lengths run 0..Linf and a single 'selectivity' column
    uses life.sl50/sl95 (when set). With a fit, lengths span the observed
    mids and there is one selectivity column per year, from the smoothed
    estimates when use_smooth is True.
    """
    if fit is None:
        lengths = np.arange(0.0, life.linf + 1e-9, 1.0)
    else:
        lengths = np.arange(fit.lmids[0], fit.lmids[-1] + 1e-9, 1.0)
    curves = pd.DataFrame({
        'length': lengths,
        'maturity': maturity_at_length(lengths, life.l50, life.l95),
    })

    if fit is None:
        if life.sl50 is not None and life.sl95 is not None:
            curves['selectivity'] = selectivity_at_length(lengths, life.sl50,
                                                          life.sl95)
        return curves

    if use_smooth:
        sl50 = fit.estimates['sl50'].to_numpy()
        sl95 = fit.estimates['sl95'].to_numpy()
    else:
        sl50, sl95 = fit.sl50, fit.sl95
    for year, s50, s95 in zip(fit.years, sl50, sl95):
        curves[f'selectivity_{year}'] = selectivity_at_length(lengths, s50, s95)
    return curves

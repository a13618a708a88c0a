"""Equilibrium length-structured population model.

Given life history ratios and an exploitation pattern, produces the
equilibrium numbers-at-length in the unfished and fished state, spawning
potential ratio (SPR), yield-per-recruit and relative recruitment.

Two discretizations, selected once per call by FitControl.model_type:

  GTG:    recruits are split into growth-type-groups with asymptotic lengths
          spread over Linf ± max_sd·SD. Numbers-per-recruit at each bin edge
          follow the ratio of remaining growth potential raised to Z/K:
              N(L_i) = N(L_{i-1}) · ((Linf_g − L_i) / (Linf_g − L_{i-1}))^(Z/K)
          and are integrated within each bin (ΔN / (Z/K)).
  ABSEL:  pseudo-age classes on relative age [0, 1] with Normal
          length-at-age; survival uses the cumulative mean selectivity,
          so selectivity acts on cumulative rather than instantaneous
          mortality.

Intermediate NaN or negative values are clamped to 0.

References:
  - Hordyk et al. 2015, ICES J. Mar. Sci. 72: 204-216 (absel)
  - Hordyk et al. 2016, Can. J. Fish. Aquat. Sci. 73: 1787-1799 (GTG)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.stats import norm

from lbspr.bins import LengthBins, build_length_bins
from lbspr.biology import (
    length_at_relative_age,
    logistic_ogive,
    maturity_at_length,
    relative_recruitment,
    selectivity_at_length,
    weight_at_length,
)
from lbspr.config import FitControl, LifeHistory
from lbspr.types import (
    ConfigNote,
    ModelType,
    SimulationResult,
    make_pop_table,
)


def _normalise(x: np.ndarray) -> np.ndarray:
    total = x.sum()
    if total > 0 and np.isfinite(total):
        return x / total
    return np.zeros_like(x)


def _clean(x: np.ndarray) -> np.ndarray:
    """Replace NaN and negative values with 0."""
    x = np.nan_to_num(x, nan=0.0, posinf=0.0, neginf=0.0)
    return np.where(x < 0, 0.0, x)


# ═══════════════════════════════════════════════════════════════════════
# GROWTH-TYPE-GROUPS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GTGGrid:
    """Exploitation-independent part of the GTG model.

    Built once per life history and bin layout; reused across calls that
    only change SL50, SL95 and F/M (e.g. inside the optimizer).
    """
    bins: LengthBins
    linfs: np.ndarray        # (n_gtg,) asymptotic length of each group
    rec_p: np.ndarray        # (n_gtg,) share of recruits in each group
    mk_edges: np.ndarray     # (n_edges,) M/K at each bin edge
    mk: float
    r0: float

    @property
    def n_gtg(self) -> int:
        return len(self.linfs)


def gtg_group_count(sd_linf: float, bin_width: float, n_gtg: int,
                    max_sd: float) -> int:
    """Number of groups needed so the Linf spread is resolved by the bins."""
    return max(int(n_gtg), int(math.ceil((2.0 * max_sd * sd_linf + 1.0)
                                         / bin_width)))


def build_gtg_grid(
    life: LifeHistory,
    bins: LengthBins,
    control: FitControl,
) -> Tuple[GTGGrid, List[ConfigNote]]:
    """Set up groups, recruit shares and length-specific M/K.

    Returns:
        (grid, notes): a note is recorded when n_gtg had to be increased.
    """
    notes: List[ConfigNote] = []
    sd_linf = life.sd_linf
    n_gtg = gtg_group_count(sd_linf, bins.width, control.n_gtg,
                            control.max_sd)
    if n_gtg != control.n_gtg:
        notes.append(ConfigNote(
            'n_gtg', f"increased to {n_gtg} because of small bin size"))

    linfs = np.linspace(life.linf - control.max_sd * sd_linf,
                        life.linf + control.max_sd * sd_linf, n_gtg)
    dens = norm.pdf(linfs, loc=life.linf, scale=sd_linf)
    rec_p = dens / dens.sum()

    # M/K evaluated at the centre of the bin above each edge
    mk_edges = life.mk * (life.linf / (bins.edges + 0.5 * bins.width)) ** life.mpow

    grid = GTGGrid(bins=bins, linfs=linfs, rec_p=rec_p, mk_edges=mk_edges,
                   mk=life.mk, r0=life.r0)
    return grid, notes


def gtg_numbers_at_length(
    grid: GTGGrid,
    sl50: float,
    sl95: float,
    fm: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Unfished and fished numbers-at-length for each growth group.

    Args:
        grid: Precomputed GTG grid.
        sl50, sl95: Selectivity lengths.
        fm: Relative fishing mortality F/M.

    Returns:
        (nat_uf, nat_f, sel): two (n_mids, n_gtg) arrays and the
        selectivity at each length mid.
    """
    edges = grid.bins.edges
    half = 0.5 * grid.bins.width
    linfs = grid.linfs[None, :]

    # Selectivity at edges is shifted half a bin so it applies mid-bin
    sel_edges = selectivity_at_length(edges, sl50 + half, sl95 + half)
    mk_k = grid.mk_edges[:, None]
    zk = mk_k + (fm * grid.mk * sel_edges)[:, None]

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        ratio = (linfs - edges[1:, None]) / (linfs - edges[:-1, None])
        # A group can't grow into a bin above its asymptotic length
        grows = linfs >= edges[1:, None]
        step_uf = np.where(grows, ratio ** mk_k[:-1], 0.0)
        step_f = np.where(grows, ratio ** zk[:-1], 0.0)

    recruits = grid.rec_p * grid.r0
    npr_uf = np.vstack([recruits, recruits * np.cumprod(step_uf, axis=0)])
    npr_f = np.vstack([recruits, recruits * np.cumprod(step_f, axis=0)])
    npr_uf = _clean(npr_uf)
    npr_f = _clean(npr_f)

    # Integrate over time spent in each length class
    nat_uf = _clean((npr_uf[:-1] - npr_uf[1:]) / mk_k[:-1])
    nat_f = _clean((npr_f[:-1] - npr_f[1:]) / zk[:-1])

    sel = selectivity_at_length(grid.bins.mids, sl50, sl95)
    return nat_uf, nat_f, sel


def _simulate_gtg(life: LifeHistory, control: FitControl,
                  bins: LengthBins) -> SimulationResult:
    grid, notes = build_gtg_grid(life, bins, control)
    nat_uf, nat_f, sel = gtg_numbers_at_length(grid, life.sl50, life.sl95,
                                               life.fm)
    mids = bins.mids

    # Maturity at the same relative size in every group
    l50_gtg = life.l50 / life.linf * grid.linfs
    l95_gtg = life.l95 / life.linf * grid.linfs
    mat = logistic_ogive(mids[:, None], l50_gtg[None, :], l95_gtg[None, :])
    fec = mat * mids[:, None] ** life.fec_b

    nat_lv = nat_uf * sel[:, None]
    nat_lc = nat_f * sel[:, None]

    epr0 = float((nat_uf * fec).sum())
    eprf = float((nat_f * fec).sum())
    spr = eprf / epr0 if epr0 > 0 else 0.0
    rel_rec = relative_recruitment(epr0, eprf, life.steepness, life.r0)

    weight = weight_at_length(mids, life.walpha, life.wbeta)
    ypr = float((nat_lc * (weight * sel)[:, None]).sum()) * life.fm

    nc = _normalise(nat_lc.sum(axis=1))
    return _assemble(
        life, control, bins, spr=spr, ypr=ypr, rel_rec=rel_rec,
        catch=nc,
        pop_uf=_normalise(nat_uf.sum(axis=1)),
        pop_f=_normalise(nat_f.sum(axis=1)),
        vuln_uf=_normalise(nat_lv.sum(axis=1)),
        n_gtg=grid.n_gtg, notes=notes,
    )


# ═══════════════════════════════════════════════════════════════════════
# PSEUDO-AGE MODEL (ABSEL)
# ═══════════════════════════════════════════════════════════════════════

def length_at_age_probabilities(
    life: LifeHistory,
    control: FitControl,
    bins: LengthBins,
) -> Tuple[np.ndarray, np.ndarray]:
    """Probability of each length bin at each relative age.

    Returns:
        (prob, el): prob is (n_age, n_mids); el is expected length-at-age.
        Rows are truncated at ±max_sd once el exceeds
        truncation_threshold·Linf.
    """
    x = np.linspace(0.0, 1.0, control.n_age)
    el = length_at_relative_age(x, life.linf, life.mk, control.p_survival)
    sdl = el * life.cv_linf
    edges = bins.edges
    mids = bins.mids

    with np.errstate(divide='ignore', invalid='ignore'):
        cdf = norm.cdf((edges[None, 1:-1] - el[:, None]) / sdl[:, None])
        dev = np.abs((mids[None, :] - el[:, None]) / sdl[:, None])
    n_age = len(x)
    cdf = np.hstack([np.zeros((n_age, 1)), cdf, np.ones((n_age, 1))])
    prob = np.diff(cdf, axis=1)

    truncate = ((el[:, None] > control.truncation_threshold * life.linf)
                & (dev >= control.max_sd))
    prob = _clean(np.where(truncate, 0.0, prob))
    return prob, el


def _simulate_absel(life: LifeHistory, control: FitControl,
                    bins: LengthBins) -> SimulationResult:
    prob, el = length_at_age_probabilities(life, control, bins)
    rlens = el / life.linf
    mids = bins.mids

    sel = selectivity_at_length(mids, life.sl50, life.sl95)
    sel_age = prob @ sel
    mean_cum_sel = np.cumsum(sel_age) / np.arange(1, len(sel_age) + 1)

    with np.errstate(invalid='ignore'):
        n_fished = _clean((1.0 - rlens) ** (life.mk + life.mk * life.fm
                                            * mean_cum_sel))
        n_unfished = _clean((1.0 - rlens) ** life.mk)

    catch_prob = prob * sel[None, :]
    nc = n_fished @ catch_prob

    mat_age = prob @ maturity_at_length(mids, life.l50, life.l95)
    fec_age = mat_age * rlens ** life.fec_b
    epr0 = float((n_unfished * fec_age).sum())
    eprf = float((n_fished * fec_age).sum())
    spr = eprf / epr0 if epr0 > 0 else 0.0
    rel_rec = relative_recruitment(epr0, eprf, life.steepness, life.r0)

    weight = weight_at_length(mids, life.walpha, life.wbeta)
    ypr = float((nc * weight).sum()) * life.fm

    return _assemble(
        life, control, bins, spr=spr, ypr=ypr, rel_rec=rel_rec,
        catch=_normalise(nc),
        pop_uf=_normalise(n_unfished @ prob),
        pop_f=_normalise(n_fished @ prob),
        vuln_uf=_normalise(n_unfished @ catch_prob),
        n_gtg=None, notes=[],
    )


# ═══════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def _assemble(life, control, bins, *, spr, ypr, rel_rec, catch, pop_uf,
              pop_f, vuln_uf, n_gtg, notes) -> SimulationResult:
    observed = bins.observed
    spr = float(np.clip(spr, 0.0, 1.0)) if np.isfinite(spr) else 0.0
    return SimulationResult(
        model_type=control.model_type,
        spr=spr,
        ypr=ypr,
        yield_=ypr * rel_rec,
        rel_rec=rel_rec,
        fm=life.fm,
        sl50=life.sl50,
        sl95=life.sl95,
        lmids=bins.mids[observed],
        p_lcatch=_normalise(catch[observed]),
        pop_table=make_pop_table(bins.mids, pop_uf, pop_f, vuln_uf, catch),
        max_fm=control.max_fm,
        n_gtg=n_gtg,
        notes=tuple(notes),
    )


_SIMULATORS = {
    ModelType.GTG: _simulate_gtg,
    ModelType.ABSEL: _simulate_absel,
}


def simulation_bins(life: LifeHistory) -> LengthBins:
    return build_length_bins(life.linf, life.bin_width, life.bin_min,
                             life.bin_max)


def simulate(life: LifeHistory,
             control: Optional[FitControl] = None) -> SimulationResult:
    """Run the equilibrium model for fixed selectivity and F/M.

    Target-SPR runs go through lbspr.solver, which resolves F/M first.

    Args:
        life: Resolved life history with sl50, sl95 and fm set.
        control: Algorithm settings; defaults to FitControl().

    Returns:
        SimulationResult (pure function of the inputs).

    Raises:
        ValueError: If sl50, sl95 or fm is missing, or bins are invalid.
    """
    if control is None:
        control = FitControl()
    if life.sl50 is None or life.sl95 is None or life.fm is None:
        raise ValueError("simulation requires sl50, sl95 and fm to be set")
    simulator = _SIMULATORS[control.model_type]
    return simulator(life, control, simulation_bins(life))

"""Core data types for LBSPR.

This module defines:
  - ModelType, FitLog enumerations
  - POP_TABLE_DTYPE: NumPy structured dtype for the equilibrium population table
  - ConfigNote: structured record of a default applied or a control adjustment
  - Result objects passed between modules (SimulationResult, YearFitResult,
    MultiYearFit) and the length-frequency input (LengthData)

Results are write-once: arrays stored on them are flagged read-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class ModelType(str, Enum):
    """Discretization used by the equilibrium simulator.

    GTG:    growth-type-groups: recruits split into groups with their own
            asymptotic length; numbers-per-recruit tracked along length.
    ABSEL:  pseudo-age classes on relative age [0, 1]; selectivity acts on
            cumulative rather than instantaneous mortality.
    """
    GTG = "GTG"
    ABSEL = "absel"


class FitLog(IntEnum):
    """Advisory diagnostic recorded for each fitted year."""
    OK               = 0   # Fit and covariance usable
    HESSIAN          = 1   # Covariance not positive definite / unavailable
    HIGH_SELECTIVITY = 2   # SL50/Linf > 0.85
    HIGH_FM          = 3   # F/M > 5
    HIGH_SEL_AND_FM  = 4   # Both 2 and 3


# ═══════════════════════════════════════════════════════════════════════
# POPULATION TABLE
# ═══════════════════════════════════════════════════════════════════════

POP_TABLE_DTYPE = np.dtype([
    ('mids',    np.float64),   # length-bin midpoint
    ('pop_uf',  np.float64),   # unfished population (proportion)
    ('pop_f',   np.float64),   # fished population (proportion)
    ('vuln_uf', np.float64),   # unfished vulnerable population (proportion)
    ('vuln_f',  np.float64),   # fished vulnerable population = catch (proportion)
])


def make_pop_table(mids, pop_uf, pop_f, vuln_uf, vuln_f) -> np.ndarray:
    """Assemble a read-only population table, rounded to 6 decimals."""
    table = np.zeros(len(mids), dtype=POP_TABLE_DTYPE)
    table['mids'] = mids
    table['pop_uf'] = np.round(pop_uf, 6)
    table['pop_f'] = np.round(pop_f, 6)
    table['vuln_uf'] = np.round(vuln_uf, 6)
    table['vuln_f'] = np.round(vuln_f, 6)
    table.flags.writeable = False
    return table


def _readonly(arr) -> np.ndarray:
    out = np.array(arr, dtype=np.float64)
    out.flags.writeable = False
    return out


# ═══════════════════════════════════════════════════════════════════════
# NOTES
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ConfigNote:
    """A default that was filled in, or a setting adjusted at run time."""
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


# ═══════════════════════════════════════════════════════════════════════
# SIMULATION OUTPUT
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SimulationResult:
    """Output of one equilibrium simulation."""
    model_type: ModelType
    spr: float
    ypr: float
    yield_: float
    rel_rec: float
    fm: float
    sl50: float
    sl95: float
    lmids: np.ndarray              # (n_obs,) mids ≥ BinMin
    p_lcatch: np.ndarray           # (n_obs,) catch composition, sums to 1
    pop_table: np.ndarray          # (n_mids,) POP_TABLE_DTYPE, full grid from 0
    max_fm: float
    n_gtg: Optional[int] = None    # groups actually used (GTG only)
    notes: Tuple[ConfigNote, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'lmids', _readonly(self.lmids))
        object.__setattr__(self, 'p_lcatch', _readonly(self.p_lcatch))


# ═══════════════════════════════════════════════════════════════════════
# FIT OUTPUT
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FitVariances:
    """Delta-method variances of the fitted and derived quantities."""
    sl50: float = np.nan
    sl95: float = np.nan
    fm: float = np.nan
    spr: float = np.nan

    def as_array(self) -> np.ndarray:
        return np.array([self.sl50, self.sl95, self.fm, self.spr])


@dataclass(frozen=True)
class YearFitResult:
    """Per-year fit of selectivity and F/M to one column of length data."""
    year: object
    sl50: float
    sl95: float
    fm: float
    spr: float
    yield_: float
    ypr: float
    nll: float
    fit_log: FitLog
    variances: FitVariances
    log_params: np.ndarray         # (3,) MLEs in log space
    covariance: np.ndarray         # (3, 3); all NaN when unavailable
    simulation: Optional[SimulationResult] = None
    n_restarts: int = 0
    converged: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'log_params', _readonly(self.log_params))
        object.__setattr__(self, 'covariance', _readonly(self.covariance))

    @property
    def p_lcatch(self) -> np.ndarray:
        if self.simulation is None:
            return np.array([])
        return self.simulation.p_lcatch

    @classmethod
    def failed(cls, year) -> 'YearFitResult':
        """Placeholder for a year whose fit could not be completed."""
        nan3 = np.full(3, np.nan)
        return cls(
            year=year, sl50=np.nan, sl95=np.nan, fm=np.nan, spr=np.nan,
            yield_=np.nan, ypr=np.nan, nll=np.nan, fit_log=FitLog.HESSIAN,
            variances=FitVariances(), log_params=nan3,
            covariance=np.full((3, 3), np.nan), simulation=None,
            converged=False,
        )


@dataclass
class MultiYearFit:
    """Fits across several years plus the smoothed estimate table.

    Per-year vectors follow the rounding of the reported estimates:
    SL50, SL95, FM, yield and YPR to 2 decimals; SPR unrounded.
    """
    years: List[object]
    year_fits: List[YearFitResult]
    lmids: np.ndarray
    ldata: np.ndarray              # (n_mids, n_years) observed counts
    sl50: np.ndarray
    sl95: np.ndarray
    fm: np.ndarray
    spr: np.ndarray
    yield_: np.ndarray
    ypr: np.ndarray
    nll: np.ndarray
    fit_log: np.ndarray
    variances: np.ndarray          # (n_years, 4) columns SL50, SL95, FM, SPR
    p_lcatch: np.ndarray           # (n_mids, n_years)
    estimates: pd.DataFrame        # smoothed SL50, SL95, FM, SPR by year
    max_fm: float = 4.0

    @property
    def n_years(self) -> int:
        return len(self.years)


# ═══════════════════════════════════════════════════════════════════════
# LENGTH DATA
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class LengthData:
    """Length-frequency table: one row per length bin, one column per year."""
    mids: np.ndarray
    counts: np.ndarray
    years: Optional[Sequence] = None
    units: str = ""

    def __post_init__(self):
        self.mids = np.asarray(self.mids, dtype=np.float64)
        counts = np.asarray(self.counts, dtype=np.float64)
        if counts.ndim == 1:
            counts = counts[:, None]
        self.counts = counts
        if self.mids.ndim != 1 or len(self.mids) < 2:
            raise ValueError("mids must be a 1-D array with at least 2 bins")
        if counts.shape[0] != len(self.mids):
            raise ValueError(
                f"counts has {counts.shape[0]} rows but there are "
                f"{len(self.mids)} length mids"
            )
        widths = np.diff(self.mids)
        if np.any(widths <= 0) or not np.allclose(widths, widths[0]):
            raise ValueError("length mids must be increasing and evenly spaced")
        if np.any(counts < 0):
            raise ValueError("length counts must be non-negative")
        if self.years is None:
            self.years = list(range(1, counts.shape[1] + 1))
        self.years = list(self.years)
        if len(self.years) != counts.shape[1]:
            raise ValueError(
                f"{len(self.years)} year labels for {counts.shape[1]} "
                f"count columns"
            )

    @property
    def n_years(self) -> int:
        return self.counts.shape[1]

    @property
    def bin_width(self) -> float:
        return float(self.mids[1] - self.mids[0])

    def year_counts(self, index: int) -> np.ndarray:
        """Counts for one year column (0-indexed)."""
        if index < 0 or index >= self.n_years:
            raise ValueError(
                f"year index {index} outside data with {self.n_years} years"
            )
        return self.counts[:, index].copy()

    @classmethod
    def from_frame(cls, frame: pd.DataFrame,
                   mids_column: Optional[str] = None,
                   units: str = "") -> 'LengthData':
        """Build from a DataFrame with mids as a column or as the index.

        Remaining columns are years; their labels become the year labels.
        """
        if mids_column is not None:
            mids = frame[mids_column].to_numpy(dtype=np.float64)
            data = frame.drop(columns=[mids_column])
        else:
            mids = frame.index.to_numpy(dtype=np.float64)
            data = frame
        return cls(mids=mids, counts=data.to_numpy(dtype=np.float64),
                   years=list(data.columns), units=units)

"""Length-based biology: ogives, weight, growth on relative age, recruitment.

All ogives use the logistic form parameterized by the 50% and 95% lengths:

    p(L) = 1 / (1 + exp(−ln 19 · (L − L50) / (L95 − L50)))

References:
  - Goodyear 1993, compensation ratio; Beverton & Holt 1957
  - Hordyk et al. 2015 (length at relative age from M/K)
"""

from __future__ import annotations

import numpy as np


LOG19 = np.log(19.0)


# ═══════════════════════════════════════════════════════════════════════
# OGIVES
# ═══════════════════════════════════════════════════════════════════════

def logistic_ogive(lengths, l50: float, l95: float) -> np.ndarray:
    """Logistic proportion-at-length with 50% at l50 and 95% at l95.

    Knife-edge ogives (l95 == l50) evaluate to 0 below and 1 above l50.
    """
    lengths = np.asarray(lengths, dtype=np.float64)
    with np.errstate(divide='ignore', over='ignore', invalid='ignore'):
        out = 1.0 / (1.0 + np.exp(-LOG19 * (lengths - l50) / (l95 - l50)))
    return np.nan_to_num(out, nan=0.5)


def maturity_at_length(lengths, l50: float, l95: float) -> np.ndarray:
    """Proportion mature at length."""
    return logistic_ogive(lengths, l50, l95)


def selectivity_at_length(lengths, sl50: float, sl95: float) -> np.ndarray:
    """Asymptotic (logistic) gear selectivity at length."""
    return logistic_ogive(lengths, sl50, sl95)


def weight_at_length(lengths, walpha: float, wbeta: float) -> np.ndarray:
    """W = α L^β."""
    return walpha * np.asarray(lengths, dtype=np.float64) ** wbeta


def length_at_relative_age(x, linf: float, mk: float,
                           p_survival: float = 0.01) -> np.ndarray:
    """Expected length at relative age x ∈ [0, 1].

    EL(x) = Linf (1 − P^(x / (M/K))), where P is the proportion of a cohort
    surviving to the maximum age. True ages are never needed.
    """
    x = np.asarray(x, dtype=np.float64)
    return (1.0 - p_survival ** (x / mk)) * linf


# ═══════════════════════════════════════════════════════════════════════
# STOCK-RECRUITMENT
# ═══════════════════════════════════════════════════════════════════════

def goodyear_compensation(steepness: float) -> float:
    """Compensation ratio κ = 4h / (1 − h); infinite at h = 1."""
    if steepness >= 1.0:
        return np.inf
    return 4.0 * steepness / (1.0 - steepness)


def relative_recruitment(epr0: float, eprf: float, steepness: float,
                         r0: float = 1.0) -> float:
    """Equilibrium recruitment under fishing (Beverton-Holt).

    R = (a·EPRf − 1) / (b·EPRf) with a = κ / EPR0 and
    b = (a·EPR0 − 1) / (R0·EPR0). At h = 1 recruitment stays at R0 while
    any eggs are produced. Negative or non-finite values are returned as 0.
    """
    if steepness >= 1.0:
        return float(r0) if eprf > 0 else 0.0
    rec_k = goodyear_compensation(steepness)
    epr0 = np.float64(epr0)
    eprf = np.float64(eprf)
    with np.errstate(divide='ignore', invalid='ignore'):
        rec_a = rec_k / epr0
        rec_b = (rec_a * epr0 - 1.0) / (r0 * epr0)
        rel_rec = (rec_a * eprf - 1.0) / (rec_b * eprf)
    rel_rec = float(rel_rec)
    if not np.isfinite(rel_rec):
        return 0.0
    return max(0.0, rel_rec)

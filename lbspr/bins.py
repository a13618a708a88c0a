"""Length-bin discretization shared by both simulator variants.

The population model assumes recruitment enters at length 0, so the grid
always extends down toward 0 even when the observed data start higher:
extra bins of the same width are prepended below BinMin. Outputs are later
restricted back to mids ≥ BinMin.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


# Relative tolerance when counting whole bins between two edges
_EDGE_TOL = 1e-9


@dataclass(frozen=True)
class LengthBins:
    """Bin edges and midpoints used by the simulator."""
    edges: np.ndarray      # (n_mids + 1,)
    mids: np.ndarray       # (n_mids,)
    width: float
    bin_min: float         # first bin edge of the observed range
    bin_max: float

    @property
    def n_mids(self) -> int:
        return len(self.mids)

    @property
    def observed(self) -> np.ndarray:
        """Boolean mask of mids inside the observed range (≥ bin_min)."""
        return self.mids >= self.bin_min


def build_length_bins(
    linf: float,
    width: Optional[float] = None,
    lmin: Optional[float] = None,
    lmax: Optional[float] = None,
) -> LengthBins:
    """Build the simulation grid.

    Args:
        linf: Asymptotic length.
        width: Bin width (default Linf / 20).
        lmin: Lower edge of the first observed bin (default 0).
        lmax: Upper limit of the grid (default 1.3 Linf).

    Returns:
        LengthBins with edges from lmin (or lower, toward 0) to ≤ lmax.

    Raises:
        ValueError: If lmax < Linf or width is not positive.
    """
    if width is None:
        width = linf / 20.0
    if lmin is None:
        lmin = 0.0
    if lmax is None:
        lmax = 1.3 * linf
    if width <= 0:
        raise ValueError(f"bin width must be positive, got {width}")
    if lmax < linf:
        raise ValueError(
            f"Maximum length bin ({lmax}) can't be smaller than asymptotic "
            f"size ({linf}). Increase size of maximum length class"
        )

    n_steps = int(np.floor((lmax - lmin) / width + _EDGE_TOL))
    edges = lmin + width * np.arange(n_steps + 1)

    if lmin > 0 and (lmin - width) > 0:
        n_below = int(np.floor((lmin - width) / width + _EDGE_TOL)) + 1
        below = lmin - width * np.arange(n_below, 0, -1)
        edges = np.concatenate([below, edges])

    mids = edges[:-1] + 0.5 * width
    return LengthBins(edges=edges, mids=mids, width=float(width),
                      bin_min=float(lmin), bin_max=float(lmax))


def bins_from_mids(mids) -> Tuple[float, float, float]:
    """Recover (width, bin_min, bin_max) from evenly spaced observed mids."""
    mids = np.asarray(mids, dtype=np.float64)
    if len(mids) < 2:
        raise ValueError("at least two length mids are required")
    width = float(mids[1] - mids[0])
    if width <= 0:
        raise ValueError("length mids must be increasing")
    return width, float(mids[0] - 0.5 * width), float(mids[-1] + 0.5 * width)

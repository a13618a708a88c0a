"""LBSPR: Length-based spawning potential ratio for data-limited fisheries.

An equilibrium, length-structured per-recruit model that:
  - Simulates expected catch and population length composition from life
    history ratios (M/K, L50/Linf) and a logistic selectivity pattern
  - Offers two discretizations: growth-type-groups (GTG) and pseudo-age
    classes with cumulative selectivity (absel)
  - Fits selectivity and relative fishing mortality (F/M) to observed
    length-frequency data by maximum likelihood
  - Propagates parameter uncertainty to SPR with the delta method
  - Smooths multi-year estimates with a Kalman filter + RTS smoother

References:
  - Hordyk et al. 2015, ICES J. Mar. Sci. 72: 204-216
  - Hordyk et al. 2016, Can. J. Fish. Aquat. Sci. 73: 1787-1799
"""

__version__ = "0.1.0"

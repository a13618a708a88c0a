"""Configuration system for LBSPR.

Two-stage construction of model inputs:
  raw LifeHistoryParams (any field may be missing)
    → resolve_life_history() → immutable LifeHistory + list of ConfigNote

Algorithm settings live in a frozen FitControl validated at construction.
Everything can be loaded from YAML with deep-merge support:
  base.yaml → override dict

Unknown control keys are reported with a UserWarning and ignored; they are
kept in FitControl.extra so that newer configuration files still load.
"""

from __future__ import annotations

import dataclasses
import math
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from lbspr.types import ConfigNote, ModelType


# ═══════════════════════════════════════════════════════════════════════
# LIFE HISTORY
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class LifeHistoryParams:
    """Raw life-history and exploitation inputs, as supplied by the user.

    Lengths share one unit (l_units). SL50/SL95/FM describe exploitation for
    simulation; when spr is given the simulator solves for FM instead.
    """
    species: str = ""
    linf: Optional[float] = None       # Asymptotic length
    cv_linf: Optional[float] = None    # CV of length-at-age
    mk: Optional[float] = None         # M/K ratio
    l50: Optional[float] = None        # Length at 50% maturity
    l95: Optional[float] = None        # Length at 95% maturity
    walpha: Optional[float] = None     # Weight-length scale
    wbeta: Optional[float] = None      # Weight-length exponent
    fec_b: Optional[float] = None      # Fecundity-length exponent
    steepness: Optional[float] = None  # Beverton-Holt steepness
    mpow: Optional[float] = None       # Length dependence of M
    r0: Optional[float] = None         # Unfished recruitment
    sl50: Optional[float] = None       # Length at 50% selectivity
    sl95: Optional[float] = None       # Length at 95% selectivity
    fm: Optional[float] = None         # Relative fishing mortality F/M
    spr: Optional[float] = None        # Target SPR
    bin_min: Optional[float] = None
    bin_max: Optional[float] = None
    bin_width: Optional[float] = None
    l_units: str = ""
    walpha_units: str = ""


@dataclass(frozen=True)
class LifeHistory:
    """Fully resolved, immutable life-history configuration."""
    linf: float
    cv_linf: float
    mk: float
    l50: float
    l95: float
    walpha: float
    wbeta: float
    fec_b: float
    steepness: float
    mpow: float
    r0: float
    bin_min: float
    bin_max: float
    bin_width: float
    sl50: Optional[float] = None
    sl95: Optional[float] = None
    fm: Optional[float] = None
    spr: Optional[float] = None
    species: str = ""
    l_units: str = ""

    @property
    def sd_linf(self) -> float:
        """Standard deviation of asymptotic length (constant CV)."""
        return self.cv_linf * self.linf

    def with_exploitation(self, sl50: float, sl95: float,
                          fm: float) -> 'LifeHistory':
        return dataclasses.replace(self, sl50=sl50, sl95=sl95, fm=fm)

    def with_bins(self, bin_width: float, bin_min: float,
                  bin_max: float) -> 'LifeHistory':
        return dataclasses.replace(self, bin_width=bin_width,
                                   bin_min=bin_min, bin_max=bin_max)


# Defaults the model is insensitive to (or that only matter for yield)
_OPTIONAL_DEFAULTS: Tuple[Tuple[str, float, str], ...] = (
    ('walpha', 0.001,
     "not set; model not sensitive to this parameter, using default 0.001"),
    ('wbeta', 3.0,
     "not set; model not sensitive to this parameter, using default 3"),
    ('fec_b', 3.0,
     "fecundity-at-length exponent not set; using default 3, check value"),
    ('steepness', 0.99,
     "not set; only used for yield analysis, using default 0.99"),
    ('mpow', 0.0, "not set; natural mortality independent of length"),
    ('r0', 1.0, "not set; using unit recruitment"),
)

_REQUIRED = ('linf', 'cv_linf', 'mk', 'l50', 'l95')


def resolve_life_history(
    params: LifeHistoryParams,
) -> Tuple[LifeHistory, List[ConfigNote]]:
    """Fill defaults and validate raw inputs.

    Bin defaults: BinMax = 1.3 Linf, BinMin = 0, BinWidth = Linf / 20.

    Args:
        params: Raw user inputs.

    Returns:
        (LifeHistory, notes) where notes record every default applied.

    Raises:
        ValueError: If a required parameter is missing or a value is invalid.
    """
    missing = [name for name in _REQUIRED if getattr(params, name) is None]
    if missing:
        raise ValueError(f"missing required life-history parameters: {missing}")

    notes: List[ConfigNote] = []
    values: Dict[str, Any] = {}
    for name, default, message in _OPTIONAL_DEFAULTS:
        value = getattr(params, name)
        if value is None:
            notes.append(ConfigNote(name, message))
            value = default
        values[name] = float(value)

    linf = float(params.linf)
    if linf <= 0:
        raise ValueError("linf must be positive")

    bin_max = params.bin_max
    if bin_max is None:
        bin_max = 1.3 * linf
        notes.append(ConfigNote('bin_max', "not set; using default of 1.3 Linf"))
    bin_min = params.bin_min
    if bin_min is None:
        bin_min = 0.0
        notes.append(ConfigNote('bin_min', "not set; using default value of 0"))
    bin_width = params.bin_width
    if bin_width is None:
        bin_width = linf / 20.0
        notes.append(ConfigNote('bin_width',
                                "not set; using default value of Linf/20"))

    spr = params.spr
    if spr is not None and params.fm is not None:
        notes.append(ConfigNote(
            'fm', "both SPR and F/M specified; using SPR and ignoring F/M"))

    life = LifeHistory(
        linf=linf,
        cv_linf=float(params.cv_linf),
        mk=float(params.mk),
        l50=float(params.l50),
        l95=float(params.l95),
        bin_min=float(bin_min),
        bin_max=float(bin_max),
        bin_width=float(bin_width),
        sl50=None if params.sl50 is None else float(params.sl50),
        sl95=None if params.sl95 is None else float(params.sl95),
        fm=None if params.fm is None else float(params.fm),
        spr=None if spr is None else float(spr),
        species=params.species,
        l_units=params.l_units,
        **values,
    )
    validate_life_history(life)
    return life, notes


def validate_life_history(life: LifeHistory) -> None:
    """Validate a resolved life history. Raises ValueError on failure.

    Steepness is accepted on (0.2, 1]; h = 1 is the constant-recruitment
    (per-recruit) limit.
    """
    if life.linf <= 0:
        raise ValueError("linf must be positive")
    if life.cv_linf <= 0:
        raise ValueError("cv_linf must be positive")
    if life.mk <= 0:
        raise ValueError("mk must be positive")
    if not (0 < life.l50 < life.l95):
        raise ValueError(
            f"maturity requires 0 < l50 < l95, got l50={life.l50}, "
            f"l95={life.l95}"
        )
    if not (0.2 < life.steepness <= 1.0):
        raise ValueError(
            f"steepness must be greater than 0.2 and at most 1.0, "
            f"got {life.steepness}"
        )
    if life.r0 <= 0:
        raise ValueError("r0 must be positive")
    if life.spr is not None and not (0.0 <= life.spr <= 1.0):
        raise ValueError(f"SPR must be between 0 and 1, got {life.spr}")
    if life.fm is not None and life.fm < 0:
        raise ValueError(f"fm must be non-negative, got {life.fm}")
    if life.bin_width <= 0:
        raise ValueError("bin_width must be positive")
    if life.bin_min < 0:
        raise ValueError("bin_min must be non-negative")
    if life.bin_max < life.linf:
        raise ValueError(
            f"Maximum length bin ({life.bin_max}) can't be smaller than "
            f"asymptotic size ({life.linf}). Increase bin_max"
        )
    if (life.sl50 is not None and life.sl95 is not None
            and life.sl95 <= life.sl50):
        raise ValueError(
            f"selectivity requires sl50 < sl95, got sl50={life.sl50}, "
            f"sl95={life.sl95}"
        )


# ═══════════════════════════════════════════════════════════════════════
# CONTROL
# ═══════════════════════════════════════════════════════════════════════

VALID_METHODS = {"BFGS", "L-BFGS-B", "Nelder-Mead", "Powell", "CG", "TNC"}

# Short control names accepted as aliases
CONTROL_ALIASES = {
    'modtype': 'model_type',
    'maxsd': 'max_sd',
    'ngtg': 'n_gtg',
    'P': 'p_survival',
    'Nage': 'n_age',
    'maxFM': 'max_fm',
}


@dataclass(frozen=True)
class FitControl:
    """Algorithm settings for simulation and fitting.

    model_type: ModelType.GTG (default) or ModelType.ABSEL
    max_sd: SDs of length-at-age kept in the distribution
    n_gtg: number of growth-type-groups (GTG only; may be increased)
    p_survival: survival to maximum (relative) age (absel only)
    n_age: number of pseudo-age classes (absel only)
    max_fm: reported F/M ceiling
    method: scipy.optimize.minimize method used by the fitter
    truncation_threshold: absel truncation applies once EL > threshold·Linf
    """
    model_type: ModelType = ModelType.GTG
    max_sd: float = 2.0
    n_gtg: int = 13
    p_survival: float = 0.01
    n_age: int = 101
    max_fm: float = 4.0
    method: str = "BFGS"
    truncation_threshold: float = 0.25
    extra: Mapping[str, Any] = field(default_factory=dict, hash=False,
                                     compare=False)

    def __post_init__(self):
        try:
            model_type = ModelType(self.model_type)
        except ValueError:
            raise ValueError(
                f"model_type must be one of {[m.value for m in ModelType]}, "
                f"got '{self.model_type}'"
            ) from None
        object.__setattr__(self, 'model_type', model_type)
        if self.method not in VALID_METHODS:
            raise ValueError(
                f"method must be one of {sorted(VALID_METHODS)}, "
                f"got '{self.method}'"
            )
        if self.n_gtg < 1:
            raise ValueError(f"n_gtg must be >= 1, got {self.n_gtg}")
        if self.n_age < 2:
            raise ValueError(f"n_age must be >= 2, got {self.n_age}")
        if self.max_sd <= 0:
            raise ValueError(f"max_sd must be positive, got {self.max_sd}")
        for message in validate_control(self):
            warnings.warn(message, UserWarning, stacklevel=3)


def validate_control(control: FitControl) -> List[str]:
    """Return advisory messages for control values outside usual ranges."""
    messages = []
    if control.max_sd < 1:
        messages.append(
            f"max_sd={control.max_sd}: maximum standard deviation is too small"
        )
    if control.p_survival > 0.1 or control.p_survival < 0.0001:
        messages.append(
            f"p_survival={control.p_survival} may be set too high or too low"
        )
    if control.n_age < 90:
        messages.append(f"n_age={control.n_age}: n_age should be higher")
    if control.n_gtg < 5:
        messages.append(
            f"n_gtg={control.n_gtg}: too few growth-type-groups to represent "
            f"variability in asymptotic length"
        )
    if not (0.0 <= control.truncation_threshold < 1.0):
        messages.append(
            f"truncation_threshold={control.truncation_threshold} "
            f"outside [0, 1)"
        )
    return messages


def control_from_dict(data: Optional[Mapping[str, Any]] = None) -> FitControl:
    """Build a FitControl from a mapping, accepting short control aliases.

    Known keys override defaults. Unknown keys raise a UserWarning, are not
    applied, and are kept in FitControl.extra.
    """
    if not data:
        return FitControl()
    valid = {f.name for f in dataclasses.fields(FitControl)} - {'extra'}
    known: Dict[str, Any] = {}
    unknown: Dict[str, Any] = {}
    for key, value in data.items():
        name = CONTROL_ALIASES.get(key, key)
        if name in valid:
            known[name] = value
        else:
            unknown[key] = value
    if unknown:
        warnings.warn(
            f"unknown names in control: {', '.join(map(str, unknown))}. "
            f"Options are: {', '.join(sorted(valid))}",
            UserWarning,
            stacklevel=2,
        )
    return FitControl(extra=unknown, **known)


# ═══════════════════════════════════════════════════════════════════════
# COMPLETE CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SmootherSection:
    """Random-walk smoother applied to multi-year estimates."""
    r: float = 1.0                  # Variance of sampling noise
    q: float = 0.1                  # Variance of random walk increments
    initial_variance: float = 100.0 # Variance of initial state


@dataclass
class FitSection:
    """Fitting options."""
    penalize: bool = True           # Beta penalty on SL50/Linf
    fast_gtg: bool = True           # Precomputed GTG objective
    verbose: bool = False


@dataclass
class LBSPRConfig:
    """Complete configuration; sections map 1:1 to YAML top-level keys."""
    life_history: LifeHistoryParams = field(default_factory=LifeHistoryParams)
    control: FitControl = field(default_factory=FitControl)
    smoother: SmootherSection = field(default_factory=SmootherSection)
    fit: FitSection = field(default_factory=FitSection)


def deep_merge(base: Mapping, override: Mapping) -> Dict:
    """New dict with override layered over base; neither input is changed.

    Sections present in both are merged key by key, so an override file
    only needs the values it changes.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            value = deep_merge(current, value)
        merged[key] = value
    return merged


def _dict_to_section(section_cls, data: Dict, name: str) -> Any:
    """Convert a dict to a dataclass, warning about unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    unknown = sorted(k for k in data if k not in valid_fields)
    if unknown:
        warnings.warn(
            f"unknown names in {name}: {', '.join(unknown)}",
            UserWarning,
            stacklevel=3,
        )
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> LBSPRConfig:
    """Convert a merged YAML dict to an LBSPRConfig."""
    sections: Dict[str, Any] = {}
    section_map = {
        'life_history': LifeHistoryParams,
        'smoother': SmootherSection,
        'fit': FitSection,
    }
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key], key)
        else:
            sections[key] = cls()
    control = data.get('control')
    sections['control'] = control_from_dict(
        control if isinstance(control, dict) else None
    )
    return LBSPRConfig(**sections)


def validate_config(config: LBSPRConfig) -> None:
    """Validate a complete configuration. Raises ValueError on failure.

    The life-history section is only resolved when it names the required
    parameters; a control-only configuration is valid.
    """
    sm = config.smoother
    for name in ('r', 'q', 'initial_variance'):
        value = getattr(sm, name)
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"smoother.{name} must be positive, got {value}")
    lh = config.life_history
    if any(getattr(lh, name) is not None for name in _REQUIRED):
        resolve_life_history(lh)


def load_config(
    base_path: Union[str, Path],
    overrides: Optional[Dict] = None,
) -> LBSPRConfig:
    """Load a YAML configuration and apply dict overrides.

    Args:
        base_path: Path to the configuration YAML.
        overrides: Optional dict merged on top (e.g. for sensitivity runs).

    Returns:
        Validated LBSPRConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if overrides is not None:
        config_dict = deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> LBSPRConfig:
    """Return an LBSPRConfig with all default values."""
    config = LBSPRConfig()
    validate_config(config)
    return config

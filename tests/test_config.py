"""Tests for lbspr.config: life history resolution, control, YAML loading."""

from pathlib import Path

import pytest
import yaml

from lbspr.config import (
    FitControl,
    FitSection,
    LBSPRConfig,
    LifeHistoryParams,
    SmootherSection,
    control_from_dict,
    deep_merge,
    default_config,
    load_config,
    resolve_life_history,
    validate_config,
    validate_control,
)
from lbspr.types import ModelType


def _params(**kw):
    base = dict(linf=100.0, cv_linf=0.1, mk=1.5, l50=66.0, l95=70.0)
    base.update(kw)
    return LifeHistoryParams(**base)


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        result = deep_merge({'a': 1, 'b': 2}, {'b': 3})
        assert result == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_override_dict_with_scalar(self):
        result = deep_merge({'a': {'nested': 1}}, {'a': 'replaced'})
        assert result == {'a': 'replaced'}

    def test_empty_override(self):
        assert deep_merge({'a': 1}, {}) == {'a': 1}

    def test_inputs_unchanged(self):
        base = {'x': {'a': 1}}
        override = {'x': {'a': 2}}
        deep_merge(base, override)
        assert base == {'x': {'a': 1}}
        assert override == {'x': {'a': 2}}


# ── Life history resolution ──────────────────────────────────────────

class TestResolveLifeHistory:
    def test_defaults_filled(self):
        life, notes = resolve_life_history(_params())
        assert life.walpha == 0.001
        assert life.wbeta == 3.0
        assert life.fec_b == 3.0
        assert life.steepness == 0.99
        assert life.mpow == 0.0
        assert life.r0 == 1.0
        assert life.bin_max == pytest.approx(130.0)
        assert life.bin_min == 0.0
        assert life.bin_width == pytest.approx(5.0)

    def test_notes_record_every_default(self):
        _, notes = resolve_life_history(_params())
        fields = {n.field for n in notes}
        assert {'walpha', 'wbeta', 'fec_b', 'steepness', 'mpow', 'r0',
                'bin_max', 'bin_min', 'bin_width'} <= fields

    def test_no_notes_when_fully_specified(self):
        _, notes = resolve_life_history(_params(
            walpha=0.01, wbeta=3, fec_b=3, steepness=0.8, mpow=0, r0=1,
            bin_min=0, bin_max=130, bin_width=5))
        assert notes == []

    def test_spr_and_fm_note(self):
        _, notes = resolve_life_history(_params(spr=0.4, fm=1.0))
        assert any(n.field == 'fm' and 'SPR' in n.message for n in notes)

    def test_missing_required(self):
        with pytest.raises(ValueError, match="cv_linf"):
            resolve_life_history(LifeHistoryParams(linf=100, mk=1.5,
                                                   l50=66, l95=70))

    @pytest.mark.parametrize("spr", [-0.1, 1.5])
    def test_spr_out_of_range(self, spr):
        with pytest.raises(ValueError, match="SPR"):
            resolve_life_history(_params(spr=spr))

    @pytest.mark.parametrize("h", [0.2, 0.1, 1.2])
    def test_invalid_steepness(self, h):
        with pytest.raises(ValueError, match="steepness"):
            resolve_life_history(_params(steepness=h))

    def test_steepness_one_allowed(self):
        life, _ = resolve_life_history(_params(steepness=1.0))
        assert life.steepness == 1.0

    def test_bin_max_below_linf(self):
        with pytest.raises(ValueError, match="Maximum length bin"):
            resolve_life_history(_params(bin_max=90))

    def test_maturity_order(self):
        with pytest.raises(ValueError, match="l50 < l95"):
            resolve_life_history(_params(l50=70, l95=66))

    def test_selectivity_order(self):
        with pytest.raises(ValueError, match="sl50 < sl95"):
            resolve_life_history(_params(sl50=60, sl95=50))

    def test_life_history_is_frozen(self):
        life, _ = resolve_life_history(_params())
        with pytest.raises(AttributeError):
            life.linf = 50.0

    def test_with_exploitation_copies(self):
        life, _ = resolve_life_history(_params())
        fished = life.with_exploitation(50.0, 60.0, 1.0)
        assert fished.sl50 == 50.0 and fished.fm == 1.0
        assert life.sl50 is None


# ── Control ──────────────────────────────────────────────────────────

class TestFitControl:
    def test_defaults(self):
        control = FitControl()
        assert control.model_type is ModelType.GTG
        assert control.max_sd == 2.0
        assert control.n_gtg == 13
        assert control.p_survival == 0.01
        assert control.n_age == 101
        assert control.max_fm == 4.0
        assert control.method == "BFGS"
        assert validate_control(control) == []

    def test_model_type_from_string(self):
        assert FitControl(model_type="absel").model_type is ModelType.ABSEL

    def test_hashable(self):
        assert hash(FitControl()) == hash(FitControl())
        with_extra = FitControl(extra={'tolerance': 1e-3})
        assert hash(with_extra) == hash(FitControl())
        assert {FitControl(), with_extra} == {FitControl()}

    def test_bad_model_type(self):
        with pytest.raises(ValueError, match="model_type"):
            FitControl(model_type="VPA")

    def test_bad_method(self):
        with pytest.raises(ValueError, match="method"):
            FitControl(method="simplex")

    def test_small_max_sd_warns(self):
        with pytest.warns(UserWarning, match="max_sd"):
            FitControl(max_sd=0.5)

    def test_extreme_p_survival_warns(self):
        with pytest.warns(UserWarning, match="p_survival"):
            FitControl(p_survival=0.5)

    def test_few_ages_warns(self):
        with pytest.warns(UserWarning, match="n_age"):
            FitControl(n_age=50)

    def test_aliases(self):
        control = control_from_dict({'modtype': 'absel', 'maxsd': 3,
                                     'Nage': 120, 'maxFM': 3})
        assert control.model_type is ModelType.ABSEL
        assert control.max_sd == 3
        assert control.n_age == 120
        assert control.max_fm == 3

    def test_unknown_keys_warn_and_are_kept(self):
        with pytest.warns(UserWarning, match="unknown names in control"):
            control = control_from_dict({'ngtg': 21, 'tolerance': 1e-3})
        assert control.n_gtg == 21
        assert control.extra == {'tolerance': 1e-3}


# ── default_config / load_config ─────────────────────────────────────

class TestDefaultConfig:
    def test_returns_config(self):
        config = default_config()
        assert isinstance(config, LBSPRConfig)
        assert isinstance(config.smoother, SmootherSection)
        assert isinstance(config.fit, FitSection)

    def test_smoother_defaults(self):
        sm = default_config().smoother
        assert (sm.r, sm.q, sm.initial_variance) == (1.0, 0.1, 100.0)


class TestLoadConfig:
    def test_load_from_yaml(self, tmp_path):
        content = {
            'life_history': {'linf': 80.0, 'cv_linf': 0.1, 'mk': 1.2,
                             'l50': 50.0, 'l95': 55.0},
            'control': {'modtype': 'absel'},
        }
        path = tmp_path / "test.yaml"
        with open(path, 'w') as f:
            yaml.dump(content, f)

        config = load_config(path)
        assert config.life_history.linf == 80.0
        assert config.control.model_type is ModelType.ABSEL
        # Unspecified sections get defaults
        assert config.smoother.q == 0.1
        assert config.fit.penalize is True

    def test_overrides(self, tmp_path):
        path = tmp_path / "base.yaml"
        with open(path, 'w') as f:
            yaml.dump({'smoother': {'q': 0.1}, 'fit': {'verbose': False}}, f)
        config = load_config(path, overrides={'smoother': {'q': 0.5}})
        assert config.smoother.q == 0.5
        assert config.fit.verbose is False

    def test_unknown_section_key_warns(self, tmp_path):
        path = tmp_path / "base.yaml"
        with open(path, 'w') as f:
            yaml.dump({'fit': {'penalise': False}}, f)
        with pytest.warns(UserWarning, match="penalise"):
            load_config(path)

    def test_invalid_life_history_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        with open(path, 'w') as f:
            yaml.dump({'life_history': {'linf': 100, 'cv_linf': 0.1,
                                        'mk': 1.5, 'l50': 66, 'l95': 70,
                                        'steepness': 1.5}}, f)
        with pytest.raises(ValueError, match="steepness"):
            load_config(path)

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_load_real_default_yaml(self):
        """Load the shipped configs/default.yaml."""
        default_path = Path(__file__).parent.parent / "configs" / "default.yaml"
        if default_path.exists():
            config = load_config(default_path)
            assert config.life_history.linf == 100.0
            assert config.control.model_type is ModelType.GTG
            life, _ = resolve_life_history(config.life_history)
            assert life.sl50 == 50.0


# ── Validation ───────────────────────────────────────────────────────

class TestValidation:
    def test_valid_default(self):
        validate_config(default_config())

    def test_nonpositive_smoother_variance(self):
        config = default_config()
        config.smoother.r = 0.0
        with pytest.raises(ValueError, match="smoother.r"):
            validate_config(config)

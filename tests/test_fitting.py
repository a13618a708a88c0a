"""Tests for lbspr.fitting: per-year and multi-year fits.

Acceptance criteria:
  - Zero-noise samples simulated at SL50=50, SL95=60, F/M=1 are recovered
    within 5% with fit log 0
  - A year that can't be fitted becomes a NaN row; other years continue
  - Year labels like 'X2001' are coerced to numbers
  - A fit with no usable covariance keeps its estimates after 10 restarts
    and is flagged with fit log 1; advisory codes 2, 3 and 4 flag high
    selectivity, high F/M and both
"""

import numpy as np
import pandas as pd
import pytest

from lbspr.config import (
    FitControl,
    LBSPRConfig,
    LifeHistoryParams,
    SmootherSection,
    resolve_life_history,
)
from lbspr.fitting import (
    coerce_years,
    covariance_from_hessian,
    fit,
    fit_from_config,
    fit_year,
    numerical_hessian,
    restart_sl50,
    starting_values,
)
from lbspr.population import simulate
from lbspr.types import FitLog, LengthData, ModelType


def _life():
    life, _ = resolve_life_history(LifeHistoryParams(
        linf=100.0, cv_linf=0.1, mk=1.5, l50=66.0, l95=70.0, steepness=0.8))
    return life


def _sample(sl50=50.0, sl95=60.0, fm=1.0, n=1000.0, control=None):
    """Noise-free length sample on the default 5-unit bins."""
    sim = simulate(_life().with_exploitation(sl50, sl95, fm), control)
    return sim.lmids, sim.p_lcatch * n


# ═══════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════

class TestNumericalHessian:
    def test_quadratic(self):
        a = np.array([[2.0, 0.5, 0.0],
                      [0.5, 1.0, 0.2],
                      [0.0, 0.2, 3.0]])

        def f(x):
            return 0.5 * x @ a @ x

        np.testing.assert_allclose(numerical_hessian(f, np.ones(3)), a,
                                   atol=1e-5)

    def test_covariance_is_inverse(self):
        h = np.array([[4.0, 1.0], [1.0, 3.0]])
        np.testing.assert_allclose(covariance_from_hessian(h) @ h, np.eye(2),
                                   atol=1e-12)

    def test_singular_hessian(self):
        assert covariance_from_hessian(np.zeros((3, 3))) is None

    def test_negative_variance(self):
        assert covariance_from_hessian(np.diag([1.0, -2.0, 1.0])) is None

    def test_non_finite(self):
        assert covariance_from_hessian(np.full((3, 3), np.nan)) is None


class TestStartingValues:
    def test_from_modal_bin(self):
        mids = np.array([10.0, 20.0, 30.0, 40.0])
        counts = np.array([0.0, 5.0, 20.0, 10.0])
        start = starting_values(mids, counts, 100.0)
        np.testing.assert_allclose(np.exp(start), [0.3, 0.06, 0.5])

    def test_restart_quantiles(self):
        mids = np.array([10.0, 20.0, 30.0, 40.0])
        counts = np.array([0.0, 5.0, 20.0, 10.0])
        assert restart_sl50(mids, counts, 100.0, 1) == pytest.approx(0.2)
        assert restart_sl50(mids, counts, 100.0, 10) == pytest.approx(
            0.2 + 0.95 * 0.1)


class TestCoerceYears:
    def test_strip_x(self):
        assert coerce_years(['X2001', 'X2002']) == [2001, 2002]

    def test_numeric_passthrough(self):
        assert coerce_years([2001, 2002.0]) == [2001, 2002]

    def test_all_unparseable(self):
        with pytest.warns(UserWarning, match="not numeric"):
            assert coerce_years(['a', 'b', 'c']) == [1, 2, 3]

    def test_partially_unparseable(self):
        with pytest.raises(ValueError, match="could not be converted"):
            coerce_years(['2001', 'year two'])


# ═══════════════════════════════════════════════════════════════════════
# SINGLE YEAR
# ═══════════════════════════════════════════════════════════════════════

class TestFitYear:
    def test_recovers_parameters(self):
        mids, counts = _sample()
        result = fit_year(_life(), mids, counts, year=2001)
        assert result.sl50 == pytest.approx(50.0, rel=0.05)
        assert result.sl95 == pytest.approx(60.0, rel=0.05)
        assert result.fm == pytest.approx(1.0, rel=0.05)
        assert result.fit_log == FitLog.OK
        assert result.year == 2001

    def test_attaches_simulation(self):
        mids, counts = _sample()
        result = fit_year(_life(), mids, counts)
        assert result.simulation is not None
        assert result.spr == result.simulation.spr
        assert result.p_lcatch.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(result.p_lcatch, counts / counts.sum(),
                                   atol=0.01)

    def test_variances_finite(self):
        mids, counts = _sample()
        result = fit_year(_life(), mids, counts)
        v = result.variances.as_array()
        assert np.all(np.isfinite(v))
        assert np.all(v >= 0)

    def test_generic_objective_agrees(self):
        mids, counts = _sample()
        fast = fit_year(_life(), mids, counts, fast_gtg=True)
        slow = fit_year(_life(), mids, counts, fast_gtg=False)
        assert fast.sl50 == pytest.approx(slow.sl50, rel=0.01)
        assert fast.fm == pytest.approx(slow.fm, rel=0.01)

    def test_absel_recovery(self):
        control = FitControl(model_type=ModelType.ABSEL)
        mids, counts = _sample(control=control)
        result = fit_year(_life(), mids, counts, control)
        assert result.sl50 == pytest.approx(50.0, rel=0.05)
        assert result.fm == pytest.approx(1.0, rel=0.05)

    def test_counts_mismatch(self):
        with pytest.raises(ValueError, match="counts"):
            fit_year(_life(), np.arange(2.5, 130, 5.0), np.ones(3))

    def test_empty_year(self):
        mids = np.arange(2.5, 130, 5.0)
        with pytest.raises(ValueError, match="no length observations"):
            fit_year(_life(), mids, np.zeros(len(mids)))

    def test_bins_below_linf(self):
        mids = np.arange(2.5, 80, 5.0)
        with pytest.raises(ValueError, match="Maximum length bin"):
            fit_year(_life(), mids, np.ones(len(mids)))


class TestRestarts:
    def test_no_covariance_after_restarts(self, monkeypatch):
        """Estimates are kept, the covariance is given up after 10 restarts."""
        monkeypatch.setattr('lbspr.fitting.covariance_from_hessian',
                            lambda hessian: None)
        mids, counts = _sample()
        with pytest.warns(UserWarning, match="not positive definite"):
            result = fit_year(_life(), mids, counts)
        assert result.n_restarts == 10
        assert result.fit_log == FitLog.HESSIAN
        assert np.all(np.isnan(result.covariance))
        assert np.all(np.isnan(result.variances.as_array()))
        assert result.sl50 == pytest.approx(50.0, rel=0.05)
        assert result.fm == pytest.approx(1.0, rel=0.05)

    def test_no_restart_when_covariance_usable(self):
        mids, counts = _sample()
        assert fit_year(_life(), mids, counts).n_restarts == 0


class TestFitLogCodes:
    @pytest.mark.parametrize("sl50, sl95, fm, code", [
        (90.0, 95.0, 1.0, FitLog.HIGH_SELECTIVITY),
        (50.0, 60.0, 8.0, FitLog.HIGH_FM),
        (90.0, 95.0, 6.0, FitLog.HIGH_SEL_AND_FM),
    ])
    def test_advisory_codes(self, sl50, sl95, fm, code):
        mids, counts = _sample(sl50=sl50, sl95=sl95, fm=fm)
        result = fit_year(_life(), mids, counts)
        assert result.fit_log == code
        assert int(result.fit_log) == int(code)


# ═══════════════════════════════════════════════════════════════════════
# MULTIPLE YEARS
# ═══════════════════════════════════════════════════════════════════════

def _data(fms=(0.8, 1.0, 1.2), labels=None):
    columns = []
    for fm in fms:
        mids, counts = _sample(fm=fm)
        columns.append(counts)
    if labels is None:
        labels = [f"X{2001 + i}" for i in range(len(fms))]
    return LengthData(mids=mids, counts=np.column_stack(columns),
                      years=labels)


class TestFit:
    def test_multi_year_shapes(self):
        data = _data()
        result = fit(_life(), data)
        assert result.years == [2001, 2002, 2003]
        assert result.n_years == 3
        assert result.sl50.shape == (3,)
        assert result.variances.shape == (3, 4)
        assert result.p_lcatch.shape == (len(data.mids), 3)
        assert list(result.estimates.columns) == ['sl50', 'sl95', 'fm', 'spr']
        assert list(result.estimates.index) == [2001, 2002, 2003]

    def test_rounding(self):
        result = fit(_life(), _data())
        np.testing.assert_array_equal(result.sl50, np.round(result.sl50, 2))
        np.testing.assert_array_equal(result.fm, np.round(result.fm, 2))

    def test_fm_trend_recovered(self):
        result = fit(_life(), _data())
        np.testing.assert_allclose(result.fm, [0.8, 1.0, 1.2], rtol=0.05)
        assert np.all(np.diff(result.spr) < 0)

    def test_selected_columns(self):
        result = fit(_life(), _data(), year_columns=[2])
        assert result.years == [2003]
        assert result.ldata.shape[1] == 1
        # One year: estimates are only rounded
        assert result.estimates['fm'].iloc[0] == result.fm[0]

    def test_bad_column_index(self):
        with pytest.raises(ValueError, match="outside"):
            fit(_life(), _data(), year_columns=[5])

    def test_failed_year_does_not_abort(self):
        data = _data()
        counts = data.counts.copy()
        counts[:, 1] = 0.0
        data = LengthData(mids=data.mids, counts=counts, years=data.years)
        with pytest.warns(UserWarning, match="fit failed"):
            result = fit(_life(), data)
        assert np.isnan(result.sl50[1])
        assert result.fit_log[1] == FitLog.HESSIAN
        assert np.isfinite(result.sl50[0]) and np.isfinite(result.sl50[2])
        # Smoothed series is filled across the failed year
        assert result.estimates['sl50'].notna().all()

    def test_verbose(self, capsys):
        fit(_life(), _data(fms=(1.0,)), verbose=True)
        out = capsys.readouterr().out
        assert "Fitting model" in out
        assert "2001" in out

    def test_smoother_settings_used(self):
        data = _data()
        loose = fit(_life(), data, smoother=SmootherSection(q=1e3, r=1e-6))
        np.testing.assert_allclose(loose.estimates['fm'], loose.fm, atol=0.01)


class TestFitFromConfig:
    def test_uses_sections(self):
        config = LBSPRConfig(life_history=LifeHistoryParams(
            linf=100.0, cv_linf=0.1, mk=1.5, l50=66.0, l95=70.0,
            steepness=0.8))
        result = fit_from_config(config, _data(fms=(1.0,)))
        assert result.fm[0] == pytest.approx(1.0, rel=0.05)
        assert isinstance(result.estimates, pd.DataFrame)

"""Tests for lbspr.bins: simulation length grid."""

import numpy as np
import pytest

from lbspr.bins import bins_from_mids, build_length_bins


class TestBuildLengthBins:
    def test_defaults(self):
        bins = build_length_bins(100.0)
        assert bins.width == pytest.approx(5.0)
        assert bins.edges[0] == 0.0
        assert bins.edges[-1] == pytest.approx(130.0)
        assert bins.n_mids == 26
        assert bins.mids[0] == pytest.approx(2.5)

    def test_mids_are_edge_averages(self):
        bins = build_length_bins(100.0, width=4.0)
        np.testing.assert_allclose(bins.mids,
                                   0.5 * (bins.edges[:-1] + bins.edges[1:]))

    def test_edges_stop_at_or_below_max(self):
        bins = build_length_bins(100.0, width=7.0, lmax=130.0)
        assert bins.edges[-1] <= 130.0
        assert bins.edges[-1] + 7.0 > 130.0

    def test_bins_extend_toward_zero(self):
        """A grid starting at 30 gets bins of the same width below it."""
        bins = build_length_bins(100.0, width=10.0, lmin=30.0, lmax=130.0)
        np.testing.assert_allclose(bins.edges[:4], [0.0, 10.0, 20.0, 30.0])
        assert bins.observed.sum() == 10
        assert bins.mids[bins.observed][0] == pytest.approx(35.0)

    def test_no_extension_when_first_bin_reaches_zero(self):
        bins = build_length_bins(100.0, width=10.0, lmin=5.0, lmax=125.0)
        assert bins.edges[0] == pytest.approx(5.0)
        assert bins.observed.all()

    def test_max_below_linf(self):
        with pytest.raises(ValueError, match="Maximum length bin"):
            build_length_bins(100.0, lmax=95.0)

    def test_nonpositive_width(self):
        with pytest.raises(ValueError, match="width"):
            build_length_bins(100.0, width=0.0)


class TestBinsFromMids:
    def test_recovers_layout(self):
        width, lo, hi = bins_from_mids([22.5, 27.5, 32.5])
        assert width == pytest.approx(5.0)
        assert lo == pytest.approx(20.0)
        assert hi == pytest.approx(35.0)

    def test_needs_two_mids(self):
        with pytest.raises(ValueError):
            bins_from_mids([10.0])

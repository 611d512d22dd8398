"""Tests for the multiplier bootstrap."""

import numpy as np
import pytest
from scipy import stats

from qld import NumericalWarning, mboot
from qld.bootstrap import _generate_bootstrap_weights_batch


class TestBootstrapWeights:
    """Tests for bootstrap weight generation."""

    @pytest.mark.parametrize("weight_type", ["rademacher", "mammen", "webb"])
    def test_moments(self, weight_type):
        rng = np.random.default_rng(0)
        weights = _generate_bootstrap_weights_batch(20000, 10, weight_type, rng)

        assert weights.shape == (20000, 10)
        assert abs(weights.mean()) < 0.02
        assert abs((weights ** 2).mean() - 1.0) < 0.02

    def test_rademacher_values(self):
        rng = np.random.default_rng(0)
        weights = _generate_bootstrap_weights_batch(100, 5, "rademacher", rng)
        assert set(np.unique(weights)) <= {-1.0, 1.0}

    def test_invalid_weight_type(self):
        rng = np.random.default_rng(0)
        with pytest.raises(ValueError, match="weight_type"):
            _generate_bootstrap_weights_batch(10, 5, "normal", rng)


class TestMboot:
    """Tests for mboot."""

    def test_se_converges_to_analytic(self):
        rng = np.random.default_rng(42)
        inf_func = rng.normal(size=(500, 3)) * np.array([1.0, 2.0, 0.5]) / 500

        res = mboot(inf_func, n_bootstrap=20000, seed=1)

        analytic_se = np.sqrt((inf_func ** 2).sum(axis=0))
        np.testing.assert_allclose(res.se, analytic_se, rtol=0.05)

    def test_crit_val_single_parameter(self):
        """With one parameter the uniform critical value is the normal quantile."""
        rng = np.random.default_rng(3)
        inf_func = rng.normal(size=(400, 1)) / 400

        res = mboot(inf_func, n_bootstrap=20000, alpha=0.05, seed=2)

        assert abs(res.crit_val - stats.norm.ppf(0.975)) < 0.1

    def test_crit_val_exceeds_pointwise(self):
        rng = np.random.default_rng(4)
        inf_func = rng.normal(size=(300, 8)) / 300

        res = mboot(inf_func, n_bootstrap=5000, seed=0)

        assert res.crit_val > stats.norm.ppf(0.975)

    def test_zero_influence_function(self):
        inf_func = np.zeros((20, 3))

        with pytest.warns(NumericalWarning):
            res = mboot(inf_func, n_bootstrap=100, seed=0)

        np.testing.assert_array_equal(res.se, 0.0)
        assert np.isnan(res.crit_val)

    def test_degenerate_column_excluded(self):
        rng = np.random.default_rng(5)
        inf_func = np.column_stack([rng.normal(size=200) / 200, np.zeros(200)])

        res = mboot(inf_func, n_bootstrap=2000, seed=0)

        assert res.se[1] == 0.0
        assert np.isfinite(res.crit_val)

    def test_reproducible_with_seed(self):
        rng = np.random.default_rng(6)
        inf_func = rng.normal(size=(100, 2)) / 100

        res1 = mboot(inf_func, n_bootstrap=500, seed=11)
        res2 = mboot(inf_func, n_bootstrap=500, seed=11)

        np.testing.assert_array_equal(res1.se, res2.se)
        assert res1.crit_val == res2.crit_val

    def test_accepts_generator(self):
        rng = np.random.default_rng(7)
        inf_func = rng.normal(size=(100, 2)) / 100

        res = mboot(inf_func, n_bootstrap=200, seed=np.random.default_rng(0))

        assert res.bootstrap_distribution.shape == (200, 2)

    def test_vector_input(self):
        res = mboot(np.linspace(-1, 1, 50) / 50, n_bootstrap=200, seed=0)
        assert res.se.shape == (1,)

    def test_low_n_bootstrap_warns(self):
        with pytest.warns(UserWarning, match="n_bootstrap"):
            mboot(np.ones((10, 1)), n_bootstrap=20, seed=0)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="n_bootstrap"):
            mboot(np.ones((10, 1)), n_bootstrap=0)
        with pytest.raises(ValueError, match="alpha"):
            mboot(np.ones((10, 1)), alpha=1.5)

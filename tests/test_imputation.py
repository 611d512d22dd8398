"""Tests for counterfactual imputation and group-time effects."""

import numpy as np
import pytest

from qld import build_factor_matrix, estimate_tau_gt, impute_y0, ms_tau_gt
from qld.imputation import treated_groups


@pytest.fixture
def noise_free_panel():
    """Outcomes exactly following F = [Theta; -I] with two factors."""
    rng = np.random.default_rng(7)
    theta = rng.normal(size=(6 - 2) * 2)
    F = build_factor_matrix(theta, p=2, n_periods=6)
    ymat = F @ rng.normal(size=(2, 12))
    g_shift = np.array([np.inf] * 4 + [3.0] * 4 + [4.0] * 4)
    return theta, ymat, g_shift


class TestImputeY0:
    """Tests for impute_y0."""

    def test_hand_example(self):
        theta = np.array([1.0, 2.0])
        ymat = np.array([[1.0], [3.0], [10.0]])
        g_shift = np.array([2.0])

        y0_hat = impute_y0(theta, 1, ymat, g_shift)

        # F = [1, 2, -1]', lambda = (1 + 6) / 5
        np.testing.assert_allclose(y0_hat[:, 0], [1.4, 2.8, -1.4])

    def test_round_trip_noise_free(self, noise_free_panel):
        theta, ymat, g_shift = noise_free_panel
        y0_hat = impute_y0(theta, 2, ymat, g_shift)

        treated = np.isfinite(g_shift)
        np.testing.assert_allclose(y0_hat[:, treated], ymat[:, treated], atol=1e-10)

    def test_square_pre_block_reproduces_pre_periods(self):
        """
        With as many factors as pre-periods, F_pre is square and the
        pre-adoption outcomes are fitted exactly.
        """
        rng = np.random.default_rng(3)
        theta = rng.normal(size=(4 - 2) * 2)
        ymat = rng.normal(size=(4, 5))
        g_shift = np.full(5, 2.0)

        y0_hat = impute_y0(theta, 2, ymat, g_shift)

        np.testing.assert_allclose(y0_hat[:2], ymat[:2], atol=1e-10)

    def test_never_treated_columns_are_zero(self, noise_free_panel):
        theta, ymat, g_shift = noise_free_panel
        y0_hat = impute_y0(theta, 2, ymat, g_shift)

        assert y0_hat.shape == ymat.shape
        np.testing.assert_array_equal(y0_hat[:, :4], 0.0)

    def test_nan_never_treated_sentinel(self):
        """Never-treated units may be encoded with NaN as well as inf."""
        theta = np.array([1.0, 2.0])
        ymat = np.array([[1.0, 5.0], [3.0, 6.0], [10.0, 7.0]])

        y0_inf = impute_y0(theta, 1, ymat, np.array([2.0, np.inf]))
        y0_nan = impute_y0(theta, 1, ymat, np.array([2.0, np.nan]))

        np.testing.assert_array_equal(y0_inf, y0_nan)


class TestEstimateTauGT:
    """Tests for estimate_tau_gt."""

    def test_cell_layout(self, noise_free_panel):
        theta, ymat, g_shift = noise_free_panel
        tau_gt, n_tau_gt = estimate_tau_gt(theta, 2, ymat, g_shift)

        assert tau_gt.shape == (2 * 6,)
        np.testing.assert_array_equal(n_tau_gt, [4.0] * 12)

    def test_constant_effect_recovered(self, noise_free_panel):
        theta, ymat, g_shift = noise_free_panel
        periods = np.arange(6)[:, np.newaxis]
        treated_post = periods >= g_shift[np.newaxis, :]
        y = ymat + 2.5 * treated_post

        tau_gt, _ = estimate_tau_gt(theta, 2, y, g_shift)

        # Group with g_shift=3 occupies cells 0-5, g_shift=4 cells 6-11
        expected = np.concatenate([
            np.where(np.arange(6) >= 3, 2.5, 0.0),
            np.where(np.arange(6) >= 4, 2.5, 0.0),
        ])
        np.testing.assert_allclose(tau_gt, expected, atol=1e-10)

    def test_unequal_group_sizes(self):
        theta = np.array([1.0, 2.0])
        ymat = np.array([
            [1.0, 2.0, 0.0, 3.0],
            [3.0, 1.0, 0.0, 1.0],
            [10.0, 4.0, 0.0, 2.0],
        ])
        g_shift = np.array([2.0, 2.0, np.inf, 1.0])

        tau_gt, n_tau_gt = estimate_tau_gt(theta, 1, ymat, g_shift)

        # Groups sorted by adoption: g_shift=1 first
        np.testing.assert_array_equal(n_tau_gt, [1, 1, 1, 2, 2, 2])
        y0_hat = impute_y0(theta, 1, ymat, g_shift)
        gap = ymat - y0_hat
        np.testing.assert_allclose(tau_gt[:3], gap[:, 3])
        np.testing.assert_allclose(tau_gt[3:], gap[:, :2].mean(axis=1))

    def test_treated_groups(self):
        g_shift = np.array([np.inf, 4.0, 2.0, 4.0, np.nan])
        np.testing.assert_array_equal(treated_groups(g_shift), [2.0, 4.0])


class TestMsTauGT:
    """Tests for the per-unit group-time moments."""

    def test_mean_zero_at_estimate(self, noise_free_panel):
        theta, ymat, g_shift = noise_free_panel
        rng = np.random.default_rng(0)
        y = ymat + rng.normal(size=ymat.shape)
        tau_gt, _ = estimate_tau_gt(theta, 2, y, g_shift)

        ms = ms_tau_gt(theta, tau_gt, 2, y, g_shift)

        assert ms.shape == (12, 12)
        np.testing.assert_allclose(ms.mean(axis=0), 0.0, atol=1e-10)

    def test_rows_outside_cells_are_zero(self, noise_free_panel):
        theta, ymat, g_shift = noise_free_panel
        rng = np.random.default_rng(0)
        y = ymat + rng.normal(size=ymat.shape)
        tau_gt, _ = estimate_tau_gt(theta, 2, y, g_shift)

        ms = ms_tau_gt(theta, tau_gt, 2, y, g_shift)

        np.testing.assert_array_equal(ms[:4], 0.0)
        # Units of the first group only enter the first group's cells
        np.testing.assert_array_equal(ms[4:8, 6:], 0.0)
        np.testing.assert_array_equal(ms[8:, :6], 0.0)

    def test_rescaled_by_cell_probability(self):
        theta = np.array([1.0, 2.0])
        ymat = np.array([[1.0, 0.0], [3.0, 0.0], [10.0, 0.0]])
        g_shift = np.array([2.0, np.inf])
        tau_gt = np.zeros(3)

        ms = ms_tau_gt(theta, tau_gt, 1, ymat, g_shift)

        # Gap [-0.4, 0.2, 11.4] divided by n_cell / N = 1 / 2
        np.testing.assert_allclose(ms[0], [-0.8, 0.4, 22.8], atol=1e-12)

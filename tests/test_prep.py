"""Tests for panel validation and preparation."""

import numpy as np
import pandas as pd
import pytest

from qld import generate_qld_data, prepare_panel, validate_qld_data
from qld.prep import is_never_treated


class TestValidateQLDData:
    """Tests for validate_qld_data."""

    def test_valid_panel(self, small_panel):
        result = validate_qld_data(small_panel, 'y', 'id', 't', 'g', ['w1', 'w2'])

        assert result['valid']
        assert result['errors'] == []
        assert result['summary']['n_units'] == 6
        assert result['summary']['n_never_treated'] == 2
        assert result['summary']['n_treated'] == 4

    def test_unbalanced_panel_rejected(self, small_panel):
        data = small_panel.drop(index=3)
        with pytest.raises(ValueError, match="not balanced"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_misaligned_periods_unbalanced(self, small_panel):
        """Equal counts per unit but different periods is still unbalanced."""
        data = small_panel[~((small_panel['id'] == 1) & (small_panel['t'] == 1))]
        extra = small_panel[(small_panel['id'] == 1) & (small_panel['t'] == 2)].copy()
        extra['t'] = 5
        data = pd.concat([data, extra], ignore_index=True)

        result = validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'],
                                   raise_on_error=False)
        assert not result['valid']
        assert any("balanced" in e for e in result['errors'])

    def test_missing_column(self, small_panel):
        with pytest.raises(ValueError, match="'w3' not found"):
            validate_qld_data(small_panel, 'y', 'id', 't', 'g', ['w1', 'w3'])

    def test_no_instruments(self, small_panel):
        result = validate_qld_data(small_panel, 'y', 'id', 't', 'g', [],
                                   raise_on_error=False)
        assert not result['valid']
        assert any("instrument" in e for e in result['errors'])

    def test_missing_outcome(self, small_panel):
        data = small_panel.copy()
        data.loc[0, 'y'] = np.nan
        with pytest.raises(ValueError, match="missing values"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_nan_group_is_never_treated(self, small_panel):
        data = small_panel.copy()
        data.loc[data['g'] == np.inf, 'g'] = np.nan
        result = validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])
        assert result['summary']['n_never_treated'] == 2

    def test_non_numeric_outcome(self, small_panel):
        data = small_panel.copy()
        data['y'] = data['y'].astype(str)
        with pytest.raises(ValueError, match="must be numeric"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_duplicate_observations(self, small_panel):
        data = pd.concat([small_panel, small_panel.iloc[[0]]], ignore_index=True)
        with pytest.raises(ValueError, match="duplicate"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_time_varying_group(self, small_panel):
        data = small_panel.copy()
        data.loc[(data['id'] == 1) & (data['t'] == 4), 'g'] = 4
        with pytest.raises(ValueError, match="varies within"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_adoption_outside_periods(self, small_panel):
        data = small_panel.copy()
        data.loc[data['id'] == 1, 'g'] = 7
        with pytest.raises(ValueError, match="not observed"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_no_never_treated(self, small_panel):
        data = small_panel[small_panel['g'] != np.inf]
        with pytest.raises(ValueError, match="No never-treated"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_no_treated(self, small_panel):
        data = small_panel[small_panel['g'] == np.inf]
        with pytest.raises(ValueError, match="No treated"):
            validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

    def test_errors_collected_without_raising(self, small_panel):
        data = small_panel.drop(index=3).copy()
        data.loc[0, 'y'] = np.nan
        result = validate_qld_data(data, 'y', 'id', 't', 'g', ['w1', 'w2'],
                                   raise_on_error=False)
        assert not result['valid']
        assert len(result['errors']) >= 1


class TestPreparePanel:
    """Tests for prepare_panel."""

    def test_shapes(self, small_panel):
        panel = prepare_panel(small_panel, 'y', 'id', 't', 'g', ['w1', 'w2'])

        assert panel.ymat.shape == (4, 6)
        assert panel.instruments.shape == (6, 2)
        assert panel.n_periods == 4
        assert panel.n_units == 6
        assert panel.n_instruments == 2
        assert panel.n_control == 2

    def test_layout(self, small_panel):
        panel = prepare_panel(small_panel, 'y', 'id', 't', 'g', ['w1', 'w2'])

        np.testing.assert_array_equal(panel.units, [1, 2, 3, 4, 5, 6])
        np.testing.assert_array_equal(panel.times, [1, 2, 3, 4])
        np.testing.assert_allclose(panel.ymat[:, 0], [1.0, 2.0, 4.5, 5.0])
        np.testing.assert_allclose(panel.instruments[4], [0.2, 0.7])
        np.testing.assert_array_equal(panel.idx_control, [4, 5])

    def test_group_metadata(self, small_panel):
        panel = prepare_panel(small_panel, 'y', 'id', 't', 'g', ['w1', 'w2'])

        np.testing.assert_array_equal(panel.g_shift, [2, 2, 3, 3, np.inf, np.inf])
        np.testing.assert_array_equal(panel.groups, [3, 4])
        assert panel.n_pre == 2
        assert panel.min_g_shift == 2
        assert panel.gt_index.shape == (8, 2)
        np.testing.assert_array_equal(panel.gt_index[:4, 0], 3)
        np.testing.assert_array_equal(panel.gt_index[4:, 1], [1, 2, 3, 4])
        np.testing.assert_array_equal(panel.n_tau_gt, [2] * 8)

    def test_row_order_does_not_matter(self, small_panel):
        shuffled = small_panel.sample(frac=1.0, random_state=0)
        a = prepare_panel(small_panel, 'y', 'id', 't', 'g', ['w1', 'w2'])
        b = prepare_panel(shuffled, 'y', 'id', 't', 'g', ['w1', 'w2'])

        np.testing.assert_array_equal(a.ymat, b.ymat)
        np.testing.assert_array_equal(a.g_shift, b.g_shift)

    def test_non_consecutive_periods(self, small_panel):
        data = small_panel.copy()
        data['t'] = data['t'] * 10
        data.loc[data['g'] != np.inf, 'g'] *= 10

        panel = prepare_panel(data, 'y', 'id', 't', 'g', ['w1', 'w2'])

        np.testing.assert_array_equal(panel.g_shift, [2, 2, 3, 3, np.inf, np.inf])

    def test_single_instrument_string(self, small_panel):
        panel = prepare_panel(small_panel, 'y', 'id', 't', 'g', 'w1')
        assert panel.instruments.shape == (6, 1)
        assert panel.instrument_names == ['w1']

    def test_generated_data(self):
        data = generate_qld_data(n_units=50, n_periods=5, cohorts=[3, 5], seed=1)
        panel = prepare_panel(data, 'outcome', 'unit', 'period', 'group', ['w1', 'w2'])

        assert panel.n_pre == 2
        assert panel.n_control == 25
        np.testing.assert_array_equal(panel.groups, [3, 5])


class TestIsNeverTreated:
    """Tests for the never-treated sentinel."""

    def test_sentinels(self):
        mask = is_never_treated(np.array([3.0, np.inf, np.nan, 0.0]))
        np.testing.assert_array_equal(mask, [False, True, True, False])

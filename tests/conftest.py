"""
Pytest configuration and shared fixtures for qld tests.
"""

import numpy as np
import pandas as pd
import pytest

from qld import generate_qld_data


# =============================================================================
# Panels
# =============================================================================


SMALL_PANEL_OUTCOMES = {
    1: [1.0, 2.0, 4.5, 5.0],
    2: [2.0, 2.5, 4.0, 6.0],
    3: [0.5, 1.5, 2.0, 4.5],
    4: [1.5, 1.0, 2.5, 5.5],
    5: [1.0, 1.2, 1.1, 1.6],
    6: [2.0, 2.1, 2.6, 2.9],
}
SMALL_PANEL_GROUPS = {1: 3, 2: 3, 3: 4, 4: 4, 5: np.inf, 6: np.inf}
SMALL_PANEL_W1 = {1: 0.3, 2: 0.8, 3: 0.5, 4: 1.1, 5: 0.2, 6: 1.4}
SMALL_PANEL_W2 = {1: 1.0, 2: 0.4, 3: 0.9, 4: 0.1, 5: 0.7, 6: 0.6}


@pytest.fixture
def small_panel():
    """
    4-period, 6-unit balanced panel.

    Units 1-2 adopt in period 3, units 3-4 in period 4 and units 5-6 are
    never treated. Two instruments.
    """
    records = []
    for u, ys in SMALL_PANEL_OUTCOMES.items():
        for t, y in enumerate(ys, start=1):
            records.append({
                'id': u,
                't': t,
                'g': SMALL_PANEL_GROUPS[u],
                'y': y,
                'w1': SMALL_PANEL_W1[u],
                'w2': SMALL_PANEL_W2[u],
            })
    return pd.DataFrame(records)


@pytest.fixture(scope="session")
def qld_data():
    """Simulated one-factor panel: 1000 units, 5 periods, cohorts 4 and 5."""
    return generate_qld_data(
        n_units=1000,
        n_periods=5,
        cohorts=[4, 5],
        n_factors=1,
        n_instruments=2,
        treatment_effect=1.0,
        seed=12345,
    )


@pytest.fixture
def factor_panel():
    """
    Control-unit arrays from a known one-factor model.

    Returns (ymat, instruments, theta_true) with ymat of shape (4, 4000).
    """
    rng = np.random.default_rng(2024)
    n_units = 4000
    theta_true = np.array([0.5, -1.0, 1.5])
    factors = np.concatenate([theta_true, [-1.0]])[:, np.newaxis]

    loadings = rng.normal(0, 1, (n_units, 1))
    instruments = loadings @ np.ones((1, 2)) + rng.normal(0, 1, (n_units, 2))
    ymat = factors @ loadings.T + rng.normal(0, 0.5, (4, n_units))
    return ymat, instruments, theta_true

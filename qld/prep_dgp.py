"""
Data generation utilities for QLD imputation.

Simulates staggered-adoption panels whose untreated outcomes follow a
low-rank factor model, together with time-invariant instruments that are
correlated with the factor loadings but not with the idiosyncratic errors.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd


def generate_qld_data(
    n_units: int = 500,
    n_periods: int = 6,
    cohorts: Optional[Sequence[int]] = None,
    n_factors: int = 1,
    n_instruments: int = 2,
    treatment_effect: float = 1.0,
    never_treated_frac: float = 0.5,
    noise_sd: float = 1.0,
    unit_fe_sd: float = 0.0,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Generate a staggered-adoption panel with a factor structure.

    Creates data following the DGP:
    Y_it = alpha_i + f_t' lambda_i + tau * 1{t >= g_i} + eps_it

    with factors normalised as ``F = [Theta; -I_p]`` and instruments
    ``w_i = Gamma' lambda_i + v_i``.

    Parameters
    ----------
    n_units : int, default=500
        Total number of units.
    n_periods : int, default=6
        Number of periods, labelled 1, ..., n_periods.
    cohorts : sequence of int, optional
        Adoption periods of the treated cohorts. Defaults to the last two
        periods.
    n_factors : int, default=1
        Number of latent factors.
    n_instruments : int, default=2
        Number of instruments (columns ``w1``, ``w2``, ...).
    treatment_effect : float, default=1.0
        Constant effect for treated units from adoption onwards.
    never_treated_frac : float, default=0.5
        Share of never-treated units; the rest are split evenly across
        cohorts.
    noise_sd : float, default=1.0
        Standard deviation of the idiosyncratic errors.
    unit_fe_sd : float, default=0.0
        Standard deviation of additive unit effects. A non-zero value adds
        a constant factor to the model.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    pd.DataFrame
        Long panel with columns:
        - unit: Unit identifier
        - period: Time period
        - group: Adoption period (np.inf for never-treated units)
        - outcome: Outcome variable
        - w1, ..., wL: Instruments (constant within unit)
        - true_effect: The true treatment effect for this observation

    Examples
    --------
    >>> data = generate_qld_data(n_units=100, n_periods=5, seed=0)
    >>> data.shape
    (500, 7)
    """
    rng = np.random.default_rng(seed)

    if cohorts is None:
        cohorts = [n_periods - 1, n_periods]
    cohorts = sorted(int(g) for g in cohorts)

    if n_factors < 0:
        raise ValueError(f"n_factors must be >= 0, got {n_factors}")
    if n_instruments < 1:
        raise ValueError(f"n_instruments must be >= 1, got {n_instruments}")
    if len(cohorts) == 0:
        raise ValueError("At least one treated cohort is required")
    if cohorts[0] < 2 or cohorts[-1] > n_periods:
        raise ValueError(
            f"Adoption periods must lie in [2, {n_periods}], got {cohorts}"
        )
    if not 0 < never_treated_frac < 1:
        raise ValueError(
            f"never_treated_frac must be in (0, 1), got {never_treated_frac}"
        )

    # Cohort assignment
    n_never = int(round(n_units * never_treated_frac))
    n_treated = n_units - n_never
    group = np.full(n_units, np.inf)
    group[n_never:] = np.array(cohorts)[np.arange(n_treated) % len(cohorts)]

    # Factors (n_periods, n_factors) with the last n_factors rows fixed to -I
    theta = rng.normal(0, 1, (n_periods - n_factors, n_factors))
    factors = np.vstack([theta, -np.eye(n_factors)])

    # Treated cohorts have shifted loadings (confounding)
    loadings = rng.normal(0, 1, (n_units, n_factors))
    loadings[n_never:] += 0.5

    gamma = np.ones((n_factors, n_instruments))
    instruments = loadings @ gamma + rng.normal(0, 1, (n_units, n_instruments))

    alpha = rng.normal(0, unit_fe_sd, n_units) if unit_fe_sd > 0 else np.zeros(n_units)

    periods = np.arange(1, n_periods + 1)
    treated = periods[np.newaxis, :] >= group[:, np.newaxis]
    effect = np.where(treated, treatment_effect, 0.0)

    # Shape: (n_units, n_periods)
    y = (
        alpha[:, np.newaxis]
        + loadings @ factors.T
        + effect
        + rng.normal(0, noise_sd, (n_units, n_periods))
    )

    data = pd.DataFrame({
        "unit": np.repeat(np.arange(n_units), n_periods),
        "period": np.tile(periods, n_units),
        "group": np.repeat(group, n_periods),
        "outcome": y.ravel(),
    })
    for l in range(n_instruments):
        data[f"w{l + 1}"] = np.repeat(instruments[:, l], n_periods)
    data["true_effect"] = effect.ravel()

    return data

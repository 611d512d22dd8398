"""
Multiplier bootstrap for uniform inference.

This module provides bootstrap weight generation functions, the bootstrap
results container, and :func:`mboot`, which turns an influence function
matrix into robust standard errors and a sup-t critical value for
simultaneous confidence bands.
"""

import warnings
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
from scipy import stats

from qld.exceptions import NumericalWarning


# =============================================================================
# Bootstrap Weight Generators
# =============================================================================


def _generate_bootstrap_weights_batch(
    n_bootstrap: int,
    n_units: int,
    weight_type: str,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Generate all multiplier bootstrap weights at once.

    All weight distributions satisfy E[w] = 0, E[w^2] = 1.

    Parameters
    ----------
    n_bootstrap : int
        Number of bootstrap iterations.
    n_units : int
        Number of units to generate weights for.
    weight_type : str
        Type of weights: "rademacher" (+-1), "mammen" (2-point),
        or "webb" (6-point).
    rng : np.random.Generator
        Random number generator for reproducibility.

    Returns
    -------
    np.ndarray
        Array of bootstrap weights with shape (n_bootstrap, n_units).
    """
    if weight_type == "rademacher":
        # Rademacher: +1 or -1 with equal probability
        return rng.choice([-1.0, 1.0], size=(n_bootstrap, n_units))

    elif weight_type == "mammen":
        # Mammen's two-point distribution
        sqrt5 = np.sqrt(5)
        val1 = -(sqrt5 - 1) / 2
        val2 = (sqrt5 + 1) / 2
        p1 = (sqrt5 + 1) / (2 * sqrt5)
        return rng.choice([val1, val2], size=(n_bootstrap, n_units), p=[p1, 1 - p1])

    elif weight_type == "webb":
        # Webb's 6-point distribution, equal probabilities
        values = np.array([
            -np.sqrt(3 / 2), -1.0, -np.sqrt(1 / 2),
            np.sqrt(1 / 2), 1.0, np.sqrt(3 / 2)
        ])
        return rng.choice(values, size=(n_bootstrap, n_units))

    else:
        raise ValueError(
            f"weight_type must be 'rademacher', 'mammen', or 'webb', "
            f"got '{weight_type}'"
        )


# =============================================================================
# Bootstrap Results Container
# =============================================================================


@dataclass
class MultiplierBootstrapResults:
    """
    Results from multiplier bootstrap inference.

    Attributes
    ----------
    se : np.ndarray
        Bootstrap standard error per parameter (IQR-based).
    crit_val : float
        Sup-t critical value for a uniform confidence band at level
        1 - alpha. NaN if no parameter has a positive bootstrap SE.
    n_bootstrap : int
        Number of bootstrap iterations.
    weight_type : str
        Type of bootstrap weights used.
    alpha : float
        Significance level of the uniform band.
    bootstrap_distribution : np.ndarray
        Bootstrap draws of shape (n_bootstrap, n_params).
    """
    se: np.ndarray
    crit_val: float
    n_bootstrap: int
    weight_type: str
    alpha: float
    bootstrap_distribution: Optional[np.ndarray] = field(default=None, repr=False)


# =============================================================================
# Multiplier Bootstrap
# =============================================================================

# Interquartile range of the standard normal distribution
_NORMAL_IQR = float(stats.norm.ppf(0.75) - stats.norm.ppf(0.25))


def mboot(
    inf_func: np.ndarray,
    n_bootstrap: int = 1000,
    alpha: float = 0.05,
    weight_type: str = "rademacher",
    seed: Optional[Union[int, np.random.Generator]] = None,
) -> MultiplierBootstrapResults:
    """
    Multiplier bootstrap standard errors and uniform critical value.

    Each draw perturbs the influence function with independent
    per-observation weights and sums over observations. Standard errors use
    the interquartile range of the draws scaled by the normal IQR, and the
    critical value is the (1 - alpha) quantile of the per-draw maximum
    absolute t-statistic.

    Parameters
    ----------
    inf_func : np.ndarray
        Influence function matrix (n_obs, n_params) on the estimator scale,
        i.e. ``estimate - truth ~ inf_func.sum(axis=0)``.
    n_bootstrap : int, default 1000
        Number of bootstrap draws.
    alpha : float, default 0.05
        Significance level of the uniform band.
    weight_type : str, default "rademacher"
        Multiplier distribution: "rademacher", "mammen", or "webb".
    seed : int or np.random.Generator, optional
        Random seed for reproducibility.

    Returns
    -------
    MultiplierBootstrapResults
        Standard errors, critical value and bootstrap draws.

    Notes
    -----
    Parameters whose bootstrap SE is zero (or not finite) have no
    well-defined t-statistic and are left out of the sup-t maximum. If no
    parameter remains, ``crit_val`` is NaN and a warning is issued.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> res = mboot(rng.normal(size=(100, 3)) / 100, n_bootstrap=999, seed=1)
    >>> res.se.shape
    (3,)
    """
    inf_func = np.asarray(inf_func, dtype=float)
    if inf_func.ndim == 1:
        inf_func = inf_func.reshape(-1, 1)
    n_obs, n_params = inf_func.shape

    if n_bootstrap < 1:
        raise ValueError(f"n_bootstrap must be positive, got {n_bootstrap}")
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")

    if n_bootstrap < 50:
        warnings.warn(
            f"n_bootstrap={n_bootstrap} is low. Consider n_bootstrap >= 199 "
            "for reliable inference.",
            UserWarning,
            stacklevel=2,
        )

    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)

    weights = _generate_bootstrap_weights_batch(n_bootstrap, n_obs, weight_type, rng)
    # Shape: (n_bootstrap, n_params)
    boot_draws = weights @ inf_func

    q75, q25 = np.percentile(boot_draws, [75, 25], axis=0)
    se = (q75 - q25) / _NORMAL_IQR

    valid = np.isfinite(se) & (se > 0)
    if not np.any(valid):
        warnings.warn(
            "All bootstrap standard errors are zero or non-finite; "
            "the uniform critical value is undefined and set to NaN.",
            NumericalWarning,
            stacklevel=2,
        )
        crit_val = np.nan
    else:
        max_abs_t = np.max(np.abs(boot_draws[:, valid] / se[valid]), axis=1)
        crit_val = float(np.quantile(max_abs_t, 1 - alpha))

    return MultiplierBootstrapResults(
        se=se,
        crit_val=crit_val,
        n_bootstrap=n_bootstrap,
        weight_type=weight_type,
        alpha=alpha,
        bootstrap_distribution=boot_draws,
    )

"""
Utility functions for inference on QLD imputation estimates.
"""

from typing import Optional, Tuple

import numpy as np
from scipy import stats


def compute_confidence_interval(
    estimate: float,
    se: float,
    alpha: float = 0.05,
    critical_value: Optional[float] = None,
) -> Tuple[float, float]:
    """
    Compute confidence interval for an estimate.

    Parameters
    ----------
    estimate : float
        Point estimate.
    se : float
        Standard error.
    alpha : float
        Significance level (default 0.05 for 95% CI).
    critical_value : float, optional
        Critical value to use instead of the normal quantile, e.g. the
        sup-t critical value of a uniform confidence band.

    Returns
    -------
    tuple
        (lower_bound, upper_bound) of confidence interval.
    """
    if critical_value is None:
        critical_value = stats.norm.ppf(1 - alpha / 2)

    lower = estimate - critical_value * se
    upper = estimate + critical_value * se

    return (lower, upper)


def compute_p_value(t_stat: float, two_sided: bool = True) -> float:
    """
    Compute p-value for a t-statistic using the normal distribution.

    Parameters
    ----------
    t_stat : float
        T-statistic.
    two_sided : bool
        Whether to compute two-sided p-value (default True).

    Returns
    -------
    float
        P-value.
    """
    p_value = stats.norm.sf(np.abs(t_stat))

    if two_sided:
        p_value *= 2

    return p_value


def safe_t_stat(estimate, se):
    """
    Return estimate / se, or NaN where the SE is undefined or zero.

    Accepts scalars or arrays.
    """
    estimate = np.asarray(estimate, dtype=float)
    se = np.asarray(se, dtype=float)
    valid = np.isfinite(se) & (se > 0)
    with np.errstate(divide='ignore', invalid='ignore'):
        t_stat = np.where(valid, estimate / se, np.nan)
    if t_stat.ndim == 0:
        return float(t_stat)
    return t_stat

"""
Within transformation of the outcome panel.

Removes a common time trend estimated from never-treated units and
unit-level fixed effects estimated from pre-treatment periods only, so that
post-treatment outcomes never contaminate the unit means.
"""

import numpy as np


def within_transform(
    ymat: np.ndarray,
    idx_control: np.ndarray,
    n_pre: int,
) -> np.ndarray:
    """
    Apply the within transformation to a (periods x units) outcome matrix.

    The steps are applied in order:

    1. Subtract the never-treated cross-sectional mean of each period.
    2. Subtract each unit's mean over the first ``n_pre`` periods.
    3. Add back the never-treated mean over the first ``n_pre`` periods.

    Parameters
    ----------
    ymat : np.ndarray
        Outcome matrix of shape (n_periods, n_units).
    idx_control : np.ndarray
        Column indices of never-treated units.
    n_pre : int
        Number of periods before any unit is treated.

    Returns
    -------
    np.ndarray
        Transformed matrix with the same shape. ``ymat`` is not modified.

    Examples
    --------
    >>> ymat = np.array([[1.0, 2.0], [3.0, 5.0], [4.0, 9.0]])
    >>> within_transform(ymat, np.array([0]), n_pre=2)[:, 0]
    array([0., 0., 0.])
    """
    ytilde = np.array(ymat, dtype=float, copy=True)
    idx_control = np.asarray(idx_control, dtype=int)

    ytilde -= ytilde[:, idx_control].mean(axis=1, keepdims=True)
    ytilde -= ytilde[:n_pre, :].mean(axis=0, keepdims=True)
    ytilde += ytilde[:n_pre, idx_control].mean()

    return ytilde

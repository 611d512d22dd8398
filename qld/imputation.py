"""
Counterfactual imputation and group-time treatment effects.

Given fitted factor loadings, each unit adopting treatment after ``g``
periods has its loadings estimated from its own pre-adoption outcomes,

    lambda_i = argmin || y_i[:g] - F[:g] lambda ||,

and its untreated counterfactual is imputed for every period as
``F @ lambda_i``. Realized-minus-imputed gaps are averaged within
group-time cells.

Group-time cells are laid out group by group (groups in ascending order of
adoption) and, within a group, period by period: cell ``l * T + t`` holds
group ``l`` at period ``t``.

``g_shift`` holds, per unit, the number of periods observed before adoption,
with a non-finite value (``np.inf``) for never-treated units. Never-treated
units are always identified with ``np.isfinite`` and never enter any
group-time cell.
"""

from typing import Iterator, Tuple

import numpy as np

from qld.gmm import build_factor_matrix
from qld.linalg import solve_min_norm


def treated_groups(g_shift: np.ndarray) -> np.ndarray:
    """Sorted unique adoption offsets of treated units."""
    g_shift = np.asarray(g_shift, dtype=float)
    return np.unique(g_shift[np.isfinite(g_shift)])


def _iter_group_imputations(
    theta: np.ndarray,
    p: int,
    ymat: np.ndarray,
    g_shift: np.ndarray,
) -> Iterator[Tuple[int, np.ndarray, np.ndarray]]:
    """
    Yield ``(l, unit_indices, y0_hat)`` for each treated group.

    ``y0_hat`` has shape (T, n_units_in_group).
    """
    n_periods = ymat.shape[0]
    g_shift = np.asarray(g_shift, dtype=float)
    factors = build_factor_matrix(theta, p, n_periods)

    for l, g in enumerate(treated_groups(g_shift)):
        idx = np.flatnonzero(g_shift == g)
        n_pre_g = int(g)
        loadings = solve_min_norm(factors[:n_pre_g], ymat[:n_pre_g, idx])
        yield l, idx, factors @ loadings


def estimate_tau_gt(
    theta: np.ndarray,
    p: int,
    ymat: np.ndarray,
    g_shift: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Estimate group-time average treatment effects.

    Parameters
    ----------
    theta : np.ndarray
        Free factor loadings, length (T - p) * p.
    p : int
        Number of factors.
    ymat : np.ndarray
        Outcome matrix (n_periods, n_units).
    g_shift : np.ndarray
        Adoption offset per unit (np.inf for never-treated units).

    Returns
    -------
    tau_gt : np.ndarray
        Group-time effects, length T * n_groups.
    n_tau_gt : np.ndarray
        Number of units contributing to each cell.
    """
    n_periods = ymat.shape[0]
    n_groups = len(treated_groups(g_shift))
    tau_sum = np.zeros(n_periods * n_groups)
    n_tau_gt = np.zeros(n_periods * n_groups)

    for l, idx, y0_hat in _iter_group_imputations(theta, p, ymat, g_shift):
        cells = slice(l * n_periods, (l + 1) * n_periods)
        tau_sum[cells] = (ymat[:, idx] - y0_hat).sum(axis=1)
        n_tau_gt[cells] = len(idx)

    return tau_sum / n_tau_gt, n_tau_gt


def impute_y0(
    theta: np.ndarray,
    p: int,
    ymat: np.ndarray,
    g_shift: np.ndarray,
) -> np.ndarray:
    """
    Impute untreated counterfactual outcomes for treated units.

    Returns
    -------
    np.ndarray
        Matrix (n_periods, n_units) of imputed outcomes. Columns of
        never-treated units are zero.
    """
    y0_hat = np.zeros(ymat.shape)
    for _, idx, y0_group in _iter_group_imputations(theta, p, ymat, g_shift):
        y0_hat[:, idx] = y0_group
    return y0_hat


def ms_tau_gt(
    theta: np.ndarray,
    tau_gt: np.ndarray,
    p: int,
    ymat: np.ndarray,
    g_shift: np.ndarray,
) -> np.ndarray:
    """
    Per-unit moment contributions of the group-time effects.

    For unit i in group l, the contribution to cell (l, t) is the
    realized-minus-imputed gap minus ``tau_gt`` for that cell. Contributions
    are divided by the cell's assignment probability ``n_cell / N`` so that
    their sample mean is an unconditional moment.

    Parameters
    ----------
    theta : np.ndarray
        Free factor loadings. Any real value is allowed, so the function can
        be differentiated numerically with respect to theta.
    tau_gt : np.ndarray
        Group-time effects at which to evaluate the moments.
    p, ymat, g_shift
        See :func:`estimate_tau_gt`.

    Returns
    -------
    np.ndarray
        Matrix (n_units, len(tau_gt)); rows of units outside a cell are zero.
    """
    n_periods, n_units = ymat.shape
    tau_gt = np.asarray(tau_gt, dtype=float)
    ms = np.zeros((n_units, len(tau_gt)))
    n_tau_gt = np.zeros(len(tau_gt))

    for l, idx, y0_hat in _iter_group_imputations(theta, p, ymat, g_shift):
        cells = slice(l * n_periods, (l + 1) * n_periods)
        y_diff = ymat[:, idx] - y0_hat
        ms[idx, cells] = (y_diff - tau_gt[cells, np.newaxis]).T
        n_tau_gt[cells] = len(idx)

    ms /= (n_tau_gt / n_units)[np.newaxis, :]
    return ms

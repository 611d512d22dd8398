"""
Two-step GMM estimation of the quasi-long-differencing factor model.

The factor matrix is normalised as ``F = [Theta; -I_p]``, where ``Theta`` is
the (T - p) x p block of free loadings. The matrix ``H' = [I_{T-p}, Theta]``
annihilates ``F``, so for a unit following ``y_i = F lambda_i + u_i`` the
quasi-long difference

    r_i(theta) = y_i[:T-p] + Theta @ y_i[T-p:]

does not depend on the unit's loadings. Interacting ``r_i`` with
time-invariant instruments ``w_i`` that are correlated with the loadings but
not with the idiosyncratic errors gives the moment conditions
``E[r_i(theta) (x) w_i] = 0``, estimated on never-treated units only.

References
----------
Ahn, S. C., Lee, Y. H., & Schmidt, P. (2013). Panel data models with multiple
time-varying individual effects. Journal of Econometrics, 174(1), 1-14.

Brown, N., & Butts, K. Dynamic treatment effect estimation with interactive
fixed effects and short panels. Working Paper.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy import optimize
from scipy import stats

from qld.exceptions import ConvergenceError, ConvergenceWarning, QLDWarning
from qld.linalg import safe_inverse

logger = logging.getLogger(__name__)

__all__ = [
    "FactorModelFit",
    "build_factor_matrix",
    "qld_moments",
    "moment_jacobian",
    "fit_factor_model",
    "select_n_factors",
]


@dataclass
class FactorModelFit:
    """
    Results of the two-step GMM factor model estimation.

    Attributes
    ----------
    n_factors : int
        Number of factors p.
    theta : np.ndarray
        Free factor loadings, length (T - p) * p, row-major over the
        (T - p) x p block.
    factor_matrix : np.ndarray
        Full factor matrix F = [Theta; -I_p] of shape (T, p).
    weight_matrix : np.ndarray
        Efficient weighting matrix used in step two.
    moment_jacobian : np.ndarray
        Derivative of the mean moment vector with respect to theta (Mbar).
    j_stat : float
        Overidentification (Hansen-Sargan) statistic.
    j_df : int
        Degrees of freedom of the J statistic reference distribution.
    j_p_value : float
        P-value of the J statistic. Exactly 1 when the model is
        just-identified (p equals the number of instruments).
    n_control : int
        Number of never-treated units used in estimation.
    converged : bool
        Whether both optimization steps reported convergence.
    n_iter : int
        Total optimizer iterations over both steps.
    weight_matrix_singular : bool
        Whether the moment covariance was singular and pseudo-inverted.
    """
    n_factors: int
    theta: np.ndarray
    factor_matrix: np.ndarray
    weight_matrix: np.ndarray = field(repr=False)
    moment_jacobian: np.ndarray = field(repr=False)
    j_stat: float
    j_df: int
    j_p_value: float
    n_control: int
    converged: bool = True
    n_iter: int = 0
    weight_matrix_singular: bool = False


# =============================================================================
# Moment Conditions
# =============================================================================


def build_factor_matrix(theta: np.ndarray, p: int, n_periods: int) -> np.ndarray:
    """
    Build the (n_periods x p) factor matrix F = [Theta; -I_p].

    Fixing the last p rows to -I_p identifies the factors up to rotation.
    """
    theta = np.asarray(theta)
    loadings = theta.reshape(n_periods - p, p)
    return np.vstack([loadings, -np.eye(p, dtype=loadings.dtype)])


def _qld_residuals(theta: np.ndarray, p: int, ymat: np.ndarray) -> np.ndarray:
    """Quasi-long differences H(theta)' y_i, shape (T - p, n_units)."""
    n_periods = ymat.shape[0]
    loadings = np.asarray(theta).reshape(n_periods - p, p)
    return ymat[:n_periods - p, :] + loadings @ ymat[n_periods - p:, :]


def qld_moments(
    theta: np.ndarray,
    p: int,
    ymat: np.ndarray,
    instruments: np.ndarray,
) -> np.ndarray:
    """
    Per-unit moment contributions r_i(theta) (x) w_i.

    Parameters
    ----------
    theta : np.ndarray
        Free factor loadings, length (T - p) * p.
    p : int
        Number of factors.
    ymat : np.ndarray
        Outcome matrix (n_periods, n_units) of the units entering the moments.
    instruments : np.ndarray
        Instrument matrix (n_units, n_instruments), same unit order.

    Returns
    -------
    np.ndarray
        Moment matrix of shape (n_units, (T - p) * n_instruments); entry
        ``t * L + l`` is ``r_it * w_il``.
    """
    resid = _qld_residuals(theta, p, ymat)
    n_units = ymat.shape[1]
    return np.einsum('tn,nl->ntl', resid, instruments).reshape(n_units, -1)


def moment_jacobian(p: int, ymat: np.ndarray, instruments: np.ndarray) -> np.ndarray:
    """
    Jacobian of the mean moment vector with respect to theta (Mbar).

    The moments are linear in theta, so the jacobian does not depend on the
    evaluation point: ``Mbar = I_{T-p} (x) C`` with
    ``C[l, k] = mean_i w_il * y_i,T-p+k``.

    Returns
    -------
    np.ndarray
        Matrix of shape ((T - p) * L, (T - p) * p).
    """
    n_periods, n_units = ymat.shape
    cross = instruments.T @ ymat[n_periods - p:, :].T / n_units
    return np.kron(np.eye(n_periods - p), cross)


# =============================================================================
# Estimation
# =============================================================================


def _minimize_gmm_objective(
    theta_init: np.ndarray,
    weight: np.ndarray,
    p: int,
    ymat: np.ndarray,
    instruments: np.ndarray,
    mbar_jac: np.ndarray,
    max_iter: int,
    tol: float,
) -> Tuple[optimize.OptimizeResult, bool]:
    """
    Minimize mbar(theta)' W mbar(theta) with BFGS and analytic gradient.

    The gradient tolerance is relative to the gradient at theta = 0, so the
    stopping rule does not depend on the scale of the outcome. A stop on
    precision loss counts as converged when the final gradient is within
    ``sqrt(tol)`` of that reference.

    Returns
    -------
    result : OptimizeResult
        The scipy result.
    converged : bool
        Whether the first-order condition holds at ``result.x``.
    """

    def objective(theta: np.ndarray) -> float:
        mbar = qld_moments(theta, p, ymat, instruments).mean(axis=0)
        return float(mbar @ weight @ mbar)

    def gradient(theta: np.ndarray) -> np.ndarray:
        mbar = qld_moments(theta, p, ymat, instruments).mean(axis=0)
        return 2.0 * mbar_jac.T @ (weight @ mbar)

    grad_init = gradient(np.zeros_like(theta_init))
    grad_scale = float(np.max(np.abs(grad_init))) or 1.0

    result = optimize.minimize(
        objective,
        theta_init,
        method='BFGS',
        jac=gradient,
        options={'maxiter': max_iter, 'gtol': tol * grad_scale}
    )

    converged = bool(result.success)
    # status 2: line search could not make progress in floating point
    if not converged and result.status == 2:
        final_grad = float(np.max(np.abs(gradient(result.x))))
        converged = final_grad <= np.sqrt(tol) * grad_scale
        logger.debug(
            "BFGS stopped on precision loss with relative gradient %.3e "
            "(accepted: %s)", final_grad / grad_scale, converged,
        )
    return result, converged


def _handle_nonconvergence(
    result: optimize.OptimizeResult,
    step: int,
    p: int,
    convergence_action: str,
) -> None:
    msg = (
        f"GMM step {step} for n_factors={p} did not converge: "
        f"{result.message}"
    )
    if convergence_action == "error":
        raise ConvergenceError(msg)
    elif convergence_action == "warn":
        warnings.warn(msg, ConvergenceWarning, stacklevel=4)


def fit_factor_model(
    p: int,
    ymat: np.ndarray,
    instruments: np.ndarray,
    idx_control: np.ndarray,
    convergence_action: str = "warn",
    max_iter: int = 1000,
    tol: float = 1e-6,
) -> FactorModelFit:
    """
    Two-step GMM estimation of the factor loadings for a known p.

    Parameters
    ----------
    p : int
        Number of factors (0 <= p <= number of instruments).
    ymat : np.ndarray
        Outcome matrix (n_periods, n_units) for all units.
    instruments : np.ndarray
        Instrument matrix (n_units, n_instruments) for all units.
    idx_control : np.ndarray
        Column indices of never-treated units. Only these units enter
        estimation.
    convergence_action : str, default "warn"
        What to do if the optimizer does not report convergence:
        - "warn": Issue a ConvergenceWarning and keep the last iterate
        - "error": Raise ConvergenceError
        - "silent": Keep the last iterate without warning
    max_iter : int, default 1000
        Maximum BFGS iterations per step.
    tol : float, default 1e-6
        Gradient tolerance for BFGS, relative to the gradient at theta = 0.

    Returns
    -------
    FactorModelFit
        Fitted loadings, efficient weighting matrix, moment jacobian and
        the overidentification test.
    """
    if convergence_action not in ["warn", "error", "silent"]:
        raise ValueError(
            f"convergence_action must be 'warn', 'error', or 'silent', "
            f"got '{convergence_action}'"
        )

    idx_control = np.asarray(idx_control, dtype=int)
    instruments = np.asarray(instruments, dtype=float)
    if instruments.ndim == 1:
        instruments = instruments.reshape(-1, 1)

    n_periods = ymat.shape[0]
    n_instruments = instruments.shape[1]
    n_control = len(idx_control)
    n_params = (n_periods - p) * p
    n_moments = (n_periods - p) * n_instruments

    ymat_c = np.asarray(ymat, dtype=float)[:, idx_control]
    w_c = instruments[idx_control]

    mbar_jac = moment_jacobian(p, ymat_c, w_c)

    converged = True
    n_iter = 0

    # Step 1: identity weighting
    theta_hat = np.zeros(n_params)
    if n_params > 0:
        res, step_converged = _minimize_gmm_objective(
            theta_hat, np.eye(n_moments), p, ymat_c, w_c, mbar_jac, max_iter, tol
        )
        if not step_converged:
            converged = False
            _handle_nonconvergence(res, 1, p, convergence_action)
        theta_hat = res.x
        n_iter += res.nit

    # Step 2: efficient weighting from the step-1 moment covariance
    moments = qld_moments(theta_hat, p, ymat_c, w_c)
    centered = moments - moments.mean(axis=0)
    moment_cov = centered.T @ centered / n_control
    weight_opt, weight_singular = safe_inverse(moment_cov)
    if weight_singular:
        logger.debug(
            "Moment covariance is singular for n_factors=%d "
            "(%d moments, %d control units); using pseudo-inverse.",
            p, n_moments, n_control,
        )

    if n_params > 0:
        res, step_converged = _minimize_gmm_objective(
            theta_hat, weight_opt, p, ymat_c, w_c, mbar_jac, max_iter, tol
        )
        if not step_converged:
            converged = False
            _handle_nonconvergence(res, 2, p, convergence_action)
        theta_hat = res.x
        n_iter += res.nit

    # Overidentification test
    mbar = qld_moments(theta_hat, p, ymat_c, w_c).mean(axis=0)
    j_stat = float(n_control * (mbar @ weight_opt @ mbar))
    j_df = n_instruments - p
    if j_df > 0:
        j_p_value = float(stats.chi2.sf(j_stat, j_df))
    else:
        # Just-identified: no overidentifying restrictions to test
        j_p_value = 1.0

    logger.debug(
        "GMM fit n_factors=%d: J=%.4f, df=%d, p-value=%.4f, iterations=%d",
        p, j_stat, j_df, j_p_value, n_iter,
    )

    return FactorModelFit(
        n_factors=p,
        theta=theta_hat,
        factor_matrix=build_factor_matrix(theta_hat, p, n_periods),
        weight_matrix=weight_opt,
        moment_jacobian=mbar_jac,
        j_stat=j_stat,
        j_df=j_df,
        j_p_value=j_p_value,
        n_control=n_control,
        converged=converged,
        n_iter=n_iter,
        weight_matrix_singular=weight_singular,
    )


def select_n_factors(
    ymat: np.ndarray,
    instruments: np.ndarray,
    idx_control: np.ndarray,
    max_factors: int,
    threshold: float,
    **fit_kwargs,
) -> FactorModelFit:
    """
    Select the number of factors with the overidentification test.

    Candidates p = 0, 1, ..., max_factors are fitted in order and the search
    stops at the first p whose J-test p-value is at least ``threshold``.

    Parameters
    ----------
    ymat, instruments, idx_control
        See :func:`fit_factor_model`.
    max_factors : int
        Largest admissible number of factors.
    threshold : float
        Minimum J-test p-value accepted. Values used historically for this
        rule are 0.05 and 0.10.
    **fit_kwargs
        Passed to :func:`fit_factor_model`.

    Returns
    -------
    FactorModelFit
        Fit for the selected number of factors. If no candidate passes,
        the fit for ``max_factors`` is returned with a warning.
    """
    if max_factors < 0:
        raise ValueError(f"max_factors must be >= 0, got {max_factors}")
    if not 0 <= threshold <= 1:
        raise ValueError(f"threshold must be in [0, 1], got {threshold}")

    fit: Optional[FactorModelFit] = None
    for p in range(max_factors + 1):
        logger.debug("Trying n_factors=%d", p)
        fit = fit_factor_model(p, ymat, instruments, idx_control, **fit_kwargs)
        if fit.j_p_value >= threshold:
            logger.debug("Selected n_factors=%d (J p-value=%.4f)", p, fit.j_p_value)
            return fit

    warnings.warn(
        f"No number of factors in [0, {max_factors}] passed the "
        f"overidentification test at threshold {threshold}. "
        f"Using n_factors={max_factors}.",
        QLDWarning,
        stacklevel=2,
    )
    return fit

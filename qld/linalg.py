"""
Linear algebra helpers for QLD imputation.

This module collects the numerical building blocks shared by the GMM and
imputation stages:

1. Rank detection via pivoted QR decomposition (R's ``qr()`` tolerance)
2. Inversion with a pseudo-inverse fallback for singular matrices
3. Minimum-norm least squares with scipy's SVD-based ``gelsd`` driver
4. Central finite-difference jacobians for the cross-stage derivative

Singular Matrices
-----------------
Both estimation stages can produce singular Gram matrices legitimately:
the moment covariance is rank-deficient whenever there are fewer control
units than moment conditions, and the projection onto the pre-adoption
factor rows loses rank for degenerate loadings. In those cases the
Moore-Penrose pseudo-inverse is used instead of failing.
"""

from typing import Callable, Optional, Tuple

import numpy as np
from scipy.linalg import lstsq as scipy_lstsq
from scipy.linalg import qr


# =============================================================================
# Rank Deficiency Detection
# =============================================================================


def _detect_rank_deficiency(
    X: np.ndarray,
    rcond: Optional[float] = None,
) -> Tuple[int, np.ndarray, np.ndarray]:
    """
    Detect rank deficiency using pivoted QR decomposition.

    Parameters
    ----------
    X : ndarray of shape (n, k)
        Matrix to inspect.
    rcond : float, optional
        Relative condition number threshold for determining rank.
        Diagonal elements of R smaller than rcond * max(|R_ii|) are treated
        as zero. If None, uses 1e-07 to match R's qr() default tolerance.

    Returns
    -------
    rank : int
        Numerical rank of the matrix.
    dropped_cols : ndarray of int
        Indices of columns that are linearly dependent.
        Empty if matrix is full rank.
    pivot : ndarray of int
        Column permutation from QR decomposition.
    """
    n, k = X.shape
    if n == 0 or k == 0:
        return 0, np.arange(k), np.arange(k)

    # X @ P = Q @ R, with |R[i,i]| decreasing after pivoting
    Q, R, pivot = qr(X, mode='economic', pivoting=True)

    if rcond is None:
        rcond = 1e-07

    r_diag = np.abs(np.diag(R))

    if r_diag[0] == 0:
        rank = 0
    else:
        tol = rcond * r_diag[0]
        rank = int(np.sum(r_diag > tol))

    if rank < k:
        dropped_cols = np.sort(pivot[rank:])
    else:
        dropped_cols = np.array([], dtype=int)

    return rank, dropped_cols, pivot


# =============================================================================
# Inversion and Least Squares
# =============================================================================


def safe_inverse(
    A: np.ndarray,
    rcond: Optional[float] = None,
) -> Tuple[np.ndarray, bool]:
    """
    Invert a square matrix, falling back to the pseudo-inverse if singular.

    Parameters
    ----------
    A : ndarray of shape (k, k)
        Square matrix to invert.
    rcond : float, optional
        Rank tolerance passed to the QR rank check.

    Returns
    -------
    A_inv : ndarray of shape (k, k)
        Inverse (or Moore-Penrose pseudo-inverse) of A.
    is_singular : bool
        True if the pseudo-inverse was used.
    """
    A = np.asarray(A, dtype=float)
    k = A.shape[0]
    if k == 0:
        return np.zeros((0, 0)), False

    rank, _, _ = _detect_rank_deficiency(A, rcond=rcond)
    if rank < k:
        return np.linalg.pinv(A), True

    try:
        return np.linalg.inv(A), False
    except np.linalg.LinAlgError:
        return np.linalg.pinv(A), True


def solve_min_norm(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """
    Minimum-norm least squares solution of ``A X = B``.

    Uses scipy's SVD-based ``gelsd`` driver, so the solution equals
    ``pinv(A) @ B`` and is well defined for rank-deficient ``A``.

    Parameters
    ----------
    A : ndarray of shape (n, k)
        Coefficient matrix.
    B : ndarray of shape (n,) or (n, m)
        Right-hand side(s).

    Returns
    -------
    ndarray of shape (k,) or (k, m)
        Least squares solution.
    """
    A = np.asarray(A)
    B = np.asarray(B)
    if A.shape[1] == 0:
        return np.zeros((0,) + B.shape[1:], dtype=np.result_type(A, B))
    coef, _, _, _ = scipy_lstsq(A, B, lapack_driver='gelsd', check_finite=False)
    return coef


# =============================================================================
# Numerical Differentiation
# =============================================================================


def numerical_jacobian(
    func: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    step: Optional[float] = None,
) -> np.ndarray:
    """
    Central finite-difference jacobian of a vector-valued function.

    Parameters
    ----------
    func : callable
        Function mapping a 1-D array of length n to a 1-D array of length m.
    x : ndarray of shape (n,)
        Point at which to differentiate.
    step : float, optional
        Relative step size. Defaults to ``eps ** (1/3)`` (about 6e-6), which
        balances truncation error O(h^2) against rounding error O(eps / h)
        for central differences. The absolute step for coordinate j is
        ``step * max(1, |x_j|)``.

    Returns
    -------
    ndarray of shape (m, n)
        Jacobian matrix, ``J[i, j] = d func_i / d x_j``.
    """
    x = np.asarray(x, dtype=float)
    n = x.size
    f0 = np.asarray(func(x), dtype=float).ravel()
    jac = np.zeros((f0.size, n))
    if n == 0:
        return jac

    if step is None:
        step = np.finfo(float).eps ** (1 / 3)

    for j in range(n):
        h = step * max(1.0, abs(x[j]))
        x_plus = x.copy()
        x_minus = x.copy()
        x_plus[j] += h
        x_minus[j] -= h
        f_plus = np.asarray(func(x_plus), dtype=float).ravel()
        f_minus = np.asarray(func(x_minus), dtype=float).ravel()
        jac[:, j] = (f_plus - f_minus) / (x_plus[j] - x_minus[j])

    return jac

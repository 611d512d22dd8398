"""
Aggregation of group-time effects.

Each aggregation target is expressed as a matrix ``A`` mapping the vector of
group-time effects to the target, so point estimates and influence functions
are aggregated the same way: ``estimate = A @ tau_gt`` and
``psi = inf_func @ A.T``. Rows are weighted by group-time cell counts and
normalised to sum to one.
"""

from typing import Optional, Tuple

import numpy as np

EFFECT_TYPES = ("group_time", "event_study", "overall")


def normalize_effect_type(effect_type: str) -> str:
    """Map accepted spellings (``"event-study"``) to canonical names."""
    canonical = str(effect_type).replace("-", "_")
    if canonical not in EFFECT_TYPES:
        raise ValueError(
            f"effect_type must be 'group_time', 'event_study', or 'overall', "
            f"got '{effect_type}'"
        )
    return canonical


def _normalize_rows(mat: np.ndarray) -> np.ndarray:
    row_sums = mat.sum(axis=1, keepdims=True)
    if np.any(row_sums <= 0):
        raise ValueError("Aggregation matrix has a row without positive weight.")
    return mat / row_sums


def group_time_aggregation_matrix(n_cells: int) -> np.ndarray:
    """Identity aggregation (group-time effects are reported as is)."""
    return np.eye(n_cells)


def event_study_aggregation_matrix(
    gt_index: np.ndarray,
    n_tau_gt: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Aggregate group-time effects by relative time since adoption.

    Parameters
    ----------
    gt_index : np.ndarray
        Array (n_cells, 2) of (group, time) pairs in calendar units.
    n_tau_gt : np.ndarray
        Units contributing to each cell.

    Returns
    -------
    mat : np.ndarray
        Aggregation matrix (n_rel_times, n_cells).
    rel_times : np.ndarray
        Sorted relative times ``t - g`` labelling the rows.
    """
    gt_index = np.asarray(gt_index)
    rel = gt_index[:, 1] - gt_index[:, 0]
    rel_times = np.unique(rel)

    mat = np.zeros((len(rel_times), len(rel)))
    rows = np.searchsorted(rel_times, rel)
    mat[rows, np.arange(len(rel))] = n_tau_gt

    return _normalize_rows(mat), rel_times


def overall_aggregation_matrix(
    gt_index: np.ndarray,
    n_tau_gt: np.ndarray,
) -> np.ndarray:
    """
    Aggregate post-treatment group-time effects (t >= g) into one effect.

    Returns
    -------
    np.ndarray
        Aggregation matrix of shape (1, n_cells).
    """
    gt_index = np.asarray(gt_index)
    post = gt_index[:, 1] >= gt_index[:, 0]
    if not np.any(post):
        raise ValueError(
            "No post-treatment group-time cells available for the overall "
            "effect. Check that treated groups adopt within the sample."
        )
    mat = np.where(post, np.asarray(n_tau_gt, dtype=float), 0.0)[np.newaxis, :]
    return _normalize_rows(mat)


def aggregation_matrix(
    effect_type: str,
    gt_index: np.ndarray,
    n_tau_gt: np.ndarray,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Build the aggregation matrix for the requested effect type.

    Returns
    -------
    mat : np.ndarray
        Aggregation matrix (n_targets, n_cells).
    rel_times : np.ndarray or None
        Relative-time labels for ``"event_study"``, otherwise None.
    """
    effect_type = normalize_effect_type(effect_type)
    if effect_type == "group_time":
        return group_time_aggregation_matrix(len(n_tau_gt)), None
    elif effect_type == "event_study":
        return event_study_aggregation_matrix(gt_index, n_tau_gt)
    else:
        return overall_aggregation_matrix(gt_index, n_tau_gt), None

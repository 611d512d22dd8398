"""
Panel preparation for QLD imputation.

Validates a long-format panel and reshapes it into the arrays consumed by
the estimation stages: a (periods x units) outcome matrix, per-unit
adoption offsets and the unit-level instrument matrix.

Never-treated units are encoded with a non-finite group value (``np.inf``,
or a missing value). :func:`is_never_treated` is the only place where that
encoding is interpreted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Union

import numpy as np
import pandas as pd


def is_never_treated(group_values: Union[np.ndarray, pd.Series]) -> np.ndarray:
    """
    Boolean mask of never-treated units.

    Parameters
    ----------
    group_values : array-like
        Adoption period per unit or observation. Never-treated units carry
        a non-finite value (np.inf or NaN).

    Returns
    -------
    np.ndarray
        True where the unit is never treated.
    """
    return ~np.isfinite(np.asarray(group_values, dtype=float))


@dataclass
class PanelData:
    """
    Balanced panel in the layout used by the estimation stages.

    Attributes
    ----------
    ymat : np.ndarray
        Outcome matrix (n_periods, n_units); column i is unit ``units[i]``.
    units : np.ndarray
        Unit identifiers in column order.
    times : np.ndarray
        Sorted time periods (row order of ``ymat``).
    group_values : np.ndarray
        Adoption period per unit in calendar units (np.inf if never treated).
    never_treated : np.ndarray
        Boolean mask of never-treated units.
    g_shift : np.ndarray
        Number of periods observed before adoption (np.inf if never treated).
    instruments : np.ndarray
        Instrument matrix (n_units, n_instruments) measured at the first period.
    instrument_names : list of str
        Instrument column names.
    n_pre : int
        Number of periods before any unit is treated.
    groups : np.ndarray
        Sorted treated adoption periods.
    gt_index : np.ndarray
        Array (n_groups * n_periods, 2) of (group, time) cell labels.
    n_tau_gt : np.ndarray
        Number of units in each group-time cell.
    """
    ymat: np.ndarray = field(repr=False)
    units: np.ndarray = field(repr=False)
    times: np.ndarray
    group_values: np.ndarray = field(repr=False)
    never_treated: np.ndarray = field(repr=False)
    g_shift: np.ndarray = field(repr=False)
    instruments: np.ndarray = field(repr=False)
    instrument_names: List[str]
    n_pre: int
    groups: np.ndarray
    gt_index: np.ndarray = field(repr=False)
    n_tau_gt: np.ndarray = field(repr=False)

    @property
    def n_periods(self) -> int:
        return self.ymat.shape[0]

    @property
    def n_units(self) -> int:
        return self.ymat.shape[1]

    @property
    def n_instruments(self) -> int:
        return self.instruments.shape[1]

    @property
    def idx_control(self) -> np.ndarray:
        return np.flatnonzero(self.never_treated)

    @property
    def n_control(self) -> int:
        return int(np.sum(self.never_treated))

    @property
    def min_g_shift(self) -> int:
        return int(np.min(self.g_shift[~self.never_treated]))


def validate_qld_data(
    data: pd.DataFrame,
    outcome: str,
    unit: str,
    time: str,
    group: str,
    instruments: Sequence[str],
    raise_on_error: bool = True,
) -> Dict[str, Any]:
    """
    Validate that data is properly formatted for QLD imputation.

    Parameters
    ----------
    data : pd.DataFrame
        Long-format panel data.
    outcome : str
        Name of outcome variable column.
    unit : str
        Name of unit identifier column.
    time : str
        Name of time period column.
    group : str
        Name of adoption period column (np.inf for never-treated units).
    instruments : list of str
        Names of instrument columns.
    raise_on_error : bool, default=True
        If True, raises ValueError on validation failures.
        If False, returns validation results without raising.

    Returns
    -------
    dict
        Validation results with keys:
        - valid: bool indicating if data passed all checks
        - errors: list of error messages
        - summary: dict with data summary statistics

    Examples
    --------
    >>> df = pd.DataFrame({
    ...     'id': [1, 1, 2, 2], 't': [1, 2, 1, 2], 'y': [0.0, 1.0, 2.0, 3.0],
    ...     'g': [2, 2, np.inf, np.inf], 'w': [0.5, 0.5, 1.5, 1.5],
    ... })
    >>> validate_qld_data(df, 'y', 'id', 't', 'g', ['w'])['valid']
    True
    """
    errors = []

    if isinstance(instruments, str):
        instruments = [instruments]
    instruments = list(instruments)

    required_cols = [outcome, unit, time, group] + instruments
    for col in required_cols:
        if col not in data.columns:
            errors.append(f"Required column '{col}' not found in DataFrame.")

    if errors:
        if raise_on_error:
            raise ValueError("\n".join(errors))
        return {"valid": False, "errors": errors, "summary": {}}

    if len(instruments) == 0:
        errors.append("At least one instrument column is required.")

    for col in [outcome, time, group] + instruments:
        if not pd.api.types.is_numeric_dtype(data[col]):
            errors.append(
                f"Column '{col}' must be numeric. Got type: {data[col].dtype}"
            )

    # Missing group values encode never-treated units and are allowed
    for col in [outcome, unit, time] + instruments:
        n_missing = data[col].isna().sum()
        if n_missing > 0:
            errors.append(
                f"Column '{col}' has {n_missing} missing values. "
                "Please handle missing data before fitting."
            )

    summary: Dict[str, Any] = {}
    if not errors:
        n_dup = int(data.duplicated(subset=[unit, time]).sum())
        if n_dup > 0:
            errors.append(
                f"Found {n_dup} duplicate ({unit}, {time}) observations."
            )

        group_filled = data[group].astype(float).fillna(np.inf)
        group_var = group_filled.groupby(data[unit]).nunique()
        n_varying = int((group_var > 1).sum())
        if n_varying > 0:
            errors.append(
                f"Column '{group}' varies within {n_varying} unit(s). "
                "The adoption period must be constant within units."
            )

        time_vals = set(data[time].unique())
        treated_vals = group_filled[np.isfinite(group_filled)].unique()
        outside = sorted(g for g in treated_vals if g not in time_vals)
        if outside:
            errors.append(
                f"Adoption periods {outside} in '{group}' are not observed "
                f"periods of '{time}'."
            )

        obs_per_unit = data.groupby(unit)[time].count()
        n_periods = data[time].nunique()
        if obs_per_unit.min() != obs_per_unit.max() or obs_per_unit.max() != n_periods:
            errors.append(
                f"Panel is not balanced: units have between "
                f"{obs_per_unit.min()} and {obs_per_unit.max()} observations "
                f"over {n_periods} periods."
            )

        unit_groups = group_filled.groupby(data[unit]).first()
        never = is_never_treated(unit_groups.values)
        summary = {
            "n_obs": len(data),
            "n_units": int(len(unit_groups)),
            "n_periods": int(n_periods),
            "n_never_treated": int(np.sum(never)),
            "n_treated": int(np.sum(~never)),
            "n_instruments": len(instruments),
        }

        if summary["n_never_treated"] == 0:
            errors.append(
                f"No never-treated units found. Check '{group}' column "
                "(never-treated units must have a non-finite value such as np.inf)."
            )
        if summary["n_treated"] == 0:
            errors.append(f"No treated units found. Check '{group}' column.")

    valid = len(errors) == 0

    if raise_on_error and not valid:
        raise ValueError("Data validation failed:\n" + "\n".join(errors))

    return {"valid": valid, "errors": errors, "summary": summary}


def prepare_panel(
    data: pd.DataFrame,
    outcome: str,
    unit: str,
    time: str,
    group: str,
    instruments: Sequence[str],
) -> PanelData:
    """
    Validate a long-format panel and build the estimation arrays.

    Parameters
    ----------
    data, outcome, unit, time, group, instruments
        See :func:`validate_qld_data`.

    Returns
    -------
    PanelData
        Panel arrays. Instruments are taken from each unit's first period.

    Raises
    ------
    ValueError
        If the data fail validation (including unbalanced panels).
    """
    if isinstance(instruments, str):
        instruments = [instruments]
    instruments = list(instruments)

    validate_qld_data(data, outcome, unit, time, group, instruments)

    df = data.sort_values([unit, time])
    times = np.sort(df[time].unique())

    # Rows = periods, columns = units (sorted)
    outcome_wide = df.pivot(index=time, columns=unit, values=outcome)
    outcome_wide = outcome_wide.reindex(times)
    units = outcome_wide.columns.values
    ymat = outcome_wide.to_numpy(dtype=float)

    first_period = df[df[time] == times[0]].set_index(unit).reindex(units)
    group_values = first_period[group].to_numpy(dtype=float)
    never_treated = is_never_treated(group_values)
    group_values = np.where(never_treated, np.inf, group_values)
    instrument_matrix = first_period[instruments].to_numpy(dtype=float)

    g_shift = np.full(len(units), np.inf)
    g_shift[~never_treated] = np.searchsorted(
        times, group_values[~never_treated], side='left'
    )

    groups = np.unique(group_values[~never_treated])
    n_pre = int(np.sum(times < groups.min()))

    n_periods = len(times)
    gt_index = np.column_stack([
        np.repeat(groups, n_periods),
        np.tile(times, len(groups)),
    ]).astype(float)
    n_tau_gt = np.repeat(
        [np.sum(group_values == g) for g in groups], n_periods
    ).astype(float)

    return PanelData(
        ymat=ymat,
        units=units,
        times=times,
        group_values=group_values,
        never_treated=never_treated,
        g_shift=g_shift,
        instruments=instrument_matrix,
        instrument_names=instruments,
        n_pre=n_pre,
        groups=groups,
        gt_index=gt_index,
        n_tau_gt=n_tau_gt,
    )

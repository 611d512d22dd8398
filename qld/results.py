"""
Result container classes for QLD imputation.

The shape of a result depends on the requested effect type and variance
type. Each effect type has its own results class exposing only its labels
(``GroupTimeResults``, ``EventStudyResults``, ``OverallResults``), and the
``inference`` attribute is either a :class:`PointwiseInference` (analytic
covariance matrix) or a :class:`UniformInference` (bootstrap standard
errors and a sup-t critical value).
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar, List, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from qld.utils import compute_confidence_interval, compute_p_value, safe_t_stat

if TYPE_CHECKING:
    from qld.gmm import FactorModelFit


def _get_significance_stars(p_value: float) -> str:
    """Return significance stars for a p-value."""
    if not np.isfinite(p_value):
        return ""
    if p_value < 0.001:
        return "***"
    elif p_value < 0.01:
        return "**"
    elif p_value < 0.05:
        return "*"
    elif p_value < 0.1:
        return "."
    return ""


# =============================================================================
# Inference Variants
# =============================================================================


@dataclass
class PointwiseInference:
    """
    Analytic inference from the influence function.

    Attributes
    ----------
    vcov : np.ndarray
        Variance-covariance matrix of the estimates.
    """
    vcov: np.ndarray

    @property
    def se(self) -> np.ndarray:
        """Standard errors (square root of the vcov diagonal)."""
        return np.sqrt(np.clip(np.diag(self.vcov), 0.0, None))

    def critical_value(self, alpha: float) -> float:
        """Pointwise normal critical value."""
        return float(stats.norm.ppf(1 - alpha / 2))


@dataclass
class UniformInference:
    """
    Multiplier bootstrap inference with a uniform confidence band.

    Attributes
    ----------
    se : np.ndarray
        Bootstrap standard errors.
    crit_val : float
        Sup-t critical value; ``estimate +- crit_val * se`` covers all
        parameters simultaneously at level 1 - alpha.
    n_bootstrap : int
        Number of bootstrap draws.
    weight_type : str
        Multiplier weight distribution.
    """
    se: np.ndarray
    crit_val: float
    n_bootstrap: int
    weight_type: str = "rademacher"

    def critical_value(self, alpha: float) -> float:
        """Uniform critical value (estimated at the fit's alpha)."""
        return self.crit_val


Inference = Union[PointwiseInference, UniformInference]


# =============================================================================
# Effect Variants
# =============================================================================


@dataclass
class QLDResults:
    """
    Results from QLD imputation estimation.

    Attributes
    ----------
    estimate : np.ndarray
        Point estimates.
    n_factors : int
        Number of factors used (selected or fixed).
    variance_type : str
        "pointwise", "uniform" or "naive".
    inference : PointwiseInference or UniformInference
        Variance-covariance matrix, or bootstrap SEs and critical value.
    factor_model : FactorModelFit
        First-stage GMM fit (loadings, J statistic).
    influence_function : np.ndarray
        Influence function (n_units, n_estimates) on the estimator scale.
    counterfactual : pd.DataFrame or None
        Imputed counterfactual outcomes, if requested.
    n_obs : int
        Number of observations.
    n_units : int
        Number of units.
    n_control_units : int
        Number of never-treated units.
    alpha : float
        Significance level for confidence intervals.
    """
    effect_type: ClassVar[str] = ""
    _title: ClassVar[str] = "Treatment Effects"
    _label_name: ClassVar[str] = "Parameter"

    estimate: np.ndarray
    n_factors: int
    variance_type: str
    inference: Inference
    factor_model: "FactorModelFit" = field(repr=False)
    influence_function: np.ndarray = field(repr=False)
    counterfactual: Optional[pd.DataFrame] = field(repr=False)
    n_obs: int
    n_units: int
    n_control_units: int
    alpha: float

    @property
    def se(self) -> np.ndarray:
        """Standard errors."""
        return self.inference.se

    @property
    def t_stat(self) -> np.ndarray:
        """t-statistics (NaN where the SE is zero)."""
        return safe_t_stat(self.estimate, self.se)

    @property
    def p_value(self) -> np.ndarray:
        """Two-sided normal p-values."""
        return np.asarray(compute_p_value(self.t_stat), dtype=float)

    @property
    def conf_int(self) -> np.ndarray:
        """
        Confidence intervals, shape (n_estimates, 2).

        Uniform over all estimates when ``variance_type == "uniform"``.
        """
        crit = self.inference.critical_value(self.alpha)
        lower, upper = compute_confidence_interval(
            self.estimate, self.se, critical_value=crit
        )
        return np.column_stack([lower, upper])

    def _labels(self) -> List[str]:
        return [str(i) for i in range(len(self.estimate))]

    def __repr__(self) -> str:
        """Concise string representation."""
        return (
            f"{type(self).__name__}(n_estimates={len(self.estimate)}, "
            f"n_factors={self.n_factors}, "
            f"variance_type='{self.variance_type}')"
        )

    def summary(self, alpha: Optional[float] = None) -> str:
        """
        Generate formatted summary of estimation results.

        Parameters
        ----------
        alpha : float, optional
            Significance level. Only used for pointwise inference; the
            uniform band is fixed at the alpha used in estimation.

        Returns
        -------
        str
            Formatted summary.
        """
        alpha = alpha or self.alpha
        crit = self.inference.critical_value(alpha)
        band = "Uniform" if self.variance_type == "uniform" else "Pointwise"
        conf_level = int(round((1 - self.alpha if band == "Uniform" else 1 - alpha) * 100))

        lines = [
            "=" * 85,
            "QLD Imputation Treatment Effect Results".center(85),
            "=" * 85,
            "",
            f"{'Total observations:':<30} {self.n_obs:>10}",
            f"{'Units:':<30} {self.n_units:>10}",
            f"{'Never-treated units:':<30} {self.n_control_units:>10}",
            f"{'Number of factors:':<30} {self.n_factors:>10}",
            f"{'J statistic:':<30} {self.factor_model.j_stat:>10.4f}",
            f"{'J p-value:':<30} {self.factor_model.j_p_value:>10.4f}",
            f"{'Variance type:':<30} {self.variance_type:>10}",
        ]
        if isinstance(self.inference, UniformInference):
            lines.append(f"{'Uniform critical value:':<30} {self.inference.crit_val:>10.4f}")

        lines.extend([
            "",
            "-" * 85,
            self._title.center(85),
            "-" * 85,
            f"{self._label_name:<15} {'Estimate':>12} {'Std. Err.':>12} "
            f"{f'[{conf_level}% {band}':>20} {'CI]':>12} {'Sig.':>6}",
            "-" * 85,
        ])

        lower, upper = compute_confidence_interval(
            self.estimate, self.se, critical_value=crit
        )
        for label, est, s, lo, hi, p in zip(
            self._labels(), self.estimate, self.se, lower, upper, self.p_value
        ):
            lines.append(
                f"{label:<15} {est:>12.4f} {s:>12.4f} "
                f"{lo:>20.4f} {hi:>12.4f} {_get_significance_stars(p):>6}"
            )

        lines.extend([
            "-" * 85,
            "",
            "Signif. codes: '***' 0.001, '**' 0.01, '*' 0.05, '.' 0.1",
            "=" * 85,
        ])

        return "\n".join(lines)

    def print_summary(self, alpha: Optional[float] = None) -> None:
        """Print summary to stdout."""
        print(self.summary(alpha))

    def _label_frame(self) -> pd.DataFrame:
        return pd.DataFrame({'parameter': self._labels()})

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert results to DataFrame.

        Returns
        -------
        pd.DataFrame
            One row per estimate with labels, estimate, SE, t-stat,
            p-value and confidence bounds.
        """
        ci = self.conf_int
        df = self._label_frame()
        df['effect'] = self.estimate
        df['se'] = self.se
        df['t_stat'] = self.t_stat
        df['p_value'] = self.p_value
        df['conf_int_lower'] = ci[:, 0]
        df['conf_int_upper'] = ci[:, 1]
        return df


@dataclass(repr=False)
class GroupTimeResults(QLDResults):
    """
    Group-time average treatment effects.

    Attributes
    ----------
    gt_index : np.ndarray
        Array (n_cells, 2) of (group, time) labels, aligned with ``estimate``.
    n_tau_gt : np.ndarray
        Number of units contributing to each group-time cell.
    """
    effect_type: ClassVar[str] = "group_time"
    _title: ClassVar[str] = "Group-Time Average Treatment Effects"
    _label_name: ClassVar[str] = "(Group, Time)"

    gt_index: np.ndarray
    n_tau_gt: np.ndarray

    def _labels(self) -> List[str]:
        return [f"({g:g}, {t:g})" for g, t in self.gt_index]

    def _label_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'group': self.gt_index[:, 0],
            'time': self.gt_index[:, 1],
            'n_units': self.n_tau_gt.astype(int),
        })


@dataclass(repr=False)
class EventStudyResults(QLDResults):
    """
    Event-study effects by time relative to adoption.

    Attributes
    ----------
    rel_times : np.ndarray
        Relative times ``t - g`` aligned with ``estimate``.
    """
    effect_type: ClassVar[str] = "event_study"
    _title: ClassVar[str] = "Event Study (Dynamic) Effects"
    _label_name: ClassVar[str] = "Rel. Period"

    rel_times: np.ndarray

    def _labels(self) -> List[str]:
        return [f"{e:g}" for e in self.rel_times]

    def _label_frame(self) -> pd.DataFrame:
        return pd.DataFrame({'relative_period': self.rel_times})


@dataclass(repr=False)
class OverallResults(QLDResults):
    """
    Overall average treatment effect over post-treatment group-time cells.
    """
    effect_type: ClassVar[str] = "overall"
    _title: ClassVar[str] = "Overall Average Treatment Effect on the Treated"
    _label_name: ClassVar[str] = "Parameter"

    def _labels(self) -> List[str]:
        return ["ATT"]

    @property
    def att(self) -> float:
        """Overall ATT as a scalar."""
        return float(self.estimate[0])

    @property
    def att_se(self) -> float:
        """Standard error of the overall ATT."""
        return float(self.se[0])

    def __repr__(self) -> str:
        sig = _get_significance_stars(float(self.p_value[0]))
        return (
            f"OverallResults(ATT={self.att:.4f}{sig}, "
            f"SE={self.att_se:.4f}, "
            f"n_factors={self.n_factors})"
        )

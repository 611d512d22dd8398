"""
Quasi-long-differencing (QLD) imputation estimator for staggered adoption.

Implements the imputation estimator of Brown and Butts: a low-rank factor
model for untreated outcomes is estimated by two-step GMM on never-treated
units, each treated unit's untreated trajectory is imputed from its own
pre-adoption outcomes through the fitted factors, and the realized-minus-
imputed gaps are averaged into group-time effects and aggregated to
event-study or overall effects. Inference uses an influence function that
propagates the first-stage (factor) estimation error into the second stage.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from qld.aggregation import aggregation_matrix, normalize_effect_type
from qld.bootstrap import mboot
from qld.gmm import FactorModelFit, fit_factor_model, qld_moments, select_n_factors
from qld.imputation import estimate_tau_gt, impute_y0, ms_tau_gt
from qld.linalg import numerical_jacobian
from qld.prep import PanelData, prepare_panel
from qld.results import (
    EventStudyResults,
    GroupTimeResults,
    OverallResults,
    PointwiseInference,
    QLDResults,
    UniformInference,
)
from qld.within import within_transform as apply_within_transform

logger = logging.getLogger(__name__)

VARIANCE_TYPES = ("pointwise", "uniform", "naive")


def _first_stage_influence(
    fit: FactorModelFit,
    tau_gt: np.ndarray,
    ymat: np.ndarray,
    instruments: np.ndarray,
    idx_control: np.ndarray,
    g_shift: np.ndarray,
) -> np.ndarray:
    """
    Contribution of factor-loading estimation error to the influence function.

    Linearizing the GMM first-order condition gives
    ``theta_hat - theta = -(M'WM)^+ M'W mean(m_i)``; the chain rule through
    the mean group-time moments ``Gbar = d mean(g_i) / d theta`` maps this
    into the group-time effects.

    Returns
    -------
    np.ndarray
        Matrix (n_units, n_cells) on the estimator scale; rows of treated
        units are zero.
    """
    p = fit.n_factors
    theta = fit.theta
    n_units = ymat.shape[1]
    n_control = len(idx_control)

    # Control moments as unconditional moments over all units
    ms = np.zeros((n_units, fit.moment_jacobian.shape[0]))
    ms[idx_control] = qld_moments(
        theta, p, ymat[:, idx_control], instruments[idx_control]
    ) * (n_units / n_control)

    gbar = numerical_jacobian(
        lambda x: ms_tau_gt(x, tau_gt, p, ymat, g_shift).mean(axis=0), theta
    )

    weight = fit.weight_matrix
    mbar = fit.moment_jacobian
    bread = np.linalg.pinv(mbar.T @ weight @ mbar)

    return -(ms / n_units) @ weight @ mbar @ bread @ gbar.T


class QLDImputation:
    """
    QLD factor-model imputation estimator for staggered adoption designs.

    Untreated outcomes are modelled as ``y_it(0) = f_t' lambda_i + u_it`` with
    p unobserved factors. The factors are estimated from never-treated units
    by quasi-long differencing with time-invariant instruments correlated
    with the loadings, so identification does not rely on parallel trends.

    Parameters
    ----------
    within_transform : bool, default=False
        Remove a never-treated time trend and pre-period unit means before
        estimation (see :func:`qld.within.within_transform`).
    n_factors : int, default=-1
        Number of factors p. Use -1 to select p with the overidentification
        test, which requires ``selection_threshold``.
    effect_type : str, default="event_study"
        Target of estimation:
        - "group_time": Group-time average treatment effects
        - "event_study": Effects by time relative to adoption
        - "overall": Average effect over post-adoption cells
        The spellings "group-time" and "event-study" are also accepted.
    variance_type : str, default="pointwise"
        Inference method:
        - "pointwise": Analytic covariance including first-stage error
        - "uniform": Multiplier bootstrap SEs and sup-t critical value
        - "naive": Analytic covariance ignoring first-stage error
    selection_threshold : float, optional
        Minimum J-test p-value accepted when selecting the number of
        factors. Required when ``n_factors=-1``. Values used historically
        for this rule are 0.05 and 0.10.
    n_bootstrap : int, default=1000
        Number of multiplier bootstrap draws (``variance_type="uniform"``).
    bootstrap_weights : str, default="rademacher"
        Type of weights for multiplier bootstrap:
        - "rademacher": +1/-1 with equal probability (standard choice)
        - "mammen": Two-point distribution
        - "webb": Six-point distribution
    alpha : float, default=0.05
        Significance level for confidence intervals and the uniform band.
    seed : int, optional
        Random seed for the bootstrap.
    convergence_action : str, default="warn"
        Action when the GMM optimizer does not report convergence:
        - "warn": Issue a ConvergenceWarning and use the last iterate
        - "error": Raise ConvergenceError
        - "silent": Use the last iterate without warning
    max_iter : int, default=1000
        Maximum optimizer iterations per GMM step.

    Attributes
    ----------
    results_ : QLDResults
        Estimation results after calling fit().
    is_fitted_ : bool
        Whether the model has been fitted.

    Examples
    --------
    >>> from qld import QLDImputation, generate_qld_data
    >>> data = generate_qld_data(n_units=300, n_periods=6, seed=42)
    >>> est = QLDImputation(n_factors=1, effect_type="overall")
    >>> results = est.fit(data, outcome='outcome', unit='unit', time='period',
    ...                   group='group', instruments=['w1', 'w2'])
    >>> results.print_summary()

    Selecting the number of factors:

    >>> est = QLDImputation(n_factors=-1, selection_threshold=0.10)
    >>> results = est.fit(data, outcome='outcome', unit='unit', time='period',
    ...                   group='group', instruments=['w1', 'w2'])
    >>> results.n_factors

    Notes
    -----
    The factor matrix is normalised as ``F = [Theta; -I_p]``. A model with p
    factors needs at least p instruments, at least p + 1 periods before any
    unit is treated, and every treated unit observed for more than p periods
    before adoption. The panel must be balanced.

    References
    ----------
    Brown, N., & Butts, K. Dynamic treatment effect estimation with
    interactive fixed effects and short panels. Working Paper.

    Ahn, S. C., Lee, Y. H., & Schmidt, P. (2013). Panel data models with
    multiple time-varying individual effects. Journal of Econometrics,
    174(1), 1-14.
    """

    def __init__(
        self,
        within_transform: bool = False,
        n_factors: int = -1,
        effect_type: str = "event_study",
        variance_type: str = "pointwise",
        selection_threshold: Optional[float] = None,
        n_bootstrap: int = 1000,
        bootstrap_weights: str = "rademacher",
        alpha: float = 0.05,
        seed: Optional[int] = None,
        convergence_action: str = "warn",
        max_iter: int = 1000,
    ):
        self.within_transform = within_transform
        self.n_factors = n_factors
        self.effect_type = effect_type
        self.variance_type = variance_type
        self.selection_threshold = selection_threshold
        self.n_bootstrap = n_bootstrap
        self.bootstrap_weights = bootstrap_weights
        self.alpha = alpha
        self.seed = seed
        self.convergence_action = convergence_action
        self.max_iter = max_iter

        self._validate_params()

        self.is_fitted_ = False
        self.results_: Optional[QLDResults] = None

    def _validate_params(self) -> None:
        if int(self.n_factors) != self.n_factors or self.n_factors < -1:
            raise ValueError(
                f"n_factors must be an integer >= 0, or -1 to select the number "
                f"of factors from the data, got {self.n_factors}"
            )

        normalize_effect_type(self.effect_type)

        if self.variance_type not in VARIANCE_TYPES:
            raise ValueError(
                f"variance_type must be 'pointwise', 'uniform', or 'naive', "
                f"got '{self.variance_type}'"
            )

        if self.n_factors == -1:
            if self.selection_threshold is None:
                raise ValueError(
                    "selection_threshold is required when n_factors=-1. "
                    "Values used historically are 0.05 and 0.10."
                )
        if self.selection_threshold is not None and not 0 <= self.selection_threshold <= 1:
            raise ValueError(
                f"selection_threshold must be in [0, 1], got {self.selection_threshold}"
            )

        if self.bootstrap_weights not in ["rademacher", "mammen", "webb"]:
            raise ValueError(
                f"bootstrap_weights must be 'rademacher', 'mammen', or 'webb', "
                f"got '{self.bootstrap_weights}'"
            )

        if self.convergence_action not in ["warn", "error", "silent"]:
            raise ValueError(
                f"convergence_action must be 'warn', 'error', or 'silent', "
                f"got '{self.convergence_action}'"
            )

        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")

    def _check_n_factors(self, panel: PanelData) -> int:
        """Check admissibility of the factor count and return the upper bound."""
        if panel.n_pre < 1:
            raise ValueError(
                "At least one period before the first adoption is required; "
                f"the earliest adoption period is the first period ({panel.times[0]})."
            )

        max_factors = min(panel.n_pre - 1, panel.n_instruments, panel.min_g_shift - 1)
        p = int(self.n_factors)
        if p == -1:
            return max_factors

        if p > panel.n_pre - 1:
            raise ValueError(
                f"n_factors must be smaller than the number of periods before any "
                f"unit is treated ({panel.n_pre}), got {p}"
            )
        if p > panel.n_instruments:
            raise ValueError(
                f"The number of instruments ({panel.n_instruments}) must be >= "
                f"n_factors, got n_factors={p}"
            )
        if panel.min_g_shift <= p:
            raise ValueError(
                f"Every treated unit must be observed for more than n_factors "
                f"periods before adoption; the earliest group has "
                f"{panel.min_g_shift} pre-adoption periods, n_factors={p}"
            )
        return max_factors

    def fit(
        self,
        data: pd.DataFrame,
        outcome: str,
        unit: str,
        time: str,
        group: str,
        instruments: Union[str, Sequence[str]],
        return_counterfactual: bool = False,
    ) -> QLDResults:
        """
        Fit the QLD imputation estimator.

        Parameters
        ----------
        data : pd.DataFrame
            Balanced long-format panel.
        outcome : str
            Name of outcome variable column.
        unit : str
            Name of unit identifier column.
        time : str
            Name of time period column.
        group : str
            Name of adoption period column. Use np.inf (or NaN) for
            never-treated units.
        instruments : str or list of str
            Instrument column(s). Values are taken from each unit's first
            period and treated as time-invariant.
        return_counterfactual : bool, default=False
            Whether to attach the imputed counterfactual outcomes.

        Returns
        -------
        QLDResults
            ``GroupTimeResults``, ``EventStudyResults`` or ``OverallResults``
            depending on ``effect_type``.

        Raises
        ------
        ValueError
            If data validation fails or the factor count is not admissible.
        """
        self._validate_params()
        effect_type = normalize_effect_type(self.effect_type)

        panel = prepare_panel(data, outcome, unit, time, group, instruments)
        max_factors = self._check_n_factors(panel)

        ymat = panel.ymat
        if self.within_transform:
            ymat = apply_within_transform(ymat, panel.idx_control, panel.n_pre)

        fit_kwargs = {
            "convergence_action": self.convergence_action,
            "max_iter": self.max_iter,
        }

        # First stage: factor loadings from never-treated units
        if self.n_factors == -1:
            logger.debug("Selecting n_factors in [0, %d]", max_factors)
            factor_fit = select_n_factors(
                ymat,
                panel.instruments,
                panel.idx_control,
                max_factors=max_factors,
                threshold=self.selection_threshold,
                **fit_kwargs,
            )
        else:
            factor_fit = fit_factor_model(
                int(self.n_factors),
                ymat,
                panel.instruments,
                panel.idx_control,
                **fit_kwargs,
            )
        p = factor_fit.n_factors
        theta = factor_fit.theta

        # Second stage: imputation
        tau_gt, n_tau_gt = estimate_tau_gt(theta, p, ymat, panel.g_shift)

        psi = ms_tau_gt(theta, tau_gt, p, ymat, panel.g_shift) / panel.n_units
        if self.variance_type != "naive" and theta.size > 0:
            psi = psi + _first_stage_influence(
                factor_fit, tau_gt, ymat, panel.instruments,
                panel.idx_control, panel.g_shift,
            )

        agg, rel_times = aggregation_matrix(effect_type, panel.gt_index, n_tau_gt)
        estimate = agg @ tau_gt
        psi = psi @ agg.T

        if self.variance_type == "uniform":
            boot = mboot(
                psi,
                n_bootstrap=self.n_bootstrap,
                alpha=self.alpha,
                weight_type=self.bootstrap_weights,
                seed=self.seed,
            )
            inference = UniformInference(
                se=boot.se,
                crit_val=boot.crit_val,
                n_bootstrap=boot.n_bootstrap,
                weight_type=boot.weight_type,
            )
        else:
            inference = PointwiseInference(vcov=psi.T @ psi)

        counterfactual = None
        if return_counterfactual:
            counterfactual = self._counterfactual_frame(
                panel, ymat, impute_y0(theta, p, ymat, panel.g_shift),
                unit, time, group,
            )

        logger.debug(
            "QLD imputation fitted: n_factors=%d, effect_type=%s, %d estimates",
            p, effect_type, len(estimate),
        )

        common: Dict[str, Any] = dict(
            estimate=estimate,
            n_factors=p,
            variance_type=self.variance_type,
            inference=inference,
            factor_model=factor_fit,
            influence_function=psi,
            counterfactual=counterfactual,
            n_obs=len(data),
            n_units=panel.n_units,
            n_control_units=panel.n_control,
            alpha=self.alpha,
        )
        if effect_type == "group_time":
            self.results_ = GroupTimeResults(
                gt_index=panel.gt_index, n_tau_gt=n_tau_gt, **common
            )
        elif effect_type == "event_study":
            self.results_ = EventStudyResults(rel_times=rel_times, **common)
        else:
            self.results_ = OverallResults(**common)

        self.is_fitted_ = True
        return self.results_

    def _counterfactual_frame(
        self,
        panel: PanelData,
        ymat: np.ndarray,
        y0_hat: np.ndarray,
        unit: str,
        time: str,
        group: str,
    ) -> pd.DataFrame:
        """Long table of imputed and realized outcomes, one row per (unit, time)."""
        n_periods, n_units = ymat.shape
        # Never-treated units have no imputed counterfactual
        y0_hat = np.where(panel.never_treated[np.newaxis, :], np.nan, y0_hat)

        prefix = "ytilde" if self.within_transform else "y"
        return pd.DataFrame({
            unit: np.repeat(panel.units, n_periods),
            time: np.tile(panel.times, n_units),
            group: np.repeat(panel.group_values, n_periods),
            f"{prefix}0_hat": y0_hat.T.ravel(),
            prefix: ymat.T.ravel(),
        })

    def get_params(self) -> Dict[str, Any]:
        """Get estimator parameters (sklearn-compatible)."""
        return {
            "within_transform": self.within_transform,
            "n_factors": self.n_factors,
            "effect_type": self.effect_type,
            "variance_type": self.variance_type,
            "selection_threshold": self.selection_threshold,
            "n_bootstrap": self.n_bootstrap,
            "bootstrap_weights": self.bootstrap_weights,
            "alpha": self.alpha,
            "seed": self.seed,
            "convergence_action": self.convergence_action,
            "max_iter": self.max_iter,
        }

    def set_params(self, **params) -> "QLDImputation":
        """Set estimator parameters (sklearn-compatible)."""
        for key, value in params.items():
            if key in self.get_params():
                setattr(self, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")
        return self

    def summary(self) -> str:
        """Get summary of estimation results."""
        if not self.is_fitted_:
            raise RuntimeError("Model must be fitted before calling summary()")
        assert self.results_ is not None
        return self.results_.summary()

    def print_summary(self) -> None:
        """Print summary to stdout."""
        print(self.summary())


def qld_imputation(
    data: pd.DataFrame,
    outcome: str,
    unit: str,
    time: str,
    group: str,
    instruments: Union[str, List[str]],
    within_transform: bool,
    n_factors: int,
    effect_type: str = "event_study",
    return_counterfactual: bool = False,
    variance_type: str = "pointwise",
    **kwargs,
) -> QLDResults:
    """
    Convenience function for QLD imputation estimation.

    Parameters
    ----------
    data : pd.DataFrame
        Balanced long-format panel.
    outcome, unit, time, group : str
        Column names. ``group`` holds the adoption period (np.inf for
        never-treated units).
    instruments : str or list of str
        Instrument column(s).
    within_transform : bool
        Whether to apply the within transformation.
    n_factors : int
        Number of factors, or -1 to select it (pass
        ``selection_threshold``).
    effect_type : str, default="event_study"
        "group_time", "event_study" or "overall".
    return_counterfactual : bool, default=False
        Whether to attach imputed counterfactual outcomes.
    variance_type : str, default="pointwise"
        "pointwise", "uniform" or "naive".
    **kwargs
        Additional arguments passed to the QLDImputation constructor.

    Returns
    -------
    QLDResults
        Estimation results.

    Examples
    --------
    >>> from qld import qld_imputation
    >>> results = qld_imputation(data, 'y', 'id', 't', 'g', ['w1', 'w2'],
    ...                          within_transform=False, n_factors=1,
    ...                          effect_type='overall')
    >>> print(f"ATT: {results.att:.3f}")
    """
    estimator = QLDImputation(
        within_transform=within_transform,
        n_factors=n_factors,
        effect_type=effect_type,
        variance_type=variance_type,
        **kwargs,
    )
    return estimator.fit(
        data, outcome, unit, time, group, instruments,
        return_counterfactual=return_counterfactual,
    )

"""
qld: Quasi-long-differencing imputation for staggered adoption designs.

This library provides an sklearn-like estimator for treatment effects in
panels with staggered treatment adoption, where untreated outcomes follow
a low-rank factor model estimated from never-treated units.
"""

from qld.estimator import (
    QLDImputation,
    qld_imputation,
)
from qld.results import (
    QLDResults,
    GroupTimeResults,
    EventStudyResults,
    OverallResults,
    PointwiseInference,
    UniformInference,
)
from qld.gmm import (
    FactorModelFit,
    build_factor_matrix,
    qld_moments,
    moment_jacobian,
    fit_factor_model,
    select_n_factors,
)
from qld.imputation import (
    estimate_tau_gt,
    impute_y0,
    ms_tau_gt,
)
from qld.within import within_transform
from qld.bootstrap import (
    MultiplierBootstrapResults,
    mboot,
)
from qld.aggregation import (
    aggregation_matrix,
    event_study_aggregation_matrix,
    group_time_aggregation_matrix,
    overall_aggregation_matrix,
)
from qld.prep import (
    PanelData,
    prepare_panel,
    validate_qld_data,
)
from qld.prep_dgp import generate_qld_data
from qld.exceptions import (
    ConvergenceError,
    ConvergenceWarning,
    NumericalWarning,
    QLDWarning,
)

__version__ = "0.1.0"
__all__ = [
    # Estimator
    "QLDImputation",
    "qld_imputation",
    # Results
    "QLDResults",
    "GroupTimeResults",
    "EventStudyResults",
    "OverallResults",
    "PointwiseInference",
    "UniformInference",
    # Factor model
    "FactorModelFit",
    "build_factor_matrix",
    "qld_moments",
    "moment_jacobian",
    "fit_factor_model",
    "select_n_factors",
    # Imputation
    "estimate_tau_gt",
    "impute_y0",
    "ms_tau_gt",
    "within_transform",
    # Bootstrap
    "MultiplierBootstrapResults",
    "mboot",
    # Aggregation
    "aggregation_matrix",
    "event_study_aggregation_matrix",
    "group_time_aggregation_matrix",
    "overall_aggregation_matrix",
    # Data preparation
    "PanelData",
    "prepare_panel",
    "validate_qld_data",
    "generate_qld_data",
    # Warnings and errors
    "QLDWarning",
    "ConvergenceWarning",
    "NumericalWarning",
    "ConvergenceError",
]

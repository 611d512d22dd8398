"""
Warning and exception classes for the qld package.

All warnings inherit from :class:`QLDWarning`, which itself inherits from
:class:`UserWarning`, so they can be filtered as a group:

>>> import warnings
>>> from qld import QLDWarning
>>> warnings.filterwarnings('ignore', category=QLDWarning)
"""


class QLDWarning(UserWarning):
    """Base warning class for all qld warnings."""
    pass


class ConvergenceWarning(QLDWarning):
    """
    Warning raised when the GMM optimizer does not report convergence.

    The returned factor loadings are the optimizer's last iterate and
    may not minimize the GMM objective.
    """
    pass


class NumericalWarning(QLDWarning):
    """
    Warning raised when a numerical quantity is undefined, such as the
    uniform critical value when every bootstrap standard error is zero.
    """
    pass


class ConvergenceError(RuntimeError):
    """
    Raised when the GMM optimizer fails and ``convergence_action="error"``.
    """
    pass

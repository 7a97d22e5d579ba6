"""
errors.py - Error taxonomy for the level-set optimization run.

Fatal errors (ConfigurationError, NumericalDivergence) unwind the whole run;
the optimizer stamps the iteration and stage reached before re-raising.
RecordingFailure is absorbed by the optimizer, ConstraintInfeasibleStep is
a warning issued by the sub-solver.
"""

from typing import Optional


class LSTOError(Exception):
    """Base class for errors raised by the optimization run."""

    def __init__(self, message: str, iteration: Optional[int] = None):
        super().__init__(message)
        self.iteration = iteration
        self.stage = None


class ConfigurationError(LSTOError):
    """Invalid problem set-up: empty node query, mismatched meshes."""


class NumericalDivergence(LSTOError):
    """The elasticity solve did not converge."""


class RecordingFailure(LSTOError):
    """I/O error while writing the history log or a snapshot."""


class ConstraintInfeasibleStep(UserWarning):
    """The sub-solver could not meet the area budget within the move limit."""

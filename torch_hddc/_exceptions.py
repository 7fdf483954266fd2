"""Error types raised by the HDDC estimator."""

from __future__ import annotations

from typing import Optional


class HDDCError(Exception):
    """Base class for every error raised by torch_hddc."""


class InvalidInputError(HDDCError, ValueError):
    """Malformed observations: NaN/Inf, wrong shape, K <= 0 or K > n_samples."""


class ConfigurationError(HDDCError, ValueError):
    """Unknown model/init tag or intrinsic dimensions inconsistent with the data."""


class NumericalDegeneracyError(HDDCError, ArithmeticError):
    """A cluster's weighted covariance collapsed.

    ``cluster`` holds the index of the offending component when it is known,
    so the EM loop can drop it and carry on with one component less.
    """

    def __init__(self, message: str, cluster: Optional[int] = None) -> None:
        super().__init__(message)
        self.cluster = cluster

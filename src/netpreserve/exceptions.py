"""
Error taxonomy for network construction and preservation scoring.

Warning convention:
    warnings.warn() -- user-facing (threshold selection, duplicate ids)
    logger.warning() -- operator-facing (skipped or failed units of work)

Fatal conditions (InputIntegrityError, DimensionMismatchError) stop the
affected unit of work only. Numeric instability is never raised: it is
carried on the result as an UnstableStatisticResult note and the score
becomes NaN.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

__all__ = [
    'NetPreserveError',
    'InputIntegrityError',
    'DimensionMismatchError',
    'ThresholdSelectionWarning',
    'UnstableStatisticResult',
]


class NetPreserveError(Exception):
    """Base class for netpreserve errors."""
    pass


class InputIntegrityError(NetPreserveError):
    """
    Raised when genes or samples fail basic quality checks.

    Raised before any similarity computation. The offending identifiers
    are attached so the caller can exclude them and retry.

    Attributes:
        failed_genes: Gene identifiers that failed (may be empty)
        failed_samples: Sample identifiers that failed (may be empty)
    """

    def __init__(
        self,
        message: str,
        failed_genes: Sequence[str] = (),
        failed_samples: Sequence[str] = (),
    ):
        super().__init__(message)
        self.failed_genes = list(failed_genes)
        self.failed_samples = list(failed_samples)


class DimensionMismatchError(NetPreserveError):
    """
    Raised when a dataset does not carry the genes a module needs.

    Never silently resolved by intersecting gene sets.

    Attributes:
        missing_genes: Gene identifiers absent from the dataset
    """

    def __init__(self, message: str, missing_genes: Sequence[str] = ()):
        super().__init__(message)
        self.missing_genes = list(missing_genes)


class ThresholdSelectionWarning(UserWarning):
    """No soft-threshold power met both the fit and connectivity targets."""
    pass


@dataclass(frozen=True)
class UnstableStatisticResult:
    """
    Why a statistic could not be computed for one module/comparison.

    Attributes:
        statistic: Name of the statistic ('density', 'z_summary', ...)
        reason: Human-readable explanation
    """
    statistic: str
    reason: str

    def to_dict(self) -> dict:
        return {'statistic': self.statistic, 'reason': self.reason}

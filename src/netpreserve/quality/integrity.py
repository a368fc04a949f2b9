"""
Input integrity checks run before network construction.

Correlation networks are undefined for constant genes and distorted by
missing values, so both are rejected up front instead of being silently
dropped halfway through a TOM computation.

Engineering Design:
    - check_expression_integrity(): raises InputIntegrityError with the
      failing identifiers attached
    - IntegrityFilter (Transform): opt-in exclusion of failing genes and
      samples, for callers that want to exclude and retry
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

import numpy as np

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.core.transform import Transform
from netpreserve.exceptions import InputIntegrityError

logger = logging.getLogger(__name__)

__all__ = ['IntegrityReport', 'assess_integrity', 'check_expression_integrity', 'IntegrityFilter']


@dataclass
class IntegrityReport:
    """Genes and samples failing the integrity checks."""
    low_variance_genes: List[str] = field(default_factory=list)
    missing_genes: List[str] = field(default_factory=list)
    missing_samples: List[str] = field(default_factory=list)
    too_few_samples: bool = False

    @property
    def failed_genes(self) -> List[str]:
        return sorted(set(self.low_variance_genes) | set(self.missing_genes))

    @property
    def ok(self) -> bool:
        return not (self.failed_genes or self.missing_samples or self.too_few_samples)


def assess_integrity(
    matrix: ExpressionMatrix,
    min_variance: float = 1e-8,
    max_missing_fraction: float = 0.0,
    min_samples: int = 4,
) -> IntegrityReport:
    """
    Evaluate genes and samples without raising.

    Args:
        matrix: Expression matrix to check
        min_variance: Genes with variance at or below this are flagged
        max_missing_fraction: Largest tolerated NaN fraction per gene/sample
        min_samples: Fewest samples for a meaningful correlation

    Returns:
        IntegrityReport listing failures
    """
    data = matrix.data
    missing = np.isnan(data)

    gene_missing = missing.mean(axis=1) if data.size else np.zeros(matrix.n_genes)
    sample_missing = missing.mean(axis=0) if data.size else np.zeros(matrix.n_samples)

    with np.errstate(invalid='ignore'):
        variances = np.nanvar(data, axis=1) if data.size else np.zeros(matrix.n_genes)
    variances = np.nan_to_num(variances, nan=0.0)

    return IntegrityReport(
        low_variance_genes=matrix.gene_ids[variances <= min_variance].tolist(),
        missing_genes=matrix.gene_ids[gene_missing > max_missing_fraction].tolist(),
        missing_samples=matrix.sample_ids[sample_missing > max_missing_fraction].tolist(),
        too_few_samples=matrix.n_samples < min_samples,
    )


def check_expression_integrity(
    matrix: ExpressionMatrix,
    min_variance: float = 1e-8,
    max_missing_fraction: float = 0.0,
    min_samples: int = 4,
) -> None:
    """
    Raise if any gene or sample fails the integrity checks.

    Raises:
        InputIntegrityError: With failed_genes / failed_samples attached

    Examples:
        >>> try:
        ...     check_expression_integrity(matrix)
        ... except InputIntegrityError as e:
        ...     matrix = IntegrityFilter().apply(matrix)
    """
    report = assess_integrity(matrix, min_variance, max_missing_fraction, min_samples)
    if report.ok:
        return

    problems = []
    if report.too_few_samples:
        problems.append(f"only {matrix.n_samples} samples (need {min_samples})")
    if report.low_variance_genes:
        problems.append(f"{len(report.low_variance_genes)} genes with variance <= {min_variance:g}")
    if report.missing_genes:
        problems.append(
            f"{len(report.missing_genes)} genes above {max_missing_fraction:.0%} missingness"
        )
    if report.missing_samples:
        problems.append(
            f"{len(report.missing_samples)} samples above {max_missing_fraction:.0%} missingness"
        )

    raise InputIntegrityError(
        "Expression matrix failed integrity checks: " + "; ".join(problems),
        failed_genes=report.failed_genes,
        failed_samples=report.missing_samples,
    )


class IntegrityFilter(Transform):
    """
    Drop genes and samples that fail the integrity checks.

    Samples are removed first, then genes are re-assessed on the
    remaining samples.

    Examples:
        >>> clean = IntegrityFilter(min_variance=1e-6).apply(matrix)
        >>> check_expression_integrity(clean)
    """

    def __init__(self, min_variance: float = 1e-8, max_missing_fraction: float = 0.0):
        super().__init__(
            name="IntegrityFilter",
            params={"min_variance": min_variance, "max_missing_fraction": max_missing_fraction},
        )
        self.min_variance = min_variance
        self.max_missing_fraction = max_missing_fraction

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        report = assess_integrity(
            matrix, self.min_variance, self.max_missing_fraction, min_samples=0
        )
        result = matrix
        if report.missing_samples:
            keep = ~matrix.sample_ids.isin(report.missing_samples)
            result = result.select_samples(keep)
            report = assess_integrity(
                result, self.min_variance, self.max_missing_fraction, min_samples=0
            )

        if report.failed_genes:
            keep = ~result.gene_ids.isin(report.failed_genes)
            result = result.select_genes(keep)

        logger.info(
            f"IntegrityFilter: kept {result.n_genes}/{matrix.n_genes} genes, "
            f"{result.n_samples}/{matrix.n_samples} samples"
        )
        return result

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors: list[str] = []
        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")
        return errors

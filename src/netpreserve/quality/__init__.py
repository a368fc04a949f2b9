"""Input quality checks applied before any similarity computation."""

from netpreserve.quality.integrity import (
    IntegrityFilter,
    IntegrityReport,
    assess_integrity,
    check_expression_integrity,
)

__all__ = [
    'IntegrityFilter',
    'IntegrityReport',
    'assess_integrity',
    'check_expression_integrity',
]

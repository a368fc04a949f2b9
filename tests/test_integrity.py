"""Tests for input integrity checks and the IntegrityFilter transform."""

import numpy as np
import pandas as pd
import pytest

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.exceptions import InputIntegrityError
from netpreserve.quality.integrity import (
    IntegrityFilter,
    assess_integrity,
    check_expression_integrity,
)


def _matrix(data):
    n_genes, n_samples = data.shape
    return ExpressionMatrix(
        data=np.asarray(data, dtype=float),
        gene_ids=pd.Index([f"g{i}" for i in range(n_genes)]),
        sample_ids=pd.Index([f"s{j}" for j in range(n_samples)]),
    )


@pytest.fixture
def clean():
    rng = np.random.default_rng(42)
    return _matrix(rng.standard_normal((5, 8)))


class TestCheckExpressionIntegrity:
    def test_clean_matrix_passes(self, clean):
        check_expression_integrity(clean)
        assert assess_integrity(clean).ok

    def test_constant_gene_fails(self, clean):
        data = clean.data.copy()
        data[2] = 3.0
        with pytest.raises(InputIntegrityError) as excinfo:
            check_expression_integrity(_matrix(data))
        assert excinfo.value.failed_genes == ["g2"]

    def test_missing_value_flags_gene_and_sample(self, clean):
        data = clean.data.copy()
        data[1, 4] = np.nan
        with pytest.raises(InputIntegrityError) as excinfo:
            check_expression_integrity(_matrix(data))
        assert "g1" in excinfo.value.failed_genes
        assert excinfo.value.failed_samples == ["s4"]

    def test_too_few_samples(self):
        rng = np.random.default_rng(42)
        with pytest.raises(InputIntegrityError, match="samples"):
            check_expression_integrity(_matrix(rng.standard_normal((3, 3))))

    def test_min_samples_zero_disables_sample_count(self):
        rng = np.random.default_rng(42)
        check_expression_integrity(_matrix(rng.standard_normal((3, 3))), min_samples=0)


class TestIntegrityFilter:
    def test_drops_failing_sample_then_genes(self, clean):
        data = clean.data.copy()
        data[0, 3] = np.nan
        data[4] = 1.0
        filtered = IntegrityFilter().apply(_matrix(data))

        assert "s3" not in filtered.sample_ids
        assert "g4" not in filtered.gene_ids
        # g0 survives: its only NaN was in the dropped sample
        assert "g0" in filtered.gene_ids
        check_expression_integrity(filtered)

    def test_validate_empty(self):
        matrix = _matrix(np.empty((0, 4)))
        assert IntegrityFilter().validate(matrix) == ["Cannot process empty matrix"]

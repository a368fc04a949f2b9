"""
Pytest configuration and shared fixtures.

Synthetic expression data with planted coexpression modules: every
module's genes load on one shared latent factor, the remaining genes are
independent noise.
"""

import numpy as np
import pandas as pd
import pytest

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.network.modules import ModuleAssignment
from netpreserve.preservation.records import DatasetRole, TaggedDataset


def generate_module_matrix(
    module_sizes=(50,),
    n_noise: int = 150,
    n_samples: int = 30,
    loading: float = 0.9,
    offset: float = 10.0,
    seed: int = 42,
) -> ExpressionMatrix:
    """
    Generate an expression matrix with planted modules.

    Args:
        module_sizes: Genes per planted module
        n_noise: Independent genes appended after the modules
        n_samples: Number of samples
        loading: Weight of the module factor (1 - loading is gene noise)
        offset: Added to every value (keeps values positive)
        seed: Random seed for reproducibility

    Returns:
        ExpressionMatrix with genes named M<k>_<i> for module k and N_<i>
        for noise genes
    """
    rng = np.random.default_rng(seed)

    rows = []
    gene_ids = []
    for k, size in enumerate(module_sizes, start=1):
        factor = rng.standard_normal(n_samples)
        for i in range(size):
            rows.append(loading * factor + (1 - loading) * rng.standard_normal(n_samples))
            gene_ids.append(f"M{k}_{i:03d}")
    for i in range(n_noise):
        rows.append(rng.standard_normal(n_samples))
        gene_ids.append(f"N_{i:03d}")

    data = np.vstack(rows) + offset
    return ExpressionMatrix(
        data=data,
        gene_ids=pd.Index(gene_ids),
        sample_ids=pd.Index([f"S{j:02d}" for j in range(n_samples)]),
    )


def planted_assignment(matrix: ExpressionMatrix) -> ModuleAssignment:
    """Ground-truth assignment: M<k>_* genes in module k, noise unassigned."""
    labels = [
        int(g.split('_')[0][1:]) if g.startswith('M') else 0
        for g in matrix.gene_ids
    ]
    return ModuleAssignment.from_labels(matrix.gene_ids, labels)


@pytest.fixture
def module_matrix():
    """50-gene module plus 150 noise genes, 30 samples."""
    return generate_module_matrix()


@pytest.fixture
def module_assignment(module_matrix):
    return planted_assignment(module_matrix)


@pytest.fixture
def two_module_matrix():
    """Two 40-gene modules plus 40 noise genes, 40 samples."""
    return generate_module_matrix(module_sizes=(40, 40), n_noise=40, n_samples=40)


@pytest.fixture
def reference_dataset(module_matrix):
    return TaggedDataset(DatasetRole.REFERENCE, "2x", module_matrix)


@pytest.fixture
def noise_dataset(module_matrix):
    """Same genes as module_matrix, pure noise."""
    rng = np.random.default_rng(7)
    data = rng.standard_normal(module_matrix.shape) + 10.0
    matrix = ExpressionMatrix(
        data=data,
        gene_ids=module_matrix.gene_ids,
        sample_ids=pd.Index([f"T{j:02d}" for j in range(module_matrix.n_samples)]),
    )
    return TaggedDataset(DatasetRole.COMPARISON_GROUP, "noise", matrix)


@pytest.fixture
def two_module_assignment(two_module_matrix):
    return planted_assignment(two_module_matrix)

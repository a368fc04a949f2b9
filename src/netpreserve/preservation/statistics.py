"""
Preservation statistic battery and permutation null.

For a reference module S (m genes) and one comparison dataset, four
structural statistics are computed on the comparison network restricted
to S:

    density            mean off-diagonal comparison adjacency
    clustering         mean weighted clustering coefficient
                       C_i = sum_jk a_ij a_jk a_ki / ((sum_j a_ij)^2 - sum_j a_ij^2)
    connectivity_rank  Spearman correlation of comparison vs reference
                       intramodular connectivity (TOM row sums within S)
    cor_cor            Pearson correlation of the reference and comparison
                       correlation matrices (upper triangles)

Each observed value is standardized against a permutation null built from
random gene sets R of size m drawn from the shared comparison gene pool:

    density, clustering          comparison network restricted to R
    connectivity_rank, cor_cor   reference rows of S paired with the
                                 comparison rows of R, i.e. the gene
                                 labels of the comparison are permuted

    Z = (observed - mean(null)) / sd(null)

and the Z-summary is the mean of the finite Z scores. Fewer than two
finite Z scores -> Z-summary is NaN. NaN values always carry an
UnstableStatisticResult note; they are never replaced by 0.

Random draws are addressed by (seed, module, comparison key, permutation),
so chunks can be computed in any order or in parallel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy import stats

from netpreserve.exceptions import UnstableStatisticResult
from netpreserve.network.similarity import correlation_to_adjacency
from netpreserve.network.topology import intramodular_connectivity, topological_overlap

__all__ = [
    'STATISTICS',
    'MIN_GENES',
    'MIN_SAMPLES',
    'NetworkParams',
    'battery',
    'permutation_rng',
    'permutation_null',
    'zscore',
    'PreservationScores',
    'score_gene_set',
]

STATISTICS: Tuple[str, ...] = ('density', 'clustering', 'connectivity_rank', 'cor_cor')

MIN_GENES = 3
MIN_SAMPLES = 3
MIN_NULL_STD = 1e-10


@dataclass(frozen=True)
class NetworkParams:
    """How module subnetworks are rebuilt in every dataset."""
    power: float = 6.0
    adjacency_type: str = "unsigned"
    overlap: str = "min"


def _correlation(standardized: np.ndarray) -> np.ndarray:
    corr = standardized @ standardized.T / standardized.shape[1]
    corr = np.clip(corr, -1.0, 1.0)
    np.fill_diagonal(corr, 1.0)
    return corr


def _pearson(x: np.ndarray, y: np.ndarray) -> float:
    if x.size < 2 or np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan
    return float(np.corrcoef(x, y)[0, 1])


def _spearman(x: np.ndarray, y: np.ndarray) -> float:
    if x.size < 2 or np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan
    return float(stats.spearmanr(x, y)[0])


def _clustering_coefficient(adjacency: np.ndarray) -> float:
    k = adjacency.sum(axis=1)
    triangles = ((adjacency @ adjacency) * adjacency).sum(axis=1)
    denominator = k ** 2 - (adjacency ** 2).sum(axis=1)
    valid = denominator > 0
    if not np.any(valid):
        return np.nan
    return float(np.mean(triangles[valid] / denominator[valid]))


def battery(
    reference_std: np.ndarray,
    comparison_std: np.ndarray,
    params: NetworkParams,
) -> Dict[str, float]:
    """
    Compute all statistics for one gene set.

    Args:
        reference_std: Standardized reference rows of the set (m x n_ref)
        comparison_std: Standardized comparison rows of the same genes,
            same order (m x n_cmp)
        params: Adjacency/TOM settings

    Returns:
        Statistic name -> value (NaN when undefined)
    """
    m = comparison_std.shape[0]
    if m < MIN_GENES or comparison_std.shape[1] < MIN_SAMPLES:
        return {name: np.nan for name in STATISTICS}

    ref_corr = _correlation(reference_std)
    cmp_corr = _correlation(comparison_std)
    ref_adj = correlation_to_adjacency(ref_corr, params.power, params.adjacency_type)
    cmp_adj = correlation_to_adjacency(cmp_corr, params.power, params.adjacency_type)

    upper = np.triu_indices(m, k=1)
    ref_kim = intramodular_connectivity(topological_overlap(ref_adj, overlap=params.overlap))
    cmp_kim = intramodular_connectivity(topological_overlap(cmp_adj, overlap=params.overlap))

    return {
        'density': float(cmp_adj[upper].mean()),
        'clustering': _clustering_coefficient(cmp_adj),
        'connectivity_rank': _spearman(cmp_kim, ref_kim),
        'cor_cor': _pearson(ref_corr[upper], cmp_corr[upper]),
    }


def permutation_rng(seed: int, module: int, comparison_key: int, permutation: int) -> np.random.Generator:
    """Independent generator for one permutation of one module/comparison."""
    return np.random.default_rng(
        np.random.SeedSequence(seed, spawn_key=(int(module), int(comparison_key), int(permutation)))
    )


def _null_chunk(
    module_reference: np.ndarray,
    comparison_pool: np.ndarray,
    params: NetworkParams,
    seed: int,
    module: int,
    comparison_key: int,
    start: int,
    stop: int,
) -> np.ndarray:
    n_pool = comparison_pool.shape[0]
    size = module_reference.shape[0]
    values = np.empty((stop - start, len(STATISTICS)))
    for row, permutation in enumerate(range(start, stop)):
        rng = permutation_rng(seed, module, comparison_key, permutation)
        # Draw order defines which module gene each random gene stands in for
        genes = rng.choice(n_pool, size=size, replace=False)
        result = battery(module_reference, comparison_pool[genes], params)
        values[row] = [result[name] for name in STATISTICS]
    return values


def permutation_null(
    module_reference: np.ndarray,
    comparison_pool: np.ndarray,
    n_permutations: int,
    params: NetworkParams,
    seed: int,
    module: int,
    comparison_key: int,
    n_jobs: int = 1,
    chunk_size: int = 50,
) -> np.ndarray:
    """
    Statistic values for `n_permutations` random comparison gene sets.

    Every random set has as many genes as the module. Its comparison rows
    are paired with the module's reference rows, so the correspondence
    statistics measure agreement under permuted gene labels while the
    network statistics describe a random comparison subnetwork.

    Args:
        module_reference: Standardized reference rows of the module, in a
            fixed (sorted) gene order
        comparison_pool: Standardized comparison rows of the gene pool
        n_jobs: joblib workers over permutation chunks (1 = in-process)

    Returns:
        Array (n_permutations x len(STATISTICS)); identical for any n_jobs
        or chunk_size
    """
    bounds = [
        (start, min(start + chunk_size, n_permutations))
        for start in range(0, n_permutations, chunk_size)
    ]
    if n_jobs == 1:
        chunks = [
            _null_chunk(module_reference, comparison_pool, params, seed, module, comparison_key, a, b)
            for a, b in bounds
        ]
    else:
        chunks = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_null_chunk)(
                module_reference, comparison_pool, params, seed, module, comparison_key, a, b
            )
            for a, b in bounds
        )
    if not chunks:
        return np.empty((0, len(STATISTICS)))
    return np.vstack(chunks)


def zscore(observed: float, null: np.ndarray) -> float:
    """Standardized score: (observed - null_mean) / null_std."""
    null = np.asarray(null, dtype=float)
    null = null[np.isfinite(null)]
    if not np.isfinite(observed) or len(null) < 2:
        return np.nan
    null_std = np.std(null)
    if null_std < MIN_NULL_STD:
        return np.nan
    return float((observed - np.mean(null)) / null_std)


@dataclass
class PreservationScores:
    """Observed statistics, their Z scores and the composite Z-summary."""
    observed: Dict[str, float]
    z_scores: Dict[str, float]
    z_summary: float
    n_permutations: int
    notes: List[UnstableStatisticResult] = field(default_factory=list)


def score_gene_set(
    reference_std: np.ndarray,
    comparison_std: np.ndarray,
    positions: Sequence[int],
    params: NetworkParams,
    n_permutations: int,
    seed: int,
    module: int,
    comparison_key: int,
    n_jobs: int = 1,
    chunk_size: int = 50,
    null: Optional[np.ndarray] = None,
) -> PreservationScores:
    """
    Score one gene set in one comparison dataset.

    Args:
        reference_std / comparison_std: Standardized pool rows, aligned
        positions: Pool rows of the module's genes (order is irrelevant)
        null: Precomputed permutation_null() output, to reuse across calls

    Returns:
        PreservationScores with NaN + note for every undefined quantity
    """
    positions = np.sort(np.asarray(positions, dtype=int))
    size = len(positions)
    notes: List[UnstableStatisticResult] = []

    if size < MIN_GENES:
        reason = f"gene set has {size} genes (need {MIN_GENES})"
        notes = [UnstableStatisticResult(name, reason) for name in STATISTICS]
        notes.append(UnstableStatisticResult('z_summary', reason))
        nan = {name: np.nan for name in STATISTICS}
        return PreservationScores(nan, dict(nan), np.nan, 0, notes)
    if comparison_std.shape[1] < MIN_SAMPLES:
        reason = f"comparison has {comparison_std.shape[1]} samples (need {MIN_SAMPLES})"
        notes = [UnstableStatisticResult(name, reason) for name in STATISTICS]
        notes.append(UnstableStatisticResult('z_summary', reason))
        nan = {name: np.nan for name in STATISTICS}
        return PreservationScores(nan, dict(nan), np.nan, 0, notes)

    observed = battery(reference_std[positions], comparison_std[positions], params)
    if null is None:
        null = permutation_null(
            reference_std[positions], comparison_std, n_permutations, params,
            seed, module, comparison_key, n_jobs=n_jobs, chunk_size=chunk_size,
        )

    z_scores = {}
    for j, name in enumerate(STATISTICS):
        if not np.isfinite(observed[name]):
            notes.append(UnstableStatisticResult(name, "statistic undefined (constant input)"))
            z_scores[name] = np.nan
            continue
        z = zscore(observed[name], null[:, j])
        if not np.isfinite(z):
            notes.append(UnstableStatisticResult(
                name, "null distribution degenerate (fewer than 2 finite values or zero variance)"
            ))
        z_scores[name] = z

    finite = [z for z in z_scores.values() if np.isfinite(z)]
    if len(finite) >= 2:
        z_summary = float(np.mean(finite))
    else:
        z_summary = np.nan
        notes.append(UnstableStatisticResult(
            'z_summary', f"only {len(finite)} statistic Z scores available (need 2)"
        ))

    return PreservationScores(observed, z_scores, z_summary, int(null.shape[0]), notes)

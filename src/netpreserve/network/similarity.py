"""
Similarity Engine: pairwise correlation -> weighted adjacency.

PROBLEM:
    A weighted coexpression network needs the full gene x gene correlation
    matrix, which is O(n^2 x m) to compute and O(n^2) to hold. Whole
    transcriptome inputs (20K+ genes) must not materialize intermediate
    (n+chunk)^2 arrays.

SOLUTION:
    Standardize every gene row ONCE, then compute correlations chunk by
    chunk as dot products of standardized rows:

        corr(i, j) = sum(Z_i * Z_j) / n_samples

    Each chunk is transformed to adjacency immediately, so soft-threshold
    scans only ever hold chunk x n_genes values.

Adjacency types:
    - unsigned:       |r| ** power
    - signed:         ((1 + r) / 2) ** power
    - signed_hybrid:  max(r, 0) ** power

    The adjacency diagonal is 0 so that degree sums exclude the self term.

Soft-threshold selection:
    pick_soft_threshold() scans candidate powers and returns the smallest
    one whose scale-free fit (signed R^2 of log10 p(k) ~ log10 k) reaches
    the target AND whose mean connectivity clears the floor. If none
    does, the best-fitting power is returned with satisfied=False and a
    ThresholdSelectionWarning; there is no silent fallback.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from tqdm import tqdm

from netpreserve.config import DEFAULT_POWERS
from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.exceptions import ThresholdSelectionWarning

logger = logging.getLogger(__name__)

__all__ = [
    'AdjacencyType',
    'DEFAULT_POWERS',
    'standardize_rows',
    'compute_correlation_matrix_chunked',
    'correlation_to_adjacency',
    'compute_adjacency',
    'adjacency_from_data',
    'connectivity_by_power',
    'ScaleFreeFit',
    'scale_free_fit',
    'SoftThresholdResult',
    'pick_soft_threshold',
]


class AdjacencyType(str, Enum):
    """How correlation sign is treated when forming adjacency."""

    UNSIGNED = "unsigned"
    SIGNED = "signed"
    SIGNED_HYBRID = "signed_hybrid"


def standardize_rows(data: np.ndarray) -> np.ndarray:
    """
    Z-score each row (population SD).

    Constant rows become all-zero so they correlate 0 with everything.
    """
    data = np.asarray(data, dtype=np.float64)
    data_mean = data.mean(axis=1, keepdims=True)
    data_std = data.std(axis=1, keepdims=True)
    data_std[data_std == 0] = 1.0
    return (data - data_mean) / data_std


def compute_correlation_matrix_chunked(
    data: np.ndarray,
    chunk_size: int = 500,
    dtype: type = np.float64,
    verbose: bool = False,
    output: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Pearson correlation of all gene pairs, computed in row chunks.

    Memory Usage:
        - Standardized data: n_genes x n_samples x 8 bytes
        - Per-chunk correlation: chunk_size x n_genes x 8 bytes
        - Output: n_genes x n_genes x itemsize (or a provided memmap)

    Args:
        data: Expression values (genes x samples)
        chunk_size: Genes per chunk
        dtype: Output dtype (float32 halves memory for large networks)
        verbose: Show progress bar
        output: Optional pre-allocated output array (e.g., np.memmap)

    Returns:
        Symmetric correlation matrix with unit diagonal
    """
    n_genes, n_samples = data.shape
    correlation = output if output is not None else np.zeros((n_genes, n_genes), dtype=dtype)

    standardized = standardize_rows(data)

    n_chunks = (n_genes + chunk_size - 1) // chunk_size
    chunk_iter = range(n_chunks)
    if verbose:
        chunk_iter = tqdm(chunk_iter, desc="Computing correlations", unit="chunk")

    for chunk_idx in chunk_iter:
        start_idx = chunk_idx * chunk_size
        end_idx = min(start_idx + chunk_size, n_genes)
        chunk_corr = (standardized[start_idx:end_idx] @ standardized.T) / n_samples
        chunk_corr = np.nan_to_num(chunk_corr, nan=0.0, posinf=0.0, neginf=0.0)
        correlation[start_idx:end_idx, :] = np.clip(chunk_corr, -1.0, 1.0)

    np.fill_diagonal(correlation, 1.0)
    return correlation


def _base_similarity(correlation: np.ndarray, adjacency_type: AdjacencyType) -> np.ndarray:
    adjacency_type = AdjacencyType(adjacency_type)
    if adjacency_type == AdjacencyType.UNSIGNED:
        return np.abs(correlation)
    if adjacency_type == AdjacencyType.SIGNED:
        return (1.0 + correlation) / 2.0
    return np.maximum(correlation, 0.0)


def correlation_to_adjacency(
    correlation: np.ndarray,
    power: float = 6.0,
    adjacency_type: AdjacencyType | str = AdjacencyType.UNSIGNED,
) -> np.ndarray:
    """
    Soft-threshold a square correlation matrix into adjacency.

    Returns:
        Symmetric adjacency in [0, 1] with zero diagonal
    """
    if power <= 0:
        raise ValueError(f"power must be positive, got {power}")
    adjacency = np.clip(_base_similarity(correlation, adjacency_type), 0.0, 1.0) ** power
    np.fill_diagonal(adjacency, 0.0)
    return adjacency


def adjacency_from_data(
    data: np.ndarray,
    power: float = 6.0,
    adjacency_type: AdjacencyType | str = AdjacencyType.UNSIGNED,
) -> np.ndarray:
    """Adjacency of a (small) genes x samples array, e.g. one module."""
    standardized = standardize_rows(data)
    correlation = np.clip(standardized @ standardized.T / data.shape[1], -1.0, 1.0)
    return correlation_to_adjacency(correlation, power, adjacency_type)


def compute_adjacency(
    matrix: ExpressionMatrix,
    power: float = 6.0,
    adjacency_type: AdjacencyType | str = AdjacencyType.UNSIGNED,
    chunk_size: int = 500,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Adjacency matrix for every gene pair of an expression matrix.

    Examples:
        >>> adj = compute_adjacency(matrix, power=6)
        >>> adj.loc["GENE_00001", "GENE_00002"]
    """
    logger.info(
        f"Computing {AdjacencyType(adjacency_type).value} adjacency: "
        f"{matrix.n_genes} genes, power={power}"
    )
    correlation = compute_correlation_matrix_chunked(
        matrix.data, chunk_size=chunk_size, verbose=verbose
    )
    adjacency = correlation_to_adjacency(correlation, power, adjacency_type)
    return pd.DataFrame(adjacency, index=matrix.gene_ids, columns=matrix.gene_ids)


def connectivity_by_power(
    data: np.ndarray,
    powers: Sequence[float] = DEFAULT_POWERS,
    adjacency_type: AdjacencyType | str = AdjacencyType.UNSIGNED,
    chunk_size: int = 500,
    verbose: bool = False,
) -> np.ndarray:
    """
    Whole-network connectivity of every gene for each candidate power.

    Only chunk_size x n_genes similarities are held at once.

    Returns:
        Array (n_genes x len(powers)); column j is the degree under powers[j]
    """
    n_genes, n_samples = data.shape
    standardized = standardize_rows(data)
    connectivity = np.zeros((n_genes, len(powers)))

    n_chunks = (n_genes + chunk_size - 1) // chunk_size
    chunk_iter = range(n_chunks)
    if verbose:
        chunk_iter = tqdm(chunk_iter, desc="Scanning soft-threshold powers", unit="chunk")

    for chunk_idx in chunk_iter:
        start_idx = chunk_idx * chunk_size
        end_idx = min(start_idx + chunk_size, n_genes)
        chunk_corr = np.clip(standardized[start_idx:end_idx] @ standardized.T / n_samples, -1.0, 1.0)
        similarity = np.clip(_base_similarity(chunk_corr, adjacency_type), 0.0, 1.0)
        rows = np.arange(end_idx - start_idx)
        similarity[rows, rows + start_idx] = 0.0
        for j, power in enumerate(powers):
            connectivity[start_idx:end_idx, j] = (similarity ** power).sum(axis=1)

    return connectivity


@dataclass(frozen=True)
class ScaleFreeFit:
    """Scale-free topology fit of a connectivity distribution."""
    r_squared: float
    slope: float

    @property
    def signed_r_squared(self) -> float:
        """-sign(slope) * R^2; only negative slopes count as scale-free."""
        if np.isnan(self.r_squared):
            return np.nan
        return float(-np.sign(self.slope) * self.r_squared)


def scale_free_fit(connectivity: np.ndarray, n_breaks: int = 10) -> ScaleFreeFit:
    """
    Fit log10 p(k) ~ log10 k over binned connectivity.

    Empty bins take the bin midpoint as k and probability 0 (offset by
    1e-9 before the log).

    Returns:
        ScaleFreeFit (NaN fields when connectivity is constant)
    """
    import statsmodels.api as sm

    k = np.asarray(connectivity, dtype=float)
    if k.size < 2 or np.ptp(k) < 1e-12:
        return ScaleFreeFit(r_squared=np.nan, slope=np.nan)

    edges = np.linspace(k.min(), k.max(), n_breaks + 1)
    bins = pd.cut(k, bins=edges, include_lowest=True)
    grouped = pd.Series(k).groupby(bins, observed=False)
    dk = grouped.mean().to_numpy()
    p_dk = grouped.size().to_numpy() / k.size

    midpoints = 0.5 * (edges[1:] + edges[:-1])
    fill = np.isnan(dk) | (dk <= 0)
    dk = np.where(fill, midpoints, dk)
    keep = dk > 0

    x = np.log10(dk[keep])
    y = np.log10(p_dk[keep] + 1e-9)
    if x.size < 3:
        return ScaleFreeFit(r_squared=np.nan, slope=np.nan)

    model = sm.OLS(y, sm.add_constant(x)).fit()
    return ScaleFreeFit(r_squared=float(model.rsquared), slope=float(model.params[1]))


@dataclass
class SoftThresholdResult:
    """
    Outcome of the soft-threshold scan.

    Attributes:
        power: Selected power (best candidate when not satisfied)
        satisfied: True if the power met both fit and connectivity targets
        fit_table: One row per candidate power with fit and connectivity columns
    """
    power: float
    satisfied: bool
    fit_table: pd.DataFrame


def pick_soft_threshold(
    matrix: ExpressionMatrix,
    powers: Sequence[float] = DEFAULT_POWERS,
    r2_target: float = 0.9,
    mean_connectivity_floor: float = 20.0,
    adjacency_type: AdjacencyType | str = AdjacencyType.UNSIGNED,
    n_breaks: int = 10,
    chunk_size: int = 500,
    verbose: bool = False,
) -> SoftThresholdResult:
    """
    Pick the smallest power giving approximate scale-free topology.

    Args:
        matrix: Reference expression matrix
        powers: Candidate powers (scanned in increasing order)
        r2_target: Minimum signed scale-free R^2
        mean_connectivity_floor: Minimum mean connectivity
        adjacency_type: Adjacency transform
        n_breaks: Bins for the connectivity distribution

    Returns:
        SoftThresholdResult; satisfied=False means the caller must choose
        a power explicitly

    Warns:
        ThresholdSelectionWarning: When no candidate meets both targets
    """
    powers = sorted(float(p) for p in powers)
    if not powers:
        raise ValueError("powers must not be empty")

    connectivity = connectivity_by_power(
        matrix.data, powers, adjacency_type, chunk_size=chunk_size, verbose=verbose
    )

    rows = []
    for j, power in enumerate(powers):
        k = connectivity[:, j]
        fit = scale_free_fit(k, n_breaks=n_breaks)
        rows.append({
            'power': power,
            'r_squared': fit.r_squared,
            'slope': fit.slope,
            'signed_r_squared': fit.signed_r_squared,
            'mean_k': float(np.mean(k)),
            'median_k': float(np.median(k)),
            'max_k': float(np.max(k)),
        })
    fit_table = pd.DataFrame(rows)

    passing = fit_table[
        (fit_table['signed_r_squared'] >= r2_target)
        & (fit_table['mean_k'] >= mean_connectivity_floor)
    ]
    if not passing.empty:
        power = float(passing['power'].iloc[0])
        logger.info(f"Selected soft-threshold power {power:g} (scale-free R^2 >= {r2_target})")
        return SoftThresholdResult(power=power, satisfied=True, fit_table=fit_table)

    if fit_table['signed_r_squared'].notna().any():
        best = fit_table.loc[fit_table['signed_r_squared'].idxmax()]
    else:
        best = fit_table.iloc[0]
    power = float(best['power'])
    warnings.warn(
        f"No power in {powers} reaches scale-free R^2 >= {r2_target} with mean "
        f"connectivity >= {mean_connectivity_floor}. Best candidate is {power:g} "
        f"(signed R^2 = {best['signed_r_squared']:.3f}, mean k = {best['mean_k']:.1f}); "
        "choose a power explicitly.",
        ThresholdSelectionWarning,
    )
    return SoftThresholdResult(power=power, satisfied=False, fit_table=fit_table)

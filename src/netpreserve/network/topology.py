"""
Topological Overlap Engine: adjacency -> TOM similarity.

For every gene pair (i, j) with l_ij the neighbourhood overlap:

    TOM(i, j) = (l_ij + a_ij) / (min(k_i, k_j) + 1 - a_ij)

    overlap="min":      l_ij = sum_k min(a_ik, a_jk)
    overlap="product":  l_ij = sum_k a_ik * a_jk

k_i is the adjacency row sum without the diagonal. Because the adjacency
diagonal is 0, the k = i and k = j terms vanish from both overlaps, so
the sums run over all k. The TOM diagonal is 1.

Memory:
    The "min" overlap needs a (rows x cols x n_genes) intermediate, so the
    matrix is filled in square blocks sized to stay under max_block_bytes.
    Only upper-triangle blocks are computed; the lower triangle is mirrored.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd
from tqdm import tqdm

logger = logging.getLogger(__name__)

__all__ = [
    'OVERLAP_MODES',
    'topological_overlap',
    'topological_overlap_frame',
    'tom_dissimilarity',
    'intramodular_connectivity',
]

OVERLAP_MODES = ("min", "product")

# 256 MB per block intermediate
DEFAULT_MAX_BLOCK_BYTES = 256 * 1024 ** 2


def _block_size(n_genes: int, overlap: str, max_block_bytes: int) -> int:
    if overlap == "product":
        # rows x cols float64 result only
        return max(1, min(n_genes, int(np.sqrt(max_block_bytes / 8))))
    return max(1, min(n_genes, int(np.sqrt(max_block_bytes / (8 * max(n_genes, 1))))))


def topological_overlap(
    adjacency: np.ndarray,
    overlap: str = "min",
    max_block_bytes: int = DEFAULT_MAX_BLOCK_BYTES,
    verbose: bool = False,
    output: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Compute the topological overlap matrix of a weighted adjacency.

    Args:
        adjacency: Symmetric adjacency in [0, 1] (diagonal is ignored)
        overlap: "min" or "product" neighbourhood overlap
        max_block_bytes: Upper bound on the per-block intermediate
        verbose: Show progress bar over row blocks
        output: Optional pre-allocated (n x n) array (e.g., np.memmap)

    Returns:
        Symmetric TOM in [0, 1] with unit diagonal
    """
    if overlap not in OVERLAP_MODES:
        raise ValueError(f"overlap must be one of {OVERLAP_MODES}, got {overlap!r}")

    adjacency = np.array(adjacency, dtype=np.float64)
    if adjacency.ndim != 2 or adjacency.shape[0] != adjacency.shape[1]:
        raise ValueError(f"adjacency must be square, got shape {adjacency.shape}")
    np.fill_diagonal(adjacency, 0.0)

    n_genes = adjacency.shape[0]
    tom = output if output is not None else np.empty((n_genes, n_genes), dtype=np.float64)
    if n_genes == 0:
        return tom

    degree = adjacency.sum(axis=1)
    block = _block_size(n_genes, overlap, max_block_bytes)
    starts = list(range(0, n_genes, block))

    row_iter = starts
    if verbose:
        row_iter = tqdm(starts, desc=f"TOM ({overlap} overlap)", unit="block")

    for r0 in row_iter:
        r1 = min(r0 + block, n_genes)
        rows = adjacency[r0:r1]
        for c0 in starts:
            if c0 < r0:
                continue
            c1 = min(c0 + block, n_genes)
            cols = adjacency[c0:c1]

            if overlap == "min":
                shared = np.minimum(rows[:, None, :], cols[None, :, :]).sum(axis=2)
            else:
                shared = rows @ cols.T

            a_ij = adjacency[r0:r1, c0:c1]
            k_min = np.minimum(degree[r0:r1, None], degree[None, c0:c1])
            with np.errstate(divide='ignore', invalid='ignore'):
                values = (shared + a_ij) / (k_min + 1.0 - a_ij)
            values = np.clip(np.nan_to_num(values, nan=0.0), 0.0, 1.0)

            tom[r0:r1, c0:c1] = values
            if c0 != r0:
                tom[c0:c1, r0:r1] = values.T

    np.fill_diagonal(tom, 1.0)
    return tom


def topological_overlap_frame(
    adjacency: pd.DataFrame,
    overlap: str = "min",
    max_block_bytes: int = DEFAULT_MAX_BLOCK_BYTES,
    verbose: bool = False,
) -> pd.DataFrame:
    """TOM of a labelled adjacency, keeping gene labels."""
    logger.info(f"Computing TOM ({overlap} overlap) for {adjacency.shape[0]} genes")
    tom = topological_overlap(
        adjacency.to_numpy(), overlap=overlap, max_block_bytes=max_block_bytes, verbose=verbose
    )
    return pd.DataFrame(tom, index=adjacency.index, columns=adjacency.columns)


def tom_dissimilarity(tom: np.ndarray) -> np.ndarray:
    """1 - TOM with an exact zero diagonal."""
    distance = 1.0 - np.asarray(tom, dtype=np.float64)
    distance = (distance + distance.T) / 2.0
    np.fill_diagonal(distance, 0.0)
    return np.clip(distance, 0.0, 1.0)


def intramodular_connectivity(tom: np.ndarray | pd.DataFrame) -> np.ndarray | pd.Series:
    """
    Per-gene connectivity: TOM row sum minus the self term.

    A labelled TOM gives a labelled Series.
    """
    if isinstance(tom, pd.DataFrame):
        values = tom.to_numpy()
        return pd.Series(values.sum(axis=1) - np.diag(values), index=tom.index, name="kIM")
    tom = np.asarray(tom)
    return tom.sum(axis=1) - np.diag(tom)

"""
Loaders for expression matrices, module assignments and gene lists.

Expected layouts:
    Expression matrix: CSV/TSV, first column = gene id, header = sample ids
    Module assignment: CSV with columns gene,module (0 = unassigned)
    Gene lists: directory of "<index>_M<label>.txt" files, one gene per line

Examples:
    >>> from netpreserve.io.loaders import load_expression_matrix
    >>> reference = load_expression_matrix(Path("diploid.csv"))
    >>> reference.shape
    (15000, 24)
"""

from __future__ import annotations

import logging
import re
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.network.clustering import UNASSIGNED
from netpreserve.network.modules import ModuleAssignment

logger = logging.getLogger(__name__)

__all__ = [
    'load_expression_matrix',
    'load_sample_metadata',
    'load_module_assignment',
    'load_gene_lists',
    'assignment_from_gene_lists',
]

GENE_LIST_PATTERN = re.compile(r'^(\d+)_M(\d+)$')


def _delimiter(path: Path) -> str:
    return '\t' if path.suffix.lower() in ('.tsv', '.txt', '.tab') else ','


def load_expression_matrix(
    path: Path,
    sample_metadata: Optional[pd.DataFrame] = None,
) -> ExpressionMatrix:
    """
    Load a genes x samples matrix from CSV or TSV.

    Duplicate gene or sample ids keep their first occurrence (with a
    warning). NaN values are kept and reported; integrity checks decide
    what to do with them.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the file is empty, non-numeric or contains infinities
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression file not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        df = pd.read_csv(path, index_col=0, sep=_delimiter(path))
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Expression file is empty: {path}") from e

    if df.shape[0] == 0:
        raise ValueError(f"Expression file contains no genes (rows): {path}")
    if df.shape[1] == 0:
        raise ValueError(f"Expression file contains no samples (columns): {path}")

    if df.index.duplicated().any():
        n_duplicates = df.index.duplicated().sum()
        warnings.warn(
            f"Found {n_duplicates} duplicate gene IDs. Using first occurrence of each.",
            UserWarning
        )
        df = df[~df.index.duplicated(keep='first')]

    if df.columns.duplicated().any():
        n_duplicates = df.columns.duplicated().sum()
        warnings.warn(
            f"Found {n_duplicates} duplicate sample IDs. Using first occurrence of each.",
            UserWarning
        )
        df = df.loc[:, ~df.columns.duplicated(keep='first')]

    try:
        numeric = df.apply(pd.to_numeric, errors='raise')
    except (ValueError, TypeError) as e:
        raise ValueError(f"Expression file contains non-numeric values: {e}") from e

    data = numeric.to_numpy(dtype=float)
    if np.isinf(data).any():
        raise ValueError(
            f"Expression file contains {np.isinf(data).sum()} infinite values. "
            "Please clean data before loading."
        )
    if np.isnan(data).any():
        n_nan = int(np.isnan(data).sum())
        warnings.warn(
            f"Found {n_nan:,} NaN values ({100 * n_nan / data.size:.2f}% of data). "
            "Integrity checks will reject the affected genes.",
            UserWarning
        )

    gene_ids = pd.Index(df.index.astype(str))
    sample_ids = pd.Index(df.columns.astype(str))
    if sample_metadata is not None:
        sample_metadata = sample_metadata.reindex(sample_ids)

    matrix = ExpressionMatrix(data, gene_ids, sample_ids, sample_metadata=sample_metadata)
    logger.info(f"Loaded {matrix.n_genes} genes x {matrix.n_samples} samples from {path}")
    return matrix


def load_sample_metadata(path: Path, sample_col: Optional[str] = None) -> pd.DataFrame:
    """Sample annotation table indexed by sample id (first column by default)."""
    path = Path(path)
    df = pd.read_csv(path, sep=_delimiter(path))
    index_col = sample_col if sample_col is not None else df.columns[0]
    df[index_col] = df[index_col].astype(str)
    return df.set_index(index_col)


def load_module_assignment(path: Path) -> ModuleAssignment:
    """
    Read a gene,module CSV.

    Raises:
        ValueError: On missing columns, non-integer labels or duplicate genes
    """
    path = Path(path)
    df = pd.read_csv(path, sep=_delimiter(path))
    missing = {'gene', 'module'} - set(df.columns)
    if missing:
        raise ValueError(f"Module assignment {path} lacks columns: {sorted(missing)}")
    if df['gene'].duplicated().any():
        raise ValueError(f"Module assignment {path} lists {df['gene'].duplicated().sum()} genes twice")
    try:
        labels = df['module'].astype(int)
    except ValueError as e:
        raise ValueError(f"Module labels in {path} must be integers: {e}") from e
    return ModuleAssignment.from_labels(df['gene'].astype(str).tolist(), labels.to_numpy())


def load_gene_lists(directory: Path) -> Dict[str, List[str]]:
    """
    Read "<index>_M<label>.txt" gene lists, ordered by index.

    Files not matching the naming scheme are ignored.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Gene list directory not found: {directory}")

    lists = []
    for path in directory.glob('*.txt'):
        match = GENE_LIST_PATTERN.match(path.stem)
        if match is None:
            logger.debug(f"Skipping {path.name}: not an <index>_M<label> gene list")
            continue
        genes = [line.strip() for line in path.read_text().splitlines() if line.strip()]
        lists.append((int(match.group(1)), path.stem, genes))

    return {name: genes for _, name, genes in sorted(lists)}


def assignment_from_gene_lists(
    gene_lists: Dict[str, List[str]],
    gene_ids: Sequence[str],
) -> ModuleAssignment:
    """
    Rebuild a total assignment over `gene_ids` from named gene lists.

    Genes in no list are unassigned.

    Raises:
        ValueError: If a list name is malformed or a gene is in two lists
    """
    labels = pd.Series(UNASSIGNED, index=pd.Index(list(gene_ids)), dtype=int)
    seen = set()
    for name, genes in gene_lists.items():
        match = GENE_LIST_PATTERN.match(name)
        if match is None:
            raise ValueError(f"Gene list name '{name}' does not match <index>_M<label>")
        overlap = seen.intersection(genes)
        if overlap:
            raise ValueError(f"Genes listed in more than one module: {sorted(overlap)[:10]}")
        seen.update(genes)
        labels.loc[list(genes)] = int(match.group(2))
    return ModuleAssignment(labels)

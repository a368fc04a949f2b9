"""
Writers for matrices, module assignments, eigengenes and score tables.

File naming is left to the caller; every writer creates missing parent
directories and overwrites existing files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List

import pandas as pd

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.network.modules import ModuleAssignment

logger = logging.getLogger(__name__)

__all__ = [
    'write_expression_matrix',
    'write_module_assignment',
    'write_eigengenes',
    'write_gene_lists',
    'write_preservation_table',
    'write_json',
]


def _prepare(path: Path) -> Path:
    path = Path(path)
    if path.parent != Path('.') and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_expression_matrix(matrix: ExpressionMatrix, path: Path, write_provenance: bool = False) -> None:
    """
    Write values to `path` (CSV, genes as rows).

    With write_provenance, ProvenanceFlag values go to "<stem>.flags.csv"
    next to it.
    """
    if matrix.data.size == 0:
        raise ValueError("Cannot write empty matrix")
    path = _prepare(path)
    matrix.to_frame().to_csv(path)
    logger.info(f"Wrote expression matrix to {path}")

    if write_provenance:
        flags_path = path.with_name(f"{path.stem}.flags.csv")
        pd.DataFrame(matrix.provenance, index=matrix.gene_ids, columns=matrix.sample_ids).to_csv(flags_path)
        logger.info(f"Wrote provenance flags to {flags_path}")


def write_module_assignment(assignment: ModuleAssignment, path: Path) -> None:
    """gene,module CSV."""
    path = _prepare(path)
    assignment.to_frame().to_csv(path, index=False)
    logger.info(f"Wrote module assignment ({len(assignment.modules)} modules) to {path}")


def write_eigengenes(eigengenes: pd.DataFrame, path: Path) -> None:
    path = _prepare(path)
    eigengenes.to_csv(path, index_label='sample')
    logger.info(f"Wrote {eigengenes.shape[1]} eigengenes to {path}")


def write_gene_lists(gene_lists: Dict[str, List[str]], directory: Path) -> List[Path]:
    """One "<name>.txt" per module, one gene per line."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for name, genes in gene_lists.items():
        path = directory / f"{name}.txt"
        path.write_text("\n".join(genes) + "\n")
        paths.append(path)
    logger.info(f"Wrote {len(paths)} gene lists to {directory}")
    return paths


def write_preservation_table(records: pd.DataFrame, path: Path) -> None:
    """Preservation records as CSV (NaN Z-summaries written as empty cells)."""
    path = _prepare(path)
    records.to_csv(path, index=False)
    logger.info(f"Wrote {len(records)} preservation records to {path}")


def write_json(payload: dict, path: Path) -> None:
    path = _prepare(path)
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2, default=str)
    logger.info(f"Wrote {path}")

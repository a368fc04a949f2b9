"""
Preservation Statistic Engine: module x dataset permutation tests.

Execution model:
    - Outer: one unit of work per (module, comparison dataset), spread over
      a concurrent.futures pool (threads by default, processes optional)
    - Inner: permutation chunks of one unit via joblib.Parallel
    - Read-only inputs only: each comparison's standardized gene pool is
      built once in the parent and shared by its units

Failure model:
    DimensionMismatchError / InputIntegrityError end the affected unit
    only; the unit returns a ModuleOutcome carrying the error and sibling
    units continue. NaN statistics are data, not errors.

Checkpointing:
    With checkpoint_dir set, every successful unit is written as one JSON
    file when it completes, together with a fingerprint of everything that
    determines the score (reference and comparison data, module genes,
    network and permutation settings). A rerun loads finished units whose
    fingerprint matches and recomputes the rest.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import zlib
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from netpreserve.config import NetworkConfig, PreservationConfig
from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.exceptions import (
    DimensionMismatchError,
    InputIntegrityError,
    UnstableStatisticResult,
)
from netpreserve.network.modules import ModuleAssignment
from netpreserve.network.similarity import standardize_rows
from netpreserve.preservation.records import (
    DatasetRole,
    ModuleOutcome,
    PreservationRecord,
    TaggedDataset,
    aggregate_outcomes,
)
from netpreserve.preservation.statistics import (
    STATISTICS,
    NetworkParams,
    permutation_null,
    score_gene_set,
)
from netpreserve.simulation.duplication import SimulationDescriptor

logger = logging.getLogger(__name__)

__all__ = [
    'SharedPool',
    'prepare_pool',
    'comparison_key',
    'matrix_digest',
    'UnitTask',
    'score_module_unit',
    'PreservationResult',
    'PreservationEngine',
]


def comparison_key(label: str) -> int:
    """Stable integer key of a dataset label for seed derivation."""
    return zlib.crc32(label.encode("utf-8"))


def matrix_digest(matrix: ExpressionMatrix) -> str:
    """Short SHA256 digest of identifiers and values of a matrix."""
    hasher = hashlib.sha256()
    for ids in (matrix.gene_ids, matrix.sample_ids):
        for value in ids:
            hasher.update(str(value).encode("utf-8"))
            hasher.update(b"|")
    hasher.update(np.ascontiguousarray(matrix.data, dtype=float).tobytes())
    return hasher.hexdigest()[:16]


@dataclass(frozen=True)
class SharedPool:
    """
    Genes shared by the reference and one comparison dataset.

    Attributes:
        gene_ids: Shared genes, sorted
        reference_std / comparison_std: Standardized rows, aligned to gene_ids
        finite: Genes whose comparison values are all finite
    """
    gene_ids: pd.Index
    reference_std: np.ndarray
    comparison_std: np.ndarray
    finite: np.ndarray

    def null_comparison(self) -> np.ndarray:
        """Comparison rows eligible for random gene sets."""
        if self.finite.all():
            return self.comparison_std
        return self.comparison_std[self.finite]


def prepare_pool(reference: ExpressionMatrix, comparison: ExpressionMatrix) -> SharedPool:
    """Standardize the shared gene pool of two datasets once."""
    shared = reference.gene_ids.intersection(comparison.gene_ids).sort_values()
    reference_values = reference.data[reference.gene_positions(shared)]
    comparison_values = comparison.data[comparison.gene_positions(shared)]
    finite = np.isfinite(comparison_values).all(axis=1)
    comparison_std = standardize_rows(np.where(np.isfinite(comparison_values), comparison_values, 0.0))
    return SharedPool(
        gene_ids=pd.Index(shared),
        reference_std=standardize_rows(reference_values),
        comparison_std=comparison_std,
        finite=finite,
    )


@dataclass(frozen=True)
class UnitTask:
    """Everything one module x dataset unit needs (picklable)."""
    module: int
    genes: Tuple[str, ...]
    reference_label: str
    comparison_label: str
    role: DatasetRole
    descriptor: Optional[SimulationDescriptor]
    pool: SharedPool
    params: NetworkParams
    n_permutations: int
    min_module_size: int
    seed: int
    permutation_jobs: int = 1
    permutation_chunk_size: int = 50
    fingerprint: str = ""


def _score(task: UnitTask) -> PreservationRecord:
    pool = task.pool
    positions = pool.gene_ids.get_indexer(list(task.genes))
    if np.any(positions < 0):
        missing = sorted(g for g, p in zip(task.genes, positions) if p < 0)
        raise DimensionMismatchError(
            f"Dataset '{task.comparison_label}' lacks {len(missing)} genes of module "
            f"{task.module}: {missing[:10]}{'...' if len(missing) > 10 else ''}",
            missing_genes=missing,
        )
    not_finite = ~pool.finite[positions]
    if np.any(not_finite):
        failed = sorted(np.asarray(task.genes)[not_finite].tolist())
        raise InputIntegrityError(
            f"Dataset '{task.comparison_label}' has missing or non-finite values for "
            f"{len(failed)} genes of module {task.module}",
            failed_genes=failed,
        )

    size = len(task.genes)
    common = dict(
        module=task.module,
        reference=task.reference_label,
        comparison=task.comparison_label,
        role=task.role,
        module_size=size,
        descriptor=task.descriptor,
    )
    if size < task.min_module_size:
        nan = {name: np.nan for name in STATISTICS}
        note = UnstableStatisticResult(
            'z_summary', f"module has {size} genes (minimum {task.min_module_size})"
        )
        return PreservationRecord(z_summary=np.nan, z_scores=nan, observed=dict(nan), notes=(note,), **common)

    null_comparison = pool.null_comparison()
    if null_comparison.shape[0] < size:
        note = UnstableStatisticResult(
            'z_summary', f"gene pool of {null_comparison.shape[0]} genes is smaller than the module"
        )
        return PreservationRecord(z_summary=np.nan, notes=(note,), **common)

    positions = np.sort(positions)
    null = permutation_null(
        pool.reference_std[positions], null_comparison, task.n_permutations, task.params,
        task.seed, task.module, comparison_key(task.comparison_label),
        n_jobs=task.permutation_jobs, chunk_size=task.permutation_chunk_size,
    )
    scores = score_gene_set(
        pool.reference_std, pool.comparison_std, positions, task.params,
        task.n_permutations, task.seed, task.module, comparison_key(task.comparison_label),
        null=null,
    )
    return PreservationRecord(
        z_summary=scores.z_summary,
        z_scores=scores.z_scores,
        observed=scores.observed,
        n_permutations=scores.n_permutations,
        notes=tuple(scores.notes),
        **common,
    )


def score_module_unit(task: UnitTask) -> ModuleOutcome:
    """
    Worker entry point for one module x dataset unit.

    Integrity and dimension errors become a failed outcome.
    """
    try:
        record = _score(task)
    except (DimensionMismatchError, InputIntegrityError) as e:
        logger.warning(f"Module {task.module} vs '{task.comparison_label}' failed: {e}")
        return ModuleOutcome(task.module, task.comparison_label, error=str(e), error_type=type(e).__name__)
    return ModuleOutcome(task.module, task.comparison_label, record=record)


@dataclass
class PreservationResult:
    """
    Outcomes of one engine run plus their aggregated tables.

    Attributes:
        outcomes: One ModuleOutcome per module x dataset unit
        records: Successful units (see RECORD_COLUMNS)
        failures: Failed units with error type and message
    """
    outcomes: List[ModuleOutcome] = field(default_factory=list)
    records: pd.DataFrame = field(default_factory=pd.DataFrame)
    failures: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def summary_table(self) -> pd.DataFrame:
        """module, comparison label, group label, Z-summary, module size."""
        if self.records.empty:
            return pd.DataFrame(columns=['module', 'comparison', 'reference', 'z_summary', 'module_size'])
        return self.records[['module', 'comparison', 'reference', 'z_summary', 'module_size']].copy()


def _checkpoint_path(checkpoint_dir: Path, label: str, module: int) -> Path:
    safe = re.sub(r'[^A-Za-z0-9._-]+', '_', label)
    return checkpoint_dir / f"{safe}_{comparison_key(label):08x}__M{module}.json"


class PreservationEngine:
    """
    Score reference modules in comparison datasets.

    Examples:
        >>> engine = PreservationEngine(
        ...     PreservationConfig(n_permutations=200, seed=42),
        ...     NetworkConfig(power=6),
        ... )
        >>> result = engine.run(reference, assignment, [group_a, group_b])
        >>> result.records[['module', 'comparison', 'z_summary']]
    """

    def __init__(
        self,
        config: Optional[PreservationConfig] = None,
        network: Optional[NetworkConfig] = None,
    ):
        self.config = config if config is not None else PreservationConfig()
        network = network if network is not None else NetworkConfig(power=6.0)
        if network.power is None:
            raise ValueError("PreservationEngine needs an explicit soft-threshold power")
        self.params = NetworkParams(
            power=float(network.power),
            adjacency_type=network.adjacency_type,
            overlap=network.overlap,
        )

    def fingerprint(self, reference_digest: str, comparison_digest: str, genes: Sequence[str]) -> str:
        """Digest of everything that determines one unit's score."""
        payload = {
            'reference': reference_digest,
            'comparison': comparison_digest,
            'genes': sorted(genes),
            'params': asdict(self.params),
            'n_permutations': self.config.n_permutations,
            'min_module_size': self.config.min_module_size,
            'seed': self.config.seed,
        }
        content = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]

    def _load_checkpoint(self, label: str, module: int, fingerprint: str) -> Optional[ModuleOutcome]:
        checkpoint_dir = self.config.checkpoint_dir
        if checkpoint_dir is None:
            return None
        path = _checkpoint_path(Path(checkpoint_dir), label, module)
        if not path.exists():
            return None
        with open(path) as f:
            payload = json.load(f)
        if payload.get('fingerprint') != fingerprint or 'record' not in payload:
            logger.info(f"Recomputing {path.name}: data or settings changed since it was written")
            return None
        record = PreservationRecord.from_dict(payload['record'])
        if record.comparison != label or record.module != module:
            logger.warning(f"Ignoring checkpoint {path}: it belongs to another unit")
            return None
        return ModuleOutcome(module, label, record=record)

    def _save_checkpoint(self, outcome: ModuleOutcome, fingerprint: str) -> None:
        checkpoint_dir = self.config.checkpoint_dir
        if checkpoint_dir is None or not outcome.ok:
            return
        checkpoint_dir = Path(checkpoint_dir)
        checkpoint_dir.mkdir(parents=True, exist_ok=True)
        path = _checkpoint_path(checkpoint_dir, outcome.comparison, outcome.module)
        with open(path, 'w') as f:
            json.dump({'fingerprint': fingerprint, 'record': outcome.record.to_dict()}, f, indent=2)

    def run(
        self,
        reference: TaggedDataset,
        assignment: ModuleAssignment,
        datasets: Sequence[TaggedDataset],
        modules: Optional[Sequence[int]] = None,
    ) -> PreservationResult:
        """
        Score every module in every dataset.

        Args:
            reference: The dataset the modules were detected in (role REFERENCE)
            assignment: Reference module assignment
            datasets: Comparison groups and/or simulation replicates
            modules: Module labels to score (default: all assigned modules)

        Returns:
            PreservationResult with one outcome per module x dataset

        Raises:
            ValueError: On a mis-tagged reference or duplicate dataset labels
            DimensionMismatchError: If the assignment has genes the reference lacks
        """
        if reference.role != DatasetRole.REFERENCE:
            raise ValueError(f"Reference dataset '{reference.label}' has role {reference.role.value}")
        labels = [d.label for d in datasets]
        if len(set(labels)) != len(labels):
            raise ValueError(f"Dataset labels must be unique, got {labels}")
        reference.matrix.gene_positions(assignment.gene_ids)

        config = self.config
        modules = list(assignment.modules if modules is None else modules)
        unknown = set(modules) - set(assignment.modules)
        if unknown:
            raise ValueError(f"Modules not in the reference assignment: {sorted(unknown)}")

        checkpointing = config.checkpoint_dir is not None
        reference_digest = f"{reference.label}:{matrix_digest(reference.matrix)}" if checkpointing else ""

        outcomes: List[ModuleOutcome] = []
        tasks: List[UnitTask] = []
        for dataset in datasets:
            pool = None
            comparison_digest = matrix_digest(dataset.matrix) if checkpointing else ""
            for module in modules:
                genes = tuple(assignment.genes(module))
                fingerprint = ""
                cached = None
                if checkpointing:
                    fingerprint = self.fingerprint(reference_digest, comparison_digest, genes)
                    cached = self._load_checkpoint(dataset.label, module, fingerprint)
                if cached is not None:
                    outcomes.append(cached)
                    continue
                if pool is None:
                    pool = prepare_pool(reference.matrix, dataset.matrix)
                tasks.append(UnitTask(
                    module=module,
                    genes=genes,
                    reference_label=reference.label,
                    comparison_label=dataset.label,
                    role=dataset.role,
                    descriptor=dataset.descriptor,
                    pool=pool,
                    params=self.params,
                    n_permutations=config.n_permutations,
                    min_module_size=config.min_module_size,
                    seed=config.seed,
                    permutation_jobs=config.permutation_jobs,
                    permutation_chunk_size=config.permutation_chunk_size,
                    fingerprint=fingerprint,
                ))

        if outcomes:
            logger.info(f"Loaded {len(outcomes)} finished units from {config.checkpoint_dir}")
        logger.info(
            f"Scoring {len(tasks)} units ({len(modules)} modules x {len(datasets)} datasets, "
            f"{config.n_permutations} permutations)"
        )
        outcomes.extend(self._execute(tasks))

        records, failures = aggregate_outcomes(outcomes)
        if len(failures):
            logger.warning(f"{len(failures)} of {len(outcomes)} units failed")
        return PreservationResult(outcomes=outcomes, records=records, failures=failures)

    def _execute(self, tasks: List[UnitTask]) -> List[ModuleOutcome]:
        config = self.config
        results: List[ModuleOutcome] = []

        if config.n_jobs == 1:
            for i, task in enumerate(tasks):
                outcome = self._guarded(task)
                self._save_checkpoint(outcome, task.fingerprint)
                results.append(outcome)
                if (i + 1) % 10 == 0 or i + 1 == len(tasks):
                    logger.info(f"Progress: {i + 1}/{len(tasks)} units")
            return results

        executor_cls = ProcessPoolExecutor if config.use_processes else ThreadPoolExecutor
        completed = 0
        with executor_cls(max_workers=config.n_jobs) as executor:
            futures = {executor.submit(score_module_unit, task): task for task in tasks}

            for future in as_completed(futures):
                task = futures[future]
                completed += 1
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.error(f"Failed to score module {task.module} in '{task.comparison_label}': {e}")
                    outcome = ModuleOutcome(
                        task.module, task.comparison_label, error=str(e), error_type=type(e).__name__
                    )
                self._save_checkpoint(outcome, task.fingerprint)
                results.append(outcome)
                if completed % 10 == 0 or completed == len(tasks):
                    pct = 100 * completed / len(tasks)
                    logger.info(f"Progress: {completed}/{len(tasks)} units ({pct:.1f}%)")
        return results

    @staticmethod
    def _guarded(task: UnitTask) -> ModuleOutcome:
        try:
            return score_module_unit(task)
        except Exception as e:
            logger.error(f"Failed to score module {task.module} in '{task.comparison_label}': {e}")
            return ModuleOutcome(task.module, task.comparison_label, error=str(e), error_type=type(e).__name__)

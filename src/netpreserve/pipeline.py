"""
End-to-end workflows chaining the engines.

    build_network()            integrity check -> power -> adjacency -> TOM
    detect_reference_modules() build_network() + ModuleDetector (+ submodules)
    run_preservation()         score reference modules in tagged datasets
    run_simulation_study()     duplicate the reference, score one module
                               in every simulated replicate

Integrity failures of a comparison dataset do not stop the run: every
module of that dataset is reported as a failed unit instead.

Examples:
    >>> config = PipelineConfig.from_dict(load_config(Path("run.yaml")))
    >>> reference = TaggedDataset(DatasetRole.REFERENCE, "2x", load_expression_matrix(path))
    >>> modules = detect_reference_modules(reference.matrix, config)
    >>> result = run_preservation(reference, modules.assignment, [tetraploid], config,
    ...                           power=modules.network.power)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from itertools import islice
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from netpreserve.config import NetworkConfig, PipelineConfig
from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.exceptions import InputIntegrityError
from netpreserve.network.modules import (
    ModuleAssignment,
    ModuleDetectionResult,
    ModuleDetector,
    detect_submodules,
)
from netpreserve.network.similarity import (
    SoftThresholdResult,
    compute_adjacency,
    adjacency_from_data,
    pick_soft_threshold,
)
from netpreserve.network.topology import intramodular_connectivity, topological_overlap
from netpreserve.preservation.engine import PreservationEngine, PreservationResult
from netpreserve.preservation.records import (
    DatasetRole,
    ModuleOutcome,
    TaggedDataset,
    aggregate_outcomes,
)
from netpreserve.quality.integrity import check_expression_integrity
from netpreserve.simulation.duplication import (
    SimulatedDataset,
    SimulationDescriptor,
    simulate_duplication,
)

logger = logging.getLogger(__name__)

__all__ = [
    'NetworkBuild',
    'build_network',
    'ReferenceModules',
    'detect_reference_modules',
    'run_preservation',
    'module_connectivity',
    'SimulationStudy',
    'run_simulation_study',
]


@dataclass
class NetworkBuild:
    """
    Network of one dataset.

    Attributes:
        power: Soft-threshold power used
        soft_threshold: Scan result when the power was selected automatically
        tom: Topological overlap matrix aligned with gene_ids
        connectivity: Whole-network TOM connectivity per gene
    """
    gene_ids: pd.Index
    power: float
    tom: np.ndarray
    connectivity: pd.Series
    soft_threshold: Optional[SoftThresholdResult] = None


def build_network(
    matrix: ExpressionMatrix,
    config: Optional[NetworkConfig] = None,
    verbose: bool = False,
) -> NetworkBuild:
    """
    Integrity check, power selection, adjacency and TOM.

    Raises:
        InputIntegrityError: Before any similarity is computed
    """
    config = config if config is not None else NetworkConfig()
    check_expression_integrity(matrix)

    soft_threshold = None
    power = config.power
    if power is None:
        soft_threshold = pick_soft_threshold(
            matrix,
            powers=config.candidate_powers,
            r2_target=config.r2_target,
            mean_connectivity_floor=config.mean_connectivity_floor,
            adjacency_type=config.adjacency_type,
            chunk_size=config.chunk_size,
            verbose=verbose,
        )
        power = soft_threshold.power

    adjacency = compute_adjacency(
        matrix, power, config.adjacency_type, chunk_size=config.chunk_size, verbose=verbose
    )
    tom = topological_overlap(
        adjacency.to_numpy(), overlap=config.overlap,
        max_block_bytes=config.max_block_bytes, verbose=verbose,
    )
    connectivity = pd.Series(intramodular_connectivity(tom), index=matrix.gene_ids, name="k")
    return NetworkBuild(
        gene_ids=matrix.gene_ids,
        power=float(power),
        tom=tom,
        connectivity=connectivity,
        soft_threshold=soft_threshold,
    )


@dataclass
class ReferenceModules:
    """Network, modules and (optionally) submodules of the reference."""
    network: NetworkBuild
    detection: ModuleDetectionResult
    submodules: Dict[int, ModuleDetectionResult] = field(default_factory=dict)

    @property
    def assignment(self) -> ModuleAssignment:
        return self.detection.assignment


def detect_reference_modules(
    matrix: ExpressionMatrix,
    config: Optional[PipelineConfig] = None,
    with_submodules: bool = False,
    verbose: bool = False,
) -> ReferenceModules:
    """Build the reference network and detect its modules."""
    config = config if config is not None else PipelineConfig()
    network = build_network(matrix, config.network, verbose=verbose)

    detector = ModuleDetector(config.modules, seed=config.preservation.seed)
    detection = detector.detect(matrix, network.tom)
    logger.info(f"Reference modules: {detection.to_dict()['module_sizes']}")

    submodules = {}
    if with_submodules:
        submodules = detect_submodules(
            matrix,
            detection.assignment,
            power=network.power,
            adjacency_type=config.network.adjacency_type,
            overlap=config.network.overlap,
            config=config.submodules,
            seed=config.preservation.seed,
        )
    return ReferenceModules(network=network, detection=detection, submodules=submodules)


def run_preservation(
    reference: TaggedDataset,
    assignment: ModuleAssignment,
    datasets: Sequence[TaggedDataset],
    config: Optional[PipelineConfig] = None,
    power: Optional[float] = None,
    modules: Optional[Sequence[int]] = None,
) -> PreservationResult:
    """
    Score reference modules in every dataset.

    Datasets failing the integrity check contribute one failed outcome per
    module; all other datasets are scored normally.

    Args:
        power: Soft-threshold power (defaults to config.network.power)
    """
    config = config if config is not None else PipelineConfig()
    power = power if power is not None else config.network.power
    if power is None:
        raise ValueError("A soft-threshold power is required; run detect_reference_modules() first")

    modules = list(assignment.modules if modules is None else modules)
    failed: List[ModuleOutcome] = []
    valid: List[TaggedDataset] = []
    for dataset in datasets:
        try:
            check_expression_integrity(dataset.matrix, min_samples=0)
        except InputIntegrityError as e:
            logger.warning(f"Dataset '{dataset.label}' failed integrity checks: {e}")
            failed.extend(
                ModuleOutcome(m, dataset.label, error=str(e), error_type=type(e).__name__)
                for m in modules
            )
            continue
        valid.append(dataset)

    engine = PreservationEngine(config.preservation, replace(config.network, power=power))
    result = engine.run(reference, assignment, valid, modules=modules)
    if not failed:
        return result

    outcomes = result.outcomes + failed
    records, failures = aggregate_outcomes(outcomes)
    return PreservationResult(outcomes=outcomes, records=records, failures=failures)


def module_connectivity(
    matrix: ExpressionMatrix,
    genes: Sequence[str],
    power: float,
    adjacency_type: str = "unsigned",
    overlap: str = "min",
) -> pd.Series:
    """Intramodular TOM connectivity of a module's genes."""
    sub = matrix.subset_genes(genes)
    tom = topological_overlap(adjacency_from_data(sub.data, power, adjacency_type), overlap=overlap)
    return pd.Series(intramodular_connectivity(tom), index=sub.gene_ids, name="kIM")


@dataclass
class SimulationStudy:
    """Descriptors of the simulated replicates and their preservation scores."""
    module: int
    descriptors: List[SimulationDescriptor]
    preservation: PreservationResult

    def median_z_by_noise(self) -> pd.DataFrame:
        """Median Z-summary per noise factor and scenario."""
        records = self.preservation.records
        if records.empty:
            return pd.DataFrame(columns=['noise_factor', 'scenario', 'median_z_summary'])
        return (
            records.groupby(['noise_factor', 'scenario'])['z_summary']
            .median()
            .rename('median_z_summary')
            .reset_index()
        )


def _batched(items: Iterable, size: int) -> Iterator[list]:
    iterator = iter(items)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


def run_simulation_study(
    reference: TaggedDataset,
    assignment: ModuleAssignment,
    module: int,
    config: Optional[PipelineConfig] = None,
    power: Optional[float] = None,
    on_dataset: Optional[Callable[[SimulatedDataset], None]] = None,
    verbose: bool = False,
) -> SimulationStudy:
    """
    Duplicate the reference dataset and score one module in every replicate.

    The whole reference is duplicated so that every replicate keeps a full
    gene pool for the permutation null. Hub genes come from the module's
    intramodular connectivity in the reference and random-imbalance genes
    are drawn from the module's genes, so both imbalance scenarios perturb
    the module being scored.

    Replicates are scored as they are generated, a few at a time, and
    dropped afterwards; only their descriptors are kept.

    Args:
        on_dataset: Called with every simulated replicate before it is
            scored (e.g. to write it to disk)
    """
    config = config if config is not None else PipelineConfig()
    power = power if power is not None else config.network.power
    if power is None:
        raise ValueError("A soft-threshold power is required for simulation studies")
    if module not in assignment.modules:
        raise ValueError(f"Module {module} is not in the reference assignment")

    sim = config.simulation
    genes = assignment.genes(module)
    connectivity = module_connectivity(
        reference.matrix, genes, power,
        config.network.adjacency_type, config.network.overlap,
    )
    simulated = simulate_duplication(
        reference.matrix,
        noise_factors=sim.noise_factors,
        numsim=sim.numsim,
        scenarios=sim.scenarios,
        connectivity=connectivity,
        hub_quantile=sim.hub_quantile,
        imbalance_fraction=sim.imbalance_fraction,
        imbalance_sample_fraction=sim.imbalance_sample_fraction,
        random_pool=genes,
        seed=sim.seed,
        verbose=verbose,
    )

    descriptors: List[SimulationDescriptor] = []
    outcomes: List[ModuleOutcome] = []
    for batch in _batched(simulated, max(1, config.preservation.n_jobs)):
        if on_dataset is not None:
            for s in batch:
                on_dataset(s)
        datasets = [
            TaggedDataset(DatasetRole.SIMULATION_REPLICATE, s.descriptor.label, s.matrix, s.descriptor)
            for s in batch
        ]
        result = run_preservation(
            reference, assignment, datasets, config, power=power, modules=[module]
        )
        outcomes.extend(result.outcomes)
        descriptors.extend(s.descriptor for s in batch)

    records, failures = aggregate_outcomes(outcomes)
    if len(failures):
        logger.warning(f"{len(failures)} of {len(outcomes)} simulated replicates failed")
    preservation = PreservationResult(outcomes=outcomes, records=records, failures=failures)
    return SimulationStudy(module=module, descriptors=descriptors, preservation=preservation)

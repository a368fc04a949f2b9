"""
Duplication Simulator: synthetic whole-genome-duplication datasets.

Every value v of the source matrix becomes a jittered, doubled value:

    u   ~ Uniform(-noise * |v|, +noise * |v|)      (mean zero)
    dup = 2 * (v + u)                               so |dup - 2v| <= 2 * noise * |v|

For each "unbalanced" gene, a fraction of samples (imbalance_sample_fraction)
instead keeps the undoubled jittered value v + u, modelling partial loss
of dosage compensation.

Scenarios, each replicated numsim times per noise factor:
    control           no unbalanced genes
    random_imbalance  unbalanced genes drawn uniformly from a candidate pool
                      (the scored module's genes; all genes by default)
    hub_imbalance     unbalanced genes drawn from the hub genes of the
                      reference module (connectivity >= hub_quantile)

Both imbalance scenarios use the same count:
round(imbalance_fraction * n_hubs), at least 1 when hubs exist.

This is a controlled experiment with known ground truth, not a
biological model of duplication.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.core.quality import ProvenanceFlag
from netpreserve.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = [
    'ScenarioKind',
    'SimulationDescriptor',
    'SimulatedDataset',
    'DuplicationTransform',
    'select_hub_genes',
    'imbalanced_gene_count',
    'simulate_duplication',
]


class ScenarioKind(str, Enum):
    CONTROL = "control"
    RANDOM_IMBALANCE = "random_imbalance"
    HUB_IMBALANCE = "hub_imbalance"


@dataclass(frozen=True)
class SimulationDescriptor:
    """
    Identity of one synthetic dataset.

    (noise_factor, scenario, replicate) is unique within a simulation study.
    """
    noise_factor: float
    scenario: ScenarioKind
    replicate: int
    unbalanced_genes: Tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.scenario.value}_noise{self.noise_factor:g}_rep{self.replicate}"

    def to_dict(self) -> dict:
        return {
            'noise_factor': self.noise_factor,
            'scenario': self.scenario.value,
            'replicate': self.replicate,
            'unbalanced_genes': list(self.unbalanced_genes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SimulationDescriptor:
        return cls(
            noise_factor=float(data['noise_factor']),
            scenario=ScenarioKind(data['scenario']),
            replicate=int(data['replicate']),
            unbalanced_genes=tuple(data.get('unbalanced_genes', ())),
        )


@dataclass(frozen=True)
class SimulatedDataset:
    """One synthetic matrix and the descriptor that produced it."""
    descriptor: SimulationDescriptor
    matrix: ExpressionMatrix


class DuplicationTransform(Transform):
    """
    Jittered doubling with optional per-gene dosage imbalance.

    Provenance:
        Every value is flagged JITTERED (when noise > 0). Doubled values
        are flagged DUPLICATED, undoubled values of unbalanced genes
        UNBALANCED.

    Examples:
        >>> transform = DuplicationTransform(noise_factor=0.5, rng=np.random.default_rng(42))
        >>> doubled = transform.apply(matrix)
    """

    def __init__(
        self,
        noise_factor: float,
        unbalanced_genes: Sequence[str] = (),
        imbalance_sample_fraction: float = 0.5,
        rng: Optional[np.random.Generator] = None,
    ):
        if noise_factor < 0:
            raise ValueError(f"noise_factor must be non-negative, got {noise_factor}")
        if not 0 < imbalance_sample_fraction <= 1:
            raise ValueError(
                f"imbalance_sample_fraction must be in (0, 1], got {imbalance_sample_fraction}"
            )
        super().__init__(
            name="DuplicationTransform",
            params={
                "noise_factor": noise_factor,
                "n_unbalanced": len(unbalanced_genes),
                "imbalance_sample_fraction": imbalance_sample_fraction,
            },
        )
        self.noise_factor = noise_factor
        self.unbalanced_genes = tuple(unbalanced_genes)
        self.imbalance_sample_fraction = imbalance_sample_fraction
        self.rng = rng if rng is not None else np.random.default_rng()

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        errors = self.validate(matrix)
        if errors:
            raise ValueError(f"Cannot apply {self.name}: {'; '.join(errors)}")

        values = matrix.data
        spread = self.noise_factor * np.abs(values)
        jittered = values + self.rng.uniform(-spread, spread)
        result = 2.0 * jittered

        base = ProvenanceFlag.JITTERED if self.noise_factor > 0 else ProvenanceFlag.ORIGINAL
        provenance = np.full(values.shape, base | ProvenanceFlag.DUPLICATED, dtype=np.uint8)

        if self.unbalanced_genes:
            positions = matrix.gene_positions(self.unbalanced_genes)
            n_undoubled = int(round(self.imbalance_sample_fraction * matrix.n_samples))
            for row in positions:
                samples = self.rng.choice(matrix.n_samples, size=n_undoubled, replace=False)
                result[row, samples] = jittered[row, samples]
                provenance[row, samples] = base | ProvenanceFlag.UNBALANCED

        return matrix.with_data(result, provenance=provenance)


def select_hub_genes(connectivity: pd.Series, hub_quantile: float = 0.75) -> List[str]:
    """
    Genes whose connectivity is at or above the `hub_quantile` quantile.

    Args:
        connectivity: Intramodular connectivity indexed by gene id
        hub_quantile: 0.75 keeps the top 25%

    Returns:
        Hub gene ids, most connected first
    """
    if connectivity.empty:
        return []
    cutoff = connectivity.quantile(hub_quantile)
    hubs = connectivity[connectivity >= cutoff]
    return hubs.sort_values(ascending=False, kind="mergesort").index.tolist()


def imbalanced_gene_count(n_hubs: int, imbalance_fraction: float = 0.5) -> int:
    """round(imbalance_fraction * n_hubs), at least 1 when hubs exist."""
    if n_hubs == 0:
        return 0
    return max(1, int(round(imbalance_fraction * n_hubs)))


def _scenario_rng(seed: int, noise_index: int, scenario: ScenarioKind, replicate: int) -> np.random.Generator:
    scenario_index = list(ScenarioKind).index(scenario)
    return np.random.default_rng(
        np.random.SeedSequence(seed, spawn_key=(noise_index, scenario_index, replicate))
    )


def simulate_duplication(
    matrix: ExpressionMatrix,
    noise_factors: Sequence[float],
    numsim: int = 10,
    scenarios: Sequence[ScenarioKind | str] = tuple(ScenarioKind),
    connectivity: Optional[pd.Series] = None,
    hub_quantile: float = 0.75,
    imbalance_fraction: float = 0.5,
    imbalance_sample_fraction: float = 0.5,
    random_pool: Optional[Sequence[str]] = None,
    seed: int = 42,
    verbose: bool = False,
) -> Iterator[SimulatedDataset]:
    """
    Generate every noise x scenario x replicate dataset.

    Args:
        matrix: Source expression matrix
        noise_factors: Jitter magnitudes
        numsim: Replicates per noise factor and scenario
        scenarios: Scenario kinds to generate
        connectivity: Reference connectivity per gene, required for the
            imbalance scenarios
        hub_quantile: Lower connectivity quantile of the hub set
        imbalance_fraction: Unbalanced genes as a fraction of the hub count
        imbalance_sample_fraction: Samples that keep the undoubled value
        random_pool: Candidate genes of the random-imbalance scenario
            (default: every gene of `matrix`)
        seed: Top-level seed; each dataset has its own sub-stream

    Yields:
        SimulatedDataset with the same genes and samples as `matrix`

    Raises:
        ValueError: If an imbalance scenario is requested without connectivity
    """
    scenarios = [ScenarioKind(s) for s in scenarios]
    needs_hubs = any(s != ScenarioKind.CONTROL for s in scenarios)

    hubs: List[str] = []
    if needs_hubs:
        if connectivity is None:
            raise ValueError("connectivity is required for imbalance scenarios")
        matrix.gene_positions(connectivity.index)
        hubs = select_hub_genes(connectivity, hub_quantile)
    if random_pool is None:
        pool = matrix.gene_ids.to_numpy()
    else:
        matrix.gene_positions(random_pool)
        pool = np.asarray(sorted(random_pool))
    n_unbalanced = imbalanced_gene_count(len(hubs), imbalance_fraction)
    logger.info(
        f"Simulating {len(noise_factors)} noise factors x {len(scenarios)} scenarios x "
        f"{numsim} replicates ({len(hubs)} hub genes, {n_unbalanced} unbalanced per replicate)"
    )

    jobs = [
        (i, noise, scenario, replicate)
        for i, noise in enumerate(noise_factors)
        for scenario in scenarios
        for replicate in range(numsim)
    ]
    if verbose:
        jobs = tqdm(jobs, desc="Simulating duplication", unit="dataset")

    for noise_index, noise, scenario, replicate in jobs:
        rng = _scenario_rng(seed, noise_index, scenario, replicate)
        if scenario == ScenarioKind.HUB_IMBALANCE:
            unbalanced = sorted(rng.choice(hubs, size=n_unbalanced, replace=False).tolist())
        elif scenario == ScenarioKind.RANDOM_IMBALANCE:
            unbalanced = sorted(rng.choice(pool, size=min(n_unbalanced, len(pool)), replace=False).tolist())
        else:
            unbalanced = []

        transform = DuplicationTransform(
            noise_factor=noise,
            unbalanced_genes=unbalanced,
            imbalance_sample_fraction=imbalance_sample_fraction,
            rng=rng,
        )
        descriptor = SimulationDescriptor(
            noise_factor=float(noise),
            scenario=scenario,
            replicate=replicate,
            unbalanced_genes=tuple(unbalanced),
        )
        yield SimulatedDataset(descriptor=descriptor, matrix=transform.apply(matrix))

"""Synthetic duplicated-genome datasets with known dosage perturbations."""

from netpreserve.simulation.duplication import (
    DuplicationTransform,
    ScenarioKind,
    SimulatedDataset,
    SimulationDescriptor,
    imbalanced_gene_count,
    select_hub_genes,
    simulate_duplication,
)

__all__ = [
    'DuplicationTransform',
    'ScenarioKind',
    'SimulatedDataset',
    'SimulationDescriptor',
    'imbalanced_gene_count',
    'select_hub_genes',
    'simulate_duplication',
]

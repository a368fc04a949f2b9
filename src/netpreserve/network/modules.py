"""
Module Detector: TOM -> dendrogram -> modules -> eigengenes.

Pipeline (reference dataset only):
    1. Average-linkage clustering of 1 - TOM
    2. Dynamic branch cut constrained by min_module_size
    3. Module eigengenes (first principal component of member genes)
    4. Iterative merge of modules whose eigengene distance (1 - r) is
       below merge_height
    5. Optional reassignment of genes whose eigengene correlation (kME)
       to another module beats their own by more than reassign_threshold
    6. Relabel so that module 1 is the largest; 0 stays "unassigned"

The seeded generator is used only to break exact ties (equal eigengene
distances, equal kME); the linkage itself is deterministic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from netpreserve.config import ModuleDetectionConfig
from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.network.clustering import (
    UNASSIGNED,
    Dendrogram,
    dynamic_branch_cut,
    hierarchical_clustering,
)
from netpreserve.network.similarity import adjacency_from_data, standardize_rows
from netpreserve.network.topology import tom_dissimilarity, topological_overlap

logger = logging.getLogger(__name__)

__all__ = [
    'ModuleAssignment',
    'module_eigengenes',
    'module_membership',
    'merge_close_modules',
    'reassign_genes',
    'ModuleDetectionResult',
    'ModuleDetector',
    'detect_submodules',
]


class ModuleAssignment:
    """
    Total mapping gene -> module label (0 = unassigned).

    Read-only once built: every operation returns a new instance.
    """

    def __init__(self, labels: pd.Series):
        if labels.index.has_duplicates:
            raise ValueError("Module assignment has duplicate gene identifiers")
        labels = labels.astype(int).rename("module")
        labels.index = labels.index.rename("gene")
        self._labels = labels

    @classmethod
    def from_labels(cls, gene_ids: Sequence[str], labels: Sequence[int]) -> ModuleAssignment:
        return cls(pd.Series(np.asarray(labels, dtype=int), index=pd.Index(gene_ids, name="gene")))

    @property
    def labels(self) -> pd.Series:
        return self._labels.copy()

    @property
    def gene_ids(self) -> pd.Index:
        return self._labels.index

    @property
    def modules(self) -> List[int]:
        """Assigned module labels, ascending."""
        return sorted(int(m) for m in self._labels.unique() if m != UNASSIGNED)

    @property
    def n_unassigned(self) -> int:
        return int((self._labels == UNASSIGNED).sum())

    def genes(self, label: int) -> List[str]:
        """Member genes of one module, in assignment order."""
        return self._labels.index[self._labels == label].tolist()

    def sizes(self) -> pd.Series:
        """Module sizes indexed by label (unassigned excluded)."""
        counts = self._labels[self._labels != UNASSIGNED].value_counts()
        return counts.sort_index().rename("size")

    def relabel_by_size(self) -> ModuleAssignment:
        """1 = largest module; ties keep the lower previous label first."""
        sizes = self.sizes()
        order = sorted(sizes.index, key=lambda m: (-sizes[m], m))
        mapping = {old: new for new, old in enumerate(order, start=1)}
        mapping[UNASSIGNED] = UNASSIGNED
        return ModuleAssignment(self._labels.map(mapping))

    def gene_lists(self) -> Dict[str, List[str]]:
        """
        Module gene lists ordered by increasing size.

        Names are "<index>_M<label>" with a 1-based index, e.g. for modules
        of sizes {1: 40, 2: 25}: {"1_M2": [...], "2_M1": [...]}.
        """
        sizes = self.sizes()
        order = sorted(sizes.index, key=lambda m: (sizes[m], m))
        return {f"{i}_M{m}": self.genes(m) for i, m in enumerate(order, start=1)}

    def restrict(self, gene_ids: Sequence[str]) -> ModuleAssignment:
        return ModuleAssignment(self._labels.loc[list(gene_ids)])

    def to_frame(self) -> pd.DataFrame:
        return self._labels.reset_index()

    def __len__(self) -> int:
        return len(self._labels)

    def __eq__(self, other) -> bool:
        return isinstance(other, ModuleAssignment) and self._labels.equals(other._labels)

    def __repr__(self) -> str:
        return (
            f"ModuleAssignment({len(self)} genes, {len(self.modules)} modules, "
            f"{self.n_unassigned} unassigned)"
        )


def _eigengene(values: np.ndarray) -> np.ndarray:
    standardized = standardize_rows(values)
    average = standardized.mean(axis=0)
    if np.allclose(standardized, 0.0):
        return np.zeros(values.shape[1])

    # PCA expects (n_samples, n_features)
    pc1 = PCA(n_components=1).fit_transform(standardized.T).flatten()

    if np.std(average) > 0 and np.corrcoef(pc1, average)[0, 1] < 0:
        pc1 = -pc1
    scale = np.std(pc1)
    return pc1 / scale if scale > 0 else pc1


def module_eigengenes(
    matrix: ExpressionMatrix,
    assignment: ModuleAssignment,
    include_unassigned: bool = False,
) -> pd.DataFrame:
    """
    First principal component of each module's standardized profiles.

    Eigengenes are scaled to unit variance and signed to correlate
    positively with the module's average standardized profile.

    Returns:
        DataFrame (samples x modules), columns "ME<label>"
    """
    labels = list(assignment.modules)
    if include_unassigned and assignment.n_unassigned:
        labels = [UNASSIGNED] + labels

    eigengenes = {}
    for label in labels:
        positions = matrix.gene_positions(assignment.genes(label))
        eigengenes[f"ME{label}"] = _eigengene(matrix.data[positions])

    return pd.DataFrame(eigengenes, index=matrix.sample_ids)


def module_membership(matrix: ExpressionMatrix, eigengenes: pd.DataFrame) -> pd.DataFrame:
    """
    kME: correlation of every gene with every eigengene.

    Returns:
        DataFrame (genes x eigengene columns)
    """
    n_samples = matrix.n_samples
    genes = standardize_rows(matrix.data)
    modules = standardize_rows(eigengenes.to_numpy().T)
    kme = np.clip(genes @ modules.T / n_samples, -1.0, 1.0)
    return pd.DataFrame(kme, index=matrix.gene_ids, columns=eigengenes.columns)


def _pick(candidates: Sequence, rng: np.random.Generator):
    if len(candidates) == 1:
        return candidates[0]
    return candidates[int(rng.integers(len(candidates)))]


def merge_close_modules(
    matrix: ExpressionMatrix,
    assignment: ModuleAssignment,
    merge_height: float,
    rng: Optional[np.random.Generator] = None,
) -> ModuleAssignment:
    """
    Merge module pairs whose eigengene distance 1 - r is below merge_height.

    The closest pair is merged first (into the lower label) and eigengenes
    are recomputed, until no pair qualifies. Exactly tied pairs are chosen
    between with `rng`.
    """
    rng = rng if rng is not None else np.random.default_rng(0)
    labels = assignment.labels
    n_merged = 0

    while True:
        current = ModuleAssignment(labels)
        if len(current.modules) < 2:
            break
        eigengenes = module_eigengenes(matrix, current)
        distance = 1.0 - np.corrcoef(eigengenes.to_numpy().T)
        distance = np.nan_to_num(distance, nan=1.0)
        np.fill_diagonal(distance, np.inf)

        closest = distance.min()
        if closest >= merge_height:
            break

        rows, cols = np.nonzero(np.isclose(distance, closest, rtol=0.0, atol=1e-12))
        pairs = sorted({(min(r, c), max(r, c)) for r, c in zip(rows, cols)})
        keep, drop = _pick(pairs, rng)
        keep_label, drop_label = current.modules[keep], current.modules[drop]

        labels = labels.where(labels != drop_label, keep_label)
        n_merged += 1
        logger.debug(f"Merged module {drop_label} into {keep_label} (distance {closest:.3f})")

    if n_merged:
        logger.info(f"Merged {n_merged} module pairs below eigengene distance {merge_height}")
    return ModuleAssignment(labels)


def reassign_genes(
    matrix: ExpressionMatrix,
    assignment: ModuleAssignment,
    threshold: float = 0.001,
    rng: Optional[np.random.Generator] = None,
) -> ModuleAssignment:
    """
    Move genes to the module whose eigengene they correlate with best.

    A gene moves only when the best other module's kME exceeds its own
    module's kME by more than `threshold`. Unassigned genes are left alone.
    """
    rng = rng if rng is not None else np.random.default_rng(0)
    modules = assignment.modules
    if len(modules) < 2:
        return assignment

    eigengenes = module_eigengenes(matrix, assignment)
    kme = module_membership(matrix, eigengenes).to_numpy()
    column = {m: j for j, m in enumerate(modules)}

    labels = assignment.labels
    current = labels.to_numpy()
    new = current.copy()
    for i, own in enumerate(current):
        if own == UNASSIGNED:
            continue
        row = kme[i]
        best = row.max()
        if best - row[column[own]] <= threshold:
            continue
        winners = [modules[j] for j in np.flatnonzero(np.isclose(row, best, rtol=0.0, atol=1e-12))]
        new[i] = _pick(winners, rng)

    n_moved = int(np.count_nonzero(new != current))
    if n_moved:
        logger.info(f"Reassigned {n_moved} genes by eigengene membership (threshold {threshold})")
    return ModuleAssignment(pd.Series(new, index=labels.index))


@dataclass
class ModuleDetectionResult:
    """
    Output of module detection on one dataset.

    Attributes:
        assignment: Final gene -> module labels (1 = largest)
        eigengenes: Samples x "ME<label>" eigengenes of the final modules
        dendrogram: Clustering tree (for reporting)
        tree_labels: Labels straight from the branch cut, before merging
    """
    assignment: ModuleAssignment
    eigengenes: pd.DataFrame
    dendrogram: Dendrogram
    tree_labels: np.ndarray

    def to_dict(self) -> dict:
        sizes = self.assignment.sizes()
        return {
            'n_genes': len(self.assignment),
            'n_modules': len(self.assignment.modules),
            'n_unassigned': self.assignment.n_unassigned,
            'n_tree_modules': int(len(set(self.tree_labels.tolist()) - {UNASSIGNED})),
            'module_sizes': {int(k): int(v) for k, v in sizes.items()},
        }


class ModuleDetector:
    """
    Detect coexpression modules from a TOM.

    Examples:
        >>> detector = ModuleDetector(ModuleDetectionConfig(min_module_size=30), seed=42)
        >>> result = detector.detect(matrix, tom)
        >>> result.assignment.sizes()
    """

    def __init__(self, config: Optional[ModuleDetectionConfig] = None, seed: Optional[int] = None):
        self.config = config if config is not None else ModuleDetectionConfig()
        self.seed = seed

    def detect(self, matrix: ExpressionMatrix, tom: np.ndarray | pd.DataFrame) -> ModuleDetectionResult:
        """
        Run the full detection pipeline.

        Args:
            matrix: Expression matrix the TOM was computed from
            tom: (n_genes x n_genes) TOM aligned with matrix.gene_ids

        Raises:
            ValueError: If the TOM does not match the matrix
        """
        if isinstance(tom, pd.DataFrame):
            if not tom.index.equals(matrix.gene_ids):
                raise ValueError("TOM index does not match matrix gene_ids")
            tom = tom.to_numpy()
        if tom.shape != (matrix.n_genes, matrix.n_genes):
            raise ValueError(f"TOM shape {tom.shape} does not match {matrix.n_genes} genes")

        config = self.config
        rng = np.random.default_rng(self.seed)

        dendrogram = hierarchical_clustering(tom)
        tree_labels = dynamic_branch_cut(
            dendrogram,
            tom_dissimilarity(tom),
            min_cluster_size=config.min_module_size,
            deep_split=config.deep_split,
            cut_height=config.cut_height,
        )
        assignment = ModuleAssignment.from_labels(matrix.gene_ids, tree_labels)
        logger.info(
            f"Branch cut found {len(assignment.modules)} modules "
            f"({assignment.n_unassigned} of {len(assignment)} genes unassigned)"
        )

        if assignment.modules and config.merge_height > 0:
            assignment = merge_close_modules(matrix, assignment, config.merge_height, rng)
        if assignment.modules and config.reassign_threshold is not None:
            assignment = reassign_genes(matrix, assignment, config.reassign_threshold, rng)

        assignment = assignment.relabel_by_size()
        eigengenes = module_eigengenes(matrix, assignment)

        return ModuleDetectionResult(
            assignment=assignment,
            eigengenes=eigengenes,
            dendrogram=dendrogram,
            tree_labels=tree_labels,
        )


def detect_submodules(
    matrix: ExpressionMatrix,
    assignment: ModuleAssignment,
    power: float,
    adjacency_type: str = "unsigned",
    overlap: str = "min",
    config: Optional[ModuleDetectionConfig] = None,
    seed: Optional[int] = None,
) -> Dict[int, ModuleDetectionResult]:
    """
    Re-run module detection inside each module.

    The module's own adjacency and TOM are rebuilt from its member genes;
    submodule labels are local to each parent module.

    Returns:
        Parent module label -> detection result for its genes
    """
    config = config if config is not None else ModuleDetectionConfig.submodule()
    detector = ModuleDetector(config, seed=seed)

    results = {}
    for label in assignment.modules:
        genes = assignment.genes(label)
        if len(genes) < 3:
            logger.debug(f"Skipping submodule detection in module {label}: {len(genes)} genes")
            continue
        sub = matrix.subset_genes(genes)
        adjacency = adjacency_from_data(sub.data, power, adjacency_type)
        tom = topological_overlap(adjacency, overlap=overlap)
        results[label] = detector.detect(sub, tom)
        logger.info(
            f"Module {label}: {len(results[label].assignment.modules)} submodules "
            f"in {len(genes)} genes"
        )
    return results

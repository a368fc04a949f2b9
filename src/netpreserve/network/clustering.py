"""
Hierarchical clustering of TOM dissimilarity and dynamic branch cutting.

Dendrogram
    An arena of DendrogramNode records. Leaves are nodes 0..n-1; merge m
    of the scipy linkage matrix is node n + m. Children are referenced by
    index, never by object, so the tree can be walked from any thread.

Dynamic branch cut
    The tree stage of the hybrid dynamic tree cut. Merges are visited
    bottom-up. A "basic" branch grows by absorbing leaves and failing
    branches; two branches that both qualify as modules when they meet are
    frozen and their parent becomes "composite". A branch qualifies when:

        size >= min_cluster_size
        core_scatter <= max_abs_core_scatter
        attach_height - core_scatter >= min_abs_gap

    core_scatter is the mean pairwise distance between the branch's
    earliest-joined ("core") leaves. Merges above cut_height are ignored.
    Leaves that join a composite branch directly stay unassigned.

    Defaults (deep_split=2): max core scatter at 82% and minimum gap at
    13.5% of the height range between the 5% height quantile and
    cut_height; cut_height itself defaults to 99% of that range.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import squareform

from netpreserve.network.topology import tom_dissimilarity

logger = logging.getLogger(__name__)

__all__ = [
    'DendrogramNode',
    'Dendrogram',
    'hierarchical_clustering',
    'dynamic_branch_cut',
    'UNASSIGNED',
]

UNASSIGNED = 0

DEFAULT_MAX_CORE_SCATTER = (0.64, 0.73, 0.82, 0.91, 0.95)
REFERENCE_QUANTILE = 0.05


@dataclass(frozen=True)
class DendrogramNode:
    """One node of the dendrogram arena (left/right are -1 for leaves)."""
    index: int
    left: int
    right: int
    height: float
    size: int

    @property
    def is_leaf(self) -> bool:
        return self.left < 0


class Dendrogram:
    """
    Arena-backed binary merge tree.

    Attributes:
        nodes: All nodes; leaves first, then merges in linkage order
        n_leaves: Number of clustered genes
    """

    def __init__(self, nodes: List[DendrogramNode], n_leaves: int):
        self.nodes = nodes
        self.n_leaves = n_leaves

    @classmethod
    def from_linkage(cls, linkage_matrix: np.ndarray) -> Dendrogram:
        linkage_matrix = np.asarray(linkage_matrix)
        n_leaves = linkage_matrix.shape[0] + 1
        nodes = [DendrogramNode(i, -1, -1, 0.0, 1) for i in range(n_leaves)]
        for m, (left, right, height, size) in enumerate(linkage_matrix):
            nodes.append(DendrogramNode(n_leaves + m, int(left), int(right), float(height), int(size)))
        return cls(nodes, n_leaves)

    @property
    def root(self) -> int:
        return len(self.nodes) - 1

    @property
    def n_merges(self) -> int:
        return len(self.nodes) - self.n_leaves

    @property
    def heights(self) -> np.ndarray:
        """Merge heights in linkage order."""
        return np.array([node.height for node in self.nodes[self.n_leaves:]])

    def merge(self, m: int) -> DendrogramNode:
        """The m-th merge (0-based linkage row)."""
        return self.nodes[self.n_leaves + m]

    def members(self, index: int) -> List[int]:
        """Leaf indices below a node."""
        leaves = []
        stack = [index]
        while stack:
            node = self.nodes[stack.pop()]
            if node.is_leaf:
                leaves.append(node.index)
            else:
                stack.append(node.right)
                stack.append(node.left)
        return leaves

    def to_linkage(self) -> np.ndarray:
        return np.array(
            [[n.left, n.right, n.height, n.size] for n in self.nodes[self.n_leaves:]],
            dtype=float,
        ).reshape(-1, 4)

    def leaf_order(self) -> np.ndarray:
        """Left-to-right leaf order for plotting."""
        if self.n_merges == 0:
            return np.arange(self.n_leaves)
        return leaves_list(self.to_linkage())

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return f"Dendrogram({self.n_leaves} leaves, {self.n_merges} merges)"


def hierarchical_clustering(tom: np.ndarray, method: str = "average") -> Dendrogram:
    """
    Average-linkage clustering of 1 - TOM.

    Deterministic for a given TOM; no random source is involved.
    """
    distance = tom_dissimilarity(tom)
    if distance.shape[0] < 2:
        return Dendrogram([DendrogramNode(i, -1, -1, 0.0, 1) for i in range(distance.shape[0])],
                          distance.shape[0])
    condensed = squareform(distance, checks=False)
    return Dendrogram.from_linkage(linkage(condensed, method=method))


def core_size(n_singletons: int, min_cluster_size: int) -> int:
    base = min_cluster_size / 2 + 1
    if base < n_singletons:
        return int(base + np.sqrt(n_singletons - base))
    return n_singletons


@dataclass
class _Branch:
    basic: bool
    singletons: List[int] = field(default_factory=list)
    size: int = 0
    top_basic: bool = True
    attach_height: Optional[float] = None


def dynamic_branch_cut(
    dendrogram: Dendrogram,
    distance: np.ndarray,
    min_cluster_size: int = 20,
    deep_split: int = 2,
    cut_height: Optional[float] = None,
    max_core_scatter: Optional[float] = None,
    min_gap: Optional[float] = None,
) -> np.ndarray:
    """
    Cut a dendrogram into modules.

    Args:
        dendrogram: Tree from hierarchical_clustering()
        distance: The (n x n) dissimilarity the tree was built from
        min_cluster_size: Smallest module
        deep_split: Sensitivity 0 (coarse) .. 4 (fine)
        cut_height: Merges above this height are ignored (default: 99% of range)
        max_core_scatter: Relative core scatter limit (default from deep_split)
        min_gap: Relative gap limit (default from deep_split)

    Returns:
        Integer label per leaf; 0 = unassigned, modules numbered 1..K in
        order of detection
    """
    if not 0 <= deep_split < len(DEFAULT_MAX_CORE_SCATTER):
        raise ValueError(
            f"deep_split must be in 0..{len(DEFAULT_MAX_CORE_SCATTER) - 1}, got {deep_split}"
        )

    n_leaves = dendrogram.n_leaves
    labels = np.full(n_leaves, UNASSIGNED, dtype=int)
    n_merges = dendrogram.n_merges
    if n_merges < 1:
        return labels

    heights = dendrogram.heights
    ref_merge = max(int(round(n_merges * REFERENCE_QUANTILE)) - 1, 0)
    ref_height = float(np.sort(heights)[ref_merge])
    if cut_height is None:
        cut_height = 0.99 * (heights.max() - ref_height) + ref_height
    else:
        cut_height = min(cut_height, float(heights.max()))

    if np.count_nonzero(heights <= cut_height) < min_cluster_size:
        logger.warning(
            f"Cut height {cut_height:.3f} leaves fewer than {min_cluster_size} merges; "
            "no modules assigned"
        )
        return labels

    if max_core_scatter is None:
        max_core_scatter = DEFAULT_MAX_CORE_SCATTER[deep_split]
    if min_gap is None:
        min_gap = (1.0 - DEFAULT_MAX_CORE_SCATTER[deep_split]) * 3.0 / 4.0
    max_abs_core_scatter = ref_height + max_core_scatter * (cut_height - ref_height)
    min_abs_gap = min_gap * (cut_height - ref_height)

    distance = np.asarray(distance)

    def scatter(branch: _Branch) -> float:
        n_core = core_size(len(branch.singletons), min_cluster_size)
        if n_core < 2:
            return 0.0
        core = branch.singletons[:n_core]
        return float(distance[np.ix_(core, core)].sum() / (n_core * (n_core - 1)))

    def fails(branch: _Branch, height: float) -> bool:
        if not branch.basic:
            return False
        core_scatter = scatter(branch)
        return (
            branch.size < min_cluster_size
            or core_scatter > max_abs_core_scatter
            or height - core_scatter < min_abs_gap
        )

    branches: List[_Branch] = []
    node_branch = {}

    for m in range(n_merges):
        node = dendrogram.merge(m)
        height = node.height
        if height > cut_height:
            continue
        left_leaf = dendrogram.nodes[node.left].is_leaf
        right_leaf = dendrogram.nodes[node.right].is_leaf

        if left_leaf and right_leaf:
            branches.append(_Branch(basic=True, singletons=[node.left, node.right], size=2))
            node_branch[node.index] = len(branches) - 1
            continue

        if left_leaf or right_leaf:
            leaf, other = (node.left, node.right) if left_leaf else (node.right, node.left)
            b = node_branch[other]
            branch = branches[b]
            if branch.basic:
                branch.singletons.append(leaf)
            branch.size += 1
            node_branch[node.index] = b
            continue

        pair = [node_branch[node.left], node_branch[node.right]]
        pair.sort(key=lambda b: branches[b].size)
        small, large = pair

        do_merge = False
        if fails(branches[small], height):
            do_merge = True
        elif fails(branches[large], height):
            do_merge = True
            small, large = large, small

        if do_merge:
            absorbed = branches[small]
            absorbed.top_basic = False
            absorbed.attach_height = height
            if branches[large].basic:
                branches[large].singletons.extend(absorbed.singletons)
            branches[large].size += absorbed.size
            node_branch[node.index] = large
        else:
            for b in (small, large):
                if branches[b].attach_height is None:
                    branches[b].attach_height = height
            branches.append(_Branch(basic=False, size=branches[small].size + branches[large].size))
            node_branch[node.index] = len(branches) - 1

    label = 0
    for branch in branches:
        if not (branch.basic and branch.top_basic):
            continue
        attach = cut_height if branch.attach_height is None else branch.attach_height
        core_scatter = scatter(branch)
        if (
            branch.size >= min_cluster_size
            and core_scatter < max_abs_core_scatter
            and attach - core_scatter > min_abs_gap
        ):
            label += 1
            labels[branch.singletons] = label

    logger.debug(
        f"Dynamic branch cut: {label} modules, {np.count_nonzero(labels == UNASSIGNED)} "
        f"unassigned of {n_leaves} (cut height {cut_height:.3f})"
    )
    return labels

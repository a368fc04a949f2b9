"""
Weighted coexpression network construction and module detection.

1. similarity: correlation -> soft-thresholded adjacency, power selection
2. topology: adjacency -> topological overlap (TOM)
3. clustering: dendrogram arena + dynamic branch cut
4. modules: eigengenes, merging, reassignment, ModuleDetector
"""

from netpreserve.network.clustering import (
    UNASSIGNED,
    Dendrogram,
    DendrogramNode,
    dynamic_branch_cut,
    hierarchical_clustering,
)
from netpreserve.network.modules import (
    ModuleAssignment,
    ModuleDetectionResult,
    ModuleDetector,
    detect_submodules,
    merge_close_modules,
    module_eigengenes,
    module_membership,
    reassign_genes,
)
from netpreserve.network.similarity import (
    AdjacencyType,
    SoftThresholdResult,
    compute_adjacency,
    compute_correlation_matrix_chunked,
    correlation_to_adjacency,
    pick_soft_threshold,
    scale_free_fit,
)
from netpreserve.network.topology import (
    intramodular_connectivity,
    tom_dissimilarity,
    topological_overlap,
    topological_overlap_frame,
)

__all__ = [
    'UNASSIGNED',
    'Dendrogram',
    'DendrogramNode',
    'dynamic_branch_cut',
    'hierarchical_clustering',
    'ModuleAssignment',
    'ModuleDetectionResult',
    'ModuleDetector',
    'detect_submodules',
    'merge_close_modules',
    'module_eigengenes',
    'module_membership',
    'reassign_genes',
    'AdjacencyType',
    'SoftThresholdResult',
    'compute_adjacency',
    'compute_correlation_matrix_chunked',
    'correlation_to_adjacency',
    'pick_soft_threshold',
    'scale_free_fit',
    'intramodular_connectivity',
    'tom_dissimilarity',
    'topological_overlap',
    'topological_overlap_frame',
]

"""
netpreserve: weighted coexpression modules and their preservation.

Builds a weighted gene coexpression network from a reference expression
matrix, partitions it into modules, and scores how well every module's
structure is preserved in other datasets (alternate-condition groups or
synthetic duplicated-genome replicates) with a permutation Z-summary.

Core modules:
    - core: ExpressionMatrix, ProvenanceFlag, Transform
    - network: adjacency, topological overlap, module detection
    - preservation: statistic battery, permutation engine, records
    - simulation: duplication simulator
    - pipeline: end-to-end workflows
"""

__version__ = "0.1.0"

from netpreserve.config import (
    ModuleDetectionConfig,
    NetworkConfig,
    PipelineConfig,
    PreservationConfig,
    SimulationConfig,
)
from netpreserve.core import ExpressionMatrix, ProvenanceFlag, Transform
from netpreserve.exceptions import (
    DimensionMismatchError,
    InputIntegrityError,
    NetPreserveError,
    ThresholdSelectionWarning,
    UnstableStatisticResult,
)
from netpreserve.network import ModuleAssignment, ModuleDetector
from netpreserve.preservation import (
    DatasetRole,
    PreservationEngine,
    PreservationRecord,
    TaggedDataset,
)
from netpreserve.simulation import ScenarioKind, SimulationDescriptor, simulate_duplication

__all__ = [
    '__version__',
    'ModuleDetectionConfig',
    'NetworkConfig',
    'PipelineConfig',
    'PreservationConfig',
    'SimulationConfig',
    'ExpressionMatrix',
    'ProvenanceFlag',
    'Transform',
    'DimensionMismatchError',
    'InputIntegrityError',
    'NetPreserveError',
    'ThresholdSelectionWarning',
    'UnstableStatisticResult',
    'ModuleAssignment',
    'ModuleDetector',
    'DatasetRole',
    'PreservationEngine',
    'PreservationRecord',
    'TaggedDataset',
    'ScenarioKind',
    'SimulationDescriptor',
    'simulate_duplication',
]

"""
Module preservation scoring.

Each reference module is rebuilt in every comparison dataset, scored with
a fixed statistic battery and standardized against random gene sets of
the same size. The composite Z-summary is the mean of the available
per-statistic Z scores; thresholds (2 weak, 10 strong) are left to the
caller.
"""

from netpreserve.preservation.engine import (
    PreservationEngine,
    PreservationResult,
    SharedPool,
    UnitTask,
    comparison_key,
    matrix_digest,
    prepare_pool,
    score_module_unit,
)
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
    PreservationScores,
    battery,
    permutation_null,
    permutation_rng,
    score_gene_set,
    zscore,
)

__all__ = [
    'PreservationEngine',
    'PreservationResult',
    'SharedPool',
    'UnitTask',
    'comparison_key',
    'matrix_digest',
    'prepare_pool',
    'score_module_unit',
    'DatasetRole',
    'ModuleOutcome',
    'PreservationRecord',
    'TaggedDataset',
    'aggregate_outcomes',
    'STATISTICS',
    'NetworkParams',
    'PreservationScores',
    'battery',
    'permutation_null',
    'permutation_rng',
    'score_gene_set',
    'zscore',
]

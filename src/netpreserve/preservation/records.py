"""
Tagged datasets, per-unit results and their aggregation.

Datasets are passed as explicit (role, label, matrix) records instead of
positional slots. Every module x dataset unit of work returns one
ModuleOutcome (a PreservationRecord or an error); aggregation is a pure
reduction of a list of outcomes into tables.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.exceptions import UnstableStatisticResult
from netpreserve.preservation.statistics import STATISTICS
from netpreserve.simulation.duplication import SimulationDescriptor

__all__ = [
    'DatasetRole',
    'TaggedDataset',
    'PreservationRecord',
    'ModuleOutcome',
    'RECORD_COLUMNS',
    'aggregate_outcomes',
]


class DatasetRole(str, Enum):
    REFERENCE = "reference"
    COMPARISON_GROUP = "comparison_group"
    SIMULATION_REPLICATE = "simulation_replicate"


@dataclass(frozen=True)
class TaggedDataset:
    """
    An expression matrix with its role in the analysis.

    Attributes:
        role: Reference, comparison group or simulation replicate
        label: Unique, human-readable dataset name
        matrix: Expression values
        descriptor: Simulation parameters (simulation replicates only)
    """
    role: DatasetRole
    label: str
    matrix: ExpressionMatrix
    descriptor: Optional[SimulationDescriptor] = None

    def __post_init__(self):
        if self.role == DatasetRole.SIMULATION_REPLICATE and self.descriptor is None:
            raise ValueError(f"Simulation replicate '{self.label}' needs a SimulationDescriptor")


def _nan_to_none(value: float) -> Optional[float]:
    return None if value is None or (isinstance(value, float) and math.isnan(value)) else value


def _none_to_nan(value: Optional[float]) -> float:
    return np.nan if value is None else float(value)


@dataclass(frozen=True)
class PreservationRecord:
    """
    Preservation of one reference module in one comparison dataset.

    z_summary is NaN when it could not be computed; `notes` says why.
    """
    module: int
    reference: str
    comparison: str
    role: DatasetRole
    z_summary: float
    module_size: int
    z_scores: Dict[str, float] = field(default_factory=dict)
    observed: Dict[str, float] = field(default_factory=dict)
    n_permutations: int = 0
    notes: Tuple[UnstableStatisticResult, ...] = ()
    descriptor: Optional[SimulationDescriptor] = None

    def to_row(self) -> dict:
        """Flat row for the result table."""
        row = {
            'module': self.module,
            'reference': self.reference,
            'comparison': self.comparison,
            'role': self.role.value,
            'z_summary': self.z_summary,
            'module_size': self.module_size,
            'n_permutations': self.n_permutations,
        }
        for name in STATISTICS:
            row[f'z_{name}'] = self.z_scores.get(name, np.nan)
            row[f'observed_{name}'] = self.observed.get(name, np.nan)
        if self.descriptor is not None:
            row['noise_factor'] = self.descriptor.noise_factor
            row['scenario'] = self.descriptor.scenario.value
            row['replicate'] = self.descriptor.replicate
        else:
            row['noise_factor'] = np.nan
            row['scenario'] = None
            row['replicate'] = np.nan
        row['notes'] = "; ".join(f"{n.statistic}: {n.reason}" for n in self.notes)
        return row

    def to_dict(self) -> dict:
        """JSON-safe representation (NaN -> null)."""
        return {
            'module': self.module,
            'reference': self.reference,
            'comparison': self.comparison,
            'role': self.role.value,
            'z_summary': _nan_to_none(self.z_summary),
            'module_size': self.module_size,
            'z_scores': {k: _nan_to_none(v) for k, v in self.z_scores.items()},
            'observed': {k: _nan_to_none(v) for k, v in self.observed.items()},
            'n_permutations': self.n_permutations,
            'notes': [n.to_dict() for n in self.notes],
            'descriptor': None if self.descriptor is None else self.descriptor.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> PreservationRecord:
        descriptor = data.get('descriptor')
        return cls(
            module=int(data['module']),
            reference=data['reference'],
            comparison=data['comparison'],
            role=DatasetRole(data['role']),
            z_summary=_none_to_nan(data['z_summary']),
            module_size=int(data['module_size']),
            z_scores={k: _none_to_nan(v) for k, v in data.get('z_scores', {}).items()},
            observed={k: _none_to_nan(v) for k, v in data.get('observed', {}).items()},
            n_permutations=int(data.get('n_permutations', 0)),
            notes=tuple(UnstableStatisticResult(**n) for n in data.get('notes', [])),
            descriptor=None if descriptor is None else SimulationDescriptor.from_dict(descriptor),
        )


@dataclass(frozen=True)
class ModuleOutcome:
    """Result of one module x dataset unit: a record or an error."""
    module: int
    comparison: str
    record: Optional[PreservationRecord] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


RECORD_COLUMNS = (
    ['module', 'reference', 'comparison', 'role', 'z_summary', 'module_size', 'n_permutations']
    + [f'z_{name}' for name in STATISTICS]
    + [f'observed_{name}' for name in STATISTICS]
    + ['noise_factor', 'scenario', 'replicate', 'notes']
)

FAILURE_COLUMNS = ['module', 'comparison', 'error_type', 'error']


def aggregate_outcomes(outcomes: Sequence[ModuleOutcome]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Reduce unit outcomes to a records table and a failures table.

    Rows are sorted by (comparison, module), so the tables do not depend
    on completion order.
    """
    rows: List[dict] = [o.record.to_row() for o in outcomes if o.ok]
    failures: List[dict] = [
        {'module': o.module, 'comparison': o.comparison, 'error_type': o.error_type, 'error': o.error}
        for o in outcomes if not o.ok
    ]

    records = pd.DataFrame(rows, columns=RECORD_COLUMNS)
    if not records.empty:
        records = records.sort_values(['comparison', 'module'], kind='mergesort').reset_index(drop=True)
    failed = pd.DataFrame(failures, columns=FAILURE_COLUMNS)
    if not failed.empty:
        failed = failed.sort_values(['comparison', 'module'], kind='mergesort').reset_index(drop=True)
    return records, failed

"""
Provenance flags for values produced by the duplication simulator.

Synthetic datasets are only useful as ground truth if every altered value
can be traced back: which values were jittered, which were doubled, and
which belong to a gene whose dosage was left unbalanced.

Engineering Design:
    IntFlag enables efficient bitwise operations:
    - Multiple flags per value: JITTERED | DUPLICATED
    - Fast bitwise checks: if flags & ProvenanceFlag.UNBALANCED
    - Memory efficient: single int per value

Examples:
    >>> from netpreserve.core.quality import ProvenanceFlag
    >>> flag = ProvenanceFlag.JITTERED | ProvenanceFlag.DUPLICATED
    >>> bool(flag & ProvenanceFlag.DUPLICATED)
    True
    >>>
    >>> # Count unbalanced values in a simulated matrix
    >>> n_unbalanced = np.sum(matrix.provenance & ProvenanceFlag.UNBALANCED != 0)
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['ProvenanceFlag']


class ProvenanceFlag(IntFlag):
    """
    Bitwise flags for per-value provenance tracking.

    Attributes:
        ORIGINAL: Untouched measured value (0)
        JITTERED: Displaced by multiplicative simulator noise (1)
        DUPLICATED: Doubled to model a dosage-compensated duplicated genome (2)
        UNBALANCED: Left undoubled in an imbalance scenario (4)
    """

    ORIGINAL = 0
    """Untouched value from the source dataset."""

    JITTERED = 1
    """Displaced by mean-zero noise proportional to noise factor x value."""

    DUPLICATED = 2
    """Doubled (2 x jittered value) - balanced dosage after duplication."""

    UNBALANCED = 4
    """
    Gene is in the unbalanced set and this sample kept the undoubled value.
    Models partial loss of dosage compensation.
    """

"""
Core data structures shared by every engine.

1. ExpressionMatrix: genes x samples values with identifiers and provenance
2. ProvenanceFlag: Bitwise flags marking simulator-altered values
3. Transform: Abstract base class for immutable matrix transformations

Design Philosophy:
    - Immutability: All operations return new instances
    - Identifier-based subsetting: gene order never carries meaning
"""

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.core.quality import ProvenanceFlag
from netpreserve.core.transform import Transform

__all__ = [
    'ExpressionMatrix',
    'ProvenanceFlag',
    'Transform',
]

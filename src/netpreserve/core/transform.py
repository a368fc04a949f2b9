"""
Base transformation framework for immutable matrix operations.

Pure matrix -> matrix steps (integrity filtering, synthetic duplication)
share this interface so they can be validated, logged and chained
without mutating their input.

Engineering Design:
    - No side effects: apply() returns a new ExpressionMatrix
    - Deterministic: same input + params (+ seed) -> same output
    - Auditable: name and params are JSON-serializable for run records

Examples:
    >>> from netpreserve.core.transform import Transform
    >>>
    >>> class Log2Transform(Transform):
    ...     def __init__(self, pseudocount: float = 1.0):
    ...         super().__init__(name="Log2Transform", params={"pseudocount": pseudocount})
    ...         self.pseudocount = pseudocount
    ...
    ...     def apply(self, matrix):
    ...         return matrix.with_data(np.log2(matrix.data + self.pseudocount))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from netpreserve.core.matrix import ExpressionMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all matrix transformations.

    Attributes:
        name: Human-readable transformation name
        params: Parameters used for this transformation
        timestamp: When this transform instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        """
        Args:
            name: Human-readable transformation name
            params: JSON-serializable parameters for provenance tracking
        """
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        """
        Execute transformation and return a new matrix.

        Must never modify the input matrix.

        Raises:
            ValueError: If transformation cannot be applied (check validate() first)
        """
        pass

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        """
        Check preconditions before applying transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")
        elif not np.all(np.isfinite(matrix.data)):
            errors.append("Matrix contains NaN or infinite values")

        return errors

    def __repr__(self) -> str:
        """
        String representation for logging, e.g. "DuplicationTransform(noise=0.5, ...)".
        """
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"

"""
Core data structure for gene expression matrices.

ExpressionMatrix couples a genes x samples value matrix with its
identifiers, sample annotations and per-value provenance flags. One
instance exists per dataset, group or simulation replicate.

Biological Context:
    - Rows = genes (unique identifiers, order irrelevant)
    - Columns = samples (unique identifiers, order irrelevant)
    - Values = variance-stabilized expression, no missing values once
      filtered

    Network statistics only depend on which genes and samples are present,
    never on their order, so subsetting by identifier is the primary
    operation.

Engineering Design:
    - Immutable: operations return new instances
    - NumPy arrays for values, pandas Index/DataFrame for annotations
    - Constructor validates shapes and identifier uniqueness

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from netpreserve.core.matrix import ExpressionMatrix
    >>>
    >>> matrix = ExpressionMatrix.from_frame(pd.DataFrame(
    ...     np.random.default_rng(0).normal(size=(3, 4)),
    ...     index=["g1", "g2", "g3"],
    ...     columns=["s1", "s2", "s3", "s4"],
    ... ))
    >>> module = matrix.subset_genes(["g3", "g1"])
    >>> module.shape
    (2, 4)
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from netpreserve.core.quality import ProvenanceFlag
from netpreserve.exceptions import DimensionMismatchError

__all__ = ['ExpressionMatrix']


class ExpressionMatrix:
    """
    Immutable container for expression values + identifiers + provenance.

    Attributes:
        data: Expression values (genes x samples)
        gene_ids: Row identifiers
        sample_ids: Column identifiers
        sample_metadata: Sample annotations indexed by sample_ids
        provenance: Per-value ProvenanceFlag matrix (same shape as data)

    Shape Invariants:
        - data.shape == (len(gene_ids), len(sample_ids))
        - provenance.shape == data.shape
        - sample_metadata.index equals sample_ids
        - gene_ids and sample_ids are unique
    """

    def __init__(
        self,
        data: np.ndarray,
        gene_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: Optional[pd.DataFrame] = None,
        provenance: Optional[np.ndarray] = None,
    ):
        """
        Initialize ExpressionMatrix with validation.

        Args:
            data: Expression matrix (genes x samples)
            gene_ids: Row identifiers
            sample_ids: Column identifiers
            sample_metadata: Optional annotations, index must match sample_ids
            provenance: Optional flag matrix; defaults to all ORIGINAL

        Raises:
            TypeError: If data or identifiers have the wrong type
            ValueError: If shapes are inconsistent or identifiers repeat
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(gene_ids, pd.Index):
            raise TypeError(f"gene_ids must be pd.Index, got {type(gene_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_genes, n_samples = data.shape
        if len(gene_ids) != n_genes:
            raise ValueError(
                f"gene_ids length ({len(gene_ids)}) must match data rows ({n_genes})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if gene_ids.has_duplicates:
            raise ValueError("gene_ids must be unique")
        if sample_ids.has_duplicates:
            raise ValueError("sample_ids must be unique")

        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        elif not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        elif not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        if provenance is None:
            provenance = np.full(data.shape, ProvenanceFlag.ORIGINAL, dtype=np.uint8)
        elif provenance.shape != data.shape:
            raise ValueError(
                f"provenance shape {provenance.shape} must match data shape {data.shape}"
            )

        self._data = data
        self._gene_ids = gene_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._provenance = provenance

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        sample_metadata: Optional[pd.DataFrame] = None,
    ) -> ExpressionMatrix:
        """Build from a genes x samples DataFrame."""
        return cls(
            data=frame.to_numpy(dtype=float),
            gene_ids=pd.Index(frame.index.astype(str)),
            sample_ids=pd.Index(frame.columns.astype(str)),
            sample_metadata=sample_metadata,
        )

    @property
    def data(self) -> np.ndarray:
        """Expression values (genes x samples)."""
        return self._data

    @property
    def gene_ids(self) -> pd.Index:
        """Row identifiers."""
        return self._gene_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Sample annotations."""
        return self._sample_metadata

    @property
    def provenance(self) -> np.ndarray:
        """Per-value provenance flags."""
        return self._provenance

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_genes, n_samples)."""
        return self._data.shape

    @property
    def n_genes(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def select_samples(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """
        Subset by a boolean sample mask.

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )
        return ExpressionMatrix(
            data=self._data[:, mask],
            gene_ids=self._gene_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
            provenance=self._provenance[:, mask],
        )

    def select_genes(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """
        Subset by a boolean gene mask.

        Examples:
            >>> variances = np.var(matrix.data, axis=1)
            >>> variable = matrix.select_genes(variances > np.median(variances))
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        if len(mask) != self.n_genes:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_genes ({self.n_genes})"
            )
        return ExpressionMatrix(
            data=self._data[mask, :],
            gene_ids=self._gene_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            provenance=self._provenance[mask, :],
        )

    def gene_positions(self, genes: Sequence[str]) -> np.ndarray:
        """
        Row positions of `genes`, in the order given.

        Raises:
            DimensionMismatchError: If any gene is absent
        """
        positions = self._gene_ids.get_indexer(list(genes))
        if np.any(positions < 0):
            missing = [g for g, p in zip(genes, positions) if p < 0]
            raise DimensionMismatchError(
                f"{len(missing)} of {len(positions)} genes not found in dataset: "
                f"{missing[:10]}{'...' if len(missing) > 10 else ''}",
                missing_genes=missing,
            )
        return positions

    def subset_genes(self, genes: Sequence[str]) -> ExpressionMatrix:
        """Subset to `genes` in the given order (no silent intersection)."""
        positions = self.gene_positions(genes)
        return ExpressionMatrix(
            data=self._data[positions, :],
            gene_ids=self._gene_ids[positions],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            provenance=self._provenance[positions, :],
        )

    def with_data(
        self,
        data: np.ndarray,
        provenance: Optional[np.ndarray] = None,
    ) -> ExpressionMatrix:
        """New matrix with replaced values, same identifiers and metadata."""
        return ExpressionMatrix(
            data=data,
            gene_ids=self._gene_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            provenance=self._provenance if provenance is None else provenance,
        )

    def to_frame(self) -> pd.DataFrame:
        """Genes x samples DataFrame view of the values."""
        return pd.DataFrame(self._data, index=self._gene_ids, columns=self._sample_ids)

    def copy(self, deep: bool = True) -> ExpressionMatrix:
        """
        Create a copy of this matrix.

        Args:
            deep: If True, copy all arrays. If False, share arrays
        """
        if not deep:
            return ExpressionMatrix(
                data=self._data,
                gene_ids=self._gene_ids,
                sample_ids=self._sample_ids,
                sample_metadata=self._sample_metadata,
                provenance=self._provenance,
            )
        return ExpressionMatrix(
            data=self._data.copy(),
            gene_ids=self._gene_ids.copy(),
            sample_ids=self._sample_ids.copy(),
            sample_metadata=self._sample_metadata.copy(),
            provenance=self._provenance.copy(),
        )

    def __repr__(self) -> str:
        if self.n_genes == 0 or self.n_samples == 0:
            return f"ExpressionMatrix({self.n_genes} genes × {self.n_samples} samples)"
        return (
            f"ExpressionMatrix({self.n_genes} genes × {self.n_samples} samples)\n"
            f"  Genes: {self.gene_ids[0]}...{self.gene_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )

    def __str__(self) -> str:
        return self.__repr__()

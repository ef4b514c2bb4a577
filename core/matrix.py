"""
Supervision Matrix Encodings

A GeneralMatrix holds one of three storage encodings:

1. FULL:       dense torch.Tensor
2. SPARSE:     scipy CSR matrix (row-wise sparse entries, e.g. posteriors)
3. COMPRESSED: CompressedMatrix, values quantized to 8 or 16 bits

Each encoding has exactly one conversion path to a dense tensor.
"""

from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp
import torch


class MatrixKind(Enum):
    FULL = "full"
    SPARSE = "sparse"
    COMPRESSED = "compressed"


class CompressedMatrix:
    """
    Globally quantized matrix.

    Every element is stored as an unsigned integer q and decoded as
        value = min_value + range_ * q / (2**bits - 1)

    With 16 bits, values on the quantization grid (in particular min and
    max) decode exactly.
    """

    _DTYPES = {8: np.uint8, 16: np.uint16}

    def __init__(self, data: np.ndarray, min_value: float, range_: float):
        if data.dtype not in (np.uint8, np.uint16):
            raise ValueError(f"CompressedMatrix data must be uint8 or uint16, got {data.dtype}")
        if data.ndim != 2:
            raise ValueError(f"CompressedMatrix data must be 2-D, got shape {data.shape}")
        self.data = data
        self.min_value = float(min_value)
        self.range_ = float(range_)

    @property
    def bits(self) -> int:
        return 8 if self.data.dtype == np.uint8 else 16

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @classmethod
    def from_dense(cls, values: Union[np.ndarray, torch.Tensor], bits: int = 16) -> 'CompressedMatrix':
        """Quantize a dense matrix."""
        if bits not in cls._DTYPES:
            raise ValueError(f"bits must be 8 or 16, got {bits}")
        if isinstance(values, torch.Tensor):
            values = values.detach().cpu().numpy()
        values = np.asarray(values, dtype=np.float64)
        if values.ndim != 2:
            raise ValueError(f"Expected a 2-D matrix, got shape {values.shape}")

        if values.size == 0:
            min_value, max_value = 0.0, 1.0
        else:
            min_value, max_value = float(values.min()), float(values.max())
        if max_value == min_value:
            max_value = min_value + (1.0 + abs(min_value))
        range_ = max_value - min_value

        max_q = (1 << bits) - 1
        q = np.rint((values - min_value) / range_ * max_q)
        q = np.clip(q, 0, max_q).astype(cls._DTYPES[bits])
        return cls(q, min_value, range_)

    def to_numpy(self) -> np.ndarray:
        max_q = (1 << self.bits) - 1
        return (self.min_value + self.range_ * (self.data.astype(np.float64) / max_q)).astype(np.float32)


class GeneralMatrix:
    """
    Tagged union over the supported supervision encodings.

    Build with from_dense / from_sparse_rows / from_compressed;
    the `kind` tag selects the conversion path.
    """

    def __init__(self, kind: MatrixKind, data):
        self.kind = kind
        self.data = data

    @classmethod
    def from_dense(cls, values: Union[torch.Tensor, np.ndarray, Sequence]) -> 'GeneralMatrix':
        tensor = torch.as_tensor(values, dtype=torch.float32)
        if tensor.dim() != 2:
            raise ValueError(f"Expected a 2-D matrix, got shape {tuple(tensor.shape)}")
        return cls(MatrixKind.FULL, tensor)

    @classmethod
    def from_sparse_rows(
        cls,
        rows: Iterable[Iterable[Tuple[int, float]]],
        num_cols: int
    ) -> 'GeneralMatrix':
        """
        Build a sparse matrix from per-row (column, value) pairs.

        Example: [[(3, 1.0)], [(0, 0.25), (5, 0.75)]] for two frames of
        posteriors over num_cols classes.
        """
        indptr: List[int] = [0]
        indices: List[int] = []
        values: List[float] = []
        for row in rows:
            for col, value in row:
                if not 0 <= col < num_cols:
                    raise ValueError(f"Column index {col} out of range [0, {num_cols})")
                indices.append(col)
                values.append(value)
            indptr.append(len(indices))
        matrix = sp.csr_matrix(
            (np.asarray(values, dtype=np.float32),
             np.asarray(indices, dtype=np.int64),
             np.asarray(indptr, dtype=np.int64)),
            shape=(len(indptr) - 1, num_cols)
        )
        return cls(MatrixKind.SPARSE, matrix)

    @classmethod
    def from_compressed(cls, matrix: CompressedMatrix) -> 'GeneralMatrix':
        return cls(MatrixKind.COMPRESSED, matrix)

    @property
    def num_rows(self) -> int:
        return int(self.data.shape[0])

    @property
    def num_cols(self) -> int:
        return int(self.data.shape[1])

    def to_dense(
        self,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None
    ) -> torch.Tensor:
        """Dense copy of the matrix."""
        if self.kind == MatrixKind.FULL:
            dense = self.data.clone()
        elif self.kind == MatrixKind.SPARSE:
            dense = torch.from_numpy(self.data.toarray())
        elif self.kind == MatrixKind.COMPRESSED:
            dense = torch.from_numpy(self.data.to_numpy())
        else:
            raise ValueError(f"Unknown matrix kind {self.kind}")
        return dense.to(dtype=dtype, device=device)

    def __repr__(self) -> str:
        return f"GeneralMatrix(kind={self.kind.value}, shape=({self.num_rows}, {self.num_cols}))"

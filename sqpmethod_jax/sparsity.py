"""Fixed sparsity patterns and kernels over their nonzeros.

Hessians and Jacobians are exchanged between the problem, the QP solver
and the SQP driver as a :class:`Sparsity` pattern plus a flat vector of
nonzero values. The pattern is fixed for a whole solve, so every buffer
derived from it keeps the same shape across iterations.

Nonzeros are stored in column-major (compressed column) order: entries
are sorted by column, then by row, with duplicates removed. This is the
order in which problem backends must return the nonzero values.
"""

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from sqpmethod_jax.types import Scalar, ScalarLike


class Sparsity(eqx.Module):
    """Sparsity pattern of an ``nrow x ncol`` matrix.

    Attributes:
        nrow: Number of rows.
        ncol: Number of columns.
        row: Row index of each nonzero, column-major order.
        col: Column index of each nonzero, column-major order.
    """

    nrow: int = eqx.field(static=True)
    ncol: int = eqx.field(static=True)
    row: Int[np.ndarray, " nnz"]
    col: Int[np.ndarray, " nnz"]

    @classmethod
    def triplet(cls, nrow: int, ncol: int, row, col) -> "Sparsity":
        """Build a pattern from (possibly unsorted, duplicated) triplets."""
        row = np.asarray(row, dtype=np.int64).reshape(-1)
        col = np.asarray(col, dtype=np.int64).reshape(-1)
        if row.shape != col.shape:
            raise ValueError("row and col must have the same length")
        if row.size and (
            row.min() < 0 or row.max() >= nrow or col.min() < 0 or col.max() >= ncol
        ):
            raise ValueError(f"Triplet index out of range for a {nrow}x{ncol} matrix")
        if nrow == 0 or ncol == 0 or row.size == 0:
            empty = np.zeros((0,), dtype=np.int64)
            return cls(nrow=nrow, ncol=ncol, row=empty, col=empty)
        linear = np.unique(col * nrow + row)
        return cls(nrow=nrow, ncol=ncol, row=linear % nrow, col=linear // nrow)

    @classmethod
    def dense(cls, nrow: int, ncol: int) -> "Sparsity":
        """Fully populated pattern."""
        cols, rows = np.meshgrid(np.arange(ncol), np.arange(nrow), indexing="ij")
        return cls.triplet(nrow, ncol, rows.reshape(-1), cols.reshape(-1))

    @classmethod
    def diag(cls, n: int) -> "Sparsity":
        """Diagonal pattern of an ``n x n`` matrix."""
        idx = np.arange(n)
        return cls.triplet(n, n, idx, idx)

    @classmethod
    def from_mask(cls, mask) -> "Sparsity":
        """Pattern of the nonzero (or True) entries of a 2-D array."""
        mask = np.asarray(mask)
        if mask.ndim != 2:
            raise ValueError(f"Expected a 2-D mask, got shape {mask.shape}")
        rows, cols = np.nonzero(mask)
        return cls.triplet(mask.shape[0], mask.shape[1], rows, cols)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.nrow, self.ncol)

    @property
    def nnz(self) -> int:
        return int(self.row.shape[0])

    @property
    def diagonal_mask(self) -> Bool[np.ndarray, " nnz"]:
        """True for the nonzeros lying on the diagonal."""
        return self.row == self.col

    def is_symmetric(self) -> bool:
        if self.nrow != self.ncol:
            return False
        return self.same_pattern(
            Sparsity.triplet(self.nrow, self.ncol, self.col, self.row)
        )

    def same_pattern(self, other: "Sparsity") -> bool:
        return (
            self.shape == other.shape
            and np.array_equal(self.row, other.row)
            and np.array_equal(self.col, other.col)
        )

    @jaxtyped(typechecker=beartype)
    def get_nz(self, matrix: Float[Array, "nrow ncol"]) -> Float[Array, " nnz"]:
        """Extract the pattern's nonzeros from a dense matrix."""
        if matrix.shape != self.shape:
            raise ValueError(f"Expected a {self.shape} matrix, got {matrix.shape}")
        return matrix[self.row, self.col]

    @jaxtyped(typechecker=beartype)
    def to_dense(self, nz: Float[Array, " nnz"]) -> Float[Array, "nrow ncol"]:
        """Scatter nonzeros into a dense matrix."""
        return jnp.zeros(self.shape, dtype=nz.dtype).at[self.row, self.col].set(nz)

    @jaxtyped(typechecker=beartype)
    def mv(
        self,
        nz: Float[Array, " nnz"],
        x: Float[Array, " k"],
        transpose: bool = False,
    ) -> Float[Array, " l"]:
        """Sparse matrix-vector product ``A @ x`` (or ``A.T @ x``)."""
        if transpose:
            return jax.ops.segment_sum(nz * x[self.row], self.col, self.ncol)
        return jax.ops.segment_sum(nz * x[self.col], self.row, self.nrow)

    @jaxtyped(typechecker=beartype)
    def bilin(
        self,
        nz: Float[Array, " nnz"],
        x: Float[Array, " nrow"],
        y: Float[Array, " ncol"],
    ) -> Scalar:
        """Bilinear form ``x.T @ A @ y``."""
        return jnp.sum(nz * x[self.row] * y[self.col])

    @jaxtyped(typechecker=beartype)
    def rank1(
        self,
        nz: Float[Array, " nnz"],
        alpha: ScalarLike,
        x: Float[Array, " nrow"],
        y: Float[Array, " ncol"],
    ) -> Float[Array, " nnz"]:
        """Rank-1 update ``A + alpha * x @ y.T`` restricted to the pattern."""
        return nz + alpha * x[self.row] * y[self.col]

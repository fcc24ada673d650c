"""Symmetric sparse graph construction.

The directed k-NN edge list is merged into an undirected graph stored in
coordinate (COO) form with both directions of every edge, sorted by row then
column. The CSR row offsets are a prefix sum over the row degrees and share
``cols``/``vals`` with the COO arrays.
"""

import logging
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix

logger = logging.getLogger(__name__)


@dataclass
class CooGraph:
    """Edges ``(rows[e], cols[e])`` with weight ``vals[e]`` over ``n_rows`` points."""

    rows: npt.NDArray[np.int32]
    cols: npt.NDArray[np.int32]
    vals: npt.NDArray[np.float32]
    n_rows: int

    def __post_init__(self):
        if not (self.rows.shape == self.cols.shape == self.vals.shape):
            raise ValueError(
                f"rows {self.rows.shape}, cols {self.cols.shape} and vals "
                f"{self.vals.shape} must have the same shape"
            )

    @property
    def nnz(self) -> int:
        return int(self.vals.shape[0])

    @classmethod
    def empty(cls, n_rows: int = 0, dtype=np.float32) -> "CooGraph":
        return cls(
            np.empty(0, dtype=np.int32),
            np.empty(0, dtype=np.int32),
            np.empty(0, dtype=dtype),
            n_rows,
        )

    def to_csr_matrix(self, indptr: npt.NDArray) -> csr_matrix:
        """View the graph as a SciPy CSR matrix (no copy of cols/vals)."""
        return csr_matrix(
            (self.vals, self.cols, indptr), shape=(self.n_rows, self.n_rows), copy=False
        )


def knn_to_coo(
    indices: npt.NDArray[np.int32], distances: npt.NDArray[np.float32]
) -> CooGraph:
    """Directed edge list of a k-NN result: edge ``e`` starts at row ``e // k``."""
    n_rows, width = indices.shape
    edge_ids = np.arange(n_rows * width, dtype=np.int64)
    rows = (edge_ids // max(width, 1)).astype(np.int32)
    cols = indices.reshape(-1).astype(np.int32, copy=False)
    vals = distances.reshape(-1).astype(np.float32, copy=False)

    # missing neighbours are reported as negative ids
    keep = cols >= 0
    if not keep.all():
        rows, cols, vals = rows[keep], cols[keep], vals[keep]
    return CooGraph(rows, cols, vals, n_rows)


def symmetrize(coo: CooGraph) -> CooGraph:
    """Undirected version of ``coo``.

    Every edge is mirrored; when ``(i, j)`` and ``(j, i)`` both exist the
    larger weight wins. The result is sorted by row then column with no
    repeated ``(row, col)`` pair.
    """
    rows = np.concatenate([coo.rows, coo.cols])
    cols = np.concatenate([coo.cols, coo.rows])
    vals = np.concatenate([coo.vals, coo.vals])

    # heaviest first within each (row, col) run
    order = np.lexsort((-vals, cols, rows))
    rows, cols, vals = rows[order], cols[order], vals[order]

    first = np.ones(rows.shape[0], dtype=bool)
    first[1:] = (rows[1:] != rows[:-1]) | (cols[1:] != cols[:-1])
    return CooGraph(rows[first], cols[first], vals[first], coo.n_rows)


def coo_to_csr_indptr(rows: npt.NDArray[np.int32], n_rows: int) -> npt.NDArray:
    """Row offsets of a row-sorted COO graph."""
    if rows.size:
        if np.any(rows[1:] < rows[:-1]):
            raise ValueError("COO rows must be sorted before CSR conversion")
        if rows[0] < 0 or rows[-1] >= n_rows:
            raise ValueError(f"COO rows must lie in [0, {n_rows})")

    dtype = np.int32 if rows.size <= np.iinfo(np.int32).max else np.int64
    indptr = np.zeros(n_rows + 1, dtype=dtype)
    indptr[1:] = np.cumsum(np.bincount(rows, minlength=n_rows))
    return indptr


def mark_self_loops(coo: CooGraph) -> int:
    """Set every self-loop weight to the largest finite value of its dtype.

    Returns:
        Number of self-loops found.
    """
    loops = coo.rows == coo.cols
    coo.vals[loops] = np.finfo(coo.vals.dtype).max
    return int(np.count_nonzero(loops))


def build_graph(
    indices: npt.NDArray[np.int32],
    distances: npt.NDArray[np.float32],
    n_rows: int | None = None,
) -> tuple[npt.NDArray, CooGraph]:
    """Symmetric graph and CSR row offsets from a (transformed) k-NN result."""
    coo = knn_to_coo(indices, distances)
    if n_rows is not None:
        coo.n_rows = n_rows

    coo = symmetrize(coo)
    indptr = coo_to_csr_indptr(coo.rows, coo.n_rows)
    n_loops = mark_self_loops(coo)
    logger.debug(
        f"Built symmetric graph: {coo.n_rows:,} rows, {coo.nnz:,} edges, "
        f"{n_loops:,} self-loops"
    )
    return indptr, coo

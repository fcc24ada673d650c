"""Exact k-nearest-neighbour search and its usage contract.

The search libraries return 64-bit neighbour ids; the rest of the pipeline
works with 32-bit ids. Narrowing is lossless for every point count in
``[0, INDEX_MAX]`` and is refused, not truncated, outside that range.
"""

import logging
import time
from enum import Enum
from typing import Any, NamedTuple

import numpy as np
import numpy.typing as npt

from .devices import DeviceBackend, get_backend
from .errors import ConfigurationError, IndexRangeError, UnsupportedMetricError
from .orchestrator import MultiDeviceKnn

logger = logging.getLogger(__name__)

INDEX_DTYPE = np.int32
INDEX_MAX = int(np.iinfo(INDEX_DTYPE).max)


class Metric(str, Enum):
    """Distance variants known to the search engine."""

    L2_SQRT_EXPANDED = "l2_sqrt_expanded"
    L2_EXPANDED = "l2_expanded"
    L2_SQRT_UNEXPANDED = "l2_sqrt_unexpanded"
    L2_UNEXPANDED = "l2_unexpanded"
    L1 = "l1"
    COSINE = "cosine"
    INNER_PRODUCT = "inner_product"
    CHEBYSHEV = "chebyshev"


SUPPORTED_METRIC = Metric.L2_SQRT_EXPANDED

_ALIASES = {
    "euclidean": Metric.L2_SQRT_EXPANDED,
    "l2": Metric.L2_SQRT_EXPANDED,
    "sqeuclidean": Metric.L2_EXPANDED,
    "manhattan": Metric.L1,
    "cityblock": Metric.L1,
}


def resolve_metric(metric: "Metric | str") -> Metric:
    """Map ``metric`` to a :class:`Metric`, rejecting everything but Euclidean.

    Raises:
        UnsupportedMetricError: Unknown metric, or any metric other than
            ``l2_sqrt_expanded`` (alias ``"euclidean"``).
    """
    if isinstance(metric, Metric):
        resolved = metric
    else:
        name = str(metric).lower()
        resolved = _ALIASES.get(name)
        if resolved is None:
            try:
                resolved = Metric(name)
            except ValueError:
                raise UnsupportedMetricError(
                    f"Unknown distance metric {metric!r}"
                ) from None

    if resolved is not SUPPORTED_METRIC:
        raise UnsupportedMetricError(
            f"Currently only {SUPPORTED_METRIC.value!r} ('euclidean') distance is "
            f"supported, got {resolved.value!r}"
        )
    return resolved


def check_index_range(n_points: int) -> None:
    """Fail unless every id in ``range(n_points)`` fits ``INDEX_DTYPE``."""
    if not 0 <= n_points <= INDEX_MAX:
        raise IndexRangeError(
            f"{n_points:,} points is outside the supported range [0, {INDEX_MAX:,}] "
            f"for {np.dtype(INDEX_DTYPE).name} neighbour ids"
        )


def narrow_indices(indices: Any, n_points: int) -> Any:
    """Convert search-library neighbour ids to ``INDEX_DTYPE`` without loss."""
    check_index_range(n_points)
    if indices.size and int(indices.max()) >= n_points:
        raise IndexRangeError(
            f"neighbour id {int(indices.max()):,} is out of range for {n_points:,} points"
        )
    return indices.astype(INDEX_DTYPE, copy=False)


class KnnResult(NamedTuple):
    indices: npt.NDArray[np.int32]
    distances: npt.NDArray[np.float32]


def exact_knn(
    reference: Any,
    queries: Any = None,
    k: int = 1,
    metric: "Metric | str" = "euclidean",
    *,
    backend: DeviceBackend | None = None,
    n_devices: int | None = None,
    n_jobs: int = 1,
) -> KnnResult:
    """Brute-force k-NN of ``queries`` against ``reference``.

    Args:
        reference (array-like): Shape (n_reference, n_features).
        queries (array-like, optional): Shape (n_queries, n_features). Defaults
            to ``reference``, in which case every point is its own first
            neighbour at distance 0.
        k (int): Neighbours per query, ``1 <= k <= n_reference``.
        metric (str or Metric): Must resolve to ``l2_sqrt_expanded``.
        backend (DeviceBackend, optional): Defaults to :func:`get_backend`.
        n_devices (int, optional): Devices to fan out over. Defaults to all.
        n_jobs (int, optional): Threads per host sub-search.

    Returns:
        KnnResult: host arrays of shape (n_queries, k), rows sorted by
            ascending distance.
    """
    resolve_metric(metric)
    if backend is None:
        backend = get_backend()

    reference = backend.asarray(reference)
    queries = reference if queries is None else backend.asarray(queries)

    n_reference = reference.shape[0]
    check_index_range(n_reference)
    if not 1 <= k <= n_reference:
        raise ConfigurationError(
            f"k must be between 1 and the number of reference points ({n_reference:,}), got {k}"
        )
    if queries.shape[1] != reference.shape[1]:
        raise ConfigurationError(
            f"queries have {queries.shape[1]} features but reference has {reference.shape[1]}"
        )

    if queries.shape[0] == 0:
        return KnnResult(
            np.empty((0, k), dtype=INDEX_DTYPE), np.empty((0, k), dtype=np.float32)
        )

    t0 = time.perf_counter()
    indices, distances = MultiDeviceKnn(backend, n_devices=n_devices, n_jobs=n_jobs).search(
        reference, queries, k
    )
    indices = narrow_indices(backend.to_host(indices), n_reference)
    distances = backend.to_host(distances).astype(np.float32, copy=False)
    logger.debug(
        f"Exact k-NN (k={k}) of {queries.shape[0]:,} queries completed in "
        f"{time.perf_counter() - t0:.4f} seconds"
    )
    return KnnResult(indices, distances)

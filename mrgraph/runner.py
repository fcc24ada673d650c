import logging
import multiprocessing
import time
from typing import NamedTuple

import numpy as np
import numpy.typing as npt

from .config import DeviceName, load_settings
from .devices import cp, get_backend, is_device_array
from .errors import ConfigurationError
from .graph import CooGraph, build_graph
from .knn import check_index_range, exact_knn, resolve_metric
from .reachability import core_distances, transform_mutual_reachability

logger = logging.getLogger(__name__)


class MutualReachabilityGraph(NamedTuple):
    indptr: npt.NDArray
    core_distances: npt.NDArray[np.float32]
    graph: CooGraph


def _resolve_n_jobs(n_jobs: int | None) -> int:
    if n_jobs is None:
        n_jobs = load_settings().n_jobs
    # Handle n_jobs=-1 for using all processors (only relevant for CPU)
    if n_jobs == -1:
        n_jobs = multiprocessing.cpu_count()
    return n_jobs


def _check_neighborhood(min_samples: int, n_neighbors: int | None) -> int:
    if min_samples < 1:
        raise ConfigurationError(f"min_samples must be >= 1, got {min_samples}")
    k = min_samples if n_neighbors is None else n_neighbors
    if k < min_samples:
        raise ConfigurationError(
            f"min_samples ({min_samples}) must not exceed n_neighbors ({k})"
        )
    return k


def _to_device(result: MutualReachabilityGraph) -> MutualReachabilityGraph:
    graph = result.graph
    return MutualReachabilityGraph(
        cp.asarray(result.indptr),  # type: ignore
        cp.asarray(result.core_distances),  # type: ignore
        CooGraph(
            cp.asarray(graph.rows),  # type: ignore
            cp.asarray(graph.cols),  # type: ignore
            cp.asarray(graph.vals),  # type: ignore
            graph.n_rows,
        ),
    )


def mutual_reachability_graph(
    X: npt.ArrayLike,
    min_samples: int,
    metric: str = "euclidean",
    alpha: float = 1.0,
    *,
    n_neighbors: int | None = None,
    device: DeviceName | None = None,
    n_devices: int | None = None,
    n_jobs: int | None = None,
    verbose: bool | None = None,
) -> MutualReachabilityGraph:
    """Build the mutual-reachability graph of X.

    The edge weight between two points a and b is
    ``max(core(a), core(b), d(a, b) / alpha)``, where ``core(p)`` is the
    distance from p to its ``min_samples``-th nearest neighbor (p included).

    Args:
        X (array-like): Shape (n_samples, n_features). The input samples.
            NumPy and CuPy arrays are accepted.
        min_samples (int): Neighborhood rank that defines the core distance.
            This includes the point itself.
        metric (str, optional): Distance metric. Only "euclidean"
            (``l2_sqrt_expanded``) is supported; anything else raises
            UnsupportedMetricError. Defaults to "euclidean".
        alpha (float, optional): Distance scaling, must be >= 1.0. The raw
            distance between two points is multiplied by ``1 / alpha`` before
            the core distances are applied. Defaults to 1.0.
        n_neighbors (int, optional): Number of nearest neighbors searched per
            point (including itself). Defaults to min_samples.
        device (str, optional): Device to use for neighbor search.
            "auto": Use GPU if available, else CPU.
            "cpu": Force CPU usage.
            "gpu": Force GPU usage. Raises ImportError if GPU libraries are missing.
            Defaults to ``MRGRAPH_DEVICE`` ("auto" when unset).
        n_devices (int, optional): Number of devices to split the search over,
            starting with the current device. Defaults to all devices of the
            chosen backend (``MRGRAPH_HOST_DEVICES`` on CPU).
        n_jobs (int, optional): Number of threads per CPU neighbor search. Set
            to -1 to use all processors. Defaults to ``MRGRAPH_N_JOBS`` (1).
        verbose (bool, optional): Log stage timings at INFO instead of DEBUG.
            Defaults to ``MRGRAPH_VERBOSE``.

    Returns:
        MutualReachabilityGraph: ``(indptr, core_distances, graph)``.
            ``indptr`` has shape (n_samples + 1,) and its last entry equals
            ``graph.nnz``; ``core_distances`` has shape (n_samples,);
            ``graph`` stores both directions of every undirected edge, sorted
            by row then column, with every self-loop weighted by the largest
            finite float32. Arrays are CuPy arrays when X is.

    Raises:
        UnsupportedMetricError: metric is not Euclidean.
        ConfigurationError: min_samples > n_neighbors, n_neighbors larger
            than the number of samples, or alpha < 1.
        ResourceError: Staging memory could not be allocated on some device.
        DeviceError: A neighbor sub-search failed.
    """
    settings = load_settings()
    verbose = settings.verbose if verbose is None else verbose
    log = logger.info if verbose else logger.debug
    n_jobs = _resolve_n_jobs(n_jobs)

    # Configuration errors surface before any device work
    resolve_metric(metric)
    k = _check_neighborhood(min_samples, n_neighbors)
    if not alpha >= 1.0:
        raise ConfigurationError(f"alpha must be >= 1.0, got {alpha}")

    input_is_cupy = is_device_array(X)
    n_samples = len(X)  # type: ignore
    check_index_range(n_samples)

    if n_samples == 0:
        result = MutualReachabilityGraph(
            np.zeros(1, dtype=np.int32), np.empty(0, dtype=np.float32), CooGraph.empty()
        )
        return _to_device(result) if input_is_cupy else result

    if k > n_samples:
        raise ConfigurationError(
            f"n_neighbors ({k}) exceeds the number of samples ({n_samples})"
        )

    backend = get_backend(device)
    X_arr = backend.asarray(X)

    t0 = time.perf_counter()
    log(f"Starting k-NN search (k={k}) on {backend.name} for {n_samples:,} samples")
    knn = exact_knn(
        X_arr, None, k, metric, backend=backend, n_devices=n_devices, n_jobs=n_jobs
    )
    log(f"k-NN search completed in {time.perf_counter() - t0:.4f} seconds")

    t0 = time.perf_counter()
    core = core_distances(knn.distances, min_samples, k)
    transform_mutual_reachability(knn.indices, knn.distances, core, 1.0 / alpha)
    indptr, graph = build_graph(knn.indices, knn.distances, n_samples)
    log(
        f"Mutual reachability graph ({graph.nnz:,} edges) built in "
        f"{time.perf_counter() - t0:.4f} seconds"
    )

    result = MutualReachabilityGraph(indptr, core, graph)

    # Return same type as input
    if input_is_cupy:
        return _to_device(result)
    return result


def query_core_distances(
    X: npt.ArrayLike,
    queries: npt.ArrayLike,
    min_samples: int,
    metric: str = "euclidean",
    *,
    device: DeviceName | None = None,
    n_devices: int | None = None,
    n_jobs: int | None = None,
) -> npt.NDArray[np.float32]:
    """Core distances of ``queries`` measured against the points of X.

    The same ``min_samples`` sets both the search width and the extracted
    neighbor rank. A query that is also a row of X finds itself first, exactly
    as in :func:`mutual_reachability_graph`.

    Returns:
        numpy.ndarray of float32, shape (n_queries,). CuPy if ``queries`` is.
    """
    resolve_metric(metric)
    k = _check_neighborhood(min_samples, None)
    n_jobs = _resolve_n_jobs(n_jobs)

    n_samples = len(X)  # type: ignore
    check_index_range(n_samples)
    if k > n_samples:
        raise ConfigurationError(
            f"min_samples ({k}) exceeds the number of samples ({n_samples})"
        )

    output_is_cupy = is_device_array(queries)
    backend = get_backend(device)
    knn = exact_knn(
        X, queries, k, metric, backend=backend, n_devices=n_devices, n_jobs=n_jobs
    )
    core = core_distances(knn.distances, min_samples, k)
    if output_is_cupy:
        return cp.asarray(core)  # type: ignore
    return core

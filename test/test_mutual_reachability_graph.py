"""End-to-end tests for mutual_reachability_graph."""

import numpy as np
import pytest
from sklearn.datasets import make_blobs

from mrgraph import (
    ConfigurationError,
    HostBackend,
    MutualReachabilityGraph,
    UnsupportedMetricError,
    mutual_reachability_graph,
    query_core_distances,
)
from mrgraph.knn import exact_knn

FLOAT_MAX = np.finfo(np.float32).max


def _blobs(n_samples=300, seed=0):
    X, _ = make_blobs(  # type: ignore
        n_samples=n_samples, centers=4, n_features=3, cluster_std=0.5, random_state=seed
    )
    return X.astype(np.float32)


def _check_invariants(result: MutualReachabilityGraph, n_samples: int):
    indptr, core, graph = result
    assert indptr.shape == (n_samples + 1,)
    assert indptr[0] == 0
    assert indptr[-1] == graph.nnz, "Last row offset must equal nnz"
    assert np.all(np.diff(indptr) >= 0), "indptr must be non-decreasing"
    assert core.shape == (n_samples,)

    loops = graph.rows == graph.cols
    assert np.all(graph.vals[loops] == FLOAT_MAX), "Self-loops must carry the sentinel"

    off = ~loops
    floor = np.maximum(core[graph.rows[off]], core[graph.cols[off]])
    assert np.all(graph.vals[off] >= floor), "Edge weight below a core distance"

    csr = graph.to_csr_matrix(indptr)
    assert (csr != csr.T).nnz == 0, "Graph must be symmetric"
    keys = graph.rows.astype(np.int64) * n_samples + graph.cols
    assert np.all(np.diff(keys) > 0), "Duplicate or unsorted edges"


def test_unit_square():
    """Each corner's core distance is the distance to its nearest adjacent corner."""
    X = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])

    indptr, core, graph = mutual_reachability_graph(X, min_samples=2, device="cpu")

    np.testing.assert_allclose(core, [1.0, 1.0, 1.0, 1.0], atol=1e-6)
    off = graph.rows != graph.cols
    assert np.all(graph.vals[off] >= 1.0 - 1e-6), "No non-self edge may be below 1.0"
    _check_invariants(MutualReachabilityGraph(indptr, core, graph), 4)


def test_empty_point_set():
    indptr, core, graph = mutual_reachability_graph(
        np.empty((0, 2), dtype=np.float32), min_samples=3, device="cpu"
    )

    np.testing.assert_array_equal(indptr, [0])
    assert core.shape == (0,)
    assert graph.nnz == 0


def test_min_samples_above_neighborhood_is_configuration_error():
    X = _blobs(20)

    with pytest.raises(ConfigurationError):
        mutual_reachability_graph(X, min_samples=5, n_neighbors=3, device="cpu")


def test_neighborhood_larger_than_point_set():
    X = _blobs(20)[:4]

    with pytest.raises(ConfigurationError):
        mutual_reachability_graph(X, min_samples=5, device="cpu")


def test_unsupported_metric_fails_fast():
    X = _blobs(20)

    with pytest.raises(UnsupportedMetricError):
        mutual_reachability_graph(X, min_samples=2, metric="cosine", device="cpu")


@pytest.mark.parametrize("alpha", [0.5, 0.0, float("nan")])
def test_alpha_below_one_rejected(alpha):
    with pytest.raises(ConfigurationError):
        mutual_reachability_graph(_blobs(20), min_samples=2, alpha=alpha, device="cpu")


@pytest.mark.parametrize(
    "min_samples,n_neighbors,alpha",
    [(1, None, 1.0), (5, None, 1.0), (5, 10, 1.0), (3, None, 2.0), (5, 10, 4.0)],
)
def test_graph_invariants_on_blobs(min_samples, n_neighbors, alpha):
    X = _blobs()

    result = mutual_reachability_graph(
        X, min_samples=min_samples, n_neighbors=n_neighbors, alpha=alpha, device="cpu"
    )

    _check_invariants(result, X.shape[0])


def test_core_distances_match_knn_column():
    X = _blobs()
    knn = exact_knn(X, k=5, backend=HostBackend(1))

    _, core, _ = mutual_reachability_graph(X, min_samples=5, device="cpu")

    np.testing.assert_array_equal(core, knn.distances[:, 4])


def test_edge_weight_is_max_of_directional_candidates():
    """Each merged weight equals the max over both directions seen."""
    X = _blobs(80)
    k = 4
    knn = exact_knn(X, k=k, backend=HostBackend(1))
    core = knn.distances[:, k - 1]

    indptr, _, graph = mutual_reachability_graph(X, min_samples=k, device="cpu")
    csr = graph.to_csr_matrix(indptr)

    candidates: dict[tuple[int, int], float] = {}
    for i in range(X.shape[0]):
        for j, d in zip(knn.indices[i], knn.distances[i]):
            if i == j:
                continue
            w = max(core[i], core[j], d)
            key = (min(i, int(j)), max(i, int(j)))
            candidates[key] = max(candidates.get(key, 0.0), w)

    for (i, j), w in candidates.items():
        assert csr[i, j] == pytest.approx(w, rel=1e-6)
        assert csr[j, i] == pytest.approx(w, rel=1e-6)


def test_alpha_scales_raw_distance_only():
    """alpha shrinks the raw distance; the core distances still bound every edge."""
    X = _blobs(100)
    k = 3
    knn = exact_knn(X, k=k, backend=HostBackend(1))
    core = knn.distances[:, k - 1]

    _, base_core, base = mutual_reachability_graph(X, min_samples=k, device="cpu")
    indptr, scaled_core, scaled = mutual_reachability_graph(
        X, min_samples=k, alpha=2.0, device="cpu"
    )

    np.testing.assert_array_equal(scaled_core, base_core)
    np.testing.assert_array_equal(scaled.rows, base.rows)
    np.testing.assert_array_equal(scaled.cols, base.cols)

    off = scaled.rows != scaled.cols
    floor = np.maximum(scaled_core[scaled.rows[off]], scaled_core[scaled.cols[off]])
    assert np.all(scaled.vals[off] >= floor), "Edge weight below a core distance"
    assert np.all(scaled.vals[off] <= base.vals[off]), "alpha must not raise weights"

    csr = scaled.to_csr_matrix(indptr)
    for i in range(X.shape[0]):
        for j, d in zip(knn.indices[i], knn.distances[i]):
            if i == j:
                continue
            w = max(core[i], core[j], d / 2.0)
            assert csr[i, j] >= w * (1 - 1e-6)


def test_multi_device_matches_single_device(monkeypatch):
    X = _blobs()

    single = mutual_reachability_graph(X, min_samples=5, device="cpu", n_devices=1)
    monkeypatch.setenv("MRGRAPH_HOST_DEVICES", "3")
    multi = mutual_reachability_graph(X, min_samples=5, device="cpu")

    np.testing.assert_allclose(multi.core_distances, single.core_distances, rtol=1e-6)
    np.testing.assert_array_equal(multi.indptr, single.indptr)
    np.testing.assert_array_equal(multi.graph.cols, single.graph.cols)
    np.testing.assert_allclose(multi.graph.vals, single.graph.vals, rtol=1e-6)


def test_duplicate_points():
    """Coincident points get a zero core distance and still satisfy every invariant."""
    X = np.array([[0.0, 0.0], [0.0, 0.0], [5.0, 5.0], [5.0, 6.0]], dtype=np.float32)

    result = mutual_reachability_graph(X, min_samples=2, device="cpu")

    _check_invariants(result, 4)
    np.testing.assert_allclose(result.core_distances[:2], 0.0, atol=1e-6)


def test_query_core_distances_match_graph():
    X = _blobs(120)

    _, core, _ = mutual_reachability_graph(X, min_samples=4, device="cpu")
    queried = query_core_distances(X, X[:10], min_samples=4, device="cpu")

    np.testing.assert_allclose(queried, core[:10], rtol=1e-6)


def test_query_core_distances_rejects_oversized_min_samples():
    X = _blobs(120)[:3]

    with pytest.raises(ConfigurationError):
        query_core_distances(X, X, min_samples=4, device="cpu")


if __name__ == "__main__":
    pytest.main([__file__])

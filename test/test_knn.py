"""Tests for the exact k-NN usage contract."""

import numpy as np
import pytest

from mrgraph import (
    ConfigurationError,
    HostBackend,
    IndexRangeError,
    Metric,
    UnsupportedMetricError,
    exact_knn,
)
from mrgraph.knn import INDEX_MAX, check_index_range, narrow_indices, resolve_metric


def _brute_force(reference, queries, k):
    diff = queries[:, None, :].astype(np.float64) - reference[None, :, :]
    dist = np.sqrt((diff**2).sum(axis=-1))
    order = np.argsort(dist, axis=1, kind="stable")[:, :k]
    return np.take_along_axis(dist, order, axis=1)


def test_resolve_metric_accepts_euclidean_aliases():
    assert resolve_metric("euclidean") is Metric.L2_SQRT_EXPANDED
    assert resolve_metric("L2") is Metric.L2_SQRT_EXPANDED
    assert resolve_metric("l2_sqrt_expanded") is Metric.L2_SQRT_EXPANDED
    assert resolve_metric(Metric.L2_SQRT_EXPANDED) is Metric.L2_SQRT_EXPANDED


@pytest.mark.parametrize(
    "metric", ["cosine", "manhattan", "sqeuclidean", Metric.INNER_PRODUCT, "hamming"]
)
def test_resolve_metric_rejects_others(metric):
    with pytest.raises(UnsupportedMetricError):
        resolve_metric(metric)


def test_unsupported_metric_is_a_value_error():
    """Callers catching ValueError also see configuration errors."""
    with pytest.raises(ValueError):
        resolve_metric("cosine")


def test_check_index_range():
    check_index_range(0)
    check_index_range(INDEX_MAX)
    with pytest.raises(IndexRangeError):
        check_index_range(INDEX_MAX + 1)
    with pytest.raises(IndexRangeError):
        check_index_range(-1)


def test_narrow_indices_is_lossless():
    wide = np.array([[0, 5], [9, 3]], dtype=np.int64)

    narrow = narrow_indices(wide, n_points=10)

    assert narrow.dtype == np.int32
    np.testing.assert_array_equal(narrow, wide)


def test_narrow_indices_refuses_out_of_range_ids():
    with pytest.raises(IndexRangeError):
        narrow_indices(np.array([[0, 10]], dtype=np.int64), n_points=10)
    with pytest.raises(IndexRangeError):
        narrow_indices(np.zeros((1, 1), dtype=np.int64), n_points=INDEX_MAX + 1)


def test_exact_knn_matches_brute_force():
    rng = np.random.default_rng(1)
    X = rng.normal(size=(60, 4)).astype(np.float32)
    k = 5

    result = exact_knn(X, k=k, backend=HostBackend(1))

    assert result.indices.shape == (60, k)
    assert result.indices.dtype == np.int32
    assert result.distances.dtype == np.float32
    np.testing.assert_allclose(result.distances, _brute_force(X, X, k), atol=1e-3)
    assert np.all(np.diff(result.distances, axis=1) >= 0), "Rows must be sorted"


def test_exact_knn_includes_self_first():
    X = np.array([[0.0, 0.0], [3.0, 0.0], [0.0, 4.0]], dtype=np.float32)

    result = exact_knn(X, k=2, backend=HostBackend(1))

    np.testing.assert_array_equal(result.indices[:, 0], [0, 1, 2])
    np.testing.assert_allclose(result.distances[:, 0], 0.0, atol=1e-6)
    np.testing.assert_allclose(result.distances[:, 1], [3.0, 3.0, 4.0], atol=1e-5)


def test_exact_knn_separate_query_set():
    rng = np.random.default_rng(2)
    reference = rng.uniform(size=(40, 3)).astype(np.float32)
    queries = rng.uniform(size=(7, 3)).astype(np.float32)

    result = exact_knn(reference, queries, k=3, backend=HostBackend(1))

    assert result.indices.shape == (7, 3)
    np.testing.assert_allclose(
        result.distances, _brute_force(reference, queries, 3), atol=1e-3
    )


def test_exact_knn_configuration_errors():
    X = np.zeros((4, 2), dtype=np.float32)
    backend = HostBackend(1)

    with pytest.raises(ConfigurationError):
        exact_knn(X, k=5, backend=backend)
    with pytest.raises(ConfigurationError):
        exact_knn(X, k=0, backend=backend)
    with pytest.raises(ConfigurationError):
        exact_knn(X, np.zeros((2, 3)), k=1, backend=backend)
    with pytest.raises(UnsupportedMetricError):
        exact_knn(X, k=1, metric="cosine", backend=backend)


def test_exact_knn_empty_queries():
    X = np.ones((3, 2), dtype=np.float32)

    result = exact_knn(X, np.empty((0, 2), dtype=np.float32), k=2, backend=HostBackend(1))

    assert result.indices.shape == (0, 2)
    assert result.distances.shape == (0, 2)


if __name__ == "__main__":
    pytest.main([__file__])

"""Core distances and the mutual-reachability transform."""

import numpy as np
import numpy.typing as npt

from .errors import ConfigurationError


def core_distances(
    knn_distances: npt.NDArray[np.float32],
    min_samples: int,
    n_neighbors: int | None = None,
) -> npt.NDArray[np.float32]:
    """Distance from each point to its ``min_samples``-th nearest neighbour.

    The point itself counts as its first neighbour, so this is column
    ``min_samples - 1`` of the k-NN distance matrix.

    Args:
        knn_distances: Shape (n_samples, k), rows sorted ascending.
        min_samples: Neighbourhood rank defining the core distance.
        n_neighbors: Neighbourhood size that was searched. Defaults to ``k``.

    Returns:
        New array of shape (n_samples,).

    Raises:
        ConfigurationError: ``min_samples`` is not in ``[1, n_neighbors]``.
    """
    if knn_distances.ndim != 2:
        raise ConfigurationError(
            f"knn_distances must be 2-D, got {knn_distances.ndim}-D"
        )
    width = knn_distances.shape[1]
    if n_neighbors is None:
        n_neighbors = width
    if n_neighbors > width:
        raise ConfigurationError(
            f"n_neighbors ({n_neighbors}) exceeds the k-NN matrix width ({width})"
        )
    if min_samples < 1:
        raise ConfigurationError(f"min_samples must be >= 1, got {min_samples}")
    if min_samples > n_neighbors:
        raise ConfigurationError(
            f"min_samples ({min_samples}) must not exceed n_neighbors ({n_neighbors})"
        )
    return knn_distances[:, min_samples - 1].copy()


def transform_mutual_reachability(
    indices: npt.NDArray[np.int32],
    distances: npt.NDArray[np.float32],
    core_dists: npt.NDArray[np.float32],
    inverse_alpha: float = 1.0,
) -> npt.NDArray[np.float32]:
    """Rewrite k-NN distances into mutual-reachability distances, in place.

    ``distances[i, j]`` becomes
    ``max(core[i], core[indices[i, j]], distances[i, j] * inverse_alpha)``.
    Only the raw distance is scaled, so every result stays at or above both
    core distances.
    Entries with a negative neighbour id are left unchanged. Rows are not
    re-sorted.

    Returns:
        ``distances``.
    """
    if indices.shape != distances.shape:
        raise ConfigurationError(
            f"indices {indices.shape} and distances {distances.shape} differ in shape"
        )
    if core_dists.shape[0] != distances.shape[0]:
        raise ConfigurationError(
            f"{core_dists.shape[0]} core distances for {distances.shape[0]} points"
        )

    valid = indices >= 0
    neighbor_core = core_dists[np.where(valid, indices, 0)]
    scaled = distances if inverse_alpha == 1.0 else distances * inverse_alpha
    reach = np.maximum(np.maximum(core_dists[:, None], neighbor_core), scaled)
    np.copyto(distances, reach, where=valid)
    return distances

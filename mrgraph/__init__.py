"""mrgraph: mutual-reachability graphs for density-based clustering."""

from .devices import HAS_GPU, CudaBackend, HostBackend, get_backend
from .errors import (
    ConfigurationError,
    DeviceError,
    IndexRangeError,
    MrGraphError,
    ResourceError,
    UnsupportedMetricError,
)
from .graph import CooGraph
from .knn import KnnResult, Metric, exact_knn
from .reachability import core_distances, transform_mutual_reachability
from .runner import (
    MutualReachabilityGraph,
    mutual_reachability_graph,
    query_core_distances,
)

__version__ = "0.1.0"
__all__ = [
    "HAS_GPU",
    "ConfigurationError",
    "CooGraph",
    "CudaBackend",
    "DeviceError",
    "HostBackend",
    "IndexRangeError",
    "KnnResult",
    "Metric",
    "MrGraphError",
    "MutualReachabilityGraph",
    "ResourceError",
    "UnsupportedMetricError",
    "core_distances",
    "exact_knn",
    "get_backend",
    "mutual_reachability_graph",
    "query_core_distances",
    "transform_mutual_reachability",
]

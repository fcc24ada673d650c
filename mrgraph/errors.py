"""Exceptions raised by mrgraph.

Configuration errors are raised before any device work happens. Resource and
device errors abort the call after every staged buffer has been released.
"""


class MrGraphError(Exception):
    """Base class for all mrgraph errors."""


class ConfigurationError(MrGraphError, ValueError):
    """Invalid parameters, e.g. ``min_samples`` larger than the neighbourhood."""


class UnsupportedMetricError(ConfigurationError):
    """The requested distance metric is not the supported Euclidean variant."""


class IndexRangeError(ConfigurationError):
    """The point count does not fit the working index type."""


class ResourceError(MrGraphError, MemoryError):
    """Device memory could not be allocated or copied during staging."""


class DeviceError(MrGraphError, RuntimeError):
    """A nearest-neighbour sub-search failed on one device."""

    def __init__(self, message: str, ordinal: int | None = None):
        super().__init__(message)
        self.ordinal = ordinal

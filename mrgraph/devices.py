"""Device backends used by the nearest-neighbour orchestrator.

A backend owns everything device specific: how many devices exist, which one
the calling thread is bound to, how point arrays are staged into a device's
private memory, and how one brute-force k-NN sub-search runs there.

Two backends are provided:

* :class:`HostBackend` runs on the CPU with scikit-learn. It exposes a
  configurable number of logical host devices so multi-device runs can be
  exercised without accelerators.
* :class:`CudaBackend` drives CUDA devices through CuPy and cuML.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

import numpy as np
import numpy.typing as npt
from sklearn.neighbors import NearestNeighbors

try:
    import cupy as cp  # type: ignore
    from cuml.neighbors import NearestNeighbors as CuMLNearestNeighbors  # type: ignore

    HAS_GPU = True
except ImportError:
    CuMLNearestNeighbors = None
    cp = None
    HAS_GPU = False

from .config import DeviceName, load_settings
from .errors import ConfigurationError, ResourceError

logger = logging.getLogger(__name__)


def is_device_array(X: Any) -> bool:
    """Return True if ``X`` is a CuPy array."""
    return HAS_GPU and isinstance(X, cp.ndarray)  # type: ignore


def _check_points(X: Any) -> Any:
    if X.ndim != 2:
        raise ConfigurationError(
            f"points must be a 2-D array of shape (n_samples, n_features), got {X.ndim}-D"
        )
    return X


class DeviceBackend:
    """Interface between the orchestrator and a family of devices."""

    name = "abstract"

    def device_count(self) -> int:
        raise NotImplementedError

    def current_device(self) -> int:
        raise NotImplementedError

    def set_device(self, ordinal: int) -> None:
        raise NotImplementedError

    def asarray(self, X: Any) -> Any:
        """Convert ``X`` to a C-contiguous float32 array on the current device."""
        raise NotImplementedError

    def stage(self, array: Any, ordinal: int) -> Any:
        """Copy ``array`` into memory private to device ``ordinal``."""
        raise NotImplementedError

    def release(self, ordinal: int) -> None:
        """Return memory freed on device ``ordinal`` to the device."""
        raise NotImplementedError

    def empty(self, shape: tuple[int, ...], dtype: Any, ordinal: int) -> Any:
        raise NotImplementedError

    def copy_rows(self, dst: Any, start: int, src: Any, ordinal: int) -> None:
        """Copy ``src`` into ``dst[start:start + len(src)]`` on device ``ordinal``."""
        raise NotImplementedError

    def search(
        self, reference: Any, queries: Any, k: int, ordinal: int, n_jobs: int = 1
    ) -> tuple[Any, Any]:
        """Exact k-NN of ``queries`` against ``reference`` on device ``ordinal``.

        Returns ``(indices, distances)`` of shape ``(len(queries), k)``, each row
        sorted by ascending Euclidean distance. Indices use the search
        library's native (64-bit) integer type.
        """
        raise NotImplementedError

    def to_host(self, array: Any) -> np.ndarray:
        raise NotImplementedError

    def check_ordinal(self, ordinal: int) -> None:
        count = self.device_count()
        if not 0 <= ordinal < count:
            raise ConfigurationError(
                f"device ordinal {ordinal} out of range for {count} {self.name} device(s)"
            )


class HostBackend(DeviceBackend):
    """CPU backend built on scikit-learn's brute-force ``NearestNeighbors``.

    Args:
        n_devices (int, optional): Number of logical host devices. Defaults to
            ``MRGRAPH_HOST_DEVICES`` (1 when unset).
    """

    name = "cpu"

    def __init__(self, n_devices: int | None = None):
        if n_devices is None:
            n_devices = load_settings().host_devices
        if n_devices < 1:
            raise ConfigurationError(f"n_devices must be >= 1, got {n_devices}")
        self.n_devices = n_devices
        # Bindings are per thread, as with CUDA's current device.
        self._binding = threading.local()

    def device_count(self) -> int:
        return self.n_devices

    def current_device(self) -> int:
        return getattr(self._binding, "ordinal", 0)

    def set_device(self, ordinal: int) -> None:
        self.check_ordinal(ordinal)
        self._binding.ordinal = ordinal

    def asarray(self, X: Any) -> npt.NDArray[np.float32]:
        if is_device_array(X):
            X = cp.asnumpy(X)  # type: ignore
        return _check_points(np.ascontiguousarray(X, dtype=np.float32))

    def stage(self, array: Any, ordinal: int) -> npt.NDArray[np.float32]:
        self.check_ordinal(ordinal)
        try:
            return np.array(array, dtype=np.float32, order="C", copy=True)
        except MemoryError as exc:
            raise ResourceError(
                f"could not stage {array.nbytes:,} bytes on host device {ordinal}"
            ) from exc

    def release(self, ordinal: int) -> None:
        # Host buffers go back to the allocator once the arena drops them.
        self.check_ordinal(ordinal)

    def empty(self, shape: tuple[int, ...], dtype: Any, ordinal: int) -> np.ndarray:
        self.check_ordinal(ordinal)
        try:
            return np.empty(shape, dtype=dtype)
        except MemoryError as exc:
            raise ResourceError(
                f"could not allocate array of shape {shape} on host device {ordinal}"
            ) from exc

    def copy_rows(self, dst: Any, start: int, src: Any, ordinal: int) -> None:
        dst[start : start + src.shape[0]] = src

    def search(
        self, reference: Any, queries: Any, k: int, ordinal: int, n_jobs: int = 1
    ) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.float32]]:
        logger.debug(
            f"Host device {ordinal}: k-NN search of {queries.shape[0]:,} queries "
            f"against {reference.shape[0]:,} points, n_jobs={n_jobs}"
        )
        neighbors_model = NearestNeighbors(
            n_neighbors=k, algorithm="brute", metric="euclidean", n_jobs=n_jobs
        )
        neighbors_model.fit(reference)
        distances, indices = neighbors_model.kneighbors(queries)
        return indices, distances.astype(np.float32, copy=False)

    def to_host(self, array: Any) -> np.ndarray:
        return np.asarray(array)


class CudaBackend(DeviceBackend):
    """CUDA backend: CuPy for memory and device binding, cuML for the search."""

    name = "gpu"

    def __init__(self):
        if not HAS_GPU:
            raise ImportError(
                "GPU support requested but 'cuml' or 'cupy' not installed. "
                "Install with 'pip install mrgraph[gpu]'."
            )

    def device_count(self) -> int:
        return cp.cuda.runtime.getDeviceCount()  # type: ignore

    def current_device(self) -> int:
        return cp.cuda.runtime.getDevice()  # type: ignore

    def set_device(self, ordinal: int) -> None:
        self.check_ordinal(ordinal)
        cp.cuda.runtime.setDevice(ordinal)  # type: ignore

    def asarray(self, X: Any) -> Any:
        return _check_points(cp.ascontiguousarray(cp.asarray(X, dtype=cp.float32)))  # type: ignore

    def stage(self, array: Any, ordinal: int) -> Any:
        self.check_ordinal(ordinal)
        try:
            with cp.cuda.Device(ordinal):  # type: ignore
                staged = cp.array(array, dtype=cp.float32, copy=True)  # type: ignore
                cp.cuda.Device(ordinal).synchronize()  # type: ignore
        except (cp.cuda.memory.OutOfMemoryError, cp.cuda.runtime.CUDARuntimeError) as exc:  # type: ignore
            raise ResourceError(
                f"could not stage {array.nbytes:,} bytes on GPU {ordinal}: {exc}"
            ) from exc
        return staged

    def release(self, ordinal: int) -> None:
        with cp.cuda.Device(ordinal):  # type: ignore
            cp.get_default_memory_pool().free_all_blocks()  # type: ignore

    def empty(self, shape: tuple[int, ...], dtype: Any, ordinal: int) -> Any:
        try:
            with cp.cuda.Device(ordinal):  # type: ignore
                return cp.empty(shape, dtype=dtype)  # type: ignore
        except cp.cuda.memory.OutOfMemoryError as exc:  # type: ignore
            raise ResourceError(
                f"could not allocate array of shape {shape} on GPU {ordinal}"
            ) from exc

    def copy_rows(self, dst: Any, start: int, src: Any, ordinal: int) -> None:
        try:
            with cp.cuda.Device(ordinal):  # type: ignore
                dst[start : start + src.shape[0]] = cp.asarray(src)  # type: ignore
                cp.cuda.Device(ordinal).synchronize()  # type: ignore
        except (cp.cuda.memory.OutOfMemoryError, cp.cuda.runtime.CUDARuntimeError) as exc:  # type: ignore
            raise ResourceError(
                f"could not copy partial result into GPU {ordinal}: {exc}"
            ) from exc

    def search(
        self, reference: Any, queries: Any, k: int, ordinal: int, n_jobs: int = 1
    ) -> tuple[Any, Any]:
        logger.debug(
            f"GPU {ordinal}: k-NN search of {queries.shape[0]:,} queries "
            f"against {reference.shape[0]:,} points using cuML"
        )
        with cp.cuda.Device(ordinal):  # type: ignore
            neighbors_model = CuMLNearestNeighbors(  # type: ignore
                n_neighbors=k, algorithm="brute", metric="euclidean", output_type="cupy"
            )
            neighbors_model.fit(reference)
            distances, indices = neighbors_model.kneighbors(queries)
            # Surface asynchronous kernel failures here, not at a later copy.
            cp.cuda.Device(ordinal).synchronize()  # type: ignore
        return indices, distances.astype(cp.float32, copy=False)  # type: ignore

    def to_host(self, array: Any) -> np.ndarray:
        if is_device_array(array):
            return cp.asnumpy(array)  # type: ignore
        return np.asarray(array)


def get_backend(device: DeviceName | None = None) -> DeviceBackend:
    """Pick a backend.

    Args:
        device (str, optional): "auto" uses the GPU if CuPy and cuML are
            importable, else the CPU. "cpu" forces the host backend. "gpu"
            forces CUDA and raises ImportError if GPU libraries are missing.
            Defaults to ``MRGRAPH_DEVICE``.
    """
    if device is None:
        device = load_settings().device

    if device == "gpu":
        return CudaBackend()
    if device == "auto":
        return CudaBackend() if HAS_GPU else HostBackend()
    if device == "cpu":
        return HostBackend()
    raise ConfigurationError(f"device must be 'auto', 'cpu' or 'gpu', got {device!r}")


@contextmanager
def device_context(backend: DeviceBackend, ordinal: int) -> Iterator[int]:
    """Bind the calling thread to ``ordinal``; restore the prior binding on exit."""
    previous = backend.current_device()
    backend.set_device(ordinal)
    try:
        yield ordinal
    finally:
        backend.set_device(previous)


class StagingArena:
    """Owns every buffer staged on a non-home device during one call.

    Used as a context manager, the arena releases whatever is still staged on
    exit, so a failed call never leaks per-device memory.
    """

    def __init__(self, backend: DeviceBackend):
        self.backend = backend
        self._buffers: dict[int, list[Any]] = {}

    def __enter__(self) -> "StagingArena":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_all()

    @property
    def live(self) -> int:
        """Number of buffers currently staged."""
        return sum(len(buffers) for buffers in self._buffers.values())

    def devices(self) -> list[int]:
        return sorted(self._buffers)

    def stage(self, array: Any, ordinal: int) -> Any:
        buffer = self.backend.stage(array, ordinal)
        self._buffers.setdefault(ordinal, []).append(buffer)
        return buffer

    def buffers(self, ordinal: int) -> tuple[Any, ...]:
        """Buffers staged on ``ordinal``, in staging order."""
        if ordinal not in self._buffers:
            raise ConfigurationError(f"nothing staged on {self.backend.name} device {ordinal}")
        return tuple(self._buffers[ordinal])

    def release_device(self, ordinal: int) -> None:
        buffers = self._buffers.pop(ordinal, None)
        if buffers is None:
            return
        n_buffers = len(buffers)
        buffers.clear()
        self.backend.release(ordinal)
        logger.debug(f"Released {n_buffers} staged buffer(s) on {self.backend.name} device {ordinal}")

    def release_all(self) -> None:
        first_error: BaseException | None = None
        for ordinal in list(self._buffers):
            try:
                self.release_device(ordinal)
            except Exception as exc:
                logger.error(f"Failed to release buffers on device {ordinal}: {exc}")
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

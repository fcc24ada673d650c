"""Fan a brute-force k-NN search out over several devices.

One call walks through a fixed sequence of states:

1. Discover: count the devices and note the caller's current ("home") device.
2. Stage: copy the reference and query points into private buffers on every
   non-home device. The home device uses the caller's arrays directly.
3. Partition: split the query rows into one contiguous chunk per device.
4. Dispatch: run one sub-search per device on a thread pool sized to the
   device count.
5. Gather: each worker copies its partial result into the merged output on
   the home device at its chunk offset. Staging buffers are then freed.
6. Finalize: restore the caller's device binding.

Workers write disjoint row ranges of the merged output, so no locking is
needed. Any failure aborts the whole call after every staged buffer has been
released; a partial result is never returned.
"""

import logging
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Sequence, TypeVar

import numpy as np

from .devices import DeviceBackend, StagingArena, device_context
from .errors import ConfigurationError, DeviceError, MrGraphError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def partition_rows(n_rows: int, n_devices: int) -> list[slice]:
    """Split ``n_rows`` into ``n_devices`` contiguous chunks.

    Every chunk holds ``n_rows // n_devices`` rows except the last, which also
    absorbs the remainder. Chunk ``i`` starts at ``i * (n_rows // n_devices)``.
    """
    if n_devices < 1:
        raise ConfigurationError(f"n_devices must be >= 1, got {n_devices}")
    if n_rows < 0:
        raise ConfigurationError(f"n_rows must be >= 0, got {n_rows}")

    chunk = n_rows // n_devices
    chunks = []
    for i in range(n_devices):
        start = i * chunk
        stop = n_rows if i == n_devices - 1 else start + chunk
        chunks.append(slice(start, stop))
    return chunks


def parallel_for(
    fn: Callable[[T], R], items: Sequence[T], max_workers: int
) -> list[R]:
    """Run ``fn`` on every item using a fixed-size thread pool.

    Waits for every task to finish. If any task raised, the exception of the
    first failing item (in item order) is re-raised and the others are logged.

    Returns:
        Results in item order.
    """
    if not items:
        return []

    results: list[Any] = [None] * len(items)
    failures: list[tuple[int, BaseException]] = []
    with ThreadPoolExecutor(
        max_workers=max(1, max_workers), thread_name_prefix="mrgraph-device"
    ) as executor:
        futures = {executor.submit(fn, item): pos for pos, item in enumerate(items)}
        for future in as_completed(futures):
            pos = futures[future]
            exc = future.exception()
            if exc is not None:
                failures.append((pos, exc))
            else:
                results[pos] = future.result()

    if failures:
        failures.sort(key=lambda failure: failure[0])
        for pos, exc in failures[1:]:
            logger.error(f"Task {pos} also failed: {exc}")
        raise failures[0][1]
    return results


class MultiDeviceKnn:
    """Exact k-NN search split across the devices of one backend.

    Args:
        backend (DeviceBackend): Devices to run on.
        n_devices (int, optional): How many devices to use, starting with the
            home device. Defaults to every device the backend reports.
        n_jobs (int, optional): Threads per sub-search where the backend
            supports it. Defaults to 1.
    """

    def __init__(
        self, backend: DeviceBackend, n_devices: int | None = None, n_jobs: int = 1
    ):
        self.backend = backend
        self.n_devices = n_devices
        self.n_jobs = n_jobs

    def _discover(self) -> tuple[int, list[int]]:
        available = self.backend.device_count()
        n_devices = available if self.n_devices is None else self.n_devices
        if not 1 <= n_devices <= available:
            raise ConfigurationError(
                f"n_devices={n_devices} but {available} {self.backend.name} device(s) available"
            )
        home = self.backend.current_device()
        ordinals = [home] + [d for d in range(available) if d != home][: n_devices - 1]
        return home, ordinals

    def search(self, reference: Any, queries: Any, k: int) -> tuple[Any, Any]:
        """Search ``queries`` against ``reference``.

        Returns:
            ``(indices, distances)`` of shape ``(len(queries), k)`` living on the
            home device. Indices keep the search library's integer type.

        Raises:
            ConfigurationError: More devices requested than available.
            ResourceError: Staging or gathering failed on some device.
            DeviceError: A sub-search failed.
        """
        home, ordinals = self._discover()
        n_queries = queries.shape[0]
        same_points = queries is reference
        t0 = time.perf_counter()
        logger.debug(
            f"Orchestrating k-NN over {len(ordinals)} {self.backend.name} device(s) "
            f"{ordinals}, home={home}, queries={n_queries:,}, k={k}"
        )

        with device_context(self.backend, home), StagingArena(self.backend) as arena:
            # The arena holds the only references to staged buffers so that
            # releasing a device actually frees them.
            for ordinal in ordinals[1:]:
                arena.stage(reference, ordinal)
                if not same_points:
                    arena.stage(queries, ordinal)
            logger.debug(f"Staged {arena.live} buffer(s) on devices {arena.devices()}")

            tasks = [
                (ordinal, rows)
                for ordinal, rows in zip(ordinals, partition_rows(n_queries, len(ordinals)))
                if rows.stop > rows.start
            ]

            indices = self.backend.empty((n_queries, k), np.int64, home)
            distances = self.backend.empty((n_queries, k), np.float32, home)

            def run(task: tuple[int, slice]) -> int:
                ordinal, rows = task
                if ordinal == home:
                    device_reference, device_queries = reference, queries
                else:
                    staged = arena.buffers(ordinal)
                    device_reference, device_queries = staged[0], staged[-1]
                    del staged
                try:
                    with device_context(self.backend, ordinal):
                        part_indices, part_distances = self.backend.search(
                            device_reference, device_queries[rows], k, ordinal, self.n_jobs
                        )
                except Exception as exc:
                    # Failed frames would otherwise pin staged buffers past release
                    traceback.clear_frames(exc.__traceback__)
                    if isinstance(exc, MrGraphError):
                        raise
                    raise DeviceError(
                        f"k-NN sub-search failed on {self.backend.name} device {ordinal}: {exc}",
                        ordinal=ordinal,
                    ) from exc
                finally:
                    del device_reference, device_queries

                expected = (rows.stop - rows.start, k)
                if tuple(part_indices.shape) != expected or tuple(part_distances.shape) != expected:
                    raise DeviceError(
                        f"{self.backend.name} device {ordinal} returned shape "
                        f"{tuple(part_indices.shape)}, expected {expected}",
                        ordinal=ordinal,
                    )

                self.backend.copy_rows(indices, rows.start, part_indices, home)
                self.backend.copy_rows(distances, rows.start, part_distances, home)
                return ordinal

            parallel_for(run, tasks, max_workers=len(ordinals))

            for ordinal in ordinals[1:]:
                arena.release_device(ordinal)

        logger.debug(
            f"Multi-device k-NN completed in {time.perf_counter() - t0:.4f} seconds"
        )
        return indices, distances

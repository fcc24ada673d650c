#!/usr/bin/env python3
"""
Device-count benchmark for the mutual reachability pipeline.

- Generates a deterministic blob dataset so every run sees the same points.
- Splits the exact k-NN search over 1..N logical devices (host backend by
  default, CUDA devices with --gpu) with repeated runs per setting.
- Checks that every device count yields the same core distances.
- Prints a summary table and saves runtime/speedup plots.
"""

import argparse
import logging
import time
from dataclasses import dataclass

import matplotlib.pyplot as plt
import numpy as np
from sklearn.datasets import make_blobs

from mrgraph import core_distances, exact_knn, get_backend, transform_mutual_reachability
from mrgraph.devices import DeviceBackend, HostBackend
from mrgraph.graph import build_graph

# =========================
# ======= CONSTANTS =======
# =========================
N: int = 200_000
N_FEATURES: int = 16
MIN_SAMPLES: int = 16
RNG_SEED: int = 42

N_RUNS_PER_SETTING: int = 3
OUT_BASENAME: str = "device_scaling"

FIGSIZE: tuple[int, int] = (14, 5)
DPI: int = 300
GRID_ALPHA: float = 0.25
MARKER_SIZE: int = 7
LINE_WIDTH: int = 2


@dataclass
class BenchResult:
    knn_avg: float
    knn_std: float
    graph_avg: float
    edges: int


def run_pipeline_once(
    X: np.ndarray, backend: DeviceBackend, n_devices: int, min_samples: int
) -> tuple[np.ndarray, int, float, float]:
    """Run k-NN + graph construction once; return (core, edges, t_knn, t_graph)."""
    t0 = time.perf_counter()
    knn = exact_knn(X, k=min_samples, backend=backend, n_devices=n_devices, n_jobs=-1)
    t1 = time.perf_counter()
    core = core_distances(knn.distances, min_samples)
    transform_mutual_reachability(knn.indices, knn.distances, core)
    _, graph = build_graph(knn.indices, knn.distances, X.shape[0])
    t2 = time.perf_counter()
    return core, graph.nnz, t1 - t0, t2 - t1


def benchmark_over_devices(
    X: np.ndarray, backend: DeviceBackend, device_counts: list[int], n_runs: int
) -> dict[int, BenchResult]:
    results: dict[int, BenchResult] = {}
    reference_core = None
    for d in device_counts:
        knn_times: list[float] = []
        graph_times: list[float] = []
        edges = 0
        for _ in range(n_runs):
            core, edges, t_knn, t_graph = run_pipeline_once(X, backend, d, MIN_SAMPLES)
            knn_times.append(t_knn)
            graph_times.append(t_graph)

        if reference_core is None:
            reference_core = core
        elif not np.allclose(core, reference_core, rtol=1e-5):
            raise RuntimeError(f"core distances with {d} devices differ from 1 device")

        results[d] = BenchResult(
            float(np.mean(knn_times)),
            float(np.std(knn_times)),
            float(np.mean(graph_times)),
            edges,
        )
    return results


def print_summary(results: dict[int, BenchResult]) -> None:
    print("\nRESULTS SUMMARY")
    device_list = sorted(results.keys())
    baseline = results[min(device_list)].knn_avg

    header = (
        f"{'Devices':>8} | {'k-NN (s)':>10} | {'Std (s)':>9} | "
        f"{'Graph (s)':>9} | {'Edges':>12} | {'Speedup':>8}"
    )
    print(header)
    print("-" * len(header))
    for d in device_list:
        r = results[d]
        speedup = baseline / r.knn_avg if r.knn_avg > 0 else float("inf")
        print(
            f"{d:8d} | {r.knn_avg:10.3f} | {r.knn_std:9.3f} | "
            f"{r.graph_avg:9.3f} | {r.edges:12,} | {speedup:8.2f}"
        )


def make_plots(results: dict[int, BenchResult], out_basename: str) -> None:
    device_list = sorted(results.keys())
    times = np.array([results[d].knn_avg for d in device_list])
    stds = np.array([results[d].knn_std for d in device_list])
    speedups = times[0] / times

    fig, axes = plt.subplots(1, 2, figsize=FIGSIZE)

    ax = axes[0]
    ax.errorbar(
        device_list,
        times,
        yerr=stds,
        marker="o",
        linewidth=LINE_WIDTH,
        markersize=MARKER_SIZE,
        capsize=5,
    )
    ax.set_xlabel("Number of Devices")
    ax.set_ylabel("k-NN runtime (seconds)")
    ax.set_title("Exact k-NN: Runtime vs Devices")
    ax.grid(True, alpha=GRID_ALPHA)
    ax.set_xticks(device_list)

    ax = axes[1]
    ax.plot(
        device_list,
        speedups,
        marker="s",
        linewidth=LINE_WIDTH,
        markersize=MARKER_SIZE,
        label="Measured",
    )
    ax.plot(
        device_list,
        np.array(device_list) / device_list[0],
        linestyle="--",
        label="Ideal (linear)",
    )
    ax.set_xlabel("Number of Devices")
    ax.set_ylabel("Speedup (×)")
    ax.set_title("Exact k-NN: Speedup vs Devices")
    ax.grid(True, alpha=GRID_ALPHA)
    ax.set_xticks(device_list)
    ax.legend()

    plt.tight_layout()
    plt.savefig(f"{out_basename}.png", dpi=DPI, bbox_inches="tight")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Benchmark the multi-device k-NN search.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--gpu", action="store_true", help="Use CUDA devices.")
    p.add_argument("--max-devices", type=int, default=4, help="Largest device count.")
    p.add_argument("--runs", type=int, default=N_RUNS_PER_SETTING, help="Runs per setting.")
    return p.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.WARNING)
    args = parse_args()

    backend = get_backend("gpu") if args.gpu else HostBackend(args.max_devices)
    max_devices = min(args.max_devices, backend.device_count())
    device_counts = list(range(1, max_devices + 1))

    print("Device Benchmark for the Mutual Reachability Pipeline")
    print("=" * 60)
    print(f"Dataset: {N:,} x {N_FEATURES} | min_samples={MIN_SAMPLES} | seed={RNG_SEED}")
    print(f"Backend: {backend.name} | devices to test: {device_counts}\n")

    X, _ = make_blobs(  # type: ignore
        n_samples=N, n_features=N_FEATURES, centers=20, random_state=RNG_SEED
    )
    X = backend.asarray(X)

    results = benchmark_over_devices(X, backend, device_counts, args.runs)
    print_summary(results)
    make_plots(results, OUT_BASENAME)


if __name__ == "__main__":
    main()

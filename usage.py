import logging
import os
import time
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from sklearn.datasets import make_blobs, make_moons

from mrgraph import mutual_reachability_graph


def run_example(
    X,
    dataset_name,
    min_samples,
    n_devices=1,
    figs_dir: Path | None = None,
):
    print(f"\n{'=' * 20} Mutual reachability on {dataset_name} {'=' * 20}")
    print(f"Data shape: {X.shape}")

    print(f"Building graph [min_samples={min_samples}, n_devices={n_devices}]...")
    start = time.perf_counter()
    indptr, core, graph = mutual_reachability_graph(
        X, min_samples=min_samples, device="cpu", n_devices=n_devices, n_jobs=-1
    )
    duration = time.perf_counter() - start

    degree = np.diff(indptr)
    off = graph.rows != graph.cols
    n_loops = int(np.count_nonzero(~off))

    # --- Print summary table ---
    print("\nGraph Summary:")
    print(f"{'Points':<28} {X.shape[0]:>12,}")
    print(f"{'Edges (both directions)':<28} {graph.nnz:>12,}")
    print(f"{'Self-loops':<28} {n_loops:>12,}")
    print(f"{'Mean degree':<28} {degree.mean():>12.2f}")
    print(f"{'Max degree':<28} {degree.max():>12}")
    print(f"{'Core distance (median)':<28} {np.median(core):>12.4f}")
    print(f"{'Edge weight (median)':<28} {np.median(graph.vals[off]):>12.4f}")
    print(f"{'Time (s)':<28} {duration:>12.4f}")

    # --- Plotting ---
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    sc = axes[0].scatter(X[:, 0], X[:, 1], c=core, cmap="viridis", s=10)
    axes[0].set_title("Core distance")
    fig.colorbar(sc, ax=axes[0])

    axes[1].hist(graph.vals[off], bins=100, color="tab:blue")
    axes[1].set_yscale("log")
    axes[1].set_title("Mutual reachability edge weights")

    plt.suptitle(f"{dataset_name} (time: {duration:.4f}s)")
    plt.tight_layout()

    fig_base_name = f"mreach_{dataset_name.lower().replace(' ', '_')}.png"
    if isinstance(figs_dir, Path):
        figs_dir.mkdir(parents=True, exist_ok=True)
        fig_fname = figs_dir / fig_base_name
    else:
        fig_fname = fig_base_name
    plt.savefig(fig_fname)
    print(f"\nPlot saved to {fig_fname}")
    plt.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    # Expose four logical host devices for the multi-device example
    os.environ.setdefault("MRGRAPH_HOST_DEVICES", "4")

    CWD = Path.cwd()
    FIGS_DIR = CWD / "figures"

    n_samples = 100_000
    seed = 0

    # 1. Blobs
    print("Generating Blobs...")
    X_blobs, _ = make_blobs(  # type: ignore
        n_samples=n_samples,
        centers=5,
        cluster_std=0.1,
        random_state=seed,
    )
    run_example(X_blobs, "Blobs", min_samples=20, figs_dir=FIGS_DIR)

    # 2. Moons, split over four logical host devices
    print("Generating Moons...")
    X_moons, _ = make_moons(n_samples=n_samples, noise=0.05, random_state=seed)
    run_example(X_moons, "Moons", min_samples=10, n_devices=4, figs_dir=FIGS_DIR)

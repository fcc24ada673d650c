import argparse
import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from mrgraph import MutualReachabilityGraph, mutual_reachability_graph

CWD = Path.cwd()
INPUT_DIR = CWD / "test" / "input"

DEFAULT_POINTS = INPUT_DIR / "points.txt"
DEFAULT_OUT_PNG = INPUT_DIR / "core_distances.png"


def load_points(path: Path) -> np.ndarray:
    """Read a points file whose lines are ``id x0 x1 ...``.

    Returns:
        C-contiguous float32 array of shape (n_samples, n_features) with the
        id column dropped.

    Raises:
        ValueError: No coordinate columns, or non-finite coordinates.
    """
    table = np.loadtxt(path, dtype=np.float32, ndmin=2)
    if table.shape[0] and table.shape[1] < 2:
        raise ValueError(
            f"{path}: each line needs an id and at least one coordinate, "
            f"got {table.shape[1]} column(s)"
        )
    points = np.ascontiguousarray(table[:, 1:])
    if not np.isfinite(points).all():
        raise ValueError(f"{path}: coordinates must be finite")
    return points


def check_graph(result: MutualReachabilityGraph) -> dict:
    """Check the structural invariants of a mutual reachability graph.

    Args:
        result: Output of mutual_reachability_graph().

    Returns:
        dict with keys:
            n, nnz, n_self_loops, mean_degree, max_degree, core_min, core_median,
            core_max, and one boolean per invariant (indptr_ok, sentinel_ok,
            floor_ok, symmetric_ok, unique_ok).
    """
    indptr, core, graph = result
    n = int(core.shape[0])
    loops = graph.rows == graph.cols
    off = ~loops
    degree = np.diff(indptr)

    indptr_ok = bool(indptr[0] == 0 and indptr[-1] == graph.nnz and np.all(degree >= 0))
    sentinel_ok = bool(np.all(graph.vals[loops] == np.finfo(graph.vals.dtype).max))
    floor = np.maximum(core[graph.rows[off]], core[graph.cols[off]])
    floor_ok = bool(np.all(graph.vals[off] >= floor))

    csr = graph.to_csr_matrix(indptr)
    symmetric_ok = (csr != csr.T).nnz == 0
    keys = graph.rows.astype(np.int64) * max(n, 1) + graph.cols
    unique_ok = bool(np.all(np.diff(keys) > 0))

    return {
        "n": n,
        "nnz": graph.nnz,
        "n_self_loops": int(np.count_nonzero(loops)),
        "mean_degree": float(degree.mean()) if n else 0.0,
        "max_degree": int(degree.max()) if n else 0,
        "core_min": float(core.min()) if n else 0.0,
        "core_median": float(np.median(core)) if n else 0.0,
        "core_max": float(core.max()) if n else 0.0,
        "indptr_ok": indptr_ok,
        "sentinel_ok": sentinel_ok,
        "floor_ok": floor_ok,
        "symmetric_ok": symmetric_ok,
        "unique_ok": unique_ok,
    }


def print_stats(stats: dict) -> None:
    """Pretty-print graph stats.

    Args:
        stats: Output of check_graph().
    """
    print(f"number of points: {stats['n']}")
    print(f"number of edges: {stats['nnz']}")
    print(f"number of self-loops: {stats['n_self_loops']}")
    print(f"mean degree: {stats['mean_degree']:.2f}")
    print(f"max degree: {stats['max_degree']}")
    print(
        f"core distance min/median/max: {stats['core_min']:.4f} / "
        f"{stats['core_median']:.4f} / {stats['core_max']:.4f}"
    )

    print("\ninvariants:")
    for key in ["indptr_ok", "sentinel_ok", "floor_ok", "symmetric_ok", "unique_ok"]:
        print(f"  {key[:-3]}: {'ok' if stats[key] else 'FAILED'}")


def plot_core_distances_2d(X: np.ndarray, core: np.ndarray, out_png: Path) -> Path | None:
    """Scatter 2D points coloured by core distance.

    Returns:
        Path if written, else None.
    """
    if X.shape[1] != 2:
        print("plot skipped (data not 2D).")
        return None

    out_png.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(6, 5), constrained_layout=True)
    sc = ax.scatter(X[:, 0], X[:, 1], c=core, s=12)
    fig.colorbar(sc, ax=ax, label="core distance")
    ax.set_xlabel("x0")
    ax.set_ylabel("x1")

    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    return out_png


def parse_args() -> argparse.Namespace:
    """Parse CLI arguments."""
    p = argparse.ArgumentParser(
        description="Build a mutual reachability graph and check its invariants.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--points", type=Path, default=DEFAULT_POINTS, help="Points file.")
    p.add_argument("--min-samples", type=int, default=10, help="Core distance rank.")
    p.add_argument("--alpha", type=float, default=1.0, help="Distance scaling.")
    p.add_argument(
        "--device", choices=["auto", "cpu", "gpu"], default="auto", help="Search device."
    )
    p.add_argument("--out-png", type=Path, default=DEFAULT_OUT_PNG, help="Plot path.")
    p.add_argument("--verbose", action="store_true", help="Log stage timings.")
    return p.parse_args()


def main() -> None:
    """Entry point."""
    args = parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    X = load_points(args.points)
    result = mutual_reachability_graph(
        X,
        min_samples=args.min_samples,
        alpha=args.alpha,
        device=args.device,
        verbose=args.verbose,
    )
    stats = check_graph(result)
    print_stats(stats)

    out = plot_core_distances_2d(X, result.core_distances, args.out_png)
    if out:
        print(f"wrote plot: {out}")

    if not all(stats[key] for key in stats if key.endswith("_ok")):
        raise SystemExit(1)


if __name__ == "__main__":
    main()

"""
Compare Benchmark Results
=========================

Load multiple result JSON files written by ``train.py`` and generate
comparison plots.

Usage:
    # Compare all results for a given model+dataset
    python benchmarks/compare.py --dir results/ --filter mlp_mnist

    # Compare specific files
    python benchmarks/compare.py results/file1.json results/file2.json

    # Save plot to file instead of showing
    python benchmarks/compare.py --dir results/ --output comparison.png
"""

import argparse
import json
import sys
from pathlib import Path

import matplotlib.pyplot as plt


def load_results(paths: list[Path]) -> list[dict]:
    """Load result JSON files."""
    results = []
    for p in paths:
        p = Path(p)
        with open(p) as f:
            data = json.load(f)
            data["_file"] = p.name
            results.append(data)
    return results


def run_label(result: dict) -> str:
    lr = result.get("optimiser_kwargs", {}).get("lr", "default")
    return f"{result['optimiser']} (lr={lr})"


def summary_rows(results: list[dict]) -> list[tuple[str, float, float, float]]:
    """(label, final train loss, best test acc, total time) per run."""
    rows = []
    for r in results:
        history = r["history"]
        rows.append((
            run_label(r),
            history[-1]["train_loss"],
            max(h["test_acc"] for h in history),
            r.get("total_time", 0.0),
        ))
    return rows


def plot_comparison(results: list[dict], output: str | None = None):
    """Generate comparison plots from multiple experiment results."""
    if not results:
        print("No results to compare.")
        return

    fig, axes = plt.subplots(1, 3, figsize=(18, 5))
    panels = [
        ("train_loss", "Train Loss", "Loss"),
        ("test_acc", "Test Accuracy", "Accuracy"),
        ("test_loss", "Test Loss", "Loss"),
    ]

    for r in results:
        label = run_label(r)
        epochs = [h["epoch"] for h in r["history"]]
        for ax, (key, _, _) in zip(axes, panels):
            ax.plot(epochs, [h[key] for h in r["history"]], label=label)

    for ax, (_, title, ylabel) in zip(axes, panels):
        ax.set_title(title)
        ax.set_xlabel("Epoch")
        ax.set_ylabel(ylabel)
        ax.legend()
        ax.grid(True, alpha=0.3)

    model_name = results[0].get("model", "unknown")
    dataset_name = results[0].get("dataset", "unknown")
    fig.suptitle(f"Optimiser Comparison: {model_name} on {dataset_name}", fontsize=14)
    plt.tight_layout()

    if output:
        plt.savefig(output, dpi=150, bbox_inches="tight")
        print(f"Plot saved to {output}")
    else:
        plt.show()
    plt.close(fig)

    # Print summary table
    print("\n" + "=" * 80)
    print(f"{'Optimiser':<28} {'Final Train Loss':<18} {'Best Test Acc':<16} {'Total Time':<12}")
    print("=" * 80)
    for label, final_train_loss, best_acc, total_time in summary_rows(results):
        print(f"{label:<28} {final_train_loss:<18.4f} {best_acc:<16.4f} {total_time:<12.1f}")


def main():
    parser = argparse.ArgumentParser(description="Compare optimiser benchmark results")
    parser.add_argument("files", nargs="*", help="Result JSON files to compare.")
    parser.add_argument("--dir", type=str, default=None, help="Directory containing result files.")
    parser.add_argument("--filter", type=str, default=None, help="Filter filenames (substring match).")
    parser.add_argument("--output", type=str, default=None, help="Save plot to file.")
    args = parser.parse_args()

    paths = []
    if args.files:
        paths = [Path(f) for f in args.files]
    elif args.dir:
        result_dir = Path(args.dir)
        paths = sorted(result_dir.glob("*.json"))
        if args.filter:
            paths = [p for p in paths if args.filter in p.name]
    else:
        parser.print_help()
        sys.exit(1)

    if not paths:
        print("No result files found.")
        sys.exit(1)

    print(f"Loading {len(paths)} result files...")
    results = load_results(paths)
    plot_comparison(results, args.output)


if __name__ == "__main__":
    main()

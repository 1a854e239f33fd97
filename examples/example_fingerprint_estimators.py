"""
Example: Fingerprint Position Estimators

Positions the query fingerprints of a radio map with:
    - Linear estimator (first-order model solved as a linear system)
    - Nonlinear estimator with first, second and third order Taylor models,
      seeded with the linear estimate
    - Joint position and radio source estimator, starting from the
      surveyed source positions

and compares positioning errors.

Generate the radio map first:
    python scripts/generate_rssi_radio_map.py --preset baseline

Author: Navigation Engineer
Date: December 2024
"""

import argparse
import logging
import time
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from rssi_positioning.fingerprinting import (
    EstimationFailedError,
    EstimatorConfig,
    LinearFingerprintPositionEstimator,
    NonlinearFingerprintPositionAndSourceEstimator,
    NonlinearFingerprintPositionEstimator,
    load_estimator_config,
    load_radio_map,
)

logger = logging.getLogger(__name__)


def evaluate(name, make_estimator, radio_map, max_queries=None):
    """
    Run one estimator over the queries of a radio map.

    Args:
        name: Label used in the progress bar and the summary.
        make_estimator: Callable (query, true_position) -> estimator.
        radio_map: RadioMap with ground truth query positions.
        max_queries: Only use the first queries (None = all).

    Returns:
        Dict with errors, failures and run time.
    """
    pairs = list(zip(radio_map.queries, radio_map.query_positions))[:max_queries]
    errors = []
    failures = 0

    t0 = time.time()
    for query, truth in tqdm(pairs, desc=name, unit="query"):
        estimator = make_estimator(query)
        try:
            result = estimator.estimate()
        except EstimationFailedError as e:
            logger.warning("%s failed (attempted k=%s)", name, e.attempted_k)
            failures += 1
            continue
        if truth is not None:
            errors.append(np.linalg.norm(result.position - truth))
    elapsed = time.time() - t0

    errors = np.array(errors)
    if len(errors) == 0:
        print(f"  {name:<24} no position estimated ({failures} failures)")
        return {"name": name, "errors": errors, "failures": failures, "time": elapsed}
    print(f"  {name:<24} RMSE={np.sqrt(np.mean(errors**2)):.3f}m  "
          f"median={np.median(errors):.3f}m  p90={np.percentile(errors, 90):.3f}m  "
          f"failures={failures}  time={1000 * elapsed / max(len(pairs), 1):.2f}ms/query")
    return {"name": name, "errors": errors, "failures": failures, "time": elapsed}


def plot_error_cdf(results, output_file):
    fig, ax = plt.subplots(figsize=(8, 5))
    for res in results:
        errors = np.sort(res["errors"])
        if len(errors) == 0:
            continue
        cdf = np.arange(1, len(errors) + 1) / len(errors)
        ax.plot(errors, cdf, label=res["name"], linewidth=2)
    ax.set_xlabel("Positioning error (m)")
    ax.set_ylabel("CDF")
    ax.set_title("Fingerprint Position Estimators")
    ax.grid(True, alpha=0.3)
    ax.legend()
    plt.tight_layout()
    plt.savefig(output_file, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"Saved: {output_file}")


def main():
    parser = argparse.ArgumentParser(description="Compare the fingerprint position estimators")
    parser.add_argument(
        "--radio-map",
        type=str,
        default="data/sim/rssi_radio_map/radio_map.json",
        help="Radio map JSON file (default: data/sim/rssi_radio_map/radio_map.json)",
    )
    parser.add_argument("--config", type=str, default=None, help="Estimator settings (YAML or JSON)")
    parser.add_argument(
        "--joint-queries",
        type=int,
        default=10,
        help="Number of queries for the joint estimator (default: 10)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 70)
    print("Fingerprint Position Estimators")
    print("=" * 70)

    print("\n1. Loading radio map...")
    radio_map = load_radio_map(args.radio_map)
    print(f"   {radio_map}")

    config = load_estimator_config(args.config) if args.config else EstimatorConfig()
    print(f"   Settings: {config.to_dict() or 'defaults'}")

    located = radio_map.located_fingerprints
    sources = radio_map.located_sources
    dims = radio_map.dims
    results = []

    print("\n2. Evaluating estimators...")
    if sources:
        results.append(evaluate(
            "Linear",
            lambda q: LinearFingerprintPositionEstimator(
                located_fingerprints=located, fingerprint=q, sources=sources, dims=dims, config=config
            ),
            radio_map,
        ))

        def nonlinear(order):
            def make(q):
                initial = LinearFingerprintPositionEstimator(
                    located_fingerprints=located, fingerprint=q, sources=sources, dims=dims, config=config
                )
                try:
                    initial_position = initial.estimate().position
                except EstimationFailedError:
                    initial_position = None
                return NonlinearFingerprintPositionEstimator(
                    located_fingerprints=located,
                    fingerprint=q,
                    sources=sources,
                    dims=dims,
                    order=order,
                    initial_position=initial_position,
                    config=config,
                )
            return make

        for order in ("first", "second", "third"):
            results.append(evaluate(f"Nonlinear ({order} order)", nonlinear(order), radio_map))
    else:
        print("  Radio map has no located sources: skipping position-only estimators")

    results.append(evaluate(
        "Joint position + sources",
        lambda q: NonlinearFingerprintPositionAndSourceEstimator(
            located_fingerprints=located,
            fingerprint=q,
            initial_sources=sources,
            dims=dims,
            config=config,
        ),
        radio_map,
        max_queries=args.joint_queries,
    ))

    print("\n3. Plotting...")
    figs_dir = Path(__file__).parent / "figs"
    figs_dir.mkdir(exist_ok=True)
    plot_error_cdf(results, figs_dir / "fingerprint_estimators_cdf.png")

    print("\n" + "=" * 70)
    print("DONE")
    print("=" * 70)


if __name__ == "__main__":
    main()

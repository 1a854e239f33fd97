"""
Generate a synthetic RSSI radio map for the fingerprint position estimators.

Creates an indoor survey with:
    - A regular grid of located fingerprints (2D, or 3D at a fixed height)
    - Radio sources on the corners and mid-walls of the area
    - Log-distance path-loss model with log-normal shadow fading
    - Random query fingerprints with their ground truth positions

Saves to: data/sim/rssi_radio_map/radio_map.json (the default radio map of
examples/example_fingerprint_estimators.py). Presets other than baseline save to
data/sim/rssi_<preset>/radio_map.json unless --output is given.

Author: Li-Ta Hsu
Date: December 2024
"""

import argparse

import numpy as np

from rssi_positioning.fingerprinting import (
    LocatedFingerprint,
    RadioMap,
    RadioSource,
    RssiFingerprint,
    RssiReading,
    load_radio_map,
    save_radio_map,
)
from rssi_positioning.rf import received_power

DEFAULT_OUTPUT = "data/sim/rssi_radio_map/radio_map.json"


def source_layout(width: float, height: float, n_sources: int, dims: int) -> np.ndarray:
    """Corners first, then mid-walls, then the ceiling center."""
    positions = np.array([
        [0.0, 0.0],
        [width, 0.0],
        [width, height],
        [0.0, height],
        [width / 2, 0.0],
        [width / 2, height],
        [0.0, height / 2],
        [width, height / 2],
        [width / 2, height / 2],
    ])
    if n_sources > len(positions):
        raise ValueError(f"At most {len(positions)} radio sources are supported, got {n_sources}")
    positions = positions[:n_sources]
    if dims == 3:
        positions = np.column_stack([positions, np.full(n_sources, 2.5)])
    return positions


def sample_readings(
    position: np.ndarray,
    sources,
    reference_power: float,
    path_loss_exponent: float,
    shadowing_std: float,
    rng: np.random.Generator,
):
    """One reading per source: exact model plus shadow fading."""
    readings = []
    for source in sources:
        rssi = received_power(reference_power, path_loss_exponent, position, source.meta["true_position"])
        rssi += rng.normal(0.0, shadowing_std) if shadowing_std > 0 else 0.0
        readings.append(RssiReading(source, rssi, shadowing_std if shadowing_std > 0 else None))
    return readings


def generate_rssi_radio_map(
    area_size: tuple = (20.0, 20.0),
    grid_spacing: float = 2.0,
    n_sources: int = 8,
    n_queries: int = 50,
    dims: int = 2,
    reference_power: float = -40.0,
    path_loss_exponent: float = 2.0,
    shadowing_std: float = 1.0,
    locate_sources: bool = True,
    seed: int = 42,
) -> RadioMap:
    """
    Generate a synthetic RSSI radio map.

    Args:
        area_size: (width, height) in meters.
        grid_spacing: Distance between located fingerprints (meters).
        n_sources: Number of radio sources (at most 9).
        n_queries: Number of query fingerprints at random positions.
        dims: 2 for planar positions, 3 to add a device height of 1.5m.
        reference_power: Received power at 1m (dBm).
        path_loss_exponent: Path-loss exponent of the simulation.
        shadowing_std: Shadow fading standard deviation (dB). Also stored as
            the RSSI standard deviation of every reading.
        locate_sources: If False, source positions are left out of the map,
            as required by joint position and source estimation.
        seed: Random seed for reproducibility.

    Returns:
        RadioMap with located fingerprints and ground-truth queries.
    """
    rng = np.random.default_rng(seed)
    width, height = area_size

    x_coords = np.arange(0, width + grid_spacing / 2, grid_spacing)
    y_coords = np.arange(0, height + grid_spacing / 2, grid_spacing)

    print(f"\n{'='*60}")
    print("Generating RSSI Radio Map")
    print(f"{'='*60}")
    print(f"Area size: {width}m × {height}m ({dims}D)")
    print(f"Grid spacing: {grid_spacing}m")
    print(f"Located fingerprints: {len(x_coords)} × {len(y_coords)} = {len(x_coords) * len(y_coords)}")
    print(f"Radio sources: {n_sources} ({'located' if locate_sources else 'positions withheld'})")
    print(f"Shadow fading: {shadowing_std} dB")

    source_positions = source_layout(width, height, n_sources, dims)
    sources = []
    for i, position in enumerate(source_positions):
        meta = {"true_position": position.tolist()}
        sources.append(
            RadioSource(
                f"AP{i+1}",
                frequency=2.412e9,
                position=position if locate_sources else None,
                path_loss_exponent=path_loss_exponent,
                meta=meta,
            )
        )

    def with_height(xy):
        return np.append(xy, 1.5) if dims == 3 else np.asarray(xy, dtype=float)

    located = []
    for x in x_coords:
        for y in y_coords:
            position = with_height([x, y])
            readings = sample_readings(
                position, sources, reference_power, path_loss_exponent, shadowing_std, rng
            )
            located.append(LocatedFingerprint(readings, position=position))

    queries = []
    query_positions = []
    for _ in range(n_queries):
        position = with_height(rng.uniform([0.0, 0.0], [width, height]))
        readings = sample_readings(
            position, sources, reference_power, path_loss_exponent, shadowing_std, rng
        )
        queries.append(RssiFingerprint(readings))
        query_positions.append(position)

    rssi = np.array([r.rssi for f in located for r in f.readings])
    print(f"\nRSSI range: [{rssi.min():.1f}, {rssi.max():.1f}] dBm")
    print(f"Queries: {n_queries}")

    return RadioMap(
        sources=sources,
        located_fingerprints=located,
        queries=queries,
        query_positions=query_positions,
        metadata={
            "area_size": list(area_size),
            "grid_spacing": grid_spacing,
            "path_loss_model": {
                "type": "log_distance",
                "reference_power_dBm": reference_power,
                "path_loss_exponent": path_loss_exponent,
                "shadow_fading_std_dB": shadowing_std,
            },
            "seed": seed,
            "description": "Synthetic RSSI radio map",
        },
    )


def resolve_output_path(preset, output=None) -> str:
    """An explicit output wins; otherwise baseline and custom maps use DEFAULT_OUTPUT."""
    if output is not None:
        return output
    if preset is None or preset == "baseline":
        return DEFAULT_OUTPUT
    return f"data/sim/rssi_{preset}/radio_map.json"


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Generate a synthetic RSSI radio map",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Presets:
  baseline   20m × 20m, 2m grid, 8 located sources, 1 dB shadowing
  noiseless  baseline without shadow fading
  unlocated  baseline with source positions withheld (joint estimation)
  three_d    baseline in 3D

Examples:
  python scripts/generate_rssi_radio_map.py --preset baseline
  python scripts/generate_rssi_radio_map.py --grid-spacing 1.0 --shadowing-std 2.0 \\
      --output data/sim/rssi_dense/radio_map.json
        """,
    )
    parser.add_argument(
        "--preset",
        type=str,
        choices=["baseline", "noiseless", "unlocated", "three_d"],
        help="Use preset configuration (overrides the radio map parameters, not --output)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help=f"Output file (default: {DEFAULT_OUTPUT}, or data/sim/rssi_<preset>/radio_map.json "
        "for presets other than baseline)",
    )

    area_group = parser.add_argument_group("Area Parameters")
    area_group.add_argument("--area-width", type=float, default=20.0, help="Area width in meters")
    area_group.add_argument("--area-height", type=float, default=20.0, help="Area height in meters")
    area_group.add_argument("--grid-spacing", type=float, default=2.0, help="Grid spacing in meters")
    area_group.add_argument("--dims", type=int, choices=[2, 3], default=2, help="Position dimensions")

    radio_group = parser.add_argument_group("Radio Parameters")
    radio_group.add_argument("--n-sources", type=int, default=8, help="Number of radio sources")
    radio_group.add_argument("--reference-power", type=float, default=-40.0, help="Power at 1m (dBm)")
    radio_group.add_argument("--path-loss-exponent", type=float, default=2.0, help="Path-loss exponent")
    radio_group.add_argument("--shadowing-std", type=float, default=1.0, help="Shadow fading std (dB)")
    radio_group.add_argument(
        "--unlocated-sources", action="store_true", help="Leave source positions out of the map"
    )

    parser.add_argument("--n-queries", type=int, default=50, help="Number of query fingerprints")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")

    args = parser.parse_args()

    params = dict(
        area_size=(args.area_width, args.area_height),
        grid_spacing=args.grid_spacing,
        n_sources=args.n_sources,
        n_queries=args.n_queries,
        dims=args.dims,
        reference_power=args.reference_power,
        path_loss_exponent=args.path_loss_exponent,
        shadowing_std=args.shadowing_std,
        locate_sources=not args.unlocated_sources,
        seed=args.seed,
    )

    if args.preset is not None:
        params.update(area_size=(20.0, 20.0), grid_spacing=2.0, n_sources=8, dims=2,
                      shadowing_std=1.0, locate_sources=True)
        if args.preset == "noiseless":
            params["shadowing_std"] = 0.0
        elif args.preset == "unlocated":
            params["locate_sources"] = False
        elif args.preset == "three_d":
            params["dims"] = 3
    output = resolve_output_path(args.preset, args.output)

    radio_map = generate_rssi_radio_map(**params)

    print(f"\n{'='*60}")
    print("Saving radio map...")
    save_radio_map(radio_map, output)
    print(f"OK Saved to: {output}")

    loaded = load_radio_map(output)
    print(f"OK Reloaded: {loaded}")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Run a single bike-share simulation from a YAML configuration file.

Usage:
    python -m scripts.run_simulation --config configs/downtown_balanced.yaml --seed 7

Options:
    --config PATH       Path to YAML configuration file (required)
    --seed INT          Override random seed from config
    --output-dir PATH   Override output directory from config
    --duration FLOAT    Override simulation duration (hours)
    --verbose           Enable verbose logging
    --dry-run           Parse config and show settings without running
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import numpy as np
import yaml

logger = logging.getLogger(__name__)


def setup_logging(config: dict[str, Any], verbose: bool = False) -> None:
    """Setup logging based on configuration."""
    log_config = config.get("logging") or {}
    level = logging.DEBUG if verbose else getattr(logging, log_config.get("level", "INFO"))

    # Create logs directory if needed
    log_file = log_config.get("file")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file) if log_file else logging.NullHandler(),
        ],
    )


def run_simulation(config: dict[str, Any], output_dir: Path):
    """Build, run and save one simulation."""
    from src.bikeshare.config import build_simulation

    sim_config = config.get("simulation") or {}
    logger.info(f"Starting simulation: {sim_config.get('name', 'Unnamed')}")

    sim = build_simulation(config)
    logger.info(
        f"  Hubs: {len(sim.hubs)}, workers: {len(sim.workers)}, "
        f"trip generators: {len(sim.trip_generators)}"
    )
    inventory = sim.bike_inventory()

    logger.info("Running simulation...")
    result = sim.run()
    logger.info(f"Simulation complete in {result.duration_seconds:.1f} seconds")

    final = sim.bike_inventory()
    if final["total"] != inventory["total"]:
        logger.warning(
            f"Bicycle total changed from {inventory['total']} to {final['total']}"
        )

    save_results(result, sim, config, output_dir)
    return result


def save_results(result, sim, config: dict[str, Any], output_dir: Path) -> None:
    """Save simulation results."""
    output_dir.mkdir(parents=True, exist_ok=True)

    output_config = config.get("output") or {}
    formats = output_config.get("formats", ["csv", "json"])

    # Save metrics
    metrics_path = output_dir / "metrics.json"
    with open(metrics_path, "w") as f:
        # Convert numpy types to Python types
        metrics = {
            k: v.item() if isinstance(v, (np.floating, np.integer)) else v
            for k, v in result.metrics.items()
        }
        metrics["final_hub_counts"] = {name: h.bike_count for name, h in sim.hubs.items()}
        metrics["final_overflow"] = {name: h.overflow for name, h in sim.hubs.items()}
        json.dump(metrics, f, indent=2)
    logger.info(f"Saved metrics to {metrics_path}")

    if "csv" in formats:
        if not result.raw_data.empty:
            csv_path = output_dir / "trips.csv"
            result.raw_data.to_csv(csv_path, index=False)
            logger.info(f"Saved trip data to {csv_path}")

        hubs = sim.metrics.hubs_dataframe()
        if not hubs.empty:
            hubs_path = output_dir / "hubs.csv"
            hubs.to_csv(hubs_path, index=False)
            logger.info(f"Saved hub history to {hubs_path}")

    # Save time series
    if result.time_series and "json" in formats:
        ts_path = output_dir / "time_series.json"
        with open(ts_path, "w") as f:
            json.dump(result.time_series, f, indent=2)
        logger.info(f"Saved time series to {ts_path}")

    # Save config used
    config_path = output_dir / "config_used.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run a bike-share simulation from a YAML configuration file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override random seed from config",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Override output directory from config",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Override simulation duration (hours)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse config and show settings without running",
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point."""
    from src.bikeshare.config import build_simulation, load_config
    from src.simulation.errors import ConfigurationError, InvariantViolation

    args = parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except yaml.YAMLError as e:
        print(f"Error parsing config: {e}", file=sys.stderr)
        return 1

    # Setup logging
    setup_logging(config, args.verbose)

    # CLI overrides
    sim_config = dict(config.get("simulation") or {})
    if args.seed is not None:
        sim_config["random_seed"] = args.seed
    if args.duration is not None:
        for key in ("duration_minutes", "duration_seconds"):
            sim_config.pop(key, None)
        sim_config["duration_hours"] = args.duration
    config["simulation"] = sim_config

    output_config = config.get("output") or {}
    output_dir = args.output_dir or Path(output_config.get("directory", "results/simulation"))

    # Show settings
    print(f"Simulation: {sim_config.get('name', 'Unnamed')}")
    print(f"  Config: {args.config}")
    print(f"  Hubs: {len(config.get('hubs') or {})}")
    print(f"  Trip generators: {len(config.get('trip_generators') or {})}")
    print(f"  Seed: {sim_config.get('random_seed', 42)}")
    print(f"  Output: {output_dir}")
    print()

    if args.dry_run:
        try:
            build_simulation(config)
        except ConfigurationError as e:
            print(f"Invalid configuration: {e}", file=sys.stderr)
            return 1
        print("Dry run - configuration is valid, not executing simulation")
        print("\nFull configuration:")
        print(yaml.dump(config, default_flow_style=False, sort_keys=False))
        return 0

    # Run simulation
    try:
        result = run_simulation(config, output_dir)
        metrics = result.metrics

        print("\nResults:")
        print(f"  Total trips: {metrics.get('total_trips', 0):,}")
        print(f"  Failed trips: {metrics.get('failed_trips', 0):,}")
        print(f"  Avg trip time: {metrics.get('avg_trip_time', 0):.1f}s")
        print(f"  Overflow bicycles: {metrics.get('total_overflow', 0):,}")
        print(f"  Worker visits: {metrics.get('worker_moves', 0):,}")
        print(f"\nResults saved to: {output_dir}")

        return 0

    except KeyboardInterrupt:
        print("\nSimulation interrupted by user.")
        return 130
    except (ConfigurationError, InvariantViolation) as e:
        logger.error(f"Simulation failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

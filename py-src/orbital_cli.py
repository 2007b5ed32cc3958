"""Command-line options, interactive prompts and headless runs."""

from __future__ import annotations

import argparse
import logging
import sys

import numpy as np

from common_quantum import InvalidQuantumNumbers, QuantumState
from orbital_sampler import (
    OrbitalSampler,
    SamplerConfig,
    SamplingError,
    build_sampler_config,
    load_sampler_config,
)

logger = logging.getLogger(__name__)

DEFAULT_N, DEFAULT_L, DEFAULT_M = 2, 1, 0

PARTICLE_PRESETS = {1: 10_000, 2: 100_000, 3: 500_000}
PRESET_NAMES = {"low": 10_000, "default": 100_000, "high": 500_000}
DEFAULT_CHOICE = 2
CUSTOM_CHOICE = 4

SELF_TEST_STATES = [(1, 0, 0), (2, 1, 0), (3, 2, -1), (4, 3, 3), (12, 5, 2)]


def configure_logging(verbose: bool = False, debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return value


def get_quantum_number(prompt: str, default: int) -> int:
    while True:
        raw = input(f"{prompt} (default: {default}): ").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            print("Invalid input. Please enter an integer or press Enter for default.")


def prompt_quantum_state() -> QuantumState:
    print("Enter initial quantum numbers for the simulation.")
    while True:
        n = get_quantum_number("Principal quantum number (n)", DEFAULT_N)
        l = get_quantum_number("Azimuthal quantum number (l)", DEFAULT_L)
        m = get_quantum_number("Magnetic quantum number (m)", DEFAULT_M)
        try:
            return QuantumState(n, l, m)
        except InvalidQuantumNumbers as exc:
            print(f"\nError: {exc}")


def get_particle_count() -> int:
    while True:
        print("\nSelect particle count:")
        print("  1. Low    (10,000)")
        print("  2. Default (100,000)")
        print("  3. High   (500,000)")
        print("  4. Custom")
        raw = input(f"Enter choice (default: {DEFAULT_CHOICE}): ").strip()

        try:
            choice = int(raw) if raw else DEFAULT_CHOICE
        except ValueError:
            print("\nInvalid input. Please enter a number from 1 to 4.")
            continue

        if choice in PARTICLE_PRESETS:
            return PARTICLE_PRESETS[choice]
        if choice == CUSTOM_CHOICE:
            while True:
                custom = input("Enter custom particle count: ").strip()
                try:
                    return positive_int(custom)
                except argparse.ArgumentTypeError:
                    print("Invalid input. Please enter a positive number.")
        print("\nInvalid choice. Please enter a number from 1 to 4.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="orbital-cloud",
        description="Render the probability cloud of a hydrogen orbital as colored particles.",
    )

    orb_g = p.add_argument_group("orbital")
    orb_g.add_argument("-n", type=int, default=None, help="Principal quantum number")
    orb_g.add_argument("-l", type=int, default=None, help="Azimuthal quantum number")
    orb_g.add_argument("-m", type=int, default=None, help="Magnetic quantum number")
    count_g = orb_g.add_mutually_exclusive_group()
    count_g.add_argument("-c", "--count", type=positive_int, default=None, help="Number of particles")
    count_g.add_argument("--preset", choices=sorted(PRESET_NAMES), default=None, help="Particle count preset")

    samp_g = p.add_argument_group("sampler")
    samp_g.add_argument("--config", default=None, help="JSON file of sampler settings")
    samp_g.add_argument("-j", "--workers", type=positive_int, default=None, help="Sampling threads (default: CPU count)")
    samp_g.add_argument("--batch-size", type=positive_int, default=None)
    samp_g.add_argument("--slack", dest="envelope_slack", type=float, default=None, help="Envelope safety factor")
    samp_g.add_argument("--gamma", dest="color_gamma", type=float, default=None, help="Color ramp exponent")
    samp_g.add_argument("--seed", type=int, default=None, help="Seed for reproducible runs")

    run_g = p.add_argument_group("run")
    run_g.add_argument("--headless", action="store_true", help="Sample and print statistics without a window")
    run_g.add_argument("--self-test", action="store_true")
    run_g.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    run_g.add_argument("--debug", action="store_true", help="Debug output")
    return p


def sampler_config_from_args(args: argparse.Namespace) -> SamplerConfig:
    config_data = load_sampler_config(args.config) if args.config else {}
    overrides = {
        "workers": args.workers,
        "batch_size": args.batch_size,
        "envelope_slack": args.envelope_slack,
        "color_gamma": args.color_gamma,
    }
    if args.batch_size is not None and args.batch_size < SamplerConfig.min_batch:
        overrides["min_batch"] = args.batch_size
    config = build_sampler_config(config_data, overrides)
    logger.debug("Sampler config: %s", config)
    return config


def state_from_args(args: argparse.Namespace) -> QuantumState | None:
    """QuantumState from -n/-l/-m, or None when none of them was given."""
    if args.n is None and args.l is None and args.m is None:
        return None
    return QuantumState(
        DEFAULT_N if args.n is None else args.n,
        DEFAULT_L if args.l is None else args.l,
        DEFAULT_M if args.m is None else args.m,
    )


def count_from_args(args: argparse.Namespace) -> int | None:
    if args.count is not None:
        return args.count
    if args.preset is not None:
        return PRESET_NAMES[args.preset]
    return None


def run_headless(state: QuantumState, count: int, config: SamplerConfig, seed: int | None = None) -> int:
    sampler = OrbitalSampler(state, config)
    particles = sampler.generate(count, seed=seed)
    stats = particles.stats
    radii = particles.radii()
    print(f"Orbital {state.label}: {len(particles)} particles")
    print(f"  r_max={sampler.envelope.r_max:.3f}  density_max={sampler.envelope.density_max:.4g}")
    print(f"  mean radius={radii.mean():.4f}  max radius={radii.max():.4f}")
    print(
        f"  attempts={stats.attempts}  acceptance={100.0 * stats.acceptance_rate:.2f}%  "
        f"non-finite={stats.rejected_nonfinite}  workers={stats.workers}  elapsed={stats.elapsed:.2f}s"
    )
    return 0


def run_self_test(config: SamplerConfig) -> int:
    for n, l, m in SELF_TEST_STATES:
        state = QuantumState(n, l, m)
        particles = OrbitalSampler(state, config).generate(2_000, seed=n)
        if len(particles) != 2_000:
            raise SamplingError(f"self-test failed for {state.label}: {len(particles)} particles")
        if not np.all(np.isfinite(particles.positions)):
            raise SamplingError(f"self-test failed for {state.label}: non-finite positions")
    print(f"SELFTEST_OK states={len(SELF_TEST_STATES)}")
    return 0

"""Rejection sampling of hydrogen orbital probability clouds.

The sampler draws candidate points uniformly in ``(r, cos theta, phi)`` over a
ball of radius ``r_max``, where the target density is
``r^2 |R_nl(r)|^2 |Y_lm(theta)|^2``, and accepts each one against a constant
envelope. Work is split across a thread pool; every worker owns its own
``numpy.random.Generator`` and private output buffers.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import numpy as np

from common_quantum import (
    DEFAULT_COLOR_GAMMA,
    InvalidQuantumNumbers,
    QuantumState,
    density,
    density_color,
    polar_density,
    radial_density,
    spherical_to_cartesian,
)

logger = logging.getLogger(__name__)

__all__ = [
    "INSTANCE_DTYPE",
    "BackgroundGeneration",
    "DegenerateEnvelopeError",
    "DensityEnvelope",
    "InvalidParticleCount",
    "InvalidQuantumNumbers",
    "NumericalInstabilityError",
    "OrbitalSampler",
    "Particle",
    "ParticleSet",
    "SamplerConfig",
    "SamplingCancelled",
    "SamplingError",
    "SamplingStats",
    "build_sampler_config",
    "estimate_envelope",
    "generate_particles",
    "load_sampler_config",
]

# Per-instance record uploaded to the GPU: vec3 position + vec4 color.
INSTANCE_DTYPE = np.dtype([("position", np.float32, (3,)), ("color", np.float32, (4,))])

_INITIAL_ACCEPTANCE = 0.1
_BATCH_OVERDRAW = 1.2

_INT = int
_REAL = (int, float)
_TYPE_NAMES = {_INT: "an integer", _REAL: "a number"}
_FIELD_TYPES = {
    "workers": _INT,
    "batch_size": _INT,
    "min_batch": _INT,
    "envelope_slack": _REAL,
    "radial_extent": _REAL,
    "radial_grid": _INT,
    "polar_grid": _INT,
    "tail_tolerance": _REAL,
    "max_nonfinite_fraction": _REAL,
    "color_gamma": _REAL,
}


class InvalidParticleCount(ValueError):
    """Raised when the requested particle count is not a positive integer."""


class SamplingError(RuntimeError):
    """Base class for failures while building a particle set."""


class DegenerateEnvelopeError(SamplingError):
    """The density grid search found no usable maximum."""


class NumericalInstabilityError(SamplingError):
    """Density evaluation produced NaN/inf for most candidates."""


class SamplingCancelled(SamplingError):
    """Generation was abandoned through the cancellation event."""


@dataclass(frozen=True)
class SamplerConfig:
    """Sampler tuning knobs."""

    workers: Optional[int] = None  # None -> os.cpu_count()
    batch_size: int = 65536  # upper bound on candidates drawn per batch
    min_batch: int = 1024
    envelope_slack: float = 1.2  # multiplicative margin over the grid maximum
    radial_extent: float = 10.0  # radial search bound in units of n^2 Bohr radii
    radial_grid: int = 4096
    polar_grid: int = 1025
    tail_tolerance: float = 1e-7  # radial probability mass allowed outside r_max
    max_nonfinite_fraction: float = 0.5
    color_gamma: float = DEFAULT_COLOR_GAMMA

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "workers" and value is None:
                continue
            expected = _FIELD_TYPES[f.name]
            if isinstance(value, bool) or not isinstance(value, expected):
                raise ValueError(f"{f.name} must be {_TYPE_NAMES[expected]}, got {value!r}")
        if self.workers is not None and self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.min_batch < 1 or self.batch_size < self.min_batch:
            raise ValueError("batch_size must be >= min_batch >= 1")
        if self.envelope_slack < 1.0:
            raise ValueError(f"envelope_slack must be >= 1.0, got {self.envelope_slack}")
        if self.radial_extent <= 0.0:
            raise ValueError(f"radial_extent must be positive, got {self.radial_extent}")
        if self.radial_grid < 16 or self.polar_grid < 16:
            raise ValueError("radial_grid and polar_grid need at least 16 points")
        if not 0.0 <= self.tail_tolerance < 1.0:
            raise ValueError(f"tail_tolerance must be in [0, 1), got {self.tail_tolerance}")
        if not 0.0 < self.max_nonfinite_fraction <= 1.0:
            raise ValueError(f"max_nonfinite_fraction must be in (0, 1], got {self.max_nonfinite_fraction}")
        if self.color_gamma <= 0.0:
            raise ValueError(f"color_gamma must be positive, got {self.color_gamma}")

    @property
    def resolved_workers(self) -> int:
        return self.workers or os.cpu_count() or 1


def load_sampler_config(path: str | os.PathLike) -> dict:
    """Load sampler settings from a JSON object of ``SamplerConfig`` fields."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sampler config not found: {str(path)!r}")
    logger.debug("Loading sampler config: %s", path)
    data = json.loads(path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"Sampler config {str(path)!r} must contain a JSON object")
    return data


def build_sampler_config(config_data: dict, cli_overrides: dict) -> SamplerConfig:
    """Merge file settings with command-line overrides; ``None`` means unset."""
    merged = {**config_data}
    for k, v in cli_overrides.items():
        if v is not None:
            merged[k] = v

    known = {f.name for f in fields(SamplerConfig)}
    unknown = sorted(set(merged) - known)
    if unknown:
        raise ValueError(f"Unknown sampler config keys: {', '.join(unknown)}")
    return SamplerConfig(**merged)


@dataclass(frozen=True)
class DensityEnvelope:
    density_max: float
    r_max: float
    radial_peak: float
    polar_peak: float
    slack: float
    theta_range: Tuple[float, float] = (0.0, math.pi)
    phi_range: Tuple[float, float] = (0.0, 2.0 * math.pi)


def estimate_envelope(state: QuantumState, config: SamplerConfig | None = None) -> DensityEnvelope:
    """Bound the density over the sampling ball by a coarse grid search.

    The density factors into a radial and a polar part, so the product of the
    two grid maxima bounds the 2D grid maximum; the slack covers peaks that
    fall between grid points.
    """
    config = config or SamplerConfig()
    r_search = config.radial_extent * state.n**2

    r_grid = np.linspace(0.0, r_search, config.radial_grid)
    radial = np.nan_to_num(radial_density(state, r_grid), nan=0.0, posinf=0.0)
    cdf = np.cumsum(radial)
    total = cdf[-1]
    if not np.isfinite(total) or total <= 0.0:
        raise DegenerateEnvelopeError(f"radial density vanishes on [0, {r_search:g}] for {state.label}")

    # trim the radial domain to where all but tail_tolerance of the mass lies
    cut = int(np.searchsorted(cdf, (1.0 - config.tail_tolerance) * total))
    cut = min(cut + 1, len(r_grid) - 1)
    r_max = float(r_grid[cut])
    radial_peak = float(radial[: cut + 1].max())

    theta_grid = np.linspace(0.0, math.pi, config.polar_grid)
    polar = np.nan_to_num(polar_density(state, theta_grid), nan=0.0, posinf=0.0)
    polar_peak = float(polar.max())

    density_max = config.envelope_slack * radial_peak * polar_peak
    if not math.isfinite(density_max) or density_max <= 0.0 or r_max <= 0.0:
        raise DegenerateEnvelopeError(f"degenerate envelope for {state.label}: density_max={density_max!r}")

    envelope = DensityEnvelope(
        density_max=density_max,
        r_max=r_max,
        radial_peak=radial_peak,
        polar_peak=polar_peak,
        slack=config.envelope_slack,
    )
    logger.debug("Envelope for %s: r_max=%.3f density_max=%.6g", state.label, r_max, density_max)
    return envelope


@dataclass
class SamplingStats:
    attempts: int = 0
    accepted: int = 0
    rejected_nonfinite: int = 0
    workers: int = 1
    elapsed: float = 0.0

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.attempts if self.attempts else 0.0


@dataclass(frozen=True)
class Particle:
    position: Tuple[float, float, float]
    color: Tuple[float, float, float, float]


@dataclass
class ParticleSet:
    """Sampled cloud as two parallel per-instance arrays.

    ``positions`` is float32 (N, 3) in Bohr radii around the nucleus,
    ``colors`` is float32 (N, 4) RGBA in [0, 1].
    """

    state: QuantumState
    positions: np.ndarray
    colors: np.ndarray
    stats: SamplingStats = field(default_factory=SamplingStats)

    def __post_init__(self) -> None:
        self.positions = np.ascontiguousarray(self.positions, dtype=np.float32)
        self.colors = np.ascontiguousarray(self.colors, dtype=np.float32)
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ValueError(f"positions must have shape (N, 3), got {self.positions.shape}")
        if self.colors.shape != (len(self.positions), 4):
            raise ValueError(f"colors must have shape ({len(self.positions)}, 4), got {self.colors.shape}")

    def __len__(self) -> int:
        return len(self.positions)

    def __iter__(self) -> Iterator[Particle]:
        for pos, col in zip(self.positions.tolist(), self.colors.tolist()):
            yield Particle(tuple(pos), tuple(col))

    def radii(self) -> np.ndarray:
        return np.linalg.norm(self.positions.astype(np.float64), axis=1)

    def instance_data(self) -> np.ndarray:
        """Interleaved instance records, ready for a single buffer upload."""
        data = np.empty(len(self), dtype=INSTANCE_DTYPE)
        data["position"] = self.positions
        data["color"] = self.colors
        return data


def _validate_count(count) -> int:
    if isinstance(count, bool) or not isinstance(count, (int, np.integer)):
        raise InvalidParticleCount(f"Particle count must be an integer, got {count!r}.")
    if count <= 0:
        raise InvalidParticleCount(f"Particle count must be positive, got {count}.")
    return int(count)


def _partition(count: int, workers: int) -> List[int]:
    workers = max(1, min(workers, count))
    base, extra = divmod(count, workers)
    return [base + (1 if i < extra else 0) for i in range(workers)]


@dataclass
class _WorkerResult:
    positions: np.ndarray
    colors: np.ndarray
    attempts: int
    nonfinite: int


class OrbitalSampler:
    """Builds particle sets for one orbital.

    The envelope is computed once on construction and reused by every call to
    :meth:`generate`; nothing else is kept between calls.
    """

    def __init__(self, state: QuantumState, config: SamplerConfig | None = None) -> None:
        if not isinstance(state, QuantumState):
            raise TypeError(f"state must be a QuantumState, got {type(state).__name__}")
        self.state = state
        self.config = config or SamplerConfig()
        self.envelope = estimate_envelope(state, self.config)

    def generate(
        self,
        count: int,
        *,
        cancel: threading.Event | None = None,
        seed: int | None = None,
    ) -> ParticleSet:
        """Return exactly ``count`` particles distributed as |Psi|^2."""
        count = _validate_count(count)
        shares = _partition(count, self.config.resolved_workers)
        streams = np.random.SeedSequence(seed).spawn(len(shares))
        stop = threading.Event()

        def should_stop() -> bool:
            return stop.is_set() or (cancel is not None and cancel.is_set())

        logger.debug("Sampling %d particles for %s on %d worker(s)", count, self.state.label, len(shares))
        start = time.perf_counter()
        if len(shares) == 1:
            results = [self._sample_share(shares[0], np.random.default_rng(streams[0]), should_stop)]
        else:
            results = self._run_pool(shares, streams, should_stop, stop)
        elapsed = time.perf_counter() - start

        positions = np.concatenate([res.positions for res in results])
        colors = np.concatenate([res.colors for res in results])
        if len(positions) != count:
            raise SamplingError(f"sampler produced {len(positions)} particles, expected {count}")

        stats = SamplingStats(
            attempts=sum(res.attempts for res in results),
            accepted=count,
            rejected_nonfinite=sum(res.nonfinite for res in results),
            workers=len(shares),
            elapsed=elapsed,
        )
        logger.info(
            "Sampled %d particles for %s in %.2fs (acceptance %.1f%%, %d attempts)",
            count,
            self.state.label,
            elapsed,
            100.0 * stats.acceptance_rate,
            stats.attempts,
        )
        return ParticleSet(self.state, positions, colors, stats)

    def _run_pool(self, shares, streams, should_stop, stop: threading.Event) -> List[_WorkerResult]:
        with ThreadPoolExecutor(max_workers=len(shares), thread_name_prefix="orbital-sampler") as pool:
            futures = [
                pool.submit(self._sample_share, share, np.random.default_rng(stream), should_stop)
                for share, stream in zip(shares, streams)
            ]
            try:
                done, _ = wait(futures, return_when=FIRST_EXCEPTION)
                failed = [f for f in done if f.exception() is not None]
                if failed:
                    stop.set()
                    wait(futures)
                    # report the root failure rather than a sibling's cancellation
                    errors = [f.exception() for f in futures if f.exception() is not None]
                    root = next((e for e in errors if not isinstance(e, SamplingCancelled)), errors[0])
                    raise root
            except BaseException:
                stop.set()
                raise
            return [f.result() for f in futures]

    def _sample_share(self, share: int, rng: np.random.Generator, should_stop) -> _WorkerResult:
        state, envelope, config = self.state, self.envelope, self.config
        positions = np.empty((share, 3), dtype=np.float32)
        colors = np.empty((share, 4), dtype=np.float32)
        filled = attempts = nonfinite = 0
        rate = _INITIAL_ACCEPTANCE

        while filled < share:
            if should_stop():
                raise SamplingCancelled(f"sampling cancelled after {filled}/{share} particles")

            need = share - filled
            batch = int(min(config.batch_size, max(config.min_batch, _BATCH_OVERDRAW * need / rate)))
            r = rng.uniform(0.0, envelope.r_max, batch)
            theta = np.arccos(rng.uniform(-1.0, 1.0, batch))
            phi = rng.uniform(0.0, 2.0 * math.pi, batch)

            d = density(state, r, theta, phi)
            finite = np.isfinite(d)
            bad = batch - int(np.count_nonzero(finite))
            if bad > config.max_nonfinite_fraction * batch:
                raise NumericalInstabilityError(
                    f"{bad}/{batch} non-finite density values for {state.label}"
                )
            d = np.where(finite, d, 0.0)

            threshold = rng.uniform(0.0, envelope.density_max, batch)
            idx = np.flatnonzero(threshold < d)
            if len(idx) >= need:
                # candidates after the last kept one were never needed
                idx = idx[:need]
                used = int(idx[-1]) + 1
            else:
                used = batch
            k = len(idx)
            if k:
                x, y, z = spherical_to_cartesian(r[idx], theta[idx], phi[idx])
                positions[filled : filled + k] = np.column_stack((x, y, z))
                colors[filled : filled + k] = density_color(d[idx], envelope.density_max, config.color_gamma)

            attempts += used
            nonfinite += used - int(np.count_nonzero(finite[:used]))
            filled += k
            rate = max(filled / attempts, 1e-3)

        return _WorkerResult(positions, colors, attempts, nonfinite)


def generate_particles(
    state: QuantumState,
    count: int,
    config: SamplerConfig | None = None,
    *,
    cancel: threading.Event | None = None,
    seed: int | None = None,
) -> ParticleSet:
    """One-shot helper: validate, build the envelope and sample ``count`` particles."""
    count = _validate_count(count)
    return OrbitalSampler(state, config).generate(count, cancel=cancel, seed=seed)


class BackgroundGeneration:
    """Runs :meth:`OrbitalSampler.generate` on a thread the caller can abandon.

    Failures are kept on the job and re-raised by :meth:`result` on the
    caller's thread.
    """

    def __init__(self, sampler: OrbitalSampler, count: int, *, seed: int | None = None) -> None:
        self.sampler = sampler
        self.count = _validate_count(count)
        self.seed = seed
        self.cancel = threading.Event()
        self._result: ParticleSet | None = None
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name="orbital-generation", daemon=True)

    def start(self) -> BackgroundGeneration:
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._result = self.sampler.generate(self.count, cancel=self.cancel, seed=self.seed)
        except SamplingCancelled as exc:
            logger.debug("Background generation stopped: %s", exc)
            self._error = exc
        except Exception as exc:
            logger.error("Background generation failed: %s", exc)
            self._error = exc

    @property
    def done(self) -> bool:
        return self._thread.ident is not None and not self._thread.is_alive()

    def result(self, timeout: float | None = None) -> ParticleSet:
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError(f"particle generation still running after {timeout}s")
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    def abandon(self) -> None:
        self.cancel.set()
        if self._thread.ident is not None:
            self._thread.join()

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.special import gammaln

A0 = 1.0

# Rescale the Laguerre recurrence before its terms can leave float64 range.
_LAGUERRE_RESCALE = 1e150

DEFAULT_COLOR_GAMMA = 0.5
MIN_ALPHA = 0.35

_FIRE_STOPS = np.array(
    [
        (0.0, 0.0, 0.0),
        (0.5, 0.0, 0.99),
        (0.8, 0.0, 0.0),
        (1.0, 0.5, 0.0),
        (1.0, 1.0, 0.0),
        (1.0, 1.0, 1.0),
    ]
)


class InvalidQuantumNumbers(ValueError):
    """Raised when (n, l, m) does not describe a hydrogen orbital."""


def clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


@dataclass(frozen=True)
class QuantumState:
    """Quantum numbers of a single hydrogen-like orbital.

    Validated on construction; an invalid triple raises
    :class:`InvalidQuantumNumbers` and is never clamped into range.
    """

    n: int
    l: int
    m: int

    def __post_init__(self) -> None:
        for name in ("n", "l", "m"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise InvalidQuantumNumbers(f"Quantum number {name} must be an integer, got {value!r}.")
        if self.n < 1:
            raise InvalidQuantumNumbers("Principal quantum number (n) must be positive.")
        if self.l < 0 or self.l >= self.n:
            raise InvalidQuantumNumbers("Azimuthal quantum number (l) must be in the range [0, n-1].")
        if abs(self.m) > self.l:
            raise InvalidQuantumNumbers("Magnetic quantum number (m) must be in the range [-l, l].")

    @property
    def label(self) -> str:
        return f"n={self.n} l={self.l} m={self.m}"


def spherical_to_cartesian(r, theta, phi) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    # y is the polar axis so orbitals stand upright under the camera's up vector
    sin_t = np.sin(theta)
    x = r * sin_t * np.cos(phi)
    y = r * np.cos(theta)
    z = r * sin_t * np.sin(phi)
    return x, y, z


def laguerre_scaled(k: int, alpha: int, x) -> Tuple[np.ndarray, np.ndarray]:
    """Generalized Laguerre L_k^alpha(x) as ``value * exp(log_scale)``."""
    x = np.asarray(x, dtype=float)
    log_scale = np.zeros_like(x)
    if k == 0:
        return np.ones_like(x), log_scale
    lm2 = np.ones_like(x)
    lm1 = 1.0 + alpha - x
    for j in range(2, k + 1):
        lj = ((2 * j - 1 + alpha - x) * lm1 - (j - 1 + alpha) * lm2) / j
        lm2, lm1 = lm1, lj
        big = np.abs(lm1) > _LAGUERRE_RESCALE
        if np.any(big):
            s = np.where(big, np.abs(lm1), 1.0)
            lm1 = lm1 / s
            lm2 = lm2 / s
            log_scale = log_scale + np.log(s)
    return lm1, log_scale


def normalized_legendre(l: int, m: int, x):
    """Associated Legendre function scaled so that its square is |Y_lm|^2.

    Uses the fully normalized three-term recurrence, which never forms the
    factorial ratio (l-m)!/(l+m)! and stays finite for large l.
    """
    x = np.asarray(x, dtype=float)
    m_abs = abs(m)

    pmm = np.ones_like(x)
    if m_abs > 0:
        omx2 = np.clip((1.0 - x) * (1.0 + x), 0.0, None)
        fact = 1.0
        for _ in range(m_abs):
            pmm = pmm * omx2 * fact / (fact + 1.0)
            fact += 2.0
    pmm = np.sqrt((2 * m_abs + 1) * pmm / (4.0 * math.pi))
    if m_abs % 2 == 1:
        pmm = -pmm
    if l == m_abs:
        return pmm[()]

    pmmp1 = x * math.sqrt(2 * m_abs + 3) * pmm
    if l == m_abs + 1:
        return pmmp1[()]

    old_fact = math.sqrt(2 * m_abs + 3)
    pll = pmmp1
    for ll in range(m_abs + 2, l + 1):
        fact = math.sqrt((4.0 * ll * ll - 1.0) / (ll * ll - m_abs * m_abs))
        pll = (x * pmmp1 - pmm / old_fact) * fact
        old_fact = fact
        pmm, pmmp1 = pmmp1, pll
    return pll[()]


def radial_density(state: QuantumState, r):
    """r^2 |R_nl(r)|^2, evaluated in the log domain.

    Returns NaN instead of raising where the inputs are not physical
    (negative or infinite radius).
    """
    n, l = state.n, state.l
    r = np.asarray(r, dtype=float)
    rho = 2.0 * r / (n * A0)
    lag, log_scale = laguerre_scaled(n - l - 1, 2 * l + 1, rho)
    log_norm = 3.0 * math.log(2.0 / (n * A0)) + gammaln(n - l) - math.log(2.0 * n) - gammaln(n + l + 1)

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        log_density = log_norm + 2.0 * np.log(r) - rho + 2.0 * (np.log(np.abs(lag)) + log_scale)
        if l > 0:
            log_density = log_density + 2.0 * l * np.log(rho)
        out = np.exp(log_density)
    return out[()]


def polar_density(state: QuantumState, theta):
    """|Y_lm(theta, phi)|^2, which does not depend on phi."""
    p = normalized_legendre(state.l, state.m, np.cos(theta))
    return np.square(p)[()]


def density(state: QuantumState, r, theta, phi=None):
    """|R_nl|^2 |Y_lm|^2 r^2 at (r, theta, phi).

    ``phi`` is accepted for symmetry with the spherical coordinates; the
    density does not depend on it.
    """
    return radial_density(state, r) * polar_density(state, theta)


def heatmap_fire(value):
    value = np.clip(np.asarray(value, dtype=float), 0.0, 1.0)
    scaled = value * (len(_FIRE_STOPS) - 1)
    stops = np.arange(len(_FIRE_STOPS))
    rgb = np.stack([np.interp(scaled, stops, _FIRE_STOPS[:, k]) for k in range(3)], axis=-1)
    return rgb


def density_color(density_value, density_max: float, gamma: float = DEFAULT_COLOR_GAMMA) -> np.ndarray:
    """RGBA glow color for a sample with the given density.

    Deterministic in its inputs; channels are clamped to [0, 1] and alpha is
    never below ``MIN_ALPHA``.
    """
    d = np.asarray(density_value, dtype=float)
    with np.errstate(invalid="ignore"):
        v = np.clip(np.nan_to_num(d / density_max, nan=0.0, posinf=1.0, neginf=0.0), 0.0, 1.0) ** gamma
    v = np.asarray(v, dtype=float)
    rgb = heatmap_fire(v)
    alpha = MIN_ALPHA + (1.0 - MIN_ALPHA) * v
    rgba = np.concatenate([rgb, np.expand_dims(alpha, -1)], axis=-1)
    return np.clip(rgba, 0.0, 1.0).astype(np.float32)


def sphere_vertices(radius: float = 1.0, sectors: int = 10, stacks: int = 10) -> np.ndarray:
    """UV sphere expanded to a flat triangle list, shape (6 * sectors * (stacks - 1), 3)."""
    sector_step = 2.0 * math.pi / sectors
    stack_step = math.pi / stacks

    grid = []
    for i in range(stacks + 1):
        stack_angle = math.pi / 2.0 - i * stack_step
        xy = radius * math.cos(stack_angle)
        z = radius * math.sin(stack_angle)
        for j in range(sectors + 1):
            sector_angle = j * sector_step
            grid.append((xy * math.cos(sector_angle), xy * math.sin(sector_angle), z))

    indices: list[int] = []
    for i in range(stacks):
        k1 = i * (sectors + 1)
        k2 = k1 + sectors + 1
        for _ in range(sectors):
            if i != 0:
                indices.extend((k1, k2, k1 + 1))
            if i != stacks - 1:
                indices.extend((k1 + 1, k2, k2 + 1))
            k1 += 1
            k2 += 1

    return np.asarray(grid, dtype=np.float32)[indices]


@dataclass
class Camera:
    radius: float = 30.0
    azimuth: float = 0.0
    elevation: float = math.pi / 2
    orbit_speed: float = 0.01
    zoom_speed: float = 1.0
    target: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    dragging: bool = False
    last_x: float = 0.0
    last_y: float = 0.0

    def position(self) -> Tuple[float, float, float]:
        e = clamp(self.elevation, 0.01, math.pi - 0.01)
        tx, ty, tz = self.target
        x = self.radius * math.sin(e) * math.cos(self.azimuth)
        y = self.radius * math.cos(e)
        z = self.radius * math.sin(e) * math.sin(self.azimuth)
        return tx + x, ty + y, tz + z

    def process_mouse_move(self, x: float, y: float) -> None:
        dx = x - self.last_x
        dy = y - self.last_y
        if self.dragging:
            self.azimuth += dx * self.orbit_speed
            self.elevation = clamp(self.elevation - dy * self.orbit_speed, 0.01, math.pi - 0.01)
        self.last_x, self.last_y = x, y

    def process_mouse_button(self, pressed: bool) -> None:
        self.dragging = pressed

    def process_scroll(self, y_offset: float) -> None:
        self.radius = max(1.0, self.radius - y_offset * self.zoom_speed)

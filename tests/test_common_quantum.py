"""Tests for the wavefunction evaluator, color mapping, camera and mesh helpers."""

import math

import numpy as np
import pytest
from scipy.integrate import quad
from scipy.special import eval_genlaguerre, factorial, lpmv

from common_quantum import (
    MIN_ALPHA,
    Camera,
    InvalidQuantumNumbers,
    QuantumState,
    density,
    density_color,
    laguerre_scaled,
    normalized_legendre,
    polar_density,
    radial_density,
    sphere_vertices,
    spherical_to_cartesian,
)


@pytest.mark.parametrize(
    "n,l,m",
    [(0, 0, 0), (2, 2, 0), (2, 1, 2), (1, 0, 1), (3, -1, 0), (-1, 0, 0), (3, 1, -2)],
)
def test_invalid_states_rejected(n, l, m):
    with pytest.raises(InvalidQuantumNumbers):
        QuantumState(n, l, m)


@pytest.mark.parametrize("bad", [1.0, True, "1"])
def test_non_integer_quantum_numbers_rejected(bad):
    with pytest.raises(InvalidQuantumNumbers):
        QuantumState(bad, 0, 0)


def test_invalid_state_message_is_readable():
    with pytest.raises(InvalidQuantumNumbers, match=r"\[0, n-1\]"):
        QuantumState(2, 2, 0)


def test_valid_state_is_frozen():
    state = QuantumState(3, 2, -2)
    assert state.label == "n=3 l=2 m=-2"
    with pytest.raises(AttributeError):
        state.n = 4


def laguerre_value(k, alpha, x):
    value, log_scale = laguerre_scaled(k, alpha, x)
    return value * np.exp(log_scale)


def test_laguerre_matches_scipy():
    x = np.linspace(0.0, 40.0, 101)
    for k in range(7):
        for alpha in (1, 3, 7):
            np.testing.assert_allclose(laguerre_value(k, alpha, x), eval_genlaguerre(k, alpha, x), rtol=1e-8, atol=1e-6)


def test_laguerre_scalar_input():
    assert laguerre_value(1, 1, 0.5) == pytest.approx(1.5)
    assert laguerre_value(0, 5, 3.0) == 1.0


def test_laguerre_rescales_instead_of_overflowing():
    value, log_scale = laguerre_scaled(400, 199, np.array([0.0, 1.0, 50.0]))
    assert np.all(np.isfinite(value))
    assert np.all(np.abs(value) <= 1e151)
    assert log_scale[0] > 0.0
    expected_log = math.lgamma(400 + 199 + 1) - math.lgamma(400 + 1) - math.lgamma(199 + 1)
    assert math.log(abs(value[0])) + log_scale[0] == pytest.approx(expected_log, rel=1e-9)


@pytest.mark.parametrize("l,m", [(0, 0), (1, 0), (1, 1), (2, -1), (3, 2), (4, 4)])
def test_normalized_legendre_matches_spherical_harmonic(l, m):
    x = np.linspace(-1.0, 1.0, 51)
    ma = abs(m)
    expected = (2 * l + 1) / (4 * math.pi) * factorial(l - ma) / factorial(l + ma) * lpmv(ma, l, x) ** 2
    np.testing.assert_allclose(normalized_legendre(l, m, x) ** 2, expected, rtol=1e-9, atol=1e-14)


def test_ground_state_radial_closed_form():
    state = QuantumState(1, 0, 0)
    r = np.linspace(0.0, 8.0, 41)
    np.testing.assert_allclose(radial_density(state, r), 4.0 * r**2 * np.exp(-2.0 * r), rtol=1e-12, atol=1e-300)


@pytest.mark.parametrize("n,l", [(1, 0), (2, 1), (3, 0), (3, 2), (5, 3)])
def test_radial_density_normalized(n, l):
    state = QuantumState(n, l, 0)
    total, _ = quad(lambda r: radial_density(state, r), 0.0, 20.0 * n * n, limit=400)
    assert total == pytest.approx(1.0, rel=1e-6)


@pytest.mark.parametrize("l,m", [(0, 0), (2, 1), (3, -3)])
def test_polar_density_normalized_over_sphere(l, m):
    state = QuantumState(l + 1, l, m)
    total, _ = quad(lambda t: 2 * math.pi * polar_density(state, t) * math.sin(t), 0.0, math.pi)
    assert total == pytest.approx(1.0, rel=1e-8)


def test_density_non_negative_on_random_points():
    rng = np.random.default_rng(3)
    for n, l, m in [(1, 0, 0), (2, 1, 1), (4, 2, -1), (6, 5, 3)]:
        state = QuantumState(n, l, m)
        r = rng.uniform(0.0, 10.0 * n * n, 5000)
        theta = rng.uniform(0.0, math.pi, 5000)
        phi = rng.uniform(0.0, 2 * math.pi, 5000)
        d = density(state, r, theta, phi)
        assert np.all(np.isfinite(d))
        assert np.all(d >= 0.0)


def test_density_ignores_phi():
    state = QuantumState(3, 2, 1)
    a = density(state, 4.0, 1.1, 0.0)
    b = density(state, 4.0, 1.1, 2.5)
    assert a == b


def test_density_zero_at_origin():
    assert density(QuantumState(2, 1, 0), 0.0, 0.3) == 0.0
    assert density(QuantumState(1, 0, 0), 0.0, 0.3) == 0.0


def test_large_n_stays_finite():
    state = QuantumState(40, 3, 1)
    r = np.linspace(0.0, 16000.0, 20001)
    d = radial_density(state, r)
    assert np.all(np.isfinite(d))
    assert np.all(d >= 0.0)
    assert d.max() > 0.0


def test_unphysical_radius_gives_nan_not_error():
    state = QuantumState(2, 0, 0)
    assert math.isnan(radial_density(state, -1.0))


def test_spherical_to_cartesian_y_is_polar_axis():
    x, y, z = spherical_to_cartesian(2.0, 0.0, 1.0)
    assert (x, y, z) == pytest.approx((0.0, 2.0, 0.0))
    x, y, z = spherical_to_cartesian(1.0, math.pi / 2, math.pi / 2)
    assert (x, y, z) == pytest.approx((0.0, 0.0, 1.0), abs=1e-12)


def test_density_color_deterministic():
    d = np.array([0.0, 1e-5, 0.02, 0.3, 1.0])
    a = density_color(d, 0.5)
    b = density_color(d, 0.5)
    assert a.tobytes() == b.tobytes()
    assert a.dtype == np.float32
    assert a.shape == (5, 4)


def test_density_color_ranges():
    d = np.array([-1.0, 0.0, 0.25, 0.5, 2.0, np.nan, np.inf])
    rgba = density_color(d, 0.5)
    assert np.all(rgba >= 0.0)
    assert np.all(rgba <= 1.0)
    assert np.all(rgba[:, 3] >= np.float32(MIN_ALPHA))


def test_density_color_scalar_and_endpoints():
    low = density_color(0.0, 1.0)
    high = density_color(1.0, 1.0)
    assert low.shape == (4,)
    np.testing.assert_allclose(low, [0.0, 0.0, 0.0, MIN_ALPHA], atol=1e-7)
    np.testing.assert_allclose(high, [1.0, 1.0, 1.0, 1.0], atol=1e-7)


def test_density_color_brighter_with_density():
    rgba = density_color(np.array([0.1, 0.9]), 1.0)
    assert rgba[1, :3].sum() > rgba[0, :3].sum()
    assert rgba[1, 3] > rgba[0, 3]


def test_sphere_vertices_shape_and_radius():
    verts = sphere_vertices(2.0, 10, 10)
    assert verts.shape == (6 * 10 * 9, 3)
    np.testing.assert_allclose(np.linalg.norm(verts, axis=1), 2.0, rtol=1e-5)


def test_camera_zoom():
    cam = Camera(radius=10.0)
    cam.process_scroll(2.0)
    assert cam.radius == 8.0
    cam.process_scroll(-3.0)
    assert cam.radius == 11.0
    cam.process_scroll(100.0)
    assert cam.radius == 1.0


def test_camera_drag_movement():
    cam = Camera(radius=10.0)
    cam.dragging = True
    cam.last_x, cam.last_y = 100.0, 100.0
    cam.process_mouse_move(150.0, 120.0)
    assert cam.azimuth != 0.0
    assert cam.elevation != math.pi / 2
    assert (cam.last_x, cam.last_y) == (150.0, 120.0)


def test_camera_moves_only_while_dragging():
    cam = Camera(radius=10.0)
    cam.process_mouse_move(50.0, 50.0)
    assert cam.azimuth == 0.0
    assert cam.elevation == math.pi / 2


def test_camera_elevation_clamped():
    cam = Camera(radius=10.0)
    cam.process_mouse_button(True)
    cam.process_mouse_move(0.0, -1e6)
    assert cam.elevation == pytest.approx(math.pi - 0.01)
    cam.process_mouse_move(0.0, 1e6)
    assert cam.elevation == pytest.approx(0.01)


def test_camera_button_press_and_release():
    cam = Camera()
    assert not cam.dragging
    cam.process_mouse_button(True)
    assert cam.dragging
    cam.process_mouse_button(False)
    assert not cam.dragging


def test_camera_position_on_orbit_sphere():
    cam = Camera(radius=7.0, azimuth=0.4, elevation=1.0)
    assert math.dist(cam.position(), cam.target) == pytest.approx(7.0)

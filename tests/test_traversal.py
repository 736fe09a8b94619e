import numpy as np
import pytest

from nbody_pyramid import (
    LevelConfig,
    PyramidGravitySolver,
    QuadrupoleTraversal,
    compute_direct_forces_cpu,
    make_level_configs,
)
from nbody_pyramid._backend import to_host
from nbody_pyramid.errors import LevelBudgetError, MissingResourceError

BOX = ((-2.0, -2.0, -2.0), (2.0, 2.0, 2.0))


def pyramid_forces(device, pos, mass, levels, precision='float32', **kwargs):
    """Accelerations from the pyramid using the world-bounds hint (no reduction)."""
    kwargs.setdefault('world_bounds', BOX)
    with PyramidGravitySolver(len(pos), levels, device=device, precision=precision,
                              **kwargs) as solver:
        solver.upload(pos, mass)
        solver.aggregate()
        solver.build_pyramid()
        solver.traverse()
        return solver.read_forces().astype(np.float64)


def relative_errors(approx, exact):
    return np.linalg.norm(approx - exact, axis=1) / np.linalg.norm(exact, axis=1)


def test_single_particle_feels_nothing(device):
    acc = pyramid_forces(device, np.array([[0.3, -0.2, 0.1]]), [5.0], make_level_configs(8, 3))
    np.testing.assert_array_equal(acc, 0.0)


def test_two_body(device):
    """Two masses in separate voxels of a single 4^3 level: exact softened pair force."""
    G, eps = 3e-4, 0.2
    pos = np.array([[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    mass = np.array([1.0, 3.0])
    with PyramidGravitySolver(2, [LevelConfig(4, 2)], device=device, gravity_constant=G,
                              softening=eps) as solver:
        solver.upload(pos, mass)
        acc = solver.compute_forces().astype(np.float64)

    d3 = (4.0 + eps ** 2) ** 1.5
    np.testing.assert_allclose(acc[0], [G * 3.0 * 2.0 / d3, 0, 0], rtol=1e-5, atol=1e-12)
    np.testing.assert_allclose(acc[1], [-G * 1.0 * 2.0 / d3, 0, 0], rtol=1e-5, atol=1e-12)
    # Newton's third law: m1 a1 = -m2 a2
    np.testing.assert_allclose(mass[0] * acc[0], -mass[1] * acc[1], rtol=1e-5)


def test_own_voxel_is_never_counted(device):
    # both particles share one level-0 voxel and nothing else is present
    pos = np.array([[0.05, 0.05, 0.05], [0.1, 0.1, 0.1]])
    acc = pyramid_forces(device, pos, [1.0, 1.0], make_level_configs(8, 2))
    np.testing.assert_array_equal(acc, 0.0)


def test_empty_and_invalid_slots_get_zero(device):
    pos = np.array([[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [np.nan, 0.0, 0.0], [0.5, 0.5, 0.5]])
    mass = np.array([1.0, 1.0, 0.0, 1.0, -1.0])
    with PyramidGravitySolver(5, make_level_configs(8, 2), world_bounds=BOX, device=device,
                              texture_width=4) as solver:
        solver.upload(pos, mass)
        solver.compute_forces()
        raw = solver.read_forces()
        texture = to_host(solver.forces)

    np.testing.assert_array_equal(raw[2:], 0.0)
    # slots past the particle count
    np.testing.assert_array_equal(texture.reshape(-1, 4)[5:], 0.0)
    np.testing.assert_array_equal(texture[..., 3], 0.0)
    assert raw[0, 0] > 0 and raw[1, 0] < 0


def test_tiny_theta_equals_direct_sum(device, lattice):
    """With every voxel opened down to level 0 the walk is an exact pair sum."""
    pos, mass = lattice(150, grid=16)
    G, eps = 1.0, 0.05
    exact = compute_direct_forces_cpu(pos, mass, gravity_constant=G, softening=eps)
    acc = pyramid_forces(device, pos, mass, make_level_configs(16, 3), precision='float64',
                         theta=1e-3, gravity_constant=G, softening=eps)
    assert relative_errors(acc, exact).max() < 1e-6


@pytest.mark.parametrize("use_occupancy", [False, True])
def test_accuracy_against_direct_sum(device, lattice, use_occupancy):
    pos, mass = lattice(400, grid=16, seed=2)
    G, eps = 1.0, 0.05
    exact = compute_direct_forces_cpu(pos, mass, gravity_constant=G, softening=eps)
    acc = pyramid_forces(device, pos, mass, make_level_configs(16, 3), theta=0.5,
                         gravity_constant=G, softening=eps, use_occupancy=use_occupancy)
    err = relative_errors(acc, exact)
    print(f"theta=0.5: median {np.median(err):.2e}, max {err.max():.2e}")
    assert np.median(err) < 1e-2


def test_error_grows_with_theta(device, lattice):
    pos, mass = lattice(400, grid=16, seed=3)
    exact = compute_direct_forces_cpu(pos, mass, gravity_constant=1.0, softening=0.05)
    errors = []
    for theta in (0.2, 0.5, 1.0):
        acc = pyramid_forces(device, pos, mass, make_level_configs(16, 3), theta=theta,
                             gravity_constant=1.0, softening=0.05)
        errors.append(np.mean(relative_errors(acc, exact)))
    print(errors)
    assert errors[0] <= errors[1] <= errors[2]


def test_quadrupole_improves_accuracy(device, lattice):
    pos, mass = lattice(400, grid=16, seed=4)
    exact = compute_direct_forces_cpu(pos, mass, gravity_constant=1.0, softening=0.05)
    common = dict(theta=0.8, gravity_constant=1.0, softening=0.05)
    levels = make_level_configs(16, 3)
    quad = relative_errors(pyramid_forces(device, pos, mass, levels, use_quadrupole=True, **common), exact)
    mono = relative_errors(pyramid_forces(device, pos, mass, levels, use_quadrupole=False, **common), exact)
    print(f"monopole {np.mean(mono):.2e}, quadrupole {np.mean(quad):.2e}")
    assert np.mean(quad) < np.mean(mono)


@pytest.mark.parametrize("clustered", [False, True])
def test_occupancy_pruning_matches_full_walk(device, clustered):
    rng = np.random.default_rng(9)
    if clustered:
        pos = rng.normal(loc=1.2, scale=0.15, size=(300, 3))
    else:
        pos = rng.uniform(-2, 2, size=(300, 3))
    mass = rng.uniform(0.5, 1.0, size=300)
    levels = make_level_configs(16, 4)
    off = pyramid_forces(device, pos, mass, levels, use_occupancy=False)
    on = pyramid_forces(device, pos, mass, levels, use_occupancy=True)
    # atomics may reorder the moment sums between the two runs on a GPU
    np.testing.assert_allclose(on, off, rtol=1e-5, atol=1e-7)


def test_occupancy_required_only_when_enabled(device):
    levels = make_level_configs(4, 2)
    traversal = QuadrupoleTraversal(levels, (2, 2), use_occupancy=True, device=device)
    with pytest.raises(MissingResourceError) as info:
        traversal.run()
    assert "in_occupancy" in info.value.slots
    assert "in_bounds" not in info.value.slots


def test_level_budget_enforced(device):
    with pytest.raises(LevelBudgetError):
        QuadrupoleTraversal([LevelConfig(2 ** (9 - i), 1) for i in range(9)], (2, 2), device=device)

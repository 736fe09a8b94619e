import numpy as np
import pytest

from nbody_pyramid import PyramidGravitySolver, make_plummer_sphere
from nbody_pyramid.errors import ConfigurationError, LevelBudgetError, MissingResourceError

SMALL = dict(grid_size=8, num_levels=3)


def test_step_pulls_pair_together(device):
    pos = np.array([[-1.0, 0.0, 1.0], [1.0, 0.0, 1.0]])
    with PyramidGravitySolver(2, device=device, gravity_constant=1.0, **SMALL) as solver:
        solver.upload(pos, [1.0, 1.0], vel=np.zeros((2, 3)))
        for _ in range(3):
            solver.step()
        new = solver.read_positions()
        vel = solver.read_velocities()
        assert solver.step_count == 3
    assert new[0, 0] > -1.0 and new[1, 0] < 1.0
    assert vel[0, 0] > 0 and vel[1, 0] < 0
    np.testing.assert_allclose(new[:, 1:], pos[:, 1:], atol=1e-6)


def test_plummer_forces_point_inwards(device):
    pos, _, mass = make_plummer_sphere(500, a=0.5, seed=1, r_max=2.0)
    with PyramidGravitySolver(500, device=device, world_bounds=((-3, -3, -3), (3, 3, 3)),
                              **SMALL) as solver:
        solver.upload(pos, mass)
        acc = solver.compute_forces()
    r = np.linalg.norm(pos, axis=1)
    outer = r > 1.5
    radial = np.einsum('ij,ij->i', acc[outer], pos[outer]) / r[outer]
    assert np.all(radial < 0)


def test_level_statistics_conserve_mass(device):
    rng = np.random.default_rng(2)
    pos = rng.uniform(-1, 1, size=(800, 3))
    mass = rng.uniform(0.5, 1.0, size=800)
    with PyramidGravitySolver(800, device=device, **SMALL) as solver:
        solver.upload(pos, mass)
        solver.compute_forces()
        stats = solver.level_statistics()
    assert [s['grid_size'] for s in stats] == [8, 4, 2]
    for s in stats:
        assert s['total_mass'] == pytest.approx(mass.sum(), rel=1e-5)


def test_read_bounds(device):
    rng = np.random.default_rng(3)
    pos = rng.normal(size=(100, 3))
    with PyramidGravitySolver(100, device=device, **SMALL) as solver:
        assert solver.read_bounds() is None
        solver.upload(pos, 1.0)
        solver.reduce_bounds()
        lo, hi = solver.read_bounds()
    np.testing.assert_allclose(lo, pos.astype(np.float32).min(axis=0))
    np.testing.assert_allclose(hi, pos.astype(np.float32).max(axis=0))


def test_step_without_bounds_updates(device):
    rng = np.random.default_rng(4)
    with PyramidGravitySolver(50, device=device, bounds_update_interval=0, **SMALL) as solver:
        solver.upload(rng.normal(size=(50, 3)), 1.0)
        solver.step()
        assert solver.read_bounds() is None
        assert np.isfinite(solver.read_positions()).all()


def test_upload_checks_count():
    with PyramidGravitySolver(10, device='cpu', **SMALL) as solver:
        with pytest.raises(ConfigurationError):
            solver.upload(np.zeros((9, 3)), 1.0)


def test_build_pyramid_level_range():
    with PyramidGravitySolver(10, device='cpu', **SMALL) as solver:
        solver.upload(np.zeros((10, 3)), 1.0)
        solver.aggregate()
        solver.build_pyramid(0)
        solver.build_pyramid(1)
        with pytest.raises(ConfigurationError):
            solver.build_pyramid(2)


def test_dispose_is_final_and_idempotent():
    solver = PyramidGravitySolver(10, device='cpu', **SMALL)
    solver.upload(np.zeros((10, 3)), 1.0)
    solver.dispose()
    solver.dispose()
    with pytest.raises(MissingResourceError):
        solver.read_forces()
    with pytest.raises(MissingResourceError):
        solver.upload(np.zeros((10, 3)), 1.0)
    with pytest.raises(MissingResourceError):
        solver.traverse()
    for kernel in solver.kernels:
        for name in kernel._slots:
            assert kernel.resource(name).array is None


def test_borrowed_positions_survive(device, upload, download):
    shape = (2, 5)
    positions = upload(np.zeros(shape + (4,)))
    solver = PyramidGravitySolver(10, device=device, texture_width=5, positions=positions, **SMALL)
    assert solver.positions is positions
    solver.upload(np.ones((10, 3)), 2.0)
    solver.dispose()
    host = download(positions)
    assert host.shape == shape + (4,)
    np.testing.assert_array_equal(host[..., 3], 2.0)


def test_solvers_do_not_share_buffers():
    a = PyramidGravitySolver(20, device='cpu', **SMALL)
    b = PyramidGravitySolver(20, device='cpu', **SMALL)
    for x, y in zip(a.kernels, b.kernels):
        for name in x._slots:
            arr_x, arr_y = x.resource(name).array, y.resource(name).array
            if arr_x is not None and arr_y is not None:
                assert not np.shares_memory(arr_x, arr_y)
    a.upload(np.ones((20, 3)), 1.0)
    np.testing.assert_array_equal(b.read_positions(), 0.0)
    a.dispose()
    b.dispose()


def test_fixed_accumulation_is_flagged():
    with pytest.warns(RuntimeWarning, match="fixed-point"):
        solver = PyramidGravitySolver(10, device='cpu', accumulation='fixed', **SMALL)
    assert solver.degraded_accuracy
    solver.dispose()


def test_configuration_errors():
    with pytest.raises(LevelBudgetError):
        PyramidGravitySolver(10, device='cpu', grid_size=256, num_levels=9)
    with pytest.raises(ConfigurationError):
        PyramidGravitySolver(10, device='cpu', bounds_update_interval=-1, **SMALL)
    with pytest.raises(ConfigurationError):
        PyramidGravitySolver(10, device='cpu', theta=-1.0, **SMALL)

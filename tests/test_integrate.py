import numpy as np
import pytest

from nbody_pyramid import EulerIntegrator
from nbody_pyramid.errors import ConfigurationError


def run_step(device, upload, download, pos, vel, force, **kwargs):
    shape = (1, len(pos))
    tex = [upload(np.asarray(a, dtype=float).reshape(shape + (4,))) for a in (pos, vel, force)]
    integrator = EulerIntegrator(shape, *tex, device=device, **kwargs)
    integrator.run()
    out_pos = download(integrator.out_position).reshape(-1, 4)
    out_vel = download(integrator.out_velocity).reshape(-1, 4)
    integrator.dispose()
    return out_pos, out_vel


def test_kick_then_drift_with_accel_clamp(device, upload, download):
    p, v = run_step(device, upload, download,
                    [[0, 0, 0, 1.0]], [[0, 0, 0, 7.0]], [[2.0, 0, 0, 0]],
                    dt=0.5, max_accel=1.0)
    np.testing.assert_allclose(v[0], [0.5, 0, 0, 7.0])
    np.testing.assert_allclose(p[0], [0.25, 0, 0, 1.0])


def test_speed_clamp_and_damping(device, upload, download):
    _, v = run_step(device, upload, download,
                    [[0, 0, 0, 1.0], [0, 0, 0, 1.0]],
                    [[3.0, 4.0, 0, 0], [1.0, 0, 0, 0]],
                    [[0, 0, 0, 0], [0, 0, 0, 0]],
                    dt=0.25, max_speed=2.0)
    np.testing.assert_allclose(v[0, :3], [1.2, 1.6, 0], rtol=1e-6)
    np.testing.assert_allclose(v[1, :3], [1.0, 0, 0])

    _, v = run_step(device, upload, download,
                    [[0, 0, 0, 1.0]], [[1.0, 0, 0, 0]], [[0, 0, 0, 0]],
                    dt=0.25, damping=0.5)
    np.testing.assert_allclose(v[0, :3], [0.5, 0, 0])


def test_invalid_particles_pass_through(device, upload, download):
    pos = [[1, 2, 3, 0.0], [1, 2, 3, 1.0], [np.nan, 2, 3, 1.0]]
    vel = [[1, 1, 1, 9.0], [1, 1, 1, 9.0], [1, 1, 1, 9.0]]
    force = [[0.1, 0, 0, 0], [np.nan, 0, 0, 0], [0.1, 0, 0, 0]]
    p, v = run_step(device, upload, download, pos, vel, force)
    np.testing.assert_array_equal(p[:2], np.asarray(pos, dtype=np.float32)[:2])
    assert np.isnan(p[2, 0])
    np.testing.assert_array_equal(v, np.asarray(vel, dtype=np.float32))


def test_in_place_update(device, upload, download):
    pos = upload(np.array([[[0, 0, 0, 2.0]]]))
    vel = upload(np.array([[[0.5, 0, 0, 0]]]))
    force = upload(np.zeros((1, 1, 4)))
    integrator = EulerIntegrator((1, 1), pos, vel, force, out_position=pos, out_velocity=vel,
                                 dt=0.1, device=device)
    integrator.run()
    integrator.run()
    np.testing.assert_allclose(download(pos)[0, 0], [0.1, 0, 0, 2.0], rtol=1e-6)
    integrator.dispose()
    # borrowed buffers stay usable
    assert download(pos)[0, 0, 3] == 2.0


@pytest.mark.parametrize("kwargs", [dict(dt=0), dict(damping=1.5), dict(max_speed=0)])
def test_bad_parameters(kwargs):
    with pytest.raises(ConfigurationError):
        EulerIntegrator((1, 1), device='cpu', **kwargs)

import numpy as np
import pytest

from nbody_pyramid import BoundsReduce
from nbody_pyramid.bounds import plan_reduction
from nbody_pyramid.particles import pack_particles, particle_texture_shape


def test_reduction_plan():
    assert plan_reduction(1, 1) == [(1, 1, 1, 1)]
    assert plan_reduction(8, 8) == [(8, 8, 1, 1)]
    assert plan_reduction(28, 37) == [(28, 37, 4, 5), (4, 5, 1, 1)]
    assert plan_reduction(100, 100) == [(100, 100, 13, 13), (13, 13, 2, 2), (2, 2, 1, 1)]


@pytest.mark.parametrize("n, width", [(1, None), (37, None), (1000, 37), (10000, None)])
def test_bounds_match_numpy(device, upload, download, n, width):
    rng = np.random.default_rng(n)
    pos = rng.normal(scale=3.0, size=(n, 3)).astype(np.float32)
    shape = particle_texture_shape(n, width)
    tex = upload(pack_particles(pos, 1.0, shape))

    kernel = BoundsReduce(shape, in_position=tex, device=device)
    kernel.run()
    out = download(kernel.out_bounds)

    np.testing.assert_array_equal(out[0, :3], pos.min(axis=0))
    np.testing.assert_array_equal(out[1, :3], pos.max(axis=0))
    assert out[0, 3] == 1.0 and out[1, 3] == 1.0
    kernel.dispose()


def test_invalid_slots_are_skipped(device, upload, download):
    rng = np.random.default_rng(5)
    n = 300
    pos = rng.uniform(-1, 1, size=(n, 3))
    mass = np.ones(n)
    # far-away particles that must not count
    pos[0] = [100, 100, 100]
    mass[0] = 0.0
    pos[1] = [-50, -50, -50]
    mass[1] = -2.0
    pos[2] = [np.nan, 500, 500]
    pos[3] = [400, 400, 400]
    mass[3] = np.nan

    shape = particle_texture_shape(n)
    tex = upload(pack_particles(pos, mass, shape))
    kernel = BoundsReduce(shape, in_position=tex, device=device)
    kernel.run()
    out = download(kernel.out_bounds)

    valid = pos[4:].astype(np.float32)
    np.testing.assert_array_equal(out[0, :3], valid.min(axis=0))
    np.testing.assert_array_equal(out[1, :3], valid.max(axis=0))


def test_no_valid_particle_flags_invalid(device, upload, download):
    shape = (10, 10)
    tex = upload(pack_particles(np.ones((100, 3)), 0.0, shape))
    kernel = BoundsReduce(shape, in_position=tex, device=device)
    kernel.run()
    out = download(kernel.out_bounds)
    assert out[0, 3] == 0.0 and out[1, 3] == 0.0


def test_reduction_is_idempotent(device, upload, download):
    rng = np.random.default_rng(7)
    shape = (40, 40)
    tex = upload(pack_particles(rng.normal(size=(1600, 3)), 1.0, shape))
    kernel = BoundsReduce(shape, in_position=tex, device=device)
    kernel.run()
    first = download(kernel.out_bounds).copy()
    kernel.run()
    np.testing.assert_array_equal(download(kernel.out_bounds), first)
    assert kernel.render_count == 2

# test_newtons_third_law.py
"""
Momentum balance of the pyramid forces.

Barnes-Hut forces are not pairwise symmetric, so the net force is only small
relative to the total force magnitude, and shrinks as theta does.
"""
import numpy as np
import pytest

from nbody_pyramid import PyramidGravitySolver, compute_direct_forces_cpu, make_plummer_sphere


def net_force_ratio(acc, mass):
    f = mass[:, None] * acc
    return np.linalg.norm(f.sum(axis=0)) / np.abs(f).sum()


@pytest.mark.parametrize("precision", ['float32', 'float64'])
def test_net_force_is_small(device, precision):
    N = 1000
    pos, _, mass = make_plummer_sphere(N, a=0.5, seed=42, r_max=3.0)
    with PyramidGravitySolver(N, device=device, precision=precision, grid_size=16, num_levels=4,
                              theta=0.5, gravity_constant=1.0, softening=0.01) as solver:
        solver.upload(pos, mass)
        acc = solver.compute_forces().astype(np.float64)

    ratio = net_force_ratio(acc, mass)
    exact = net_force_ratio(compute_direct_forces_cpu(pos, mass, 1.0, 0.01), mass)
    print(f"{precision}: pyramid {ratio:.2e}, direct {exact:.2e}")
    assert exact < 1e-10
    assert ratio < 5e-2

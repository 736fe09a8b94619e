"""
nbody_pyramid.reference
Brute-force O(N^2) gravity and test-particle generators, used to measure the
accuracy of the pyramid traversal.
"""
from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray

from ._backend import NUMBA_AVAILABLE
from .config import DEFAULT_GRAVITY_CONSTANT, DEFAULT_SOFTENING
from .errors import ConfigurationError

__all__ = ["compute_direct_forces_cpu", "make_plummer_sphere"]

if NUMBA_AVAILABLE:
    from numba import njit, prange

    @njit(parallel=True, fastmath=True, cache=True)
    def _direct_forces(pos: np.ndarray, mass: np.ndarray, eps2: float) -> np.ndarray:
        """
        Plummer-softened pairwise sum with Numba.

        Parameters
        ----------
        pos : np.ndarray, shape (N, 3)
            Particle positions.
        mass : np.ndarray, shape (N,)
            Particle masses.
        eps2 : float
            Squared softening length.

        Returns
        -------
        np.ndarray, shape (N, 3)
            Acceleration per unit gravitational constant.
        """
        N = pos.shape[0]
        acc = np.zeros((N, 3), dtype=np.float64)

        for i in prange(N):
            ax, ay, az = 0.0, 0.0, 0.0
            xi, yi, zi = pos[i, 0], pos[i, 1], pos[i, 2]
            for j in range(N):
                if i == j:
                    continue
                mj = mass[j]
                dx = pos[j, 0] - xi
                dy = pos[j, 1] - yi
                dz = pos[j, 2] - zi
                r2 = dx * dx + dy * dy + dz * dz + eps2
                inv_r = 1.0 / np.sqrt(r2)
                factor = mj * inv_r * inv_r * inv_r
                ax += factor * dx
                ay += factor * dy
                az += factor * dz
            acc[i, 0] = ax
            acc[i, 1] = ay
            acc[i, 2] = az
        return acc


def compute_direct_forces_cpu(
    pos: ArrayLike,
    mass: ArrayLike | float,
    gravity_constant: float = DEFAULT_GRAVITY_CONSTANT,
    softening: float = DEFAULT_SOFTENING,
) -> NDArray:
    """
    Exact softened accelerations by direct summation (Numba).

    Parameters
    ----------
    pos : array_like, shape (N, 3)
        Particle positions.
    mass : array_like, shape (N,) or scalar
        Particle masses. Particles with mass <= 0 exert no force.
    gravity_constant : float, optional
        Default: 3e-4.
    softening : float, optional
        Plummer softening length. Default: 0.2.

    Returns
    -------
    acc : ndarray, shape (N, 3)
        ``a_i = -G sum_j m_j (x_i - x_j) / (|x_i - x_j|^2 + eps^2)^{3/2}``.

    Examples
    --------
    >>> pos = np.random.randn(256, 3)
    >>> acc = compute_direct_forces_cpu(pos, np.ones(256), gravity_constant=1.0, softening=0.05)
    """
    if not NUMBA_AVAILABLE:
        raise ImportError("Numba required for CPU version. Install: pip install numba")

    pos = np.ascontiguousarray(pos, dtype=np.float64)
    if pos.ndim != 2 or pos.shape[1] != 3:
        raise ConfigurationError(f"pos must have shape (N, 3), got {pos.shape}")
    N = pos.shape[0]
    mass = np.asarray(mass, dtype=np.float64)
    if mass.ndim == 0:
        mass = np.full(N, float(mass))
    elif mass.shape != (N,):
        raise ConfigurationError(f"mass length ({mass.shape[0]}) does not match number of particles ({N})")
    mass = np.where(mass > 0, mass, 0.0)

    return gravity_constant * _direct_forces(pos, mass, float(softening) ** 2)


def make_plummer_sphere(
    N: int,
    M_total: float = 1.0,
    a: float = 1.0,
    seed: int = 42,
    r_max: float | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Generate a Plummer sphere in virial equilibrium (G = 1 units).

    Parameters
    ----------
    N : int
        Number of particles.
    M_total : float
        Total mass.
    a : float
        Plummer scale radius.
    seed : int
        Random seed.
    r_max : float, optional
        Radii beyond this are redrawn, which keeps the cloud inside a finite
        world box. Default: no truncation.

    Returns
    -------
    pos : np.ndarray, shape (N, 3)
    vel : np.ndarray, shape (N, 3)
    masses : np.ndarray, shape (N,)
        Equal masses.
    """
    rng = np.random.default_rng(seed)

    # Sample radii from Plummer profile
    r = np.empty(N)
    todo = np.arange(N)
    while todo.size:
        u = rng.random(todo.size)
        r[todo] = a / np.sqrt(u**(-2/3) - 1)
        todo = todo[r[todo] > r_max] if r_max is not None else todo[:0]

    # Isotropic angles
    theta = np.arccos(2 * rng.random(N) - 1)
    phi = 2 * np.pi * rng.random(N)
    pos = np.column_stack([
        r * np.sin(theta) * np.cos(phi),
        r * np.sin(theta) * np.sin(phi),
        r * np.cos(theta),
    ])

    # Velocities from distribution function (rejection sampling)
    v_esc = np.sqrt(2 * M_total / np.sqrt(r**2 + a**2))
    v_mag = np.zeros(N)
    for i in range(N):
        while True:
            q = rng.random()
            g = rng.random()
            if g < q**2 * (1 - q**2)**3.5:
                break
        v_mag[i] = q * v_esc[i]

    theta_v = np.arccos(2 * rng.random(N) - 1)
    phi_v = 2 * np.pi * rng.random(N)
    vel = np.column_stack([
        v_mag * np.sin(theta_v) * np.cos(phi_v),
        v_mag * np.sin(theta_v) * np.sin(phi_v),
        v_mag * np.cos(theta_v),
    ])

    masses = np.full(N, M_total / N)
    return pos, vel, masses

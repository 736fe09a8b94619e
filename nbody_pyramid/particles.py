"""
nbody_pyramid.particles

Host-side packing of particle data into the grid-addressable texture layout
used by every kernel, and unpacking of per-particle results.

Particle ``i`` lives at row ``i // width``, column ``i % width`` of a
``(height, width, 4)`` array. Slots past the particle count carry zero mass
and are ignored by the kernels.
"""
from __future__ import annotations

import math

import numpy as np
from numpy.typing import ArrayLike, NDArray

from .errors import ConfigurationError

__all__ = [
    "particle_texture_shape",
    "pack_particles",
    "pack_velocities",
    "unpack_vectors",
]


def particle_texture_shape(n_particles: int, width: int | None = None) -> tuple[int, int]:
    """Return ``(height, width)`` of the smallest near-square texture holding
    *n_particles* slots (or the given *width*)."""
    n_particles = int(n_particles)
    if n_particles < 1:
        raise ConfigurationError(f"particle count must be positive, got {n_particles}")
    if width is None:
        width = max(1, math.ceil(math.sqrt(n_particles)))
    width = int(width)
    if width < 1:
        raise ConfigurationError(f"texture width must be positive, got {width}")
    return math.ceil(n_particles / width), width


def _as_vectors(values: ArrayLike, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ConfigurationError(f"{name} must have shape (N, 3), got {arr.shape}")
    return arr


def pack_particles(
    pos: ArrayLike,
    mass: ArrayLike | float,
    texture_shape: tuple[int, int] | None = None,
    dtype=np.float32,
) -> NDArray:
    """
    Pack positions and masses into a ``(height, width, 4)`` texture.

    Parameters
    ----------
    pos : array_like, shape (N, 3)
        Particle positions.
    mass : array_like, shape (N,) or scalar
        Particle masses. A scalar is broadcast to all particles.
    texture_shape : (height, width), optional
        Target texture; defaults to :func:`particle_texture_shape`.
    dtype : numpy dtype, optional
        Storage type, float32 by default.

    Returns
    -------
    texture : np.ndarray, shape (height, width, 4)
        ``(x, y, z, mass)`` per slot, zero in unused slots.
    """
    pos = _as_vectors(pos, "pos")
    n = pos.shape[0]
    mass = np.asarray(mass, dtype=float)
    if mass.ndim == 0:
        mass = np.full(n, float(mass))
    elif mass.shape != (n,):
        raise ConfigurationError(f"mass must have length N={n}, got {mass.shape}")

    h, w = texture_shape if texture_shape is not None else particle_texture_shape(n)
    if n > h * w:
        raise ConfigurationError(f"particle count {n} exceeds texture capacity {h * w}")

    flat = np.zeros((h * w, 4), dtype=dtype)
    flat[:n, :3] = pos
    flat[:n, 3] = mass
    return flat.reshape(h, w, 4)


def pack_velocities(
    vel: ArrayLike | None,
    n_particles: int,
    texture_shape: tuple[int, int],
    dtype=np.float32,
) -> NDArray:
    """Pack velocities into a ``(height, width, 4)`` texture (``w`` = 0).

    *None* gives a zero velocity field.
    """
    h, w = texture_shape
    flat = np.zeros((h * w, 4), dtype=dtype)
    if vel is not None:
        vel = _as_vectors(vel, "vel")
        if vel.shape[0] != n_particles:
            raise ConfigurationError(
                f"vel length ({vel.shape[0]}) does not match number of particles ({n_particles})"
            )
        flat[:n_particles, :3] = vel
    return flat.reshape(h, w, 4)


def unpack_vectors(texture, n_particles: int) -> NDArray:
    """Return the ``(n_particles, 3)`` xyz channels of a host texture."""
    arr = np.asarray(texture)
    return arr.reshape(-1, 4)[:n_particles, :3].copy()

"""
nbody_pyramid.solver

``PyramidGravitySolver`` wires the passes into one gravity step:

    reduce_bounds -> aggregate -> build_pyramid -> traverse [-> integrate]

It owns the particle, velocity and force textures (unless the caller hands
its own arrays in) and every pass it creates. Passes only enqueue work;
``read_*`` methods synchronise through the host readback.
"""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray

from ._backend import allocate, dtype_for, resolve_device, to_device, to_host
from .aggregate import Aggregator
from .bounds import BoundsReduce
from .config import (
    DEFAULT_GRAVITY_CONSTANT,
    DEFAULT_GRID_SIZE,
    DEFAULT_NUM_LEVELS,
    DEFAULT_SOFTENING,
    DEFAULT_THETA,
    as_world_bounds,
    make_level_configs,
    validate_level_configs,
    validate_precision,
)
from .diagnostics import level_statistics
from .errors import ConfigurationError, MissingResourceError
from .integrate import DEFAULT_DT, DEFAULT_MAX_ACCEL, DEFAULT_MAX_SPEED, EulerIntegrator
from .particles import pack_particles, pack_velocities, particle_texture_shape, unpack_vectors
from .pyramid import build_pyramid_chain, make_pyramid_builds
from .resources import adopt
from .traversal import QuadrupoleTraversal

logger = logging.getLogger(__name__)

__all__ = ["PyramidGravitySolver"]


class PyramidGravitySolver:
    """
    Octree Barnes-Hut gravity over a fixed-capacity particle texture.

    Parameters
    ----------
    particle_count : int
        Number of particles (texture capacity may be slightly larger).
    level_configs : sequence of LevelConfig, optional
        Explicit level chain, finest first. When omitted a halving chain is
        built from *grid_size*, *num_levels* and *slices_per_row*.
    grid_size, num_levels, slices_per_row : int, optional
        Defaults: 64, 4 and 8 for a 64 grid.
    world_bounds : optional
        Fallback box when reduced bounds are unavailable.
        Default: ``(-4, -4, 0) .. (4, 4, 2)``.
    theta, gravity_constant, softening : float, optional
        Defaults: 0.5, 3e-4, 0.2.
    use_occupancy, use_quadrupole : bool, optional
        Defaults: False, True.
    device : {'auto', 'cpu', 'gpu', 'gpu:N'} or int, optional
    precision : {'float32', 'float64'}, optional
    accumulation : {'auto', 'float', 'fixed'}, optional
    texture_width : int, optional
        Width of the particle texture. Default: near-square.
    positions, velocities, forces : array, shape (height, width, 4), optional
        Caller-owned textures to borrow instead of allocating.
    dt, damping, max_speed, max_accel : float, optional
        Integrator parameters. Defaults: 1/60, 0, 2, 1.
    bounds_update_interval : int, optional
        ``step()`` recomputes bounds every this many steps; 0 never does,
        leaving the world-bounds hint in use. Default: 1.
    verbose : bool, optional
        Log progress at INFO through a ``[LEVEL] message`` stream handler.

    Examples
    --------
    >>> solver = PyramidGravitySolver(1000, grid_size=16, num_levels=3, device='cpu')
    >>> solver.upload(pos, mass)
    >>> acc = solver.compute_forces()
    >>> solver.dispose()
    """

    def __init__(
        self,
        particle_count: int,
        level_configs=None,
        *,
        grid_size: int = DEFAULT_GRID_SIZE,
        num_levels: int = DEFAULT_NUM_LEVELS,
        slices_per_row: Optional[int] = None,
        world_bounds=None,
        theta: float = DEFAULT_THETA,
        gravity_constant: float = DEFAULT_GRAVITY_CONSTANT,
        softening: float = DEFAULT_SOFTENING,
        use_occupancy: bool = False,
        use_quadrupole: bool = True,
        device='auto',
        precision: str = 'float32',
        accumulation: str = 'auto',
        texture_width: Optional[int] = None,
        positions=None,
        velocities=None,
        forces=None,
        dt: float = DEFAULT_DT,
        damping: float = 0.0,
        max_speed: float = DEFAULT_MAX_SPEED,
        max_accel: float = DEFAULT_MAX_ACCEL,
        bounds_update_interval: int = 1,
        verbose: bool = False,
    ):
        # --- Logger ---
        self.logger = logger
        if verbose and not logger.hasHandlers():
            handler = logging.StreamHandler()
            handler.setLevel(logging.INFO)
            handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
            logger.addHandler(handler)
        if verbose:
            logger.setLevel(logging.INFO)

        # --- Configuration ---
        self.particle_count = int(particle_count)
        self.texture_shape = particle_texture_shape(self.particle_count, texture_width)
        if level_configs is None:
            level_configs = make_level_configs(grid_size, num_levels, slices_per_row)
        self.level_configs = validate_level_configs(level_configs)
        self.device = resolve_device(device)
        self.precision = validate_precision(precision)
        self.world_bounds = as_world_bounds(world_bounds)
        if int(bounds_update_interval) < 0:
            raise ConfigurationError(
                f"bounds_update_interval must be non-negative, got {bounds_update_interval}"
            )
        self.bounds_update_interval = int(bounds_update_interval)
        self.step_count = 0
        self._disposed = False

        dtype = dtype_for(self.precision)
        shape = self.texture_shape + (4,)
        self._textures = {
            name: adopt(value, lambda name=name: allocate(self.device, shape, dtype, name))
            for name, value in (("positions", positions), ("velocities", velocities), ("forces", forces))
        }
        common = dict(device=self.device, precision=self.precision)

        # --- Passes ---
        self.bounds_pass = BoundsReduce(self.texture_shape, in_position=self.positions, **common)
        self.aggregator = Aggregator(
            self.level_configs[0], self.texture_shape,
            in_position=self.positions, in_bounds=self.bounds_pass.out_bounds,
            num_levels=len(self.level_configs), world_bounds=self.world_bounds,
            accumulation=accumulation, **common,
        )
        agg = self.aggregator
        self.pyramid_builds = make_pyramid_builds(
            self.level_configs, agg.out_a0, agg.out_a1, agg.out_a2, agg.out_occupancy, **common)
        self.traversal = QuadrupoleTraversal(
            self.level_configs, self.texture_shape,
            in_position=self.positions, in_bounds=self.bounds_pass.out_bounds,
            in_levels_a0=agg.out_a0, in_levels_a1=agg.out_a1, in_levels_a2=agg.out_a2,
            in_occupancy=agg.out_occupancy, out_force=self.forces,
            world_bounds=self.world_bounds, theta=theta, gravity_constant=gravity_constant,
            softening=softening, use_occupancy=use_occupancy, use_quadrupole=use_quadrupole,
            **common,
        )
        self.integrator = EulerIntegrator(
            self.texture_shape,
            in_position=self.positions, in_velocity=self.velocities, in_force=self.forces,
            out_position=self.positions, out_velocity=self.velocities,
            dt=dt, damping=damping, max_speed=max_speed, max_accel=max_accel, **common,
        )

        logger.info("PyramidGravitySolver: N=%d, texture %dx%d, levels %s, device %s (%s)",
                    self.particle_count, *self.texture_shape,
                    [c.grid_size for c in self.level_configs], self.device, self.precision)
        if self.aggregator.degraded_accuracy:
            logger.info("Aggregation uses fixed-point accumulation")

    # ------------------------------------------------------------------
    # textures
    # ------------------------------------------------------------------

    @property
    def positions(self):
        return self._textures["positions"].array

    @property
    def velocities(self):
        return self._textures["velocities"].array

    @property
    def forces(self):
        return self._textures["forces"].array

    @property
    def bounds(self):
        return self.bounds_pass.out_bounds

    @property
    def kernels(self) -> list:
        return [self.bounds_pass, self.aggregator, *self.pyramid_builds,
                self.traversal, self.integrator]

    @property
    def degraded_accuracy(self) -> bool:
        return self.aggregator.degraded_accuracy

    def upload(self, pos: ArrayLike, mass: ArrayLike | float, vel: ArrayLike | None = None) -> None:
        """
        Copy particle data into the position (and velocity) textures.

        Parameters
        ----------
        pos : array_like, shape (N, 3)
        mass : array_like, shape (N,) or scalar
        vel : array_like, shape (N, 3), optional
            When omitted the velocity texture is left unchanged.
        """
        self._check_alive()
        pos = np.asarray(pos)
        if pos.ndim != 2 or pos.shape[0] != self.particle_count:
            raise ConfigurationError(
                f"expected positions for {self.particle_count} particles, got shape {pos.shape}"
            )
        dtype = dtype_for(self.precision)
        host = pack_particles(pos, mass, self.texture_shape, dtype=dtype)
        self.positions[...] = to_device(self.device, host, dtype, "positions")
        if vel is not None:
            host_vel = pack_velocities(vel, self.particle_count, self.texture_shape, dtype=dtype)
            self.velocities[...] = to_device(self.device, host_vel, dtype, "velocities")

    # ------------------------------------------------------------------
    # passes, in the order they must run
    # ------------------------------------------------------------------

    def reduce_bounds(self) -> None:
        self.bounds_pass.run()

    def aggregate(self) -> None:
        self.aggregator.run()

    def build_pyramid(self, level: Optional[int] = None) -> None:
        """Build one level transition (``level -> level + 1``), or all when
        *level* is None."""
        if level is None:
            build_pyramid_chain(self.pyramid_builds)
            return
        if not 0 <= level < len(self.pyramid_builds):
            raise ConfigurationError(
                f"level must be in [0, {len(self.pyramid_builds) - 1}], got {level}"
            )
        self.pyramid_builds[level].run()

    def traverse(self) -> None:
        self.traversal.run()

    def integrate(self) -> None:
        self.integrator.run()

    def compute_forces(self) -> NDArray:
        """Run bounds, aggregation, pyramid and traversal; return ``(N, 3)``
        accelerations on the host."""
        self.reduce_bounds()
        self.aggregate()
        self.build_pyramid()
        self.traverse()
        return self.read_forces()

    def step(self) -> None:
        """Advance the particles by one time step."""
        interval = self.bounds_update_interval
        if interval and self.step_count % interval == 0:
            self.reduce_bounds()
        self.aggregate()
        self.build_pyramid()
        self.traverse()
        self.integrate()
        self.step_count += 1
        if self.step_count % 100 == 0:
            logger.info("step %d", self.step_count)

    # ------------------------------------------------------------------
    # readback
    # ------------------------------------------------------------------

    def read_forces(self) -> NDArray:
        self._check_alive()
        return unpack_vectors(to_host(self.forces), self.particle_count)

    def read_positions(self) -> NDArray:
        self._check_alive()
        return unpack_vectors(to_host(self.positions), self.particle_count)

    def read_velocities(self) -> NDArray:
        self._check_alive()
        return unpack_vectors(to_host(self.velocities), self.particle_count)

    def read_bounds(self) -> Optional[tuple[np.ndarray, np.ndarray]]:
        """Reduced ``(min, max)`` without margin, or None when no particle was
        valid at the last reduction."""
        self._check_alive()
        b = to_host(self.bounds)
        if not (b[0, 3] > 0.5 and b[1, 3] > 0.5):
            return None
        return b[0, :3].astype(float), b[1, :3].astype(float)

    def level_statistics(self) -> list[dict]:
        self._check_alive()
        return level_statistics(self.aggregator.out_a0, self.level_configs)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._disposed:
            raise MissingResourceError(type(self).__name__, list(self._textures))

    def dispose(self) -> None:
        """Release every pass and owned texture. Safe to call repeatedly."""
        if self._disposed:
            return
        for kernel in self.kernels:
            kernel.dispose()
        for res in self._textures.values():
            res.release()
        self._disposed = True
        logger.debug("PyramidGravitySolver disposed")

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()

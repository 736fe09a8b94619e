"""
nbody_pyramid.traversal

Barnes-Hut force evaluation over the moment pyramid with a quadrupole
correction.

For each particle the walk starts from every voxel of the coarsest level and
descends depth first. A voxel is accepted when it is not the particle's own
voxel at that level and ``cell_size / (dist + 1e-6) < theta`` (at level 0,
whenever it is not the own voxel); rejected voxels above level 0 are refined
into their 8 children. Every mass element is therefore counted exactly once,
except the particle's own level-0 voxel, which is never counted.

An accepted voxel of mass ``M`` and centre of mass ``c`` contributes, with
``r = p - c`` and ``d^2 = |r|^2 + eps^2``,

    a = -G M r / d^3
        + G [3 Q r + 1.5 tr(Q) r - 7.5 (r.Q.r) r / d^2] / d^5   (level > 0)

where ``Q_ij = S_ij - c_i c_j M`` is the second moment about the centre of
mass, recovered from A1/A2 by the parallel-axis theorem.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from . import cpu_kernels
from ._backend import allocate, dtype_for, launch, resolve_device, to_device
from .config import (
    DEFAULT_GRAVITY_CONSTANT,
    DEFAULT_SOFTENING,
    DEFAULT_THETA,
    TEXTURE_UNIT_BUDGET,
    TRAVERSAL_BINDINGS,
    as_world_bounds,
    validate_level_configs,
    validate_physics,
    validate_precision,
)
from .errors import ConfigurationError
from .resources import Kernel

logger = logging.getLogger(__name__)

__all__ = ["QuadrupoleTraversal", "MIN_SOFTENING"]

MIN_SOFTENING = 1e-6


class QuadrupoleTraversal(Kernel):
    """
    Per-particle gravitational acceleration from the moment pyramid.

    Parameters
    ----------
    level_configs : sequence of LevelConfig
        Level chain, finest first; at most ``MAX_LEVELS`` levels.
    particle_texture_shape : (height, width)
    in_position : array, shape (height, width, 4), optional
    in_bounds : array, shape (2, 4), optional
        Reduced bounds; *world_bounds* is used when absent or invalid.
    in_levels_a0, in_levels_a1, in_levels_a2 : array, shape (L, H0, W0, 4), optional
        Level-indexed moments.
    in_occupancy : array, shape (L, H0, W0), optional
        Required only when *use_occupancy* is set.
    out_force : array, shape (height, width, 4), optional
        Receives ``(ax, ay, az, 0)``; allocated and owned when omitted.
    world_bounds : optional
        Fallback box. Default: ``DEFAULT_WORLD_BOUNDS``.
    theta : float, optional
        Opening angle. Default: 0.5.
    gravity_constant : float, optional
        Default: 3e-4.
    softening : float, optional
        Plummer softening length, floored at 1e-6. Default: 0.2.
    use_occupancy : bool, optional
        Skip voxels whose occupancy texel is below 0.5. Never changes the
        result, only the work done. Default: False.
    use_quadrupole : bool, optional
        Add the quadrupole term for accepted voxels above level 0.
        Default: True.
    device, precision : optional

    Notes
    -----
    The moments are bound as three level-indexed arrays, so the number of
    bindings is fixed (``TRAVERSAL_BINDINGS``) whatever the number of
    levels. The level count is bounded by the size of the per-level tables
    and of the traversal stack.
    """

    _slots = ("in_position", "in_bounds", "in_levels_a0", "in_levels_a1", "in_levels_a2",
              "in_occupancy", "out_force")
    _required = ("in_position", "in_levels_a0", "in_levels_a1", "in_levels_a2", "out_force")

    def __init__(self, level_configs: Sequence, particle_texture_shape,
                 in_position=None, in_bounds=None,
                 in_levels_a0=None, in_levels_a1=None, in_levels_a2=None,
                 in_occupancy=None, out_force=None, *,
                 world_bounds=None,
                 theta: float = DEFAULT_THETA,
                 gravity_constant: float = DEFAULT_GRAVITY_CONSTANT,
                 softening: float = DEFAULT_SOFTENING,
                 use_occupancy: bool = False,
                 use_quadrupole: bool = True,
                 device='auto', precision='float32'):
        super().__init__(resolve_device(device), validate_precision(precision))
        if TRAVERSAL_BINDINGS > TEXTURE_UNIT_BUDGET:  # pragma: no cover - static layout
            raise ConfigurationError("traversal bindings exceed the texture-unit budget")

        self.level_configs = validate_level_configs(level_configs)
        self.num_levels = len(self.level_configs)
        self.texture_shape = tuple(int(v) for v in particle_texture_shape)
        base = self.level_configs[0]
        self.layer_shape = (base.texture_height, base.texture_width)
        self.world_bounds = as_world_bounds(world_bounds)
        self.theta, self.gravity_constant, self.softening = validate_physics(
            theta, gravity_constant, softening)
        self.use_occupancy = bool(use_occupancy)
        self.use_quadrupole = bool(use_quadrupole)

        dtype = dtype_for(self.precision)
        self._bind("in_position", in_position)
        self._bind("in_bounds", in_bounds)
        self._bind("in_levels_a0", in_levels_a0)
        self._bind("in_levels_a1", in_levels_a1)
        self._bind("in_levels_a2", in_levels_a2)
        self._bind("in_occupancy", in_occupancy)
        self._bind("out_force", out_force,
                   lambda: allocate(self.device, self.texture_shape + (4,), dtype, "force"))

        table_type = np.int32 if self.device.is_gpu else np.int64
        self._grids = to_device(self.device, [c.grid_size for c in self.level_configs],
                                table_type, "grid table")
        self._sprs = to_device(self.device, [c.slices_per_row for c in self.level_configs],
                               table_type, "slices table")
        self._hint = to_device(self.device, self.world_bounds.as_texture(dtype), dtype, "world bounds")
        # Stand-in bound when no mask is wired; never read with use_occupancy off.
        self._no_occupancy = allocate(self.device, (1, 1, 1), dtype, "empty occupancy")
        logger.debug("QuadrupoleTraversal: %d level(s) %s, theta=%g, quadrupole=%s, occupancy=%s",
                     self.num_levels, [c.grid_size for c in self.level_configs],
                     self.theta, self.use_quadrupole, self.use_occupancy)

    @property
    def effective_softening(self) -> float:
        return max(self.softening, MIN_SOFTENING)

    def run(self) -> None:
        self._require(*(("in_occupancy",) if self.use_occupancy else ()))
        a0 = self.in_levels_a0
        layers = a0.shape[0]
        if layers < self.num_levels:
            raise ConfigurationError(
                f"QuadrupoleTraversal: level arrays hold {layers} layer(s), "
                f"{self.num_levels} level(s) configured"
            )
        self._check("in_position", self.texture_shape + (4,))
        self._check("in_bounds", (2, 4))
        for name in ("in_levels_a0", "in_levels_a1", "in_levels_a2"):
            self._check(name, (layers,) + self.layer_shape + (4,))
        self._check("in_occupancy", (layers,) + self.layer_shape)
        self._check("out_force", self.texture_shape + (4,))

        if self._resources["in_bounds"].is_empty:
            bounds, use_bounds = self._hint, False
        else:
            bounds, use_bounds = self.in_bounds, True
        occ = self.in_occupancy
        if occ is None:
            occ = self._no_occupancy

        if self.device.is_gpu:
            self._run_gpu(bounds, use_bounds, occ)
        else:
            self._run_cpu(bounds, use_bounds, occ)
        self.render_count += 1

    def _run_gpu(self, bounds, use_bounds, occ):
        n_slots = self.texture_shape[0] * self.texture_shape[1]
        h0, w0 = self.layer_shape
        T = dtype_for(self.precision)
        launch(self.device, self.precision, 'traverse_quadrupole', n_slots,
               (self.in_position, np.int32(n_slots), bounds, self._hint, np.int32(use_bounds),
                self.in_levels_a0, self.in_levels_a1, self.in_levels_a2, occ,
                self._grids, self._sprs, np.int32(self.num_levels),
                np.int32(w0), np.int64(h0 * w0),
                T(self.theta), T(self.gravity_constant), T(self.effective_softening),
                np.int32(self.use_occupancy), np.int32(self.use_quadrupole),
                self.out_force))

    def _run_cpu(self, bounds, use_bounds, occ):
        lo, ext, max_ext = cpu_kernels.resolve_world_box(bounds, self._hint, use_bounds)
        cpu_kernels.traverse_quadrupole(
            self.in_position.reshape(-1, 4), lo, ext, max_ext,
            self.in_levels_a0, self.in_levels_a1, self.in_levels_a2, occ,
            self._grids, self._sprs,
            self.theta, self.gravity_constant, self.effective_softening,
            self.use_occupancy, self.use_quadrupole,
            self.out_force.reshape(-1, 4),
        )

    def _release_scratch(self) -> None:
        self._grids = self._sprs = self._hint = self._no_occupancy = None

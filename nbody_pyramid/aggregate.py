"""
nbody_pyramid.aggregate

Level-0 moment aggregation: every particle adds its mass, first and second
moments to the voxel that contains it.
"""
from __future__ import annotations

import logging
import warnings

import numpy as np

from . import cpu_kernels
from ._backend import (
    allocate,
    dtype_for,
    launch,
    resolve_device,
    supports_float_atomics,
    to_device,
)
from .config import ACCUMULATION_MODES, LevelConfig, as_world_bounds, validate_precision
from .errors import ConfigurationError
from .pyramid import write_level_occupancy
from .resources import Kernel

logger = logging.getLogger(__name__)

__all__ = ["Aggregator"]


class Aggregator(Kernel):
    """
    Deposit particles into the level-0 voxel grid.

    For each particle with positive mass the voxel index is
    ``floor(clamp((p - min) / extent, 0, 0.9999) * grid_size)`` and the voxel
    receives

    * A0 += (m x, m y, m z, m)
    * A1 += (m x^2, m y^2, m z^2, m x y)
    * A2 += (m x z, m y z, 0, 0)

    with genuinely additive accumulation, so coincident particles all count.
    Level 0 of the outputs is cleared first; other levels are left alone.
    The level-0 occupancy mask is written afterwards.

    Parameters
    ----------
    level_config : LevelConfig
        Geometry of level 0.
    particle_texture_shape : (height, width)
    in_position : array, shape (height, width, 4), optional
    in_bounds : array, shape (2, 4), optional
        Reduced bounds. When absent or flagged invalid, *world_bounds* is used.
    out_a0, out_a1, out_a2 : array, shape (L, H0, W0, 4), optional
        Level-indexed moment arrays; allocated with *num_levels* layers and
        owned when omitted.
    out_occupancy : array, shape (L, H0, W0), optional
    num_levels : int, optional
        Layers of the arrays allocated here. Default: 1.
    world_bounds : WorldBounds, tuple or dict, optional
        Fallback box. Default: ``DEFAULT_WORLD_BOUNDS``.
    accumulation : {'auto', 'float', 'fixed'}, optional
        ``'fixed'`` accumulates 64-bit integers scaled by 2**24 and converts
        back afterwards; ``'auto'`` picks it only when the device lacks float
        atomics for the requested precision. Fixed-point sets
        :attr:`degraded_accuracy` and warns.
    device, precision : optional
    """

    _slots = ("in_position", "in_bounds", "out_a0", "out_a1", "out_a2", "out_occupancy")
    _required = ("in_position", "out_a0", "out_a1", "out_a2", "out_occupancy")

    def __init__(self, level_config: LevelConfig, particle_texture_shape,
                 in_position=None, in_bounds=None,
                 out_a0=None, out_a1=None, out_a2=None, out_occupancy=None, *,
                 num_levels: int = 1, world_bounds=None, accumulation: str = 'auto',
                 device='auto', precision='float32'):
        super().__init__(resolve_device(device), validate_precision(precision))
        self.level_config = level_config
        self.texture_shape = tuple(int(v) for v in particle_texture_shape)
        self.world_bounds = as_world_bounds(world_bounds)
        if int(num_levels) < 1:
            raise ConfigurationError(f"num_levels must be positive, got {num_levels}")
        self.layer_shape = (level_config.texture_height, level_config.texture_width)

        dtype = dtype_for(self.precision)
        moments_shape = (int(num_levels),) + self.layer_shape + (4,)
        occupancy_shape = (int(num_levels),) + self.layer_shape

        self._bind("in_position", in_position)
        self._bind("in_bounds", in_bounds)
        for name, value in (("out_a0", out_a0), ("out_a1", out_a1), ("out_a2", out_a2)):
            self._bind(name, value,
                       lambda name=name: allocate(self.device, moments_shape, dtype, name))
        self._bind("out_occupancy", out_occupancy,
                   lambda: allocate(self.device, occupancy_shape, dtype, "occupancy"))

        self.accumulation = self._resolve_accumulation(accumulation)
        self.degraded_accuracy = self.accumulation == 'fixed'
        if self.degraded_accuracy:
            warnings.warn(
                "Aggregator: using 64-bit fixed-point accumulation (resolution 2**-24) "
                f"on {self.device} for {self.precision}; voxel moments are quantised",
                RuntimeWarning,
                stacklevel=2,
            )

        self._hint = to_device(self.device, self.world_bounds.as_texture(dtype), dtype, "world bounds")
        self._fixed_acc = None
        logger.debug("Aggregator: grid %d, %s accumulation on %s",
                     level_config.grid_size, self.accumulation, self.device)

    def _resolve_accumulation(self, accumulation: str) -> str:
        mode = str(accumulation).lower()
        if mode not in ACCUMULATION_MODES:
            raise ConfigurationError(
                f"accumulation must be one of {list(ACCUMULATION_MODES)}, got {accumulation!r}"
            )
        native = supports_float_atomics(self.device, self.precision)
        if mode == 'auto':
            return 'float' if native else 'fixed'
        if mode == 'float' and not native:
            raise ConfigurationError(
                f"{self.device} has no atomic add for {self.precision}; "
                "use accumulation='fixed' or 'auto'"
            )
        return mode

    def _bounds_args(self):
        if self._resources["in_bounds"].is_empty:
            return self._hint, False
        return self.in_bounds, True

    def run(self) -> None:
        self._require()
        a0 = self.out_a0
        layers = a0.shape[0]
        self._check("in_position", self.texture_shape + (4,))
        self._check("in_bounds", (2, 4))
        for name in ("out_a0", "out_a1", "out_a2"):
            self._check(name, (layers,) + self.layer_shape + (4,))
        self._check("out_occupancy", (layers,) + self.layer_shape)

        a1, a2, occ = self.out_a1, self.out_a2, self.out_occupancy
        for arr in (a0, a1, a2):
            arr[0] = 0
        occ[0] = 0

        bounds, use_bounds = self._bounds_args()
        cfg = self.level_config
        g, spr = cfg.grid_size, cfg.slices_per_row
        if self.device.is_gpu:
            self._run_gpu(bounds, use_bounds, g, spr)
        else:
            self._run_cpu(bounds, use_bounds, g, spr)

        write_level_occupancy(self.device, self.precision, a0, occ, 0, cfg)
        self.render_count += 1

    def _run_gpu(self, bounds, use_bounds, g, spr):
        pos = self.in_position
        n_slots = self.texture_shape[0] * self.texture_shape[1]
        w0 = self.layer_shape[1]
        common = (pos, np.int32(n_slots), bounds, self._hint, np.int32(use_bounds),
                  np.int32(g), np.int32(spr), np.int32(w0))

        if self.accumulation == 'float':
            launch(self.device, self.precision, 'aggregate_moments', n_slots,
                   common + (self.out_a0, self.out_a1, self.out_a2))
            return

        n_values = self.layer_shape[0] * self.layer_shape[1] * 4
        if self._fixed_acc is None:
            self._fixed_acc = allocate(self.device, (3 * n_values,), np.int64, "fixed-point accumulator")
        acc = self._fixed_acc
        acc.fill(0)
        launch(self.device, self.precision, 'aggregate_moments_fixed', n_slots,
               common + (acc, np.int64(n_values)))
        launch(self.device, self.precision, 'fixed_to_moments', n_values,
               (acc, np.int64(n_values), self.out_a0, self.out_a1, self.out_a2))

    def _run_cpu(self, bounds, use_bounds, g, spr):
        pos = self.in_position.reshape(-1, 4)
        lo, ext, _ = cpu_kernels.resolve_world_box(bounds, self._hint, use_bounds)

        if self.accumulation == 'float':
            cpu_kernels.aggregate_moments(pos, lo, ext, g, spr, self.out_a0, self.out_a1, self.out_a2)
            return

        acc = np.zeros((3,) + self.layer_shape + (4,), dtype=np.int64)
        cpu_kernels.aggregate_moments_fixed(pos, lo, ext, g, spr, acc)
        for k, out in enumerate((self.out_a0, self.out_a1, self.out_a2)):
            out[0] = acc[k] / cpu_kernels.FIXED_SCALE

    def _release_scratch(self) -> None:
        self._fixed_acc = None
        self._hint = None

"""
nbody_pyramid.pyramid

Coarser levels of the moment pyramid and the per-level occupancy mask.

Level ``l + 1`` is built from level ``l`` by summing the 8 children of every
parent voxel. All levels live in the same level-indexed arrays
(``(L, H0, W0, 4)`` moments, ``(L, H0, W0)`` occupancy), so a build reads
one layer and writes the next.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from . import cpu_kernels
from ._backend import Device, allocate, dtype_for, launch, resolve_device
from .config import LevelConfig, validate_level_configs, validate_precision
from .errors import ConfigurationError
from .resources import Kernel

logger = logging.getLogger(__name__)

__all__ = [
    "OccupancyMask",
    "PyramidBuild",
    "make_pyramid_builds",
    "build_pyramid_chain",
    "write_level_occupancy",
]


def write_level_occupancy(device: Device, precision: str, a0, occupancy,
                          level: int, config: LevelConfig) -> None:
    """Set ``occupancy[level]`` to 1 where the voxel mass is positive, else 0."""
    g, spr = config.grid_size, config.slices_per_row
    if device.is_gpu:
        _, h0, w0 = occupancy.shape
        launch(device, precision, 'level_occupancy', g ** 3,
               (a0, occupancy, np.int32(level), np.int32(g), np.int32(spr),
                np.int32(w0), np.int64(h0 * w0)))
    else:
        cpu_kernels.level_occupancy(a0, occupancy, level, g, spr)


class OccupancyMask(Kernel):
    """
    Materialise the occupancy mask from the A0 moments.

    An occupancy texel is 1 exactly when its voxel holds positive mass, so
    pruning with it never drops a contributing voxel. The aggregator and
    :class:`PyramidBuild` already write the mask as they go; this pass
    recomputes it for arrays filled by other means.

    Parameters
    ----------
    level_configs : sequence of LevelConfig
        The level chain, finest first.
    in_a0 : array, shape (L, H0, W0, 4), optional
    out_occupancy : array, shape (L, H0, W0), optional
        Allocated and owned when omitted.
    """

    _slots = ("in_a0", "out_occupancy")
    _required = ("in_a0", "out_occupancy")

    def __init__(self, level_configs: Sequence, in_a0=None, out_occupancy=None, *,
                 device='auto', precision='float32'):
        super().__init__(resolve_device(device), validate_precision(precision))
        self.level_configs = validate_level_configs(level_configs)
        base = self.level_configs[0]
        self.layer_shape = (base.texture_height, base.texture_width)
        shape = (len(self.level_configs),) + self.layer_shape

        self._bind("in_a0", in_a0)
        self._bind("out_occupancy", out_occupancy,
                   lambda: allocate(self.device, shape, dtype_for(self.precision), "occupancy"))

    def run(self, level: int | None = None) -> None:
        """Recompute one level, or every level when *level* is None."""
        self._require()
        n_levels = len(self.level_configs)
        self._check("in_a0", (n_levels,) + self.layer_shape + (4,))
        self._check("out_occupancy", (n_levels,) + self.layer_shape)
        levels = range(n_levels) if level is None else [level]
        for lvl in levels:
            write_level_occupancy(self.device, self.precision, self.in_a0,
                                  self.out_occupancy, lvl, self.level_configs[lvl])
        self.render_count += 1


class PyramidBuild(Kernel):
    """
    Build level ``child_level + 1`` from level ``child_level``.

    Every parent voxel receives the exact sum of its 8 children for A0, A1 and
    A2, and its occupancy texel is rewritten. The pass is stateless and sums
    in a fixed order, so re-running it gives bit-identical output.

    Parameters
    ----------
    child_config, parent_config : LevelConfig
        Geometry of the two levels; the parent grid must be half the child's.
    child_level : int
        Layer index of the child level.
    levels_a0, levels_a1, levels_a2 : array, shape (L, H0, W0, 4)
        Level-indexed moment arrays, read at ``child_level`` and written at
        ``child_level + 1``. Always borrowed.
    occupancy : array, shape (L, H0, W0)
        Level-indexed occupancy, written at ``child_level + 1``. Borrowed.
    """

    _slots = ("levels_a0", "levels_a1", "levels_a2", "occupancy")
    _required = ("levels_a0", "levels_a1", "levels_a2", "occupancy")

    def __init__(self, child_config: LevelConfig, parent_config: LevelConfig, child_level: int,
                 levels_a0=None, levels_a1=None, levels_a2=None, occupancy=None, *,
                 device='auto', precision='float32'):
        super().__init__(resolve_device(device), validate_precision(precision))
        if parent_config.grid_size * 2 != child_config.grid_size:
            raise ConfigurationError(
                f"parent grid_size {parent_config.grid_size} is not half of child "
                f"grid_size {child_config.grid_size}"
            )
        if child_level < 0:
            raise ConfigurationError(f"child_level must be non-negative, got {child_level}")
        self.child_config = child_config
        self.parent_config = parent_config
        self.child_level = int(child_level)

        self._bind("levels_a0", levels_a0)
        self._bind("levels_a1", levels_a1)
        self._bind("levels_a2", levels_a2)
        self._bind("occupancy", occupancy)

    def run(self) -> None:
        self._require()
        a0 = self.levels_a0
        layers, h0, w0, _ = a0.shape
        if layers < self.child_level + 2:
            raise ConfigurationError(
                f"PyramidBuild: level arrays hold {layers} layer(s), "
                f"level {self.child_level + 1} needs {self.child_level + 2}"
            )
        for name in ("levels_a0", "levels_a1", "levels_a2"):
            self._check(name, (layers, h0, w0, 4))
        self._check("occupancy", (layers, h0, w0))

        c, p = self.child_config, self.parent_config
        if self.device.is_gpu:
            launch(self.device, self.precision, 'pyramid_build_level', p.voxel_count,
                   (a0, self.levels_a1, self.levels_a2,
                    a0, self.levels_a1, self.levels_a2, self.occupancy,
                    np.int32(self.child_level), np.int32(c.grid_size), np.int32(c.slices_per_row),
                    np.int32(p.grid_size), np.int32(p.slices_per_row),
                    np.int32(w0), np.int64(h0 * w0)))
        else:
            cpu_kernels.pyramid_build_level(
                a0, self.levels_a1, self.levels_a2,
                a0, self.levels_a1, self.levels_a2, self.occupancy,
                self.child_level, c.grid_size, c.slices_per_row,
                p.grid_size, p.slices_per_row,
            )
        self.render_count += 1


def make_pyramid_builds(level_configs: Sequence, levels_a0, levels_a1, levels_a2, occupancy, *,
                        device='auto', precision='float32') -> list[PyramidBuild]:
    """One :class:`PyramidBuild` per level transition, finest first."""
    levels = validate_level_configs(level_configs)
    return [
        PyramidBuild(levels[i], levels[i + 1], i,
                     levels_a0, levels_a1, levels_a2, occupancy,
                     device=device, precision=precision)
        for i in range(len(levels) - 1)
    ]


def build_pyramid_chain(builds: Sequence[PyramidBuild]) -> None:
    """Run the builds in order, level 0 -> 1 -> ... -> L-1."""
    for build in sorted(builds, key=lambda b: b.child_level):
        build.run()
    logger.debug("pyramid built through %d transition(s)", len(builds))

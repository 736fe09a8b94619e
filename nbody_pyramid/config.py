"""
nbody_pyramid.config

Level-chain configuration, world bounds and module-wide defaults.

A pyramid is a list of :class:`LevelConfig`, finest first. Each level is a
dense cubic voxel grid whose z-slices are tiled ``slices_per_row`` to a row
inside a 2D texture, so level ``l`` occupies a
``texture_height x texture_width`` region of the layered moment arrays.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import NamedTuple, Sequence

import numpy as np

from .errors import ConfigurationError, LevelBudgetError

# ============================================================================
# CONSTANTS AND DEFAULTS
# ============================================================================

DEFAULT_THETA = 0.5
DEFAULT_GRAVITY_CONSTANT = 3e-4
DEFAULT_SOFTENING = 0.2
DEFAULT_GRID_SIZE = 64
DEFAULT_NUM_LEVELS = 4

# Voxels at or below this mass are treated as empty.
EMPTY_VOXEL_MASS = 1e-10
# Added around reduced bounds so boundary particles do not clamp onto edge voxels.
BOUNDS_MARGIN = 0.1
# Guard added to the distance in the opening-angle test.
MAC_EPSILON = 1e-6

# Fixed binding budget of the traversal: positions, A0, A1, A2, occupancy,
# bounds and the force output, whatever the number of levels.
TEXTURE_UNIT_BUDGET = 16
TRAVERSAL_BINDINGS = 7
# Size of the per-level parameter tables and of the traversal stack.
MAX_LEVELS = 8
# Linear voxel indices are 32-bit on the device.
MAX_GRID_SIZE = 1024

PRECISIONS = ("float32", "float64")
ACCUMULATION_MODES = ("auto", "float", "fixed")


class WorldBounds(NamedTuple):
    """Axis-aligned world box used when no reduced bounds are available."""

    min: tuple[float, float, float]
    max: tuple[float, float, float]

    @property
    def extent(self) -> np.ndarray:
        return np.asarray(self.max, dtype=float) - np.asarray(self.min, dtype=float)

    @property
    def max_extent(self) -> float:
        return float(np.max(self.extent))

    def as_texture(self, dtype=np.float32) -> np.ndarray:
        """Return the ``(2, 4)`` bounds layout, flagged valid."""
        out = np.zeros((2, 4), dtype=dtype)
        out[0, :3] = self.min
        out[1, :3] = self.max
        out[:, 3] = 1.0
        return out


DEFAULT_WORLD_BOUNDS = WorldBounds((-4.0, -4.0, 0.0), (4.0, 4.0, 2.0))


def as_world_bounds(bounds) -> WorldBounds:
    """Coerce ``None``, a ``WorldBounds``, a ``(min, max)`` pair or a
    ``{'min': ..., 'max': ...}`` mapping into a validated :class:`WorldBounds`."""
    if bounds is None:
        return DEFAULT_WORLD_BOUNDS
    if isinstance(bounds, dict):
        try:
            lo, hi = bounds["min"], bounds["max"]
        except KeyError as exc:
            raise ConfigurationError(f"world_bounds mapping lacks {exc}") from None
    else:
        lo, hi = bounds
    lo = tuple(float(v) for v in lo)
    hi = tuple(float(v) for v in hi)
    if len(lo) != 3 or len(hi) != 3:
        raise ConfigurationError(
            f"world_bounds corners must have 3 components, got {lo} and {hi}"
        )
    if not all(np.isfinite(lo + hi)):
        raise ConfigurationError(f"world_bounds must be finite, got {lo} .. {hi}")
    if any(h <= l for l, h in zip(lo, hi)):
        raise ConfigurationError(
            f"world_bounds max must exceed min on every axis, got {lo} .. {hi}"
        )
    return WorldBounds(lo, hi)


# ============================================================================
# LEVEL CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class LevelConfig:
    """One tier of the dense moment pyramid."""

    grid_size: int
    slices_per_row: int

    @property
    def slice_rows(self) -> int:
        return math.ceil(self.grid_size / self.slices_per_row)

    @property
    def texture_width(self) -> int:
        return self.grid_size * self.slices_per_row

    @property
    def texture_height(self) -> int:
        return self.grid_size * self.slice_rows

    @property
    def voxel_count(self) -> int:
        return self.grid_size ** 3

    def cell_size(self, max_extent: float) -> float:
        return max_extent / self.grid_size

    def voxel_to_texel(self, x: int, y: int, z: int) -> tuple[int, int]:
        """Return the ``(row, column)`` texel holding voxel ``(x, y, z)``."""
        slice_row, slice_col = divmod(z, self.slices_per_row)
        return slice_row * self.grid_size + y, slice_col * self.grid_size + x

    def texel_to_voxel(self, row: int, col: int) -> tuple[int, int, int]:
        slice_row, y = divmod(row, self.grid_size)
        slice_col, x = divmod(col, self.grid_size)
        return x, y, slice_row * self.slices_per_row + slice_col


def _default_slices_per_row(grid_size: int) -> int:
    # Smallest power of two whose square covers the slice count (64 -> 8).
    return min(grid_size, 1 << math.ceil(math.log2(math.sqrt(grid_size)))) if grid_size > 1 else 1


def make_level_configs(
    grid_size: int = DEFAULT_GRID_SIZE,
    num_levels: int = DEFAULT_NUM_LEVELS,
    slices_per_row: int | None = None,
) -> list[LevelConfig]:
    """Build a halving level chain, finest first.

    Grid size and slices per row both halve at every level (slices per row
    never drops below one), e.g. ``64/8 -> 32/4 -> 16/2 -> 8/1``.
    """
    if slices_per_row is None:
        slices_per_row = _default_slices_per_row(grid_size)
    configs = []
    g, spr = int(grid_size), int(slices_per_row)
    for _ in range(int(num_levels)):
        configs.append(LevelConfig(g, max(1, min(spr, g))))
        g = max(1, g // 2)
        spr = max(1, spr // 2)
    return validate_level_configs(configs)


def _coerce_level(cfg) -> LevelConfig:
    if isinstance(cfg, LevelConfig):
        return cfg
    if isinstance(cfg, dict):
        try:
            return LevelConfig(int(cfg["grid_size"]), int(cfg["slices_per_row"]))
        except KeyError as exc:
            raise ConfigurationError(f"level config lacks {exc}") from None
    grid, spr = cfg
    return LevelConfig(int(grid), int(spr))


def validate_level_configs(level_configs: Sequence) -> list[LevelConfig]:
    """Check that *level_configs* forms a valid halving pyramid.

    Raises
    ------
    LevelBudgetError
        More than :data:`MAX_LEVELS` levels.
    ConfigurationError
        Empty chain, non-positive sizes, a level that is not exactly half of
        its child, or a level whose texture does not fit inside level 0's.
    """
    if level_configs is None or len(level_configs) == 0:
        raise ConfigurationError("at least one pyramid level is required")
    levels = [_coerce_level(c) for c in level_configs]
    if len(levels) > MAX_LEVELS:
        raise LevelBudgetError(len(levels), MAX_LEVELS)

    for i, lvl in enumerate(levels):
        if lvl.grid_size < 1 or lvl.grid_size > MAX_GRID_SIZE:
            raise ConfigurationError(
                f"level {i}: grid_size must be in [1, {MAX_GRID_SIZE}], got {lvl.grid_size}"
            )
        if not 1 <= lvl.slices_per_row <= lvl.grid_size:
            raise ConfigurationError(
                f"level {i}: slices_per_row must be in [1, grid_size], got {lvl.slices_per_row}"
            )

    base = levels[0]
    for i in range(1, len(levels)):
        child, parent = levels[i - 1], levels[i]
        if child.grid_size % 2 or parent.grid_size * 2 != child.grid_size:
            raise ConfigurationError(
                f"level {i}: grid_size {parent.grid_size} is not half of level "
                f"{i - 1} grid_size {child.grid_size}"
            )
        if parent.texture_width > base.texture_width or parent.texture_height > base.texture_height:
            raise ConfigurationError(
                f"level {i}: texture {parent.texture_height}x{parent.texture_width} "
                f"does not fit the level-0 layer {base.texture_height}x{base.texture_width}"
            )
    return levels


def validate_physics(theta: float, gravity_constant: float, softening: float) -> tuple[float, float, float]:
    """Validate the traversal scalars and return them as floats."""
    theta = float(theta)
    gravity_constant = float(gravity_constant)
    softening = float(softening)
    if not np.isfinite(theta) or theta < 0:
        raise ConfigurationError(f"theta must be a finite non-negative number, got {theta}")
    if not np.isfinite(gravity_constant):
        raise ConfigurationError(f"gravity_constant must be finite, got {gravity_constant}")
    if not np.isfinite(softening) or softening < 0:
        raise ConfigurationError(f"softening must be a finite non-negative number, got {softening}")
    return theta, gravity_constant, softening


def validate_precision(precision: str) -> str:
    key = str(precision).lower()
    if key not in PRECISIONS:
        raise ConfigurationError(f"precision must be one of {list(PRECISIONS)}, got {precision!r}")
    return key

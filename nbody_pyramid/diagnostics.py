"""Per-level summaries of a moment pyramid, for logging and tests."""
from __future__ import annotations

from typing import Sequence

import numpy as np

from ._backend import to_host
from .config import EMPTY_VOXEL_MASS, validate_level_configs

__all__ = ["level_statistics", "level_mass_grid"]


def level_mass_grid(a0, level: int, config) -> np.ndarray:
    """Return level *level*'s voxel masses as a ``(g, g, g)`` array indexed
    ``[z, y, x]``."""
    a0 = to_host(a0)
    g, spr = config.grid_size, config.slices_per_row
    out = np.zeros((g, g, g), dtype=np.float64)
    layer = a0[level, ..., 3]
    for z in range(g):
        row0, col0 = config.voxel_to_texel(0, 0, z)
        out[z] = layer[row0:row0 + g, col0:col0 + g]
    return out


def level_statistics(a0, level_configs: Sequence) -> list[dict]:
    """
    Summarise every level of the A0 moments.

    Returns
    -------
    stats : list of dict
        One dict per level with keys ``level``, ``grid_size``,
        ``occupied_voxels`` (mass above ``EMPTY_VOXEL_MASS``), ``total_mass``,
        ``max_voxel_mass`` and ``center_of_mass`` (None when empty).
    """
    levels = validate_level_configs(level_configs)
    host = to_host(a0)
    stats = []
    for lvl, cfg in enumerate(levels):
        masses = level_mass_grid(host, lvl, cfg)
        total = float(masses.sum())
        region = host[lvl, :cfg.texture_height, :cfg.texture_width].reshape(-1, 4)
        com = None
        if total > EMPTY_VOXEL_MASS:
            com = tuple(float(v) for v in region[:, :3].sum(axis=0, dtype=np.float64) / total)
        stats.append({
            'level': lvl,
            'grid_size': cfg.grid_size,
            'occupied_voxels': int(np.count_nonzero(masses > EMPTY_VOXEL_MASS)),
            'total_mass': total,
            'max_voxel_mass': float(masses.max()),
            'center_of_mass': com,
        })
    return stats

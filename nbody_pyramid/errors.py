"""
nbody_pyramid.errors

Exception hierarchy for the octree gravity solver.

Configuration problems subclass ``ValueError`` and device failures subclass
``RuntimeError`` so that callers catching the builtin types keep working.
Numerical degeneracies (empty voxels, zero separation, empty bounds) are never
reported through exceptions; they simply contribute zero force.
"""
from __future__ import annotations

__all__ = [
    "PyramidGravityError",
    "ConfigurationError",
    "MissingResourceError",
    "LevelBudgetError",
    "DeviceError",
    "ResourceAllocationError",
]


class PyramidGravityError(Exception):
    """Base class for every error raised by nbody_pyramid."""


class ConfigurationError(PyramidGravityError, ValueError):
    """Malformed level chain, scalar parameter or array shape."""


class MissingResourceError(ConfigurationError):
    """A kernel was run without one of its required inputs or outputs."""

    def __init__(self, kernel: str, slots: list[str]):
        self.kernel = kernel
        self.slots = list(slots)
        super().__init__(
            f"{kernel}: missing required input texture(s): {', '.join(self.slots)}"
        )


class LevelBudgetError(ConfigurationError):
    """More pyramid levels were requested than the binding budget allows."""

    def __init__(self, num_levels: int, max_levels: int):
        self.num_levels = num_levels
        self.max_levels = max_levels
        super().__init__(
            f"level count exceeds texture-unit budget: {num_levels} levels "
            f"requested, at most {max_levels} supported"
        )


class DeviceError(PyramidGravityError, RuntimeError):
    """The compute device failed (lost context, launch or compile failure)."""


class ResourceAllocationError(DeviceError):
    """A device or host buffer could not be allocated."""

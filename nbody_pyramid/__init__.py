"""nbody_pyramid: multilevel octree Barnes-Hut gravity with quadrupole moments."""

from importlib.metadata import version as _version_lookup, PackageNotFoundError

# --- Versioning ---
try:
    # This works if the package was installed via 'pip install .'
    __version__ = _version_lookup("nbody_pyramid")
except PackageNotFoundError:
    # Fallback for local development
    try:
        from ._version import __version__
    except ImportError:
        __version__ = "unknown"

# --- Public API ---

# From .errors
from .errors import (
    PyramidGravityError,
    ConfigurationError,
    MissingResourceError,
    LevelBudgetError,
    DeviceError,
    ResourceAllocationError,
)

# From .config
from .config import (
    LevelConfig,
    WorldBounds,
    make_level_configs,
    DEFAULT_THETA,
    DEFAULT_GRAVITY_CONSTANT,
    DEFAULT_SOFTENING,
    DEFAULT_WORLD_BOUNDS,
    EMPTY_VOXEL_MASS,
    BOUNDS_MARGIN,
    MAX_LEVELS,
    TEXTURE_UNIT_BUDGET,
)

# From ._backend
from ._backend import Device, resolve_device, get_gpu_info

# From .resources
from .resources import Owned, Borrowed

# From the passes
from .bounds import BoundsReduce
from .aggregate import Aggregator
from .pyramid import OccupancyMask, PyramidBuild, make_pyramid_builds, build_pyramid_chain
from .traversal import QuadrupoleTraversal
from .integrate import EulerIntegrator

# From .solver
from .solver import PyramidGravitySolver

# Host helpers
from .particles import particle_texture_shape, pack_particles, pack_velocities, unpack_vectors
from .diagnostics import level_statistics
from .reference import compute_direct_forces_cpu, make_plummer_sphere

# Define what "from nbody_pyramid import *" does
__all__ = [
    "__version__",
    "PyramidGravityError",
    "ConfigurationError",
    "MissingResourceError",
    "LevelBudgetError",
    "DeviceError",
    "ResourceAllocationError",
    "LevelConfig",
    "WorldBounds",
    "make_level_configs",
    "DEFAULT_THETA",
    "DEFAULT_GRAVITY_CONSTANT",
    "DEFAULT_SOFTENING",
    "DEFAULT_WORLD_BOUNDS",
    "EMPTY_VOXEL_MASS",
    "BOUNDS_MARGIN",
    "MAX_LEVELS",
    "TEXTURE_UNIT_BUDGET",
    "Device",
    "resolve_device",
    "get_gpu_info",
    "Owned",
    "Borrowed",
    "BoundsReduce",
    "Aggregator",
    "OccupancyMask",
    "PyramidBuild",
    "make_pyramid_builds",
    "build_pyramid_chain",
    "QuadrupoleTraversal",
    "EulerIntegrator",
    "PyramidGravitySolver",
    "particle_texture_shape",
    "pack_particles",
    "pack_velocities",
    "unpack_vectors",
    "level_statistics",
    "compute_direct_forces_cpu",
    "make_plummer_sphere",
]

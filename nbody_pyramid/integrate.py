"""
nbody_pyramid.integrate

Semi-implicit Euler update of the particle and velocity textures.
"""
from __future__ import annotations

import logging

import numpy as np

from . import cpu_kernels
from ._backend import allocate, dtype_for, launch, resolve_device
from .config import validate_precision
from .errors import ConfigurationError
from .resources import Kernel

logger = logging.getLogger(__name__)

__all__ = ["EulerIntegrator"]

DEFAULT_DT = 1.0 / 60.0
DEFAULT_MAX_SPEED = 2.0
DEFAULT_MAX_ACCEL = 1.0


class EulerIntegrator(Kernel):
    """
    Kick then drift: ``v' = clamp((v + clamp(a) dt)(1 - damping))``,
    ``x' = x + v' dt``.

    Slots with mass <= 0, a NaN position or a NaN force are copied through
    unchanged. Mass (``position.w``) and ``velocity.w`` are preserved.
    *out_position* / *out_velocity* may be the input arrays themselves.

    Parameters
    ----------
    particle_texture_shape : (height, width)
    in_position, in_velocity, in_force : array, shape (height, width, 4), optional
    out_position, out_velocity : array, shape (height, width, 4), optional
        Allocated and owned when omitted.
    dt : float, optional
        Time step. Default: 1/60.
    damping : float, optional
        Velocity damping fraction per step, in [0, 1]. Default: 0.
    max_speed, max_accel : float, optional
        Clamps on |v| and |a|. Defaults: 2 and 1.
    device, precision : optional
    """

    _slots = ("in_position", "in_velocity", "in_force", "out_position", "out_velocity")
    _required = _slots

    def __init__(self, particle_texture_shape, in_position=None, in_velocity=None, in_force=None,
                 out_position=None, out_velocity=None, *,
                 dt: float = DEFAULT_DT, damping: float = 0.0,
                 max_speed: float = DEFAULT_MAX_SPEED, max_accel: float = DEFAULT_MAX_ACCEL,
                 device='auto', precision='float32'):
        super().__init__(resolve_device(device), validate_precision(precision))
        self.texture_shape = tuple(int(v) for v in particle_texture_shape)
        self.dt = float(dt)
        self.damping = float(damping)
        self.max_speed = float(max_speed)
        self.max_accel = float(max_accel)
        if not np.isfinite(self.dt) or self.dt <= 0:
            raise ConfigurationError(f"dt must be a positive number, got {dt}")
        if not 0.0 <= self.damping <= 1.0:
            raise ConfigurationError(f"damping must be in [0, 1], got {damping}")
        if not (self.max_speed > 0 and self.max_accel > 0):
            raise ConfigurationError(
                f"max_speed and max_accel must be positive, got {max_speed} and {max_accel}"
            )

        shape = self.texture_shape + (4,)
        dtype = dtype_for(self.precision)
        self._bind("in_position", in_position)
        self._bind("in_velocity", in_velocity)
        self._bind("in_force", in_force)
        self._bind("out_position", out_position,
                   lambda: allocate(self.device, shape, dtype, "positions"))
        self._bind("out_velocity", out_velocity,
                   lambda: allocate(self.device, shape, dtype, "velocities"))

    def run(self) -> None:
        self._require()
        shape = self.texture_shape + (4,)
        for name in self._slots:
            self._check(name, shape)

        if self.device.is_gpu:
            T = dtype_for(self.precision)
            n_slots = self.texture_shape[0] * self.texture_shape[1]
            launch(self.device, self.precision, 'integrate_euler', n_slots,
                   (self.in_position, self.in_velocity, self.in_force, np.int32(n_slots),
                    T(self.dt), T(self.damping), T(self.max_speed), T(self.max_accel),
                    self.out_position, self.out_velocity))
        else:
            cpu_kernels.integrate_euler(
                self.in_position.reshape(-1, 4), self.in_velocity.reshape(-1, 4),
                self.in_force.reshape(-1, 4),
                self.dt, self.damping, self.max_speed, self.max_accel,
                self.out_position.reshape(-1, 4), self.out_velocity.reshape(-1, 4),
            )
        self.render_count += 1

"""
nbody_pyramid.bounds

Axis-aligned bounding box of all valid particles, by repeated 8x8 min/max
reduction of the particle texture down to a single texel.
"""
from __future__ import annotations

import logging
import math

import numpy as np

from . import cpu_kernels
from ._backend import allocate, dtype_for, launch, resolve_device
from .config import validate_precision
from .resources import Kernel

logger = logging.getLogger(__name__)

__all__ = ["BoundsReduce", "plan_reduction"]

BLOCK = 8


def plan_reduction(height: int, width: int) -> list[tuple[int, int, int, int]]:
    """Return ``(src_h, src_w, dst_h, dst_w)`` for every reduction pass.

    Each pass shrinks both axes by ``BLOCK`` (rounding up) until one texel is
    left; a texture that is already 1x1 still gets one pass.
    """
    passes = []
    h, w = int(height), int(width)
    while True:
        dh, dw = math.ceil(h / BLOCK), math.ceil(w / BLOCK)
        passes.append((h, w, dh, dw))
        if dh == 1 and dw == 1:
            return passes
        h, w = dh, dw


class BoundsReduce(Kernel):
    """
    Reduce a particle texture to its bounding box.

    Parameters
    ----------
    particle_texture_shape : (height, width)
        Shape of the particle texture (without the channel axis).
    in_position : array, shape (height, width, 4), optional
        ``(x, y, z, mass)`` per slot. Slots with mass <= 0 or any NaN channel
        are ignored.
    out_bounds : array, shape (2, 4), optional
        Receives ``(min, valid)`` and ``(max, valid)``. Allocated and owned
        when omitted.
    device, precision : optional
        Compute device and floating type.

    Notes
    -----
    Intermediate passes alternate between two private scratch buffers, so the
    memory held is independent of the number of passes.
    """

    _slots = ("in_position", "out_bounds")
    _required = ("in_position", "out_bounds")

    def __init__(self, particle_texture_shape, in_position=None, out_bounds=None, *,
                 device='auto', precision='float32'):
        super().__init__(resolve_device(device), validate_precision(precision))
        self.texture_shape = tuple(int(v) for v in particle_texture_shape)
        dtype = dtype_for(self.precision)

        self._bind("in_position", in_position)
        self._bind("out_bounds", out_bounds,
                   lambda: allocate(self.device, (2, 4), dtype, "bounds"))

        self.passes = plan_reduction(*self.texture_shape)
        n_scratch = min(2, len(self.passes) - 1)
        if n_scratch:
            _, _, dh, dw = self.passes[0]
            self._scratch = [
                allocate(self.device, (2 * dh * dw * 4,), dtype, "bounds scratch")
                for _ in range(n_scratch)
            ]
        else:
            self._scratch = []
        logger.debug("bounds reduction plan for %s: %s", self.texture_shape,
                     [(p[2], p[3]) for p in self.passes])

    def run(self) -> None:
        self._require()
        self._check("in_position", self.texture_shape + (4,))
        self._check("out_bounds", (2, 4))

        src = self.in_position.reshape(-1)
        last = len(self.passes) - 1
        for n, (sh, sw, dh, dw) in enumerate(self.passes):
            dst = self.out_bounds.reshape(-1) if n == last else self._scratch[n % 2]
            if self.device.is_gpu:
                launch(self.device, self.precision, 'bounds_reduce_pass', dh * dw,
                       (src, np.int32(sh), np.int32(sw), np.int32(n == 0),
                        dst, np.int32(dh), np.int32(dw)))
            else:
                cpu_kernels.bounds_reduce_pass(src, sh, sw, n == 0, dst, dh, dw)
            src = dst
        self.render_count += 1

    def _release_scratch(self) -> None:
        self._scratch = []

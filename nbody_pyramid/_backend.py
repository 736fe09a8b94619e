"""
nbody_pyramid._backend

Device selection, buffer allocation, CUDA kernel compilation and launch.

Every kernel runs either on an NVIDIA GPU through CuPy raw kernels, or on the
host through Numba. Both libraries are optional at import time; asking for a
back-end whose library is missing raises ``ImportError`` at the call site.
"""
from __future__ import annotations

import contextlib
import logging
import warnings
from dataclasses import dataclass
from typing import Any

import numpy as np

from .errors import ConfigurationError, DeviceError, ResourceAllocationError

try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    cp = None
    CUPY_AVAILABLE = False
    warnings.warn(
        "CuPy not available. GPU acceleration disabled. "
        "Install with: pip install cupy-cudaxxx",
        ImportWarning
    )

try:
    import numba  # noqa: F401
    NUMBA_AVAILABLE = True
except ImportError:
    NUMBA_AVAILABLE = False
    warnings.warn("Numba not available. CPU kernels disabled.", ImportWarning)

logger = logging.getLogger(__name__)

THREADS_PER_BLOCK = 128

_DTYPES = {
    'float32': np.float32,
    'float64': np.float64,
}

# Type specifications for float vs double kernels
_TYPE_SPECS = {
    'float32': {
        'T': 'float',
        'SQRT': 'sqrtf',
        'RSQRT': 'rsqrtf',
        'FLOOR': 'floorf',
        'FMIN': 'fminf',
        'FMAX': 'fmaxf',
        'BIG': '3.0e38f',
    },
    'float64': {
        'T': 'double',
        'SQRT': 'sqrt',
        'RSQRT': 'rsqrt',
        'FLOOR': 'floor',
        'FMIN': 'fmin',
        'FMAX': 'fmax',
        'BIG': '1.0e300',
    },
}

# Kernel cache - stores compiled kernels per (device, precision, name)
_KERNEL_CACHE: dict[tuple[int, str, str], Any] = {}


def _gpu_present() -> bool:
    if not CUPY_AVAILABLE:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except Exception:  # no driver, no device: plain "not present"
        return False


@dataclass(frozen=True)
class Device:
    """A compute device: ``kind`` is ``'cpu'`` or ``'gpu'``."""

    kind: str
    index: int = 0

    @property
    def is_gpu(self) -> bool:
        return self.kind == 'gpu'

    @property
    def xp(self):
        """Array module (``cupy`` or ``numpy``) holding this device's buffers."""
        return cp if self.is_gpu else np

    def scope(self):
        """Context manager making this device current for allocations and launches."""
        if self.is_gpu:
            return cp.cuda.Device(self.index)
        return contextlib.nullcontext()

    def synchronize(self) -> None:
        """Block until all queued work on the device has finished."""
        if not self.is_gpu:
            return
        with device_errors("synchronize"):
            with self.scope():
                cp.cuda.Device(self.index).synchronize()

    @property
    def compute_capability(self) -> int | None:
        if not self.is_gpu:
            return None
        return int(cp.cuda.Device(self.index).compute_capability)

    def __str__(self) -> str:
        return f"gpu:{self.index}" if self.is_gpu else "cpu"


def resolve_device(device: Any = 'auto') -> Device:
    """Turn ``'auto'``, ``'cpu'``, ``'gpu'``, ``'gpu:N'``, an int or a
    :class:`Device` into a :class:`Device`.

    ``'auto'`` picks the current CUDA device when CuPy sees one, else the CPU.
    """
    if isinstance(device, Device):
        chosen = device
    elif device is None or device == 'auto':
        chosen = Device('gpu', _current_gpu_index()) if _gpu_present() else Device('cpu')
    elif isinstance(device, (int, np.integer)) and not isinstance(device, bool):
        chosen = Device('gpu', int(device))
    elif isinstance(device, str) and device.lower() in ('cpu', 'host'):
        chosen = Device('cpu')
    elif isinstance(device, str) and device.lower().startswith(('gpu', 'cuda')):
        _, _, idx = device.partition(':')
        chosen = Device('gpu', int(idx) if idx else _current_gpu_index())
    else:
        raise ConfigurationError(f"unrecognised device {device!r}")

    if chosen.is_gpu and not CUPY_AVAILABLE:
        raise ImportError("CuPy required for GPU execution")
    if not chosen.is_gpu and not NUMBA_AVAILABLE:
        raise ImportError("Numba required for CPU execution. Install: pip install numba")
    return chosen


def _current_gpu_index() -> int:
    try:
        return int(cp.cuda.runtime.getDevice())
    except Exception:
        return 0


def dtype_for(precision: str):
    return _DTYPES[precision]


# ============================================================================
# ERROR TRANSLATION
# ============================================================================

def _device_exception_types() -> tuple[type, ...]:
    if not CUPY_AVAILABLE:
        return ()
    types: list[type] = [cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError]
    compile_exc = getattr(cp.cuda.compiler, 'CompileException', None)
    if compile_exc is not None:
        types.append(compile_exc)
    return tuple(types)


def _oom_exception_types() -> tuple[type, ...]:
    types: list[type] = [MemoryError]
    if CUPY_AVAILABLE:
        types.append(cp.cuda.memory.OutOfMemoryError)
    return tuple(types)


@contextlib.contextmanager
def device_errors(what: str):
    """Re-raise CUDA failures as :class:`DeviceError` and allocation failures
    as :class:`ResourceAllocationError`."""
    try:
        yield
    except _oom_exception_types() as exc:
        raise ResourceAllocationError(f"{what}: allocation failed ({exc})") from exc
    except _device_exception_types() as exc:
        raise DeviceError(f"{what}: device failure ({exc})") from exc


# ============================================================================
# BUFFERS
# ============================================================================

def allocate(device: Device, shape, dtype, what: str = 'buffer'):
    """Zero-filled buffer on *device*."""
    with device_errors(f"allocate {what}"):
        with device.scope():
            arr = device.xp.zeros(shape, dtype=dtype)
    logger.debug("allocated %s %s %s on %s", what, tuple(arr.shape), np.dtype(dtype).name, device)
    return arr


def to_device(device: Device, array, dtype, what: str = 'buffer'):
    """Copy (or view) *array* onto *device* as a contiguous array of *dtype*."""
    with device_errors(f"upload {what}"):
        with device.scope():
            return device.xp.ascontiguousarray(device.xp.asarray(array, dtype=dtype))


def to_host(array) -> np.ndarray:
    """Read *array* back into host memory."""
    if CUPY_AVAILABLE and isinstance(array, cp.ndarray):
        with device_errors("readback"):
            return cp.asnumpy(array)
    return np.asarray(array)


def is_on_device(device: Device, array) -> bool:
    if device.is_gpu:
        return CUPY_AVAILABLE and isinstance(array, cp.ndarray)
    return isinstance(array, np.ndarray)


# ============================================================================
# CUDA KERNEL MANAGEMENT
# ============================================================================

def get_kernel(device: Device, precision: str, name: str):
    """
    Get a compiled CUDA kernel.

    Parameters
    ----------
    device : Device
        GPU device the kernel is compiled for.
    precision : str
        Either 'float32' or 'float64'.
    name : str
        Kernel entry point, a key of ``cuda_kernels.KERNEL_SOURCES``.

    Returns
    -------
    kernel : cp.RawKernel
        Compiled CUDA kernel
    """
    from .cuda_kernels import KERNEL_SOURCES, COMMON_DEVICE_TEMPLATE

    cache_key = (device.index, precision, name)
    if cache_key in _KERNEL_CACHE:
        return _KERNEL_CACHE[cache_key]

    if name not in KERNEL_SOURCES:
        raise ValueError(f"No kernel configuration for {name!r}")

    type_specs = _TYPE_SPECS[precision]
    source = (COMMON_DEVICE_TEMPLATE + KERNEL_SOURCES[name]).format(**type_specs)

    with device_errors(f"compile {name}"):
        with device.scope():
            # Find architecture available across NVIDIA GPUs automatically
            cc = cp.cuda.Device(device.index).compute_capability
            options = ('-O3', f'-arch=sm_{cc}')
            kernel = cp.RawKernel(source, name, options=options, backend='nvcc')
            kernel.compile()

    logger.debug("compiled CUDA kernel %s (%s) for %s", name, precision, device)
    _KERNEL_CACHE[cache_key] = kernel
    return kernel


def launch(device: Device, precision: str, name: str, n_threads: int, args: tuple) -> None:
    """Launch kernel *name* with one thread per work item."""
    if n_threads <= 0:
        return
    kernel = get_kernel(device, precision, name)
    blocks = (n_threads + THREADS_PER_BLOCK - 1) // THREADS_PER_BLOCK
    with device_errors(f"launch {name}"):
        with device.scope():
            kernel((blocks,), (THREADS_PER_BLOCK,), args)


def scalar(precision: str, value: float):
    """Kernel scalar argument in the kernel's floating type."""
    return _DTYPES[precision](value)


def supports_float_atomics(device: Device, precision: str) -> bool:
    """Whether ``atomicAdd`` exists for *precision* on *device*."""
    if not device.is_gpu or precision == 'float32':
        return True
    # double-precision atomicAdd needs compute capability 6.0
    return device.compute_capability >= 60


def get_gpu_info() -> dict:
    """
    Get information about available GPU(s).

    Returns
    -------
    info : dict
        Dictionary containing:
        - 'available': bool, whether GPU is available
        - 'device_name': str, GPU model name
        - 'compute_capability': str, CUDA compute capability (e.g. '86')
        - 'memory_total': int, total GPU memory in bytes
        - 'memory_free': int, free GPU memory in bytes
    """
    if not _gpu_present():
        return {'available': False}

    try:
        device = cp.cuda.Device()
        mem_info = cp.cuda.runtime.memGetInfo()
        name = cp.cuda.runtime.getDeviceProperties(device.id)['name']
        return {
            'available': True,
            'device_name': name.decode('utf-8') if isinstance(name, bytes) else str(name),
            'compute_capability': device.compute_capability,
            'memory_total': mem_info[1],
            'memory_free': mem_info[0],
        }
    except _device_exception_types() as e:
        logger.warning("GPU query failed: %s", e)
        return {'available': False, 'error': str(e)}

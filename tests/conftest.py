"""Pytest configuration for the pyramid gravity tests."""

import numpy as np
import pytest

from nbody_pyramid._backend import Device, _gpu_present, to_device, to_host


def pytest_configure(config):
    """Configure pytest for the pyramid gravity tests."""
    config.addinivalue_line("markers", "gpu: marks tests that require a CUDA device")


@pytest.fixture(params=["cpu", pytest.param("gpu", marks=pytest.mark.gpu)], ids=["cpu", "gpu"])
def device(request):
    """
    Fixture providing the Numba host device and, when present, the CUDA device.

    GPU variants are skipped if no CUDA device is visible to CuPy.
    """
    if request.param == "gpu" and not _gpu_present():
        pytest.skip("CUDA not available")
    return Device(request.param)


@pytest.fixture
def upload(device):
    """Copy a host array onto the test device."""
    def _upload(array, dtype=np.float32):
        return to_device(device, np.asarray(array), dtype)
    return _upload


@pytest.fixture
def download():
    return to_host


def lattice_particles(n, grid=16, lo=-2.0, hi=2.0, jitter=0.05, seed=0):
    """*n* particles, each alone in its own voxel of a ``grid``^3 lattice over
    ``[lo, hi]^3``, displaced from the voxel centre by at most *jitter*."""
    rng = np.random.default_rng(seed)
    cell = (hi - lo) / grid
    cells = rng.choice(grid ** 3, size=n, replace=False)
    ijk = np.column_stack([cells % grid, (cells // grid) % grid, cells // (grid * grid)])
    pos = lo + (ijk + 0.5) * cell + rng.uniform(-jitter, jitter, size=(n, 3))
    mass = rng.uniform(0.5, 1.5, size=n)
    return pos, mass


@pytest.fixture
def lattice():
    return lattice_particles

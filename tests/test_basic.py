import numpy as np

import nbody_pyramid as nb


def test_imports():
    print("Checking package version...")
    print(f"  Package Version: {nb.__version__}")
    assert nb.__version__ != "0.0.0", "Version fallback triggered improperly."

    print("\nChecking Public API access...")
    expected_attrs = [
        'PyramidGravitySolver',
        'BoundsReduce',
        'Aggregator',
        'PyramidBuild',
        'OccupancyMask',
        'QuadrupoleTraversal',
        'EulerIntegrator',
        'LevelConfig',
        'Owned',
        'Borrowed',
        'compute_direct_forces_cpu',
        'DEFAULT_THETA',
    ]
    for attr in expected_attrs:
        has_it = hasattr(nb, attr)
        print(f"  Access to nb.{attr:<25}: {'[OK]' if has_it else '[FAILED]'}")
        assert has_it, f"Could not find {attr} in top-level namespace"


def test_defaults():
    assert nb.DEFAULT_THETA == 0.5
    assert nb.DEFAULT_GRAVITY_CONSTANT == 3e-4
    assert nb.DEFAULT_SOFTENING == 0.2
    assert nb.DEFAULT_WORLD_BOUNDS.min == (-4.0, -4.0, 0.0)
    assert nb.DEFAULT_WORLD_BOUNDS.max == (4.0, 4.0, 2.0)


def test_linkage_smoke():
    print("\nRunning CPU linkage smoke test (N=2)...")
    pos = np.array([[-1, 0, 0], [1, 0, 0]], dtype=np.float32)
    mass = np.array([1.0, 1.0], dtype=np.float32)

    with nb.PyramidGravitySolver(2, [nb.LevelConfig(4, 2)], device='cpu') as solver:
        solver.upload(pos, mass)
        acc = solver.compute_forces()
    assert acc.shape == (2, 3)
    assert acc[0, 0] > 0 and acc[1, 0] < 0


def test_direct_reference_smoke():
    pos = np.array([[0, 0, 0], [1, 0, 0]], dtype=np.float64)
    acc = nb.compute_direct_forces_cpu(pos, [1.0, 1.0], gravity_constant=1.0, softening=0.0)
    np.testing.assert_allclose(acc, [[1, 0, 0], [-1, 0, 0]], rtol=1e-12)


def test_gpu_info():
    info = nb.get_gpu_info()
    assert 'available' in info


def test_privacy():
    print("\nChecking Privacy (Encapsulation)...")
    hidden = ['_gpu_present', '_KERNEL_CACHE', 'cpu_kernels', 'cuda_kernels']
    for name in hidden:
        exists = name in nb.__all__
        print(f"  nb.{name:<26} is hidden: {'[OK]' if not exists else '[FAILED]'}")
        assert not exists, f"Internal name {name} is exported!"

import numpy as np
import pytest

from nbody_pyramid.config import (
    DEFAULT_WORLD_BOUNDS,
    MAX_LEVELS,
    TEXTURE_UNIT_BUDGET,
    TRAVERSAL_BINDINGS,
    LevelConfig,
    as_world_bounds,
    make_level_configs,
    validate_level_configs,
    validate_physics,
    validate_precision,
)
from nbody_pyramid.errors import ConfigurationError, LevelBudgetError
from nbody_pyramid.particles import (
    pack_particles,
    pack_velocities,
    particle_texture_shape,
    unpack_vectors,
)


def test_default_chain_halves():
    levels = make_level_configs(64, 4)
    assert [c.grid_size for c in levels] == [64, 32, 16, 8]
    assert [c.slices_per_row for c in levels] == [8, 4, 2, 1]
    assert (levels[0].texture_height, levels[0].texture_width) == (512, 512)
    assert (levels[3].texture_height, levels[3].texture_width) == (64, 8)


def test_texel_mapping():
    cfg = LevelConfig(4, 2)
    assert cfg.slice_rows == 2
    assert cfg.voxel_to_texel(2, 1, 3) == (5, 6)
    for xyz in [(0, 0, 0), (3, 3, 3), (1, 2, 0), (2, 1, 3)]:
        assert cfg.texel_to_voxel(*cfg.voxel_to_texel(*xyz)) == xyz


def test_cell_size():
    assert LevelConfig(64, 8).cell_size(8.0) == 0.125


def test_level_budget_error():
    with pytest.raises(LevelBudgetError, match="level count exceeds texture-unit budget"):
        make_level_configs(256, MAX_LEVELS + 1)
    # also a ValueError for callers that do not know the hierarchy
    with pytest.raises(ValueError):
        make_level_configs(256, MAX_LEVELS + 1)


def test_binding_budget_is_level_independent():
    assert TRAVERSAL_BINDINGS <= TEXTURE_UNIT_BUDGET
    assert len(make_level_configs(128, MAX_LEVELS)) == MAX_LEVELS


@pytest.mark.parametrize("levels", [
    [],
    [LevelConfig(8, 2), LevelConfig(3, 1)],
    [LevelConfig(8, 2), LevelConfig(8, 2)],
    [LevelConfig(0, 1)],
    [LevelConfig(4, 5)],
])
def test_malformed_chains(levels):
    with pytest.raises(ConfigurationError):
        validate_level_configs(levels)


def test_chain_coercion():
    levels = validate_level_configs([(8, 4), {'grid_size': 4, 'slices_per_row': 2}])
    assert levels == [LevelConfig(8, 4), LevelConfig(4, 2)]


def test_world_bounds():
    assert as_world_bounds(None) == DEFAULT_WORLD_BOUNDS
    wb = as_world_bounds({'min': (-1, -2, -3), 'max': (1, 2, 3)})
    np.testing.assert_array_equal(wb.extent, [2, 4, 6])
    assert wb.max_extent == 6.0
    tex = wb.as_texture()
    np.testing.assert_array_equal(tex, [[-1, -2, -3, 1], [1, 2, 3, 1]])

    with pytest.raises(ConfigurationError):
        as_world_bounds(((0, 0, 0), (1, 0, 1)))
    with pytest.raises(ConfigurationError):
        as_world_bounds(((0, 0, np.nan), (1, 1, 1)))


def test_physics_and_precision_validation():
    assert validate_physics(0.5, 3e-4, 0.2) == (0.5, 3e-4, 0.2)
    with pytest.raises(ConfigurationError):
        validate_physics(-0.1, 1.0, 0.1)
    with pytest.raises(ConfigurationError):
        validate_physics(0.5, np.inf, 0.1)
    with pytest.raises(ConfigurationError):
        validate_physics(0.5, 1.0, -1.0)
    assert validate_precision('FLOAT64') == 'float64'
    with pytest.raises(ConfigurationError):
        validate_precision('float16')


def test_particle_texture_packing():
    assert particle_texture_shape(1000) == (32, 32)
    assert particle_texture_shape(37) == (6, 7)
    assert particle_texture_shape(10, width=4) == (3, 4)

    pos = np.arange(30, dtype=float).reshape(10, 3)
    tex = pack_particles(pos, 2.0, (3, 4))
    assert tex.shape == (3, 4, 4) and tex.dtype == np.float32
    np.testing.assert_array_equal(tex[0, 1], [3, 4, 5, 2])
    np.testing.assert_array_equal(tex[2, 2:], 0)
    np.testing.assert_array_equal(unpack_vectors(tex, 10), pos)

    vel = pack_velocities(None, 10, (3, 4))
    assert not vel.any()
    with pytest.raises(ConfigurationError):
        pack_particles(pos, np.ones(9))
    with pytest.raises(ConfigurationError):
        pack_particles(pos, 1.0, (2, 4))

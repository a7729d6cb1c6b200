"""
Unit tests for visualization module.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from dualbokeh.visualization import colorize_disparity, create_stage_grid


class TestColorization:
    """Tests for disparity colorization."""

    def test_colorize_disparity(self):
        """Test disparity colorization."""
        disparity = np.tile(np.arange(256, dtype=np.uint8), (10, 1))
        colorized = colorize_disparity(disparity)

        assert colorized.shape == (10, 256, 3)
        assert colorized.dtype == np.uint8
        assert np.all(colorized[:, 0] == 0)
        assert colorized[:, 255].any()

    def test_colorize_non_u8(self):
        """Test raw fixed-point disparity is normalized first."""
        disparity = np.array([[0, 160], [320, 496]], dtype=np.int16)
        assert colorize_disparity(disparity).shape == (2, 2, 3)


class TestStageGrid:
    """Tests for the stage grid."""

    @pytest.fixture
    def stages(self):
        return {
            "normal_shot": np.full((480, 640, 3), 90, dtype=np.uint8),
            "disparity_map": np.full((320, 240), 128, dtype=np.uint8),
            "hard_mask": np.full((320, 240), 255, dtype=np.uint8),
            "final_image": np.full((480, 640, 3), 200, dtype=np.uint8),
        }

    def test_grid_layout(self, stages):
        grid = create_stage_grid(stages, tile_size=(320, 240), columns=3)
        assert grid.shape == (480, 960, 3)

    def test_single_column(self, stages):
        grid = create_stage_grid(stages, tile_size=(100, 80), columns=1)
        assert grid.shape == (320, 100, 3)

    def test_empty_stages(self):
        grid = create_stage_grid({}, tile_size=(100, 80))
        assert grid.shape == (80, 100, 3)

    def test_rotation_keeps_tile_size(self, stages):
        grid = create_stage_grid(stages, tile_size=(320, 240), rotation=90)
        assert grid.shape == (480, 960, 3)

    def test_unfilled_tiles_blank(self, stages):
        grid = create_stage_grid(stages, tile_size=(320, 240), columns=3)
        assert not grid[240:, 640:].any()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

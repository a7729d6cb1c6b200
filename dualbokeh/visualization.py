"""
Visualization Module
====================

On-screen rendering of pipeline stages when show-intermediate is on:
- Disparity maps colorized with TURBO
- Masks and grayscale stages promoted to BGR
- All stages tiled into a labelled grid

References:
- Google AI Blog - "Turbo, An Improved Rainbow Colormap"
  https://ai.googleblog.com/2019/08/turbo-improved-rainbow-colormap-for.html
- OpenCV HighGUI: https://docs.opencv.org/4.x/d7/dfc/group__highgui.html
"""

import math
from typing import Dict, Tuple

import cv2
import numpy as np

from .compositing import orient
from .logger import get_logger

logger = get_logger(__name__)

DISPARITY_STAGES = ("disparity_map", "disparity_map_2", "disparity_map_filtered_normalized")


def colorize_disparity(disparity: np.ndarray) -> np.ndarray:
    """
    Apply the TURBO colormap to a normalized uint8 disparity map.

    Zero disparity (no match or far background) is drawn black.
    """
    if disparity.dtype != np.uint8:
        disparity = cv2.normalize(disparity, None, 0, 255, cv2.NORM_MINMAX, cv2.CV_8U)

    colorized = cv2.applyColorMap(disparity, cv2.COLORMAP_TURBO)
    colorized[disparity == 0] = [0, 0, 0]
    return colorized


def _as_tile(name: str, image: np.ndarray, tile_size: Tuple[int, int]) -> np.ndarray:
    if name in DISPARITY_STAGES and image.ndim == 2:
        tile = colorize_disparity(image)
    elif image.ndim == 2:
        tile = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    else:
        tile = image[:, :, :3]

    # Letterbox into the tile, keeping aspect ratio
    tw, th = tile_size
    h, w = tile.shape[:2]
    s = min(tw / w, th / h)
    resized = cv2.resize(tile, (max(1, int(w * s)), max(1, int(h * s))), interpolation=cv2.INTER_AREA)
    canvas = np.zeros((th, tw, 3), dtype=np.uint8)
    y = (th - resized.shape[0]) // 2
    x = (tw - resized.shape[1]) // 2
    canvas[y:y + resized.shape[0], x:x + resized.shape[1]] = resized

    cv2.putText(canvas, name, (8, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 255, 0), 1)
    return canvas


def create_stage_grid(
    stages: Dict[str, np.ndarray],
    tile_size: Tuple[int, int] = (320, 240),
    columns: int = 3,
    rotation: int = 0
) -> np.ndarray:
    """
    Tile stage images into one grid, in insertion order.

    Layout (columns=3):
    +-----------+-----------+-----------+
    |  stage 1  |  stage 2  |  stage 3  |
    +-----------+-----------+-----------+
    |  stage 4  |    ...    |           |
    +-----------+-----------+-----------+

    Args:
        stages: Stage images keyed by name
        tile_size: (width, height) of each tile
        columns: Tiles per row
        rotation: Clockwise display rotation applied to every stage

    Returns:
        Combined BGR grid image
    """
    tw, th = tile_size
    if not stages:
        return np.zeros((th, tw, 3), dtype=np.uint8)

    tiles = [_as_tile(name, orient(image, rotation), tile_size) for name, image in stages.items()]
    rows = math.ceil(len(tiles) / columns)
    blank = np.zeros((th, tw, 3), dtype=np.uint8)
    tiles += [blank] * (rows * columns - len(tiles))

    return np.vstack([
        np.hstack(tiles[r * columns:(r + 1) * columns])
        for r in range(rows)
    ])


def show_stages(stages: Dict[str, np.ndarray], window_name: str = "Bokeh Stages",
                rotation: int = 0, wait_ms: int = 0) -> bool:
    """
    Display the stage grid. Returns False where no display is available.
    """
    grid = create_stage_grid(stages, rotation=rotation)
    try:
        cv2.imshow(window_name, grid)
        cv2.waitKey(wait_ms)
    except cv2.error as e:
        logger.warning("Cannot display intermediate stages: %s", e)
        return False
    return True

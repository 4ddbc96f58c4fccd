"""
CalloutRay Coordinate Transform - Normalized / Media / Screen Mapping

Three coordinate spaces:

    normalized (0-1000)  --x*W/1000-->  media (native px)  --view matrix-->  screen (canvas px)

The view matrix is built ONCE per frame and shared by the background warp,
every overlay primitive and hit-testing, so pan/zoom can never desynchronize
the picture from its annotations.

Screen mapping order (applied right to left on a media point p):

    screen = dpr * (canvas_center + scale * (offset + p - media_center))
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .entities import NORMALIZED_EXTENT

Point = Tuple[float, float]


def normalized_to_media(x: float, y: float, width: float, height: float) -> Point:
    """Map a normalized (x, y) point to native media pixels."""
    return (x * width / NORMALIZED_EXTENT, y * height / NORMALIZED_EXTENT)


def media_to_normalized(x: float, y: float, width: float, height: float) -> Point:
    """Inverse of normalized_to_media. Zero-sized media maps to the origin."""
    nx = x * NORMALIZED_EXTENT / width if width else 0.0
    ny = y * NORMALIZED_EXTENT / height if height else 0.0
    return (nx, ny)


def yx_to_media(point: Sequence[float], width: float, height: float) -> Point:
    """Map a normalized (y, x) point, as stored on entities, to media (x, y)."""
    return normalized_to_media(point[1], point[0], width, height)


def is_valid_box(box: Optional[Sequence[float]]) -> bool:
    """True if box is four finite in-range coordinates with positive area."""
    if box is None or len(box) != 4:
        return False
    try:
        ymin, xmin, ymax, xmax = (float(v) for v in box)
    except (TypeError, ValueError):
        return False
    values = (ymin, xmin, ymax, xmax)
    if not all(math.isfinite(v) and 0.0 <= v <= NORMALIZED_EXTENT for v in values):
        return False
    return ymax > ymin and xmax > xmin


def box_to_media(
    box: Sequence[float],
    width: float,
    height: float
) -> Tuple[float, float, float, float]:
    """
    Scale a (ymin, xmin, ymax, xmax) normalized box to media pixels.

    Returns:
        (xmin, ymin, xmax, ymax) in media space
    """
    ymin, xmin, ymax, xmax = box
    sx = width / NORMALIZED_EXTENT
    sy = height / NORMALIZED_EXTENT
    return (xmin * sx, ymin * sy, xmax * sx, ymax * sy)


def view_matrix(
    view,
    canvas_size: Tuple[float, float],
    media_size: Tuple[float, float],
    dpr: float = 1.0
) -> np.ndarray:
    """
    Build the 2x3 affine media->screen matrix for the current view.

    Args:
        view: ViewState (reads .scale and .offset)
        canvas_size: Display size (width, height) in CSS-like pixels
        media_size: Native media size (width, height)
        dpr: Device pixel ratio of the backing surface

    Returns:
        2x3 float64 matrix usable by cv2.warpAffine
    """
    cw, ch = canvas_size
    mw, mh = media_size
    ox, oy = view.offset
    s = view.scale
    k = dpr * s
    tx = dpr * (cw / 2.0 + s * (ox - mw / 2.0))
    ty = dpr * (ch / 2.0 + s * (oy - mh / 2.0))
    return np.array([[k, 0.0, tx], [0.0, k, ty]], dtype=np.float64)


def invert_matrix(matrix: np.ndarray) -> np.ndarray:
    """Invert a scale+translate affine matrix."""
    k = matrix[0, 0]
    if k == 0:
        return np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]], dtype=np.float64)
    return np.array([
        [1.0 / k, 0.0, -matrix[0, 2] / k],
        [0.0, 1.0 / matrix[1, 1], -matrix[1, 2] / matrix[1, 1]],
    ], dtype=np.float64)


def apply_matrix(matrix: np.ndarray, x: float, y: float) -> Point:
    """Apply an affine matrix to a single point."""
    return (
        matrix[0, 0] * x + matrix[0, 1] * y + matrix[0, 2],
        matrix[1, 0] * x + matrix[1, 1] * y + matrix[1, 2],
    )


def media_to_screen(matrix: np.ndarray, x: float, y: float) -> Point:
    return apply_matrix(matrix, x, y)


def screen_to_media(matrix: np.ndarray, x: float, y: float) -> Point:
    """Hit-testing: map a canvas pixel back to media space."""
    return apply_matrix(invert_matrix(matrix), x, y)


def to_pixels(matrix: np.ndarray, points: Iterable[Point]) -> List[Tuple[int, int]]:
    """Map media points to integer screen pixels for OpenCV drawing."""
    return [
        (int(round(sx)), int(round(sy)))
        for sx, sy in (apply_matrix(matrix, x, y) for x, y in points)
    ]

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import numpy as np

from depth_image import DepthImage

# Depth substituted for lookups that leave the image or hit a missing value.
BACKGROUND_DEPTH = 10000.0


class PixelSet(IntEnum):
    LEFT = 0
    RIGHT = 1


@dataclass(frozen=True)
class Offset:
    dx: int
    dy: int


@dataclass(frozen=True)
class SplitCandidate:
    u: Offset
    v: Offset
    threshold: float


def calc_feature(
    u: Offset,
    v: Offset,
    pixel,
    image: DepthImage,
    background: float = BACKGROUND_DEPTH,
) -> float:
    """Depth difference between the lookups ``pixel + u`` and ``pixel + v``."""
    d_u, valid_u = image.depth(pixel.x + u.dx, pixel.y + u.dy)
    d_v, valid_v = image.depth(pixel.x + v.dx, pixel.y + v.dy)
    if not valid_u:
        d_u = background
    if not valid_v:
        d_v = background
    return float(d_u - d_v)


def calc_features(
    u: Offset,
    v: Offset,
    xs: np.ndarray,
    ys: np.ndarray,
    image: DepthImage,
    background: float = BACKGROUND_DEPTH,
) -> np.ndarray:
    xs = np.asarray(xs, dtype=np.int64)
    ys = np.asarray(ys, dtype=np.int64)
    d_u = image.depths_at(xs + u.dx, ys + u.dy, background)
    d_v = image.depths_at(xs + v.dx, ys + v.dy, background)
    return d_u - d_v


def range_features(
    u: Offset,
    v: Offset,
    groups: list[tuple[DepthImage, np.ndarray, np.ndarray, np.ndarray]],
    n: int,
    background: float = BACKGROUND_DEPTH,
) -> np.ndarray:
    """Feature values for a sample range given its per-image groups.

    Each group is ``(image, positions, xs, ys)`` where ``positions`` index
    into the range.
    """
    values = np.empty(n, dtype=np.float64)
    for image, positions, xs, ys in groups:
        values[positions] = calc_features(u, v, xs, ys, image, background)
    return values


def classify_pixel(
    candidate: SplitCandidate,
    pixel,
    image: DepthImage,
    background: float = BACKGROUND_DEPTH,
) -> PixelSet:
    value = calc_feature(candidate.u, candidate.v, pixel, image, background)
    return PixelSet.LEFT if value < candidate.threshold else PixelSet.RIGHT

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable
import logging
from pathlib import Path

import numpy as np

from forest_errors import DataError, ForestIOError

logger = logging.getLogger(__name__)


class DepthImage:
    """Depth map with an optional per-pixel label map.

    Depth values that are non-finite or <= 0 are treated as missing. Labels
    below zero mark pixels without ground truth.
    """

    def __init__(self, depth: np.ndarray, labels: np.ndarray | None = None) -> None:
        self.depth_map = np.asarray(depth, dtype=np.float64)
        if self.depth_map.ndim != 2:
            raise DataError("depth must be a 2D array")

        if labels is not None:
            labels = np.asarray(labels, dtype=np.int32)
            if labels.shape != self.depth_map.shape:
                raise DataError("labels must have the same shape as depth")
        self.labels = labels

        self.height, self.width = self.depth_map.shape
        self.valid_mask = np.isfinite(self.depth_map) & (self.depth_map > 0.0)

    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height

    def depth(self, x: int, y: int) -> tuple[float, bool]:
        if not (0 <= x < self.width and 0 <= y < self.height):
            return 0.0, False
        valid = bool(self.valid_mask[y, x])
        return (float(self.depth_map[y, x]) if valid else 0.0), valid

    def depths_at(self, xs: np.ndarray, ys: np.ndarray, background: float) -> np.ndarray:
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        values = np.full(xs.shape, background, dtype=np.float64)

        inside = (xs >= 0) & (xs < self.width) & (ys >= 0) & (ys < self.height)
        if not np.any(inside):
            return values

        xi = xs[inside]
        yi = ys[inside]
        valid = self.valid_mask[yi, xi]
        inside_values = np.where(valid, self.depth_map[yi, xi], background)
        values[inside] = inside_values
        return values

    def labeled_pixels(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if self.labels is None:
            empty = np.empty(0, dtype=np.int32)
            return empty, empty, empty
        ys, xs = np.nonzero(self.labels >= 0)
        return (
            xs.astype(np.int32),
            ys.astype(np.int32),
            self.labels[ys, xs].astype(np.int32),
        )


class ImagePool:
    """Resolves image ids to images, loading them on demand.

    A pool either wraps in-memory images or a loader callable. Loaded images
    are kept in a working set; when ``capacity`` is set the least recently
    used image is dropped once the set grows past it.
    """

    def __init__(
        self,
        images: dict[int, DepthImage] | list[DepthImage] | None = None,
        loader: Callable[[int], DepthImage] | None = None,
        image_ids: list[int] | None = None,
        capacity: int | None = None,
    ) -> None:
        if images is not None and loader is not None:
            raise ValueError("pass either images or a loader, not both")
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive")

        if isinstance(images, list):
            images = dict(enumerate(images))
        self._images: OrderedDict[int, DepthImage] = OrderedDict(images or {})
        self._loader = loader
        self.capacity = capacity if loader is not None else None

        if image_ids is not None:
            self._ids = [int(i) for i in image_ids]
        else:
            self._ids = sorted(self._images)

    @classmethod
    def from_directory(cls, img_dir: str | Path, capacity: int | None = None) -> "ImagePool":
        """Pool over ``*.npz`` files holding ``depth`` and ``labels`` arrays, ids in file-name order."""
        directory = Path(img_dir)
        if not directory.is_dir():
            raise ForestIOError("image directory does not exist", path=str(directory))

        paths = sorted(directory.glob("*.npz"))

        def load(image_id: int) -> DepthImage:
            path = paths[image_id]
            try:
                with np.load(path) as data:
                    labels = data["labels"] if "labels" in data.files else None
                    return DepthImage(data["depth"], labels)
            except (OSError, KeyError, ValueError) as exc:
                raise ForestIOError(f"cannot load image ({exc})", path=str(path)) from exc

        logger.info("Found %d images in %s", len(paths), directory)
        return cls(loader=load, image_ids=list(range(len(paths))), capacity=capacity)

    @property
    def image_ids(self) -> list[int]:
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def get(self, image_id: int) -> DepthImage:
        image_id = int(image_id)
        if image_id in self._images:
            self._images.move_to_end(image_id)
            return self._images[image_id]

        if self._loader is None or image_id not in self._ids:
            raise KeyError(f"unknown image id {image_id}")

        image = self._loader(image_id)
        self._images[image_id] = image
        if self.capacity is not None:
            while len(self._images) > self.capacity:
                evicted, _ = self._images.popitem(last=False)
                logger.debug("Evicted image %d from the pool", evicted)
        return image

    def depth(self, image_id: int, x: int, y: int) -> tuple[float, bool]:
        return self.get(image_id).depth(x, y)

    def dimensions(self, image_id: int) -> tuple[int, int]:
        return self.get(image_id).dimensions()

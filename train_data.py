from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np

from depth_image import DepthImage, ImagePool
from forest_errors import DataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PixelInfo:
    image_id: int
    x: int
    y: int
    label: int


class TrainData:
    """Ordered collection of training pixels stored column-wise.

    Induction works on half-open ranges ``[begin, end)`` of this collection
    and reorders them in place; the pixels themselves never change.
    """

    def __init__(
        self,
        image_ids: np.ndarray,
        xs: np.ndarray,
        ys: np.ndarray,
        labels: np.ndarray,
    ) -> None:
        self.image_ids = np.ascontiguousarray(np.asarray(image_ids, dtype=np.int32))
        self.xs = np.ascontiguousarray(np.asarray(xs, dtype=np.int32))
        self.ys = np.ascontiguousarray(np.asarray(ys, dtype=np.int32))
        self.labels = np.ascontiguousarray(np.asarray(labels, dtype=np.int32))

        n = self.labels.size
        if not (self.image_ids.size == self.xs.size == self.ys.size == n):
            raise DataError("image_ids, xs, ys and labels must have the same length")

    @classmethod
    def from_pixels(cls, pixels: list[PixelInfo]) -> "TrainData":
        return cls(
            image_ids=[p.image_id for p in pixels],
            xs=[p.x for p in pixels],
            ys=[p.y for p in pixels],
            labels=[p.label for p in pixels],
        )

    @classmethod
    def sample_from_pool(
        cls,
        pool: ImagePool,
        image_ids: list[int] | np.ndarray,
        sample_pixel_num: int,
        label_num: int,
        rng: np.random.Generator,
    ) -> "TrainData":
        parts: list[tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]] = []
        for image_id in image_ids:
            image_id = int(image_id)
            xs, ys, labels = pool.get(image_id).labeled_pixels()
            if labels.size == 0:
                logger.warning("Image %d has no labeled pixels", image_id)
                continue
            if np.any(labels >= label_num):
                raise DataError(
                    f"image {image_id} has label {int(labels.max())} but label_num is {label_num}"
                )

            if labels.size > sample_pixel_num:
                chosen = np.sort(rng.choice(labels.size, size=sample_pixel_num, replace=False))
                xs, ys, labels = xs[chosen], ys[chosen], labels[chosen]
            elif labels.size < sample_pixel_num:
                logger.warning(
                    "Image %d has %d labeled pixels, fewer than the %d requested",
                    image_id,
                    labels.size,
                    sample_pixel_num,
                )
            parts.append((np.full(labels.size, image_id, dtype=np.int32), xs, ys, labels))

        if not parts:
            raise DataError("no labeled pixels in the selected images")

        return cls(*(np.concatenate(column) for column in zip(*parts)))

    def __len__(self) -> int:
        return int(self.labels.size)

    def __getitem__(self, index: int) -> PixelInfo:
        return PixelInfo(
            image_id=int(self.image_ids[index]),
            x=int(self.xs[index]),
            y=int(self.ys[index]),
            label=int(self.labels[index]),
        )

    def labels_in(self, begin: int, end: int) -> np.ndarray:
        return self.labels[begin:end]

    def shuffle(self, rng: np.random.Generator) -> None:
        order = rng.permutation(len(self))
        self._reorder(0, len(self), order)

    def group_by_image(
        self,
        begin: int,
        end: int,
        pool: ImagePool,
    ) -> list[tuple[DepthImage, np.ndarray, np.ndarray, np.ndarray]]:
        ids = self.image_ids[begin:end]
        xs = self.xs[begin:end]
        ys = self.ys[begin:end]

        groups = []
        for image_id in np.unique(ids):
            positions = np.flatnonzero(ids == image_id)
            groups.append((pool.get(int(image_id)), positions, xs[positions], ys[positions]))
        return groups

    def partition_by_mask(self, begin: int, end: int, goes_left: np.ndarray) -> int:
        """Move LEFT samples of ``[begin, end)`` to the front, returning the boundary."""
        goes_left = np.array(goes_left, dtype=bool)
        n = end - begin
        if goes_left.size != n:
            raise ValueError("goes_left must cover the whole range")

        order = np.arange(begin, end)
        i, j = 0, n - 1
        while True:
            while i <= j and goes_left[i]:
                i += 1
            while i <= j and not goes_left[j]:
                j -= 1
            if i >= j:
                break
            order[i], order[j] = order[j], order[i]
            goes_left[i], goes_left[j] = True, False
            i += 1
            j -= 1

        self._reorder(begin, end, order - begin)
        return begin + i

    def _reorder(self, begin: int, end: int, order: np.ndarray) -> None:
        for column in (self.image_ids, self.xs, self.ys, self.labels):
            column[begin:end] = column[begin:end][order]

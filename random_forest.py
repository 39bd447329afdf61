from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import time

import matplotlib
import matplotlib.pyplot as plt
import numpy as np

from data_structures.tree import Tree
from depth_feature import BACKGROUND_DEPTH
from depth_image import DepthImage, ImagePool
from forest_errors import ConfigurationError, DataError, ForestIOError, FormatError
from split_search import SplitSearchParams, ValueRange
from train_data import TrainData
from tree_builder import TreeBuilder, TreeBuilderParams
from tree_io import load_tree, tree_path, write_tree

logger = logging.getLogger(__name__)


@dataclass
class TrainParams:
    tree_num: int = 3
    label_num: int = 2
    img_num: int = 1
    img_dir: str | None = None
    max_depth: int = 20
    min_sample_count: int = 100
    sample_pixel_num: int = 2000
    train_img_num: int = 1
    offset_num: int = 100
    threshold_num: int = 50
    offset_range: ValueRange = field(default_factory=lambda: ValueRange(-30, 30))
    threshold_range: ValueRange = field(default_factory=lambda: ValueRange(-300.0, 300.0))

    # Execution controls.
    threads_per_node: int = 4
    background_depth: float = BACKGROUND_DEPTH
    random_state: int = 0

    def __post_init__(self) -> None:
        positive = (
            "tree_num",
            "label_num",
            "img_num",
            "sample_pixel_num",
            "train_img_num",
            "offset_num",
            "threshold_num",
            "threads_per_node",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.max_depth < 0:
            raise ConfigurationError("max_depth must be >= 0")
        if self.min_sample_count < 0:
            raise ConfigurationError("min_sample_count must be >= 0")
        if self.train_img_num > self.img_num:
            raise ConfigurationError("train_img_num cannot exceed img_num")
        if not isinstance(self.offset_range, ValueRange):
            self.offset_range = ValueRange(*self.offset_range)
        if not isinstance(self.threshold_range, ValueRange):
            self.threshold_range = ValueRange(*self.threshold_range)
        self.split_search_params()

    def split_search_params(self) -> SplitSearchParams:
        return SplitSearchParams(
            offset_num=self.offset_num,
            threshold_num=self.threshold_num,
            offset_range=self.offset_range,
            threshold_range=self.threshold_range,
            threads_per_node=self.threads_per_node,
            background_depth=self.background_depth,
        )

    def tree_builder_params(self) -> TreeBuilderParams:
        return TreeBuilderParams(
            max_depth=self.max_depth,
            min_sample_count=self.min_sample_count,
            label_num=self.label_num,
            split_search=self.split_search_params(),
        )


class RandomForest:
    """Ensemble of depth-feature trees whose leaf distributions are averaged."""

    def __init__(
        self,
        image_pool: ImagePool | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.image_pool = image_pool
        self.rng = rng
        self.params: TrainParams | None = None
        self.trees: list[Tree | None] = []
        self.label_num: int | None = None
        self.background_depth = BACKGROUND_DEPTH
        self.metrics: dict = {}

    def _resolve_pool(self, params: TrainParams) -> ImagePool:
        if self.image_pool is None:
            if params.img_dir is None:
                raise DataError("no image pool and no img_dir to load images from")
            self.image_pool = ImagePool.from_directory(params.img_dir)

        if len(self.image_pool) < params.img_num:
            raise DataError(
                f"img_num is {params.img_num} but only {len(self.image_pool)} images are available"
            )
        return self.image_pool

    def _grow_tree(self, tree_id: int, params: TrainParams, pool: ImagePool) -> Tree:
        start = time.perf_counter()
        tree_rng = np.random.default_rng(int(self.rng.integers(1, 2**31 - 1)))

        candidate_ids = pool.image_ids[: params.img_num]
        chosen = tree_rng.choice(candidate_ids, size=params.train_img_num, replace=False)
        train_data = TrainData.sample_from_pool(
            pool,
            chosen,
            sample_pixel_num=params.sample_pixel_num,
            label_num=params.label_num,
            rng=tree_rng,
        )

        builder = TreeBuilder(
            train_data=train_data,
            image_pool=pool,
            params=params.tree_builder_params(),
            rng=tree_rng,
        )
        tree = builder.build_tree()

        elapsed = time.perf_counter() - start
        self.metrics.setdefault("tree_metrics", []).append(
            {
                "tree_idx": tree_id,
                "samples": len(train_data),
                "nodes": len(tree),
                "nodes_visited": builder.metrics.nodes_visited,
                "nodes_split": builder.metrics.nodes_split,
                "leaves": builder.metrics.leaves,
                "split_search_time_sec": builder.metrics.split_search_time_sec,
                "train_time_sec": elapsed,
            }
        )
        logger.info(
            "Tree %d: %d samples from %d images, %d nodes (%d leaves, depth %d) in %.2fs",
            tree_id,
            len(train_data),
            len(chosen),
            len(tree),
            builder.metrics.leaves,
            tree.max_depth,
            elapsed,
        )
        return tree

    def train_forest(self, params: TrainParams) -> "RandomForest":
        pool = self._resolve_pool(params)
        if self.rng is None:
            self.rng = np.random.default_rng(params.random_state)

        self.metrics = {"tree_metrics": []}
        logger.info(
            "Training %d trees on %d of %d images (max_depth=%d)",
            params.tree_num,
            params.train_img_num,
            params.img_num,
            params.max_depth,
        )

        trees = [self._grow_tree(tree_id, params, pool) for tree_id in range(params.tree_num)]

        self.trees = trees
        self.params = params
        self.label_num = params.label_num
        self.background_depth = params.background_depth
        return self

    def train(self, tree_id: int) -> Tree:
        """Re-grow the tree at ``tree_id`` with a fresh sample draw."""
        if self.params is None:
            raise RuntimeError("train_forest must run before single trees can be trained")
        if not 0 <= tree_id < self.params.tree_num:
            raise IndexError(f"tree id {tree_id} out of range")

        tree = self._grow_tree(tree_id, self.params, self._resolve_pool(self.params))
        while len(self.trees) <= tree_id:
            self.trees.append(None)
        self.trees[tree_id] = tree
        return tree

    def _fitted_trees(self) -> list[Tree]:
        if not self.trees or any(tree is None for tree in self.trees):
            raise RuntimeError("Forest must be trained or loaded before use")
        return self.trees

    def write_forest(self, dir_name: str | Path) -> None:
        trees = self._fitted_trees()
        directory = Path(dir_name)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ForestIOError(f"cannot create directory ({exc})", path=str(directory)) from exc

        for index, tree in enumerate(trees):
            write_tree(tree, tree_path(directory, index), self.background_depth)
        logger.info("Wrote %d trees to %s", len(trees), directory)

    def load_forest(self, tree_num: int, label_num: int, dir_name: str | Path) -> "RandomForest":
        if tree_num <= 0 or label_num <= 0:
            raise ConfigurationError("tree_num and label_num must be positive")

        paths = [tree_path(dir_name, index) for index in range(tree_num)]
        trees = [load_tree(path, label_num) for path in paths]
        background_depth = trees[0].background_depth
        for path, tree in zip(paths[1:], trees[1:]):
            if tree.background_depth != background_depth:
                raise FormatError(
                    f"background depth {tree.background_depth!r} differs from {background_depth!r}",
                    str(path),
                )

        # train() needs the parameters of a train_forest run.
        self.params = None
        self.trees = trees
        self.label_num = label_num
        self.background_depth = background_depth
        logger.info("Loaded %d trees from %s", tree_num, dir_name)
        return self

    def predict_distribution(self, image: DepthImage, pixel) -> np.ndarray:
        trees = self._fitted_trees()
        total = sum(tree.leaf_distribution(pixel, image, self.background_depth) for tree in trees)
        return total / float(len(trees))

    def predict(self, image: DepthImage, pixel) -> tuple[int, float]:
        distribution = self.predict_distribution(image, pixel)
        label = int(np.argmax(distribution))
        return label, float(distribution[label])

    def predict_pixels(
        self,
        image: DepthImage,
        xs: np.ndarray,
        ys: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        trees = self._fitted_trees()
        total = trees[0].leaf_distributions(image, xs, ys, self.background_depth)
        for tree in trees[1:]:
            total += tree.leaf_distributions(image, xs, ys, self.background_depth)
        distribution = total / float(len(trees))

        labels = np.argmax(distribution, axis=1)
        probs = distribution[np.arange(labels.size), labels]
        return labels.astype(np.int32), probs

    def test_classification(self, image: DepthImage) -> float:
        xs, ys, truth = image.labeled_pixels()
        if truth.size == 0:
            raise DataError("test image has no labeled pixels")
        predicted, _ = self.predict_pixels(image, xs, ys)
        return float(np.mean(predicted == truth))

    def test_classification_image(self, image: DepthImage, out_path: str | Path) -> float:
        """Accuracy over labeled pixels; also saves the predicted label map as an image."""
        if image.labels is None or not np.any(image.labels >= 0):
            raise DataError("test image has no labeled pixels")

        ys, xs = np.indices((image.height, image.width))
        predicted, _ = self.predict_pixels(image, xs.ravel(), ys.ravel())
        predicted = predicted.reshape(image.height, image.width)

        labeled = image.labels >= 0
        accuracy = float(np.mean(predicted[labeled] == image.labels[labeled]))

        label_map = predicted.copy()
        label_map[~image.valid_mask] = -1

        try:
            self._write_label_image(label_map, out_path)
        except (OSError, ValueError) as exc:
            logger.error("Could not write classification image %s: %s", out_path, exc)

        return accuracy

    @staticmethod
    def _write_label_image(label_map: np.ndarray, out_path: str | Path) -> None:
        cmap = matplotlib.colormaps["tab20"]
        rgb = cmap(np.mod(label_map, cmap.N))[..., :3]
        rgb[label_map < 0] = 0.0
        plt.imsave(str(out_path), rgb)

    def traversal(self, tree_id: int) -> list[str]:
        tree = self._fitted_trees()[tree_id]
        lines = tree.describe()
        for line in lines:
            logger.info("tree %d %s", tree_id, line)
        return lines

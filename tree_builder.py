from __future__ import annotations

from dataclasses import dataclass, field
import logging

import numpy as np

from data_structures.tree import Tree, TreeNode
from depth_feature import BACKGROUND_DEPTH, SplitCandidate, range_features
from depth_image import ImagePool
from forest_errors import ConfigurationError, DataError
from split_search import (
    SplitSearch,
    SplitSearchParams,
    SplitSearchResult,
    entropy,
    label_distribution,
)
from train_data import TrainData

logger = logging.getLogger(__name__)


@dataclass
class TreeNodeStats:
    depth: int
    node_size: int
    gain: float
    split_index: int


@dataclass
class TreeBuildMetrics:
    split_search_time_sec: float = 0.0
    candidates_evaluated: int = 0
    nodes_visited: int = 0
    nodes_split: int = 0
    leaves: int = 0
    node_metrics: list[TreeNodeStats] = field(default_factory=list)


@dataclass
class TreeBuilderParams:
    max_depth: int = 20
    min_sample_count: int = 100
    label_num: int = 2
    split_search: SplitSearchParams = field(default_factory=SplitSearchParams)

    def __post_init__(self) -> None:
        if self.max_depth < 0:
            raise ConfigurationError("max_depth must be >= 0")
        if self.min_sample_count < 0:
            raise ConfigurationError("min_sample_count must be >= 0")
        if self.label_num <= 0:
            raise ConfigurationError("label_num must be positive")


def partition(
    train_data: TrainData,
    image_pool: ImagePool,
    begin: int,
    end: int,
    candidate: SplitCandidate,
    background: float = BACKGROUND_DEPTH,
) -> int:
    """Reorder ``[begin, end)`` so LEFT samples precede RIGHT ones; return the boundary."""
    if end <= begin:
        return begin
    groups = train_data.group_by_image(begin, end, image_pool)
    values = range_features(candidate.u, candidate.v, groups, end - begin, background)
    return train_data.partition_by_mask(begin, end, values < candidate.threshold)


class TreeBuilder:
    def __init__(
        self,
        train_data: TrainData,
        image_pool: ImagePool,
        params: TreeBuilderParams,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.train_data = train_data
        self.image_pool = image_pool
        self.params = params
        self.rng = rng if rng is not None else np.random.default_rng(0)
        self.metrics = TreeBuildMetrics()

    def is_leaf_node(self, depth: int, n_samples: int) -> bool:
        if depth >= self.params.max_depth:
            return True
        if n_samples < self.params.min_sample_count:
            return True
        return False

    def _find_best_split(self, begin: int, end: int, parent_entropy: float) -> SplitSearchResult:
        search = SplitSearch(
            train_data=self.train_data,
            image_pool=self.image_pool,
            begin=begin,
            end=end,
            label_num=self.params.label_num,
            params=self.params.split_search,
            rng=self.rng,
        )
        result = search.search(parent_entropy)

        self.metrics.split_search_time_sec += result.metrics.time_spent_sec
        self.metrics.candidates_evaluated += result.metrics.candidates_evaluated
        return result

    def build_tree(self, begin: int = 0, end: int | None = None) -> Tree:
        if end is None:
            end = len(self.train_data)
        if end <= begin:
            raise DataError("cannot grow a tree from an empty sample range")

        tree = Tree(background_depth=self.params.split_search.background_depth)
        root_id = tree.add_node(TreeNode(depth=0))
        stack = [(root_id, begin, end)]

        while stack:
            node_id, lo, hi = stack.pop()
            node = tree.nodes[node_id]
            self.metrics.nodes_visited += 1

            node.n_samples = hi - lo
            node.distribution = label_distribution(
                self.train_data.labels_in(lo, hi), self.params.label_num
            )
            node_entropy = entropy(node.distribution)

            if self.is_leaf_node(node.depth, node.n_samples) or node_entropy <= 0.0:
                continue

            split_result = self._find_best_split(lo, hi, node_entropy)
            if split_result.candidate is None or not np.isfinite(split_result.gain):
                continue
            if split_result.gain <= 0.0:
                continue

            split_index = partition(
                self.train_data,
                self.image_pool,
                lo,
                hi,
                split_result.candidate,
                self.params.split_search.background_depth,
            )
            if split_index == lo or split_index == hi:
                continue

            self.metrics.node_metrics.append(
                TreeNodeStats(
                    depth=node.depth,
                    node_size=node.n_samples,
                    gain=split_result.gain,
                    split_index=split_index,
                )
            )

            node.is_leaf = False
            node.candidate = split_result.candidate
            node.gain = split_result.gain
            node.distribution = None

            node.left = tree.add_node(TreeNode(depth=node.depth + 1))
            node.right = tree.add_node(TreeNode(depth=node.depth + 1))
            self.metrics.nodes_split += 1

            stack.append((node.right, split_index, hi))
            stack.append((node.left, lo, split_index))

        self.metrics.leaves = tree.leaf_count
        logger.debug(
            "Grew tree: %d nodes, %d leaves, depth %d",
            len(tree),
            self.metrics.leaves,
            tree.max_depth,
        )
        return tree

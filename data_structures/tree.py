from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from depth_feature import BACKGROUND_DEPTH, PixelSet, SplitCandidate, calc_features, classify_pixel
from depth_image import DepthImage


@dataclass
class TreeNode:
    is_leaf: bool = True
    candidate: SplitCandidate | None = None
    left: int = -1
    right: int = -1
    distribution: np.ndarray | None = None
    depth: int = 0
    n_samples: int = 0
    gain: float = 0.0


class Tree:
    """Binary tree kept as an arena of nodes; the root is node 0."""

    root = 0

    def __init__(
        self, nodes: list[TreeNode] | None = None, background_depth: float = BACKGROUND_DEPTH
    ) -> None:
        self.nodes: list[TreeNode] = nodes if nodes is not None else []
        self.background_depth = background_depth

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(self, node: TreeNode) -> int:
        self.nodes.append(node)
        return len(self.nodes) - 1

    def add_leaf(self, distribution: np.ndarray, depth: int = 0) -> int:
        return self.add_node(
            TreeNode(distribution=np.asarray(distribution, dtype=np.float64), depth=depth)
        )

    def add_split(self, candidate: SplitCandidate, depth: int = 0) -> int:
        """Add an internal node; its children are attached by the caller."""
        return self.add_node(TreeNode(is_leaf=False, candidate=candidate, depth=depth))

    @property
    def leaf_count(self) -> int:
        return sum(1 for node in self.nodes if node.is_leaf)

    @property
    def max_depth(self) -> int:
        return max((depth for _, depth in self.preorder()), default=0)

    def parent_of(self, node_id: int) -> int:
        for idx, node in enumerate(self.nodes):
            if not node.is_leaf and node_id in (node.left, node.right):
                return idx
        return -1

    def get_depth(self, node_id: int) -> int:
        """Depth of a node, found by walking up to the root."""
        depth = 0
        while node_id != self.root:
            node_id = self.parent_of(node_id)
            if node_id < 0:
                raise ValueError("node is not attached to the root")
            depth += 1
        return depth

    def preorder(self) -> Iterator[tuple[int, int]]:
        if not self.nodes:
            return
        stack = [(self.root, 0)]
        while stack:
            node_id, depth = stack.pop()
            yield node_id, depth
            node = self.nodes[node_id]
            if not node.is_leaf:
                stack.append((node.right, depth + 1))
                stack.append((node.left, depth + 1))

    def leaf_distribution(
        self,
        pixel,
        image: DepthImage,
        background: float = BACKGROUND_DEPTH,
    ) -> np.ndarray:
        node = self.nodes[self.root]
        while not node.is_leaf:
            side = classify_pixel(node.candidate, pixel, image, background)
            node = self.nodes[node.left if side == PixelSet.LEFT else node.right]
        return node.distribution

    def leaf_distributions(
        self,
        image: DepthImage,
        xs: np.ndarray,
        ys: np.ndarray,
        background: float = BACKGROUND_DEPTH,
    ) -> np.ndarray:
        """Leaf distribution reached by every pixel ``(xs[i], ys[i])``."""
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        label_num = next(n.distribution.size for n in self.nodes if n.is_leaf)
        out = np.zeros((xs.size, label_num), dtype=np.float64)

        stack = [(self.root, np.arange(xs.size))]
        while stack:
            node_id, rows = stack.pop()
            if rows.size == 0:
                continue
            node = self.nodes[node_id]
            if node.is_leaf:
                out[rows] = node.distribution
                continue

            c = node.candidate
            values = calc_features(c.u, c.v, xs[rows], ys[rows], image, background)
            goes_left = values < c.threshold
            stack.append((node.left, rows[goes_left]))
            stack.append((node.right, rows[~goes_left]))

        return out

    def describe(self) -> list[str]:
        lines = []
        for node_id, depth in self.preorder():
            node = self.nodes[node_id]
            indent = "  " * depth
            if node.is_leaf:
                probs = " ".join(f"{p:.4f}" for p in node.distribution)
                lines.append(f"{indent}[{node_id}] leaf n={node.n_samples} p=({probs})")
            else:
                c = node.candidate
                lines.append(
                    f"{indent}[{node_id}] split u=({c.u.dx},{c.u.dy}) v=({c.v.dx},{c.v.dy}) "
                    f"t={c.threshold:.4f} gain={node.gain:.4f}"
                )
        return lines

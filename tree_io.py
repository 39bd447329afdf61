"""Text persistence for trees.

A tree file starts with a header record holding the background depth used for
missing depth lookups, followed by one record per node in pre-order::

    B <background_depth>
    I <id> <ux> <uy> <vx> <vy> <threshold>
    L <id> <p_0> ... <p_{k-1}>

Floats are written with ``repr`` so they load back bit-for-bit. Files without
a header load with the default background depth.
"""
from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from data_structures.tree import Tree, TreeNode
from depth_feature import BACKGROUND_DEPTH, Offset, PixelSet, SplitCandidate
from forest_errors import ForestIOError, FormatError

logger = logging.getLogger(__name__)

BACKGROUND = "B"
INTERNAL = "I"
LEAF = "L"

# Allowed drift of a leaf distribution's sum from 1.
DISTRIBUTION_TOLERANCE = 1e-6


def tree_path(directory: str | Path, index: int) -> Path:
    return Path(directory) / f"{index}-Tree.txt"


def _format_node(node_id: int, node: TreeNode) -> str:
    if node.is_leaf:
        probs = " ".join(repr(float(p)) for p in node.distribution)
        return f"{LEAF} {node_id} {probs}"
    c = node.candidate
    return (
        f"{INTERNAL} {node_id} {c.u.dx} {c.u.dy} {c.v.dx} {c.v.dy} {float(c.threshold)!r}"
    )


def write_tree(tree: Tree, path: str | Path, background_depth: float | None = None) -> None:
    """Write ``tree`` to ``path``.

    ``background_depth`` overrides the value stored on the tree.
    """
    if len(tree) == 0:
        raise ValueError("cannot write an empty tree")
    if background_depth is None:
        background_depth = tree.background_depth

    lines = [f"{BACKGROUND} {float(background_depth)!r}"]
    lines.extend(_format_node(node_id, tree.nodes[node_id]) for node_id, _ in tree.preorder())
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines))
            f.write("\n")
    except OSError as exc:
        raise ForestIOError(f"cannot write tree ({exc.strerror or exc})", path=str(path)) from exc


def _parse_background(fields: list[str], path: str, line_no: int) -> float:
    if len(fields) != 2:
        raise FormatError(f"background record needs 2 fields, got {len(fields)}", path, line_no)
    try:
        value = float(fields[1])
    except ValueError as exc:
        raise FormatError(f"malformed background depth ({exc})", path, line_no) from exc
    if not np.isfinite(value):
        raise FormatError(f"background depth must be finite, got {fields[1]}", path, line_no)
    return value


def _check_distribution(distribution: np.ndarray, path: str, line_no: int) -> None:
    if not np.all(np.isfinite(distribution)):
        raise FormatError("leaf distribution has non-finite probabilities", path, line_no)
    if np.any(distribution < 0):
        raise FormatError("leaf distribution has negative probabilities", path, line_no)
    total = float(distribution.sum())
    if abs(total - 1.0) > DISTRIBUTION_TOLERANCE:
        raise FormatError(f"leaf distribution sums to {total!r}, not 1", path, line_no)


def _parse_record(fields: list[str], path: str, line_no: int, label_num: int | None) -> tuple[int, TreeNode]:
    kind = fields[0]
    try:
        node_id = int(fields[1])
        if kind == INTERNAL:
            if len(fields) != 7:
                raise FormatError(
                    f"internal record needs 7 fields, got {len(fields)}", path, line_no
                )
            ux, uy, vx, vy = (int(value) for value in fields[2:6])
            threshold = float(fields[6])
            if not np.isfinite(threshold):
                raise FormatError(f"threshold must be finite, got {fields[6]}", path, line_no)
            candidate = SplitCandidate(u=Offset(ux, uy), v=Offset(vx, vy), threshold=threshold)
            return node_id, TreeNode(is_leaf=False, candidate=candidate)
        if kind == LEAF:
            distribution = np.array([float(value) for value in fields[2:]], dtype=np.float64)
            if distribution.size == 0:
                raise FormatError("leaf record has no distribution", path, line_no)
            if label_num is not None and distribution.size != label_num:
                raise FormatError(
                    f"leaf has {distribution.size} probabilities, expected {label_num}",
                    path,
                    line_no,
                )
            _check_distribution(distribution, path, line_no)
            return node_id, TreeNode(distribution=distribution)
    except FormatError:
        raise
    except (IndexError, ValueError) as exc:
        raise FormatError(f"malformed record ({exc})", path, line_no) from exc

    raise FormatError(f"unknown node type {kind!r}", path, line_no)


def load_tree(path: str | Path, label_num: int | None = None) -> Tree:
    """Rebuild a tree from its pre-order records.

    Every internal node leaves two pending attachments, right below left on
    the work-list, and each following record fills the most recent one.
    """
    path_str = str(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw_lines = f.readlines()
    except OSError as exc:
        raise ForestIOError(f"cannot read tree ({exc.strerror or exc})", path=path_str) from exc

    background_depth = None
    records: list[tuple[int, int, TreeNode]] = []
    for line_no, line in enumerate(raw_lines, start=1):
        fields = line.split()
        if not fields or fields[0].startswith("#"):
            continue
        if fields[0] == BACKGROUND:
            if records or background_depth is not None:
                raise FormatError("background record must come first", path_str, line_no)
            background_depth = _parse_background(fields, path_str, line_no)
            continue
        node_id, node = _parse_record(fields, path_str, line_no, label_num)
        records.append((line_no, node_id, node))

    if not records:
        raise FormatError("tree file has no records", path_str)

    n = len(records)
    nodes: list[TreeNode | None] = [None] * n
    pending: list[tuple[int, PixelSet]] = []

    for position, (line_no, node_id, node) in enumerate(records):
        if not 0 <= node_id < n or nodes[node_id] is not None:
            raise FormatError(f"unexpected node id {node_id}", path_str, line_no)

        if position == 0:
            if node_id != Tree.root:
                raise FormatError(f"root must have id {Tree.root}, got {node_id}", path_str, line_no)
        else:
            if not pending:
                raise FormatError("record after the tree is complete", path_str, line_no)
            parent_id, side = pending.pop()
            parent = nodes[parent_id]
            node.depth = parent.depth + 1
            if side == PixelSet.LEFT:
                parent.left = node_id
            else:
                parent.right = node_id

        nodes[node_id] = node
        if not node.is_leaf:
            pending.append((node_id, PixelSet.RIGHT))
            pending.append((node_id, PixelSet.LEFT))

    if pending:
        raise FormatError(
            f"tree ended with {len(pending)} missing children", path_str, records[-1][0]
        )

    if background_depth is None:
        background_depth = BACKGROUND_DEPTH
    logger.debug("Loaded %d nodes from %s", n, path_str)
    return Tree(nodes, background_depth=background_depth)

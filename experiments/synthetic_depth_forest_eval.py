import argparse
import logging
import sys
import tempfile
import time
from pathlib import Path

import numpy as np

# Allow running as: python experiments/synthetic_depth_forest_eval.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from depth_image import DepthImage, ImagePool
from random_forest import RandomForest, TrainParams

LABEL_NAMES = ["floor", "body", "head"]


def make_scene(rng, height=60, width=80):
    """Floor plane with a standing box-shaped body and a round head in front of it."""
    depth = np.full((height, width), 3.0, dtype=np.float64)
    labels = np.zeros((height, width), dtype=np.int32)

    body_w = int(rng.integers(12, 20))
    body_h = int(rng.integers(20, 28))
    x0 = int(rng.integers(5, width - body_w - 5))
    y0 = int(rng.integers(15, height - body_h - 2))
    body_depth = float(rng.uniform(1.5, 2.5))

    depth[y0 : y0 + body_h, x0 : x0 + body_w] = body_depth
    labels[y0 : y0 + body_h, x0 : x0 + body_w] = 1

    radius = max(3, body_w // 3)
    cy = y0 - radius
    cx = x0 + body_w // 2
    ys, xs = np.indices((height, width))
    head = (ys - cy) ** 2 + (xs - cx) ** 2 <= radius**2
    depth[head] = body_depth - 0.1
    labels[head] = 2

    depth += rng.normal(scale=0.01, size=depth.shape)

    # Sensor dropouts carry no depth and no label.
    dropout = rng.uniform(size=depth.shape) < 0.02
    depth[dropout] = 0.0
    labels[dropout] = -1
    return DepthImage(depth, labels)


def evaluate(args):
    rng = np.random.default_rng(args.seed)
    train_images = [make_scene(rng) for _ in range(args.train_images)]
    test_images = [make_scene(rng) for _ in range(args.test_images)]

    params = TrainParams(
        tree_num=args.trees,
        label_num=len(LABEL_NAMES),
        img_num=args.train_images,
        max_depth=args.max_depth,
        min_sample_count=args.min_sample_count,
        sample_pixel_num=args.pixels_per_image,
        train_img_num=min(args.images_per_tree, args.train_images),
        offset_num=args.offsets,
        threshold_num=args.thresholds,
        offset_range=(-args.offset_range, args.offset_range),
        threshold_range=(-args.threshold_range, args.threshold_range),
        threads_per_node=args.threads,
        random_state=args.seed,
    )

    forest = RandomForest(image_pool=ImagePool(train_images))
    start = time.perf_counter()
    forest.train_forest(params)
    train_time = time.perf_counter() - start

    out_dir = Path(args.output) if args.output else Path(tempfile.mkdtemp(prefix="depth_forest_"))
    forest.write_forest(out_dir)
    loaded = RandomForest().load_forest(params.tree_num, params.label_num, out_dir)

    accuracies = []
    for idx, image in enumerate(test_images):
        if idx == 0:
            acc = loaded.test_classification_image(image, out_dir / "test-0.png")
        else:
            acc = loaded.test_classification(image)
        accuracies.append(acc)

    print(f"Trees written to: {out_dir}")
    print(f"train_time_sec={train_time:.2f}")
    for tree_metrics in forest.metrics["tree_metrics"]:
        print(
            "tree={tree_idx} nodes={nodes} leaves={leaves} "
            "split_search_time_sec={split_search_time_sec:.2f}".format(**tree_metrics)
        )
    print(f"test_accuracy mean={np.mean(accuracies):.4f} min={np.min(accuracies):.4f}")


def main():
    parser = argparse.ArgumentParser(
        description="Train and evaluate a depth-feature forest on synthetic scenes"
    )
    parser.add_argument("--trees", type=int, default=3)
    parser.add_argument("--max-depth", type=int, default=12)
    parser.add_argument("--min-sample-count", type=int, default=20)
    parser.add_argument("--train-images", type=int, default=20)
    parser.add_argument("--test-images", type=int, default=5)
    parser.add_argument("--images-per-tree", type=int, default=10)
    parser.add_argument("--pixels-per-image", type=int, default=300)
    parser.add_argument("--offsets", type=int, default=50)
    parser.add_argument("--thresholds", type=int, default=20)
    parser.add_argument("--offset-range", type=int, default=15)
    parser.add_argument("--threshold-range", type=float, default=2.0)
    parser.add_argument("--threads", type=int, default=4)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--output", type=str, default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    evaluate(args)


if __name__ == "__main__":
    main()

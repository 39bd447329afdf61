import numpy as np
import pytest

from depth_feature import Offset, PixelSet, SplitCandidate, calc_feature, calc_features, classify_pixel
from depth_image import DepthImage, ImagePool
from forest_errors import DataError, ForestIOError
from train_data import PixelInfo, TrainData


def _ramp_image():
    depth = np.tile(np.arange(1.0, 7.0), (4, 1))  # 4 rows, depth = x + 1
    depth[2, 3] = 0.0
    labels = np.full(depth.shape, -1, dtype=np.int32)
    labels[1, 1] = 0
    labels[1, 4] = 1
    return DepthImage(depth, labels)


def test_depth_lookup_reports_validity():
    image = _ramp_image()
    assert image.dimensions() == (6, 4)
    assert image.depth(2, 0) == (3.0, True)
    assert image.depth(3, 2) == (0.0, False)
    assert image.depth(-1, 0) == (0.0, False)
    assert image.depth(6, 0) == (0.0, False)


def test_feature_substitutes_background_for_missing_depths():
    image = _ramp_image()
    pixel = PixelInfo(image_id=0, x=1, y=1, label=0)

    assert calc_feature(Offset(2, 0), Offset(0, 0), pixel, image, background=100.0) == 2.0
    # Offset leaves the image on the left.
    assert calc_feature(Offset(-5, 0), Offset(0, 0), pixel, image, background=100.0) == 98.0
    # Offset hits the missing value at (3, 2).
    assert calc_feature(Offset(0, 0), Offset(2, 1), pixel, image, background=100.0) == -98.0


def test_vectorized_features_match_single_pixel_features():
    image = _ramp_image()
    rng = np.random.default_rng(0)
    xs = rng.integers(0, 6, size=30)
    ys = rng.integers(0, 4, size=30)
    u, v = Offset(3, -1), Offset(-2, 2)

    values = calc_features(u, v, xs, ys, image, background=50.0)
    for x, y, value in zip(xs, ys, values):
        pixel = PixelInfo(0, int(x), int(y), 0)
        assert value == calc_feature(u, v, pixel, image, background=50.0)


def test_classify_pixel_sends_features_below_threshold_left():
    image = _ramp_image()
    pixel = PixelInfo(0, 1, 1, 0)
    u, v = Offset(2, 0), Offset(0, 0)  # feature is 2.0

    assert classify_pixel(SplitCandidate(u, v, 2.5), pixel, image) == PixelSet.LEFT
    assert classify_pixel(SplitCandidate(u, v, 2.0), pixel, image) == PixelSet.RIGHT


def test_pool_loads_npz_directory_with_bounded_working_set(tmp_path):
    for idx in range(3):
        depth = np.full((5, 7), float(idx + 1))
        labels = np.full((5, 7), idx, dtype=np.int32)
        np.savez(tmp_path / f"img_{idx:02d}.npz", depth=depth, labels=labels)

    pool = ImagePool.from_directory(tmp_path, capacity=2)
    assert len(pool) == 3
    assert pool.dimensions(2) == (7, 5)
    assert pool.depth(1, 0, 0) == (2.0, True)

    loaded = [pool.get(i) for i in range(3)]
    assert pool.get(0) is not loaded[0]
    assert pool.get(2) is loaded[2]


def test_pool_rejects_missing_directory(tmp_path):
    with pytest.raises(ForestIOError):
        ImagePool.from_directory(tmp_path / "nope")


def test_sampling_draws_requested_pixels_per_image():
    rng = np.random.default_rng(1)
    images = [DepthImage(np.ones((10, 10)), rng.integers(0, 3, size=(10, 10))) for _ in range(2)]
    pool = ImagePool(images)

    data = TrainData.sample_from_pool(pool, [0, 1], 15, 3, np.random.default_rng(2))
    assert len(data) == 30
    assert np.count_nonzero(data.image_ids == 0) == 15
    for i in range(len(data)):
        p = data[i]
        assert images[p.image_id].labels[p.y, p.x] == p.label


def test_sampling_rejects_labels_outside_label_range():
    pool = ImagePool([DepthImage(np.ones((3, 3)), np.full((3, 3), 2))])
    with pytest.raises(DataError):
        TrainData.sample_from_pool(pool, [0], 4, 2, np.random.default_rng(0))


def test_partition_by_mask_keeps_pixels_and_orders_sides():
    pixels = [PixelInfo(0, i, 0, i % 2) for i in range(9)]
    data = TrainData.from_pixels(pixels)
    goes_left = data.labels[2:8] == 1

    split = data.partition_by_mask(2, 8, goes_left)

    assert split == 2 + int(np.count_nonzero(goes_left))
    assert np.all(data.labels[2:split] == 1)
    assert np.all(data.labels[split:8] == 0)
    assert data[0] == pixels[0] and data[1] == pixels[1] and data[8] == pixels[8]
    assert {data[i] for i in range(9)} == set(pixels)

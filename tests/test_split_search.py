import numpy as np
import pytest

from depth_feature import SplitCandidate
from depth_image import DepthImage, ImagePool
from forest_errors import ConfigurationError
from split_search import (
    SplitSearch,
    SplitSearchParams,
    ValueRange,
    entropy,
    generate_candidates,
    information_gain,
    label_distribution,
    offset_bounds,
)
from train_data import TrainData


def _random_scene(seed, n_images=3, label_num=3, pixels_per_image=40):
    rng = np.random.default_rng(seed)
    images = []
    for _ in range(n_images):
        depth = rng.uniform(1.0, 5.0, size=(20, 24))
        depth[rng.uniform(size=depth.shape) < 0.1] = 0.0
        labels = rng.integers(0, label_num, size=depth.shape)
        images.append(DepthImage(depth, labels))

    pool = ImagePool(images)
    data = TrainData.sample_from_pool(
        pool, pool.image_ids, pixels_per_image, label_num, np.random.default_rng(seed)
    )
    return pool, data


def test_entropy_of_uniform_distribution_is_log2_of_label_count():
    for k in (2, 3, 5, 8):
        assert np.isclose(entropy(np.full(k, 1.0 / k)), np.log2(k))


def test_entropy_of_one_hot_and_empty_distribution_is_zero():
    assert entropy(np.array([0.0, 1.0, 0.0])) == 0.0
    assert entropy(np.array([])) == 0.0


def test_entropy_is_never_negative():
    rng = np.random.default_rng(5)
    for _ in range(50):
        p = rng.dirichlet(np.full(4, 0.3))
        assert entropy(p) >= 0.0


def test_label_distribution_normalizes_counts():
    dist = label_distribution(np.array([0, 2, 2, 2]), label_num=3)
    assert np.allclose(dist, [0.25, 0.0, 0.75])
    assert np.isclose(dist.sum(), 1.0)

    with pytest.raises(ValueError):
        label_distribution(np.array([], dtype=np.int32), label_num=3)


def test_perfect_split_gains_the_parent_entropy():
    labels = np.array([0, 0, 1, 1])
    gain = information_gain(np.array([True, True, False, False]), labels, 1.0, label_num=2)
    assert np.isclose(gain, 1.0)


def test_gain_is_non_negative_for_random_candidates():
    pool, data = _random_scene(seed=1)
    params = SplitSearchParams(
        offset_num=10,
        threshold_num=10,
        offset_range=ValueRange(-5, 5),
        threshold_range=ValueRange(-3.0, 3.0),
    )
    search = SplitSearch(data, pool, 0, len(data), label_num=3, params=params)
    parent = entropy(label_distribution(data.labels, 3))

    for candidate in generate_candidates(params, np.random.default_rng(2)):
        assert search.gain(candidate, parent) >= 0.0


def test_split_sending_everything_one_way_gains_nothing():
    pool, data = _random_scene(seed=3)
    params = SplitSearchParams(offset_num=2, threshold_num=1)
    search = SplitSearch(data, pool, 0, len(data), label_num=3, params=params)
    parent = entropy(label_distribution(data.labels, 3))
    candidate = generate_candidates(params, np.random.default_rng(0))[0]

    all_left = SplitCandidate(u=candidate.u, v=candidate.v, threshold=1e9)
    all_right = SplitCandidate(u=candidate.u, v=candidate.v, threshold=-1e9)
    assert search.gain(all_left, parent) == 0.0
    assert search.gain(all_right, parent) == 0.0


def test_candidates_share_offsets_per_threshold_block_and_respect_ranges():
    params = SplitSearchParams(
        offset_num=6,
        threshold_num=4,
        offset_range=ValueRange(-3, 3),
        threshold_range=ValueRange(-1.5, 2.5),
    )
    candidates = generate_candidates(params, np.random.default_rng(9))

    assert len(candidates) == 24
    for k, c in enumerate(candidates):
        first = candidates[(k // 4) * 4]
        assert (c.u, c.v) == (first.u, first.v)
        for component in (c.u.dx, c.u.dy, c.v.dx, c.v.dy):
            assert -3 <= component <= 3
        assert -1.5 <= c.threshold <= 2.5


def test_fractional_offset_range_only_draws_offsets_inside_it():
    params = SplitSearchParams(
        offset_num=50,
        threshold_num=1,
        offset_range=ValueRange(-0.5, 0.5),
        threshold_range=ValueRange(0.0, 1.0),
    )
    candidates = generate_candidates(params, np.random.default_rng(4))

    for c in candidates:
        assert (c.u.dx, c.u.dy, c.v.dx, c.v.dy) == (0, 0, 0, 0)
    assert offset_bounds(ValueRange(-2.5, 1.7)) == (-2, 1)


def test_search_result_does_not_depend_on_worker_count():
    pool, data = _random_scene(seed=4, pixels_per_image=60)
    results = []
    for threads in (1, 4):
        params = SplitSearchParams(
            offset_num=12,
            threshold_num=7,
            offset_range=ValueRange(-6, 6),
            threshold_range=ValueRange(-4.0, 4.0),
            threads_per_node=threads,
        )
        search = SplitSearch(
            data, pool, 0, len(data), label_num=3, params=params, rng=np.random.default_rng(11)
        )
        results.append(search.search())

    single, parallel = results
    assert parallel.metrics.workers == 4
    assert single.candidate == parallel.candidate
    assert single.index == parallel.index
    assert single.gain == parallel.gain


def test_equal_gains_resolve_to_first_candidate():
    # A pure node makes every candidate worthless.
    depth = np.full((8, 8), 2.0)
    labels = np.ones((8, 8), dtype=np.int32)
    pool = ImagePool([DepthImage(depth, labels)])
    data = TrainData.sample_from_pool(pool, [0], 20, 2, np.random.default_rng(0))

    params = SplitSearchParams(offset_num=5, threshold_num=5, threads_per_node=4)
    search = SplitSearch(data, pool, 0, len(data), label_num=2, params=params)
    result = search.search()

    assert result.index == 0
    assert result.gain == 0.0
    assert result.candidate == search.candidates[0]


class _FailingSearch(SplitSearch):
    def _best_in_chunk(self, start, stop, parent_entropy):
        if start > 0:
            raise RuntimeError("worker failed")
        return super()._best_in_chunk(start, stop, parent_entropy)


def test_worker_failure_reaches_the_caller():
    pool, data = _random_scene(seed=6)
    params = SplitSearchParams(offset_num=4, threshold_num=4, threads_per_node=4)
    search = _FailingSearch(data, pool, 0, len(data), label_num=3, params=params)

    with pytest.raises(RuntimeError, match="worker failed"):
        search.search()


def test_invalid_search_params_are_rejected():
    with pytest.raises(ConfigurationError):
        SplitSearchParams(offset_num=0)
    with pytest.raises(ConfigurationError):
        SplitSearchParams(threads_per_node=0)
    with pytest.raises(ConfigurationError):
        ValueRange(2.0, 1.0)


def test_offset_range_without_an_integer_is_rejected():
    with pytest.raises(ConfigurationError):
        SplitSearchParams(offset_range=ValueRange(0.2, 0.8))

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import time

import numpy as np

from depth_feature import BACKGROUND_DEPTH, Offset, SplitCandidate, range_features
from depth_image import ImagePool
from forest_errors import ConfigurationError
from train_data import TrainData

logger = logging.getLogger(__name__)


def entropy(distribution: np.ndarray) -> float:
    """Shannon entropy in bits of a normalized label distribution."""
    p = np.asarray(distribution, dtype=np.float64)
    p = p[p > 0.0]
    if p.size <= 1:
        return 0.0
    return float(max(-np.sum(p * np.log2(p)), 0.0))


def label_distribution(labels: np.ndarray, label_num: int) -> np.ndarray:
    labels = np.asarray(labels, dtype=np.int64)
    if labels.size == 0:
        raise ValueError("label distribution of an empty range is undefined")
    counts = np.bincount(labels, minlength=label_num).astype(np.float64)
    return counts / float(labels.size)


def information_gain(
    goes_left: np.ndarray,
    labels: np.ndarray,
    parent_entropy: float,
    label_num: int,
) -> float:
    """Entropy reduction of splitting ``labels`` by ``goes_left``.

    A split leaving one side empty gains nothing.
    """
    n = labels.size
    n_left = int(np.count_nonzero(goes_left))
    n_right = n - n_left
    if n_left == 0 or n_right == 0:
        return 0.0

    left_counts = np.bincount(labels[goes_left], minlength=label_num)
    right_counts = np.bincount(labels, minlength=label_num) - left_counts

    h_left = entropy(left_counts / float(n_left))
    h_right = entropy(right_counts / float(n_right))
    children = (n_left / n) * h_left + (n_right / n) * h_right
    return max(parent_entropy - children, 0.0)


@dataclass(frozen=True)
class ValueRange:
    low: float
    high: float

    def __post_init__(self) -> None:
        if not (np.isfinite(self.low) and np.isfinite(self.high)):
            raise ConfigurationError("range bounds must be finite")
        if self.low > self.high:
            raise ConfigurationError(f"malformed range [{self.low}, {self.high}]")


def offset_bounds(offset_range: ValueRange) -> tuple[int, int]:
    """Inclusive integer bounds of the offsets inside ``offset_range``."""
    low = int(np.ceil(offset_range.low))
    high = int(np.floor(offset_range.high))
    if low > high:
        raise ConfigurationError(
            f"offset range [{offset_range.low}, {offset_range.high}] contains no integer"
        )
    return low, high


@dataclass
class SplitSearchParams:
    offset_num: int = 100
    threshold_num: int = 50
    offset_range: ValueRange = field(default_factory=lambda: ValueRange(-30, 30))
    threshold_range: ValueRange = field(default_factory=lambda: ValueRange(-300.0, 300.0))
    threads_per_node: int = 4
    background_depth: float = BACKGROUND_DEPTH

    def __post_init__(self) -> None:
        if self.offset_num <= 0:
            raise ConfigurationError("offset_num must be positive")
        if self.threshold_num <= 0:
            raise ConfigurationError("threshold_num must be positive")
        if self.threads_per_node <= 0:
            raise ConfigurationError("threads_per_node must be positive")
        if not np.isfinite(self.background_depth):
            raise ConfigurationError("background_depth must be finite")
        offset_bounds(self.offset_range)


@dataclass
class SplitSearchMetrics:
    candidates_evaluated: int = 0
    workers: int = 0
    time_spent_sec: float = 0.0


@dataclass
class SplitSearchResult:
    candidate: SplitCandidate | None
    gain: float
    index: int
    metrics: SplitSearchMetrics


def generate_candidates(params: SplitSearchParams, rng: np.random.Generator) -> list[SplitCandidate]:
    """Draw ``offset_num`` offset pairs, each paired with ``threshold_num`` thresholds.

    Candidate ``k`` uses offset pair ``k // threshold_num``.
    """
    low, high = offset_bounds(params.offset_range)
    offsets = rng.integers(low, high, size=(params.offset_num, 4), endpoint=True)
    thresholds = rng.uniform(
        params.threshold_range.low,
        params.threshold_range.high,
        size=(params.offset_num, params.threshold_num),
    )

    candidates: list[SplitCandidate] = []
    for pair_idx in range(params.offset_num):
        ux, uy, vx, vy = (int(c) for c in offsets[pair_idx])
        u = Offset(ux, uy)
        v = Offset(vx, vy)
        for threshold in thresholds[pair_idx]:
            candidates.append(SplitCandidate(u=u, v=v, threshold=float(threshold)))
    return candidates


class SplitSearch:
    """Randomized best-split search for one node over ``[begin, end)``.

    The candidate index space is cut into ``threads_per_node`` contiguous
    chunks evaluated concurrently; the samples are only read.
    """

    def __init__(
        self,
        train_data: TrainData,
        image_pool: ImagePool,
        begin: int,
        end: int,
        label_num: int,
        params: SplitSearchParams,
        rng: np.random.Generator | None = None,
    ) -> None:
        if end <= begin:
            raise ValueError("split search needs a non-empty sample range")

        self.train_data = train_data
        self.image_pool = image_pool
        self.begin = begin
        self.end = end
        self.label_num = label_num
        self.params = params
        self.rng = rng if rng is not None else np.random.default_rng(0)

        self.n_node = end - begin
        self.labels = np.asarray(train_data.labels_in(begin, end), dtype=np.int64)
        self.groups = train_data.group_by_image(begin, end, image_pool)
        self.candidates: list[SplitCandidate] = []

    def features(self, candidate: SplitCandidate) -> np.ndarray:
        return range_features(
            candidate.u,
            candidate.v,
            self.groups,
            self.n_node,
            self.params.background_depth,
        )

    def gain(self, candidate: SplitCandidate, parent_entropy: float) -> float:
        goes_left = self.features(candidate) < candidate.threshold
        return information_gain(goes_left, self.labels, parent_entropy, self.label_num)

    def _best_in_chunk(self, start: int, stop: int, parent_entropy: float) -> tuple[int, float]:
        best_index = -1
        best_gain = -float("inf")
        cached_pair = -1
        values = None

        for index in range(start, stop):
            candidate = self.candidates[index]
            pair = index // self.params.threshold_num
            if pair != cached_pair:
                values = self.features(candidate)
                cached_pair = pair

            goes_left = values < candidate.threshold
            gain = information_gain(goes_left, self.labels, parent_entropy, self.label_num)
            if gain > best_gain:
                best_index = index
                best_gain = gain

        return best_index, best_gain

    def _chunks(self) -> list[tuple[int, int]]:
        n = len(self.candidates)
        workers = min(self.params.threads_per_node, n)
        bounds = np.linspace(0, n, workers + 1).astype(int)
        return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]

    def search(self, parent_entropy: float | None = None) -> SplitSearchResult:
        start = time.perf_counter()
        metrics = SplitSearchMetrics()

        if parent_entropy is None:
            parent_entropy = entropy(label_distribution(self.labels, self.label_num))

        self.candidates = generate_candidates(self.params, self.rng)
        chunks = self._chunks()
        metrics.workers = len(chunks)

        if len(chunks) == 1:
            results = [self._best_in_chunk(*chunks[0], parent_entropy)]
        else:
            with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
                futures = [
                    executor.submit(self._best_in_chunk, chunk_start, chunk_stop, parent_entropy)
                    for chunk_start, chunk_stop in chunks
                ]
                # result() re-raises a worker failure here.
                results = [future.result() for future in futures]

        best_index = -1
        best_gain = -float("inf")
        for index, gain in results:
            if index >= 0 and gain > best_gain:
                best_index = index
                best_gain = gain

        metrics.candidates_evaluated = len(self.candidates)
        metrics.time_spent_sec = time.perf_counter() - start

        if best_index < 0:
            return SplitSearchResult(None, -float("inf"), -1, metrics)

        logger.debug(
            "Best of %d candidates over %d samples: index=%d gain=%.6f",
            len(self.candidates),
            self.n_node,
            best_index,
            best_gain,
        )
        return SplitSearchResult(self.candidates[best_index], best_gain, best_index, metrics)

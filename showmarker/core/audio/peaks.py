"""
Peak extraction: raw sample stream -> base resolution amplitude sequence.

Samples are grouped into fixed size buckets and every bucket is reduced to a
summary statistic chosen by a ``ReductionPolicy``:

* ``BLENDED`` emits one value per bucket, ``0.7 * rms + 0.3 * peak``, in the
  range [0, 1] after normalisation.
* ``MIN_MAX`` emits a ``[min, max]`` pair per bucket (min first), in the
  range [-1, 1] after normalisation. Running extremes start at zero, so a
  bucket's min is never positive and its max never negative.

The policy also carries the reducer the mipmap builder uses to coarsen a
level, so neither stage branches on the representation.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

RMS_WEIGHT = 0.7
PEAK_WEIGHT = 0.3

DEFAULT_BUCKET_SIZE = 8
# (upper bound in seconds, bucket size); anything longer uses LONG_AUDIO_BUCKET_SIZE
DEFAULT_BUCKET_THRESHOLDS: Tuple[Tuple[float, int], ...] = (
    (60.0, 256),
    (300.0, 512),
    (900.0, 1024),
)
LONG_AUDIO_BUCKET_SIZE = 2048


class ExtractionCancelled(Exception):
    pass


# ------------------------------------------------------------------ reducers ------
def _blend_buckets(buckets: np.ndarray) -> np.ndarray:
    wide = buckets.astype(np.float64)
    rms = np.sqrt(np.mean(np.square(wide), axis=1))
    peak = np.max(np.abs(wide), axis=1)
    return (RMS_WEIGHT * rms + PEAK_WEIGHT * peak).astype(np.float32)


def _min_max_buckets(buckets: np.ndarray) -> np.ndarray:
    mins = np.minimum(buckets.min(axis=1), 0.0)
    maxs = np.maximum(buckets.max(axis=1), 0.0)
    return _interleave(mins, maxs)


def _max_abs_groups(groups: np.ndarray) -> np.ndarray:
    return np.abs(groups).max(axis=1).astype(np.float32)


def _min_max_groups(groups: np.ndarray) -> np.ndarray:
    mins = groups[:, 0::2].min(axis=1)
    maxs = groups[:, 1::2].max(axis=1)
    return _interleave(mins, maxs)


def _interleave(mins: np.ndarray, maxs: np.ndarray) -> np.ndarray:
    out = np.empty(mins.size * 2, dtype=np.float32)
    out[0::2] = mins
    out[1::2] = maxs
    return out


class ReductionPolicy(Enum):
    BLENDED = "blended"
    MIN_MAX = "min_max"

    @property
    def slots_per_bucket(self) -> int:
        return _POLICY_TABLE[self][0]

    @property
    def group_size(self) -> int:
        """Number of slots merged into one entry when building the next mipmap level."""
        return _POLICY_TABLE[self][1]

    @property
    def value_range(self) -> Tuple[float, float]:
        return (-1.0, 1.0) if self is ReductionPolicy.MIN_MAX else (0.0, 1.0)

    def reduce_buckets(self, buckets: np.ndarray) -> np.ndarray:
        """Reduce an ``(n_buckets, bucket_size)`` block to ``n_buckets * slots_per_bucket`` values."""
        return _POLICY_TABLE[self][2](buckets)

    def reduce_groups(self, level: np.ndarray) -> np.ndarray:
        """Coarsen one mipmap level. A trailing partial group is dropped."""
        size = self.group_size
        count = level.size // size
        if count == 0:
            return np.zeros(0, dtype=np.float32)
        groups = level[: count * size].reshape(count, size)
        return _POLICY_TABLE[self][3](groups)

    @classmethod
    def parse(cls, value) -> "ReductionPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Unknown reduction policy {value!r}") from None


_POLICY_TABLE = {
    ReductionPolicy.BLENDED: (1, 2, _blend_buckets, _max_abs_groups),
    ReductionPolicy.MIN_MAX: (2, 4, _min_max_buckets, _min_max_groups),
}


# ------------------------------------------------------------------- helpers ------
def normalize(values: Sequence[float]) -> np.ndarray:
    """Scale by the largest magnitude. All-zero input is returned unscaled."""
    values = np.asarray(values, dtype=np.float32)
    if values.size == 0:
        return values
    peak = np.max(np.abs(values))
    if not peak > 0:
        return values
    return (values / peak).astype(np.float32)


def bucket_size_for_duration(
    seconds: float,
    thresholds: Sequence[Tuple[float, int]] = DEFAULT_BUCKET_THRESHOLDS,
    long_audio_bucket_size: int = LONG_AUDIO_BUCKET_SIZE,
) -> int:
    """Short audio gets small buckets for detail, long audio large ones to cap memory."""
    ordered = sorted(thresholds)
    if ordered and (math.isnan(seconds) or seconds < 0):
        return int(ordered[0][1])
    for limit, size in ordered:
        if seconds < limit:
            return int(size)
    return int(long_audio_bucket_size)


def bucket_duration(bucket_size: int, sample_rate: int) -> float:
    """Seconds of playback covered by one base level entry."""
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")
    return bucket_size / sample_rate


def downmix(samples) -> np.ndarray:
    """Average an ``(n, channels)`` block into a float32 mono vector."""
    samples = np.asarray(samples, dtype=np.float32)
    if samples.ndim <= 1:
        return samples.reshape(-1)
    if samples.ndim != 2:
        raise ValueError(f"Expected 1-D or 2-D samples, got shape {samples.shape}")
    if samples.shape[1] == 1:
        return samples[:, 0]
    return samples.mean(axis=1, dtype=np.float32)


# ----------------------------------------------------------------- extractor ------
class PeakExtractor:
    def __init__(
        self,
        policy: ReductionPolicy = ReductionPolicy.MIN_MAX,
        bucket_size: int = DEFAULT_BUCKET_SIZE,
    ) -> None:
        if bucket_size < 1:
            raise ValueError("bucket_size must be positive")
        self.policy = ReductionPolicy.parse(policy)
        self.bucket_size = int(bucket_size)

    def expected_length(self, sample_count: int) -> int:
        buckets = -(-sample_count // self.bucket_size)
        return buckets * self.policy.slots_per_bucket

    def extract(
        self,
        chunks: Iterable[np.ndarray],
        cancel_flag: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[int], None]] = None,
    ) -> np.ndarray:
        """Reduce a chunked sample stream to a normalised amplitude sequence.

        Chunks may have any length; samples left over after the last full
        bucket of a chunk are carried into the next one. The final partial
        bucket is reduced like any other. An empty stream yields an empty
        array. Raises ``ExtractionCancelled`` as soon as ``cancel_flag``
        returns true; nothing computed so far is returned.
        """
        size = self.bucket_size
        pieces = []
        carry = np.zeros(0, dtype=np.float32)
        seen = 0

        for chunk in chunks:
            if cancel_flag and cancel_flag():
                raise ExtractionCancelled(f"Extraction cancelled after {seen} samples")
            mono = downmix(chunk)
            if mono.size == 0:
                continue
            seen += mono.size
            data = np.concatenate((carry, mono)) if carry.size else mono
            full = (data.size // size) * size
            if full:
                pieces.append(self.policy.reduce_buckets(data[:full].reshape(-1, size)))
            carry = data[full:].copy()
            if progress_callback:
                progress_callback(seen)

        if cancel_flag and cancel_flag():
            raise ExtractionCancelled(f"Extraction cancelled after {seen} samples")
        if carry.size:
            pieces.append(self.policy.reduce_buckets(carry.reshape(1, -1)))
        if not pieces:
            logger.debug("No samples decoded; returning empty amplitude sequence")
            return np.zeros(0, dtype=np.float32)

        values = np.concatenate(pieces)
        logger.debug(
            "Extracted %d values from %d samples (bucket=%d, policy=%s)",
            values.size, seen, size, self.policy.value,
        )
        return normalize(values)

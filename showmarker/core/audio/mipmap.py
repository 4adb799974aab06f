"""
Mipmap pyramid construction over a base amplitude sequence.

Level 0 is the base sequence itself. Each following level merges groups of
``policy.group_size`` consecutive slots with the policy's peak preserving
reducer, so transients survive zooming out. Every level is normalised on its
own.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np

from .peaks import ReductionPolicy, normalize

DEFAULT_MIPMAP_FLOOR = 50

# zoom factor thresholds for level 0, 1, 2; anything lower gets level 3
ZOOM_LEVEL_THRESHOLDS = (10.0, 5.0, 2.0)


def build_mipmaps(
    base: Sequence[float],
    policy: ReductionPolicy = ReductionPolicy.MIN_MAX,
    floor: int = DEFAULT_MIPMAP_FLOOR,
) -> List[np.ndarray]:
    if floor < 0:
        raise ValueError("floor must not be negative")
    policy = ReductionPolicy.parse(policy)
    current = np.asarray(base, dtype=np.float32)
    levels = [current]
    while current.size > floor:
        reduced = policy.reduce_groups(current)
        if reduced.size == 0:
            break
        current = normalize(reduced)
        levels.append(current)
    return levels


class MipmapPyramid:
    """Read side of a pyramid: pick the level that suits a zoom or pixel density."""

    def __init__(self, levels: Sequence[Sequence[float]], policy: ReductionPolicy = ReductionPolicy.MIN_MAX) -> None:
        self.levels = [np.asarray(level, dtype=np.float32) for level in levels]
        self.policy = ReductionPolicy.parse(policy)

    def __len__(self) -> int:
        return len(self.levels)

    def __getitem__(self, index: int) -> np.ndarray:
        return self.levels[index]

    @property
    def base(self) -> np.ndarray:
        if not self.levels:
            return np.zeros(0, dtype=np.float32)
        return self.levels[0]

    def entry_count(self, index: int) -> int:
        return self.levels[index].size // self.policy.slots_per_bucket

    def level_for_zoom(self, zoom: float) -> int:
        if not self.levels:
            return 0
        target = len(ZOOM_LEVEL_THRESHOLDS)
        for index, threshold in enumerate(ZOOM_LEVEL_THRESHOLDS):
            if zoom >= threshold:
                target = index
                break
        return min(target, len(self.levels) - 1)

    def level_for_resolution(self, samples_per_pixel: float, bucket_size: int) -> int:
        """Coarsest level whose entries still span no more than ``samples_per_pixel`` samples."""
        if not self.levels or bucket_size <= 0:
            return 0
        index, span = 0, bucket_size
        while index < len(self.levels) - 1 and span * 2 <= samples_per_pixel:
            index += 1
            span *= 2
        return index

    def visible(self, zoom: float) -> np.ndarray:
        if not self.levels:
            return np.zeros(0, dtype=np.float32)
        return self.levels[self.level_for_zoom(zoom)]

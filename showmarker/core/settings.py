"""
Waveform engine settings.

Settings are a plain dataclass with JSON round tripping, so the host
application can keep them next to its own preferences. Environment variables
override the cache location and reduction policy for deployments and tests.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .audio.mipmap import DEFAULT_MIPMAP_FLOOR
from .audio.peaks import (
    DEFAULT_BUCKET_THRESHOLDS,
    LONG_AUDIO_BUCKET_SIZE,
    ReductionPolicy,
    bucket_size_for_duration,
)

CACHE_DIR_ENV = "SHOWMARKER_CACHE_DIR"
POLICY_ENV = "SHOWMARKER_WAVEFORM_POLICY"
DECODER_BACKENDS = ("av", "soundfile")


def default_cache_directory() -> Path:
    base = os.environ.get("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / "showmarker" / "WaveformCache"


@dataclass
class WaveformSettings:
    policy: ReductionPolicy = ReductionPolicy.MIN_MAX
    bucket_thresholds: List[Tuple[float, int]] = field(default_factory=lambda: list(DEFAULT_BUCKET_THRESHOLDS))
    long_audio_bucket_size: int = LONG_AUDIO_BUCKET_SIZE
    mipmap_floor: int = DEFAULT_MIPMAP_FLOOR
    cache_directory: Path = field(default_factory=default_cache_directory)
    cache_max_bytes: Optional[int] = None
    writer_queue_size: int = 16
    coalesce_requests: bool = True
    max_workers: int = 2
    decoder: str = "av"
    stream_block_size: int = 65536

    def __post_init__(self) -> None:
        self.policy = ReductionPolicy.parse(self.policy)
        self.cache_directory = Path(self.cache_directory)
        self.bucket_thresholds = [(float(limit), int(size)) for limit, size in self.bucket_thresholds]
        self.validate()

    def validate(self) -> None:
        sizes = [size for _, size in self.bucket_thresholds] + [self.long_audio_bucket_size]
        if any(size < 1 for size in sizes):
            raise ValueError("bucket sizes must be positive")
        if self.mipmap_floor < 0:
            raise ValueError("mipmap_floor must not be negative")
        if self.cache_max_bytes is not None and self.cache_max_bytes < 0:
            raise ValueError("cache_max_bytes must not be negative")
        if self.writer_queue_size < 1:
            raise ValueError("writer_queue_size must be positive")
        if self.max_workers < 1:
            raise ValueError("max_workers must be positive")
        if self.decoder not in DECODER_BACKENDS:
            raise ValueError(f"decoder must be one of {DECODER_BACKENDS}, got {self.decoder!r}")
        if self.stream_block_size < 1:
            raise ValueError("stream_block_size must be positive")

    def bucket_size_for(self, duration_seconds: float) -> int:
        return bucket_size_for_duration(duration_seconds, self.bucket_thresholds, self.long_audio_bucket_size)

    def bucket_schedule(self) -> str:
        """Compact form of the duration to bucket size table, e.g. ``60:256,300:512,*:2048``."""
        steps = [f"{limit:g}:{size}" for limit, size in sorted(self.bucket_thresholds)]
        steps.append(f"*:{self.long_audio_bucket_size}")
        return ",".join(steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self.policy.value,
            "bucket_thresholds": [[limit, size] for limit, size in self.bucket_thresholds],
            "long_audio_bucket_size": self.long_audio_bucket_size,
            "mipmap_floor": self.mipmap_floor,
            "cache_directory": str(self.cache_directory),
            "cache_max_bytes": self.cache_max_bytes,
            "writer_queue_size": self.writer_queue_size,
            "coalesce_requests": self.coalesce_requests,
            "max_workers": self.max_workers,
            "decoder": self.decoder,
            "stream_block_size": self.stream_block_size,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WaveformSettings":
        max_bytes = data.get("cache_max_bytes")
        directory = data.get("cache_directory")
        return WaveformSettings(
            policy=data.get("policy", ReductionPolicy.MIN_MAX.value),
            bucket_thresholds=data.get("bucket_thresholds", list(DEFAULT_BUCKET_THRESHOLDS)),
            long_audio_bucket_size=int(data.get("long_audio_bucket_size", LONG_AUDIO_BUCKET_SIZE)),
            mipmap_floor=int(data.get("mipmap_floor", DEFAULT_MIPMAP_FLOOR)),
            cache_directory=Path(directory) if directory else default_cache_directory(),
            cache_max_bytes=int(max_bytes) if max_bytes is not None else None,
            writer_queue_size=int(data.get("writer_queue_size", 16)),
            coalesce_requests=bool(data.get("coalesce_requests", True)),
            max_workers=int(data.get("max_workers", 2)),
            decoder=str(data.get("decoder", "av")),
            stream_block_size=int(data.get("stream_block_size", 65536)),
        )

    @staticmethod
    def load(path: Path) -> "WaveformSettings":
        return WaveformSettings.from_dict(json.loads(Path(path).read_text()))

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @staticmethod
    def from_env(base: Optional["WaveformSettings"] = None) -> "WaveformSettings":
        data = (base or WaveformSettings()).to_dict()
        if os.environ.get(CACHE_DIR_ENV):
            data["cache_directory"] = os.environ[CACHE_DIR_ENV]
        if os.environ.get(POLICY_ENV):
            data["policy"] = os.environ[POLICY_ENV]
        return WaveformSettings.from_dict(data)

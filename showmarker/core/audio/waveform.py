"""
Cached waveform record and its on-disk encoding.

A record holds the full mipmap pyramid for one audio asset together with the
moment it was generated and the identity the application cached it under.
Records are immutable once built; a replaced audio file gets a new record.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .peaks import ReductionPolicy


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachedWaveform:
    mipmaps: List[List[float]]
    audio_id: str
    generated_at: datetime = field(default_factory=_utc_now)
    policy: Optional[str] = None
    bucket_size: Optional[int] = None
    mipmap_floor: Optional[int] = None
    bucket_schedule: Optional[str] = None

    @staticmethod
    def from_levels(
        levels: Sequence[np.ndarray],
        audio_id: str,
        policy: Optional[ReductionPolicy] = None,
        bucket_size: Optional[int] = None,
        generated_at: Optional[datetime] = None,
        mipmap_floor: Optional[int] = None,
        bucket_schedule: Optional[str] = None,
    ) -> "CachedWaveform":
        return CachedWaveform(
            mipmaps=[np.asarray(level, dtype=np.float32).tolist() for level in levels],
            audio_id=audio_id,
            generated_at=generated_at or _utc_now(),
            policy=policy.value if policy is not None else None,
            bucket_size=int(bucket_size) if bucket_size is not None else None,
            mipmap_floor=int(mipmap_floor) if mipmap_floor is not None else None,
            bucket_schedule=bucket_schedule,
        )

    @property
    def is_empty(self) -> bool:
        return not self.mipmaps or not self.mipmaps[0]

    def levels(self) -> List[np.ndarray]:
        return [np.asarray(level, dtype=np.float32) for level in self.mipmaps]

    def reduction_policy(self) -> Optional[ReductionPolicy]:
        return ReductionPolicy.parse(self.policy) if self.policy else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mipmaps": [list(level) for level in self.mipmaps],
            "generatedAt": self.generated_at.isoformat(),
            "audioID": self.audio_id,
        }
        if self.policy is not None:
            data["policy"] = self.policy
        if self.bucket_size is not None:
            data["bucketSize"] = self.bucket_size
        if self.mipmap_floor is not None:
            data["mipmapFloor"] = self.mipmap_floor
        if self.bucket_schedule is not None:
            data["bucketSchedule"] = self.bucket_schedule
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CachedWaveform":
        audio_id = data["audioID"]
        if not isinstance(audio_id, str):
            raise TypeError("audioID must be a string")
        generated_at = datetime.fromisoformat(data["generatedAt"])
        if generated_at.tzinfo is None:
            generated_at = generated_at.replace(tzinfo=timezone.utc)
        policy = data.get("policy")
        if policy is not None:
            policy = ReductionPolicy.parse(policy).value
        schedule = data.get("bucketSchedule")
        if schedule is not None and not isinstance(schedule, str):
            raise ValueError("bucketSchedule must be a string")
        mipmaps = data["mipmaps"]
        if not isinstance(mipmaps, list):
            raise ValueError("mipmaps must be a list of levels")
        return CachedWaveform(
            mipmaps=[_level_values(level) for level in mipmaps],
            audio_id=audio_id,
            generated_at=generated_at,
            policy=policy,
            bucket_size=_optional_count(data, "bucketSize", minimum=1),
            mipmap_floor=_optional_count(data, "mipmapFloor", minimum=0),
            bucket_schedule=schedule,
        )


def _level_values(level: Any) -> List[float]:
    if not isinstance(level, list):
        raise ValueError("mipmap level must be a list of numbers")
    values = []
    for value in level:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"mipmap value {value!r} is not a number")
        try:
            value = float(value)
        except OverflowError:
            raise ValueError("mipmap value out of range") from None
        if not math.isfinite(value):
            raise ValueError("mipmap value is not finite")
        values.append(value)
    return values


def _optional_count(data: Dict[str, Any], key: str, minimum: int) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{key} must be at least {minimum}")
    return value


def dumps_waveform(record: CachedWaveform) -> bytes:
    return json.dumps(record.to_dict(), separators=(",", ":")).encode("utf-8")


def loads_waveform(payload: bytes) -> CachedWaveform:
    data = json.loads(payload.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Waveform payload is not an object")
    return CachedWaveform.from_dict(data)

from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np
import pytest
import soundfile as sf

from showmarker.core.decoder import DecoderError
from showmarker.core.settings import WaveformSettings
from showmarker.io.waveform_cache import WaveformCache


class FakeSource:
    """In-memory sample source that replays a fixed signal in fixed-size chunks."""

    def __init__(
        self,
        samples: np.ndarray,
        sample_rate: int = 44_100,
        chunk_size: int = 4096,
        error: Optional[Exception] = None,
    ) -> None:
        self.samples = np.asarray(samples, dtype=np.float32)
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.error = error
        self.opened: List[Path] = []

    def load_duration(self, path) -> float:
        if self.error is not None:
            raise self.error
        return self.samples.size / self.sample_rate

    def open_sample_stream(self, path) -> Iterator[np.ndarray]:
        if self.error is not None:
            raise self.error
        self.opened.append(Path(path))
        return self._chunks()

    def _chunks(self) -> Iterator[np.ndarray]:
        for start in range(0, self.samples.size, self.chunk_size):
            yield self.samples[start : start + self.chunk_size]


def sine(seconds: float, rate: int = 44_100, freq: float = 440.0, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(seconds * rate)) / rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def write_wav(path: Path, samples: np.ndarray, rate: int = 44_100) -> Path:
    sf.write(str(path), samples, rate, subtype="FLOAT")
    return path


@pytest.fixture
def cache(tmp_path) -> Iterator[WaveformCache]:
    store = WaveformCache(tmp_path / "WaveformCache")
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path) -> WaveformSettings:
    return WaveformSettings(cache_directory=tmp_path / "WaveformCache")


@pytest.fixture
def broken_source() -> FakeSource:
    return FakeSource(np.zeros(0), error=DecoderError("Audio stream not found in clip.mov"))

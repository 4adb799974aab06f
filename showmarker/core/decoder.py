"""
Sample sources for waveform analysis built on top of PyAV and soundfile.

Both sources expose the same two calls: the duration of a file in seconds
and a sequential stream of float32 mono sample chunks. Chunk sizes are
whatever the backend hands out; consumers must not assume one chunk per
analysis bucket.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, Protocol, Union

import av
import numpy as np
import soundfile as sf
from av.error import FFmpegError

from .audio.peaks import downmix

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class DecoderError(Exception):
    pass


class SampleSource(Protocol):
    def load_duration(self, path: PathLike) -> float:
        ...

    def open_sample_stream(self, path: PathLike) -> Iterator[np.ndarray]:
        ...


class AudioDecoder:
    """Decode the first audio stream of any container FFmpeg understands."""

    # ---------------------------------------------------------- metadata ----------
    def probe(self, path: PathLike) -> Dict[str, Dict]:
        with self._open(path) as container:
            info = {
                "duration": self._container_duration(container),
                "audio": [],
            }
            for stream in container.streams.audio:
                codec = stream.codec_context
                info["audio"].append(
                    {
                        "index": stream.index,
                        "rate": codec.sample_rate,
                        "channels": len(codec.layout.channels),
                    }
                )
        return info

    def load_duration(self, path: PathLike) -> float:
        with self._open(path) as container:
            duration = self._container_duration(container)
            if duration > 0:
                return duration
            stream = self._audio_stream(container, path)
            if stream.duration is not None and stream.time_base is not None:
                return float(stream.duration * stream.time_base)
            return 0.0

    # ----------------------------------------------------------- sample decode ----
    def open_sample_stream(self, path: PathLike) -> Iterator[np.ndarray]:
        container = self._open(path)
        try:
            stream = self._audio_stream(container, path)
        except DecoderError:
            container.close()
            raise
        return self._iter_samples(container, stream, path)

    def _iter_samples(self, container, stream, path: PathLike) -> Iterator[np.ndarray]:
        resampler = av.AudioResampler(format="flt", layout="mono")
        try:
            for frame in container.decode(stream):
                yield from self._resampled(resampler, frame)
            yield from self._resampled(resampler, None)
        except FFmpegError as exc:
            raise DecoderError(f"Failed to decode audio from {path}: {exc}") from exc
        finally:
            container.close()

    @staticmethod
    def _resampled(resampler, frame) -> Iterator[np.ndarray]:
        for mono in resampler.resample(frame):
            # a passthrough resampler echoes the flush sentinel back
            if mono is None:
                continue
            # packed mono float frames come out as shape (1, n)
            yield np.ascontiguousarray(mono.to_ndarray().reshape(-1), dtype=np.float32)

    # ------------------------------------------------------------- containers -----
    def _open(self, path: PathLike):
        try:
            return av.open(str(path))
        except (FFmpegError, OSError) as exc:
            raise DecoderError(f"Cannot open {path}: {exc}") from exc

    @staticmethod
    def _audio_stream(container, path: PathLike):
        stream = next(iter(container.streams.audio), None)
        if stream is None:
            raise DecoderError(f"Audio stream not found in {path}")
        return stream

    @staticmethod
    def _container_duration(container) -> float:
        return float(container.duration) / av.time_base if container.duration else 0.0


class SoundFileSource:
    """libsndfile-backed source for PCM formats (WAV, FLAC, OGG, AIFF)."""

    def __init__(self, block_size: int = 65536) -> None:
        if block_size < 1:
            raise ValueError("block_size must be positive")
        self.block_size = block_size

    def load_duration(self, path: PathLike) -> float:
        try:
            info = sf.info(str(path))
        except (RuntimeError, OSError) as exc:
            raise DecoderError(f"Cannot open {path}: {exc}") from exc
        return float(info.duration)

    def open_sample_stream(self, path: PathLike) -> Iterator[np.ndarray]:
        try:
            handle = sf.SoundFile(str(path))
        except (RuntimeError, OSError) as exc:
            raise DecoderError(f"Cannot open {path}: {exc}") from exc
        return self._iter_blocks(handle, path)

    def _iter_blocks(self, handle: sf.SoundFile, path: PathLike) -> Iterator[np.ndarray]:
        with handle:
            logger.debug(
                "Streaming %s: %d frames, %d channels at %d Hz",
                path, handle.frames, handle.channels, handle.samplerate,
            )
            try:
                for block in handle.blocks(blocksize=self.block_size, dtype="float32", always_2d=True):
                    yield downmix(block)
            except RuntimeError as exc:
                raise DecoderError(f"Failed to decode audio from {path}: {exc}") from exc

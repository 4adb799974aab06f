"""
Waveform service: the single entry point the application talks to.

``generate_and_cache`` hides cache hits and misses from callers. On a miss it
reads the duration, extracts peaks over the full decoded stream, builds the
mipmap pyramid, returns the record and hands persistence to the cache's
background writer without waiting for it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .audio.mipmap import build_mipmaps
from .audio.peaks import ExtractionCancelled, PeakExtractor
from .audio.waveform import CachedWaveform
from .decoder import AudioDecoder, DecoderError, SampleSource, SoundFileSource
from .settings import WaveformSettings
from ..io.waveform_cache import CacheError, WaveformCache

logger = logging.getLogger(__name__)

WAIT_POLL_SECONDS = 0.05


class WaveformGenerationError(RuntimeError):
    pass


def default_source(settings: WaveformSettings) -> SampleSource:
    if settings.decoder == "soundfile":
        return SoundFileSource(block_size=settings.stream_block_size)
    return AudioDecoder()


class WaveformService:
    def __init__(
        self,
        cache: Optional[WaveformCache] = None,
        source: Optional[SampleSource] = None,
        settings: Optional[WaveformSettings] = None,
    ) -> None:
        self.settings = settings or WaveformSettings()
        self.cache = cache or WaveformCache(
            self.settings.cache_directory,
            queue_size=self.settings.writer_queue_size,
            max_bytes=self.settings.cache_max_bytes,
        )
        self.source: SampleSource = source or default_source(self.settings)
        self.computations = 0
        self._lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._executor: Optional[ThreadPoolExecutor] = None

    # ---------------------------------------------------------------- public ------
    def load(self, cache_key: str) -> Optional[CachedWaveform]:
        record = self.cache.load(cache_key)
        if record is None:
            return None
        reason = self._stale_reason(record)
        if reason is not None:
            logger.info("Cached waveform %s was built with %s; regenerating", cache_key, reason)
            return None
        return record

    def clear_all(self) -> bool:
        try:
            self.cache.clear_all()
        except CacheError as exc:
            logger.warning("Failed to clear waveform cache: %s", exc)
            return False
        return True

    def generate_and_cache(
        self,
        path: Union[str, Path],
        cache_key: str,
        cancel_flag: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[int], None]] = None,
    ) -> CachedWaveform:
        while True:
            cached = self.load(cache_key)
            if cached is not None:
                return cached
            if not self.settings.coalesce_requests:
                return self._generate(path, cache_key, cancel_flag, progress_callback)

            with self._lock:
                future = self._inflight.get(cache_key)
                owner = future is None
                if owner:
                    future = Future()
                    self._inflight[cache_key] = future

            if owner:
                return self._generate_shared(future, path, cache_key, cancel_flag, progress_callback)
            record = self._wait_for(future, cache_key, cancel_flag)
            if record is not None:
                return record

    def submit(
        self,
        path: Union[str, Path],
        cache_key: str,
        cancel_flag: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[int], None]] = None,
    ) -> "Future[CachedWaveform]":
        """Run ``generate_and_cache`` on a worker thread."""
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.max_workers,
                    thread_name_prefix="waveform",
                )
            executor = self._executor
        return executor.submit(self.generate_and_cache, path, cache_key, cancel_flag, progress_callback)

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        self.cache.close()

    # ------------------------------------------------------------- coalescing ------
    def _generate_shared(
        self,
        future: Future,
        path: Union[str, Path],
        cache_key: str,
        cancel_flag: Optional[Callable[[], bool]],
        progress_callback: Optional[Callable[[int], None]],
    ) -> CachedWaveform:
        try:
            record = self._generate(path, cache_key, cancel_flag, progress_callback)
        except BaseException as exc:
            self._release(cache_key, future)
            if isinstance(exc, Exception):
                future.set_exception(exc)
            else:
                # waiters retry on their own instead of inheriting an interpreter-level abort
                future.set_exception(ExtractionCancelled(f"Generation of {cache_key} aborted"))
            raise
        self._release(cache_key, future)
        future.set_result(record)
        return record

    def _release(self, cache_key: str, future: Future) -> None:
        with self._lock:
            if self._inflight.get(cache_key) is future:
                del self._inflight[cache_key]

    def _wait_for(
        self,
        future: Future,
        cache_key: str,
        cancel_flag: Optional[Callable[[], bool]],
    ) -> Optional[CachedWaveform]:
        """Wait for another caller's generation. ``None`` means it was cancelled and the caller should retry."""
        logger.debug("Waiting for in-flight waveform generation of %s", cache_key)
        timeout = WAIT_POLL_SECONDS if cancel_flag else None
        while True:
            if cancel_flag and cancel_flag():
                raise ExtractionCancelled(f"Wait for waveform {cache_key} cancelled")
            try:
                return future.result(timeout=timeout)
            except FutureTimeout:
                continue
            except ExtractionCancelled:
                logger.debug("In-flight generation of %s was cancelled; retrying", cache_key)
                return None

    def _stale_reason(self, record: CachedWaveform) -> Optional[str]:
        settings = self.settings
        policy = record.reduction_policy()
        if policy is not None and policy is not settings.policy:
            return f"policy {policy.value}"
        if record.mipmap_floor is not None and record.mipmap_floor != settings.mipmap_floor:
            return f"mipmap floor {record.mipmap_floor}"
        if record.bucket_schedule is not None and record.bucket_schedule != settings.bucket_schedule():
            return f"bucket schedule {record.bucket_schedule}"
        return None

    # -------------------------------------------------------------- pipeline ------
    def _generate(
        self,
        path: Union[str, Path],
        cache_key: str,
        cancel_flag: Optional[Callable[[], bool]],
        progress_callback: Optional[Callable[[int], None]],
    ) -> CachedWaveform:
        path = Path(path)
        settings = self.settings
        try:
            duration = self.source.load_duration(path)
            bucket_size = settings.bucket_size_for(duration)
            logger.info("Using bucket size %d for %.1fs of audio in %s", bucket_size, duration, path.name)
            extractor = PeakExtractor(settings.policy, bucket_size)
            with self._lock:
                self.computations += 1
            stream = self.source.open_sample_stream(path)
            try:
                base = extractor.extract(stream, cancel_flag=cancel_flag, progress_callback=progress_callback)
            finally:
                # releases the decoder container when extraction stops early
                close = getattr(stream, "close", None)
                if close is not None:
                    close()
        except ExtractionCancelled:
            logger.info("Waveform generation for %s cancelled", cache_key)
            raise
        except (DecoderError, OSError) as exc:
            raise WaveformGenerationError(f"Could not analyze audio {path}: {exc}") from exc

        levels = build_mipmaps(base, settings.policy, settings.mipmap_floor)
        logger.info("Waveform for %s: %d base values, %d mipmap levels", cache_key, base.size, len(levels))

        record = CachedWaveform.from_levels(
            levels,
            audio_id=cache_key,
            policy=settings.policy,
            bucket_size=bucket_size,
            mipmap_floor=settings.mipmap_floor,
            bucket_schedule=settings.bucket_schedule(),
        )
        self.cache.save_async(record, cache_key)
        return record

"""
On-disk waveform cache.

One ``<cache key>.waveform`` file per record inside a dedicated directory.
Writes go through a temp file in the same directory followed by a rename, so
readers only ever see complete records. Background writes are serialised by
a single worker thread per cache instance.
"""

from __future__ import annotations

import logging
import os
import queue
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple, Union

from ..core.audio.waveform import CachedWaveform, dumps_waveform, loads_waveform

logger = logging.getLogger(__name__)

WAVEFORM_SUFFIX = ".waveform"
TEMP_SUFFIX = ".tmp"


class CacheError(Exception):
    pass


class WaveformCache:
    def __init__(
        self,
        directory: Union[str, Path],
        queue_size: int = 16,
        max_bytes: Optional[int] = None,
    ) -> None:
        self.directory = Path(directory)
        self.max_bytes = max_bytes
        self._lock = threading.RLock()
        self._writer = CacheWriter(self, queue_size=queue_size)

    # ---------------------------------------------------------------- keys --------
    def path_for(self, cache_key: str) -> Path:
        if not cache_key or cache_key in (".", "..") or "/" in cache_key or "\\" in cache_key:
            raise ValueError(f"Invalid cache key {cache_key!r}")
        return self.directory / f"{cache_key}{WAVEFORM_SUFFIX}"

    def entries(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(path.name[: -len(WAVEFORM_SUFFIX)] for path in self.directory.glob(f"*{WAVEFORM_SUFFIX}"))

    # ---------------------------------------------------------------- read --------
    def load(self, cache_key: str) -> Optional[CachedWaveform]:
        path = self.path_for(cache_key)
        try:
            payload = path.read_bytes()
        except FileNotFoundError:
            logger.debug("Waveform cache miss for %s", cache_key)
            return None
        except OSError as exc:
            logger.warning("Cannot read waveform cache %s: %s", path, exc)
            return None

        try:
            record = loads_waveform(payload)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Ignoring unreadable waveform cache %s: %s", path.name, exc)
            return None

        self._touch(path)
        logger.debug("Waveform cache hit for %s (%d levels)", cache_key, len(record.mipmaps))
        return record

    # --------------------------------------------------------------- write --------
    def save(self, record: CachedWaveform, cache_key: str) -> Path:
        target = self.path_for(cache_key)
        payload = dumps_waveform(record)
        self.directory.mkdir(parents=True, exist_ok=True)

        fd, temp_name = tempfile.mkstemp(prefix=f".{cache_key}.", suffix=TEMP_SUFFIX, dir=self.directory)
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            with self._lock:
                os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.info("Waveform saved to cache: %s", target.name)
        return target

    def save_async(self, record: CachedWaveform, cache_key: str) -> bool:
        """Queue a write on the background worker. Never raises for I/O errors."""
        self.path_for(cache_key)
        return self._writer.submit(record, cache_key)

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self._writer.flush(timeout)

    def close(self) -> None:
        self._writer.stop()

    # --------------------------------------------------------------- evict --------
    def clear_all(self) -> int:
        """Delete every cached record and return how many were removed.

        Temp files of writes still in progress are left alone, and the final
        rename of a write takes the same lock, so a concurrent write either
        lands after the clear or is removed by it whole.
        """
        removed = 0
        with self._lock:
            if not self.directory.exists():
                return 0
            try:
                paths = sorted(self.directory.glob(f"*{WAVEFORM_SUFFIX}"))
            except OSError as exc:
                raise CacheError(f"Cannot list waveform cache {self.directory}: {exc}") from exc
            for path in paths:
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise CacheError(f"Cannot remove {path}: {exc}") from exc
                removed += 1
        logger.info("Cleared %d cached waveform(s) from %s", removed, self.directory)
        return removed

    def prune(self, max_bytes: int) -> List[str]:
        """Drop least recently used records until the cache fits in ``max_bytes``."""
        if max_bytes < 0:
            raise ValueError("max_bytes must not be negative")
        evicted: List[str] = []
        with self._lock:
            if not self.directory.is_dir():
                return evicted
            stats: List[Tuple[float, int, Path]] = []
            for path in self.directory.glob(f"*{WAVEFORM_SUFFIX}"):
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    continue
                stats.append((stat.st_mtime, stat.st_size, path))
            total = sum(size for _, size, _ in stats)
            for _, size, path in sorted(stats, key=lambda item: (item[0], item[2].name)):
                if total <= max_bytes:
                    break
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                total -= size
                evicted.append(path.name[: -len(WAVEFORM_SUFFIX)])
        if evicted:
            logger.info("Evicted %d cached waveform(s) to stay under %d bytes", len(evicted), max_bytes)
        return evicted

    def _touch(self, path: Path) -> None:
        try:
            os.utime(path, None)
        except OSError as exc:
            logger.debug("Cannot update access time of %s: %s", path.name, exc)


class CacheWriter:
    """Single background thread draining a bounded queue of pending writes."""

    def __init__(self, cache: WaveformCache, queue_size: int = 16) -> None:
        self.cache = cache
        self._queue: "queue.Queue[Union[None, threading.Event, Tuple[CachedWaveform, str]]]" = queue.Queue(maxsize=max(queue_size, 1))
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="waveform-cache-writer", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None or not thread.is_alive():
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Waveform cache writer did not accept shutdown request")
            return
        thread.join(timeout=timeout)

    def submit(self, record: CachedWaveform, cache_key: str) -> bool:
        self.start()
        try:
            self._queue.put_nowait((record, cache_key))
        except queue.Full:
            logger.warning("Waveform cache write queue full; dropping write for %s", cache_key)
            return False
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every write queued so far has been attempted.

        Returns False when ``timeout`` expires first.
        """
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
        if not running:
            return True
        deadline = None if timeout is None else time.monotonic() + timeout
        marker = threading.Event()
        try:
            self._queue.put(marker, timeout=timeout)
        except queue.Full:
            return False
        remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
        return marker.wait(remaining)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                if isinstance(item, threading.Event):
                    item.set()
                    continue
                record, cache_key = item
                try:
                    self.cache.save(record, cache_key)
                except Exception as exc:  # pylint: disable=broad-except
                    logger.warning("Failed to save waveform cache for %s: %s", cache_key, exc)
                    continue
                if self.cache.max_bytes is not None:
                    try:
                        self.cache.prune(self.cache.max_bytes)
                    except OSError as exc:
                        logger.warning("Failed to prune waveform cache: %s", exc)
            finally:
                self._queue.task_done()

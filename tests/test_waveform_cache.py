"""Tests for the on-disk waveform cache and its background writer."""

import logging
import os
import threading

import numpy as np
import pytest

from showmarker.core.audio.peaks import ReductionPolicy
from showmarker.core.audio.waveform import CachedWaveform
from showmarker.io.waveform_cache import CacheWriter, WaveformCache


def _record(audio_id="key", size=64):
    levels = [np.linspace(-1.0, 1.0, size, dtype=np.float32), np.array([-1.0, 1.0], dtype=np.float32)]
    return CachedWaveform.from_levels(levels, audio_id=audio_id, policy=ReductionPolicy.MIN_MAX, bucket_size=256)


# ---------------------------------------------------------------------------
# Synchronous save/load
# ---------------------------------------------------------------------------


def test_save_then_load_round_trips(cache):
    record = _record()

    path = cache.save(record, "key")

    assert path == cache.directory / "key.waveform"
    assert cache.load("key") == record


def test_load_missing_key_returns_none(cache):
    assert cache.load("missing") is None


def test_save_creates_directory(tmp_path):
    store = WaveformCache(tmp_path / "nested" / "cache")

    store.save(_record(), "key")

    assert (tmp_path / "nested" / "cache" / "key.waveform").is_file()


def test_save_leaves_no_temp_files(cache):
    cache.save(_record(), "a")
    cache.save(_record(size=8), "a")

    assert sorted(p.name for p in cache.directory.iterdir()) == ["a.waveform"]


def test_save_overwrites_existing_record(cache):
    cache.save(_record(size=8), "key")
    newer = _record(size=16)

    cache.save(newer, "key")

    assert cache.load("key") == newer


_HEADER = b'"generatedAt": "2025-01-01T00:00:00+00:00", "audioID": "bad"'


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        b"{not json",
        b'{"audioID": "x"}',
        b"\x00\x01\x02",
        b'{"mipmaps": [[0.5, -0.5]], "bucketSize": 1e400, ' + _HEADER + b"}",
        b'{"mipmaps": [[0.5]], "mipmapFloor": "50", ' + _HEADER + b"}",
        b'{"mipmaps": ["12"], ' + _HEADER + b"}",
        b'{"mipmaps": [[0.5, true]], ' + _HEADER + b"}",
        b'{"mipmaps": [[1e400]], ' + _HEADER + b"}",
        b"[" * 200_000,
    ],
    ids=[
        "empty",
        "truncated",
        "missing-keys",
        "binary",
        "overflowing-bucket-size",
        "string-floor",
        "string-level",
        "boolean-value",
        "infinite-value",
        "deep-nesting",
    ],
)
def test_corrupt_file_is_a_miss(cache, payload, caplog):
    cache.directory.mkdir(parents=True)
    cache.path_for("bad").write_bytes(payload)

    with caplog.at_level(logging.WARNING):
        assert cache.load("bad") is None
    assert "unreadable" in caplog.text


@pytest.mark.parametrize("key", ["", ".", "..", "a/b", "a\\b"])
def test_invalid_keys_rejected(cache, key):
    with pytest.raises(ValueError):
        cache.path_for(key)


def test_entries_lists_cached_keys(cache):
    assert cache.entries() == []
    cache.save(_record(), "b")
    cache.save(_record(), "a.mp3")

    assert cache.entries() == ["a.mp3", "b"]


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


def test_clear_all_removes_every_record(cache):
    cache.save(_record(), "one")
    cache.save(_record(), "two")

    assert cache.clear_all() == 2
    assert cache.load("one") is None
    assert cache.load("two") is None
    assert cache.entries() == []


def test_clear_all_on_missing_directory(tmp_path):
    assert WaveformCache(tmp_path / "never-created").clear_all() == 0


def test_clear_all_keeps_in_flight_temp_files(cache):
    cache.save(_record(), "done")
    partial = cache.directory / ".pending.abc123.tmp"
    partial.write_bytes(b"{")

    cache.clear_all()

    assert partial.exists()
    assert cache.entries() == []


def test_prune_evicts_least_recently_used(cache):
    for index, key in enumerate(["old", "mid", "new"]):
        path = cache.save(_record(), key)
        os.utime(path, (1_000_000 + index, 1_000_000 + index))
    size = cache.path_for("old").stat().st_size

    evicted = cache.prune(max_bytes=2 * size)

    assert evicted == ["old"]
    assert cache.entries() == ["mid", "new"]


def test_load_refreshes_recency(cache):
    for index, key in enumerate(["first", "second"]):
        path = cache.save(_record(), key)
        os.utime(path, (1_000_000 + index, 1_000_000 + index))
    size = cache.path_for("first").stat().st_size

    cache.load("first")

    assert cache.prune(max_bytes=size) == ["second"]


def test_prune_rejects_negative_budget(cache):
    with pytest.raises(ValueError):
        cache.prune(-1)


# ---------------------------------------------------------------------------
# Background writes
# ---------------------------------------------------------------------------


def test_save_async_persists_after_flush(cache):
    record = _record()

    assert cache.save_async(record, "bg") is True
    cache.flush()

    assert cache.load("bg") == record


def test_background_write_failure_is_logged_not_raised(tmp_path, caplog):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    store = WaveformCache(blocker)

    with caplog.at_level(logging.WARNING):
        assert store.save_async(_record(), "key") is True
        store.flush()
    store.close()

    assert "Failed to save waveform cache for key" in caplog.text
    assert store.load("key") is None


def test_full_queue_drops_write(tmp_path, caplog):
    store = WaveformCache(tmp_path / "cache", queue_size=1)
    gate = threading.Event()
    original_save = store.save

    def slow_save(record, cache_key):
        gate.wait(5)
        return original_save(record, cache_key)

    store.save = slow_save
    accepted = [store.save_async(_record(), f"k{i}") for i in range(5)]
    gate.set()
    store.flush()
    store.close()

    assert accepted[0] is True
    assert False in accepted
    assert "queue full" in caplog.text


def test_writer_prunes_when_budget_configured(tmp_path):
    store = WaveformCache(tmp_path / "cache", max_bytes=0)

    store.save_async(_record(), "key")
    store.flush()
    store.close()

    assert store.entries() == []


def test_writer_stop_is_idempotent(cache):
    writer = CacheWriter(cache)
    writer.stop()
    writer.start()
    writer.start()
    writer.stop()
    writer.stop()


def test_flush_without_pending_writes_returns_immediately(cache):
    assert cache.flush(timeout=0.1) is True


def test_flush_times_out_while_a_write_is_blocked(tmp_path):
    store = WaveformCache(tmp_path / "cache")
    gate = threading.Event()
    original_save = store.save

    def blocked_save(record, cache_key):
        gate.wait(5)
        return original_save(record, cache_key)

    store.save = blocked_save
    store.save_async(_record(), "slow")

    assert store.flush(timeout=0.1) is False
    gate.set()
    assert store.flush(timeout=5) is True
    store.close()
    assert store.entries() == ["slow"]

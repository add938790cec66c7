import builtins
import json
import time

import pytest

import cache as cache_module
from cache import ChannelCache, FileCacheStorage, MemoryCacheStorage
from errors import CacheUnavailable, Transient
from models import CacheRecord

HOUR_MS = 3600 * 1000


def snapshot(channels):
    return json.dumps([c.to_dict() for c in channels], sort_keys=True)


def test_file_storage_bootstraps_empty_record(tmp_path):
    path = tmp_path / "nested" / "channels.json"
    storage = FileCacheStorage(path)

    record = storage.read()

    assert record.channels == []
    assert record.last_updated == 0
    assert json.loads(path.read_text()) == {"channels": [], "lastUpdated": 0}


def test_file_storage_write_replaces_whole_file(tmp_path, make_channel):
    path = tmp_path / "channels.json"
    storage = FileCacheStorage(path)
    storage.write(CacheRecord([make_channel("old")], 1))

    storage.write(CacheRecord([make_channel("alpha"), make_channel("beta", is_member=False)], 42))

    assert sorted(p.name for p in tmp_path.iterdir()) == ["channels.json"]
    loaded = storage.read()
    assert [c.name for c in loaded.channels] == ["alpha", "beta"]
    assert loaded.channels[1].is_member is False
    assert loaded.last_updated == 42


def test_file_storage_bootstrap_does_not_clobber_concurrent_write(tmp_path, monkeypatch, make_channel):
    path = tmp_path / "channels.json"
    storage = FileCacheStorage(path)
    fresh = CacheRecord([make_channel("general")], 99)

    def racing_open(file, mode="r", *args, **kwargs):
        if mode == "x":
            # A refresh lands between the missing-file check and the create
            FileCacheStorage(path).write(fresh)
        return builtins.open(file, mode, *args, **kwargs)

    monkeypatch.setattr(cache_module, "open", racing_open, raising=False)

    record = storage.read()

    assert record.last_updated == 99
    assert [c.name for c in record.channels] == ["general"]
    assert json.loads(path.read_text())["lastUpdated"] == 99


def test_file_storage_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "channels.json"
    path.write_text("{not json")

    record = FileCacheStorage(path).read()

    assert record == CacheRecord.empty()


def test_write_deduplicates_by_id(memory_cache, make_channel):
    memory_cache.write(CacheRecord([
        make_channel("alpha", id="C1"),
        make_channel("alpha-renamed", id="C1"),
        make_channel("beta", id="C2"),
    ], 5))

    assert [c.id for c in memory_cache.read().channels] == ["C1", "C2"]


def test_force_refresh_always_fetches(memory_cache, stub_fetcher, seed_cache, make_channel, clock):
    seed_cache([make_channel("stale")])
    stub_fetcher.channels = [make_channel("fresh")]

    channels = memory_cache.get_channels(force_refresh=True)

    assert [c.name for c in channels] == ["fresh"]
    assert stub_fetcher.calls == 1
    record = memory_cache.read()
    assert [c.name for c in record.channels] == ["fresh"]
    assert record.last_updated == clock.now


def test_reads_within_ttl_are_identical_and_do_not_fetch(memory_cache, stub_fetcher, seed_cache, make_channel):
    seed_cache([make_channel("alpha"), make_channel("beta")], age_ms=HOUR_MS - 1)

    first = memory_cache.get_channels()
    second = memory_cache.get_channels()

    assert snapshot(first) == snapshot(second)
    assert stub_fetcher.calls == 0


def test_first_run_fetches_in_foreground(memory_cache, stub_fetcher, make_channel):
    stub_fetcher.channels = [make_channel("general")]

    channels = memory_cache.get_channels()

    assert [c.name for c in channels] == ["general"]
    assert stub_fetcher.calls == 1
    assert memory_cache.read().last_updated > 0


def test_bootstrap_failure_raises_cache_unavailable(memory_cache, stub_fetcher):
    stub_fetcher.error = Transient("conversations.list failed: internal_error")

    with pytest.raises(CacheUnavailable):
        memory_cache.get_channels()

    assert memory_cache.read() == CacheRecord.empty()


def test_stale_read_returns_immediately(memory_cache, stub_fetcher, seed_cache, make_channel):
    """A stale read does not wait for the refresh it triggers."""
    seed_cache([make_channel("stale")], age_ms=HOUR_MS + 1)
    stub_fetcher.channels = [make_channel("fresh")]
    stub_fetcher.release.clear()

    start = time.monotonic()
    channels = memory_cache.get_channels()
    elapsed = time.monotonic() - start

    assert [c.name for c in channels] == ["stale"]
    assert elapsed < 1.0
    assert stub_fetcher.started.wait(timeout=2)

    stub_fetcher.release.set()
    memory_cache.wait_for_refresh(timeout=5)
    assert [c.name for c in memory_cache.get_channels()] == ["fresh"]


def test_only_one_background_refresh_in_flight(memory_cache, stub_fetcher, seed_cache, make_channel):
    seed_cache([make_channel("stale")], age_ms=HOUR_MS + 1)
    stub_fetcher.release.clear()

    memory_cache.get_channels()
    assert stub_fetcher.started.wait(timeout=2)
    memory_cache.get_channels()
    memory_cache.get_channels()

    stub_fetcher.release.set()
    memory_cache.wait_for_refresh(timeout=5)
    assert stub_fetcher.calls == 1


def test_background_refresh_failure_is_swallowed(memory_cache, stub_fetcher, seed_cache, make_channel):
    seed_cache([make_channel("stale")], age_ms=HOUR_MS + 1)
    stub_fetcher.error = Transient("down")

    channels = memory_cache.get_channels()
    memory_cache.wait_for_refresh(timeout=5)

    assert [c.name for c in channels] == ["stale"]
    assert [c.name for c in memory_cache.read().channels] == ["stale"]


def test_from_config_uses_file_storage(tmp_path, stub_fetcher):
    from config import CacheConfig

    cache = ChannelCache.from_config(CacheConfig(cache_file=tmp_path / "c.json", ttl=60), stub_fetcher)
    try:
        assert isinstance(cache.storage, FileCacheStorage)
        assert cache.ttl_ms == 60_000
    finally:
        cache.close()


def test_memory_storage_returns_copies(make_channel):
    storage = MemoryCacheStorage()
    storage.write(CacheRecord([make_channel("alpha")], 1))

    storage.read().channels.clear()

    assert len(storage.read().channels) == 1

import copy
import json
import os
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from config import CacheConfig
from errors import CacheUnavailable, RemoteError
from fetcher import ChannelFetcher
from logger import get_logger, cache_hits, cache_misses, cache_refreshes
from models import CacheRecord, Channel, dedupe_channels

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class FileCacheStorage:
    """Single JSON file holding the whole CacheRecord."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> CacheRecord:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return CacheRecord.from_dict(json.load(f))
        except FileNotFoundError:
            return self._create_empty()
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load cache", path=str(self.path), error=str(e))
            return CacheRecord.empty()

    def _create_empty(self) -> CacheRecord:
        """Create the file with an empty record unless another writer got there first."""
        record = CacheRecord.empty()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path, "x", encoding="utf-8") as f:
                json.dump(record.to_dict(), f)
        except FileExistsError:
            return self.read()
        logger.info("Cache file created", path=str(self.path))
        return record

    def write(self, record: CacheRecord) -> None:
        """Replace the file in one rename so readers never see a partial write."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("Cache saved to disk", path=str(self.path), size=len(record.channels))


class MemoryCacheStorage:
    def __init__(self, record: Optional[CacheRecord] = None):
        self._record = record or CacheRecord.empty()
        self._lock = threading.Lock()

    def read(self) -> CacheRecord:
        with self._lock:
            return copy.deepcopy(self._record)

    def write(self, record: CacheRecord) -> None:
        with self._lock:
            self._record = copy.deepcopy(record)


class ChannelCache:
    """Time-stamped snapshot of the channel list, refreshed lazily on a TTL."""

    def __init__(
        self,
        storage,
        fetcher: ChannelFetcher,
        ttl: int = 3600,
        clock: Callable[[], int] = now_ms,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.storage = storage
        self.fetcher = fetcher
        self.ttl_ms = ttl * 1000
        self.clock = clock
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="channel-refresh")
        self._refresh_lock = threading.Lock()
        self._refresh_future: Optional[Future] = None

    @classmethod
    def from_config(cls, config: CacheConfig, fetcher: ChannelFetcher) -> "ChannelCache":
        return cls(FileCacheStorage(config.cache_file), fetcher, ttl=config.ttl)

    def read(self) -> CacheRecord:
        return self.storage.read()

    def write(self, record: CacheRecord) -> None:
        record = CacheRecord(channels=dedupe_channels(record.channels), last_updated=record.last_updated)
        self.storage.write(record)

    def refresh(self) -> list[Channel]:
        """Fetch every channel and replace the stored record."""
        channels = self.fetcher.fetch_all_channels()
        record = CacheRecord(channels=dedupe_channels(channels), last_updated=self.clock())
        self.write(record)
        logger.info("Channel cache refreshed", channels=len(record.channels))
        return record.channels

    def is_stale(self, record: CacheRecord) -> bool:
        return self.clock() - record.last_updated > self.ttl_ms

    def get_channels(self, force_refresh: bool = False) -> list[Channel]:
        if force_refresh:
            try:
                channels = self.refresh()
            except RemoteError:
                cache_refreshes.labels(mode="forced", status="error").inc()
                raise
            cache_refreshes.labels(mode="forced", status="success").inc()
            return channels

        record = self.read()
        if record.last_updated == 0:
            cache_misses.inc()
            try:
                channels = self.refresh()
            except RemoteError as e:
                cache_refreshes.labels(mode="bootstrap", status="error").inc()
                logger.error("Channel cache bootstrap failed", error=str(e))
                raise CacheUnavailable(
                    "Channel list is not cached yet and Slack could not be reached",
                    cause=e.to_dict()["details"],
                ) from e
            cache_refreshes.labels(mode="bootstrap", status="success").inc()
            return channels

        cache_hits.inc()
        if self.is_stale(record):
            self.schedule_refresh()
        return record.channels

    def schedule_refresh(self) -> Optional[Future]:
        """Submit a background refresh unless one is already running."""
        with self._refresh_lock:
            if self._refresh_future is not None and not self._refresh_future.done():
                return self._refresh_future
            logger.info("Channel cache stale, refreshing in background")
            self._refresh_future = self.executor.submit(self._background_refresh)
            return self._refresh_future

    def _background_refresh(self) -> None:
        try:
            self.refresh()
        except Exception as e:
            cache_refreshes.labels(mode="background", status="error").inc()
            logger.error("Background channel refresh failed", error=str(e), exc_info=True)
            return
        cache_refreshes.labels(mode="background", status="success").inc()

    def wait_for_refresh(self, timeout: Optional[float] = None) -> None:
        future = self._refresh_future
        if future is not None:
            future.result(timeout=timeout)

    def close(self) -> None:
        self.executor.shutdown(wait=False)

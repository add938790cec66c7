import threading

import pytest

from cache import ChannelCache, MemoryCacheStorage
from errors import NotFound
from models import CacheRecord, Channel


def slack_channel(id, name, is_member=True, topic="", purpose="", num_members=3, is_private=False):
    """A conversations.list entry as Slack returns it."""
    return {
        "id": id,
        "name": name,
        "is_member": is_member,
        "is_private": is_private,
        "num_members": num_members,
        "topic": {"value": topic, "creator": "U1", "last_set": 1700000000},
        "purpose": {"value": purpose, "creator": "U1", "last_set": 1700000000},
    }


class FakeGateway:
    """Scripted stand-in for SlackGateway; pages are (items, next_cursor) or exceptions."""

    def __init__(self):
        self.channel_pages = []
        self.history_pages = []
        self.users = {}
        self.auth = {"team": "Acme", "user_id": "UBOT", "bot_id": "B1", "scopes": None}
        self.calls = []
        # method name -> errors raised, one per call, before the scripted result
        self.failures = {}

    @staticmethod
    def _next(pages):
        page = pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    def list_channels_page(self, cursor=None, limit=1000):
        self.calls.append(("conversations.list", cursor, limit))
        return self._next(self.channel_pages)

    def history_page(self, channel_id, oldest, cursor=None, limit=200):
        self.calls.append(("conversations.history", channel_id, oldest, cursor))
        return self._next(self.history_pages)

    def _maybe_fail(self, method):
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def user_info(self, user_id):
        self.calls.append(("users.info", user_id))
        self._maybe_fail("users.info")
        if user_id not in self.users:
            raise NotFound("users.info failed: user_not_found", code="user_not_found")
        return self.users[user_id]

    def auth_info(self):
        self.calls.append(("auth.test",))
        self._maybe_fail("auth.test")
        if isinstance(self.auth, Exception):
            raise self.auth
        return dict(self.auth)


class StubFetcher:
    """Channel fetcher whose result, failure and latency are controlled by the test."""

    def __init__(self, channels=None, error=None):
        self.channels = channels or []
        self.error = error
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self.release.set()

    def fetch_all_channels(self):
        self.calls += 1
        self.started.set()
        self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return list(self.channels)


class Clock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


class Sleeper:
    def __init__(self):
        self.calls = []
        # method name -> errors raised, one per call, before the scripted result
        self.failures = {}

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sleeper():
    return Sleeper()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_slack_channel():
    return slack_channel


@pytest.fixture
def make_channel():
    def factory(name, is_member=True, id=None, topic="", purpose=""):
        return Channel.from_slack(slack_channel(id or f"C{name.upper()}", name, is_member, topic, purpose))
    return factory


@pytest.fixture
def stub_fetcher():
    return StubFetcher()


@pytest.fixture
def memory_cache(stub_fetcher, clock):
    """ChannelCache over in-memory storage; caller seeds it with seed_cache()."""
    cache = ChannelCache(MemoryCacheStorage(), stub_fetcher, ttl=3600, clock=clock)
    yield cache
    stub_fetcher.release.set()
    cache.close()


@pytest.fixture
def seed_cache(memory_cache, clock):
    def seed(channels, age_ms=0):
        memory_cache.write(CacheRecord(channels=list(channels), last_updated=clock.now - age_ms))
    return seed

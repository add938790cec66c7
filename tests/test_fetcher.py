import pytest

from errors import PermissionDenied, ProtocolError, RateLimited, Transient
from fetcher import ChannelFetcher, paginate
from retry import RetryPolicy


@pytest.fixture
def fetcher(gateway, sleeper):
    return ChannelFetcher(gateway, policy=RetryPolicy(sleep=sleeper), page_delay=1.0, sleep=sleeper)


def test_fetch_all_channels_concatenates_pages_in_order(fetcher, gateway, sleeper, make_slack_channel):
    """Pages are appended in cursor order and the loop stops on a missing cursor."""
    gateway.channel_pages = [
        ([make_slack_channel("C1", "alpha"), make_slack_channel("C2", "beta")], "c1"),
        ([make_slack_channel("C3", "gamma")], "c2"),
        ([make_slack_channel("C4", "delta")], None),
    ]

    channels = fetcher.fetch_all_channels()

    assert [c.id for c in channels] == ["C1", "C2", "C3", "C4"]
    assert [call[1] for call in gateway.calls] == [None, "c1", "c2"]
    assert all(call[2] == 1000 for call in gateway.calls)
    # fixed delay before each follow-up page only
    assert sleeper.calls == [1.0, 1.0]


def test_empty_cursor_terminates(fetcher, gateway, sleeper, make_slack_channel):
    gateway.channel_pages = [([make_slack_channel("C1", "alpha")], "")]

    channels = fetcher.fetch_all_channels()

    assert len(channels) == 1
    assert len(gateway.calls) == 1
    assert sleeper.calls == []


def test_repeated_cursor_is_a_protocol_error(fetcher, gateway, make_slack_channel):
    gateway.channel_pages = [
        ([make_slack_channel("C1", "alpha")], "same"),
        ([make_slack_channel("C2", "beta")], "same"),
        ([make_slack_channel("C3", "gamma")], "same"),
    ]

    with pytest.raises(ProtocolError):
        fetcher.fetch_all_channels()

    assert len(gateway.calls) == 2


def test_transient_page_failure_is_retried(fetcher, gateway, sleeper, make_slack_channel):
    gateway.channel_pages = [
        ([make_slack_channel("C1", "alpha")], "c1"),
        RateLimited("ratelimited", retry_after=7),
        Transient("internal_error"),
        ([make_slack_channel("C2", "beta")], None),
    ]

    channels = fetcher.fetch_all_channels()

    assert [c.id for c in channels] == ["C1", "C2"]
    assert [call[1] for call in gateway.calls] == [None, "c1", "c1", "c1"]
    assert sleeper.calls == [1.0, 7, 30]


def test_page_failure_after_retries_propagates(fetcher, gateway, make_slack_channel):
    gateway.channel_pages = [([make_slack_channel("C1", "alpha")], "c1")] + [Transient("down")] * 4

    with pytest.raises(Transient):
        fetcher.fetch_all_channels()


def test_permission_error_is_not_retried(fetcher, gateway, sleeper):
    gateway.channel_pages = [PermissionDenied("missing_scope")]

    with pytest.raises(PermissionDenied):
        fetcher.fetch_all_channels()

    assert len(gateway.calls) == 1
    assert sleeper.calls == []


def test_page_limit_is_capped(gateway, sleeper):
    fetcher = ChannelFetcher(gateway, page_limit=5000, sleep=sleeper)
    gateway.channel_pages = [([], None)]

    fetcher.fetch_all_channels()

    assert gateway.calls[0][2] == 1000


def test_fetch_history_threads_channel_and_cursor(fetcher, gateway):
    gateway.history_pages = [
        ([{"ts": "3.0", "text": "c"}, {"ts": "2.0", "text": "b"}], "h1"),
        ([{"ts": "1.0", "text": "a"}], None),
    ]

    messages = fetcher.fetch_history("C1", 1234.5)

    assert [m["text"] for m in messages] == ["c", "b", "a"]
    assert gateway.calls == [
        ("conversations.history", "C1", 1234.5, None),
        ("conversations.history", "C1", 1234.5, "h1"),
    ]


def test_paginate_with_plain_callable(sleeper):
    pages = {None: ([{"n": 1}], "a"), "a": ([{"n": 2}], "b"), "b": ([{"n": 3}], None)}

    items = paginate(lambda cursor: pages[cursor], RetryPolicy(sleep=sleeper), page_delay=0.5, sleep=sleeper)

    assert [i["n"] for i in items] == [1, 2, 3]
    assert sleeper.calls == [0.5, 0.5]

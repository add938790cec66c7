import locale
from typing import Iterable

from models import Channel


def matches(channel: Channel, query: str) -> bool:
    needle = query.casefold()
    return (
        needle in channel.name.casefold()
        or needle in channel.topic.value.casefold()
        or needle in channel.purpose.value.casefold()
    )


def sort_key(channel: Channel):
    # Members first, then name in the deployment locale's collation
    return (not channel.is_member, locale.strxfrm(channel.name.casefold()))


def search_channels(channels: Iterable[Channel], query: str = "", membership_first: bool = True) -> list[Channel]:
    """Filter by name/topic/purpose substring, optionally ordering members first.

    ``sorted`` is stable, so equal keys keep their input order. Without
    ``membership_first`` the input order is returned unchanged.
    """
    query = (query or "").strip()
    result = [c for c in channels if not query or matches(c, query)]
    if membership_first:
        result = sorted(result, key=sort_key)
    return result

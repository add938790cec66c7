import time
from typing import Callable, Optional

from errors import ProtocolError
from logger import get_logger, log_metrics
from models import Channel
from retry import RetryPolicy, RetryState
from slack_client import Page, SlackGateway

logger = get_logger(__name__)

PageCall = Callable[[Optional[str]], Page]


def paginate(
    fetch_page: PageCall,
    policy: RetryPolicy,
    page_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    name: str = "paginate",
) -> list[dict]:
    """Follow Slack cursors until a page comes back without one.

    Pages are requested strictly in cursor order. Every page call goes through
    the retry policy with a single RetryState, which resets after each
    successful page. The same cursor returned twice in a row raises
    ProtocolError.
    """
    items: list[dict] = []
    state = RetryState()
    cursor: Optional[str] = None
    pages = 0
    while True:
        page_items, next_cursor = policy.call(lambda: fetch_page(cursor), state=state, name=name)
        items.extend(page_items)
        pages += 1
        if not next_cursor:
            break
        if next_cursor == cursor:
            raise ProtocolError(
                f"{name} returned the same cursor twice",
                cursor=next_cursor,
                pages=pages,
            )
        logger.debug("Fetching next page", operation=name, pages=pages, items=len(items))
        cursor = next_cursor
        # Stay under the Tier 2 rate limit regardless of what Slack says
        sleep(page_delay)
    logger.info("Pagination complete", operation=name, pages=pages, items=len(items),
                retries=state.total_retries)
    return items


class ChannelFetcher:
    def __init__(
        self,
        gateway: SlackGateway,
        policy: Optional[RetryPolicy] = None,
        page_limit: int = 1000,
        page_delay: float = 1.0,
        history_limit: int = 200,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.policy = policy or RetryPolicy(sleep=sleep)
        self.page_limit = min(page_limit, 1000)
        self.page_delay = page_delay
        self.history_limit = history_limit
        self.sleep = sleep

    @log_metrics
    def fetch_all_channels(self) -> list[Channel]:
        raw = paginate(
            lambda cursor: self.gateway.list_channels_page(cursor=cursor, limit=self.page_limit),
            self.policy,
            page_delay=self.page_delay,
            sleep=self.sleep,
            name="conversations.list",
        )
        return [Channel.from_slack(c) for c in raw]

    @log_metrics
    def fetch_history(self, channel_id: str, oldest: float) -> list[dict]:
        return paginate(
            lambda cursor: self.gateway.history_page(
                channel_id, oldest, cursor=cursor, limit=self.history_limit
            ),
            self.policy,
            page_delay=self.page_delay,
            sleep=self.sleep,
            name="conversations.history",
        )

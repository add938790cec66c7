import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from errors import RateLimited, RemoteError
from logger import get_logger, api_retries

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryState:
    attempt: int = 0  # consecutive failures, reset on success
    total_retries: int = 0
    total_delay: float = 0.0
    last_error: Optional[Exception] = None

    def reset(self) -> None:
        self.attempt = 0
        self.last_error = None


class RetryPolicy:
    """Retry rate-limited and transient remote failures with a bounded loop."""

    def __init__(
        self,
        max_retries: int = 3,
        fallback_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.fallback_delay = fallback_delay
        self.sleep = sleep

    def delay_for(self, error: Exception) -> float:
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return max(error.retry_after, 0.0)
        return self.fallback_delay

    def call(
        self,
        operation: Callable[[], T],
        state: Optional[RetryState] = None,
        name: Optional[str] = None,
    ) -> T:
        state = state if state is not None else RetryState()
        name = name or getattr(operation, "__name__", "operation")
        while True:
            try:
                result = operation()
            except RemoteError as e:
                if not e.retryable:
                    raise
                state.last_error = e
                if state.attempt >= self.max_retries:
                    logger.error("Remote call failed after retries",
                                 function=name,
                                 error=str(e),
                                 retries=state.attempt)
                    raise
                state.attempt += 1
                state.total_retries += 1
                wait_time = self.delay_for(e)
                state.total_delay += wait_time
                api_retries.labels(api_name=name, reason=e.kind).inc()
                logger.warning("Remote call failed, retrying",
                               function=name,
                               error=str(e),
                               retry=state.attempt,
                               max_retries=self.max_retries,
                               wait_time=wait_time)
                self.sleep(wait_time)
                continue
            state.reset()
            return result


def with_retry(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    state: Optional[RetryState] = None,
) -> T:
    return (policy or RetryPolicy()).call(operation, state=state)

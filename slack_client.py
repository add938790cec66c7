"""Thin wrapper over slack_sdk.WebClient.

Each method performs exactly one Web API call and translates failures into
the error taxonomy in ``errors``. Pagination and retries live in ``fetcher``.
"""
from typing import Callable, Optional
from urllib.error import URLError

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from errors import Transient, classify_slack_error
from logger import get_logger, log_metrics

logger = get_logger(__name__)

Page = tuple[list[dict], Optional[str]]


def api_method(api_name: str) -> Callable:
    """Tag a gateway method with its Slack method name for metrics."""
    def decorator(func: Callable) -> Callable:
        func.api_name = api_name
        return log_metrics(func)
    return decorator


def _next_cursor(result) -> Optional[str]:
    return (result.get("response_metadata") or {}).get("next_cursor") or None


def _header(headers: dict, name: str) -> Optional[str]:
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return value
    return None


class SlackGateway:
    def __init__(self, token: Optional[str] = None, client: Optional[WebClient] = None, timeout: int = 30):
        if client is None:
            client = WebClient(token=token, timeout=timeout)
        self.client = client

    def _call(self, method: str, func: Callable, **kwargs):
        try:
            return func(**kwargs)
        except SlackApiError as e:
            error = classify_slack_error(e, method)
            logger.warning("Slack API error", method=method, kind=error.kind, error=str(error))
            raise error from e
        except (URLError, ConnectionError, TimeoutError) as e:
            logger.warning("Slack API connection error", method=method, error=str(e))
            raise Transient(f"{method} failed: {e}", method=method) from e

    @api_method("conversations.list")
    def list_channels_page(self, cursor: Optional[str] = None, limit: int = 1000) -> Page:
        result = self._call(
            "conversations.list",
            self.client.conversations_list,
            types="public_channel,private_channel",
            exclude_archived=True,
            limit=min(limit, 1000),
            cursor=cursor,
        )
        return list(result.get("channels") or []), _next_cursor(result)

    @api_method("conversations.history")
    def history_page(self, channel_id: str, oldest: float, cursor: Optional[str] = None, limit: int = 200) -> Page:
        result = self._call(
            "conversations.history",
            self.client.conversations_history,
            channel=channel_id,
            oldest=str(oldest),
            limit=limit,
            cursor=cursor,
        )
        return list(result.get("messages") or []), _next_cursor(result)

    @api_method("users.info")
    def user_info(self, user_id: str) -> dict:
        result = self._call("users.info", self.client.users_info, user=user_id)
        return result.get("user") or {}

    @api_method("auth.test")
    def auth_info(self) -> dict:
        """Identity of the token plus the scopes Slack reports as granted."""
        result = self._call("auth.test", self.client.auth_test)
        scopes_header = _header(getattr(result, "headers", None), "x-oauth-scopes")
        scopes = None
        if scopes_header is not None:
            scopes = [s.strip() for s in scopes_header.split(",") if s.strip()]
        return {
            "team": result.get("team"),
            "team_id": result.get("team_id"),
            "user": result.get("user"),
            "user_id": result.get("user_id"),
            "bot_id": result.get("bot_id"),
            "scopes": scopes,
        }

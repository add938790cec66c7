"""Error taxonomy shared by the Slack gateway, the cache and the HTTP layer.

Every error carries a ``kind`` and optional remediation ``details`` so the
route layer can render next steps instead of a stack trace.
"""
from typing import Any, Optional

from slack_sdk.errors import SlackApiError

# Slack error codes grouped by how the caller should react
RATE_LIMIT_CODES = {"ratelimited", "rate_limited"}
TRANSIENT_CODES = {
    "internal_error",
    "fatal_error",
    "service_unavailable",
    "request_timeout",
}
PERMISSION_CODES = {
    "missing_scope",
    "not_in_channel",
    "not_authed",
    "invalid_auth",
    "account_inactive",
    "token_revoked",
    "no_permission",
    "restricted_action",
}
NOT_FOUND_CODES = {"channel_not_found", "user_not_found", "bot_not_found"}


class ChannelPulseError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, /, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "details": {"kind": self.kind, **self.details},
        }


class ConfigurationError(ChannelPulseError):
    kind = "configuration"


class RemoteError(ChannelPulseError):
    kind = "remote"
    retryable = False


class RateLimited(RemoteError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str, /, retry_after: Optional[float] = None, **details: Any):
        super().__init__(message, **details)
        self.retry_after = retry_after


class Transient(RemoteError):
    kind = "transient"
    retryable = True


class PermissionDenied(RemoteError):
    kind = "permission_denied"
    status_code = 403


class NotFound(RemoteError):
    kind = "not_found"
    status_code = 404


class ProtocolError(RemoteError):
    """The remote system broke its own contract (e.g. echoed a cursor)."""
    kind = "protocol"


class CacheUnavailable(ChannelPulseError):
    kind = "cache_unavailable"


class AnalysisFormatError(ChannelPulseError):
    kind = "analysis_format"


def _retry_after(response) -> Optional[float]:
    headers = getattr(response, "headers", None) or {}
    for name in ("Retry-After", "retry-after"):
        value = headers.get(name)
        if value is not None:
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def classify_slack_error(e: SlackApiError, method: str) -> RemoteError:
    """Translate a SlackApiError into the error taxonomy."""
    response = e.response
    code = ""
    status = getattr(response, "status_code", None)
    try:
        code = response["error"] or ""
    except (KeyError, TypeError):
        code = ""
    message = f"{method} failed: {code or e}"

    if code in RATE_LIMIT_CODES or status == 429:
        return RateLimited(message, retry_after=_retry_after(response), method=method, code=code)
    if code in TRANSIENT_CODES or (status is not None and status >= 500):
        return Transient(message, method=method, code=code, status=status)
    if code in PERMISSION_CODES:
        details: dict = {"method": method, "code": code}
        try:
            needed = response.get("needed")
            provided = response.get("provided")
        except AttributeError:
            needed = provided = None
        if needed:
            details["missingScopes"] = needed.split(",")
        if provided:
            details["currentScopes"] = provided.split(",")
        return PermissionDenied(message, **details)
    if code in NOT_FOUND_CODES:
        return NotFound(message, method=method, code=code)
    return RemoteError(message, method=method, code=code)

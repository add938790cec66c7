import json
import re
import time
from datetime import datetime
from typing import Callable, Optional

import pytz

from cache import ChannelCache
from completion import CompletionClient
from errors import AnalysisFormatError, NotFound, PermissionDenied, RemoteError
from fetcher import ChannelFetcher
from logger import get_logger, log_metrics, analyses
from models import (
    ActionItem,
    AnalysisResult,
    Channel,
    HealthMetrics,
    HealthScore,
    NextStep,
    Risk,
)
from slack_client import SlackGateway

logger = get_logger(__name__)

REQUIRED_SCOPES = [
    "channels:read",
    "channels:history",
    "groups:read",
    "groups:history",
    "channels:join",
    "groups:write",
]

REQUIRED_KEYS = ("main_topics", "action_items", "risks", "next_steps")

SEVERITIES = ("high", "medium", "low")
SEVERITY_PENALTY = {"high": 15, "medium": 8, "low": 3}
SCOPE_KEYWORDS = ("scope", "requirement", "change request", "timeline", "deadline", "delay", "estimate")
NEGATIVE_KEYWORDS = ("concern", "unhappy", "frustrat", "complain", "escalat", "dissatisf", "blocker")
POSITIVE_KEYWORDS = ("thank", "great", "happy", "appreciat", "pleased", "praise")

SKIPPED_SUBTYPES = {"channel_join", "channel_leave", "channel_topic", "channel_purpose"}

FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
MENTION_RE = re.compile(r"<@([UW][A-Z0-9]+)(?:\|[^>]*)?>")

ANALYSIS_PROMPT = (
    "You are a delivery manager reviewing the Slack channel \"{channel_name}\". "
    "Below are the messages from the last {days} days, oldest first.\n\n"
    "Identify:\n"
    "1. The main topics being discussed\n"
    "2. Action items, with the owner and due date when mentioned\n"
    "3. Risks to delivery, scope, client satisfaction or the team, with a severity of high, medium or low\n"
    "4. Recommended next steps, with a suggested owner and a priority of high, medium or low\n\n"
    "Respond with a single JSON object and nothing else, using exactly these keys:\n"
    "{{\n"
    "  \"main_topics\": [\"...\"],\n"
    "  \"action_items\": [{{\"description\": \"...\", \"owner\": \"...\", \"due_date\": \"...\"}}],\n"
    "  \"risks\": [{{\"description\": \"...\", \"severity\": \"high|medium|low\", \"suggested_owner\": \"...\", \"status\": \"...\"}}],\n"
    "  \"next_steps\": [{{\"description\": \"...\", \"suggested_owner\": \"...\", \"priority\": \"high|medium|low\"}}]\n"
    "}}\n\n"
    "Channel messages:\n{messages_text}"
)

INVITE_STEPS = [
    "1. Open the channel in Slack",
    "2. Click the channel name at the top",
    "3. Click the \"Integrations\" tab",
    "4. Click \"Add apps\"",
    "5. Search for the dashboard bot and click \"Add\"",
    "6. Try analyzing again",
]


def strip_code_fence(text: str) -> str:
    match = FENCE_RE.search(text)
    if match:
        return match.group(1)
    return text.strip()


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _level(value, default: str = "medium") -> str:
    level = _text(value).lower()
    return level if level in SEVERITIES else default


def _entries(data: dict, key: str) -> list:
    value = data[key]
    if not isinstance(value, list):
        raise AnalysisFormatError(f"'{key}' must be a list", key=key)
    return value


def _description(entry, key: str) -> Optional[str]:
    if isinstance(entry, str):
        return entry.strip() or None
    if isinstance(entry, dict):
        return _text(entry.get("description")) or None
    raise AnalysisFormatError(f"Unexpected entry in '{key}'", key=key)


def parse_analysis(text: str) -> tuple[list[str], list[ActionItem], list[Risk], list[NextStep]]:
    """Parse and validate completion output.

    Raises AnalysisFormatError on invalid JSON, a non-object document or a
    missing required key.
    """
    if not text or not text.strip():
        raise AnalysisFormatError("Completion returned no text")
    try:
        data = json.loads(strip_code_fence(text))
    except ValueError as e:
        raise AnalysisFormatError(f"Completion output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisFormatError("Completion output must be a JSON object")
    missing = [key for key in REQUIRED_KEYS if key not in data]
    if missing:
        raise AnalysisFormatError(f"Completion output is missing {', '.join(missing)}", missing=missing)

    topics = [_text(t) for t in _entries(data, "main_topics") if _text(t)]

    actions = []
    for entry in _entries(data, "action_items"):
        description = _description(entry, "action_items")
        if not description:
            continue
        extra = entry if isinstance(entry, dict) else {}
        actions.append(ActionItem(description=description,
                                  owner=_text(extra.get("owner")),
                                  due_date=_text(extra.get("due_date"))))

    risks = []
    for entry in _entries(data, "risks"):
        description = _description(entry, "risks")
        if not description:
            continue
        extra = entry if isinstance(entry, dict) else {}
        risks.append(Risk(description=description,
                          severity=_level(extra.get("severity")),
                          suggested_owner=_text(extra.get("suggested_owner")),
                          status=_text(extra.get("status"))))

    next_steps = []
    for entry in _entries(data, "next_steps"):
        description = _description(entry, "next_steps")
        if not description:
            continue
        extra = entry if isinstance(entry, dict) else {}
        next_steps.append(NextStep(description=description,
                                   suggested_owner=_text(extra.get("suggested_owner")),
                                   priority=_level(extra.get("priority"))))

    return topics, actions, risks, next_steps


def _clamp(score: float) -> int:
    return int(max(0, min(100, round(score))))


def trend_for(score: int) -> str:
    if score >= 75:
        return "up"
    if score < 50:
        return "down"
    return "stable"


def _hits(texts: list[str], keywords: tuple) -> int:
    """Number of texts mentioning at least one keyword."""
    return sum(1 for t in texts if any(k in t.lower() for k in keywords))


def compute_health(topics: list[str], actions: list[ActionItem], risks: list[Risk],
                   next_steps: list[NextStep]) -> HealthMetrics:
    risk_texts = [r.description for r in risks]
    all_texts = topics + risk_texts + [a.description for a in actions] + [n.description for n in next_steps]

    scope_risks = _hits(risk_texts, SCOPE_KEYWORDS)
    scope_topics = _hits(topics, SCOPE_KEYWORDS)
    scope = _clamp(100 - 15 * scope_risks - 5 * scope_topics)

    negative = _hits(all_texts, NEGATIVE_KEYWORDS)
    positive = _hits(all_texts, POSITIVE_KEYWORDS)
    satisfaction = _clamp(75 + 5 * positive - 10 * negative)

    owned = sum(1 for a in actions if a.owner)
    unowned = len(actions) - owned
    team = _clamp(60 + 5 * min(owned, 6) - 5 * unowned)

    penalty = min(sum(SEVERITY_PENALTY[r.severity] for r in risks), 40)
    overall = _clamp((scope + satisfaction + team) / 3 - penalty / 2)

    high_risks = sum(1 for r in risks if r.severity == "high")
    return HealthMetrics(
        overall_health=HealthScore(overall, trend_for(overall),
                                   f"{len(risks)} risks identified ({high_risks} high severity)"),
        scope_management=HealthScore(scope, trend_for(scope),
                                     f"{scope_risks} scope-related risks, {scope_topics} scope-related topics"),
        client_satisfaction=HealthScore(satisfaction, trend_for(satisfaction),
                                        f"{positive} positive and {negative} negative signals"),
        team_performance=HealthScore(team, trend_for(team),
                                     f"{owned} of {len(actions)} action items have an owner"),
    )


def neutral_health(details: str) -> HealthMetrics:
    return HealthMetrics(
        overall_health=HealthScore(50, "stable", details),
        scope_management=HealthScore(50, "stable", details),
        client_satisfaction=HealthScore(50, "stable", details),
        team_performance=HealthScore(50, "stable", details),
    )


def fallback_result(channel: Channel, message_count: int, reason: str) -> AnalysisResult:
    """Fixed result used when the completion output cannot be used."""
    return AnalysisResult(
        channel=channel,
        main_topics=[],
        action_items=[],
        risks=[Risk(
            description=f"Automated analysis failed: {reason}",
            severity="medium",
            suggested_owner="Delivery manager",
            status="open",
        )],
        next_steps=[],
        health=neutral_health("Analysis unavailable"),
        message_count=message_count,
        degraded=True,
    )


def install_url(client_id: Optional[str], scopes: list[str]) -> Optional[str]:
    if not client_id:
        return None
    return f"https://slack.com/oauth/v2/authorize?client_id={client_id}&scope={','.join(scopes)}&user_scope="


class AnalysisPipeline:
    def __init__(
        self,
        gateway: SlackGateway,
        cache: ChannelCache,
        fetcher: ChannelFetcher,
        completion: CompletionClient,
        history_days: int = 14,
        client_id: Optional[str] = None,
        timezone: str = "UTC",
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.cache = cache
        self.fetcher = fetcher
        self.completion = completion
        self.history_days = history_days
        self.client_id = client_id
        self.timezone = pytz.timezone(timezone)
        self.clock = clock

    def verify_installation(self) -> dict:
        try:
            auth = self.fetcher.policy.call(self.gateway.auth_info, name="auth.test")
        except PermissionDenied as e:
            raise PermissionDenied(
                "Bot verification failed",
                message=e.message,
                steps=[
                    "1. Check that the bot is installed in your workspace",
                    "2. Verify SLACK_BOT_TOKEN is correct",
                    "3. Reinstall the bot if needed",
                ],
            ) from e
        scopes = auth.get("scopes")
        if scopes is None:
            return auth
        missing = [s for s in REQUIRED_SCOPES if s not in scopes]
        if missing:
            details = {
                "message": "The bot is missing required permissions",
                "missingScopes": missing,
                "currentScopes": scopes,
                "steps": [
                    "1. Open your Slack app's configuration page",
                    "2. Go to \"OAuth & Permissions\"",
                    "3. Add the following bot token scopes:",
                    *[f"   - {scope}" for scope in missing],
                    "4. Click \"Reinstall to Workspace\"",
                    "5. Try analyzing again",
                ],
            }
            url = install_url(self.client_id, missing)
            if url:
                details["installUrl"] = url
            raise PermissionDenied("Missing required permissions", **details)
        return auth

    def resolve_channel(self, channel_name: str) -> Channel:
        name = channel_name.strip().lstrip("#")
        channel = self._find(self.cache.get_channels(), name)
        if channel is None:
            # The bot may have been invited since the last refresh
            channels = self.cache.get_channels(force_refresh=True)
            channel = self._find(channels, name)
            if channel is None:
                raise NotFound(
                    "Channel not found",
                    searchedName=name,
                    availableChannels=[{"name": c.name, "isMember": c.is_member} for c in channels],
                )
        if not channel.is_member:
            raise PermissionDenied(
                "Bot is not a member of this channel",
                channelName=channel.name,
                channelId=channel.id,
                steps=INVITE_STEPS,
            )
        return channel

    @staticmethod
    def _find(channels: list[Channel], name: str) -> Optional[Channel]:
        return next((c for c in channels if c.name == name), None)

    def user_name(self, user_id: str, names: dict[str, str]) -> str:
        if user_id not in names:
            try:
                user = self.fetcher.policy.call(lambda: self.gateway.user_info(user_id), name="users.info")
            except RemoteError as e:
                logger.warning("Could not resolve user", user_id=user_id, error=str(e))
                user = {}
            profile = user.get("profile") or {}
            names[user_id] = (profile.get("display_name") or user.get("real_name")
                              or user.get("name") or user_id)
        return names[user_id]

    def resolve_mentions(self, text: str, names: dict[str, str]) -> str:
        return MENTION_RE.sub(lambda m: "@" + self.user_name(m.group(1), names), text)

    def format_messages(self, messages: list[dict]) -> str:
        names: dict[str, str] = {}
        lines = []
        # Slack returns newest first
        for msg in reversed(messages):
            if msg.get("subtype") in SKIPPED_SUBTYPES or not msg.get("text"):
                continue
            author = self.user_name(msg["user"], names) if msg.get("user") else msg.get("username", "bot")
            dt = datetime.fromtimestamp(float(msg.get("ts", 0)), self.timezone).strftime("%Y-%m-%d %H:%M")
            lines.append(f"{author} ({dt}): {self.resolve_mentions(msg['text'], names)}")
        return "\n".join(lines)

    @log_metrics
    def analyze(self, channel_name: str) -> AnalysisResult:
        self.verify_installation()
        channel = self.resolve_channel(channel_name)

        oldest = self.clock() - self.history_days * 86400
        messages = self.fetcher.fetch_history(channel.id, oldest)
        messages_text = self.format_messages(messages)
        logger.info("Channel history fetched", channel=channel.name, messages=len(messages))

        if not messages_text:
            analyses.labels(outcome="empty").inc()
            return AnalysisResult(
                channel=channel, main_topics=[], action_items=[], risks=[], next_steps=[],
                health=neutral_health(f"No messages in the last {self.history_days} days"),
                message_count=len(messages),
            )

        prompt = ANALYSIS_PROMPT.format(
            channel_name=channel.name,
            days=self.history_days,
            messages_text=messages_text,
        )
        output = self.completion.complete(prompt)
        try:
            topics, actions, risks, next_steps = parse_analysis(output)
        except AnalysisFormatError as e:
            analyses.labels(outcome="degraded").inc()
            logger.warning("Analysis output rejected, using fallback",
                           channel=channel.name, error=str(e), output=output[:500] if output else output)
            return fallback_result(channel, len(messages), e.message)

        analyses.labels(outcome="success").inc()
        return AnalysisResult(
            channel=channel,
            main_topics=topics,
            action_items=actions,
            risks=risks,
            next_steps=next_steps,
            health=compute_health(topics, actions, risks, next_steps),
            message_count=len(messages),
        )

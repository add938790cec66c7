from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ChannelText:
    """Topic or purpose of a channel."""
    value: str = ""
    creator: str = ""
    last_set: int = 0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ChannelText":
        data = data or {}
        return cls(
            value=data.get("value") or "",
            creator=data.get("creator") or "",
            last_set=int(data.get("last_set") or 0),
        )

    def to_dict(self) -> dict:
        return {"value": self.value, "creator": self.creator, "last_set": self.last_set}


@dataclass
class Channel:
    """Slack channel snapshot."""
    id: str
    name: str
    topic: ChannelText = field(default_factory=ChannelText)
    purpose: ChannelText = field(default_factory=ChannelText)
    member_count: int = 0
    is_private: bool = False
    is_member: bool = False

    @classmethod
    def from_slack(cls, data: dict) -> "Channel":
        """Build from a conversations.list entry."""
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            topic=ChannelText.from_dict(data.get("topic")),
            purpose=ChannelText.from_dict(data.get("purpose")),
            member_count=max(int(data.get("num_members") or 0), 0),
            is_private=bool(data.get("is_private", False)),
            is_member=bool(data.get("is_member", False)),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Channel":
        """Build from the wire/cache representation."""
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            topic=ChannelText.from_dict(data.get("topic")),
            purpose=ChannelText.from_dict(data.get("purpose")),
            member_count=int(data.get("memberCount") or 0),
            is_private=bool(data.get("isPrivate", False)),
            is_member=bool(data.get("isMember", False)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "topic": self.topic.to_dict(),
            "purpose": self.purpose.to_dict(),
            "memberCount": self.member_count,
            "isPrivate": self.is_private,
            "isMember": self.is_member,
        }


def dedupe_channels(channels: list[Channel]) -> list[Channel]:
    """Drop repeated ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for channel in channels:
        if channel.id in seen:
            continue
        seen.add(channel.id)
        unique.append(channel)
    return unique


@dataclass
class CacheRecord:
    channels: list[Channel] = field(default_factory=list)
    last_updated: int = 0  # epoch milliseconds

    @classmethod
    def empty(cls) -> "CacheRecord":
        return cls(channels=[], last_updated=0)

    @classmethod
    def from_dict(cls, data: dict) -> "CacheRecord":
        return cls(
            channels=[Channel.from_dict(c) for c in data.get("channels") or []],
            last_updated=int(data.get("lastUpdated") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "channels": [c.to_dict() for c in self.channels],
            "lastUpdated": self.last_updated,
        }


@dataclass
class HealthScore:
    score: int
    trend: str
    details: str

    def to_dict(self) -> dict:
        return {"score": self.score, "trend": self.trend, "details": self.details}


@dataclass
class HealthMetrics:
    overall_health: HealthScore
    scope_management: HealthScore
    client_satisfaction: HealthScore
    team_performance: HealthScore

    def to_dict(self) -> dict:
        return {
            "overall_health": self.overall_health.to_dict(),
            "scope_management": self.scope_management.to_dict(),
            "client_satisfaction": self.client_satisfaction.to_dict(),
            "team_performance": self.team_performance.to_dict(),
        }


@dataclass
class Risk:
    description: str
    severity: str = "medium"
    suggested_owner: str = ""
    status: str = ""

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "severity": self.severity,
            "suggested_owner": self.suggested_owner,
            "status": self.status,
        }


@dataclass
class ActionItem:
    description: str
    owner: str = ""
    due_date: str = ""

    def to_dict(self) -> dict:
        return {"description": self.description, "owner": self.owner, "due_date": self.due_date}


@dataclass
class NextStep:
    description: str
    suggested_owner: str = ""
    priority: str = "medium"

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "suggested_owner": self.suggested_owner,
            "priority": self.priority,
        }


@dataclass
class AnalysisResult:
    channel: Channel
    main_topics: list[str]
    action_items: list[ActionItem]
    risks: list[Risk]
    next_steps: list[NextStep]
    health: HealthMetrics
    message_count: int = 0
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "channel": {
                "id": self.channel.id,
                "name": self.channel.name,
                "isPrivate": self.channel.is_private,
                "memberCount": self.channel.member_count,
            },
            "main_topics": list(self.main_topics),
            "action_items": [a.to_dict() for a in self.action_items],
            "risks": [r.to_dict() for r in self.risks],
            "next_steps": [n.to_dict() for n in self.next_steps],
            "health": self.health.to_dict(),
            "message_count": self.message_count,
            "degraded": self.degraded,
        }

"""Data models for the alert engine."""

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo
import uuid

from src.alert_engine.config import (
    AlertChannel,
    AlertSeverity,
    AlertStatus,
    BatchOperation,
    DeliveryFrequency,
    InteractionType,
    NotificationPriority,
)
from src.alert_engine.metadata import AlertMetadata, GenericMetadata, metadata_to_dict


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ── Alerts ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DeliveryAttempt:
    """One send of an alert to one recipient over one channel."""

    channel: AlertChannel
    user_id: str
    success: bool
    timestamp: datetime = field(default_factory=_now)
    error: Optional[str] = None
    retry_count: int = 0
    escalation_level: int = 0
    final: bool = False
    attempt_id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "channel": self.channel.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error": self.error,
            "retry_count": self.retry_count,
            "escalation_level": self.escalation_level,
            "final": self.final,
        }


@dataclass(frozen=True)
class AlertSnapshot:
    """Immutable view of an alert handed to subscribers."""

    alert_id: str
    title: str
    message: str
    severity: AlertSeverity
    category: str
    source: str
    status: AlertStatus
    created_at: datetime
    escalation_level: int
    escalated_at: Optional[datetime]
    snoozed_until: Optional[datetime]
    acknowledged_by: Optional[str]
    acknowledged_at: Optional[datetime]
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    assignee: Optional[str]
    tags: frozenset
    metadata: AlertMetadata
    delivery_attempts: tuple

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category,
            "source": self.source,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "escalation_level": self.escalation_level,
            "escalated_at": _iso(self.escalated_at),
            "snoozed_until": _iso(self.snoozed_until),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "assignee": self.assignee,
            "tags": sorted(self.tags),
            "metadata": metadata_to_dict(self.metadata),
            "delivery_attempts": [a.to_dict() for a in self.delivery_attempts],
        }


@dataclass
class Alert:
    """A tracked alert and its lifecycle state."""

    title: str
    message: str
    severity: AlertSeverity
    category: str
    source: str = "system"
    alert_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    status: AlertStatus = AlertStatus.ACTIVE
    escalation_level: int = 0
    escalated_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    assignee: Optional[str] = None
    tags: set[str] = field(default_factory=set)
    metadata: AlertMetadata = field(default_factory=GenericMetadata)
    delivery_attempts: list[DeliveryAttempt] = field(default_factory=list)

    def snapshot(self) -> AlertSnapshot:
        return AlertSnapshot(
            alert_id=self.alert_id,
            title=self.title,
            message=self.message,
            severity=self.severity,
            category=self.category,
            source=self.source,
            status=self.status,
            created_at=self.created_at,
            escalation_level=self.escalation_level,
            escalated_at=self.escalated_at,
            snoozed_until=self.snoozed_until,
            acknowledged_by=self.acknowledged_by,
            acknowledged_at=self.acknowledged_at,
            resolved_by=self.resolved_by,
            resolved_at=self.resolved_at,
            assignee=self.assignee,
            tags=frozenset(self.tags),
            metadata=self.metadata,
            delivery_attempts=tuple(self.delivery_attempts),
        )

    def to_dict(self) -> dict:
        return self.snapshot().to_dict()


@dataclass(frozen=True)
class AlertNotice:
    """Lifecycle notice (acknowledged / resolved / snoozed) for operators."""

    kind: str
    alert_id: str
    user_id: str
    message: str
    created_at: datetime = field(default_factory=_now)
    category: str = "alert-management"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "alert_id": self.alert_id,
            "user_id": self.user_id,
            "message": self.message,
            "category": self.category,
            "created_at": self.created_at.isoformat(),
        }


# ── Notifications ────────────────────────────────────────────────────


@dataclass
class Notification:
    """A unit surfaced in a user's in-app feed."""

    user_id: str
    category: str
    priority: NotificationPriority
    title: str
    message: str = ""
    notification_type: str = "alert"
    alert_id: Optional[str] = None
    notification_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    read: bool = False
    dismissed: bool = False
    snoozed_until: Optional[datetime] = None
    group_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "alert_id": self.alert_id,
            "category": self.category,
            "type": self.notification_type,
            "priority": self.priority.value,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "dismissed": self.dismissed,
            "snoozed_until": _iso(self.snoozed_until),
            "group_id": self.group_id,
        }


@dataclass
class NotificationGroup:
    """Notifications of one category that arrived in the same time bucket."""

    group_id: str
    user_id: str
    category: str
    priority: NotificationPriority
    created_at: datetime
    collapsed: bool = False
    notification_ids: list[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def size(self) -> int:
        return len(self.notification_ids)

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "user_id": self.user_id,
            "category": self.category,
            "priority": self.priority.value,
            "collapsed": self.collapsed,
            "notification_ids": list(self.notification_ids),
            "count": self.size,
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class NotificationBatch:
    """Notifications of one frequency tier scheduled for joint delivery."""

    batch_key: str
    user_id: str
    frequency: DeliveryFrequency
    scheduled_for: datetime
    notification_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "batch_key": self.batch_key,
            "user_id": self.user_id,
            "frequency": self.frequency.value,
            "scheduled_for": self.scheduled_for.isoformat(),
            "notification_ids": list(self.notification_ids),
        }


@dataclass
class BatchItemResult:
    notification_id: str
    success: bool
    error: Optional[str] = None


@dataclass
class BatchOperationResult:
    """Per-item outcome of a group-wide operation."""

    operation: BatchOperation
    group_id: str
    results: list[BatchItemResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.processed - self.succeeded

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "group_id": self.group_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [
                {"notification_id": r.notification_id, "success": r.success, "error": r.error}
                for r in self.results
            ],
        }


# ── Preferences ──────────────────────────────────────────────────────


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


@dataclass
class QuietHours:
    """Daily quiet window in a user's timezone. May wrap past midnight."""

    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"
    allow_urgent: bool = True

    def is_active(self, at: datetime) -> bool:
        if not self.enabled:
            return False
        local = at.astimezone(ZoneInfo(self.timezone)).time().replace(second=0, microsecond=0)
        start, end = parse_hhmm(self.start), parse_hhmm(self.end)
        if start <= end:
            return start <= local < end
        # overnight window, e.g. 22:00-08:00
        return local >= start or local < end

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "start": self.start,
            "end": self.end,
            "timezone": self.timezone,
            "allow_urgent": self.allow_urgent,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QuietHours":
        return cls(
            enabled=bool(data.get("enabled", False)),
            start=data.get("start", "22:00"),
            end=data.get("end", "08:00"),
            timezone=data.get("timezone", "UTC"),
            allow_urgent=bool(data.get("allow_urgent", True)),
        )


@dataclass
class ChannelPreference:
    enabled: bool = True
    severity_threshold: AlertSeverity = AlertSeverity.LOW
    frequency: DeliveryFrequency = DeliveryFrequency.IMMEDIATE
    batch_interval_minutes: int = 30
    quiet_hours: Optional[QuietHours] = None

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "severity_threshold": self.severity_threshold.value,
            "frequency": self.frequency.value,
            "batch_interval_minutes": self.batch_interval_minutes,
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelPreference":
        quiet = data.get("quiet_hours")
        return cls(
            enabled=bool(data.get("enabled", True)),
            severity_threshold=AlertSeverity(data.get("severity_threshold", "low")),
            frequency=DeliveryFrequency(data.get("frequency", "immediate")),
            batch_interval_minutes=int(data.get("batch_interval_minutes", 30)),
            quiet_hours=QuietHours.from_dict(quiet) if quiet else None,
        )


@dataclass
class CategoryPreference:
    enabled: bool = True
    priority: NotificationPriority = NotificationPriority.MEDIUM
    channels: list[AlertChannel] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "priority": self.priority.value,
            "channels": [c.value for c in self.channels],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CategoryPreference":
        return cls(
            enabled=bool(data.get("enabled", True)),
            priority=NotificationPriority(data.get("priority", "medium")),
            channels=[AlertChannel(c) for c in data.get("channels", [])],
        )


@dataclass
class EscalationPreference:
    enabled: bool = True
    per_severity_delay_minutes: dict[AlertSeverity, float] = field(default_factory=dict)
    max_escalation_level: int = 3
    escalation_channels: list[AlertChannel] = field(default_factory=list)

    def delay_for(self, severity: AlertSeverity) -> float:
        return self.per_severity_delay_minutes.get(severity, 15)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "per_severity_delay_minutes": {
                s.value: d for s, d in self.per_severity_delay_minutes.items()
            },
            "max_escalation_level": self.max_escalation_level,
            "escalation_channels": [c.value for c in self.escalation_channels],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EscalationPreference":
        return cls(
            enabled=bool(data.get("enabled", True)),
            per_severity_delay_minutes={
                AlertSeverity(s): d for s, d in data.get("per_severity_delay_minutes", {}).items()
            },
            max_escalation_level=int(data.get("max_escalation_level", 3)),
            escalation_channels=[AlertChannel(c) for c in data.get("escalation_channels", [])],
        )


@dataclass
class SnoozePreference:
    default_duration_minutes: int = 30
    max_duration_minutes: int = 480
    allowed_severities: list[AlertSeverity] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "default_duration_minutes": self.default_duration_minutes,
            "max_duration_minutes": self.max_duration_minutes,
            "allowed_severities": [s.value for s in self.allowed_severities],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SnoozePreference":
        return cls(
            default_duration_minutes=int(data.get("default_duration_minutes", 30)),
            max_duration_minutes=int(data.get("max_duration_minutes", 480)),
            allowed_severities=[AlertSeverity(s) for s in data.get("allowed_severities", [])],
        )


@dataclass
class NotificationPreferences:
    """All delivery preferences of one user."""

    user_id: str
    channels: dict[AlertChannel, ChannelPreference] = field(default_factory=dict)
    categories: dict[str, CategoryPreference] = field(default_factory=dict)
    frequency: dict[DeliveryFrequency, list[str]] = field(default_factory=dict)
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    escalation: EscalationPreference = field(default_factory=EscalationPreference)
    snooze: SnoozePreference = field(default_factory=SnoozePreference)
    grouping_window_minutes: int = 60
    updated_at: Optional[datetime] = None

    def channel(self, channel: AlertChannel) -> ChannelPreference:
        return self.channels.get(channel) or ChannelPreference(enabled=False)

    def frequency_for(self, category: str) -> DeliveryFrequency:
        for tier, categories in self.frequency.items():
            if category in categories:
                return tier
        return DeliveryFrequency.IMMEDIATE

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "channels": {c.value: p.to_dict() for c, p in self.channels.items()},
            "categories": {name: p.to_dict() for name, p in self.categories.items()},
            "frequency": {tier.value: list(cats) for tier, cats in self.frequency.items()},
            "quiet_hours": self.quiet_hours.to_dict(),
            "escalation": self.escalation.to_dict(),
            "snooze": self.snooze.to_dict(),
            "grouping_window_minutes": self.grouping_window_minutes,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationPreferences":
        updated = data.get("updated_at")
        return cls(
            user_id=data["user_id"],
            channels={
                AlertChannel(c): ChannelPreference.from_dict(p)
                for c, p in data.get("channels", {}).items()
            },
            categories={
                name: CategoryPreference.from_dict(p)
                for name, p in data.get("categories", {}).items()
            },
            frequency={
                DeliveryFrequency(tier): list(cats)
                for tier, cats in data.get("frequency", {}).items()
            },
            quiet_hours=QuietHours.from_dict(data.get("quiet_hours", {})),
            escalation=EscalationPreference.from_dict(data.get("escalation", {})),
            snooze=SnoozePreference.from_dict(data.get("snooze", {})),
            grouping_window_minutes=int(data.get("grouping_window_minutes", 60)),
            updated_at=datetime.fromisoformat(updated) if updated else None,
        )


# ── Analytics ────────────────────────────────────────────────────────


@dataclass
class DismissalPattern:
    """Learned behavior of one user for one (category, type) pair."""

    user_id: str
    category: str
    notification_type: str
    dismissal_rate: float = 0.0
    average_time_to_action_ms: float = 0.0
    preferred_actions: set[str] = field(default_factory=set)
    sample_count: int = 0
    last_updated: datetime = field(default_factory=_now)

    @property
    def key(self) -> str:
        return pattern_key(self.user_id, self.category, self.notification_type)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "category": self.category,
            "notification_type": self.notification_type,
            "dismissal_rate": self.dismissal_rate,
            "average_time_to_action_ms": self.average_time_to_action_ms,
            "preferred_actions": sorted(self.preferred_actions),
            "sample_count": self.sample_count,
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DismissalPattern":
        return cls(
            user_id=data["user_id"],
            category=data["category"],
            notification_type=data["notification_type"],
            dismissal_rate=float(data.get("dismissal_rate", 0.0)),
            average_time_to_action_ms=float(data.get("average_time_to_action_ms", 0.0)),
            preferred_actions=set(data.get("preferred_actions", [])),
            sample_count=int(data.get("sample_count", 0)),
            last_updated=datetime.fromisoformat(data["last_updated"]),
        )


def pattern_key(user_id: str, category: str, notification_type: str) -> str:
    return f"dismissal:{user_id}:{category}:{notification_type}"


@dataclass
class InteractionEvent:
    """A delivery outcome or user interaction."""

    event_type: InteractionType
    user_id: str
    category: str = ""
    notification_type: str = "alert"
    alert_id: Optional[str] = None
    notification_id: Optional[str] = None
    channel: Optional[AlertChannel] = None
    action_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)
    notification_created_at: Optional[datetime] = None
    event_id: str = field(default_factory=_new_id)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def time_to_action_ms(self) -> Optional[float]:
        if self.notification_created_at is None:
            return None
        return max((self.timestamp - self.notification_created_at).total_seconds() * 1000, 0.0)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "category": self.category,
            "notification_type": self.notification_type,
            "alert_id": self.alert_id,
            "notification_id": self.notification_id,
            "channel": self.channel.value if self.channel else None,
            "action_id": self.action_id,
            "timestamp": self.timestamp.isoformat(),
            "notification_created_at": _iso(self.notification_created_at),
            "metadata": dict(self.metadata),
        }

"""Configuration for the Alert & Notification Delivery Engine."""

from dataclasses import dataclass, field
from enum import Enum


class AlertSeverity(Enum):
    """Alert severity levels (ordered low to critical)."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


class AlertStatus(Enum):
    """Alert lifecycle states."""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SNOOZED = "snoozed"
    ESCALATED = "escalated"


class AlertChannel(Enum):
    """Delivery channels."""
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"


class NotificationPriority(Enum):
    """Priority of a surfaced notification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


class DeliveryFrequency(Enum):
    """How often a channel or category is delivered."""
    IMMEDIATE = "immediate"
    BATCHED = "batched"
    DIGEST = "digest"


class AvailabilityStatus(Enum):
    """User availability as reported by the host."""
    AVAILABLE = "available"
    BUSY = "busy"
    AWAY = "away"
    DO_NOT_DISTURB = "do_not_disturb"


class InteractionType(Enum):
    """Analytics event types."""
    DELIVERED = "delivered"
    FAILED = "failed"
    VIEWED = "viewed"
    CLICKED = "clicked"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class BatchOperation(Enum):
    """Operations applicable to a whole notification group."""
    MARK_READ = "mark_read"
    DISMISS = "dismiss"
    SNOOZE = "snooze"


class ConflictStrategy(Enum):
    """Offline sync conflict resolution strategies."""
    LOCAL = "local"
    SERVER = "server"
    MERGE = "merge"
    MANUAL = "manual"


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}

_PRIORITY_RANK = {
    NotificationPriority.LOW: 0,
    NotificationPriority.MEDIUM: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.URGENT: 3,
}

SEVERITY_TO_PRIORITY = {
    AlertSeverity.LOW: NotificationPriority.LOW,
    AlertSeverity.MEDIUM: NotificationPriority.MEDIUM,
    AlertSeverity.HIGH: NotificationPriority.HIGH,
    AlertSeverity.CRITICAL: NotificationPriority.URGENT,
}

# Statuses in which an alert still needs attention
OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ESCALATED)

SECURITY_CATEGORY = "security"


@dataclass
class DeliveryConfig:
    """Delivery queue and retry settings."""

    max_retries: int = 3
    retry_delay_seconds: float = 30.0
    batch_size: int = 50
    queue_tick_seconds: float = 5.0
    drain_on_create: bool = True
    digest_interval_minutes: int = 24 * 60
    dead_letter_limit: int = 500


@dataclass
class EscalationConfig:
    """Escalation check settings."""

    busy_retry_minutes: int = 15
    away_retry_minutes: int = 30
    dnd_retry_minutes: int = 60
    fatigue_retry_minutes: int = 5
    fatigue_window_minutes: int = 60
    fatigue_max_escalations: int = 2
    history_limit: int = 1000


@dataclass
class AnalyticsConfig:
    """Analytics buffering and learning settings."""

    batch_size: int = 50
    flush_interval_seconds: float = 30.0
    learning_rate: float = 0.1
    event_history_limit: int = 10_000
    high_dismissal_rate: float = 0.7


@dataclass
class RelevanceWeights:
    """Weights and thresholds for the relevance score.

    Score = base - dismissal_weight * dismissal_rate + bonuses - penalties,
    clamped to [0, 1]. A notification is shown when the score meets the
    threshold for its priority.
    """

    base_score: float = 0.5
    dismissal_weight: float = 0.5
    quick_action_bonus: float = 0.2
    quick_action_ms: float = 30_000.0
    available_bonus: float = 0.1
    dnd_penalty: float = 0.3
    fatigue_penalty: float = 0.2
    fatigue_window_minutes: int = 60
    fatigue_max_similar: int = 2
    priority_bonus: dict = field(default_factory=lambda: {
        NotificationPriority.LOW: 0.0,
        NotificationPriority.MEDIUM: 0.1,
        NotificationPriority.HIGH: 0.2,
        NotificationPriority.URGENT: 0.3,
    })
    thresholds: dict = field(default_factory=lambda: {
        NotificationPriority.LOW: 0.7,
        NotificationPriority.MEDIUM: 0.5,
        NotificationPriority.HIGH: 0.3,
        NotificationPriority.URGENT: 0.1,
    })
    lower_priority_rate: float = 0.8
    raise_priority_rate: float = 0.2


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    relevance: RelevanceWeights = field(default_factory=RelevanceWeights)
    retention_days: int = 7
    cleanup_interval_hours: int = 24
    history_limit: int = 1000
    notice_limit: int = 200
    default_recipients: list[str] = field(default_factory=lambda: ["current-user"])


DEFAULT_ENGINE_CONFIG = EngineConfig()

"""Alert & Notification Delivery Engine.

Tracks alert lifecycle, escalates over time, fans deliveries out across
channels with retry, filters and groups notifications using learned user
behavior, and records analytics that feed later decisions.
"""

from src.alert_engine.config import (
    AlertChannel,
    AlertSeverity,
    AlertStatus,
    AnalyticsConfig,
    AvailabilityStatus,
    BatchOperation,
    ConflictStrategy,
    DeliveryConfig,
    DeliveryFrequency,
    EngineConfig,
    EscalationConfig,
    InteractionType,
    NotificationPriority,
    RelevanceWeights,
    DEFAULT_ENGINE_CONFIG,
)
from src.alert_engine.exceptions import (
    AlertEngineError,
    ConflictError,
    DeliveryError,
    ErrorCode,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from src.alert_engine.models import (
    Alert,
    AlertNotice,
    AlertSnapshot,
    BatchOperationResult,
    DeliveryAttempt,
    DismissalPattern,
    InteractionEvent,
    Notification,
    NotificationGroup,
    NotificationPreferences,
)
from src.alert_engine.scheduler import ThreadingScheduler, TimerHandle, VirtualScheduler
from src.alert_engine.storage import InMemoryKeyValueStore, SqlKeyValueStore
from src.alert_engine.availability import AvailabilityRegistry
from src.alert_engine.channels import (
    CallableChannelAdapter,
    InAppChannelAdapter,
    LoggingChannelAdapter,
    SendResult,
)
from src.alert_engine.preferences import PreferencesStore, default_preferences
from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.relevance import RelevanceDecision, RelevanceFilter
from src.alert_engine.grouping import GroupingManager
from src.alert_engine.delivery import DeliveryDispatcher
from src.alert_engine.escalation import EscalationDecision, EscalationScheduler
from src.alert_engine.store import AlertStore
from src.alert_engine.sync import OfflineSyncQueue, SyncReport
from src.alert_engine.logging_config import configure_logging, log_context
from src.alert_engine.settings import EngineSettings, get_settings

__all__ = [
    # Config
    "AlertChannel",
    "AlertSeverity",
    "AlertStatus",
    "AnalyticsConfig",
    "AvailabilityStatus",
    "BatchOperation",
    "ConflictStrategy",
    "DeliveryConfig",
    "DeliveryFrequency",
    "EngineConfig",
    "EscalationConfig",
    "InteractionType",
    "NotificationPriority",
    "RelevanceWeights",
    "DEFAULT_ENGINE_CONFIG",
    # Errors
    "AlertEngineError",
    "ConflictError",
    "DeliveryError",
    "ErrorCode",
    "NotFoundError",
    "SchedulingError",
    "ValidationError",
    # Models
    "Alert",
    "AlertNotice",
    "AlertSnapshot",
    "BatchOperationResult",
    "DeliveryAttempt",
    "DismissalPattern",
    "InteractionEvent",
    "Notification",
    "NotificationGroup",
    "NotificationPreferences",
    # Infrastructure
    "ThreadingScheduler",
    "TimerHandle",
    "VirtualScheduler",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
    "AvailabilityRegistry",
    "CallableChannelAdapter",
    "InAppChannelAdapter",
    "LoggingChannelAdapter",
    "SendResult",
    # Components
    "PreferencesStore",
    "default_preferences",
    "AnalyticsRecorder",
    "RelevanceDecision",
    "RelevanceFilter",
    "GroupingManager",
    "DeliveryDispatcher",
    "EscalationDecision",
    "EscalationScheduler",
    "AlertStore",
    "OfflineSyncQueue",
    "SyncReport",
    # Ambient
    "configure_logging",
    "log_context",
    "EngineSettings",
    "get_settings",
]

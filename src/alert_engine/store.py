"""Alert store: the alert state machine and the engine's command surface."""

import logging
import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.availability import AvailabilityProvider, AvailabilityRegistry
from src.alert_engine.channels import ChannelAdapter
from src.alert_engine.config import (
    DEFAULT_ENGINE_CONFIG,
    OPEN_STATUSES,
    SEVERITY_TO_PRIORITY,
    AlertChannel,
    AlertSeverity,
    AlertStatus,
    EngineConfig,
    InteractionType,
)
from src.alert_engine.delivery import DeliveryDispatcher
from src.alert_engine.escalation import EscalationScheduler
from src.alert_engine.exceptions import SchedulingError, ValidationError
from src.alert_engine.grouping import GroupingManager
from src.alert_engine.logging_config import log_context
from src.alert_engine.metadata import parse_metadata
from src.alert_engine.models import (
    Alert,
    AlertNotice,
    AlertSnapshot,
    DeliveryAttempt,
    InteractionEvent,
    Notification,
    NotificationPreferences,
)
from src.alert_engine.preferences import PreferencesStore
from src.alert_engine.relevance import RelevanceFilter
from src.alert_engine.scheduler import Scheduler, ThreadingScheduler, TimerHandle
from src.alert_engine.settings import EngineSettings
from src.alert_engine.storage import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore

logger = logging.getLogger(__name__)

AlertListener = Callable[[tuple], None]
NoticeListener = Callable[[AlertNotice], None]

# Allowed status transitions. ESCALATED -> ESCALATED raises the level.
TRANSITIONS: Dict[AlertStatus, frozenset] = {
    AlertStatus.ACTIVE: frozenset({
        AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.SNOOZED, AlertStatus.ESCALATED,
    }),
    AlertStatus.ESCALATED: frozenset({
        AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.ESCALATED,
    }),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.SNOOZED: frozenset({AlertStatus.ACTIVE, AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in TRANSITIONS[current]


class AlertStore:
    """Owns every alert and serializes all state changes.

    Commands and timer callbacks run under one re-entrant lock, so the store
    behaves as a single actor even with a threaded scheduler. Collaborators
    (preferences, analytics, relevance, grouping, dispatcher, escalation)
    are built from the shared scheduler and key-value store unless injected.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        scheduler: Optional[Scheduler] = None,
        kv_store: Optional[KeyValueStore] = None,
        adapters: Optional[Dict[AlertChannel, ChannelAdapter]] = None,
        availability: Optional[AvailabilityProvider] = None,
        get_recipients: Optional[Callable[[AlertSnapshot], List[str]]] = None,
        preferences: Optional[PreferencesStore] = None,
        analytics: Optional[AnalyticsRecorder] = None,
        relevance: Optional[RelevanceFilter] = None,
        grouping: Optional[GroupingManager] = None,
        dispatcher: Optional[DeliveryDispatcher] = None,
        escalation: Optional[EscalationScheduler] = None,
    ) -> None:
        self.config = config or DEFAULT_ENGINE_CONFIG
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or ThreadingScheduler()
        kv_store = kv_store or InMemoryKeyValueStore()
        clock = self.scheduler.now

        self.availability = availability or AvailabilityRegistry()
        self.preferences = preferences or PreferencesStore(kv_store, clock)
        self.analytics = analytics or AnalyticsRecorder(kv_store, self.scheduler, self.config.analytics, clock)
        self.relevance = relevance or RelevanceFilter(
            self.preferences, self.analytics, self.availability, self.config.relevance, clock,
        )
        self.grouping = grouping or GroupingManager(self.preferences, self.analytics, clock)
        self.dispatcher = dispatcher or DeliveryDispatcher(
            self.preferences, self.scheduler, adapters, self.analytics, self.config.delivery,
        )
        self.escalation = escalation or EscalationScheduler(
            self.preferences, self.analytics, self.scheduler, self.availability, self.config.escalation,
        )
        self._recipient_resolver = get_recipients

        self._alerts: Dict[str, Alert] = {}
        self._snooze_handles: Dict[str, TimerHandle] = {}
        self._listeners: List[AlertListener] = []
        self._notice_listeners: List[NoticeListener] = []
        self._notices: deque[AlertNotice] = deque(maxlen=self.config.notice_limit)
        self._cleanup_handle: Optional[TimerHandle] = None
        self._lock = threading.RLock()

        self.dispatcher.bind(self.get_recipients, self._record_attempt, self.get_alert, self._surface_in_app)
        self.escalation.bind(self.get_alert, self.escalate_alert, self._escalation_user)

    @classmethod
    def from_settings(cls, settings: EngineSettings, scheduler: Optional[Scheduler] = None) -> "AlertStore":
        """Build a store from environment settings, on SQL storage when enabled."""
        kv_store = SqlKeyValueStore(settings.database_url) if settings.use_database else None
        return cls(config=settings.to_engine_config(), scheduler=scheduler, kv_store=kv_store)

    # ── Helpers ──────────────────────────────────────────────────────

    def _now(self) -> datetime:
        return self.scheduler.now()

    def get_recipients(self, alert: AlertSnapshot) -> List[str]:
        """Recipients of an alert: its assignee first, then the resolver's users."""
        if self._recipient_resolver is not None:
            users = list(self._recipient_resolver(alert))
        else:
            users = list(self.config.default_recipients)
        if alert.assignee:
            users.insert(0, alert.assignee)
        return list(dict.fromkeys(users))

    def _escalation_user(self, alert: AlertSnapshot) -> str:
        recipients = self.get_recipients(alert)
        return recipients[0] if recipients else ""

    def _record_attempt(self, alert_id: str, attempt: DeliveryAttempt) -> None:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is not None:
                alert.delivery_attempts.append(attempt)

    def _surface_in_app(self, alert: AlertSnapshot, user_id: str) -> bool:
        notification = Notification(
            user_id=user_id,
            category=alert.category,
            priority=SEVERITY_TO_PRIORITY[alert.severity],
            title=alert.title,
            message=alert.message,
            alert_id=alert.alert_id,
            created_at=self._now(),
        )
        if not self.relevance.should_show(notification, user_id):
            return False
        self.grouping.add_notification(notification)
        return True

    # ── Commands ─────────────────────────────────────────────────────

    def create_alert(
        self,
        title: str,
        message: str,
        severity: Union[AlertSeverity, str],
        category: str,
        source: str = "system",
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        assignee: Optional[str] = None,
    ) -> str:
        """Create an active alert, queue it for delivery and arm its escalation.

        Returns:
            The new alert's id.

        Raises:
            ValidationError: on an empty title or category, an unknown
                severity, or metadata that does not fit the category schema.
        """
        if not title or not title.strip():
            raise ValidationError("Alert title is required", field="title")
        if not category or not category.strip():
            raise ValidationError("Alert category is required", field="category")
        if not isinstance(severity, AlertSeverity):
            try:
                severity = AlertSeverity(severity)
            except ValueError as exc:
                raise ValidationError(f"Unknown severity '{severity}'", field="severity") from exc

        alert = Alert(
            title=title.strip(),
            message=message,
            severity=severity,
            category=category,
            source=source,
            created_at=self._now(),
            assignee=assignee,
            tags=set(tags or ()),
            metadata=parse_metadata(category, metadata),
        )

        with self._lock, log_context(alert_id=alert.alert_id):
            self._alerts[alert.alert_id] = alert
            self.dispatcher.enqueue(alert.alert_id)
            self.escalation.arm(alert.snapshot())
            logger.info("Created %s alert %s: %s", severity.value, alert.alert_id, alert.title)
            self._notify()

        if self.config.delivery.drain_on_create:
            try:
                self.dispatcher.process_queue()
            except Exception:
                logger.exception("Delivery of alert %s failed", alert.alert_id)
        return alert.alert_id

    def acknowledge_alert(self, alert_id: str, user_id: str) -> bool:
        """Acknowledge an open alert and stop its escalation."""
        with self._lock, log_context(alert_id=alert_id, user_id=user_id):
            alert = self._alerts.get(alert_id)
            if alert is None or not can_transition(alert.status, AlertStatus.ACKNOWLEDGED):
                return False
            self.escalation.cancel_escalation(alert_id)
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_by = user_id
            alert.acknowledged_at = self._now()
            self._record_lifecycle(alert, user_id, InteractionType.ACKNOWLEDGED)
            self._emit_notice("acknowledged", alert, user_id, f"Alert '{alert.title}' acknowledged by {user_id}")
            logger.info("Alert %s acknowledged", alert_id)
            self._notify()
            return True

    def resolve_alert(self, alert_id: str, user_id: str) -> bool:
        """Resolve an alert, cancelling its escalation and snooze timers."""
        with self._lock, log_context(alert_id=alert_id, user_id=user_id):
            alert = self._alerts.get(alert_id)
            if alert is None or not can_transition(alert.status, AlertStatus.RESOLVED):
                return False
            self.escalation.cancel_escalation(alert_id)
            self.scheduler.cancel(self._snooze_handles.pop(alert_id, None))
            alert.status = AlertStatus.RESOLVED
            alert.snoozed_until = None
            alert.resolved_by = user_id
            alert.resolved_at = self._now()
            self.grouping.remove_alert(alert_id)
            self._record_lifecycle(alert, user_id, InteractionType.RESOLVED)
            self._emit_notice("resolved", alert, user_id, f"Alert '{alert.title}' resolved by {user_id}")
            logger.info("Alert %s resolved", alert_id)
            self._notify()
            return True

    def snooze_alert(self, alert_id: str, duration_minutes: Optional[float] = None, user_id: str = "current-user") -> bool:
        """Snooze an active alert for ``duration_minutes`` (the user's default if None).

        Raises:
            ValidationError: if the user may not snooze this severity or the
                duration is not within (0, max_duration_minutes].
        """
        with self._lock, log_context(alert_id=alert_id, user_id=user_id):
            alert = self._alerts.get(alert_id)
            if alert is None or not can_transition(alert.status, AlertStatus.SNOOZED):
                return False
            snooze = self.preferences.get_preferences(user_id).snooze
            if alert.severity not in snooze.allowed_severities:
                raise ValidationError(
                    f"Alerts of severity '{alert.severity.value}' cannot be snoozed",
                    field="severity",
                )
            if duration_minutes is None:
                duration_minutes = snooze.default_duration_minutes
            if duration_minutes <= 0 or duration_minutes > snooze.max_duration_minutes:
                raise ValidationError(
                    f"Snooze duration must be between 1 and {snooze.max_duration_minutes} minutes",
                    field="duration_minutes",
                )

            try:
                handle = self.scheduler.schedule(
                    duration_minutes * 60, lambda: self._expire_snooze(alert_id), label=f"snooze:{alert_id}",
                )
            except SchedulingError:
                logger.error("Could not schedule snooze expiry for %s", alert_id, exc_info=True)
                return False

            self.escalation.cancel_escalation(alert_id)
            self.scheduler.cancel(self._snooze_handles.pop(alert_id, None))
            self._snooze_handles[alert_id] = handle
            alert.status = AlertStatus.SNOOZED
            alert.snoozed_until = self._now() + timedelta(minutes=duration_minutes)
            self._record_lifecycle(alert, user_id, InteractionType.SNOOZED)
            self._emit_notice(
                "snoozed", alert, user_id,
                f"Alert '{alert.title}' snoozed for {duration_minutes:g} minutes",
            )
            logger.info("Alert %s snoozed until %s", alert_id, alert.snoozed_until.isoformat())
            self._notify()
            return True

    def _expire_snooze(self, alert_id: str) -> None:
        with self._lock, log_context(alert_id=alert_id):
            self._snooze_handles.pop(alert_id, None)
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.SNOOZED:
                return
            alert.status = AlertStatus.ACTIVE
            alert.snoozed_until = None
            self.escalation.arm(alert.snapshot())
            logger.info("Snooze on alert %s expired, alert reactivated", alert_id)
            self._notify()

    def escalate_alert(self, alert_id: str) -> bool:
        """Raise an open alert one escalation level and deliver via that level's channel."""
        with self._lock, log_context(alert_id=alert_id):
            alert = self._alerts.get(alert_id)
            if alert is None or not can_transition(alert.status, AlertStatus.ESCALATED):
                return False
            user_id = self._escalation_user(alert.snapshot())
            prefs = self.preferences.get_preferences(user_id).escalation
            if alert.escalation_level >= prefs.max_escalation_level:
                logger.info("Alert %s already at max escalation level", alert_id)
                return False

            self.escalation.cancel_escalation(alert_id)
            alert.escalation_level += 1
            alert.escalated_at = self._now()
            alert.status = AlertStatus.ESCALATED

            channels = prefs.escalation_channels
            channel = channels[min(alert.escalation_level, len(channels)) - 1] if channels else None
            self.analytics.record_escalation(alert_id, user_id, alert.category, alert.escalation_level, channel)

            delivered = False
            if channel is not None:
                recipients = self.get_recipients(alert.snapshot())
                attempts = self.dispatcher.deliver_escalation(alert.snapshot(), channel, recipients)
                delivered = any(a.success for a in attempts)
            self.escalation.record_outcome(alert.snapshot(), user_id, channel, delivered)

            logger.warning(
                "Alert %s escalated to level %d via %s",
                alert_id, alert.escalation_level, channel.value if channel else "none",
            )
            if alert.escalation_level < prefs.max_escalation_level:
                self.escalation.arm(alert.snapshot())
            self._notify()
            return True

    def record_interaction(
        self,
        alert_id: str,
        user_id: str,
        event_type: Union[InteractionType, str],
        action_id: Optional[str] = None,
    ) -> bool:
        """Feed a user interaction (viewed, clicked, dismissed) into analytics."""
        if not isinstance(event_type, InteractionType):
            try:
                event_type = InteractionType(event_type)
            except ValueError as exc:
                raise ValidationError(f"Unknown interaction '{event_type}'", field="event_type") from exc
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            event = InteractionEvent(
                event_type=event_type,
                user_id=user_id,
                category=alert.category,
                alert_id=alert_id,
                action_id=action_id,
                timestamp=self._now(),
                notification_created_at=alert.created_at,
            )
        self.analytics.record_event(event)
        return True

    def _record_lifecycle(self, alert: Alert, user_id: str, event_type: InteractionType) -> None:
        self.analytics.record_event(InteractionEvent(
            event_type=event_type,
            user_id=user_id,
            category=alert.category,
            alert_id=alert.alert_id,
            timestamp=self._now(),
            notification_created_at=alert.created_at,
        ))

    # ── Queries ──────────────────────────────────────────────────────

    def get_alert(self, alert_id: str) -> Optional[AlertSnapshot]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.snapshot() if alert else None

    def get_active_alerts(self) -> List[AlertSnapshot]:
        """Open alerts, most severe first, newest first within a severity."""
        with self._lock:
            return self._active_snapshots()

    def _active_snapshots(self) -> List[AlertSnapshot]:
        active = [a for a in self._alerts.values() if a.status in OPEN_STATUSES]
        active.sort(key=lambda a: (a.severity.rank, a.created_at), reverse=True)
        return [a.snapshot() for a in active]

    def get_alert_history(self, limit: int = 50) -> List[AlertSnapshot]:
        with self._lock:
            alerts = sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)
            return [a.snapshot() for a in alerts[:limit]]

    def get_alerts_by_category(self, category: str) -> List[AlertSnapshot]:
        with self._lock:
            return [a.snapshot() for a in self._alerts.values() if a.category == category]

    def get_alert_statistics(self) -> dict:
        with self._lock:
            alerts = list(self._alerts.values())
            by_status = Counter(a.status.value for a in alerts)
            by_severity = {s.value: 0 for s in AlertSeverity}
            for alert in alerts:
                by_severity[alert.severity.value] += 1
            stats = {
                "total": len(alerts),
                "by_status": {s.value: by_status.get(s.value, 0) for s in AlertStatus},
                "by_severity": by_severity,
                "by_category": dict(Counter(a.category for a in alerts)),
                "delivery": self.dispatcher.get_stats(),
            }
            for status in AlertStatus:
                stats[status.value] = by_status.get(status.value, 0)
            return stats

    def get_notices(self, limit: int = 50) -> List[AlertNotice]:
        with self._lock:
            return list(self._notices)[-limit:]

    # ── Preferences ──────────────────────────────────────────────────

    def get_preferences(self, user_id: str) -> NotificationPreferences:
        return self.preferences.get_preferences(user_id)

    def update_preferences(self, user_id: str, updates: dict) -> NotificationPreferences:
        return self.preferences.update_preferences(user_id, updates)

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, listener: AlertListener) -> Callable[[], None]:
        """Call ``listener`` with a tuple of active alert snapshots after every change.

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def subscribe_notices(self, listener: NoticeListener) -> Callable[[], None]:
        with self._lock:
            self._notice_listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._notice_listeners:
                    self._notice_listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = tuple(self._active_snapshots())
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Alert listener failed")

    def _emit_notice(self, kind: str, alert: Alert, user_id: str, message: str) -> None:
        notice = AlertNotice(kind, alert.alert_id, user_id, message, created_at=self._now())
        self._notices.append(notice)
        for listener in list(self._notice_listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notice listener failed")

    # ── Remote events ────────────────────────────────────────────────

    def handle_remote_event(self, kind: str, payload: Dict[str, Any]) -> bool:
        """Apply an alert event published by another node.

        Mirrored alerts are stored but neither delivered nor escalated here;
        the originating node owns those.
        """
        if kind == "alert:created":
            alert_id = payload.get("alert_id")
            if not alert_id:
                raise ValidationError("Remote alert has no alert_id", field="alert_id")
            with self._lock:
                if alert_id in self._alerts:
                    return False
                try:
                    severity = AlertSeverity(payload.get("severity", "medium"))
                except ValueError as exc:
                    raise ValidationError("Unknown severity in remote alert", field="severity") from exc
                category = payload.get("category", "system")
                created = payload.get("created_at")
                self._alerts[alert_id] = Alert(
                    alert_id=alert_id,
                    title=payload.get("title", ""),
                    message=payload.get("message", ""),
                    severity=severity,
                    category=category,
                    source=payload.get("source", "remote"),
                    created_at=datetime.fromisoformat(created) if created else self._now(),
                    tags=set(payload.get("tags", [])),
                    metadata=parse_metadata(category, payload.get("metadata")),
                )
                self._notify()
                return True
        if kind == "alert:acknowledged":
            return self.acknowledge_alert(payload["alert_id"], payload.get("user_id", "remote"))
        if kind == "alert:resolved":
            return self.resolve_alert(payload["alert_id"], payload.get("user_id", "remote"))
        raise ValidationError(f"Unknown remote event '{kind}'", field="kind")

    # ── Lifecycle ────────────────────────────────────────────────────

    def purge_resolved(self) -> int:
        """Drop resolved alerts older than the retention window."""
        cutoff = self._now() - timedelta(days=self.config.retention_days)
        with self._lock:
            stale = [
                alert_id for alert_id, alert in self._alerts.items()
                if alert.status == AlertStatus.RESOLVED and alert.resolved_at and alert.resolved_at < cutoff
            ]
            for alert_id in stale:
                del self._alerts[alert_id]
        if stale:
            self.analytics.forget_alerts(stale)
            for adapter in self.dispatcher.adapters():
                forget = getattr(adapter, "forget_alerts", None)
                if forget is not None:
                    forget(stale)
            logger.info("Purged %d resolved alerts", len(stale))
        return len(stale)

    def start(self) -> None:
        """Start the periodic delivery tick, analytics flush and cleanup."""
        self.dispatcher.start()
        self.analytics.start()
        self._schedule_cleanup()

    def _schedule_cleanup(self) -> None:
        self._cleanup_handle = self.scheduler.schedule(
            self.config.cleanup_interval_hours * 3600, self._on_cleanup, label="store:cleanup",
        )

    def _on_cleanup(self) -> None:
        self.purge_resolved()
        self._schedule_cleanup()

    def clear_all(self) -> None:
        """Forget every alert and cancel its timers."""
        with self._lock:
            for alert_id in list(self._alerts):
                self.escalation.cancel_escalation(alert_id)
                self.scheduler.cancel(self._snooze_handles.pop(alert_id, None))
            self._alerts.clear()
            self._notify()

    def shutdown(self) -> None:
        with self._lock:
            self.escalation.shutdown()
            self.dispatcher.stop()
            for handle in self._snooze_handles.values():
                self.scheduler.cancel(handle)
            self._snooze_handles.clear()
            self.scheduler.cancel(self._cleanup_handle)
            self._cleanup_handle = None
        self.analytics.stop()
        if self._owns_scheduler:
            self.scheduler.shutdown()
        logger.info("Alert store shut down")

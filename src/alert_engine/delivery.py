"""Delivery dispatch: queue draining, channel fan-out, retries and batching."""

import logging
import threading
from collections import Counter, defaultdict, deque
from typing import Callable, Dict, List, Optional

from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.channels import ChannelAdapter, default_adapters
from src.alert_engine.config import (
    DEFAULT_ENGINE_CONFIG,
    AlertChannel,
    AlertSeverity,
    AlertStatus,
    DeliveryConfig,
    DeliveryFrequency,
)
from src.alert_engine.exceptions import DeliveryError, SchedulingError
from src.alert_engine.logging_config import log_context
from src.alert_engine.models import AlertSnapshot, DeliveryAttempt, NotificationPreferences
from src.alert_engine.preferences import PreferencesStore
from src.alert_engine.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

RecipientResolver = Callable[[AlertSnapshot], List[str]]
AttemptSink = Callable[[str, DeliveryAttempt], None]
AlertLookup = Callable[[str], Optional[AlertSnapshot]]
SurfaceFilter = Callable[[AlertSnapshot, str], bool]

_CHANNEL_ORDER = list(AlertChannel)


def enabled_channels(alert: AlertSnapshot, prefs: NotificationPreferences) -> List[AlertChannel]:
    """Channels a user wants this alert on, in channel order.

    A channel qualifies when it is enabled and the alert's severity meets its
    threshold. A category channel list further narrows the set; a disabled
    category blocks everything below critical.
    """
    category = prefs.categories.get(alert.category)
    if category is not None and not category.enabled and alert.severity != AlertSeverity.CRITICAL:
        return []
    channels = [
        channel for channel in _CHANNEL_ORDER
        if channel in prefs.channels
        and prefs.channels[channel].enabled
        and alert.severity.rank >= prefs.channels[channel].severity_threshold.rank
    ]
    if category is not None and category.channels:
        channels = [c for c in channels if c in category.channels]
    return channels


class DeliveryDispatcher:
    """Drains the delivery queue and sends alerts through channel adapters.

    The queue is FIFO and drained ``batch_size`` alerts at a time, either on
    demand or on the periodic tick. A failed send is retried after
    ``retry_delay_seconds`` until ``max_retries`` is reached, after which the
    failure is final and the attempt lands in the dead-letter list. Failures
    never propagate to the caller that enqueued the alert.
    """

    def __init__(
        self,
        preferences: PreferencesStore,
        scheduler: Scheduler,
        adapters: Optional[Dict[AlertChannel, ChannelAdapter]] = None,
        analytics: Optional[AnalyticsRecorder] = None,
        config: Optional[DeliveryConfig] = None,
    ):
        self.config = config or DEFAULT_ENGINE_CONFIG.delivery
        self._preferences = preferences
        self._scheduler = scheduler
        self._adapters: Dict[AlertChannel, ChannelAdapter] = adapters if adapters is not None else default_adapters()
        self._analytics = analytics

        self._get_recipients: RecipientResolver = lambda alert: []
        self._on_attempt: AttemptSink = lambda alert_id, attempt: None
        self._lookup: AlertLookup = lambda alert_id: None
        self._surface: Optional[SurfaceFilter] = None

        self._queue: deque[str] = deque()
        self._in_progress = False
        self._tick_handle: Optional[TimerHandle] = None
        self._deferred: Dict[tuple[str, AlertChannel], List[str]] = defaultdict(list)
        self._deferred_handles: Dict[tuple[str, AlertChannel], TimerHandle] = {}
        self._dead_letter: deque[DeliveryAttempt] = deque(maxlen=self.config.dead_letter_limit)
        self._stats: Counter = Counter()
        self._by_channel: Dict[str, Counter] = defaultdict(Counter)
        self._lock = threading.RLock()

    def bind(
        self,
        get_recipients: RecipientResolver,
        on_attempt: AttemptSink,
        lookup: AlertLookup,
        surface: Optional[SurfaceFilter] = None,
    ) -> None:
        """Connect the dispatcher to the alert store that owns the alerts."""
        self._get_recipients = get_recipients
        self._on_attempt = on_attempt
        self._lookup = lookup
        self._surface = surface

    def register_adapter(self, adapter: ChannelAdapter) -> None:
        self._adapters[adapter.channel] = adapter

    def get_adapter(self, channel: AlertChannel) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel)

    def adapters(self) -> List[ChannelAdapter]:
        return list(self._adapters.values())

    # ── Queue ────────────────────────────────────────────────────────

    def enqueue(self, alert_id: str) -> None:
        with self._lock:
            self._queue.append(alert_id)
            self._stats["enqueued"] += 1

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def process_queue(self) -> int:
        """Deliver up to one batch of queued alerts. Returns how many were taken."""
        with self._lock:
            if self._in_progress or not self._queue:
                return 0
            self._in_progress = True
            batch = [self._queue.popleft() for _ in range(min(self.config.batch_size, len(self._queue)))]
        try:
            for alert_id in batch:
                alert = self._lookup(alert_id)
                if alert is None or alert.status == AlertStatus.RESOLVED:
                    self._stats["skipped"] += 1
                    continue
                try:
                    self.deliver(alert)
                except Exception:
                    logger.exception("Delivery of queued alert %s failed", alert_id)
                    self._stats["failed"] += 1
            return len(batch)
        finally:
            with self._lock:
                self._in_progress = False

    def start(self) -> None:
        """Arm the periodic queue tick."""
        if self._tick_handle is not None:
            return
        self._tick_handle = self._scheduler.schedule(
            self.config.queue_tick_seconds, self._on_tick, label="delivery:tick",
        )

    def stop(self) -> None:
        self._scheduler.cancel(self._tick_handle)
        self._tick_handle = None
        with self._lock:
            handles = list(self._deferred_handles.values())
            self._deferred_handles.clear()
        for handle in handles:
            self._scheduler.cancel(handle)

    def _on_tick(self) -> None:
        self._tick_handle = None
        try:
            self.process_queue()
        finally:
            self.start()

    # ── Delivery ─────────────────────────────────────────────────────

    def deliver(self, alert: AlertSnapshot) -> List[DeliveryAttempt]:
        """Fan an alert out to every recipient's enabled channels."""
        attempts = []
        now = self._scheduler.now()
        for user_id in self._get_recipients(alert):
            prefs = self._preferences.get_preferences(user_id)
            for channel in enabled_channels(alert, prefs):
                channel_pref = prefs.channels[channel]
                urgent = alert.severity == AlertSeverity.CRITICAL
                quiet = channel_pref.quiet_hours
                if quiet is not None and quiet.is_active(now) and not (urgent and quiet.allow_urgent):
                    self._stats["quiet_hours_skipped"] += 1
                    continue
                if channel == AlertChannel.IN_APP and self._surface is not None:
                    if not self._surface(alert, user_id):
                        self._stats["filtered"] += 1
                        continue
                if channel_pref.frequency != DeliveryFrequency.IMMEDIATE and not urgent:
                    self._defer(alert, channel, user_id, channel_pref.frequency, channel_pref.batch_interval_minutes)
                    continue
                attempts.append(self._send(alert, channel, user_id, 0, alert.escalation_level))
        return attempts

    def deliver_escalation(
        self, alert: AlertSnapshot, channel: AlertChannel, recipients: List[str],
    ) -> List[DeliveryAttempt]:
        """Send an escalation immediately, bypassing channel filters and batching."""
        return [
            self._send(alert, channel, user_id, 0, alert.escalation_level)
            for user_id in recipients
        ]

    def _send(
        self,
        alert: AlertSnapshot,
        channel: AlertChannel,
        user_id: str,
        retry_count: int,
        escalation_level: int,
    ) -> DeliveryAttempt:
        retryable = True
        adapter = self._adapters.get(channel)
        with log_context(alert_id=alert.alert_id, user_id=user_id, channel=channel.value):
            if adapter is None:
                success, error, retryable = False, f"No adapter registered for {channel.value}", False
            else:
                try:
                    result = adapter.send(alert, user_id)
                    success, error = result.success, result.error
                except DeliveryError as exc:
                    success, error, retryable = False, exc.message, exc.retryable
                except Exception as exc:
                    logger.exception("Adapter %s raised while sending", channel.value)
                    success, error = False, str(exc) or exc.__class__.__name__

            will_retry = not success and retryable and retry_count < self.config.max_retries
            if will_retry:
                will_retry = self._schedule_retry(alert.alert_id, channel, user_id, retry_count + 1, escalation_level)

            attempt = DeliveryAttempt(
                channel=channel,
                user_id=user_id,
                success=success,
                timestamp=self._scheduler.now(),
                error=error,
                retry_count=retry_count,
                escalation_level=escalation_level,
                final=success or not will_retry,
            )
            self._on_attempt(alert.alert_id, attempt)
            if self._analytics is not None:
                self._analytics.record_delivery(alert.alert_id, user_id, alert.category, channel, success, error)

            with self._lock:
                self._stats["attempts"] += 1
                self._by_channel[channel.value]["success" if success else "failed"] += 1
                if success:
                    self._stats["delivered"] += 1
                elif will_retry:
                    self._stats["failed_attempts"] += 1
                else:
                    self._stats["failed_attempts"] += 1
                    self._stats["terminal_failures"] += 1
                    self._dead_letter.append(attempt)

            if success:
                logger.debug("Delivered via %s (retry %d)", channel.value, retry_count)
            elif will_retry:
                logger.warning("Delivery via %s failed (%s), retry %d scheduled", channel.value, error, retry_count + 1)
            else:
                logger.error("Delivery via %s failed permanently after %d retries: %s", channel.value, retry_count, error)
        return attempt

    def _schedule_retry(
        self, alert_id: str, channel: AlertChannel, user_id: str, retry_count: int, escalation_level: int,
    ) -> bool:
        try:
            self._scheduler.schedule(
                self.config.retry_delay_seconds,
                lambda: self._retry(alert_id, channel, user_id, retry_count, escalation_level),
                label=f"delivery:retry:{alert_id}",
            )
        except SchedulingError:
            logger.exception("Could not schedule retry for alert %s", alert_id)
            return False
        self._stats["retries_scheduled"] += 1
        return True

    def _retry(self, alert_id: str, channel: AlertChannel, user_id: str, retry_count: int, escalation_level: int) -> None:
        alert = self._lookup(alert_id)
        if alert is None or alert.status == AlertStatus.RESOLVED:
            self._stats["retries_abandoned"] += 1
            logger.info("Dropping retry for alert %s: alert resolved or purged", alert_id)
            return
        self._send(alert, channel, user_id, retry_count, escalation_level)

    # ── Deferred (batched / digest) delivery ─────────────────────────

    def _defer(
        self,
        alert: AlertSnapshot,
        channel: AlertChannel,
        user_id: str,
        frequency: DeliveryFrequency,
        interval_minutes: int,
    ) -> None:
        key = (user_id, channel)
        with self._lock:
            self._deferred[key].append(alert.alert_id)
            self._stats["deferred"] += 1
            if key in self._deferred_handles:
                return
        minutes = interval_minutes if frequency == DeliveryFrequency.BATCHED else self.config.digest_interval_minutes
        try:
            handle = self._scheduler.schedule(
                minutes * 60, lambda: self.flush_deferred(user_id, channel),
                label=f"delivery:batch:{user_id}:{channel.value}",
            )
        except SchedulingError:
            logger.exception("Could not schedule batch flush for %s/%s, sending now", user_id, channel.value)
            self.flush_deferred(user_id, channel)
            return
        with self._lock:
            self._deferred_handles[key] = handle

    def flush_deferred(self, user_id: str, channel: AlertChannel) -> int:
        """Send everything held for (user, channel). Returns how many were sent."""
        key = (user_id, channel)
        with self._lock:
            alert_ids = self._deferred.pop(key, [])
            handle = self._deferred_handles.pop(key, None)
        self._scheduler.cancel(handle)
        sent = 0
        for alert_id in dict.fromkeys(alert_ids):
            alert = self._lookup(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                continue
            self._send(alert, channel, user_id, 0, alert.escalation_level)
            sent += 1
        return sent

    def pending_deferred(self, user_id: str) -> Dict[str, List[str]]:
        with self._lock:
            return {
                channel.value: list(ids)
                for (uid, channel), ids in self._deferred.items()
                if uid == user_id and ids
            }

    # ── Stats ────────────────────────────────────────────────────────

    def get_dead_letters(self) -> List[DeliveryAttempt]:
        with self._lock:
            return list(self._dead_letter)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "queue_size": len(self._queue),
                "in_progress": self._in_progress,
                "enqueued": self._stats["enqueued"],
                "attempts": self._stats["attempts"],
                "delivered": self._stats["delivered"],
                "failed_attempts": self._stats["failed_attempts"],
                "terminal_failures": self._stats["terminal_failures"],
                "failed": self._stats["failed"],
                "retries_scheduled": self._stats["retries_scheduled"],
                "retries_abandoned": self._stats["retries_abandoned"],
                "filtered": self._stats["filtered"],
                "quiet_hours_skipped": self._stats["quiet_hours_skipped"],
                "deferred": sum(len(ids) for ids in self._deferred.values()),
                "dead_letter_count": len(self._dead_letter),
                "by_channel": {k: dict(v) for k, v in self._by_channel.items()},
            }

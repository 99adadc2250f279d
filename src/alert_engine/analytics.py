"""Delivery and interaction analytics with learned dismissal patterns."""

import copy
import logging
import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from src.alert_engine.config import (
    DEFAULT_ENGINE_CONFIG,
    AlertChannel,
    AnalyticsConfig,
    InteractionType,
)
from src.alert_engine.models import DismissalPattern, InteractionEvent, _now, pattern_key
from src.alert_engine.scheduler import Scheduler, TimerHandle
from src.alert_engine.storage import InMemoryKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)

# Events that count as the user having engaged with an alert
INTERACTION_EVENTS = frozenset({
    InteractionType.VIEWED,
    InteractionType.CLICKED,
    InteractionType.DISMISSED,
    InteractionType.SNOOZED,
    InteractionType.ACKNOWLEDGED,
})


@dataclass(frozen=True)
class EscalationRecord:
    alert_id: str
    user_id: str
    category: str
    level: int
    timestamp: datetime
    channel: Optional[AlertChannel] = None


class AnalyticsRecorder:
    """Buffers analytics events and maintains per-user dismissal patterns.

    Events are flushed to the key-value store in batches, either when the
    buffer reaches ``batch_size`` or on the periodic flush tick. A failed
    flush puts the batch back at the front of the buffer.
    """

    EVENT_PREFIX = "analytics:events:"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        scheduler: Optional[Scheduler] = None,
        config: Optional[AnalyticsConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or DEFAULT_ENGINE_CONFIG.analytics
        self._store = store or InMemoryKeyValueStore()
        self._scheduler = scheduler
        self._clock = clock or (scheduler.now if scheduler else _now)
        self._buffer: deque[InteractionEvent] = deque()
        self._history: deque[InteractionEvent] = deque(maxlen=self.config.event_history_limit)
        self._patterns: dict[str, DismissalPattern] = {}
        self._interactions: set[tuple[str, str]] = set()
        self._escalations: deque[EscalationRecord] = deque(maxlen=10_000)
        self._flush_handle: Optional[TimerHandle] = None
        self._flushed_batches = 0
        self._failed_flushes = 0
        self._lock = threading.RLock()

    # ── Recording ────────────────────────────────────────────────────

    def record_event(self, event: InteractionEvent) -> None:
        """Record one event; flushes when the buffer reaches the batch size."""
        with self._lock:
            self._buffer.append(event)
            self._history.append(event)
            if event.event_type in INTERACTION_EVENTS and event.alert_id:
                self._interactions.add((event.alert_id, event.user_id))
            if event.event_type in (InteractionType.DISMISSED, InteractionType.CLICKED):
                self._update_pattern(event)
            should_flush = len(self._buffer) >= self.config.batch_size
        if should_flush:
            self.flush()

    def record_delivery(
        self,
        alert_id: str,
        user_id: str,
        category: str,
        channel: AlertChannel,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        self.record_event(InteractionEvent(
            event_type=InteractionType.DELIVERED if success else InteractionType.FAILED,
            user_id=user_id,
            category=category,
            alert_id=alert_id,
            channel=channel,
            timestamp=self._clock(),
            metadata={"error": error} if error else {},
        ))

    def record_escalation(
        self,
        alert_id: str,
        user_id: str,
        category: str,
        level: int,
        channel: Optional[AlertChannel] = None,
    ) -> None:
        now = self._clock()
        with self._lock:
            self._escalations.append(EscalationRecord(alert_id, user_id, category, level, now, channel))
        self.record_event(InteractionEvent(
            event_type=InteractionType.ESCALATED,
            user_id=user_id,
            category=category,
            alert_id=alert_id,
            channel=channel,
            timestamp=now,
            metadata={"level": level},
        ))

    def _update_pattern(self, event: InteractionEvent) -> None:
        key = pattern_key(event.user_id, event.category, event.notification_type)
        pattern = self._load_pattern(key)
        if pattern is None:
            pattern = DismissalPattern(
                user_id=event.user_id,
                category=event.category,
                notification_type=event.notification_type,
                last_updated=event.timestamp,
            )
        alpha = self.config.learning_rate

        if event.event_type == InteractionType.DISMISSED:
            pattern.dismissal_rate = pattern.dismissal_rate * (1 - alpha) + alpha
        else:
            pattern.dismissal_rate = pattern.dismissal_rate * (1 - alpha)
            time_to_action = event.time_to_action_ms
            if time_to_action is not None:
                if pattern.average_time_to_action_ms == 0:
                    pattern.average_time_to_action_ms = time_to_action
                else:
                    pattern.average_time_to_action_ms = (
                        pattern.average_time_to_action_ms * (1 - alpha) + time_to_action * alpha
                    )
            if event.action_id:
                pattern.preferred_actions.add(event.action_id)

        pattern.sample_count += 1
        pattern.last_updated = event.timestamp
        self._patterns[key] = pattern
        self._store.set(key, pattern.to_dict())

    def _load_pattern(self, key: str) -> Optional[DismissalPattern]:
        pattern = self._patterns.get(key)
        if pattern is None:
            stored = self._store.get(key)
            if stored is not None:
                pattern = DismissalPattern.from_dict(stored)
                self._patterns[key] = pattern
        return pattern

    # ── Flushing ─────────────────────────────────────────────────────

    def flush(self) -> int:
        """Persist buffered events. Returns the number written (0 on failure)."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = [self._buffer.popleft() for _ in range(min(len(self._buffer), self.config.batch_size))]
            key = f"{self.EVENT_PREFIX}{self._clock().isoformat()}:{batch[0].event_id}"
            try:
                self._store.set(key, [e.to_dict() for e in batch])
            except Exception:
                self._buffer.extendleft(reversed(batch))
                self._failed_flushes += 1
                logger.warning("Analytics flush failed, %d events re-queued", len(batch), exc_info=True)
                return 0
            self._flushed_batches += 1
            logger.debug("Flushed %d analytics events", len(batch))
            return len(batch)

    def start(self) -> None:
        """Arm the periodic flush tick."""
        if self._scheduler is None or self._flush_handle is not None:
            return
        self._flush_handle = self._scheduler.schedule(
            self.config.flush_interval_seconds, self._on_flush_tick, label="analytics:flush",
        )

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel(self._flush_handle)
        self._flush_handle = None
        while self._buffer and self.flush():
            pass

    def _on_flush_tick(self) -> None:
        self._flush_handle = None
        while self._buffer and self.flush():
            pass
        self.start()

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    # ── Queries ──────────────────────────────────────────────────────

    def get_pattern(self, user_id: str, category: str, notification_type: str = "alert") -> Optional[DismissalPattern]:
        with self._lock:
            pattern = self._load_pattern(pattern_key(user_id, category, notification_type))
            return copy.deepcopy(pattern) if pattern else None

    def get_patterns(self, user_id: str) -> list[DismissalPattern]:
        with self._lock:
            for key in self._store.keys(f"dismissal:{user_id}:"):
                self._load_pattern(key)
            return [copy.deepcopy(p) for p in self._patterns.values() if p.user_id == user_id]

    def has_user_interacted(self, alert_id: str, user_id: str) -> bool:
        with self._lock:
            return (alert_id, user_id) in self._interactions

    def forget_alerts(self, alert_ids: Iterable[str]) -> None:
        """Drop interaction markers for alerts that no longer exist."""
        gone = set(alert_ids)
        with self._lock:
            self._interactions = {pair for pair in self._interactions if pair[0] not in gone}

    def get_recent_escalations(
        self, user_id: str, category: Optional[str] = None, window_minutes: int = 60,
    ) -> list[EscalationRecord]:
        cutoff = self._clock() - timedelta(minutes=window_minutes)
        with self._lock:
            return [
                r for r in self._escalations
                if r.user_id == user_id
                and r.timestamp >= cutoff
                and (category is None or r.category == category)
            ]

    def get_events(self, user_id: Optional[str] = None, since: Optional[datetime] = None) -> list[InteractionEvent]:
        with self._lock:
            return [
                e for e in self._history
                if (user_id is None or e.user_id == user_id)
                and (since is None or e.timestamp >= since)
            ]

    def fatigue_score(self, user_id: str) -> dict:
        """Fatigue from dismissal behavior (60%) and 24h volume (40%)."""
        patterns = self.get_patterns(user_id)
        avg_rate = sum(p.dismissal_rate for p in patterns) / len(patterns) if patterns else 0.0
        since = self._clock() - timedelta(hours=24)
        volume = sum(
            1 for e in self.get_events(user_id, since)
            if e.event_type == InteractionType.DELIVERED
        )
        score = avg_rate * 0.6 + min(volume / 100, 1.0) * 0.4
        level = "low" if score < 0.3 else "medium" if score < 0.6 else "high"
        return {"score": round(score, 4), "level": level, "dismissal_rate": avg_rate, "daily_volume": volume}

    def analyze_dismissal_patterns(self, user_id: str) -> list[dict]:
        """Categories the user dismisses more often than ``high_dismissal_rate``."""
        flagged = [
            p for p in self.get_patterns(user_id)
            if p.dismissal_rate > self.config.high_dismissal_rate
        ]
        flagged.sort(key=lambda p: p.dismissal_rate, reverse=True)
        return [
            {
                "category": p.category,
                "notification_type": p.notification_type,
                "dismissal_rate": round(p.dismissal_rate, 4),
                "suggestion": "reduce_frequency",
            }
            for p in flagged
        ]

    def get_report(self, user_id: Optional[str] = None, since: Optional[datetime] = None) -> dict:
        """Overview, channel effectiveness and category performance."""
        events = self.get_events(user_id, since)
        counts = Counter(e.event_type for e in events)
        delivered = counts[InteractionType.DELIVERED]
        failed = counts[InteractionType.FAILED]

        by_channel: dict[str, Counter] = defaultdict(Counter)
        by_category: dict[str, Counter] = defaultdict(Counter)
        for event in events:
            if event.channel is not None:
                by_channel[event.channel.value][event.event_type.value] += 1
            if event.category:
                by_category[event.category][event.event_type.value] += 1

        def _rate(num: int, den: int) -> float:
            return round(num / den, 4) if den else 0.0

        return {
            "overview": {
                "total_events": len(events),
                "delivered": delivered,
                "failed": failed,
                "clicked": counts[InteractionType.CLICKED],
                "dismissed": counts[InteractionType.DISMISSED],
                "escalated": counts[InteractionType.ESCALATED],
                "delivery_rate": _rate(delivered, delivered + failed),
                "click_rate": _rate(counts[InteractionType.CLICKED], delivered),
                "dismissal_rate": _rate(counts[InteractionType.DISMISSED], delivered),
            },
            "channel_effectiveness": {
                channel: {
                    "delivered": c["delivered"],
                    "failed": c["failed"],
                    "success_rate": _rate(c["delivered"], c["delivered"] + c["failed"]),
                }
                for channel, c in by_channel.items()
            },
            "category_performance": {
                category: {
                    "delivered": c["delivered"],
                    "clicked": c["clicked"],
                    "dismissed": c["dismissed"],
                    "engagement_rate": _rate(c["clicked"], c["delivered"]),
                }
                for category, c in by_category.items()
            },
            "flushed_batches": self._flushed_batches,
            "failed_flushes": self._failed_flushes,
        }

"""Relevance scoring: decides whether a notification is worth surfacing."""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.availability import AvailabilityProvider, AvailabilityRegistry
from src.alert_engine.config import (
    DEFAULT_ENGINE_CONFIG,
    AvailabilityStatus,
    NotificationPriority,
    RelevanceWeights,
)
from src.alert_engine.models import Notification, _now
from src.alert_engine.preferences import PreferencesStore

logger = logging.getLogger(__name__)

_PRIORITY_ORDER = [
    NotificationPriority.LOW,
    NotificationPriority.MEDIUM,
    NotificationPriority.HIGH,
    NotificationPriority.URGENT,
]


@dataclass
class RelevanceDecision:
    """Outcome of scoring one notification for one user."""

    show: bool
    score: float
    threshold: float
    reason: str
    factors: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "show": self.show,
            "score": round(self.score, 4),
            "threshold": self.threshold,
            "reason": self.reason,
            "factors": {k: round(v, 4) for k, v in self.factors.items()},
        }


class RelevanceFilter:
    """Scores notifications from learned behavior, availability and priority.

    Score starts at ``base_score``; dismissal history, quick-action history,
    availability, priority and recent volume adjust it. The result is clamped
    to [0, 1] and compared against the per-priority threshold. Quiet hours
    block everything except urgent notifications (when allowed).
    """

    def __init__(
        self,
        preferences: PreferencesStore,
        analytics: AnalyticsRecorder,
        availability: Optional[AvailabilityProvider] = None,
        weights: Optional[RelevanceWeights] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._preferences = preferences
        self._analytics = analytics
        self._availability = availability or AvailabilityRegistry()
        self.weights = weights or DEFAULT_ENGINE_CONFIG.relevance
        self._clock = clock or _now
        self._shown: dict[tuple[str, str, str], deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def evaluate(self, notification: Notification, user_id: str) -> RelevanceDecision:
        """Score a notification without recording it as shown."""
        w = self.weights
        now = self._clock()
        priority = notification.priority
        threshold = w.thresholds[priority]
        prefs = self._preferences.get_preferences(user_id)

        if prefs.quiet_hours.is_active(now):
            if not (priority == NotificationPriority.URGENT and prefs.quiet_hours.allow_urgent):
                return RelevanceDecision(False, 0.0, threshold, "quiet_hours")

        factors: dict[str, float] = {"base": w.base_score}
        pattern = self._analytics.get_pattern(user_id, notification.category, notification.notification_type)
        if pattern is not None:
            factors["dismissal"] = -w.dismissal_weight * pattern.dismissal_rate
            if 0 < pattern.average_time_to_action_ms < w.quick_action_ms:
                factors["quick_action"] = w.quick_action_bonus

        status = self._availability(user_id)
        if status == AvailabilityStatus.AVAILABLE:
            factors["availability"] = w.available_bonus
        elif status == AvailabilityStatus.DO_NOT_DISTURB:
            factors["availability"] = -w.dnd_penalty

        factors["priority"] = w.priority_bonus[priority]

        if self._recent_similar(user_id, notification, now) > w.fatigue_max_similar:
            factors["fatigue"] = -w.fatigue_penalty

        score = min(max(sum(factors.values()), 0.0), 1.0)
        show = score >= threshold
        return RelevanceDecision(show, score, threshold, "relevant" if show else "below_threshold", factors)

    def should_show(self, notification: Notification, user_id: str) -> bool:
        """Decide whether to surface ``notification``; records it when shown."""
        decision = self.evaluate(notification, user_id)
        if decision.show:
            with self._lock:
                self._shown[self._similar_key(user_id, notification)].append(self._clock())
        else:
            logger.debug(
                "Suppressed %s notification for %s (%s, score=%.2f < %.2f)",
                notification.priority.value, user_id, decision.reason, decision.score, decision.threshold,
            )
        return decision.show

    def suggest_priority(self, notification: Notification, user_id: str) -> Optional[NotificationPriority]:
        """Propose a lower or higher priority based on dismissal history, or None."""
        pattern = self._analytics.get_pattern(user_id, notification.category, notification.notification_type)
        if pattern is None or pattern.sample_count == 0:
            return None
        idx = _PRIORITY_ORDER.index(notification.priority)
        if pattern.dismissal_rate > self.weights.lower_priority_rate and idx > 0:
            return _PRIORITY_ORDER[idx - 1]
        if pattern.dismissal_rate < self.weights.raise_priority_rate and idx < len(_PRIORITY_ORDER) - 1:
            return _PRIORITY_ORDER[idx + 1]
        return None

    def _similar_key(self, user_id: str, notification: Notification) -> tuple[str, str, str]:
        return (user_id, notification.category, notification.notification_type)

    def _recent_similar(self, user_id: str, notification: Notification, now: datetime) -> int:
        cutoff = now - timedelta(minutes=self.weights.fatigue_window_minutes)
        with self._lock:
            shown = self._shown.get(self._similar_key(user_id, notification))
            if not shown:
                return 0
            while shown and shown[0] < cutoff:
                shown.popleft()
            return len(shown)

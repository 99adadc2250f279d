"""Escalation scheduling: one timer per open alert, gated by availability and fatigue."""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.availability import AvailabilityProvider, AvailabilityRegistry
from src.alert_engine.config import (
    DEFAULT_ENGINE_CONFIG,
    OPEN_STATUSES,
    AlertChannel,
    AlertSeverity,
    AvailabilityStatus,
    EscalationConfig,
)
from src.alert_engine.exceptions import SchedulingError
from src.alert_engine.logging_config import log_context
from src.alert_engine.models import AlertSnapshot
from src.alert_engine.preferences import PreferencesStore
from src.alert_engine.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class EscalationDecision:
    """Whether to escalate now, and if not, when to look again."""

    escalate: bool
    reason: str
    retry_after_minutes: Optional[float] = None


@dataclass
class _EscalationState:
    """Internal state for an armed escalation timer."""

    alert_id: str
    user_id: str
    armed_at: datetime
    due_at: datetime
    is_recheck: bool = False
    handle: Optional[TimerHandle] = None


@dataclass(frozen=True)
class EscalationOutcome:
    alert_id: str
    user_id: str
    category: str
    level: int
    channel: Optional[AlertChannel]
    delivered: bool
    timestamp: datetime


class EscalationScheduler:
    """Arms, re-arms and cancels escalation timers.

    A timer fires after ``per_severity_delay_minutes[severity] * (level + 1)``
    minutes. On fire the escalation is re-checked against availability,
    recent interaction and escalation fatigue; a blocked check may be
    re-armed after a retry-after delay. Timers that were cancelled or
    replaced never act.
    """

    def __init__(
        self,
        preferences: PreferencesStore,
        analytics: AnalyticsRecorder,
        scheduler: Scheduler,
        availability: Optional[AvailabilityProvider] = None,
        config: Optional[EscalationConfig] = None,
    ):
        self.config = config or DEFAULT_ENGINE_CONFIG.escalation
        self._preferences = preferences
        self._analytics = analytics
        self._scheduler = scheduler
        self._availability = availability or AvailabilityRegistry()
        self._states: Dict[str, _EscalationState] = {}
        self._history: deque[EscalationOutcome] = deque(maxlen=self.config.history_limit)
        self._lock = threading.RLock()

        self._lookup: Callable[[str], Optional[AlertSnapshot]] = lambda alert_id: None
        self._escalate: Callable[[str], bool] = lambda alert_id: False
        self._resolve_user: Callable[[AlertSnapshot], str] = lambda alert: alert.assignee or ""

    def bind(
        self,
        lookup: Callable[[str], Optional[AlertSnapshot]],
        escalate: Callable[[str], bool],
        resolve_user: Callable[[AlertSnapshot], str],
    ) -> None:
        """Connect to the alert store that performs the escalation."""
        self._lookup = lookup
        self._escalate = escalate
        self._resolve_user = resolve_user

    # ── Arming ───────────────────────────────────────────────────────

    def arm(self, alert: AlertSnapshot) -> bool:
        """Arm the timer for the alert's next level. Returns False if nothing was armed."""
        try:
            user_id = self._resolve_user(alert)
        except Exception:
            logger.exception("Could not resolve escalation user for alert %s", alert.alert_id)
            return False
        prefs = self._preferences.get_preferences(user_id).escalation
        if not prefs.enabled:
            return False
        if alert.escalation_level >= prefs.max_escalation_level:
            logger.debug("Alert %s at max escalation level %d", alert.alert_id, alert.escalation_level)
            return False
        delay = prefs.delay_for(alert.severity) * (alert.escalation_level + 1)
        return self._arm_timer(alert.alert_id, user_id, delay, is_recheck=False)

    def _arm_timer(self, alert_id: str, user_id: str, delay_minutes: float, is_recheck: bool) -> bool:
        with self._lock:
            self.cancel_escalation(alert_id)
            now = self._scheduler.now()
            state = _EscalationState(
                alert_id=alert_id,
                user_id=user_id,
                armed_at=now,
                due_at=now,
                is_recheck=is_recheck,
            )
            try:
                state.handle = self._scheduler.schedule(
                    delay_minutes * 60, lambda: self._fire(state), label=f"escalation:{alert_id}",
                )
            except SchedulingError:
                logger.error("Could not arm escalation timer for alert %s", alert_id, exc_info=True)
                return False
            state.due_at = state.handle.due_at
            self._states[alert_id] = state
            logger.debug("Escalation for %s armed in %.1f min", alert_id, delay_minutes)
            return True

    def cancel_escalation(self, alert_id: str) -> bool:
        """Cancel the alert's timer. Safe to call any number of times."""
        with self._lock:
            state = self._states.pop(alert_id, None)
        if state is None:
            return False
        self._scheduler.cancel(state.handle)
        logger.debug("Escalation for %s cancelled", alert_id)
        return True

    def is_armed(self, alert_id: str) -> bool:
        with self._lock:
            return alert_id in self._states

    def get_escalation_state(self, alert_id: str) -> Optional[dict]:
        with self._lock:
            state = self._states.get(alert_id)
            if state is None:
                return None
            return {
                "alert_id": state.alert_id,
                "user_id": state.user_id,
                "armed_at": state.armed_at.isoformat(),
                "due_at": state.due_at.isoformat(),
                "is_recheck": state.is_recheck,
            }

    # ── Firing ───────────────────────────────────────────────────────

    def _fire(self, state: _EscalationState) -> None:
        with self._lock:
            if self._states.get(state.alert_id) is not state:
                return
            del self._states[state.alert_id]

        alert = self._lookup(state.alert_id)
        if alert is None or alert.status not in OPEN_STATUSES:
            return

        with log_context(alert_id=alert.alert_id, user_id=state.user_id):
            decision = self.should_escalate(alert, state.user_id)
            if decision.escalate:
                logger.info("Escalating alert %s from level %d", alert.alert_id, alert.escalation_level)
                self._escalate(alert.alert_id)
            elif decision.retry_after_minutes is not None:
                logger.info(
                    "Escalation of %s deferred (%s), re-checking in %s min",
                    alert.alert_id, decision.reason, decision.retry_after_minutes,
                )
                self._arm_timer(alert.alert_id, state.user_id, decision.retry_after_minutes, is_recheck=True)
            else:
                logger.info("Escalation of %s stopped: %s", alert.alert_id, decision.reason)

    def should_escalate(self, alert: AlertSnapshot, user_id: str) -> EscalationDecision:
        """Level, availability, interaction and fatigue checks, in that order."""
        prefs = self._preferences.get_preferences(user_id).escalation
        if alert.escalation_level >= prefs.max_escalation_level:
            return EscalationDecision(False, "max_level_reached")

        availability = self.check_availability(alert, user_id)
        if not availability.escalate:
            return availability

        if self._analytics.has_user_interacted(alert.alert_id, user_id):
            return EscalationDecision(False, "user_interacted")

        recent = self._analytics.get_recent_escalations(
            user_id, alert.category, self.config.fatigue_window_minutes,
        )
        if len(recent) > self.config.fatigue_max_escalations:
            return EscalationDecision(False, "escalation_fatigue", self.config.fatigue_retry_minutes)

        return EscalationDecision(True, "conditions_met")

    def check_availability(self, alert: AlertSnapshot, user_id: str) -> EscalationDecision:
        if alert.severity == AlertSeverity.CRITICAL:
            return EscalationDecision(True, "critical")

        status = self._availability(user_id)
        if status == AvailabilityStatus.AVAILABLE:
            return EscalationDecision(True, "available")
        if status == AvailabilityStatus.BUSY:
            if alert.severity.rank >= AlertSeverity.HIGH.rank and alert.escalation_level > 0:
                return EscalationDecision(True, "busy_high_priority")
            retry = self.config.busy_retry_minutes if alert.escalation_level == 0 else None
            return EscalationDecision(False, "user_busy", retry)
        if status == AvailabilityStatus.AWAY:
            return EscalationDecision(False, "user_away", self.config.away_retry_minutes)
        if status == AvailabilityStatus.DO_NOT_DISTURB:
            return EscalationDecision(False, "do_not_disturb", self.config.dnd_retry_minutes)
        return EscalationDecision(False, "unknown_availability")

    # ── History & analytics ──────────────────────────────────────────

    def record_outcome(
        self, alert: AlertSnapshot, user_id: str, channel: Optional[AlertChannel], delivered: bool,
    ) -> None:
        with self._lock:
            self._history.append(EscalationOutcome(
                alert_id=alert.alert_id,
                user_id=user_id,
                category=alert.category,
                level=alert.escalation_level,
                channel=channel,
                delivered=delivered,
                timestamp=self._scheduler.now(),
            ))

    def get_history(self, alert_id: Optional[str] = None) -> List[EscalationOutcome]:
        with self._lock:
            return [r for r in self._history if alert_id is None or r.alert_id == alert_id]

    def get_escalation_analytics(self, user_id: Optional[str] = None) -> dict:
        """Success rate, per-channel effectiveness and tuning recommendations."""
        with self._lock:
            records = [r for r in self._history if user_id is None or r.user_id == user_id]
        total = len(records)
        delivered = sum(1 for r in records if r.delivered)

        per_channel: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        for record in records:
            if record.channel is not None:
                counts = per_channel[record.channel.value]
                counts[0] += 1
                counts[1] += int(record.delivered)
        effectiveness = {ch: round(ok / n, 4) for ch, (n, ok) in per_channel.items()}

        recommendations = []
        if total and (total - delivered) / total > 0.3:
            recommendations.append({
                "type": "reduce_escalation_frequency",
                "reason": "more than 30% of escalations failed to deliver",
            })
        for channel, rate in effectiveness.items():
            if rate < 0.3:
                recommendations.append({
                    "type": "disable_ineffective_channel",
                    "channel": channel,
                    "reason": f"only {rate:.0%} of escalations on {channel} were delivered",
                })

        return {
            "total_escalations": total,
            "delivered": delivered,
            "success_rate": round(delivered / total, 4) if total else 0.0,
            "channel_effectiveness": effectiveness,
            "recommendations": recommendations,
        }

    def shutdown(self) -> None:
        with self._lock:
            alert_ids = list(self._states)
        for alert_id in alert_ids:
            self.cancel_escalation(alert_id)

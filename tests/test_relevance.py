"""Tests for relevance scoring."""

from datetime import timedelta

import pytest

from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.availability import AvailabilityRegistry
from src.alert_engine.config import AvailabilityStatus, InteractionType, NotificationPriority
from src.alert_engine.models import InteractionEvent, Notification
from src.alert_engine.preferences import PreferencesStore
from src.alert_engine.relevance import RelevanceFilter
from src.alert_engine.scheduler import VirtualScheduler


class TestRelevanceFilter:
    def setup_method(self):
        self.scheduler = VirtualScheduler()
        self.preferences = PreferencesStore(clock=self.scheduler.now)
        self.analytics = AnalyticsRecorder(scheduler=self.scheduler)
        self.availability = AvailabilityRegistry()
        self.filter = RelevanceFilter(
            self.preferences, self.analytics, self.availability, clock=self.scheduler.now,
        )

    def _notification(self, priority, category="system"):
        return Notification(
            user_id="u1",
            category=category,
            priority=priority,
            title="Disk usage high",
            created_at=self.scheduler.now(),
        )

    def _interact(self, event_type, category="system", seconds_after=10):
        now = self.scheduler.now()
        self.analytics.record_event(InteractionEvent(
            event_type=event_type,
            user_id="u1",
            category=category,
            timestamp=now,
            notification_created_at=now - timedelta(seconds=seconds_after),
        ))

    # ── Scoring ──────────────────────────────────────────────────────

    def test_scores_without_history(self):
        low = self.filter.evaluate(self._notification(NotificationPriority.LOW), "u1")
        medium = self.filter.evaluate(self._notification(NotificationPriority.MEDIUM), "u1")
        urgent = self.filter.evaluate(self._notification(NotificationPriority.URGENT), "u1")
        assert low.score == pytest.approx(0.6)
        assert not low.show
        assert low.reason == "below_threshold"
        assert medium.score == pytest.approx(0.7)
        assert medium.show
        assert urgent.score == pytest.approx(0.9)

    @pytest.mark.parametrize("status", list(AvailabilityStatus))
    def test_score_non_decreasing_in_priority(self, status):
        for _ in range(5):
            self._interact(InteractionType.DISMISSED)
        self.availability.set_status("u1", status)
        order = [
            NotificationPriority.LOW,
            NotificationPriority.MEDIUM,
            NotificationPriority.HIGH,
            NotificationPriority.URGENT,
        ]
        scores = [self.filter.evaluate(self._notification(p), "u1").score for p in order]
        assert scores == sorted(scores)

    def test_dismissals_lower_the_score(self):
        for _ in range(10):
            self._interact(InteractionType.DISMISSED)
        pattern = self.analytics.get_pattern("u1", "system")
        assert pattern.dismissal_rate == pytest.approx(0.6513, abs=1e-4)

        medium = self.filter.evaluate(self._notification(NotificationPriority.MEDIUM), "u1")
        high = self.filter.evaluate(self._notification(NotificationPriority.HIGH), "u1")
        assert not medium.show
        assert high.show
        assert medium.factors["dismissal"] == pytest.approx(-0.3257, abs=1e-4)

    def test_dismissals_are_per_category(self):
        for _ in range(10):
            self._interact(InteractionType.DISMISSED, category="performance")
        assert self.filter.evaluate(self._notification(NotificationPriority.MEDIUM), "u1").show

    def test_quick_clicks_earn_a_bonus(self):
        self._interact(InteractionType.CLICKED, seconds_after=10)
        decision = self.filter.evaluate(self._notification(NotificationPriority.LOW), "u1")
        assert decision.factors["quick_action"] == pytest.approx(0.2)
        assert decision.score == pytest.approx(0.8)
        assert decision.show

    def test_slow_clicks_earn_nothing(self):
        self._interact(InteractionType.CLICKED, seconds_after=120)
        decision = self.filter.evaluate(self._notification(NotificationPriority.LOW), "u1")
        assert "quick_action" not in decision.factors

    def test_do_not_disturb_penalty(self):
        self.availability.set_status("u1", AvailabilityStatus.DO_NOT_DISTURB)
        low = self.filter.evaluate(self._notification(NotificationPriority.LOW), "u1")
        urgent = self.filter.evaluate(self._notification(NotificationPriority.URGENT), "u1")
        assert low.score == pytest.approx(0.2)
        assert not low.show
        assert urgent.score == pytest.approx(0.5)
        assert urgent.show

    def test_busy_gets_no_bonus(self):
        self.availability.set_status("u1", AvailabilityStatus.BUSY)
        decision = self.filter.evaluate(self._notification(NotificationPriority.MEDIUM), "u1")
        assert "availability" not in decision.factors
        assert decision.score == pytest.approx(0.6)

    # ── Quiet hours ──────────────────────────────────────────────────

    def test_quiet_hours_block_all_but_urgent(self):
        self.preferences.update_preferences("u1", {
            "quiet_hours": {"enabled": True, "start": "11:00", "end": "13:00"},
        })
        high = self.filter.evaluate(self._notification(NotificationPriority.HIGH), "u1")
        urgent = self.filter.evaluate(self._notification(NotificationPriority.URGENT), "u1")
        assert (high.show, high.reason) == (False, "quiet_hours")
        assert urgent.show

    def test_quiet_hours_can_block_urgent(self):
        self.preferences.update_preferences("u1", {
            "quiet_hours": {"enabled": True, "start": "11:00", "end": "13:00", "allow_urgent": False},
        })
        assert not self.filter.should_show(self._notification(NotificationPriority.URGENT), "u1")

    def test_quiet_hours_respect_timezone(self):
        # 12:00 UTC is 07:00 in New York, outside 22:00-06:00
        self.preferences.update_preferences("u1", {
            "quiet_hours": {"enabled": True, "start": "22:00", "end": "06:00", "timezone": "America/New_York"},
        })
        assert self.filter.should_show(self._notification(NotificationPriority.HIGH), "u1")

    # ── Fatigue ──────────────────────────────────────────────────────

    def test_repeated_notifications_incur_fatigue(self):
        for _ in range(3):
            assert self.filter.should_show(self._notification(NotificationPriority.HIGH), "u1")
        decision = self.filter.evaluate(self._notification(NotificationPriority.HIGH), "u1")
        assert decision.factors["fatigue"] == pytest.approx(-0.2)

    def test_fatigue_window_expires(self):
        for _ in range(3):
            self.filter.should_show(self._notification(NotificationPriority.HIGH), "u1")
        self.scheduler.advance(61 * 60)
        decision = self.filter.evaluate(self._notification(NotificationPriority.HIGH), "u1")
        assert "fatigue" not in decision.factors

    def test_suppressed_notifications_do_not_count(self):
        for _ in range(5):
            assert not self.filter.should_show(self._notification(NotificationPriority.LOW), "u1")
        decision = self.filter.evaluate(self._notification(NotificationPriority.HIGH), "u1")
        assert "fatigue" not in decision.factors

    # ── Priority suggestions ─────────────────────────────────────────

    def test_suggest_lower_priority(self):
        for _ in range(20):
            self._interact(InteractionType.DISMISSED)
        suggestion = self.filter.suggest_priority(self._notification(NotificationPriority.MEDIUM), "u1")
        assert suggestion == NotificationPriority.LOW

    def test_suggest_higher_priority(self):
        self._interact(InteractionType.CLICKED)
        suggestion = self.filter.suggest_priority(self._notification(NotificationPriority.MEDIUM), "u1")
        assert suggestion == NotificationPriority.HIGH

    def test_no_suggestion_without_history(self):
        assert self.filter.suggest_priority(self._notification(NotificationPriority.MEDIUM), "u1") is None

    def test_no_suggestion_past_the_ends(self):
        self._interact(InteractionType.CLICKED)
        assert self.filter.suggest_priority(self._notification(NotificationPriority.URGENT), "u1") is None

    def test_decision_to_dict(self):
        data = self.filter.evaluate(self._notification(NotificationPriority.MEDIUM), "u1").to_dict()
        assert data["show"] is True
        assert data["threshold"] == 0.5
        assert set(data["factors"]) == {"base", "availability", "priority"}

"""Tests for notification preferences."""

import json

import pytest

from src.alert_engine.config import AlertChannel, AlertSeverity, DeliveryFrequency, NotificationPriority
from src.alert_engine.exceptions import ValidationError
from src.alert_engine.models import DismissalPattern, NotificationPreferences
from src.alert_engine.preferences import (
    PreferencesStore,
    deep_merge,
    default_preferences,
    validate_preferences,
)
from src.alert_engine.storage import InMemoryKeyValueStore


class TestDefaults:
    def test_channel_defaults(self):
        prefs = default_preferences("u1")
        email = prefs.channels[AlertChannel.EMAIL]
        assert email.frequency == DeliveryFrequency.BATCHED
        assert email.batch_interval_minutes == 30
        assert email.severity_threshold == AlertSeverity.MEDIUM
        assert not prefs.channels[AlertChannel.SMS].enabled
        assert prefs.channels[AlertChannel.IN_APP].severity_threshold == AlertSeverity.LOW

    def test_escalation_and_snooze_defaults(self):
        prefs = default_preferences("u1")
        assert prefs.escalation.delay_for(AlertSeverity.CRITICAL) == 5
        assert prefs.escalation.escalation_channels == [AlertChannel.EMAIL, AlertChannel.SMS, AlertChannel.PUSH]
        assert AlertSeverity.CRITICAL not in prefs.snooze.allowed_severities
        assert prefs.snooze.max_duration_minutes == 480

    def test_frequency_tiers(self):
        prefs = default_preferences("u1")
        assert prefs.frequency_for("security") == DeliveryFrequency.IMMEDIATE
        assert prefs.frequency_for("performance") == DeliveryFrequency.BATCHED
        assert prefs.frequency_for("deployment") == DeliveryFrequency.DIGEST
        assert prefs.frequency_for("unlisted") == DeliveryFrequency.IMMEDIATE

    def test_dict_round_trip(self):
        prefs = default_preferences("u1")
        assert NotificationPreferences.from_dict(prefs.to_dict()) == prefs

    def test_deep_merge(self):
        merged = deep_merge({"a": {"b": 1, "c": 2}, "d": [1]}, {"a": {"b": 5}, "d": [2]})
        assert merged == {"a": {"b": 5, "c": 2}, "d": [2]}


class TestValidation:
    def _doc(self, **updates):
        return deep_merge(default_preferences("u1").to_dict(), updates)

    def test_defaults_are_valid(self):
        assert validate_preferences(self._doc()) == []

    def test_bad_quiet_hours_time(self):
        issues = validate_preferences(self._doc(quiet_hours={"start": "25:00"}))
        assert issues == [{"field": "quiet_hours.start", "issue": "invalid time '25:00', expected HH:mm"}]

    def test_single_digit_hour_rejected(self):
        issues = validate_preferences(self._doc(quiet_hours={"start": "9:00"}))
        assert issues == [{"field": "quiet_hours.start", "issue": "invalid time '9:00', expected HH:mm"}]

    def test_unknown_timezone(self):
        issues = validate_preferences(self._doc(quiet_hours={"timezone": "Mars/Olympus"}))
        assert issues[0]["field"] == "quiet_hours.timezone"

    def test_escalation_needs_a_channel(self):
        issues = validate_preferences(self._doc(escalation={"escalation_channels": []}))
        assert issues[0]["field"] == "escalation.escalation_channels"

    def test_max_escalation_level_below_one(self):
        issues = validate_preferences(self._doc(escalation={"max_escalation_level": 0}))
        assert issues == [{"field": "escalation.max_escalation_level", "issue": "must be an integer >= 1"}]

    def test_negative_escalation_delay(self):
        doc = self._doc(escalation={"per_severity_delay_minutes": {"high": -5}})
        issues = validate_preferences(doc)
        assert issues == [{
            "field": "escalation.per_severity_delay_minutes.high",
            "issue": "delay must be a non-negative number",
        }]

    def test_disabled_escalation_may_have_no_channels(self):
        doc = self._doc(escalation={"enabled": False, "escalation_channels": []})
        assert validate_preferences(doc) == []

    def test_category_in_two_tiers(self):
        doc = self._doc(frequency={"digest": ["deployment", "system"]})
        issues = validate_preferences(doc)
        assert any("already listed" in i["issue"] for i in issues)

    def test_snooze_default_exceeds_max(self):
        issues = validate_preferences(self._doc(snooze={"default_duration_minutes": 600}))
        assert issues[0]["field"] == "snooze.default_duration_minutes"

    def test_non_object_entries(self):
        assert validate_preferences(self._doc(channels={"email": "off"}))[0]["field"] == "channels.email"
        doc = self._doc()
        doc["categories"] = ["security"]
        assert validate_preferences(doc) == [{"field": "categories", "issue": "must be an object"}]

    def test_unknown_channel(self):
        issues = validate_preferences(self._doc(channels={"pager": {}}))
        assert issues[0]["field"] == "channels.pager"


class TestPreferencesStore:
    def setup_method(self):
        self.kv = InMemoryKeyValueStore()
        self.store = PreferencesStore(self.kv)

    def test_defaults_created_and_persisted(self):
        prefs = self.store.get_preferences("u1")
        assert prefs.user_id == "u1"
        assert self.kv.get("preferences:u1")["user_id"] == "u1"

    def test_returns_copies(self):
        prefs = self.store.get_preferences("u1")
        prefs.channels[AlertChannel.PUSH].enabled = False
        assert self.store.get_preferences("u1").channels[AlertChannel.PUSH].enabled

    def test_partial_update(self):
        prefs = self.store.update_preferences("u1", {"channels": {"sms": {"enabled": True}}})
        assert prefs.channels[AlertChannel.SMS].enabled
        assert prefs.channels[AlertChannel.SMS].severity_threshold == AlertSeverity.HIGH
        assert prefs.channels[AlertChannel.EMAIL].frequency == DeliveryFrequency.BATCHED

    def test_invalid_update_rejected_with_details(self):
        with pytest.raises(ValidationError) as exc_info:
            self.store.update_preferences("u1", {"quiet_hours": {"end": "8pm"}})
        assert exc_info.value.details[0]["field"] == "quiet_hours.end"
        assert self.store.get_preferences("u1").quiet_hours.end == "08:00"

    def test_user_id_cannot_be_overwritten(self):
        prefs = self.store.update_preferences("u1", {"user_id": "someone-else"})
        assert prefs.user_id == "u1"

    def test_security_category_cannot_be_disabled(self):
        prefs = self.store.update_preferences("u1", {"categories": {"security": {"enabled": False, "priority": "low"}}})
        assert prefs.categories["security"].enabled
        assert prefs.categories["security"].priority == NotificationPriority.HIGH

    def test_urgent_category_gets_a_channel(self):
        prefs = self.store.update_preferences("u1", {"categories": {"billing": {"priority": "urgent"}}})
        assert prefs.categories["billing"].channels == [AlertChannel.IN_APP]

    def test_reload_from_storage(self):
        self.store.update_preferences("u1", {"grouping_window_minutes": 15})
        fresh = PreferencesStore(self.kv)
        assert fresh.get_preferences("u1").grouping_window_minutes == 15

    def test_reset(self):
        self.store.update_preferences("u1", {"grouping_window_minutes": 15})
        assert self.store.reset_preferences("u1").grouping_window_minutes == 60

    def test_export_import(self):
        self.store.update_preferences("u1", {"quiet_hours": {"enabled": True, "start": "21:00"}})
        payload = self.store.export_preferences("u1")
        document = json.loads(payload)
        assert document["version"] == 1
        assert "exported_at" in document

        imported = self.store.import_preferences("u2", payload)
        assert imported.user_id == "u2"
        assert imported.quiet_hours.enabled
        assert imported.quiet_hours.start == "21:00"

    def test_import_rejects_garbage(self):
        with pytest.raises(ValidationError):
            self.store.import_preferences("u1", "not json")
        with pytest.raises(ValidationError):
            self.store.import_preferences("u1", json.dumps({"version": 1}))

    def test_listeners(self):
        seen = []
        unsubscribe = self.store.add_listener(lambda prefs: seen.append(prefs.user_id))
        self.store.update_preferences("u1", {"grouping_window_minutes": 30})
        unsubscribe()
        self.store.update_preferences("u1", {"grouping_window_minutes": 45})
        assert seen == ["u1"]

    def test_failing_listener_does_not_block_update(self):
        def boom(prefs):
            raise RuntimeError("listener down")

        self.store.add_listener(boom)
        prefs = self.store.update_preferences("u1", {"grouping_window_minutes": 30})
        assert prefs.grouping_window_minutes == 30

    def test_recommendations(self):
        patterns = [
            DismissalPattern("u1", "system", "alert", dismissal_rate=0.9),
            DismissalPattern("u1", "deployment", "alert", dismissal_rate=0.95),
            DismissalPattern("u1", "performance", "alert", dismissal_rate=0.2),
            DismissalPattern("u2", "system", "alert", dismissal_rate=0.9),
        ]
        recommendations = self.store.get_recommendations("u1", patterns)
        assert [(r["type"], r["category"]) for r in recommendations] == [
            ("reduce_frequency", "system"),
            ("disable_category", "deployment"),
        ]

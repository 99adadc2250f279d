"""Per-user notification preferences: defaults, validation, adjustment, persistence."""

import copy
import json
import logging
import re
import threading
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.alert_engine.config import (
    SECURITY_CATEGORY,
    AlertChannel,
    AlertSeverity,
    DeliveryFrequency,
    NotificationPriority,
)
from src.alert_engine.exceptions import ValidationError
from src.alert_engine.models import (
    CategoryPreference,
    ChannelPreference,
    DismissalPattern,
    EscalationPreference,
    NotificationPreferences,
    QuietHours,
    SnoozePreference,
    _now,
)
from src.alert_engine.storage import InMemoryKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")

EXPORT_VERSION = 1


def default_preferences(user_id: str) -> NotificationPreferences:
    """Preferences a user gets before changing anything."""
    return NotificationPreferences(
        user_id=user_id,
        channels={
            AlertChannel.IN_APP: ChannelPreference(True, AlertSeverity.LOW, DeliveryFrequency.IMMEDIATE),
            AlertChannel.EMAIL: ChannelPreference(True, AlertSeverity.MEDIUM, DeliveryFrequency.BATCHED, 30),
            AlertChannel.SMS: ChannelPreference(False, AlertSeverity.HIGH, DeliveryFrequency.IMMEDIATE),
            AlertChannel.PUSH: ChannelPreference(True, AlertSeverity.MEDIUM, DeliveryFrequency.IMMEDIATE),
            AlertChannel.WEBHOOK: ChannelPreference(False, AlertSeverity.CRITICAL, DeliveryFrequency.IMMEDIATE),
        },
        categories={
            "security": CategoryPreference(
                True, NotificationPriority.HIGH,
                [AlertChannel.IN_APP, AlertChannel.EMAIL, AlertChannel.PUSH],
            ),
            "system": CategoryPreference(True, NotificationPriority.MEDIUM),
            "performance": CategoryPreference(True, NotificationPriority.MEDIUM),
            "deployment": CategoryPreference(True, NotificationPriority.LOW),
        },
        frequency={
            DeliveryFrequency.IMMEDIATE: ["security", "system"],
            DeliveryFrequency.BATCHED: ["performance"],
            DeliveryFrequency.DIGEST: ["deployment"],
        },
        quiet_hours=QuietHours(),
        escalation=EscalationPreference(
            enabled=True,
            per_severity_delay_minutes={
                AlertSeverity.CRITICAL: 5,
                AlertSeverity.HIGH: 15,
                AlertSeverity.MEDIUM: 30,
                AlertSeverity.LOW: 60,
            },
            max_escalation_level=3,
            escalation_channels=[AlertChannel.EMAIL, AlertChannel.SMS, AlertChannel.PUSH],
        ),
        snooze=SnoozePreference(
            default_duration_minutes=30,
            max_duration_minutes=480,
            allowed_severities=[AlertSeverity.LOW, AlertSeverity.MEDIUM, AlertSeverity.HIGH],
        ),
        grouping_window_minutes=60,
    )


def deep_merge(base: dict, updates: dict) -> dict:
    """Merge ``updates`` into a copy of ``base``; nested dicts merge, other values replace."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ── Validation ───────────────────────────────────────────────────────


def _enum_values(enum_cls) -> set[str]:
    return {member.value for member in enum_cls}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_quiet_hours(data: Any, path: str, issues: list[dict]) -> None:
    if not isinstance(data, dict):
        issues.append({"field": path, "issue": "must be an object"})
        return
    for key in ("start", "end"):
        value = data.get(key)
        if value is not None and (not isinstance(value, str) or not TIME_PATTERN.match(value)):
            issues.append({"field": f"{path}.{key}", "issue": f"invalid time '{value}', expected HH:mm"})
    tz = data.get("timezone")
    if tz is not None:
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError, TypeError):
            issues.append({"field": f"{path}.timezone", "issue": f"unknown timezone '{tz}'"})


def validate_preferences(data: dict) -> list[dict]:
    """Check a full preferences document. Returns a list of issues (empty if valid)."""
    issues: list[dict] = []
    channels = _enum_values(AlertChannel)
    severities = _enum_values(AlertSeverity)
    frequencies = _enum_values(DeliveryFrequency)
    priorities = _enum_values(NotificationPriority)

    for section in ("channels", "categories", "frequency", "escalation", "snooze"):
        if not isinstance(data.get(section, {}), dict):
            issues.append({"field": section, "issue": "must be an object"})
    if issues:
        return issues

    for name, pref in data.get("channels", {}).items():
        path = f"channels.{name}"
        if name not in channels:
            issues.append({"field": path, "issue": f"unknown channel '{name}'"})
            continue
        if not isinstance(pref, dict):
            issues.append({"field": path, "issue": "must be an object"})
            continue
        if pref.get("severity_threshold", "low") not in severities:
            issues.append({"field": f"{path}.severity_threshold", "issue": "unknown severity"})
        if pref.get("frequency", "immediate") not in frequencies:
            issues.append({"field": f"{path}.frequency", "issue": "unknown frequency"})
        interval = pref.get("batch_interval_minutes", 30)
        if not _is_number(interval) or interval <= 0:
            issues.append({"field": f"{path}.batch_interval_minutes", "issue": "must be a positive number"})
        if pref.get("quiet_hours"):
            _check_quiet_hours(pref["quiet_hours"], f"{path}.quiet_hours", issues)

    for name, pref in data.get("categories", {}).items():
        path = f"categories.{name}"
        if not isinstance(pref, dict):
            issues.append({"field": path, "issue": "must be an object"})
            continue
        if pref.get("priority", "medium") not in priorities:
            issues.append({"field": f"{path}.priority", "issue": "unknown priority"})
        for channel in pref.get("channels", []):
            if channel not in channels:
                issues.append({"field": f"{path}.channels", "issue": f"unknown channel '{channel}'"})

    seen: dict[str, str] = {}
    for tier, categories in data.get("frequency", {}).items():
        if tier not in frequencies:
            issues.append({"field": f"frequency.{tier}", "issue": "unknown frequency tier"})
            continue
        for category in categories:
            if category in seen and seen[category] != tier:
                issues.append({
                    "field": f"frequency.{tier}",
                    "issue": f"category '{category}' already listed under '{seen[category]}'",
                })
            seen[category] = tier

    _check_quiet_hours(data.get("quiet_hours", {}), "quiet_hours", issues)

    escalation = data.get("escalation", {})
    for severity, delay in escalation.get("per_severity_delay_minutes", {}).items():
        if severity not in severities:
            issues.append({"field": "escalation.per_severity_delay_minutes", "issue": f"unknown severity '{severity}'"})
        elif not _is_number(delay) or delay < 0:
            issues.append({
                "field": f"escalation.per_severity_delay_minutes.{severity}",
                "issue": "delay must be a non-negative number",
            })
    max_level = escalation.get("max_escalation_level", 3)
    if not isinstance(max_level, int) or isinstance(max_level, bool) or max_level < 1:
        issues.append({"field": "escalation.max_escalation_level", "issue": "must be an integer >= 1"})
    escalation_channels = escalation.get("escalation_channels", [])
    for channel in escalation_channels:
        if channel not in channels:
            issues.append({"field": "escalation.escalation_channels", "issue": f"unknown channel '{channel}'"})
    if escalation.get("enabled", True) and not escalation_channels:
        issues.append({"field": "escalation.escalation_channels", "issue": "at least one channel required"})

    snooze = data.get("snooze", {})
    default_duration = snooze.get("default_duration_minutes", 30)
    max_duration = snooze.get("max_duration_minutes", 480)
    if not _is_number(default_duration) or default_duration <= 0:
        issues.append({"field": "snooze.default_duration_minutes", "issue": "must be positive"})
    if not _is_number(max_duration) or max_duration <= 0:
        issues.append({"field": "snooze.max_duration_minutes", "issue": "must be positive"})
    elif _is_number(default_duration) and default_duration > max_duration:
        issues.append({"field": "snooze.default_duration_minutes", "issue": "exceeds max_duration_minutes"})
    for severity in snooze.get("allowed_severities", []):
        if severity not in severities:
            issues.append({"field": "snooze.allowed_severities", "issue": f"unknown severity '{severity}'"})

    window = data.get("grouping_window_minutes", 60)
    if not _is_number(window) or window <= 0:
        issues.append({"field": "grouping_window_minutes", "issue": "must be positive"})

    return issues


def apply_adjustments(prefs: NotificationPreferences) -> NotificationPreferences:
    """Enforce the rules no user update may break."""
    security = prefs.categories.get(SECURITY_CATEGORY)
    if security is None:
        security = CategoryPreference(True, NotificationPriority.HIGH, [AlertChannel.IN_APP])
        prefs.categories[SECURITY_CATEGORY] = security
    security.enabled = True
    if security.priority.rank < NotificationPriority.HIGH.rank:
        security.priority = NotificationPriority.HIGH

    for category in prefs.categories.values():
        if category.priority == NotificationPriority.URGENT and not category.channels:
            category.channels = [AlertChannel.IN_APP]
    return prefs


class PreferencesStore:
    """Loads, validates and persists NotificationPreferences per user."""

    KEY_PREFIX = "preferences:"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store or InMemoryKeyValueStore()
        self._clock = clock or _now
        self._cache: dict[str, NotificationPreferences] = {}
        self._listeners: list[Callable[[NotificationPreferences], None]] = []
        self._lock = threading.RLock()

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    def get_preferences(self, user_id: str) -> NotificationPreferences:
        """Return the user's preferences, creating and storing defaults on first use."""
        with self._lock:
            cached = self._cache.get(user_id)
            if cached is None:
                stored = self._store.get(self._key(user_id))
                if stored is not None:
                    cached = NotificationPreferences.from_dict(stored)
                else:
                    cached = apply_adjustments(default_preferences(user_id))
                    cached.updated_at = self._clock()
                    self._store.set(self._key(user_id), cached.to_dict())
                    logger.debug("Created default preferences for %s", user_id)
                self._cache[user_id] = cached
            return copy.deepcopy(cached)

    def update_preferences(self, user_id: str, updates: dict) -> NotificationPreferences:
        """Apply a partial update.

        Args:
            user_id: Owner of the preferences.
            updates: Nested dict in the ``to_dict`` shape; only given keys change.

        Returns:
            The stored preferences after adjustments.

        Raises:
            ValidationError: if the merged document is invalid.
        """
        with self._lock:
            current = self.get_preferences(user_id).to_dict()
            updates = {k: v for k, v in updates.items() if k not in ("user_id", "updated_at")}
            merged = deep_merge(current, updates)
            return self._save(user_id, merged)

    def _save(self, user_id: str, data: dict) -> NotificationPreferences:
        issues = validate_preferences(data)
        if issues:
            logger.info("Rejected preferences update for %s: %d issue(s)", user_id, len(issues))
            raise ValidationError(
                f"Invalid preferences: {issues[0]['field']}: {issues[0]['issue']}",
                details=issues,
            )
        data = dict(data, user_id=user_id)
        prefs = apply_adjustments(NotificationPreferences.from_dict(data))
        prefs.updated_at = self._clock()
        self._store.set(self._key(user_id), prefs.to_dict())
        self._cache[user_id] = prefs
        result = copy.deepcopy(prefs)
        for listener in list(self._listeners):
            try:
                listener(copy.deepcopy(prefs))
            except Exception:
                logger.exception("Preferences listener failed for %s", user_id)
        return result

    def reset_preferences(self, user_id: str) -> NotificationPreferences:
        with self._lock:
            return self._save(user_id, default_preferences(user_id).to_dict())

    def export_preferences(self, user_id: str) -> str:
        """Serialize a user's preferences to a JSON document."""
        prefs = self.get_preferences(user_id)
        return json.dumps({
            "version": EXPORT_VERSION,
            "exported_at": self._clock().isoformat(),
            "preferences": prefs.to_dict(),
        })

    def import_preferences(self, user_id: str, payload: str) -> NotificationPreferences:
        """Replace a user's preferences with an exported document.

        Raises:
            ValidationError: if the payload is not valid JSON or fails validation.
        """
        try:
            document = json.loads(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid preferences export: {exc}", field="payload") from exc
        if not isinstance(document, dict) or not isinstance(document.get("preferences"), dict):
            raise ValidationError("Preferences export has no 'preferences' object", field="preferences")
        data = deep_merge(default_preferences(user_id).to_dict(), document["preferences"])
        with self._lock:
            return self._save(user_id, data)

    def add_listener(self, callback: Callable[[NotificationPreferences], None]) -> Callable[[], None]:
        """Call ``callback`` after every stored change. Returns an unsubscribe callable."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def get_recommendations(self, user_id: str, patterns: list[DismissalPattern]) -> list[dict]:
        """Suggest preference changes from learned dismissal behavior."""
        prefs = self.get_preferences(user_id)
        recommendations = []
        for pattern in patterns:
            if pattern.user_id != user_id:
                continue
            if pattern.dismissal_rate > 0.8 and prefs.frequency_for(pattern.category) == DeliveryFrequency.IMMEDIATE:
                recommendations.append({
                    "type": "reduce_frequency",
                    "category": pattern.category,
                    "reason": f"{pattern.dismissal_rate:.0%} of '{pattern.category}' notifications are dismissed",
                    "suggested_frequency": DeliveryFrequency.BATCHED.value,
                })
            elif pattern.dismissal_rate > 0.8 and pattern.category != SECURITY_CATEGORY:
                recommendations.append({
                    "type": "disable_category",
                    "category": pattern.category,
                    "reason": "notifications are almost always dismissed",
                })
        return recommendations

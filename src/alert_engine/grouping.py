"""Notification grouping, delivery batches and group-wide operations."""

import copy
import logging
import re
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from src.alert_engine.analytics import AnalyticsRecorder
from src.alert_engine.config import (
    BatchOperation,
    DeliveryFrequency,
    InteractionType,
    NotificationPriority,
)
from src.alert_engine.exceptions import AlertEngineError, NotFoundError, ValidationError
from src.alert_engine.models import (
    BatchItemResult,
    BatchOperationResult,
    InteractionEvent,
    Notification,
    NotificationBatch,
    NotificationGroup,
    _now,
)
from src.alert_engine.preferences import PreferencesStore

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")

DIGEST_HOUR = 9


def group_key(notification: Notification, window_minutes: int) -> str:
    """Category plus the index of the time bucket the notification falls in."""
    bucket = int(notification.created_at.timestamp() // (window_minutes * 60))
    return f"{notification.category}_{bucket}"


def jaccard_similarity(a: str, b: str) -> float:
    words_a = set(_WORD.findall(a.lower()))
    words_b = set(_WORD.findall(b.lower()))
    if not words_a and not words_b:
        return 1.0
    return len(words_a & words_b) / len(words_a | words_b)


class GroupingManager:
    """Groups a user's notifications by category and time bucket.

    Groups are keyed per user. A group's priority is the highest priority of
    its members; a group starts collapsed when the user marks its category as
    low priority.
    """

    def __init__(
        self,
        preferences: PreferencesStore,
        analytics: Optional[AnalyticsRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._preferences = preferences
        self._analytics = analytics
        self._clock = clock or _now
        self._groups: dict[tuple[str, str], NotificationGroup] = {}
        self._notifications: dict[str, Notification] = {}
        self._lock = threading.RLock()

    # ── Grouping ─────────────────────────────────────────────────────

    def add_notification(self, notification: Notification) -> NotificationGroup:
        """Place a notification in its group, creating the group if needed."""
        with self._lock:
            group = self._place(self._groups, notification, store=True)
            self._notifications[notification.notification_id] = notification
            logger.debug(
                "Notification %s joined group %s (%d members)",
                notification.notification_id, group.group_id, group.size,
            )
            return copy.deepcopy(group)

    def group_notifications(self, notifications: list[Notification]) -> list[NotificationGroup]:
        """Group notifications without storing anything."""
        groups: dict[tuple[str, str], NotificationGroup] = {}
        for notification in notifications:
            self._place(groups, copy.copy(notification), store=False)
        return self._sorted(groups.values())

    def _place(
        self,
        groups: dict[tuple[str, str], NotificationGroup],
        notification: Notification,
        store: bool,
    ) -> NotificationGroup:
        prefs = self._preferences.get_preferences(notification.user_id)
        gid = group_key(notification, prefs.grouping_window_minutes)
        group = groups.get((notification.user_id, gid))
        if group is None:
            category_pref = prefs.categories.get(notification.category)
            group = NotificationGroup(
                group_id=gid,
                user_id=notification.user_id,
                category=notification.category,
                priority=notification.priority,
                created_at=notification.created_at,
                collapsed=bool(category_pref and category_pref.priority == NotificationPriority.LOW),
            )
            groups[(notification.user_id, gid)] = group
        if notification.priority.rank > group.priority.rank:
            group.priority = notification.priority
        group.notification_ids.append(notification.notification_id)
        group.updated_at = max(group.updated_at or notification.created_at, notification.created_at)
        if store:
            notification.group_id = gid
        return group

    @staticmethod
    def _sorted(groups) -> list[NotificationGroup]:
        return sorted(
            groups,
            key=lambda g: (g.priority.rank, g.updated_at or g.created_at),
            reverse=True,
        )

    def get_groups(self, user_id: str) -> list[NotificationGroup]:
        """A user's groups, highest priority first, then most recent."""
        with self._lock:
            groups = [g for (uid, _), g in self._groups.items() if uid == user_id]
            return [copy.deepcopy(g) for g in self._sorted(groups)]

    def get_group(self, user_id: str, group_id: str) -> NotificationGroup:
        with self._lock:
            group = self._groups.get((user_id, group_id))
            if group is None:
                raise NotFoundError(f"Group '{group_id}' not found", "group", group_id)
            return copy.deepcopy(group)

    def get_notifications(self, user_id: str, include_dismissed: bool = False) -> list[Notification]:
        with self._lock:
            return [
                copy.copy(n) for n in self._notifications.values()
                if n.user_id == user_id and (include_dismissed or not n.dismissed)
            ]

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            notification = self._notifications.get(notification_id)
            return copy.copy(notification) if notification else None

    def remove_alert(self, alert_id: str) -> int:
        """Drop every notification raised for ``alert_id``. Returns how many."""
        with self._lock:
            removed = [n for n in self._notifications.values() if n.alert_id == alert_id]
            for notification in removed:
                self._detach(notification)
                del self._notifications[notification.notification_id]
            return len(removed)

    def _detach(self, notification: Notification) -> None:
        key = (notification.user_id, notification.group_id)
        group = self._groups.get(key)
        if group is None:
            return
        if notification.notification_id in group.notification_ids:
            group.notification_ids.remove(notification.notification_id)
        if not group.notification_ids:
            del self._groups[key]
            logger.debug("Group %s emptied and removed", group.group_id)

    # ── Batch operations ─────────────────────────────────────────────

    def perform_batch_operation(
        self,
        operation: Union[BatchOperation, str],
        group_id: str,
        user_id: str,
        snooze_minutes: int = 60,
    ) -> BatchOperationResult:
        """Apply ``operation`` to every member of a group.

        Each member succeeds or fails on its own; one failure never stops
        the rest of the batch.

        Raises:
            ValidationError: for an unknown operation.
            NotFoundError: if the group does not exist.
        """
        if not isinstance(operation, BatchOperation):
            try:
                operation = BatchOperation(operation)
            except ValueError as exc:
                raise ValidationError(f"Unknown batch operation '{operation}'", field="operation") from exc

        with self._lock:
            group = self._groups.get((user_id, group_id))
            if group is None:
                raise NotFoundError(f"Group '{group_id}' not found", "group", group_id)

            result = BatchOperationResult(operation=operation, group_id=group_id)
            now = self._clock()
            for notification_id in list(group.notification_ids):
                try:
                    self._apply(operation, notification_id, now, snooze_minutes)
                    result.results.append(BatchItemResult(notification_id, True))
                except AlertEngineError as exc:
                    result.results.append(BatchItemResult(notification_id, False, exc.message))

            if operation == BatchOperation.DISMISS:
                for item in result.results:
                    notification = self._notifications.get(item.notification_id)
                    if item.success and notification is not None:
                        self._detach(notification)

            logger.info(
                "Batch %s on group %s: %d succeeded, %d failed",
                operation.value, group_id, result.succeeded, result.failed,
            )
            return result

    def _apply(self, operation: BatchOperation, notification_id: str, now: datetime, snooze_minutes: int) -> None:
        notification = self._notifications.get(notification_id)
        if notification is None:
            raise NotFoundError(f"Notification '{notification_id}' not found", "notification", notification_id)

        if operation == BatchOperation.MARK_READ:
            notification.read = True
        elif operation == BatchOperation.DISMISS:
            notification.dismissed = True
            if self._analytics is not None:
                self._analytics.record_event(InteractionEvent(
                    event_type=InteractionType.DISMISSED,
                    user_id=notification.user_id,
                    category=notification.category,
                    notification_type=notification.notification_type,
                    alert_id=notification.alert_id,
                    notification_id=notification.notification_id,
                    timestamp=now,
                    notification_created_at=notification.created_at,
                ))
        elif operation == BatchOperation.SNOOZE:
            notification.snoozed_until = now + timedelta(minutes=snooze_minutes)

    # ── Delivery batches ─────────────────────────────────────────────

    def create_batches(self, notifications: list[Notification], user_id: str) -> list[NotificationBatch]:
        """Bucket notifications by frequency tier and scheduled delivery time.

        Urgent notifications are always delivered immediately.
        """
        prefs = self._preferences.get_preferences(user_id)
        now = self._clock()
        batches: dict[str, NotificationBatch] = {}
        for notification in notifications:
            tier = prefs.frequency_for(notification.category)
            if notification.priority == NotificationPriority.URGENT:
                tier = DeliveryFrequency.IMMEDIATE
            scheduled_for = self.next_delivery_time(tier, now, prefs.quiet_hours.timezone)
            batch_key = f"{notification.category}_{tier.value}_{scheduled_for:%Y%m%d%H%M}"
            batch = batches.get(batch_key)
            if batch is None:
                batch = NotificationBatch(batch_key, user_id, tier, scheduled_for)
                batches[batch_key] = batch
            batch.notification_ids.append(notification.notification_id)
        return sorted(batches.values(), key=lambda b: (b.scheduled_for, b.batch_key))

    @staticmethod
    def next_delivery_time(tier: DeliveryFrequency, now: datetime, tz_name: str = "UTC") -> datetime:
        if tier == DeliveryFrequency.IMMEDIATE:
            return now
        if tier == DeliveryFrequency.BATCHED:
            return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        local = now.astimezone(ZoneInfo(tz_name))
        digest = local.replace(hour=DIGEST_HOUR, minute=0, second=0, microsecond=0)
        if digest <= local:
            digest += timedelta(days=1)
        return digest.astimezone(now.tzinfo)

    # ── Similarity ───────────────────────────────────────────────────

    def find_similar(self, user_id: str, threshold: float = 0.6) -> list[list[str]]:
        """Clusters of same-category notifications whose text overlaps above ``threshold``."""
        notifications = sorted(self.get_notifications(user_id), key=lambda n: n.created_at)
        clusters: list[list[Notification]] = []
        for notification in notifications:
            text = f"{notification.title} {notification.message}"
            for cluster in clusters:
                head = cluster[0]
                if head.category == notification.category and (
                    jaccard_similarity(f"{head.title} {head.message}", text) > threshold
                ):
                    cluster.append(notification)
                    break
            else:
                clusters.append([notification])
        return [[n.notification_id for n in c] for c in clusters if len(c) > 1]

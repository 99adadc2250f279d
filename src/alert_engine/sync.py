"""Offline sync queue: pushes local record changes and resolves conflicts."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from src.alert_engine.config import ConflictStrategy
from src.alert_engine.exceptions import ConflictError
from src.alert_engine.models import NotificationPreferences, _new_id, _now
from src.alert_engine.preferences import PreferencesStore

logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    """Server side of the sync.

    ``push`` raises ConflictError (carrying the server's copy) when the
    record changed remotely; ``put`` writes unconditionally.
    """

    def push(self, key: str, data: Dict[str, Any], operation: str) -> None: ...

    def put(self, key: str, data: Dict[str, Any]) -> None: ...


@dataclass
class SyncItem:
    key: str
    data: Dict[str, Any]
    operation: str = "upsert"
    item_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    retry_count: int = 0
    synced: bool = False
    last_error: Optional[str] = None
    server_data: Optional[Dict[str, Any]] = None


@dataclass
class SyncReport:
    synced: int = 0
    conflicts_resolved: int = 0
    conflicts_pending: int = 0
    failed: int = 0
    pending: int = 0

    def to_dict(self) -> dict:
        return {
            "synced": self.synced,
            "conflicts_resolved": self.conflicts_resolved,
            "conflicts_pending": self.conflicts_pending,
            "failed": self.failed,
            "pending": self.pending,
        }


def merge_records(local: Dict[str, Any], server: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Shallow merge favoring local fields; keeps the server's created_at."""
    merged = {**server, **local}
    if "created_at" in server:
        merged["created_at"] = server["created_at"]
    merged["updated_at"] = now.isoformat()
    return merged


class OfflineSyncQueue:
    """Queue of local changes awaiting a push to the remote store.

    Args:
        strategy: How to settle a ConflictError from the remote.
        max_retries: Non-conflict failures before an item is dropped.
        resolver: Called with (item, server_data) under the MANUAL strategy.
    """

    def __init__(
        self,
        strategy: ConflictStrategy = ConflictStrategy.MERGE,
        max_retries: int = 3,
        resolver: Optional[Callable[[SyncItem, Dict[str, Any]], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.strategy = strategy
        self.max_retries = max_retries
        self._resolver = resolver
        self._clock = clock or _now
        self._queue: List[SyncItem] = []
        self._conflicts: Dict[str, SyncItem] = {}
        self._failed: List[SyncItem] = []
        self._lock = threading.Lock()

    def enqueue(self, key: str, data: Dict[str, Any], operation: str = "upsert") -> SyncItem:
        """Queue a change; a newer change to the same key replaces the older one."""
        item = SyncItem(key=key, data=dict(data), operation=operation, created_at=self._clock())
        with self._lock:
            self._queue = [i for i in self._queue if i.key != key]
            self._queue.append(item)
        return item

    def track_preferences(self, preferences: PreferencesStore) -> Callable[[], None]:
        """Queue every stored preferences change. Returns an unsubscribe callable."""

        def _on_change(prefs: NotificationPreferences) -> None:
            self.enqueue(f"preferences:{prefs.user_id}", prefs.to_dict())

        return preferences.add_listener(_on_change)

    def get_pending(self) -> List[SyncItem]:
        with self._lock:
            return list(self._queue)

    def get_conflicts(self) -> List[SyncItem]:
        with self._lock:
            return list(self._conflicts.values())

    def get_failed(self) -> List[SyncItem]:
        with self._lock:
            return list(self._failed)

    def sync(self, remote: RemoteStore) -> SyncReport:
        """Push every pending item once."""
        report = SyncReport()
        with self._lock:
            items, self._queue = self._queue, []

        remaining: List[SyncItem] = []
        done = 0
        try:
            for item in items:
                try:
                    remote.push(item.key, item.data, item.operation)
                    item.synced = True
                    report.synced += 1
                except ConflictError as exc:
                    try:
                        resolved = self._resolve(item, exc.server_data, remote)
                    except Exception as put_exc:
                        self._record_failure(item, put_exc, remaining, report)
                    else:
                        if resolved:
                            report.conflicts_resolved += 1
                        else:
                            report.conflicts_pending += 1
                except Exception as exc:
                    self._record_failure(item, exc, remaining, report)
                done += 1
        finally:
            with self._lock:
                self._queue = remaining + items[done:] + self._queue
                report.pending = len(self._queue)
        logger.info(
            "Sync finished: %d synced, %d conflicts resolved, %d pending",
            report.synced, report.conflicts_resolved, report.pending,
        )
        return report

    def _record_failure(
        self, item: SyncItem, exc: Exception, remaining: List[SyncItem], report: SyncReport,
    ) -> None:
        item.retry_count += 1
        item.last_error = str(exc)
        if item.retry_count >= self.max_retries:
            logger.error("Dropping sync item %s after %d attempts: %s", item.key, item.retry_count, exc)
            report.failed += 1
            with self._lock:
                self._failed.append(item)
        else:
            logger.warning("Sync of %s failed (attempt %d): %s", item.key, item.retry_count, exc)
            remaining.append(item)

    def _resolve(self, item: SyncItem, server_data: Dict[str, Any], remote: RemoteStore) -> bool:
        item.server_data = dict(server_data)
        if self.strategy == ConflictStrategy.LOCAL:
            remote.put(item.key, item.data)
        elif self.strategy == ConflictStrategy.SERVER:
            item.data = dict(server_data)
        elif self.strategy == ConflictStrategy.MERGE:
            item.data = merge_records(item.data, server_data, self._clock())
            remote.put(item.key, item.data)
        else:
            with self._lock:
                self._conflicts[item.key] = item
            if self._resolver is not None:
                try:
                    self._resolver(item, dict(server_data))
                except Exception:
                    logger.exception("Conflict resolver failed for %s", item.key)
            logger.info("Conflict on %s left for manual resolution", item.key)
            return False
        item.synced = True
        logger.info("Conflict on %s resolved with %s strategy", item.key, self.strategy.value)
        return True

    def resolve_manually(self, key: str, data: Dict[str, Any], remote: RemoteStore) -> bool:
        """Settle a pending manual conflict with the chosen record."""
        with self._lock:
            item = self._conflicts.pop(key, None)
        if item is None:
            return False
        item.data = dict(data)
        remote.put(key, item.data)
        item.synced = True
        return True

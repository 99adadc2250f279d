"""Timer scheduling for escalations, snooze expiry, retries and periodic ticks.

Two implementations share one interface:

- ``ThreadingScheduler`` runs callbacks on ``threading.Timer`` threads, one
  callback at a time, so timer work and commands form a single logical actor.
- ``VirtualScheduler`` keeps a controllable clock; ``advance()`` runs every
  callback that falls due, in time order. Used by tests and simulations.
"""

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from src.alert_engine.exceptions import SchedulingError

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class TimerHandle:
    """Opaque handle returned by ``Scheduler.schedule``."""

    due_at: datetime
    callback: Callable[[], None]
    label: str = ""
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    cancelled: bool = False
    fired: bool = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)


class Scheduler(Protocol):
    """Clock plus one-shot timers."""

    def now(self) -> datetime: ...

    def schedule(self, delay_seconds: float, callback: Callable[[], None], label: str = "") -> TimerHandle: ...

    def cancel(self, handle: Optional[TimerHandle]) -> bool: ...

    def shutdown(self) -> None: ...


class VirtualScheduler:
    """Deterministic scheduler with a manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._closed = False

    def now(self) -> datetime:
        return self._now

    def schedule(self, delay_seconds: float, callback: Callable[[], None], label: str = "") -> TimerHandle:
        if self._closed:
            raise SchedulingError("Scheduler is shut down")
        if delay_seconds < 0:
            delay_seconds = 0
        handle = TimerHandle(due_at=self._now + timedelta(seconds=delay_seconds), callback=callback, label=label)
        heapq.heappush(self._heap, (handle.due_at.timestamp(), next(self._seq), handle))
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> bool:
        if handle is None or not handle.active:
            return False
        handle.cancelled = True
        return True

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks. Returns how many fired."""
        return self.advance_to(self._now + timedelta(seconds=seconds))

    def advance_to(self, target: datetime) -> int:
        fired = 0
        while self._heap and self._heap[0][0] <= target.timestamp():
            _, _, handle = heapq.heappop(self._heap)
            if not handle.active:
                continue
            self._now = max(self._now, handle.due_at)
            handle.fired = True
            fired += 1
            try:
                handle.callback()
            except Exception:
                logger.exception("Timer callback %s failed", handle.label or handle.handle_id)
        self._now = max(self._now, target)
        return fired

    def run_pending(self) -> int:
        """Fire everything already due without moving the clock."""
        return self.advance_to(self._now)

    @property
    def pending_count(self) -> int:
        return sum(1 for _, _, h in self._heap if h.active)

    def pending(self, label_prefix: str = "") -> list[TimerHandle]:
        return sorted(
            (h for _, _, h in self._heap if h.active and h.label.startswith(label_prefix)),
            key=lambda h: h.due_at,
        )

    def shutdown(self) -> None:
        for _, _, handle in self._heap:
            handle.cancelled = True
        self._heap.clear()
        self._closed = True


class ThreadingScheduler:
    """Wall-clock scheduler backed by ``threading.Timer``."""

    def __init__(self):
        self._timers: dict[int, threading.Timer] = {}
        self._lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._closed = False

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def schedule(self, delay_seconds: float, callback: Callable[[], None], label: str = "") -> TimerHandle:
        handle = TimerHandle(
            due_at=self.now() + timedelta(seconds=max(delay_seconds, 0)),
            callback=callback,
            label=label,
        )
        timer = threading.Timer(max(delay_seconds, 0), self._run, args=(handle,))
        timer.daemon = True
        with self._lock:
            if self._closed:
                raise SchedulingError("Scheduler is shut down")
            self._timers[handle.handle_id] = timer
        try:
            timer.start()
        except RuntimeError as exc:
            with self._lock:
                self._timers.pop(handle.handle_id, None)
            raise SchedulingError(f"Could not start timer: {exc}") from exc
        return handle

    def _run(self, handle: TimerHandle) -> None:
        with self._lock:
            self._timers.pop(handle.handle_id, None)
        with self._dispatch_lock:
            if not handle.active:
                return
            handle.fired = True
            try:
                handle.callback()
            except Exception:
                logger.exception("Timer callback %s failed", handle.label or handle.handle_id)

    def cancel(self, handle: Optional[TimerHandle]) -> bool:
        if handle is None or not handle.active:
            return False
        handle.cancelled = True
        with self._lock:
            timer = self._timers.pop(handle.handle_id, None)
        if timer is not None:
            timer.cancel()
        return True

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        logger.info("Scheduler shut down, %d timers cancelled", len(timers))

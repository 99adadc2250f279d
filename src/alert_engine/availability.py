"""User availability, as reported by the host application."""

import threading
from typing import Callable

from src.alert_engine.config import AvailabilityStatus

AvailabilityProvider = Callable[[str], AvailabilityStatus]


class AvailabilityRegistry:
    """In-memory availability map. Unknown users are available.

    Instances are callable, so a registry can be passed anywhere an
    ``AvailabilityProvider`` is expected.
    """

    def __init__(self, default: AvailabilityStatus = AvailabilityStatus.AVAILABLE):
        self._default = default
        self._statuses: dict[str, AvailabilityStatus] = {}
        self._lock = threading.Lock()

    def set_status(self, user_id: str, status: AvailabilityStatus) -> None:
        with self._lock:
            self._statuses[user_id] = status

    def get_status(self, user_id: str) -> AvailabilityStatus:
        with self._lock:
            return self._statuses.get(user_id, self._default)

    def __call__(self, user_id: str) -> AvailabilityStatus:
        return self.get_status(user_id)

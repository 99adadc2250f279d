"""Channel adapters: the opaque senders behind each delivery channel."""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Union

from src.alert_engine.config import AlertChannel
from src.alert_engine.exceptions import DeliveryError
from src.alert_engine.models import AlertSnapshot, _now

logger = logging.getLogger(__name__)

SENT_HISTORY_LIMIT = 1000


@dataclass
class SendResult:
    """Outcome reported by a channel adapter."""

    success: bool
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=_now)


class ChannelAdapter(Protocol):
    """Sends one alert to one recipient over one channel.

    Adapters either return a SendResult or raise DeliveryError; any other
    exception is treated as a failed send.
    """

    channel: AlertChannel

    def send(self, alert: AlertSnapshot, user_id: str) -> SendResult: ...


class LoggingChannelAdapter:
    """Adapter that only logs the send and reports success.

    Used for channels the host has not wired to a provider.
    """

    def __init__(self, channel: AlertChannel) -> None:
        self.channel = channel
        self._sent: deque[tuple[str, str]] = deque(maxlen=SENT_HISTORY_LIMIT)

    def send(self, alert: AlertSnapshot, user_id: str) -> SendResult:
        self._sent.append((alert.alert_id, user_id))
        logger.info(
            "Sent alert %s to %s via %s",
            alert.alert_id,
            user_id,
            self.channel.value,
        )
        return SendResult(success=True)

    @property
    def sent(self) -> List[tuple[str, str]]:
        return list(self._sent)


class InAppChannelAdapter:
    """In-app inbox: records which alerts each user has been shown."""

    channel = AlertChannel.IN_APP

    def __init__(self) -> None:
        self._inbox: Dict[str, List[str]] = defaultdict(list)
        self._lock = threading.Lock()

    def send(self, alert: AlertSnapshot, user_id: str) -> SendResult:
        with self._lock:
            self._inbox[user_id].append(alert.alert_id)
        return SendResult(success=True)

    def inbox(self, user_id: str) -> List[str]:
        with self._lock:
            return list(self._inbox.get(user_id, []))

    def forget_alerts(self, alert_ids) -> None:
        gone = set(alert_ids)
        with self._lock:
            for user_id in list(self._inbox):
                kept = [a for a in self._inbox[user_id] if a not in gone]
                if kept:
                    self._inbox[user_id] = kept
                else:
                    del self._inbox[user_id]


class CallableChannelAdapter:
    """Wraps a plain function ``fn(alert, user_id)`` as an adapter.

    The function may return a SendResult or a bool.
    """

    def __init__(
        self,
        channel: AlertChannel,
        fn: Callable[[AlertSnapshot, str], Union[SendResult, bool]],
    ) -> None:
        self.channel = channel
        self._fn = fn

    def send(self, alert: AlertSnapshot, user_id: str) -> SendResult:
        outcome = self._fn(alert, user_id)
        if isinstance(outcome, SendResult):
            return outcome
        if outcome:
            return SendResult(success=True)
        raise DeliveryError(f"{self.channel.value} send rejected", channel=self.channel.value)


def default_adapters() -> Dict[AlertChannel, ChannelAdapter]:
    """One adapter per channel: in-app inbox plus logging adapters."""
    adapters: Dict[AlertChannel, ChannelAdapter] = {AlertChannel.IN_APP: InAppChannelAdapter()}
    for channel in AlertChannel:
        if channel != AlertChannel.IN_APP:
            adapters[channel] = LoggingChannelAdapter(channel)
    return adapters

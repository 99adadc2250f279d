"""Tests for the delivery dispatcher."""

from src.alert_engine.channels import (
    SENT_HISTORY_LIMIT,
    CallableChannelAdapter,
    LoggingChannelAdapter,
    SendResult,
    default_adapters,
)
from src.alert_engine.config import AlertChannel, AlertSeverity, DeliveryConfig, EngineConfig
from src.alert_engine.delivery import enabled_channels
from src.alert_engine.exceptions import DeliveryError
from src.alert_engine.models import Alert
from src.alert_engine.preferences import default_preferences
from src.alert_engine.store import AlertStore


def _store(scheduler, **channel_fns):
    adapters = default_adapters()
    for name, fn in channel_fns.items():
        channel = AlertChannel(name)
        adapters[channel] = CallableChannelAdapter(channel, fn)
    return AlertStore(scheduler=scheduler, adapters=adapters)


def _attempts(store, alert_id, channel):
    return [a for a in store.get_alert(alert_id).delivery_attempts if a.channel == channel]


# ── Channel selection ────────────────────────────────────────────────


class TestEnabledChannels:
    def setup_method(self):
        self.prefs = default_preferences("u1")

    def _alert(self, severity, category="system"):
        return Alert(title="t", message="", severity=severity, category=category).snapshot()

    def test_medium_system_alert(self):
        channels = enabled_channels(self._alert(AlertSeverity.MEDIUM), self.prefs)
        assert channels == [AlertChannel.IN_APP, AlertChannel.EMAIL, AlertChannel.PUSH]

    def test_low_alert_only_in_app(self):
        assert enabled_channels(self._alert(AlertSeverity.LOW), self.prefs) == [AlertChannel.IN_APP]

    def test_disabled_channel_excluded(self):
        self.prefs.channels[AlertChannel.PUSH].enabled = False
        channels = enabled_channels(self._alert(AlertSeverity.HIGH), self.prefs)
        assert AlertChannel.PUSH not in channels

    def test_category_channels_narrow_the_set(self):
        self.prefs.channels[AlertChannel.SMS].enabled = True
        channels = enabled_channels(self._alert(AlertSeverity.CRITICAL, "security"), self.prefs)
        assert channels == [AlertChannel.IN_APP, AlertChannel.EMAIL, AlertChannel.PUSH]

    def test_disabled_category_blocks_below_critical(self):
        self.prefs.categories["deployment"].enabled = False
        assert enabled_channels(self._alert(AlertSeverity.HIGH, "deployment"), self.prefs) == []
        assert enabled_channels(self._alert(AlertSeverity.CRITICAL, "deployment"), self.prefs)


class TestAdapters:
    def test_logging_adapter_history_is_bounded(self):
        adapter = LoggingChannelAdapter(AlertChannel.EMAIL)
        alert = Alert(title="t", message="", severity=AlertSeverity.LOW, category="system").snapshot()
        for i in range(SENT_HISTORY_LIMIT + 5):
            adapter.send(alert, f"u{i}")
        sent = adapter.sent
        assert len(sent) == SENT_HISTORY_LIMIT
        assert sent[-1] == (alert.alert_id, f"u{SENT_HISTORY_LIMIT + 4}")


# ── Retries ──────────────────────────────────────────────────────────


class TestRetries:
    def test_failing_channel_retries_then_dead_letters(self, scheduler):
        store = _store(scheduler, push=lambda alert, user: False)
        alert_id = store.create_alert("x", "", "medium", "system")

        scheduler.advance(120)
        push = _attempts(store, alert_id, AlertChannel.PUSH)
        assert [a.retry_count for a in push] == [0, 1, 2, 3]
        assert [a.final for a in push] == [False, False, False, True]
        assert not any(a.success for a in push)

        stats = store.dispatcher.get_stats()
        assert stats["terminal_failures"] == 1
        assert stats["failed_attempts"] == 4
        assert stats["retries_scheduled"] == 3
        assert stats["dead_letter_count"] == 1
        assert store.dispatcher.get_dead_letters()[0].channel == AlertChannel.PUSH
        store.shutdown()

    def test_retry_waits_for_delay(self, scheduler):
        store = _store(scheduler, push=lambda alert, user: False)
        alert_id = store.create_alert("x", "", "medium", "system")
        scheduler.advance(29)
        assert len(_attempts(store, alert_id, AlertChannel.PUSH)) == 1
        scheduler.advance(1)
        assert len(_attempts(store, alert_id, AlertChannel.PUSH)) == 2
        store.shutdown()

    def test_raising_adapter_is_recorded(self, scheduler):
        def boom(alert, user):
            raise RuntimeError("smtp down")

        store = _store(scheduler, push=boom)
        alert_id = store.create_alert("x", "", "medium", "system")
        first = _attempts(store, alert_id, AlertChannel.PUSH)[0]
        assert first.success is False
        assert first.error == "smtp down"
        assert first.final is False
        store.shutdown()

    def test_non_retryable_error_is_final(self, scheduler):
        def reject(alert, user):
            raise DeliveryError("bad token", channel="push", retryable=False)

        store = _store(scheduler, push=reject)
        alert_id = store.create_alert("x", "", "medium", "system")
        push = _attempts(store, alert_id, AlertChannel.PUSH)
        assert len(push) == 1
        assert push[0].final is True
        assert store.dispatcher.get_stats()["retries_scheduled"] == 0
        store.shutdown()

    def test_flaky_adapter_succeeds_on_retry(self, scheduler):
        calls = []

        def flaky(alert, user):
            calls.append(user)
            return len(calls) > 1

        store = _store(scheduler, push=flaky)
        alert_id = store.create_alert("x", "", "medium", "system")
        scheduler.advance(30)
        push = _attempts(store, alert_id, AlertChannel.PUSH)
        assert [(a.success, a.retry_count, a.final) for a in push] == [(False, 0, False), (True, 1, True)]
        assert store.dispatcher.get_stats()["dead_letter_count"] == 0
        store.shutdown()

    def test_retry_abandoned_after_resolve(self, scheduler):
        store = _store(scheduler, push=lambda alert, user: False)
        alert_id = store.create_alert("x", "", "medium", "system")
        store.resolve_alert(alert_id, "alice")
        scheduler.advance(60)
        assert len(_attempts(store, alert_id, AlertChannel.PUSH)) == 1
        assert store.dispatcher.get_stats()["retries_abandoned"] == 1
        store.shutdown()

    def test_send_result_failure_is_retried(self, scheduler):
        store = _store(scheduler, push=lambda alert, user: SendResult(success=False, error="quota"))
        alert_id = store.create_alert("x", "", "medium", "system")
        assert _attempts(store, alert_id, AlertChannel.PUSH)[0].error == "quota"
        assert store.dispatcher.get_stats()["retries_scheduled"] == 1
        store.shutdown()


# ── Batching & quiet hours ───────────────────────────────────────────


class TestDeferredDelivery:
    def test_batched_email_flushed_after_interval(self, store):
        store.update_preferences("current-user", {"escalation": {"enabled": False}})
        alert_id = store.create_alert("x", "", "medium", "system")
        assert _attempts(store, alert_id, AlertChannel.EMAIL) == []
        assert store.dispatcher.pending_deferred("current-user") == {"email": [alert_id]}

        store.scheduler.advance(30 * 60)
        email = _attempts(store, alert_id, AlertChannel.EMAIL)
        assert len(email) == 1 and email[0].success
        assert store.dispatcher.pending_deferred("current-user") == {}

    def test_alerts_in_one_window_share_a_flush(self, store):
        store.update_preferences("current-user", {"escalation": {"enabled": False}})
        first = store.create_alert("a", "", "medium", "system")
        store.scheduler.advance(10 * 60)
        second = store.create_alert("b", "", "high", "system")
        store.scheduler.advance(20 * 60)
        assert len(_attempts(store, first, AlertChannel.EMAIL)) == 1
        assert len(_attempts(store, second, AlertChannel.EMAIL)) == 1

    def test_critical_bypasses_batching(self, store):
        alert_id = store.create_alert("x", "", "critical", "system")
        assert len(_attempts(store, alert_id, AlertChannel.EMAIL)) == 1

    def test_digest_waits_a_day(self, store):
        store.update_preferences("current-user", {
            "escalation": {"enabled": False},
            "channels": {"email": {"frequency": "digest"}},
        })
        alert_id = store.create_alert("x", "", "high", "system")
        store.scheduler.advance(23 * 3600)
        assert _attempts(store, alert_id, AlertChannel.EMAIL) == []
        store.scheduler.advance(3600)
        assert len(_attempts(store, alert_id, AlertChannel.EMAIL)) == 1

    def test_resolved_alert_dropped_from_batch(self, store):
        store.update_preferences("current-user", {"escalation": {"enabled": False}})
        alert_id = store.create_alert("x", "", "medium", "system")
        store.resolve_alert(alert_id, "alice")
        store.scheduler.advance(30 * 60)
        assert _attempts(store, alert_id, AlertChannel.EMAIL) == []

    def test_channel_quiet_hours_skip(self, store):
        store.update_preferences("current-user", {
            "channels": {"push": {"quiet_hours": {"enabled": True, "start": "11:00", "end": "13:00"}}},
        })
        medium = store.create_alert("x", "", "medium", "system")
        critical = store.create_alert("y", "", "critical", "system")
        assert _attempts(store, medium, AlertChannel.PUSH) == []
        assert len(_attempts(store, critical, AlertChannel.PUSH)) == 1
        assert store.dispatcher.get_stats()["quiet_hours_skipped"] == 1


# ── Queue ────────────────────────────────────────────────────────────


class TestQueue:
    def test_batch_size_limits_one_pass(self, scheduler):
        config = EngineConfig(delivery=DeliveryConfig(batch_size=2, drain_on_create=False))
        store = AlertStore(config=config, scheduler=scheduler)
        for i in range(3):
            store.create_alert(f"a{i}", "", "medium", "system")
        assert store.dispatcher.queue_size == 3
        assert store.dispatcher.process_queue() == 2
        assert store.dispatcher.queue_size == 1
        assert store.dispatcher.process_queue() == 1
        assert store.dispatcher.process_queue() == 0
        store.shutdown()

    def test_reentrant_drain_is_skipped(self, scheduler):
        nested = []
        holder = {}

        def push(alert, user):
            nested.append(holder["store"].dispatcher.process_queue())
            return True

        store = _store(scheduler, push=push)
        holder["store"] = store
        store.create_alert("x", "", "medium", "system")
        assert nested == [0]
        assert store.dispatcher.get_stats()["in_progress"] is False
        store.shutdown()

    def test_resolved_before_drain_is_skipped(self, scheduler):
        config = EngineConfig(delivery=DeliveryConfig(drain_on_create=False))
        store = AlertStore(config=config, scheduler=scheduler)
        alert_id = store.create_alert("x", "", "medium", "system")
        store.resolve_alert(alert_id, "alice")
        store.dispatcher.process_queue()
        assert store.get_alert(alert_id).delivery_attempts == ()
        store.shutdown()

    def test_stats_by_channel(self, store):
        store.create_alert("x", "", "medium", "system")
        stats = store.dispatcher.get_stats()
        assert stats["by_channel"]["push"] == {"success": 1}
        assert stats["by_channel"]["in_app"] == {"success": 1}
        assert stats["enqueued"] == 1
        assert stats["queue_size"] == 0

    def test_failing_alert_does_not_drop_the_batch(self, scheduler):
        def recipients(alert):
            if alert.title == "bad":
                raise RuntimeError("directory down")
            return ["current-user"]

        config = EngineConfig(delivery=DeliveryConfig(drain_on_create=False))
        store = AlertStore(config=config, scheduler=scheduler, get_recipients=recipients)
        good1 = store.create_alert("good1", "", "critical", "system")
        store.create_alert("bad", "", "critical", "system")
        good2 = store.create_alert("good2", "", "critical", "system")

        assert store.dispatcher.process_queue() == 3
        assert store.get_alert(good1).delivery_attempts
        assert store.get_alert(good2).delivery_attempts
        assert store.dispatcher.get_stats()["failed"] == 1
        store.shutdown()

    def test_tick_survives_failing_alert(self, scheduler):
        def recipients(alert):
            if alert.title == "bad":
                raise RuntimeError("directory down")
            return ["current-user"]

        config = EngineConfig(delivery=DeliveryConfig(drain_on_create=False))
        store = AlertStore(config=config, scheduler=scheduler, get_recipients=recipients)
        store.start()
        store.create_alert("bad", "", "critical", "system")
        scheduler.advance(5)
        later = store.create_alert("later", "", "critical", "system")
        scheduler.advance(5)
        assert store.get_alert(later).delivery_attempts
        store.shutdown()

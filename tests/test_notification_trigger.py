"""
Tests — Notification Trigger & dispatchers.

Covers:
    1. dispatch_due_reminders: at-least-once delivery, retries, cancellation
    2. one-off events never raise into the caller
    3. WebhookNotificationDispatcher (mocked requests.Session) and build_dispatcher
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from compliance_engine.integrations.notification_dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatchError,
    WebhookNotificationDispatcher,
    build_dispatcher,
)
from compliance_engine.models.obligation import Reminder
from compliance_engine.services import notification_trigger, obligation_scheduler, obligation_tracker

UTC = timezone.utc
EARLY = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)
FEB_5 = datetime(2025, 2, 5, 10, 0, tzinfo=UTC)


class _BrokenDispatcher:
    def __init__(self):
        self.calls = 0

    def enqueue(self, message):
        self.calls += 1
        raise NotificationDispatchError("SMTP relay down")


def _scheduled(make_service, entity):
    make_service()
    instance, _ = obligation_scheduler.schedule_obligation("gst_returns", entity.id, "2025-02",
                                                          now=EARLY)
    return instance.id


def _statuses(instance_id):
    return [r.status for r in
            Reminder.query.filter_by(instance_id=instance_id).order_by(Reminder.fires_at)]


# ═══════════════════════════════════════════════════════════════════════════
#  Reminder dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatchDueReminders:

    def test_sends_due_reminders_once(self, make_service, entity, dispatcher):
        instance_id = _scheduled(make_service, entity)

        summary = notification_trigger.dispatch_due_reminders(now=FEB_5)
        assert summary == {"dispatched": 2, "failed": 0, "cancelled": 0, "duplicates": 0}
        assert _statuses(instance_id) == ["dispatched", "dispatched", "pending", "pending", "pending"]

        again = notification_trigger.dispatch_due_reminders(now=FEB_5)
        assert again["dispatched"] == 0
        assert len(dispatcher.delivered) == 2

    def test_message_shape(self, make_service, entity, dispatcher):
        instance_id = _scheduled(make_service, entity)
        notification_trigger.dispatch_due_reminders(now=FEB_5)

        first = dispatcher.delivered[0]
        assert first["type"] == "reminder"
        assert first["instanceId"] == instance_id
        assert first["serviceKey"] == "gst_returns"
        assert first["periodKey"] == "2025-02"
        assert first["dueDate"] == "2025-02-20"
        assert first["kind"] == "fixed_day"
        assert first["channel"] == "email"
        assert first["dedupeKey"] == f"{instance_id}:2025-02-01T09:00:00+00:00"

    def test_nothing_due_yet(self, make_service, entity):
        _scheduled(make_service, entity)
        summary = notification_trigger.dispatch_due_reminders(now=EARLY)
        assert summary["dispatched"] == 0

    def test_failures_are_recorded_and_retried(self, app, make_service, entity, monkeypatch):
        instance_id = _scheduled(make_service, entity)
        broken = _BrokenDispatcher()
        monkeypatch.setitem(app.extensions, "notification_dispatcher", broken)

        summary = notification_trigger.dispatch_due_reminders(now=FEB_5)
        assert summary["failed"] == 2
        assert broken.calls == 2
        failed = Reminder.query.filter_by(instance_id=instance_id, status="failed").all()
        assert len(failed) == 2
        assert all(r.attempts == 1 and "SMTP relay down" in r.last_error for r in failed)

        healthy = LoggingNotificationDispatcher()
        monkeypatch.setitem(app.extensions, "notification_dispatcher", healthy)
        retry = notification_trigger.dispatch_due_reminders(now=FEB_5)
        assert retry["dispatched"] == 2
        sent = Reminder.query.filter_by(instance_id=instance_id, status="dispatched").all()
        assert all(r.attempts == 2 and r.last_error is None for r in sent)

    def test_redelivery_is_deduplicated(self, make_service, entity, dispatcher):
        instance_id = _scheduled(make_service, entity)
        # Delivered before a crash left the row pending
        dispatcher.enqueue({"dedupeKey": f"{instance_id}:2025-02-01T09:00:00+00:00"})

        summary = notification_trigger.dispatch_due_reminders(now=FEB_5)
        assert summary["dispatched"] == 1
        assert summary["duplicates"] == 1
        assert _statuses(instance_id)[:2] == ["dispatched", "dispatched"]

    def test_reminders_cancelled_once_submitted(self, make_service, entity, dispatcher):
        instance_id = _scheduled(make_service, entity)
        obligation_tracker.start_work(instance_id, actor_id="exec1", actor_role="ops_executive")
        obligation_tracker.submit_for_review(instance_id, actor_id="exec1",
                                             actor_role="ops_executive")

        summary = notification_trigger.dispatch_due_reminders(
            now=datetime(2025, 2, 20, 12, 0, tzinfo=UTC))
        assert summary["cancelled"] == 5
        assert set(_statuses(instance_id)) == {"cancelled"}
        assert [m for m in dispatcher.delivered if m["type"] == "reminder"] == []

    def test_batch_limit(self, make_service, entity):
        _scheduled(make_service, entity)
        summary = notification_trigger.dispatch_due_reminders(
            now=datetime(2025, 2, 19, 12, 0, tzinfo=UTC), limit=3)
        assert summary["dispatched"] == 3


class TestEventNotifications:

    def test_event_failures_do_not_raise(self, app, make_service, entity, monkeypatch):
        instance_id = _scheduled(make_service, entity)
        monkeypatch.setitem(app.extensions, "notification_dispatcher", _BrokenDispatcher())
        instance = obligation_tracker.get_instance(instance_id)
        assert notification_trigger.notify_escalation(instance) is False
        assert notification_trigger.notify_sla_breach(instance, FEB_5.date()) is False


# ═══════════════════════════════════════════════════════════════════════════
#  Dispatchers
# ═══════════════════════════════════════════════════════════════════════════

class TestLoggingDispatcher:

    def test_deduplicates_by_key(self):
        dispatcher = LoggingNotificationDispatcher()
        assert dispatcher.enqueue({"instanceId": 1, "dedupeKey": "1:a"}) is True
        assert dispatcher.enqueue({"instanceId": 1, "dedupeKey": "1:a"}) is False
        assert dispatcher.enqueue({"instanceId": 1, "dedupeKey": "1:b"}) is True
        assert len(dispatcher.delivered) == 2


class TestWebhookDispatcher:

    def _dispatcher(self, status_code=202, side_effect=None):
        session = MagicMock()
        if side_effect is not None:
            session.post.side_effect = side_effect
        else:
            session.post.return_value = MagicMock(status_code=status_code, text="")
        return WebhookNotificationDispatcher("https://hooks.example.test/notify", timeout=5,
                                             session=session), session

    def test_accepted(self):
        dispatcher, session = self._dispatcher(202)
        message = {"type": "reminder", "dedupeKey": "7:2025-02-01T09:00:00+00:00"}
        assert dispatcher.enqueue(message) is True

        args, kwargs = session.post.call_args
        assert args == ("https://hooks.example.test/notify",)
        assert kwargs["json"] == message
        assert kwargs["timeout"] == 5
        assert kwargs["headers"]["Idempotency-Key"] == "7:2025-02-01T09:00:00+00:00"

    def test_conflict_means_duplicate(self):
        dispatcher, _ = self._dispatcher(409)
        assert dispatcher.enqueue({"dedupeKey": "k"}) is False

    def test_server_error_raises(self):
        dispatcher, _ = self._dispatcher(503)
        with pytest.raises(NotificationDispatchError):
            dispatcher.enqueue({"dedupeKey": "k"})

    def test_network_error_raises(self):
        dispatcher, _ = self._dispatcher(side_effect=requests.ConnectionError("refused"))
        with pytest.raises(NotificationDispatchError):
            dispatcher.enqueue({"dedupeKey": "k"})


class TestBuildDispatcher:

    def test_webhook_when_url_configured(self):
        dispatcher = build_dispatcher({"NOTIFICATION_WEBHOOK_URL": "https://hooks.example.test",
                                       "NOTIFICATION_WEBHOOK_TIMEOUT": 3})
        assert isinstance(dispatcher, WebhookNotificationDispatcher)
        assert dispatcher.timeout == 3

    def test_logging_by_default(self):
        assert isinstance(build_dispatcher({}), LoggingNotificationDispatcher)

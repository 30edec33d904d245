"""
Compliance Obligation & Review Engine
Notification Trigger — turns due reminders and review outcomes into dispatcher messages.

Delivery policy:
  - At-least-once: a reminder row is marked ``dispatched`` only after the
    dispatcher accepted it; a crash in between re-sends it on the next tick
    and the consumer drops it by ``dedupeKey``
  - Failures are logged and recorded on the reminder row (``failed``,
    ``attempts``, ``last_error``); the next tick retries them
  - Nothing here ever raises into the obligation tracker
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from compliance_engine.integrations.notification_dispatcher import get_dispatcher
from compliance_engine.models import db
from compliance_engine.models.obligation import (
    REMINDABLE_STATUSES,
    ObligationInstance,
    Reminder,
)
from compliance_engine.utils.helpers import as_utc

logger = logging.getLogger(__name__)

# Reminders per tick
DISPATCH_BATCH_SIZE = 500


def _base_message(instance: ObligationInstance, message_type: str) -> dict:
    return {
        "type": message_type,
        "instanceId": instance.id,
        "serviceKey": instance.service_key,
        "entityId": instance.entity_id,
        "periodKey": instance.period_key,
        "dueDate": instance.due_date.isoformat() if instance.due_date else None,
        "status": instance.status,
        "assigneeId": instance.assignee_id,
    }


def _enqueue_event(message: dict) -> bool:
    """Hand a one-off event to the dispatcher; failures are logged, never raised."""
    try:
        return get_dispatcher().enqueue(message)
    except Exception as e:
        logger.error(
            "Notification %s for obligation %s failed: %s",
            message.get("type"), message.get("instanceId"), e,
            extra={"instance_id": message.get("instanceId"), "event_type": "dispatch_failed"},
        )
        return False


# ═════════════════════════════════════════════════════════════════════════════
# Reminders
# ═════════════════════════════════════════════════════════════════════════════


def reminder_message(reminder: Reminder, instance: ObligationInstance) -> dict:
    fires_at = as_utc(reminder.fires_at).isoformat()
    message = _base_message(instance, "reminder")
    message.update({
        "firesAt": fires_at,
        "channel": reminder.channel,
        "kind": reminder.kind,
        "dedupeKey": f"{instance.id}:{fires_at}",
    })
    return message


def dispatch_due_reminders(now: datetime | None = None, limit: int = DISPATCH_BATCH_SIZE) -> dict:
    """Send every pending or previously failed reminder whose time has come.

    Reminders of obligations that no longer wait on the assignee (submitted,
    approved, escalated, closed) are cancelled instead of sent.

    Returns:
        {"dispatched": n, "failed": n, "cancelled": n, "duplicates": n}
    """
    now = now or datetime.now(timezone.utc)
    dispatcher = get_dispatcher()
    summary = {"dispatched": 0, "failed": 0, "cancelled": 0, "duplicates": 0}

    rows = db.session.execute(
        select(Reminder, ObligationInstance)
        .join(ObligationInstance, ObligationInstance.id == Reminder.instance_id)
        .where(Reminder.status.in_(("pending", "failed")), Reminder.fires_at <= now)
        .order_by(Reminder.fires_at, Reminder.id)
        .limit(limit)
    ).all()

    for reminder, instance in rows:
        if instance.status not in REMINDABLE_STATUSES:
            reminder.status = "cancelled"
            summary["cancelled"] += 1
            continue

        reminder.attempts = (reminder.attempts or 0) + 1
        try:
            accepted = dispatcher.enqueue(reminder_message(reminder, instance))
        except Exception as e:
            reminder.status = "failed"
            reminder.last_error = str(e)[:1000]
            summary["failed"] += 1
            logger.warning(
                "Reminder %s dispatch failed (attempt %d): %s", reminder.id, reminder.attempts, e,
                extra={"instance_id": instance.id, "attempt": reminder.attempts,
                       "event_type": "reminder_dispatch_failed"},
            )
            continue

        reminder.status = "dispatched"
        reminder.dispatched_at = now
        reminder.last_error = None
        if accepted:
            summary["dispatched"] += 1
        else:
            summary["duplicates"] += 1

    db.session.commit()
    if rows:
        logger.info(
            "Reminder dispatch: %d sent, %d failed, %d cancelled",
            summary["dispatched"], summary["failed"], summary["cancelled"],
            extra={"event_type": "reminder_dispatch"},
        )
    return summary


# ═════════════════════════════════════════════════════════════════════════════
# Review outcomes & escalations
# ═════════════════════════════════════════════════════════════════════════════


def notify_review_outcome(instance: ObligationInstance, review) -> bool:
    message = _base_message(instance, "review_outcome")
    message.update({
        "reviewId": review.id,
        "disposition": review.disposition,
        "qualityScore": review.quality_score,
        "reviewerId": review.reviewer_id,
        "reworkInstructions": review.rework_instructions,
        "dedupeKey": f"review:{review.id}:{review.disposition}",
    })
    return _enqueue_event(message)


def notify_escalation(instance: ObligationInstance) -> bool:
    """Route an escalated obligation to the human queue."""
    message = _base_message(instance, "escalation")
    message.update({
        "reworkCount": instance.rework_count,
        "escalatedAt": instance.escalated_at.isoformat() if instance.escalated_at else None,
        "queue": "escalations",
        "dedupeKey": f"escalation:{instance.id}:{instance.rework_count}",
    })
    return _enqueue_event(message)


def notify_sla_breach(instance: ObligationInstance, day) -> bool:
    message = _base_message(instance, "sla_breach")
    message.update({
        "slaDeadline": as_utc(instance.sla_deadline).isoformat(),
        "dedupeKey": f"sla:{instance.id}:{day.isoformat()}",
    })
    return _enqueue_event(message)

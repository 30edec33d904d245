"""
Compliance Obligation & Review Engine
Obligation Scheduler — due dates, reminder schedules and obligation materialization.

Algorithm (per service, entity, period):
  1. Resolve the active rule for the entity's jurisdiction (binding override
     first) as of the period's start date. The rule's periodicity is
     authoritative; a period key of another shape is rejected.
  2. Due date: MONTHLY → due day of the period's month; QUARTERLY/ANNUAL →
     due day of the period's last month; ONE_TIME → due_in_days after the
     start, or due day of the start month. Always clamped to month length.
  3. Reminders: tMinus offsets before the due date plus fixedDays of the
     period's month (the due-date month for quarterly/annual). Reminders
     whose fire time is already past are dropped, duplicates collapse, the
     list is sorted.
  4. Materialize idempotently, keyed by (service, entity, period).

compute_schedule / preview_due_date are pure; schedule_obligation and
materialize_due_obligations persist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from compliance_engine.core.exceptions import ConfigurationGapError, ValidationError
from compliance_engine.models import db
from compliance_engine.models.obligation import ObligationInstance, ObligationTransition, Reminder
from compliance_engine.services import rule_store, workflow_registry
from compliance_engine.services.locking import keyed_lock
from compliance_engine.services.periods import (
    Period,
    clamp_day,
    infer_periodicity,
    parse_period_key,
    period_for_date,
)
from compliance_engine.services.rule_schema import (
    OneTimeRule,
    Periodicity,
    RuleVariant,
    load_rule,
    parse_rule_payload,
)
from compliance_engine.services.store_retry import run_with_store_retry

logger = logging.getLogger(__name__)

SLA_CUTOFF = time(23, 59, 59)


@dataclass(frozen=True)
class ScheduledReminder:
    fires_at: datetime
    kind: str  # t_minus | fixed_day

    def to_dict(self) -> dict:
        return {"fires_at": self.fires_at.isoformat(), "kind": self.kind}


@dataclass(frozen=True)
class Schedule:
    period: Period
    periodicity: Periodicity
    due_date: date
    sla_deadline: datetime
    reminders: list[ScheduledReminder] = field(default_factory=list)

    @property
    def reminder_dates(self) -> list[date]:
        return [r.fires_at.date() for r in self.reminders]

    def to_dict(self) -> dict:
        return {
            "period_key": self.period.key,
            "period_start": self.period.start.isoformat(),
            "period_end": self.period.end.isoformat(),
            "periodicity": self.periodicity.value,
            "due_date": self.due_date.isoformat(),
            "sla_deadline": self.sla_deadline.isoformat(),
            "reminders": [r.to_dict() for r in self.reminders],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Pure computation
# ═════════════════════════════════════════════════════════════════════════════


def compute_due_date(rule: RuleVariant, period: Period) -> date:
    if isinstance(rule, OneTimeRule):
        if rule.due_day is not None:
            return clamp_day(period.start.year, period.start.month, rule.due_day)
        return period.start + timedelta(days=rule.due_in_days)
    if rule.periodicity is Periodicity.MONTHLY:
        return clamp_day(period.start.year, period.start.month, rule.due_day)
    # QUARTERLY / ANNUAL: last month of the period
    year, month = period.last_month
    return clamp_day(year, month, rule.due_day)


def compute_sla_deadline(due_date: date, buffer_days: int = 0) -> datetime:
    """Due date minus the buffer, at the last second of that day (UTC)."""
    return datetime.combine(due_date - timedelta(days=buffer_days), SLA_CUTOFF, tzinfo=timezone.utc)


def compute_reminders(
    rule: RuleVariant,
    period: Period,
    due_date: date,
    *,
    now: datetime,
    reminder_hour: int = 9,
) -> list[ScheduledReminder]:
    """Reminder timestamps for the period; those earlier than ``now`` are dropped."""
    candidates: list[tuple[date, str]] = []
    for offset in rule.nudges.t_minus:
        candidates.append((due_date - timedelta(days=offset), "t_minus"))

    if rule.periodicity in (Periodicity.QUARTERLY, Periodicity.ANNUAL):
        year, month = due_date.year, due_date.month
    else:
        year, month = period.start.year, period.start.month
    for day in rule.nudges.fixed_days:
        candidates.append((clamp_day(year, month, day), "fixed_day"))

    fire_time = time(reminder_hour % 24)
    by_time: dict[datetime, str] = {}
    for day, kind in candidates:
        fires_at = datetime.combine(day, fire_time, tzinfo=timezone.utc)
        if fires_at < now:
            continue
        by_time.setdefault(fires_at, kind)

    return [
        ScheduledReminder(fires_at, kind) for fires_at, kind in sorted(by_time.items())
    ]


def compute_schedule(
    rule: RuleVariant,
    period: Period,
    *,
    now: datetime | None = None,
    reminder_hour: int = 9,
    sla_buffer_days: int = 0,
) -> Schedule:
    """Due date, SLA deadline and reminder schedule for one period. Pure.

    Raises:
        ValidationError: when the period's shape does not match the rule.
    """
    if period.periodicity is not rule.periodicity:
        raise ValidationError(
            f"Period {period.key} is {period.periodicity.value} but the rule is "
            f"{rule.periodicity.value}",
            details={"period_key": period.key, "periodicity": rule.periodicity.value},
        )
    now = now or datetime.now(timezone.utc)
    due_date = compute_due_date(rule, period)
    return Schedule(
        period=period,
        periodicity=rule.periodicity,
        due_date=due_date,
        sla_deadline=compute_sla_deadline(due_date, sla_buffer_days),
        reminders=compute_reminders(rule, period, due_date,
                                    now=now, reminder_hour=reminder_hour),
    )


def _engine_settings() -> dict:
    cfg = current_app.config
    return {
        "reminder_hour": cfg.get("REMINDER_HOUR_UTC", 9),
        "sla_buffer_days": cfg.get("SLA_BUFFER_DAYS", 0),
    }


def _resolve_rule_for_period(service_key: str, jurisdiction: str, period_key: str):
    """Resolve the rule governing ``period_key`` and parse the key against it.

    The key shape gives the provisional period start used for resolution;
    the resolved rule's periodicity then decides whether the key is valid.
    """
    provisional = parse_period_key(period_key, infer_periodicity(period_key))
    rule_row = rule_store.resolve_active_rule(service_key, jurisdiction, provisional.start)
    variant = load_rule(rule_row.rule_json)
    period = parse_period_key(period_key, variant.periodicity)
    return rule_row, variant, period


def preview_due_date(
    period_key: str,
    *,
    payload: dict | None = None,
    service_key: str | None = None,
    jurisdiction: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Schedule preview for the admin console; persists nothing.

    Either evaluates a draft rule ``payload`` or the rule currently stored
    for ``service_key``/``jurisdiction``.
    """
    settings = _engine_settings()
    rule_id = None
    if payload is not None:
        variant = parse_rule_payload(payload)
        period = parse_period_key(period_key, variant.periodicity)
    elif service_key:
        rule_row, variant, period = _resolve_rule_for_period(service_key, jurisdiction, period_key)
        rule_id = rule_row.id
    else:
        raise ValidationError("Provide either a rule payload or a service_key",
                              details={"rule": "required"})

    result = compute_schedule(variant, period, now=now, **settings).to_dict()
    result["rule_id"] = rule_id
    result["rule"] = variant.to_payload()
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Materialization
# ═════════════════════════════════════════════════════════════════════════════


def _find_instance(service_key: str, entity_id: int, period_key: str) -> ObligationInstance | None:
    return db.session.execute(
        select(ObligationInstance).where(
            ObligationInstance.service_key == service_key,
            ObligationInstance.entity_id == entity_id,
            ObligationInstance.period_key == period_key,
        )
    ).scalar_one_or_none()


def schedule_obligation(
    service_key: str,
    entity_id: int,
    period_key: str,
    *,
    now: datetime | None = None,
    actor_id: str | None = None,
    rule=None,
) -> tuple[ObligationInstance, bool]:
    """Materialize the obligation for (service, entity, period).

    Idempotent: when the instance already exists it is returned unchanged.
    ``rule`` pins the DueDateRule row to schedule with; without it the rule
    in force at the period start is used.

    Returns:
        (instance, created)

    Raises:
        NotFoundError: unknown service or entity.
        NoRuleFoundError: no rule governs the period start.
        NoPublishedTemplateError: the service has no published workflow.
        ValidationError: period key shape does not match the rule.
    """
    period_key = str(period_key or "").strip()
    now = now or datetime.now(timezone.utc)

    existing = _find_instance(service_key, entity_id, period_key)
    if existing is not None:
        return existing, False

    service = rule_store.get_service(service_key)
    entity = rule_store.get_entity(entity_id)
    binding = rule_store.get_binding(entity_id, service_key)
    jurisdiction = (binding.jurisdiction if binding is not None and binding.jurisdiction
                    else entity.jurisdiction)

    if rule is not None:
        rule_row, variant = rule, load_rule(rule.rule_json)
        period = parse_period_key(period_key, variant.periodicity)
    else:
        rule_row, variant, period = _resolve_rule_for_period(service.service_key, jurisdiction,
                                                             period_key)
    template = workflow_registry.resolve_published(service_key)
    schedule = compute_schedule(variant, period, now=now, **_engine_settings())
    channel = current_app.config.get("REMINDER_CHANNEL", "email")

    def _materialize():
        with keyed_lock("materialize", service_key, entity_id, period.key):
            found = _find_instance(service_key, entity_id, period.key)
            if found is not None:
                return found, False

            steps = template.step_keys
            instance = ObligationInstance(
                service_key=service_key,
                entity_id=entity_id,
                period_key=period.key,
                period_start=period.start,
                period_end=period.end,
                periodicity=variant.periodicity.value,
                jurisdiction=jurisdiction,
                due_date=schedule.due_date,
                reminder_dates=[r.fires_at.isoformat() for r in schedule.reminders],
                sla_deadline=schedule.sla_deadline,
                rule_id=rule_row.id,
                template_id=template.id,
                current_step_key=steps[0] if steps else None,
                completed_steps=[],
                status="scheduled",
            )
            db.session.add(instance)
            db.session.flush()
            db.session.add(ObligationTransition(
                instance_id=instance.id, from_status=None, to_status="scheduled",
                actor_id=actor_id, note=f"materialized for {period.key}",
            ))
            for reminder in schedule.reminders:
                db.session.add(Reminder(
                    instance_id=instance.id, fires_at=reminder.fires_at,
                    channel=channel, kind=reminder.kind, status="pending",
                ))
            try:
                db.session.commit()
            except IntegrityError:
                # Lost the race to another process; the winner's row stands
                db.session.rollback()
                found = _find_instance(service_key, entity_id, period.key)
                if found is None:
                    raise
                return found, False
            return instance, True

    instance, created = run_with_store_retry("schedule_obligation", _materialize)
    if created:
        logger.info(
            "Obligation scheduled: %s/%s/%s due %s", service_key, entity_id, period.key,
            schedule.due_date,
            extra={"instance_id": instance.id, "service_key": service_key,
                   "entity_id": entity_id, "period_key": period.key, "rule_id": rule_row.id,
                   "template_version": template.version, "event_type": "obligation_scheduled"},
        )
    return instance, created


def _has_any_instance(service_key: str, entity_id: int) -> bool:
    return db.session.execute(
        select(ObligationInstance.id).where(
            ObligationInstance.service_key == service_key,
            ObligationInstance.entity_id == entity_id,
        ).limit(1)
    ).first() is not None


def materialize_due_obligations(as_of: date | None = None, now: datetime | None = None) -> dict:
    """Scheduler tick: materialize the current period for every active binding.

    Configuration gaps are collected, not raised: a service without a rule or
    published template is reported as ``not_configured`` and retried on the
    next tick. One-time services materialize once per entity.

    Returns:
        {"created": n, "existing": n, "not_configured": [...], "errors": [...]}
    """
    now = now or datetime.now(timezone.utc)
    as_of = as_of or now.date()
    summary = {"created": 0, "existing": 0, "not_configured": [], "errors": []}

    for binding in rule_store.list_active_bindings():
        service_key, entity_id = binding.service_key, binding.entity_id
        try:
            jurisdiction = binding.effective_jurisdiction
            rule_row = rule_store.resolve_active_rule(service_key, jurisdiction, as_of)
            periodicity = Periodicity(rule_row.periodicity)
            if periodicity is Periodicity.ONE_TIME and _has_any_instance(service_key, entity_id):
                summary["existing"] += 1
                continue
            period = period_for_date(periodicity, as_of)
            # The rule in force on as_of chose the period, so it also computes it
            _, created = schedule_obligation(service_key, entity_id, period.key, now=now,
                                             rule=rule_row)
            summary["created" if created else "existing"] += 1
        except ConfigurationGapError as e:
            summary["not_configured"].append({
                "service_key": service_key, "entity_id": entity_id, "missing": e.kind,
            })
            logger.info("Not schedulable yet: %s", e,
                        extra={"service_key": service_key, "entity_id": entity_id,
                               "event_type": "not_configured"})
        except ValidationError as e:
            summary["errors"].append({
                "service_key": service_key, "entity_id": entity_id, "error": str(e),
            })
            logger.warning("Materialization failed for %s/%s: %s", service_key, entity_id, e,
                           extra={"service_key": service_key, "entity_id": entity_id})

    logger.info(
        "Materialization tick for %s: %d created, %d existing, %d not configured",
        as_of, summary["created"], summary["existing"], len(summary["not_configured"]),
        extra={"event_type": "materialization_tick"},
    )
    return summary

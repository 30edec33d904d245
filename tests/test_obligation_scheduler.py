"""
Tests — Obligation Scheduler.

Covers:
    1. compute_schedule (pure): due dates, reminders, SLA deadline
    2. schedule_obligation: materialization, idempotence, configuration gaps
    3. materialize_due_obligations: the scheduler tick
    4. preview_due_date
"""

from datetime import date, datetime, timezone

import pytest

from compliance_engine.core.exceptions import (
    NoPublishedTemplateError,
    NoRuleFoundError,
    NotFoundError,
    ValidationError,
)
from compliance_engine.models import db
from compliance_engine.models.obligation import ObligationInstance, Reminder
from compliance_engine.services import obligation_scheduler, rule_store, workflow_registry
from compliance_engine.services.obligation_scheduler import compute_schedule
from compliance_engine.services.periods import parse_period_key
from compliance_engine.services.rule_schema import parse_rule_payload

UTC = timezone.utc
EARLY = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)

GST_RULE = {
    "periodicity": "MONTHLY",
    "dueDayOfMonth": 20,
    "nudges": {"tMinus": [7, 3, 1], "fixedDays": [1, 2]},
}


def _schedule(rule_payload, period_key, now=EARLY, **kwargs):
    rule = parse_rule_payload(rule_payload)
    period = parse_period_key(period_key, rule.periodicity)
    return compute_schedule(rule, period, now=now, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
#  compute_schedule
# ═══════════════════════════════════════════════════════════════════════════

class TestComputeSchedule:

    def test_monthly_due_date_and_reminders(self):
        schedule = _schedule(GST_RULE, "2025-02")
        assert schedule.due_date == date(2025, 2, 20)
        assert schedule.reminder_dates == [
            date(2025, 2, 1), date(2025, 2, 2),
            date(2025, 2, 13), date(2025, 2, 17), date(2025, 2, 19),
        ]
        kinds = [r.kind for r in schedule.reminders]
        assert kinds == ["fixed_day", "fixed_day", "t_minus", "t_minus", "t_minus"]

    def test_reminders_fire_at_configured_hour(self):
        schedule = _schedule(GST_RULE, "2025-02", reminder_hour=6)
        assert schedule.reminders[0].fires_at == datetime(2025, 2, 1, 6, 0, tzinfo=UTC)

    def test_sla_deadline_end_of_due_day(self):
        schedule = _schedule(GST_RULE, "2025-02")
        assert schedule.sla_deadline == datetime(2025, 2, 20, 23, 59, 59, tzinfo=UTC)

    def test_sla_buffer_days(self):
        schedule = _schedule(GST_RULE, "2025-02", sla_buffer_days=2)
        assert schedule.sla_deadline == datetime(2025, 2, 18, 23, 59, 59, tzinfo=UTC)
        assert schedule.due_date == date(2025, 2, 20)

    def test_past_reminders_dropped(self):
        schedule = _schedule(GST_RULE, "2025-02", now=datetime(2025, 2, 14, 12, 0, tzinfo=UTC))
        assert schedule.reminder_dates == [date(2025, 2, 17), date(2025, 2, 19)]

    def test_reminder_later_today_is_kept(self):
        schedule = _schedule(GST_RULE, "2025-02", now=datetime(2025, 2, 13, 8, 0, tzinfo=UTC))
        assert schedule.reminders[0].fires_at == datetime(2025, 2, 13, 9, 0, tzinfo=UTC)

    def test_reminder_earlier_today_is_dropped(self):
        now = datetime(2025, 2, 13, 18, 0, tzinfo=UTC)
        schedule = _schedule(GST_RULE, "2025-02", now=now)
        assert schedule.reminder_dates == [date(2025, 2, 17), date(2025, 2, 19)]
        assert all(r.fires_at >= now for r in schedule.reminders)

    def test_all_reminders_past(self):
        schedule = _schedule(GST_RULE, "2025-02", now=datetime(2025, 3, 1, tzinfo=UTC))
        assert schedule.reminders == []
        assert schedule.due_date == date(2025, 2, 20)

    def test_coinciding_reminders_collapse(self):
        schedule = _schedule({"periodicity": "MONTHLY", "dueDayOfMonth": 20,
                              "nudges": {"tMinus": [19], "fixedDays": [1]}}, "2025-02")
        assert schedule.reminder_dates == [date(2025, 2, 1)]

    def test_fixed_day_clamped_to_month_end(self):
        schedule = _schedule({"periodicity": "MONTHLY", "dueDayOfMonth": 28,
                              "nudges": {"fixedDays": [31]}}, "2025-02")
        assert schedule.reminder_dates == [date(2025, 2, 28)]

    def test_quarterly_due_in_last_month(self):
        schedule = _schedule({"periodicity": "QUARTERLY", "dueDayOfMonth": 28,
                              "nudges": {"tMinus": [10], "fixedDays": [1]}}, "2025-Q1")
        assert schedule.due_date == date(2025, 3, 28)
        assert schedule.reminder_dates == [date(2025, 3, 1), date(2025, 3, 18)]

    def test_annual_due_in_december(self):
        schedule = _schedule({"periodicity": "ANNUAL", "dueDayOfMonth": 28,
                              "nudges": {"tMinus": [30]}}, "2025")
        assert schedule.due_date == date(2025, 12, 28)
        assert schedule.reminder_dates == [date(2025, 11, 28)]

    def test_one_time_due_in_days(self):
        schedule = _schedule({"periodicity": "ONE_TIME", "dueInDays": 14}, "2025-03-10")
        assert schedule.due_date == date(2025, 3, 24)

    def test_one_time_due_day_of_start_month(self):
        schedule = _schedule({"periodicity": "ONE_TIME", "dueDayOfMonth": 25}, "2025-03-10")
        assert schedule.due_date == date(2025, 3, 25)

    def test_period_shape_must_match_rule(self):
        rule = parse_rule_payload(GST_RULE)
        period = parse_period_key("2025-Q1", "QUARTERLY")
        with pytest.raises(ValidationError):
            compute_schedule(rule, period, now=EARLY)

    def test_to_dict(self):
        data = _schedule(GST_RULE, "2025-02").to_dict()
        assert data["period_key"] == "2025-02"
        assert data["due_date"] == "2025-02-20"
        assert data["reminders"][0] == {"fires_at": "2025-02-01T09:00:00+00:00",
                                        "kind": "fixed_day"}


# ═══════════════════════════════════════════════════════════════════════════
#  schedule_obligation
# ═══════════════════════════════════════════════════════════════════════════

class TestScheduleObligation:

    def test_materializes_instance(self, make_service, entity):
        make_service()
        instance, created = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY, actor_id="ops1",
        )
        assert created is True
        assert instance.status == "scheduled"
        assert instance.due_date == date(2025, 2, 20)
        assert instance.period_start == date(2025, 2, 1)
        assert instance.period_end == date(2025, 2, 28)
        assert instance.periodicity == "MONTHLY"
        assert instance.jurisdiction == "IN"
        assert instance.current_step_key == "prepare"
        assert instance.completed_steps == []
        assert instance.rule_id is not None
        assert instance.template.version == 1
        assert len(instance.reminder_dates) == 5

        reminders = Reminder.query.filter_by(instance_id=instance.id).order_by(Reminder.fires_at).all()
        assert len(reminders) == 5
        assert all(r.status == "pending" and r.channel == "email" for r in reminders)
        assert [t.to_status for t in instance.transitions] == ["scheduled"]

    def test_idempotent(self, make_service, entity):
        make_service()
        first, created_first = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY)
        second, created_second = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY)
        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert ObligationInstance.query.count() == 1
        assert Reminder.query.count() == 5

    def test_lost_race_returns_winner(self, make_service, entity, monkeypatch):
        make_service()
        winner, _ = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY)

        # The unlocked pre-check misses the row; the check under the lock finds it
        real_find = obligation_scheduler._find_instance
        calls = []

        def _stale_then_real(*args):
            calls.append(args)
            return None if len(calls) == 1 else real_find(*args)

        monkeypatch.setattr(obligation_scheduler, "_find_instance", _stale_then_real)
        instance, created = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY)

        assert created is False
        assert instance.id == winner.id
        assert len(calls) == 2
        assert ObligationInstance.query.count() == 1

    def test_period_shape_mismatch(self, make_service, entity):
        make_service()
        with pytest.raises(ValidationError):
            obligation_scheduler.schedule_obligation("gst_returns", entity.id, "2025-Q1", now=EARLY)
        assert ObligationInstance.query.count() == 0

    def test_no_rule_for_period(self, make_service, entity):
        make_service()
        with pytest.raises(NoRuleFoundError):
            obligation_scheduler.schedule_obligation("gst_returns", entity.id, "2024-12", now=EARLY)

    def test_unpublished_template(self, make_service, entity):
        make_service(publish=False)
        with pytest.raises(NoPublishedTemplateError):
            obligation_scheduler.schedule_obligation("gst_returns", entity.id, "2025-02", now=EARLY)

    def test_unknown_entity(self, make_service):
        make_service()
        with pytest.raises(NotFoundError):
            obligation_scheduler.schedule_obligation("gst_returns", 404, "2025-02", now=EARLY)

    def test_binding_jurisdiction_overrides_entity(self, make_service, entity):
        make_service()
        rule_store.bind_entity_service(entity.id, "gst_returns", "AE")
        with pytest.raises(NoRuleFoundError) as exc:
            obligation_scheduler.schedule_obligation("gst_returns", entity.id, "2025-02", now=EARLY)
        assert exc.value.jurisdiction == "AE"

    def test_rule_change_leaves_existing_instances(self, make_service, entity):
        make_service()
        february, _ = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY)
        new_rule = rule_store.add_rule("gst_returns", "IN", dict(GST_RULE, dueDayOfMonth=25),
                                       "2025-03-01")
        march, _ = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-03", now=EARLY)

        db.session.refresh(february)
        assert february.due_date == date(2025, 2, 20)
        assert march.due_date == date(2025, 3, 25)
        assert march.rule_id == new_rule.id
        assert february.rule_id != new_rule.id

    def test_stored_reminders_never_precede_scheduling(self, make_service, entity):
        make_service()
        now = datetime(2025, 2, 13, 18, 0, tzinfo=UTC)
        instance, _ = obligation_scheduler.schedule_obligation("gst_returns", entity.id,
                                                              "2025-02", now=now)
        stored = [r.fires_at.replace(tzinfo=UTC) for r in
                  Reminder.query.filter_by(instance_id=instance.id).order_by(Reminder.fires_at)]
        assert stored == [datetime(2025, 2, 17, 9, 0, tzinfo=UTC),
                          datetime(2025, 2, 19, 9, 0, tzinfo=UTC)]

    def test_rule_periodicity_overrides_service(self, monthly_service_quarterly_rule, entity):
        instance, created = obligation_scheduler.schedule_obligation(
            "tds_quarterly", entity.id, "2025-Q1", now=EARLY)
        assert created is True
        assert instance.periodicity == "QUARTERLY"
        assert instance.period_end == date(2025, 3, 31)
        assert instance.due_date == date(2025, 3, 28)

        with pytest.raises(ValidationError):
            obligation_scheduler.schedule_obligation("tds_quarterly", entity.id, "2025-02",
                                                     now=EARLY)


# ═══════════════════════════════════════════════════════════════════════════
#  materialize_due_obligations
# ═══════════════════════════════════════════════════════════════════════════

class TestMaterializeTick:

    def test_creates_current_period_once(self, make_service, entity):
        make_service()
        rule_store.bind_entity_service(entity.id, "gst_returns")

        summary = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 2, 5), now=EARLY)
        assert summary["created"] == 1
        assert summary["not_configured"] == []
        instance = ObligationInstance.query.one()
        assert instance.period_key == "2025-02"

        again = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 2, 25), now=EARLY)
        assert again["created"] == 0
        assert again["existing"] == 1

    def test_collects_configuration_gaps(self, make_service, entity):
        make_service()
        make_service("accounting_monthly", publish=False)
        make_service("pf_esi_monthly", rule=None)
        for key in ("gst_returns", "accounting_monthly", "pf_esi_monthly"):
            rule_store.bind_entity_service(entity.id, key)

        summary = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 2, 5), now=EARLY)
        assert summary["created"] == 1
        gaps = {g["service_key"]: g["missing"] for g in summary["not_configured"]}
        assert gaps == {"accounting_monthly": "workflow_template",
                        "pf_esi_monthly": "due_date_rule"}

    def test_one_time_materializes_once_per_entity(self, make_service, entity):
        make_service("company_incorporation", rule={"periodicity": "ONE_TIME", "dueInDays": 30})
        rule_store.bind_entity_service(entity.id, "company_incorporation")

        first = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 3, 10), now=EARLY)
        second = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 3, 11), now=EARLY)
        assert first["created"] == 1
        assert second["created"] == 0
        instance = ObligationInstance.query.one()
        assert instance.period_key == "2025-03-10"
        assert instance.due_date == date(2025, 4, 9)

    def test_periodicity_change_mid_quarter(self, make_service, entity):
        make_service()
        quarterly = rule_store.add_rule("gst_returns", "IN",
                                        {"periodicity": "QUARTERLY", "dueDayOfMonth": 20},
                                        "2025-02-01")
        rule_store.bind_entity_service(entity.id, "gst_returns")

        summary = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 2, 10), now=EARLY)
        assert summary["errors"] == []
        assert summary["created"] == 1
        instance = ObligationInstance.query.one()
        assert instance.period_key == "2025-Q1"
        assert instance.periodicity == "QUARTERLY"
        assert instance.due_date == date(2025, 3, 20)
        assert instance.rule_id == quarterly.id

        again = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 3, 15), now=EARLY)
        assert again["errors"] == []
        assert again["existing"] == 1

    def test_rule_periodicity_overrides_service(self, monthly_service_quarterly_rule, entity):
        rule_store.bind_entity_service(entity.id, "tds_quarterly")

        summary = obligation_scheduler.materialize_due_obligations(as_of=date(2025, 2, 5), now=EARLY)
        assert summary["created"] == 1
        instance = ObligationInstance.query.one()
        assert instance.period_key == "2025-Q1"
        assert instance.due_date == date(2025, 3, 28)


@pytest.fixture()
def monthly_service_quarterly_rule():
    """Service still declared MONTHLY while its rule has moved to QUARTERLY."""
    rule_store.create_service({"service_key": "tds_quarterly", "name": "TDS Return",
                               "periodicity": "MONTHLY", "category": "Tax"})
    rule_store.add_rule("tds_quarterly", "IN", {"periodicity": "QUARTERLY", "dueDayOfMonth": 28},
                        "2025-01-01")
    steps = [{"stepKey": "file", "name": "File return"}]
    template = workflow_registry.create_version("tds_quarterly", steps, author="tests")
    workflow_registry.publish("tds_quarterly", template.version, "admin")
    return "tds_quarterly"


# ═══════════════════════════════════════════════════════════════════════════
#  preview_due_date
# ═══════════════════════════════════════════════════════════════════════════

class TestPreview:

    def test_preview_draft_rule(self):
        preview = obligation_scheduler.preview_due_date("2025-02", payload=GST_RULE, now=EARLY)
        assert preview["due_date"] == "2025-02-20"
        assert preview["rule_id"] is None
        assert [r["fires_at"][:10] for r in preview["reminders"]] == [
            "2025-02-01", "2025-02-02", "2025-02-13", "2025-02-17", "2025-02-19",
        ]

    def test_preview_stored_rule(self, make_service):
        make_service()
        rule = rule_store.resolve_active_rule("gst_returns", "IN", "2025-02-01")
        preview = obligation_scheduler.preview_due_date("2025-02", service_key="gst_returns",
                                                        jurisdiction="IN", now=EARLY)
        assert preview["rule_id"] == rule.id
        assert preview["rule"] == GST_RULE

    def test_preview_persists_nothing(self, make_service):
        make_service()
        obligation_scheduler.preview_due_date("2025-02", service_key="gst_returns", now=EARLY)
        assert ObligationInstance.query.count() == 0

    def test_preview_requires_rule_or_service(self):
        with pytest.raises(ValidationError):
            obligation_scheduler.preview_due_date("2025-02")

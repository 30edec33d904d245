"""
Tests — Scheduler Service & engine jobs.

Covers:
    1. Job registry and DB records
    2. run_job: success, failure bookkeeping, unknown jobs
    3. run_due_jobs / toggle_job
    4. run-tick CLI command
"""

from datetime import datetime, timedelta, timezone

import pytest

from compliance_engine.models import db
from compliance_engine.models.obligation import ObligationInstance
from compliance_engine.models.scheduling import ScheduledJob
from compliance_engine.services import rule_store
from compliance_engine.services.scheduler_service import (
    SchedulerService,
    _job_registry,
    get_registered_jobs,
)

ENGINE_JOBS = {"obligation_materializer", "reminder_dispatch", "sla_watch"}


def _job(name):
    db.session.expire_all()
    return ScheduledJob.query.filter_by(job_name=name).one()


@pytest.fixture()
def failing_job(monkeypatch):
    def _boom(app):
        """Always fails."""
        raise RuntimeError("upstream unavailable")

    monkeypatch.setitem(_job_registry, "boom", _boom)
    return "boom"


class TestRegistry:

    def test_engine_jobs_registered(self, app):
        assert ENGINE_JOBS <= set(get_registered_jobs())
        assert app.extensions["scheduler"] is SchedulerService

    def test_ensure_jobs_registered_is_idempotent(self, app):
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == len(ENGINE_JOBS)
        assert SchedulerService.ensure_jobs_registered() == []

        job = _job("reminder_dispatch")
        assert job.interval_seconds == app.config["SCHEDULER_INTERVAL_SECONDS"]
        assert job.description == "Fire pending reminders whose fires_at has passed."
        assert job.is_enabled is True

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        jobs = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert set(jobs) == ENGINE_JOBS
        assert all(j["db_record"]["run_count"] == 0 for j in jobs.values())


class TestRunJob:

    def test_materializer_job(self, make_service, entity):
        make_service()
        rule_store.bind_entity_service(entity.id, "gst_returns")
        SchedulerService.ensure_jobs_registered()

        outcome = SchedulerService.run_job("obligation_materializer")
        assert outcome["status"] == "success"
        assert outcome["result"] == {"created": 1, "existing": 0, "not_configured": 0,
                                     "errors": 0}

        job = _job("obligation_materializer")
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert job.last_run_result["created"] == 1
        assert ObligationInstance.query.count() == 1

    def test_unknown_job(self):
        outcome = SchedulerService.run_job("nope")
        assert outcome["status"] == "error"
        assert "Unknown job" in outcome["error"]

    def test_failure_is_recorded(self, failing_job):
        SchedulerService.ensure_jobs_registered()
        outcome = SchedulerService.run_job(failing_job)
        assert outcome["status"] == "failed"
        assert outcome["error"] == "upstream unavailable"

        job = _job(failing_job)
        assert job.error_count == 1
        assert job.last_error == "upstream unavailable"
        assert job.last_run_status == "failed"

    def test_failure_without_record(self, failing_job):
        outcome = SchedulerService.run_job(failing_job)
        assert outcome["status"] == "failed"


class TestDueJobs:

    def test_runs_every_job_once_per_interval(self):
        SchedulerService.ensure_jobs_registered()
        first = SchedulerService.run_due_jobs()
        assert {r["job_name"] for r in first} == ENGINE_JOBS
        assert all(r["status"] == "success" for r in first)

        assert SchedulerService.run_due_jobs() == []
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert len(SchedulerService.run_due_jobs(now=later)) == len(ENGINE_JOBS)

    def test_paused_job_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        paused = SchedulerService.toggle_job("sla_watch", False)
        assert paused["status"] == "paused"
        assert paused["is_enabled"] is False

        ran = {r["job_name"] for r in SchedulerService.run_due_jobs()}
        assert ran == ENGINE_JOBS - {"sla_watch"}

        resumed = SchedulerService.toggle_job("sla_watch", True)
        assert resumed["status"] == "active"

    def test_toggle_unknown_job(self):
        assert SchedulerService.toggle_job("nope", True) is None
        assert SchedulerService.get_job_status("nope") is None


class TestRunTickCommand:

    def test_run_tick(self, app, make_service, entity):
        make_service()
        rule_store.bind_entity_service(entity.id, "gst_returns")

        result = app.test_cli_runner().invoke(args=["run-tick"])
        assert result.exit_code == 0
        db.session.expire_all()
        assert ObligationInstance.query.count() == 1
        assert _job("sla_watch").run_count == 1

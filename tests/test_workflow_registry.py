"""
Tests — Workflow Template Registry: versioning, validation and publishing.
"""

import contextlib
import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from compliance_engine import create_app
from compliance_engine.config import TestingConfig
from compliance_engine.core.exceptions import (
    ConflictError,
    NoPublishedTemplateError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from compliance_engine.models import db
from compliance_engine.models.workflow import WorkflowPublication
from compliance_engine.services import obligation_scheduler, rule_store, workflow_registry

EARLY = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)

STEPS = [
    {"stepKey": "collect", "name": "Collect registers", "estimatedDays": 3},
    {"stepKey": "reconcile", "name": "Reconcile", "assigneeRole": "ops_executive"},
    {"stepKey": "file", "name": "File return", "qaRequired": True,
     "deliverables": ["gstr3b_ack"]},
]


def _service(key="gst_returns"):
    rule_store.create_service({"service_key": key, "name": "GST Returns",
                               "periodicity": "MONTHLY"})
    return key


def _published_versions(service_key):
    return [t.version for t in workflow_registry.list_versions(service_key) if t.is_published]


# ═══════════════════════════════════════════════════════════════════════════
#  Versions
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateVersion:

    def test_versions_are_numbered_and_unpublished(self):
        _service()
        versions = [workflow_registry.create_version("gst_returns", STEPS, author="admin1")
                    for _ in range(3)]
        assert [t.version for t in versions] == [1, 2, 3]
        assert not any(t.is_published for t in versions)
        assert versions[0].author == "admin1"
        assert versions[0].step_keys == ["collect", "reconcile", "file"]

    def test_versions_are_per_service(self):
        _service()
        _service("tds_quarterly")
        workflow_registry.create_version("gst_returns", STEPS)
        workflow_registry.create_version("gst_returns", STEPS)
        assert workflow_registry.create_version("tds_quarterly", STEPS).version == 1

    def test_steps_are_normalized(self):
        _service()
        template = workflow_registry.create_version("gst_returns", STEPS)
        first, _, last = template.steps_json
        assert first["qaRequired"] is False
        assert first["deliverables"] == []
        assert first["description"] == ""
        assert last["qaRequired"] is True
        assert last["deliverables"] == ["gstr3b_ack"]

    def test_envelope_payload_with_sla_policy(self):
        _service()
        template = workflow_registry.create_version(
            "gst_returns", {"steps": STEPS, "slaPolicy": {"totalDays": 10}})
        assert template.sla_policy == {"totalDays": 10}
        assert len(template.steps_json) == 3

    @pytest.mark.parametrize("payload", [[], None, {"steps": []}, "collect"])
    def test_empty_steps_rejected(self, payload):
        _service()
        with pytest.raises(ValidationError):
            workflow_registry.create_version("gst_returns", payload)

    def test_step_errors_reported_per_field(self):
        _service()
        with pytest.raises(ValidationError) as exc:
            workflow_registry.create_version("gst_returns", [
                {"stepKey": "collect", "name": "Collect"},
                {"stepKey": "collect", "name": "Again"},
                {"stepKey": "Bad Key", "name": "Bad"},
                {"stepKey": "review", "name": ""},
                {"stepKey": "file", "name": "File", "estimatedDays": -1},
            ])
        details = exc.value.details
        assert set(details) == {"steps[1].stepKey", "steps[2].stepKey", "steps[3].name",
                                "steps[4].estimatedDays"}
        assert workflow_registry.list_versions("gst_returns") == []

    def test_unknown_service(self):
        with pytest.raises(NotFoundError):
            workflow_registry.create_version("nope", STEPS)

    def test_get_missing_version(self):
        _service()
        with pytest.raises(NotFoundError):
            workflow_registry.get_version("gst_returns", 7)


# ═══════════════════════════════════════════════════════════════════════════
#  Publishing
# ═══════════════════════════════════════════════════════════════════════════

class TestPublish:

    def test_only_admin_publishes(self):
        _service()
        workflow_registry.create_version("gst_returns", STEPS)
        for role in ("viewer", "ops_manager", "qc_reviewer", None):
            with pytest.raises(PermissionDenied):
                workflow_registry.publish("gst_returns", 1, role)
        assert workflow_registry.has_published("gst_returns") is False

    def test_publish_moves_the_single_pointer(self):
        _service()
        for _ in range(3):
            workflow_registry.create_version("gst_returns", STEPS)

        workflow_registry.publish("gst_returns", 2, "admin", actor_id="admin1")
        assert _published_versions("gst_returns") == [2]
        assert workflow_registry.resolve_published("gst_returns").version == 2

        workflow_registry.publish("gst_returns", 3, "admin")
        assert _published_versions("gst_returns") == [3]

        pointer = db.session.get(WorkflowPublication, "gst_returns")
        assert pointer.published_version == 3
        assert pointer.revision == 2

    def test_republish_earlier_version(self):
        _service()
        workflow_registry.create_version("gst_returns", STEPS)
        workflow_registry.create_version("gst_returns", STEPS)
        workflow_registry.publish("gst_returns", 2, "admin")
        workflow_registry.publish("gst_returns", 1, "admin")
        assert _published_versions("gst_returns") == [1]
        assert workflow_registry.get_version("gst_returns", 1).published_at is not None

    def test_publish_missing_version(self):
        _service()
        with pytest.raises(NotFoundError):
            workflow_registry.publish("gst_returns", 1, "admin")

    def test_nothing_published(self):
        _service()
        workflow_registry.create_version("gst_returns", STEPS)
        with pytest.raises(NoPublishedTemplateError) as exc:
            workflow_registry.resolve_published("gst_returns")
        assert exc.value.kind == "workflow_template"

    def test_lost_compare_and_set_is_retried(self, monkeypatch):
        _service()
        workflow_registry.create_version("gst_returns", STEPS)
        real_ensure = workflow_registry._ensure_pointer
        calls = []

        def _pointer_moves_once(service_key):
            pointer = real_ensure(service_key)
            calls.append(pointer.revision)
            if len(calls) == 1:
                # A concurrent writer bumps the revision after we read it
                db.session.execute(
                    update(WorkflowPublication)
                    .where(WorkflowPublication.service_key == service_key)
                    .values(revision=WorkflowPublication.revision + 1)
                    .execution_options(synchronize_session=False)
                )
            return pointer

        monkeypatch.setattr(workflow_registry, "_ensure_pointer", _pointer_moves_once)
        template = workflow_registry.publish("gst_returns", 1, "admin")

        assert template.version == 1
        assert len(calls) == 2
        assert _published_versions("gst_returns") == [1]

    def test_gives_up_when_pointer_keeps_moving(self, monkeypatch):
        _service()
        workflow_registry.create_version("gst_returns", STEPS)
        attempts = []

        def _always_lose(service_key, version, actor_id):
            attempts.append(version)
            return None

        monkeypatch.setattr(workflow_registry, "_publish_once", _always_lose)
        with pytest.raises(ConflictError):
            workflow_registry.publish("gst_returns", 1, "admin")
        assert len(attempts) == workflow_registry.MAX_PUBLISH_ATTEMPTS


# ═══════════════════════════════════════════════════════════════════════════
#  Concurrent publishing (SQLite file, one connection per thread)
# ═══════════════════════════════════════════════════════════════════════════

class TestConcurrentPublish:

    VERSIONS = (1, 2, 3, 4)

    @pytest.fixture()
    def file_app(self, monkeypatch, tmp_path):
        monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI",
                            f"sqlite:///{tmp_path / 'publish.db'}")
        application = create_app("testing")
        with application.app_context():
            _service()
            for _ in self.VERSIONS:
                workflow_registry.create_version("gst_returns", STEPS)
        yield application
        with application.app_context():
            db.engine.dispose()

    def _publish_from_threads(self, app):
        barrier = threading.Barrier(len(self.VERSIONS))
        failures = []

        def _publish(version):
            with app.app_context():
                barrier.wait(5)
                try:
                    workflow_registry.publish("gst_returns", version, "admin",
                                              actor_id=f"admin{version}")
                except Exception as exc:
                    failures.append(exc)

        threads = [threading.Thread(target=_publish, args=(v,)) for v in self.VERSIONS]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        assert failures == []

        with app.app_context():
            published = _published_versions("gst_returns")
            pointer = db.session.get(WorkflowPublication, "gst_returns")
            assert len(published) == 1
            assert pointer.published_version == published[0]
            assert pointer.revision == len(self.VERSIONS)
            assert workflow_registry.resolve_published("gst_returns").version == published[0]

    def test_single_published_version(self, file_app):
        self._publish_from_threads(file_app)

    def test_single_published_version_across_processes(self, file_app, monkeypatch):
        # Without the in-process lock only the revision compare-and-set orders writers
        monkeypatch.setattr(workflow_registry, "keyed_lock",
                            lambda *key: contextlib.nullcontext())
        self._publish_from_threads(file_app)


class TestPublishedTemplateBinding:

    def test_existing_instance_keeps_its_version(self, make_service, entity):
        make_service()
        february, _ = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-02", now=EARLY)
        v1_id = february.template_id

        workflow_registry.create_version("gst_returns", STEPS)
        workflow_registry.publish("gst_returns", 2, "admin")
        march, _ = obligation_scheduler.schedule_obligation(
            "gst_returns", entity.id, "2025-03", now=EARLY)

        db.session.refresh(february)
        assert february.template_id == v1_id
        assert february.current_step_key == "prepare"
        assert march.template.version == 2
        assert march.current_step_key == "collect"

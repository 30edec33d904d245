"""
Shared pytest fixtures for the Compliance Obligation & Review Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - dispatcher: the in-memory notification dispatcher of the current test
    - make_service: builds a service with rule, doc types and published workflow
    - entity: a pre-created ComplianceEntity (jurisdiction IN)
"""

from datetime import datetime, timezone

import pytest

from compliance_engine import create_app
from compliance_engine.integrations.notification_dispatcher import LoggingNotificationDispatcher
from compliance_engine.models import db as _db
from compliance_engine.services import rule_store, workflow_registry

GST_RULE = {
    "periodicity": "MONTHLY",
    "dueDayOfMonth": 20,
    "nudges": {"tMinus": [7, 3, 1], "fixedDays": [1, 2]},
}

DEFAULT_STEPS = [
    {"stepKey": "prepare", "name": "Prepare working papers", "estimatedDays": 2},
    {"stepKey": "file", "name": "File return", "estimatedDays": 1, "qaRequired": True},
]

# A clock well before every reminder of the 2025-02 period
EARLY = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: fresh dispatcher, open app context, rollback and recreate tables after."""
    app.extensions["notification_dispatcher"] = LoggingNotificationDispatcher()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def dispatcher(app):
    return app.extensions["notification_dispatcher"]


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_service():
    """Factory: service + doc types + rule (IN, effective 2025-01-01) + published v1."""

    def _make(service_key="gst_returns", *, rule=GST_RULE, doc_types=(),
              steps=DEFAULT_STEPS, publish=True, effective_from="2025-01-01"):
        periodicity = (rule or {}).get("periodicity", "MONTHLY")
        rule_store.create_service({
            "service_key": service_key,
            "name": service_key.replace("_", " ").title(),
            "periodicity": periodicity,
            "category": "Tax",
        })
        for doc in doc_types:
            rule_store.add_doc_type(service_key, doc)
        if rule is not None:
            rule_store.add_rule(service_key, "IN", rule, effective_from, created_by="tests")
        if steps is not None:
            template = workflow_registry.create_version(service_key, steps, author="tests")
            if publish:
                workflow_registry.publish(service_key, template.version, "admin",
                                          actor_id="tests")
        return service_key

    return _make


@pytest.fixture()
def entity():
    return rule_store.create_entity({"name": "Acme Traders Pvt Ltd", "jurisdiction": "IN"})

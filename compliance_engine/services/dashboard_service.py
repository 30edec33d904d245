"""
Operations Dashboard Metrics Service

Aggregates engine metrics for the operations dashboard:
  - Obligations per status, SLA breaches
  - Review SLA compliance, average review time and quality score
  - Configuration coverage and gaps (services missing a rule or a
    published workflow template)
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func

from compliance_engine.models import db
from compliance_engine.models.catalog import EntityServiceBinding, ServiceDefinition
from compliance_engine.models.obligation import OBLIGATION_STATUSES, ObligationInstance
from compliance_engine.models.review import QualityReview
from compliance_engine.models.rules import DueDateRule
from compliance_engine.models.workflow import WorkflowPublication
from compliance_engine.services.obligation_tracker import build_instance_query

logger = logging.getLogger(__name__)


def get_status_counts():
    """Obligation count per status; every status is present."""
    counts = {status: 0 for status in OBLIGATION_STATUSES}
    rows = (
        db.session.query(ObligationInstance.status, func.count(ObligationInstance.id))
        .group_by(ObligationInstance.status)
        .all()
    )
    for status, count in rows:
        counts[status] = count
    return counts


def get_review_metrics():
    """SLA compliance %, average review minutes and average quality score of completed reviews."""
    reviews = QualityReview.query.filter(QualityReview.status == "completed").all()
    total = len(reviews)
    compliant = sum(1 for r in reviews if r.within_sla is not False)

    minutes = [r.review_minutes for r in reviews if r.review_minutes is not None]
    scores = [r.quality_score for r in reviews if r.quality_score is not None]

    return {
        "completed_reviews": total,
        "sla_compliance": round(compliant / total * 100) if total else 100,
        "avg_review_minutes": round(sum(minutes) / len(minutes)) if minutes else 0,
        "avg_quality_score": round(sum(scores) / len(scores)) if scores else 0,
        "pending_reviews": QualityReview.query.filter(
            QualityReview.status.in_(("pending", "in_progress"))
        ).count(),
    }


def get_configuration_stats():
    return {
        "total_services": ServiceDefinition.query.filter_by(is_active=True).count(),
        "published_templates": WorkflowPublication.query.filter(
            WorkflowPublication.published_version.isnot(None)
        ).count(),
        "active_entity_bindings": EntityServiceBinding.query.filter_by(is_active=True).count(),
        "due_date_rules": DueDateRule.query.filter_by(is_active=True).count(),
    }


def configuration_gaps():
    """Active services that cannot be scheduled: no active rule or no published template."""
    rule_keys = {
        key for (key,) in db.session.query(DueDateRule.service_key)
        .filter(DueDateRule.is_active.is_(True)).distinct()
    }
    published_keys = {
        key for (key,) in db.session.query(WorkflowPublication.service_key)
        .filter(WorkflowPublication.published_version.isnot(None))
    }

    gaps = []
    for service in ServiceDefinition.query.filter_by(is_active=True).order_by(ServiceDefinition.service_key):
        missing = []
        if service.service_key not in rule_keys:
            missing.append("due_date_rule")
        if service.service_key not in published_keys:
            missing.append("workflow_template")
        if missing:
            gaps.append({
                "service_key": service.service_key,
                "name": service.name,
                "state": "not_configured",
                "missing": missing,
            })
    return gaps


def get_dashboard_stats(now=None):
    """Aggregate all dashboard metrics into a single response."""
    now = now or datetime.now(timezone.utc)
    by_status = get_status_counts()
    breached = build_instance_query({"sla_breached": True}, now=now).count()
    return {
        "total_obligations": sum(by_status.values()),
        "by_status": by_status,
        "sla_breached": breached,
        "reviews": get_review_metrics(),
        "configuration": get_configuration_stats(),
        "generated_at": now.isoformat(),
    }

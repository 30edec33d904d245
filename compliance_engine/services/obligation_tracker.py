"""
Compliance Obligation & Review Engine
Obligation Instance Tracker — lifecycle of one obligation.

State machine (models.obligation.OBLIGATION_TRANSITIONS):
    scheduled → in_progress → submitted_for_review
        → approved → closed (automatic once deliverables are in)
        → rejected | rework_required → in_progress, at most MAX_REWORK_COUNT
          times, then escalated
    escalated → in_progress | closed (administrator)

Concurrency:
    Every mutation runs under ``keyed_lock("obligation", id)`` and re-reads
    the row with ``SELECT ... FOR UPDATE`` (a no-op on SQLite), then commits
    once. Each status change appends an ObligationTransition row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from compliance_engine.core.exceptions import (
    IncompleteDocumentsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compliance_engine.integrations.document_store import get_document_store
from compliance_engine.models import db
from compliance_engine.models.catalog import DocType
from compliance_engine.models.obligation import (
    SLA_SETTLED_STATUSES,
    ObligationInstance,
    ObligationTransition,
    validate_obligation_transition,
)
from compliance_engine.services import notification_trigger, quality_review
from compliance_engine.services.locking import keyed_lock
from compliance_engine.services.permission import check_permission
from compliance_engine.services.store_retry import run_with_store_retry

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _load_for_update(instance_id: int) -> ObligationInstance:
    instance = db.session.execute(
        select(ObligationInstance)
        .where(ObligationInstance.id == instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if instance is None:
        raise NotFoundError(resource="ObligationInstance", resource_id=instance_id)
    return instance


def _transition(instance: ObligationInstance, to_status: str, *,
                actor_id: str | None = None, note: str | None = None) -> None:
    from_status = instance.status
    if not validate_obligation_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    instance.status = to_status
    db.session.add(ObligationTransition(
        instance_id=instance.id, from_status=from_status, to_status=to_status,
        actor_id=actor_id, note=note,
    ))
    logger.info(
        "Obligation %s: %s → %s", instance.id, from_status, to_status,
        extra={"instance_id": instance.id, "service_key": instance.service_key,
               "from_status": from_status, "to_status": to_status, "actor_id": actor_id,
               "event_type": "obligation_transition"},
    )


def _mutate(operation: str, instance_id: int, fn):
    """Run ``fn(instance)`` under the per-instance lock and commit once."""
    def _run():
        with keyed_lock("obligation", instance_id):
            instance = _load_for_update(instance_id)
            try:
                result = fn(instance)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            return result

    return run_with_store_retry(operation, _run)


def _doc_types(service_key: str) -> list[DocType]:
    return list(db.session.execute(
        select(DocType).where(DocType.service_key == service_key).order_by(DocType.id)
    ).scalars())


def missing_submission_documents(instance: ObligationInstance) -> list[str]:
    """Mandatory, non-deliverable doc codes still missing for submission.

    A doc type counts when it is unbound or bound to a step the obligation
    has already completed.
    """
    store = get_document_store()
    completed = set(instance.completed_steps or [])
    missing = []
    for doc_type in _doc_types(instance.service_key):
        if not doc_type.mandatory or doc_type.is_deliverable:
            continue
        if doc_type.step_key is not None and doc_type.step_key not in completed:
            continue
        if not store.has_document(instance.id, doc_type.doctype):
            missing.append(doc_type.doctype)
    return missing


def missing_deliverables(instance: ObligationInstance) -> list[str]:
    """Mandatory deliverable doc codes not yet recorded."""
    store = get_document_store()
    return [
        d.doctype for d in _doc_types(instance.service_key)
        if d.is_deliverable and d.mandatory and not store.has_document(instance.id, d.doctype)
    ]


def _close(instance: ObligationInstance, *, actor_id: str | None, note: str) -> None:
    now = datetime.now(timezone.utc)
    _transition(instance, "closed", actor_id=actor_id, note=note)
    instance.closed_at = now
    instance.archived_at = now


def _maybe_close(instance: ObligationInstance, actor_id: str | None = None) -> bool:
    """approved → closed once every mandatory deliverable is on file."""
    if instance.status != "approved":
        return False
    if missing_deliverables(instance):
        return False
    _close(instance, actor_id=actor_id, note="deliverables complete")
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_instance(instance_id: int) -> ObligationInstance:
    instance = db.session.get(ObligationInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="ObligationInstance", resource_id=instance_id)
    return instance


def build_instance_query(filters: dict | None = None, now: datetime | None = None):
    """Filtered ObligationInstance query (legacy Query API, for paginate_query).

    Filters: service_key, entity_id, status, period_key, sla_breached (bool),
    include_archived (bool, default False).
    """
    filters = filters or {}
    query = ObligationInstance.query
    if filters.get("service_key"):
        query = query.filter(ObligationInstance.service_key == filters["service_key"])
    if filters.get("entity_id") is not None:
        query = query.filter(ObligationInstance.entity_id == filters["entity_id"])
    if filters.get("status"):
        query = query.filter(ObligationInstance.status == filters["status"])
    if filters.get("period_key"):
        query = query.filter(ObligationInstance.period_key == filters["period_key"])
    if not filters.get("include_archived"):
        query = query.filter(ObligationInstance.archived_at.is_(None))
    breached = filters.get("sla_breached")
    if breached is not None:
        now = now or datetime.now(timezone.utc)
        breach_clause = (ObligationInstance.sla_deadline < now) & (
            ObligationInstance.status.notin_(tuple(SLA_SETTLED_STATUSES))
        )
        query = query.filter(breach_clause if breached else ~breach_clause)
    return query.order_by(ObligationInstance.due_date, ObligationInstance.id)


def list_instances(filters: dict | None = None) -> list[ObligationInstance]:
    return build_instance_query(filters).all()


def transition_history(instance_id: int) -> list[ObligationTransition]:
    get_instance(instance_id)
    return list(db.session.execute(
        select(ObligationTransition)
        .where(ObligationTransition.instance_id == instance_id)
        .order_by(ObligationTransition.id)
    ).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Work on the obligation
# ═════════════════════════════════════════════════════════════════════════════


def start_work(instance_id: int, *, actor_id: str | None, actor_role: str | None) -> ObligationInstance:
    """scheduled → in_progress; the starting user becomes the assignee if none is set."""
    check_permission("obligation_work", actor_role)

    def _start(instance):
        _transition(instance, "in_progress", actor_id=actor_id, note="work started")
        instance.started_at = datetime.now(timezone.utc)
        if not instance.assignee_id:
            instance.assignee_id = actor_id
        if instance.current_step_key is None and instance.template is not None:
            keys = instance.template.step_keys
            instance.current_step_key = keys[0] if keys else None
        return instance

    return _mutate("start_work", instance_id, _start)


def complete_step(instance_id: int, step_key: str, *, actor_id: str | None,
                  actor_role: str | None) -> ObligationInstance:
    """Mark the current workflow step done and advance to the next one.

    Raises:
        InvalidTransitionError: the obligation is not in progress.
        ValidationError: ``step_key`` is not the current step.
    """
    check_permission("obligation_work", actor_role)

    def _complete(instance):
        if instance.status != "in_progress":
            raise InvalidTransitionError(instance.status, f"complete step {step_key}")
        keys = instance.template.step_keys
        if step_key not in keys:
            raise ValidationError(f"Unknown workflow step '{step_key}'",
                                  details={"step_key": step_key, "steps": keys})
        if step_key != instance.current_step_key:
            raise ValidationError(
                f"Step '{step_key}' is not the current step",
                details={"step_key": step_key, "current_step_key": instance.current_step_key},
            )
        completed = list(instance.completed_steps or [])
        if step_key not in completed:
            completed.append(step_key)
        instance.completed_steps = completed
        remaining = [k for k in keys if k not in completed]
        instance.current_step_key = remaining[0] if remaining else None
        logger.info("Obligation %s completed step %s", instance.id, step_key,
                    extra={"instance_id": instance.id, "actor_id": actor_id})
        return instance

    return _mutate("complete_step", instance_id, _complete)


def record_document(instance_id: int, doctype: str, storage_ref: str, *,
                    verified: bool = False, actor_id: str | None = None) -> dict:
    """Register an uploaded document; closes an approved obligation once deliverables are in.

    Returns:
        {"document": {...}, "instance": {...}}
    """
    if not storage_ref:
        raise ValidationError("storage_ref is required", details={"storage_ref": "required"})

    def _record(instance):
        if instance.status == "closed":
            raise InvalidTransitionError(instance.status, "record document")
        known = {d.doctype for d in _doc_types(instance.service_key)}
        if doctype not in known:
            raise ValidationError(
                f"Document type '{doctype}' is not defined for {instance.service_key}",
                details={"doctype": doctype},
            )
        document = get_document_store().record(
            instance.id, doctype, storage_ref, verified=verified, uploaded_by=actor_id,
        )
        _maybe_close(instance, actor_id)
        return {"document": document, "instance": instance}

    result = _mutate("record_document", instance_id, _record)
    return {"document": result["document"], "instance": result["instance"].to_dict()}


def submit_for_review(instance_id: int, *, actor_id: str | None, actor_role: str | None):
    """in_progress → submitted_for_review and open a QualityReview.

    Returns:
        (instance, review)

    Raises:
        InvalidTransitionError: not in progress.
        IncompleteDocumentsError: mandatory documents missing.
    """
    check_permission("obligation_work", actor_role)

    def _submit(instance):
        if not validate_obligation_transition(instance.status, "submitted_for_review"):
            raise InvalidTransitionError(instance.status, "submitted_for_review")
        missing = missing_submission_documents(instance)
        if missing:
            logger.info("Submission blocked for obligation %s: missing %s", instance.id, missing,
                        extra={"instance_id": instance.id, "event_type": "submission_blocked"})
            raise IncompleteDocumentsError(missing)
        _transition(instance, "submitted_for_review", actor_id=actor_id)
        instance.submitted_at = datetime.now(timezone.utc)
        review = quality_review.open_review(instance)
        return instance, review

    return _mutate("submit_for_review", instance_id, _submit)


# ═════════════════════════════════════════════════════════════════════════════
# Review outcomes & escalation
# ═════════════════════════════════════════════════════════════════════════════


def apply_review_decision(instance: ObligationInstance, disposition: str, *,
                          quality_score: int | None, rework_instructions: str | None,
                          actor_id: str | None) -> bool:
    """Drive the obligation from a completed review. Caller holds the lock and commits.

    approved → approved (then closed when deliverables are in).
    rejected / rework_required → reopened to in_progress, or escalated once
    the obligation was already reopened MAX_REWORK_COUNT times.

    Returns:
        True when the obligation was escalated.
    """
    now = datetime.now(timezone.utc)
    instance.quality_score = quality_score
    _transition(instance, disposition, actor_id=actor_id, note=f"review: {disposition}")

    if disposition == "approved":
        instance.approved_at = now
        instance.rework_instructions = None
        _maybe_close(instance, actor_id)
        return False

    if rework_instructions:
        instance.rework_instructions = rework_instructions

    limit = current_app.config.get("MAX_REWORK_COUNT", 3)
    if instance.rework_count >= limit:
        _transition(instance, "escalated", actor_id=actor_id,
                    note=f"rework limit {limit} exceeded")
        instance.escalated_at = now
        logger.warning(
            "Obligation %s escalated after %d rework rounds", instance.id, instance.rework_count,
            extra={"instance_id": instance.id, "service_key": instance.service_key,
                   "event_type": "obligation_escalated"},
        )
        return True

    instance.rework_count += 1
    _transition(instance, "in_progress", actor_id=actor_id,
                note=f"reopened for rework ({instance.rework_count}/{limit})")
    return False


def resolve_escalation(instance_id: int, action: str, *, actor_id: str | None,
                       actor_role: str | None, note: str | None = None) -> ObligationInstance:
    """Manual intervention on an escalated obligation (administrators only).

    ``reopen`` returns it to in_progress with the rework count reset;
    ``close`` closes and archives it.
    """
    check_permission("escalation_resolve", actor_role)
    if action not in ("reopen", "close"):
        raise ValidationError("action must be 'reopen' or 'close'", details={"action": action})

    def _resolve(instance):
        if instance.status != "escalated":
            raise InvalidTransitionError(instance.status, action)
        if action == "reopen":
            _transition(instance, "in_progress", actor_id=actor_id,
                        note=note or "escalation resolved: reopened")
            instance.rework_count = 0
        else:
            _close(instance, actor_id=actor_id, note=note or "escalation resolved: closed")
        return instance

    return _mutate("resolve_escalation", instance_id, _resolve)


def report_sla_breaches(now: datetime | None = None) -> list[ObligationInstance]:
    """Open obligations whose SLA deadline has passed; notifies once per day each."""
    now = now or datetime.now(timezone.utc)
    breached = build_instance_query({"sla_breached": True}, now=now).all()
    for instance in breached:
        notification_trigger.notify_sla_breach(instance, now.date())
    if breached:
        logger.warning("%d obligations past their SLA deadline", len(breached),
                       extra={"event_type": "sla_breach"})
    return breached

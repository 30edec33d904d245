"""
Compliance Obligation & Review Engine
Quality Review Engine — weighted checklist scoring and review decisions.

Rules:
  - score = passed weight / total weight × 100, rounded half-up; an empty
    checklist or zero total weight scores 0
  - ``approved`` is refused while any mandatory item failed; ``rejected``
    and ``rework_required`` are always allowed (reviewer discretion)
  - On rework the reviewer's instructions are attached to the reopened
    obligation

``score`` and ``decide`` are pure. ``submit_review`` persists the review and
drives the obligation tracker in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select

from compliance_engine.core.exceptions import (
    ApprovalBlockedError,
    EscalationRequired,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compliance_engine.models import db
from compliance_engine.models.review import (
    CHECKLIST_ITEM_STATUSES,
    DEFAULT_APPROVAL_THRESHOLD,
    DEFAULT_CHECKLIST,
    DEFAULT_ESCALATION_THRESHOLD,
    DISPOSITIONS,
    QualityChecklistTemplate,
    QualityReview,
)
from compliance_engine.services import rule_store
from compliance_engine.services.locking import keyed_lock
from compliance_engine.services.permission import check_permission
from compliance_engine.services.store_retry import run_with_store_retry

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Pure scoring & decision
# ═════════════════════════════════════════════════════════════════════════════


def score(checklist) -> int:
    """Weighted pass percentage of a checklist, 0–100."""
    total = Decimal(0)
    passed = Decimal(0)
    for item in checklist or []:
        weight = Decimal(str(item.get("weight") or 0))
        total += weight
        if item.get("status") == "passed":
            passed += weight
    if total <= 0:
        return 0
    return int((passed / total * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def failed_mandatory_items(checklist) -> list[str]:
    return [
        str(item.get("id") or item.get("item"))
        for item in checklist or []
        if item.get("isMandatory") and item.get("status") == "failed"
    ]


def decide(checklist, requested_disposition: str) -> str:
    """Return the disposition to record.

    Raises:
        ValidationError: unknown disposition.
        ApprovalBlockedError: ``approved`` requested with a failed mandatory item.
    """
    if requested_disposition not in DISPOSITIONS:
        raise ValidationError(
            f"disposition must be one of {', '.join(DISPOSITIONS)}",
            details={"disposition": requested_disposition},
        )
    if requested_disposition == "approved":
        failed = failed_mandatory_items(checklist)
        if failed:
            raise ApprovalBlockedError(failed)
    return requested_disposition


def normalize_checklist(items) -> list[dict]:
    """Validate checklist items and fill defaults.

    Raises:
        ValidationError: per-item problems in ``details``.
    """
    if not isinstance(items, list):
        raise ValidationError("checklist must be a list", details={"checklist": "list required"})
    errors = {}
    seen = set()
    normalized = []
    for i, raw in enumerate(items):
        prefix = f"checklist[{i}]"
        if not isinstance(raw, dict):
            errors[prefix] = "item must be an object"
            continue
        item_id = str(raw.get("id") or "").strip()
        if not item_id or item_id in seen:
            errors[f"{prefix}.id"] = "id is required and must be unique"
            continue
        seen.add(item_id)
        status = raw.get("status", "pending")
        if status not in CHECKLIST_ITEM_STATUSES:
            errors[f"{prefix}.status"] = f"status must be one of {', '.join(CHECKLIST_ITEM_STATUSES)}"
        weight = raw.get("weight", 0)
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
            errors[f"{prefix}.weight"] = "weight must be a non-negative number"
        normalized.append({
            "id": item_id,
            "category": raw.get("category") or "General",
            "item": raw.get("item") or item_id,
            "status": status,
            "isMandatory": bool(raw.get("isMandatory", False)),
            "weight": weight,
            "notes": raw.get("notes"),
        })
    if errors:
        raise ValidationError("Invalid checklist", details=errors)
    return normalized


def merge_checklist(current: list[dict], updates) -> list[dict]:
    """Apply reviewer updates (matched by item id) onto the seeded checklist.

    Only ``status`` and ``notes`` may change; criteria, weights and the
    mandatory flag stay as seeded.
    """
    if not isinstance(updates, list):
        raise ValidationError("checklist must be a list", details={"checklist": "list required"})
    by_id = {item["id"]: dict(item) for item in current}
    unknown = []
    for update in updates:
        if not isinstance(update, dict) or update.get("id") not in by_id:
            unknown.append(update.get("id") if isinstance(update, dict) else update)
            continue
        item = by_id[update["id"]]
        if "status" in update:
            item["status"] = update["status"]
        if "notes" in update:
            item["notes"] = update["notes"]
    if unknown:
        raise ValidationError("Unknown checklist items", details={"unknown_items": unknown})
    return normalize_checklist([by_id[item["id"]] for item in current])


# ═════════════════════════════════════════════════════════════════════════════
# Checklist templates
# ═════════════════════════════════════════════════════════════════════════════


def get_checklist_template(service_key: str) -> dict:
    """The active checklist template of a service, or the built-in default."""
    template = db.session.execute(
        select(QualityChecklistTemplate)
        .where(QualityChecklistTemplate.service_key == service_key,
               QualityChecklistTemplate.is_active.is_(True))
        .order_by(QualityChecklistTemplate.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if template is None:
        return {
            "service_key": service_key,
            "items": [dict(item, status="pending") for item in DEFAULT_CHECKLIST],
            "approval_threshold": DEFAULT_APPROVAL_THRESHOLD,
            "escalation_threshold": DEFAULT_ESCALATION_THRESHOLD,
            "source": "default",
        }
    result = template.to_dict()
    result["source"] = "service"
    return result


def _threshold(data: dict, field: str, default: int, errors: dict) -> int:
    value = data.get(field, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
        errors[field] = f"{field} must be a number between 0 and 100"
        return default
    return int(value)


def set_checklist_template(service_key: str, data: dict, *, actor_role: str | None) -> QualityChecklistTemplate:
    """Replace the service's checklist template; earlier ones are deactivated."""
    check_permission("catalog_manage", actor_role)
    items = normalize_checklist(data.get("items"))
    if not items:
        raise ValidationError("items must not be empty", details={"items": "required"})
    for item in items:
        item["status"] = "pending"
    errors: dict = {}
    approval = _threshold(data, "approval_threshold", DEFAULT_APPROVAL_THRESHOLD, errors)
    # Display only; escalation follows MAX_REWORK_COUNT
    escalation = _threshold(data, "escalation_threshold", DEFAULT_ESCALATION_THRESHOLD, errors)
    if errors:
        raise ValidationError("Invalid checklist template", details=errors)

    def _set():
        rule_store.get_service(service_key)
        for old in db.session.execute(
            select(QualityChecklistTemplate).where(
                QualityChecklistTemplate.service_key == service_key,
                QualityChecklistTemplate.is_active.is_(True),
            )
        ).scalars():
            old.is_active = False
        template = QualityChecklistTemplate(
            service_key=service_key,
            items=items,
            approval_threshold=approval,
            escalation_threshold=escalation,
            is_active=True,
        )
        db.session.add(template)
        db.session.commit()
        return template

    return run_with_store_retry("set_checklist_template", _set)


# ═════════════════════════════════════════════════════════════════════════════
# Reviews
# ═════════════════════════════════════════════════════════════════════════════


def open_review(instance) -> QualityReview:
    """Seed a pending review for a freshly submitted obligation. Caller commits."""
    template = get_checklist_template(instance.service_key)
    review = QualityReview(
        instance_id=instance.id,
        round=(instance.rework_count or 0) + 1,
        checklist=[dict(item, status="pending") for item in template["items"]],
        approval_threshold=template["approval_threshold"],
        status="pending",
        sla_deadline=instance.sla_deadline,
    )
    db.session.add(review)
    db.session.flush()
    logger.info("Quality review %s opened for obligation %s", review.id, instance.id,
                extra={"review_id": review.id, "instance_id": instance.id})
    return review


def get_review(review_id: int) -> QualityReview:
    review = db.session.get(QualityReview, review_id)
    if review is None:
        raise NotFoundError(resource="QualityReview", resource_id=review_id)
    return review


def list_reviews(instance_id: int) -> list[QualityReview]:
    return list(db.session.execute(
        select(QualityReview).where(QualityReview.instance_id == instance_id)
        .order_by(QualityReview.id)
    ).scalars())


def start_review(review_id: int, *, reviewer_id: str | None, actor_role: str | None) -> QualityReview:
    """pending → in_progress; records the reviewer and the start time."""
    check_permission("review_start", actor_role)

    def _start():
        review = get_review(review_id)
        with keyed_lock("obligation", review.instance_id):
            db.session.refresh(review)
            if review.status != "pending":
                raise InvalidTransitionError(review.status, "in_progress")
            review.status = "in_progress"
            review.reviewer_id = reviewer_id
            review.review_started_at = datetime.now(timezone.utc)
            db.session.commit()
        return review

    review = run_with_store_retry("start_review", _start)
    logger.info("Quality review %s started by %s", review_id, reviewer_id,
                extra={"review_id": review_id, "actor_id": reviewer_id})
    return review


def submit_review(
    review_id: int,
    *,
    checklist,
    requested_disposition: str,
    reviewer_id: str | None,
    actor_role: str | None,
    review_notes: str | None = None,
    rework_instructions: str | None = None,
) -> QualityReview:
    """Record the reviewer's checklist and decision, then move the obligation.

    Raises:
        PermissionDenied: role may not decide.
        ApprovalBlockedError: approve with a failed mandatory item.
        InvalidTransitionError: review already completed, or obligation not
            awaiting review.
        EscalationRequired: rework limit exceeded; raised after the
            escalation was committed and notified.
    """
    from compliance_engine.services import notification_trigger, obligation_tracker

    check_permission("review_decide", actor_role)
    if requested_disposition == "rework_required" and not (rework_instructions or "").strip():
        raise ValidationError("rework_instructions are required for rework_required",
                              details={"rework_instructions": "required"})

    def _submit():
        review = get_review(review_id)
        with keyed_lock("obligation", review.instance_id):
            try:
                db.session.refresh(review)
                if review.status == "completed":
                    raise InvalidTransitionError("completed", requested_disposition)
                items = merge_checklist(review.checklist or [], checklist) \
                    if checklist is not None else normalize_checklist(review.checklist or [])
                disposition = decide(items, requested_disposition)
                quality = score(items)

                instance = obligation_tracker._load_for_update(review.instance_id)
                if instance.status != "submitted_for_review":
                    raise InvalidTransitionError(instance.status, disposition)

                now = datetime.now(timezone.utc)
                review.checklist = items
                review.quality_score = quality
                review.requested_disposition = requested_disposition
                review.disposition = disposition
                review.reviewer_id = reviewer_id or review.reviewer_id
                review.review_notes = review_notes
                review.rework_instructions = rework_instructions if disposition != "approved" else None
                review.review_started_at = review.review_started_at or now
                review.review_completed_at = now
                review.status = "completed"

                escalated = obligation_tracker.apply_review_decision(
                    instance, disposition,
                    quality_score=quality,
                    rework_instructions=rework_instructions,
                    actor_id=reviewer_id,
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
        return review, instance, escalated

    review, instance, escalated = run_with_store_retry("submit_review", _submit)
    logger.info(
        "Quality review %s completed: %s (score %s)", review.id, review.disposition,
        review.quality_score,
        extra={"review_id": review.id, "instance_id": instance.id,
               "actor_id": reviewer_id, "event_type": "review_completed"},
    )

    notification_trigger.notify_review_outcome(instance, review)
    if escalated:
        notification_trigger.notify_escalation(instance)
        raise EscalationRequired(instance.id, instance.rework_count,
                                 _rework_limit())
    return review


def _rework_limit() -> int:
    from flask import current_app
    return current_app.config.get("MAX_REWORK_COUNT", 3)

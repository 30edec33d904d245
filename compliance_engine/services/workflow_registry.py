"""
Compliance Obligation & Review Engine
Workflow Template Registry — versioned, publishable step templates per service.

Business logic:
  - Versions are numbered max(existing) + 1 per service, starting at 1
  - New versions are never auto-published
  - Publish moves the single ``workflow_publications`` pointer with a
    compare-and-set on ``revision`` and rewrites ``is_published`` on every
    version of the service in the same transaction, so readers never see
    zero or two published versions
  - Only administrators publish
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from compliance_engine.core.exceptions import (
    ConflictError,
    NoPublishedTemplateError,
    NotFoundError,
    ValidationError,
)
from compliance_engine.models import db
from compliance_engine.models.workflow import WorkflowPublication, WorkflowTemplate
from compliance_engine.services import rule_store
from compliance_engine.services.locking import keyed_lock
from compliance_engine.services.permission import check_permission
from compliance_engine.services.store_retry import run_with_store_retry

logger = logging.getLogger(__name__)

_STEP_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")

# Compare-and-set attempts before a publish gives up
MAX_PUBLISH_ATTEMPTS = 5


# ═════════════════════════════════════════════════════════════════════════════
# Step payload validation
# ═════════════════════════════════════════════════════════════════════════════


def _validate_step(raw, index: int, seen: set, errors: dict) -> dict | None:
    prefix = f"steps[{index}]"
    if not isinstance(raw, dict):
        errors[prefix] = "each step must be an object"
        return None

    step_key = raw.get("stepKey")
    if not isinstance(step_key, str) or not _STEP_KEY_RE.match(step_key):
        errors[f"{prefix}.stepKey"] = "stepKey must be lowercase letters, digits and underscores"
        return None
    if step_key in seen:
        errors[f"{prefix}.stepKey"] = f"duplicate stepKey '{step_key}'"
        return None
    seen.add(step_key)

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        errors[f"{prefix}.name"] = "name is required"
        return None

    step = {
        "stepKey": step_key,
        "name": name.strip(),
        "description": raw.get("description") or "",
        "estimatedDays": raw.get("estimatedDays"),
        "assigneeRole": raw.get("assigneeRole"),
        "qaRequired": bool(raw.get("qaRequired", False)),
        "deliverables": raw.get("deliverables") or [],
    }
    days = step["estimatedDays"]
    if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days < 0):
        errors[f"{prefix}.estimatedDays"] = "estimatedDays must be a non-negative integer"
    if step["assigneeRole"] is not None and not isinstance(step["assigneeRole"], str):
        errors[f"{prefix}.assigneeRole"] = "assigneeRole must be a string"
    if not isinstance(step["deliverables"], list) or not all(
        isinstance(d, str) for d in step["deliverables"]
    ):
        errors[f"{prefix}.deliverables"] = "deliverables must be a list of strings"
    return step


def validate_step_payload(step_payload) -> tuple[list[dict], dict | None]:
    """Validate and normalize a step payload.

    Accepts either a bare list of steps or ``{"steps": [...], "slaPolicy": {...}}``.

    Returns:
        (steps, sla_policy)

    Raises:
        ValidationError: with per-field messages in ``details``.
    """
    sla_policy = None
    if isinstance(step_payload, dict):
        sla_policy = step_payload.get("slaPolicy")
        steps_raw = step_payload.get("steps")
    else:
        steps_raw = step_payload

    if not isinstance(steps_raw, list) or not steps_raw:
        raise ValidationError("steps must be a non-empty list", details={"steps": "required"})
    if sla_policy is not None and not isinstance(sla_policy, dict):
        raise ValidationError("slaPolicy must be an object", details={"slaPolicy": sla_policy})

    errors: dict[str, str] = {}
    seen: set[str] = set()
    steps = [_validate_step(raw, i, seen, errors) for i, raw in enumerate(steps_raw)]
    if errors:
        raise ValidationError("Invalid workflow steps", details=errors)
    return steps, sla_policy


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def create_version(service_key: str, step_payload, author: str | None = None) -> WorkflowTemplate:
    """Store the next template version for a service (unpublished).

    Raises:
        NotFoundError: unknown service.
        ValidationError: invalid step payload.
    """
    steps, sla_policy = validate_step_payload(step_payload)

    def _create():
        rule_store.get_service(service_key)
        with keyed_lock("workflow_version", service_key):
            current_max = db.session.execute(
                select(func.max(WorkflowTemplate.version))
                .where(WorkflowTemplate.service_key == service_key)
            ).scalar()
            template = WorkflowTemplate(
                service_key=service_key,
                version=(current_max or 0) + 1,
                steps_json=steps,
                sla_policy=sla_policy,
                is_published=False,
                author=author,
            )
            db.session.add(template)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise ConflictError("WorkflowTemplate", "version",
                                    str((current_max or 0) + 1)) from None
            return template

    template = run_with_store_retry("create_version", _create)
    logger.info(
        "Workflow version created: %s v%d", service_key, template.version,
        extra={"service_key": service_key, "template_version": template.version,
               "event_type": "workflow_version_created"},
    )
    return template


def get_version(service_key: str, version: int) -> WorkflowTemplate:
    template = db.session.execute(
        select(WorkflowTemplate).where(
            WorkflowTemplate.service_key == service_key,
            WorkflowTemplate.version == version,
        )
    ).scalar_one_or_none()
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=f"{service_key} v{version}")
    return template


def list_versions(service_key: str) -> list[WorkflowTemplate]:
    return list(db.session.execute(
        select(WorkflowTemplate)
        .where(WorkflowTemplate.service_key == service_key)
        .order_by(WorkflowTemplate.version)
    ).scalars())


def _ensure_pointer(service_key: str) -> WorkflowPublication:
    pointer = db.session.get(WorkflowPublication, service_key)
    if pointer is not None:
        return pointer
    pointer = WorkflowPublication(service_key=service_key, published_version=None, revision=0)
    db.session.add(pointer)
    try:
        db.session.commit()
    except IntegrityError:
        # Another writer created it first
        db.session.rollback()
        pointer = db.session.get(WorkflowPublication, service_key)
    return pointer


def _publish_once(service_key: str, version: int, actor_id: str | None) -> WorkflowTemplate | None:
    """One compare-and-set attempt. Returns None when the pointer moved underneath us."""
    template = get_version(service_key, version)
    pointer = _ensure_pointer(service_key)
    seen_revision = pointer.revision
    now = datetime.now(timezone.utc)

    result = db.session.execute(
        update(WorkflowPublication)
        .where(WorkflowPublication.service_key == service_key,
               WorkflowPublication.revision == seen_revision)
        .values(published_version=version, revision=seen_revision + 1,
                published_by=actor_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return None

    db.session.execute(
        update(WorkflowTemplate)
        .where(WorkflowTemplate.service_key == service_key,
               WorkflowTemplate.version != version)
        .values(is_published=False)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(WorkflowTemplate)
        .where(WorkflowTemplate.service_key == service_key,
               WorkflowTemplate.version == version)
        .values(is_published=True, published_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.expire_all()
    return template


def publish(service_key: str, version: int, actor_role: str | None,
            actor_id: str | None = None) -> WorkflowTemplate:
    """Make ``version`` the single published template of the service.

    Raises:
        PermissionDenied: actor is not an administrator.
        NotFoundError: the version does not exist.
        ConflictError: the pointer kept moving for MAX_PUBLISH_ATTEMPTS attempts.
    """
    check_permission("workflow_publish", actor_role)

    def _publish():
        with keyed_lock("workflow_publish", service_key):
            for attempt in range(1, MAX_PUBLISH_ATTEMPTS + 1):
                template = _publish_once(service_key, version, actor_id)
                if template is not None:
                    return template
                logger.warning(
                    "Publish %s v%d lost compare-and-set, attempt %d/%d",
                    service_key, version, attempt, MAX_PUBLISH_ATTEMPTS,
                    extra={"service_key": service_key, "attempt": attempt},
                )
        raise ConflictError("WorkflowPublication", "revision", service_key)

    template = run_with_store_retry("publish_workflow", _publish)
    logger.info(
        "Workflow published: %s v%d", service_key, version,
        extra={"service_key": service_key, "template_version": version,
               "actor_id": actor_id, "actor_role": actor_role,
               "event_type": "workflow_published"},
    )
    return template


def resolve_published(service_key: str) -> WorkflowTemplate:
    """Return the published template via the publication pointer.

    Raises:
        NoPublishedTemplateError: nothing is published for the service.
    """
    pointer = db.session.get(WorkflowPublication, service_key)
    if pointer is None or pointer.published_version is None:
        raise NoPublishedTemplateError(service_key)
    template = db.session.execute(
        select(WorkflowTemplate).where(
            WorkflowTemplate.service_key == service_key,
            WorkflowTemplate.version == pointer.published_version,
        )
    ).scalar_one_or_none()
    if template is None:
        raise NoPublishedTemplateError(service_key)
    return template


def has_published(service_key: str) -> bool:
    pointer = db.session.get(WorkflowPublication, service_key)
    return pointer is not None and pointer.published_version is not None

"""
Compliance Obligation & Review Engine
Rule Store — service catalog, doc types, entities and versioned due-date rules.

Business logic:
  - ServiceDefinitions are created by administrators and only ever deactivated
  - DueDateRules are versioned per (service, jurisdiction) by effective date;
    effective dates strictly increase and the latest one on or before the
    evaluation date governs
  - Rule payloads are validated at ingestion (rule_schema) and stored
    normalized, so evaluation never re-validates
"""

from __future__ import annotations

import logging
import re
from datetime import date

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from compliance_engine.core.exceptions import (
    ConflictError,
    NoRuleFoundError,
    NotFoundError,
    ValidationError,
)
from compliance_engine.models import db
from compliance_engine.models.catalog import (
    PERIODICITIES,
    ComplianceEntity,
    DocType,
    EntityServiceBinding,
    ServiceDefinition,
)
from compliance_engine.models.rules import DueDateRule
from compliance_engine.services.locking import keyed_lock
from compliance_engine.services.rule_schema import parse_rule_payload
from compliance_engine.services.store_retry import run_with_store_retry
from compliance_engine.utils.helpers import require_date

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{1,63}$")

_SERVICE_MUTABLE_FIELDS = ("name", "periodicity", "category", "description", "is_active")


def _normalize_jurisdiction(jurisdiction: str | None) -> str:
    value = (jurisdiction or current_app.config.get("DEFAULT_JURISDICTION", "IN")).strip().upper()
    if not value or len(value) > 10:
        raise ValidationError("jurisdiction must be a short code such as IN",
                              details={"jurisdiction": jurisdiction})
    return value


def _check_periodicity(value) -> str:
    periodicity = str(value or "").upper()
    if periodicity not in PERIODICITIES:
        raise ValidationError(
            f"periodicity must be one of {', '.join(PERIODICITIES)}",
            details={"periodicity": value},
        )
    return periodicity


# ═════════════════════════════════════════════════════════════════════════════
# Service catalog
# ═════════════════════════════════════════════════════════════════════════════


def get_service(service_key: str) -> ServiceDefinition:
    """Return the service or raise NotFoundError."""
    service = db.session.execute(
        select(ServiceDefinition).where(ServiceDefinition.service_key == service_key)
    ).scalar_one_or_none()
    if service is None:
        raise NotFoundError(resource="ServiceDefinition", resource_id=service_key)
    return service


def list_services(*, active_only: bool = False) -> list[ServiceDefinition]:
    stmt = select(ServiceDefinition).order_by(ServiceDefinition.service_key)
    if active_only:
        stmt = stmt.where(ServiceDefinition.is_active.is_(True))
    return list(db.session.execute(stmt).scalars())


def create_service(data: dict) -> ServiceDefinition:
    """Create a ServiceDefinition.

    Raises:
        ValidationError: malformed key, missing name or unknown periodicity.
        ConflictError: service_key already exists.
    """
    service_key = str(data.get("service_key") or "").strip()
    if not _KEY_RE.match(service_key):
        raise ValidationError(
            "service_key must be lowercase letters, digits and underscores",
            details={"service_key": service_key},
        )
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    periodicity = _check_periodicity(data.get("periodicity", "MONTHLY"))

    def _create():
        exists = db.session.execute(
            select(ServiceDefinition.id).where(ServiceDefinition.service_key == service_key)
        ).scalar_one_or_none()
        if exists is not None:
            raise ConflictError("ServiceDefinition", "service_key", service_key)
        service = ServiceDefinition(
            service_key=service_key,
            name=name,
            periodicity=periodicity,
            category=data.get("category", ""),
            description=data.get("description", ""),
            is_active=bool(data.get("is_active", True)),
        )
        db.session.add(service)
        db.session.commit()
        return service

    service = run_with_store_retry("create_service", _create)
    logger.info("Service created: %s", service_key,
                extra={"service_key": service_key, "event_type": "service_created"})
    return service


def update_service(service_key: str, data: dict) -> ServiceDefinition:
    """Update mutable metadata. ``service_key`` itself is immutable."""
    if "service_key" in data and data["service_key"] != service_key:
        raise ValidationError("service_key is immutable", details={"service_key": "immutable"})

    def _update():
        service = get_service(service_key)
        for field in _SERVICE_MUTABLE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field == "periodicity":
                value = _check_periodicity(value)
            elif field == "name":
                value = str(value or "").strip()
                if not value:
                    raise ValidationError("name is required", details={"name": "required"})
            elif field == "is_active":
                value = bool(value)
            setattr(service, field, value)
        db.session.commit()
        return service

    return run_with_store_retry("update_service", _update)


def deactivate_service(service_key: str) -> ServiceDefinition:
    service = update_service(service_key, {"is_active": False})
    logger.info("Service deactivated: %s", service_key,
                extra={"service_key": service_key, "event_type": "service_deactivated"})
    return service


# ═════════════════════════════════════════════════════════════════════════════
# Document types
# ═════════════════════════════════════════════════════════════════════════════


def add_doc_type(service_key: str, data: dict) -> DocType:
    """Attach a document type to a service.

    Raises:
        NotFoundError: unknown service.
        ConflictError: doctype code already defined for the service.
    """
    code = str(data.get("doctype") or "").strip()
    if not _KEY_RE.match(code):
        raise ValidationError(
            "doctype must be lowercase letters, digits and underscores",
            details={"doctype": code},
        )
    label = str(data.get("label") or "").strip() or code.replace("_", " ").title()

    def _add():
        get_service(service_key)
        exists = db.session.execute(
            select(DocType.id).where(DocType.service_key == service_key, DocType.doctype == code)
        ).scalar_one_or_none()
        if exists is not None:
            raise ConflictError("DocType", "doctype", code)
        doc_type = DocType(
            service_key=service_key,
            doctype=code,
            label=label,
            client_uploads=bool(data.get("client_uploads", True)),
            is_deliverable=bool(data.get("is_deliverable", False)),
            mandatory=bool(data.get("mandatory", False)),
            step_key=data.get("step_key") or None,
        )
        db.session.add(doc_type)
        db.session.commit()
        return doc_type

    return run_with_store_retry("add_doc_type", _add)


def list_doc_types(service_key: str) -> list[DocType]:
    return list(db.session.execute(
        select(DocType).where(DocType.service_key == service_key).order_by(DocType.id)
    ).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Entities & bindings
# ═════════════════════════════════════════════════════════════════════════════


def get_entity(entity_id: int) -> ComplianceEntity:
    entity = db.session.get(ComplianceEntity, entity_id)
    if entity is None:
        raise NotFoundError(resource="ComplianceEntity", resource_id=entity_id)
    return entity


def create_entity(data: dict) -> ComplianceEntity:
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    jurisdiction = _normalize_jurisdiction(data.get("jurisdiction"))

    def _create():
        entity = ComplianceEntity(name=name, jurisdiction=jurisdiction,
                                  is_active=bool(data.get("is_active", True)))
        db.session.add(entity)
        db.session.commit()
        return entity

    entity = run_with_store_retry("create_entity", _create)
    logger.info("Entity created: %s", name, extra={"entity_id": entity.id})
    return entity


def bind_entity_service(entity_id: int, service_key: str,
                        jurisdiction: str | None = None) -> EntityServiceBinding:
    """Subscribe an entity to a service (reactivates an existing binding)."""
    override = _normalize_jurisdiction(jurisdiction) if jurisdiction else None

    def _bind():
        get_entity(entity_id)
        get_service(service_key)
        binding = db.session.execute(
            select(EntityServiceBinding).where(
                EntityServiceBinding.entity_id == entity_id,
                EntityServiceBinding.service_key == service_key,
            )
        ).scalar_one_or_none()
        if binding is None:
            binding = EntityServiceBinding(entity_id=entity_id, service_key=service_key)
            db.session.add(binding)
        binding.jurisdiction = override
        binding.is_active = True
        db.session.commit()
        return binding

    binding = run_with_store_retry("bind_entity_service", _bind)
    logger.info("Entity %s bound to %s", entity_id, service_key,
                extra={"entity_id": entity_id, "service_key": service_key})
    return binding


def unbind_entity_service(entity_id: int, service_key: str) -> EntityServiceBinding:
    def _unbind():
        binding = db.session.execute(
            select(EntityServiceBinding).where(
                EntityServiceBinding.entity_id == entity_id,
                EntityServiceBinding.service_key == service_key,
            )
        ).scalar_one_or_none()
        if binding is None:
            raise NotFoundError(resource="EntityServiceBinding",
                                resource_id=f"{entity_id}/{service_key}")
        binding.is_active = False
        db.session.commit()
        return binding

    return run_with_store_retry("unbind_entity_service", _unbind)


def get_binding(entity_id: int, service_key: str) -> EntityServiceBinding | None:
    return db.session.execute(
        select(EntityServiceBinding).where(
            EntityServiceBinding.entity_id == entity_id,
            EntityServiceBinding.service_key == service_key,
        )
    ).scalar_one_or_none()


def list_active_bindings() -> list[EntityServiceBinding]:
    """Active bindings whose service and entity are both active."""
    stmt = (
        select(EntityServiceBinding)
        .join(ServiceDefinition, ServiceDefinition.service_key == EntityServiceBinding.service_key)
        .join(ComplianceEntity, ComplianceEntity.id == EntityServiceBinding.entity_id)
        .where(
            EntityServiceBinding.is_active.is_(True),
            ServiceDefinition.is_active.is_(True),
            ComplianceEntity.is_active.is_(True),
        )
        .order_by(EntityServiceBinding.service_key, EntityServiceBinding.entity_id)
    )
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Due-date rules
# ═════════════════════════════════════════════════════════════════════════════


def add_rule(
    service_key: str,
    jurisdiction: str | None,
    payload: dict,
    effective_from,
    *,
    created_by: str | None = None,
) -> DueDateRule:
    """Store a new rule version for (service, jurisdiction).

    Args:
        service_key: Existing service.
        jurisdiction: Jurisdiction code; defaults to DEFAULT_JURISDICTION.
        payload: Raw rule payload, validated by rule_schema.parse_rule_payload.
        effective_from: date or ISO string; must be strictly after the
            previous rule's effective date for the same (service, jurisdiction).

    Returns:
        The persisted DueDateRule (``rule.id`` is the rule id).

    Raises:
        NotFoundError: unknown service.
        ValidationError: bad payload or non-increasing effective date.
    """
    effective = require_date(effective_from, "effective_from")
    jurisdiction = _normalize_jurisdiction(jurisdiction)

    def _add():
        service = get_service(service_key)
        variant = parse_rule_payload(payload, default_periodicity=service.periodicity)
        with keyed_lock("rules", service_key, jurisdiction):
            previous = db.session.execute(
                select(DueDateRule)
                .where(DueDateRule.service_key == service_key,
                       DueDateRule.jurisdiction == jurisdiction)
                .order_by(DueDateRule.effective_from.desc())
                .limit(1)
            ).scalar_one_or_none()
            if previous is not None and effective <= previous.effective_from:
                raise ValidationError(
                    "effective_from must be after the previous rule's effective_from "
                    f"({previous.effective_from.isoformat()})",
                    details={"effective_from": effective.isoformat(),
                             "previous_effective_from": previous.effective_from.isoformat()},
                )
            rule = DueDateRule(
                service_key=service_key,
                jurisdiction=jurisdiction,
                effective_from=effective,
                periodicity=variant.periodicity.value,
                rule_json=variant.to_payload(),
                is_active=True,
                created_by=created_by,
            )
            db.session.add(rule)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise ValidationError(
                    "A rule with this effective_from already exists",
                    details={"effective_from": effective.isoformat()},
                ) from None
            return rule

    rule = run_with_store_retry("add_rule", _add)
    logger.info(
        "Due-date rule added: %s/%s effective %s", service_key, jurisdiction, effective,
        extra={"service_key": service_key, "rule_id": rule.id, "event_type": "rule_added"},
    )
    return rule


def resolve_active_rule(service_key: str, jurisdiction: str | None, as_of) -> DueDateRule:
    """Return the active rule with the greatest ``effective_from <= as_of``.

    Raises:
        NoRuleFoundError: no active rule governs that date yet.
    """
    as_of = require_date(as_of, "as_of")
    jurisdiction = _normalize_jurisdiction(jurisdiction)
    rule = db.session.execute(
        select(DueDateRule)
        .where(
            DueDateRule.service_key == service_key,
            DueDateRule.jurisdiction == jurisdiction,
            DueDateRule.is_active.is_(True),
            DueDateRule.effective_from <= as_of,
        )
        .order_by(DueDateRule.effective_from.desc())
        .limit(1)
    ).scalar_one_or_none()
    if rule is None:
        raise NoRuleFoundError(service_key, jurisdiction, as_of)
    return rule


def list_rules(service_key: str, jurisdiction: str | None = None) -> list[DueDateRule]:
    stmt = select(DueDateRule).where(DueDateRule.service_key == service_key)
    if jurisdiction:
        stmt = stmt.where(DueDateRule.jurisdiction == jurisdiction.strip().upper())
    stmt = stmt.order_by(DueDateRule.jurisdiction, DueDateRule.effective_from)
    return list(db.session.execute(stmt).scalars())


def get_rule(rule_id: int) -> DueDateRule:
    rule = db.session.get(DueDateRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="DueDateRule", resource_id=rule_id)
    return rule


def deactivate_rule(rule_id: int) -> DueDateRule:
    """Retire a rule; resolution falls back to the previous active version."""
    def _deactivate():
        rule = get_rule(rule_id)
        rule.is_active = False
        db.session.commit()
        return rule

    rule = run_with_store_retry("deactivate_rule", _deactivate)
    logger.info("Due-date rule %s deactivated", rule_id,
                extra={"rule_id": rule_id, "service_key": rule.service_key})
    return rule


def has_any_rule(service_key: str, as_of: date | None = None) -> bool:
    stmt = select(DueDateRule.id).where(
        DueDateRule.service_key == service_key, DueDateRule.is_active.is_(True),
    )
    if as_of is not None:
        stmt = stmt.where(DueDateRule.effective_from <= as_of)
    return db.session.execute(stmt.limit(1)).first() is not None

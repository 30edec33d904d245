"""
Rule Store Blueprint — service catalog, entities and due-date rules.

Routes:
  GET    /services                          – list services (?active=true)
  POST   /services                          – create service
  GET    /services/<key>                    – service detail (with doc types)
  PUT    /services/<key>                    – update metadata
  DELETE /services/<key>                    – deactivate
  GET    /services/<key>/doc-types          – list doc types
  POST   /services/<key>/doc-types          – add doc type
  POST   /entities                          – create entity
  GET    /entities/<id>                     – entity detail (with bindings)
  POST   /entities/<id>/services            – bind entity to service
  DELETE /entities/<id>/services/<key>      – unbind
  POST   /rules                             – add a rule version
  GET    /rules/<service_key>               – list rule versions (?jurisdiction=)
  POST   /rules/<id>/deactivate             – deactivate a rule version
  POST   /rules/resolve                     – rule governing a date
  POST   /rules/preview                     – due date & reminder preview
"""

from flask import Blueprint, jsonify, request

from compliance_engine.auth import current_actor
from compliance_engine.services import obligation_scheduler, rule_store
from compliance_engine.services.permission import check_permission
from compliance_engine.utils.errors import E, api_error
from compliance_engine.utils.helpers import require_date

rules_bp = Blueprint("rules_bp", __name__, url_prefix="/api/v1")


# ═════════════════════════════════════════════════════════════════════════════
# SERVICE CATALOG
# ═════════════════════════════════════════════════════════════════════════════

@rules_bp.route("/services", methods=["GET"])
def list_services():
    active_only = request.args.get("active") == "true"
    services = rule_store.list_services(active_only=active_only)
    return jsonify({"items": [s.to_dict() for s in services], "total": len(services)})


@rules_bp.route("/services", methods=["POST"])
def create_service():
    """Create a service definition.

    Body: { service_key, name, periodicity, category?, description? }
    """
    _, role = current_actor()
    check_permission("catalog_manage", role)
    data = request.get_json(silent=True) or {}
    service = rule_store.create_service(data)
    return jsonify(service.to_dict()), 201


@rules_bp.route("/services/<service_key>", methods=["GET"])
def get_service(service_key):
    service = rule_store.get_service(service_key)
    result = service.to_dict()
    result["doc_types"] = [d.to_dict() for d in rule_store.list_doc_types(service_key)]
    return jsonify(result)


@rules_bp.route("/services/<service_key>", methods=["PUT"])
def update_service(service_key):
    _, role = current_actor()
    check_permission("catalog_manage", role)
    data = request.get_json(silent=True) or {}
    return jsonify(rule_store.update_service(service_key, data).to_dict())


@rules_bp.route("/services/<service_key>", methods=["DELETE"])
def deactivate_service(service_key):
    _, role = current_actor()
    check_permission("catalog_manage", role)
    return jsonify(rule_store.deactivate_service(service_key).to_dict())


@rules_bp.route("/services/<service_key>/doc-types", methods=["GET"])
def list_doc_types(service_key):
    rule_store.get_service(service_key)
    return jsonify([d.to_dict() for d in rule_store.list_doc_types(service_key)])


@rules_bp.route("/services/<service_key>/doc-types", methods=["POST"])
def add_doc_type(service_key):
    """Body: { doctype, label?, mandatory?, is_deliverable?, client_uploads?, step_key? }"""
    _, role = current_actor()
    check_permission("catalog_manage", role)
    data = request.get_json(silent=True) or {}
    return jsonify(rule_store.add_doc_type(service_key, data).to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# ENTITIES & BINDINGS
# ═════════════════════════════════════════════════════════════════════════════

@rules_bp.route("/entities", methods=["POST"])
def create_entity():
    _, role = current_actor()
    check_permission("catalog_manage", role)
    data = request.get_json(silent=True) or {}
    return jsonify(rule_store.create_entity(data).to_dict()), 201


@rules_bp.route("/entities/<int:entity_id>", methods=["GET"])
def get_entity(entity_id):
    entity = rule_store.get_entity(entity_id)
    result = entity.to_dict()
    result["services"] = [b.to_dict() for b in entity.bindings]
    return jsonify(result)


@rules_bp.route("/entities/<int:entity_id>/services", methods=["POST"])
def bind_service(entity_id):
    """Body: { service_key, jurisdiction? }"""
    _, role = current_actor()
    check_permission("catalog_manage", role)
    data = request.get_json(silent=True) or {}
    service_key = (data.get("service_key") or "").strip()
    if not service_key:
        return api_error(E.VALIDATION_REQUIRED, "service_key is required")
    binding = rule_store.bind_entity_service(entity_id, service_key, data.get("jurisdiction"))
    return jsonify(binding.to_dict()), 201


@rules_bp.route("/entities/<int:entity_id>/services/<service_key>", methods=["DELETE"])
def unbind_service(entity_id, service_key):
    _, role = current_actor()
    check_permission("catalog_manage", role)
    return jsonify(rule_store.unbind_entity_service(entity_id, service_key).to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# DUE-DATE RULES
# ═════════════════════════════════════════════════════════════════════════════

@rules_bp.route("/rules", methods=["POST"])
def add_rule():
    """Add a rule version.

    Body: { service_key, jurisdiction?, effective_from, rule: {periodicity, dueDayOfMonth, nudges} }
    """
    actor_id, role = current_actor()
    check_permission("rule_manage", role)
    data = request.get_json(silent=True) or {}
    service_key = (data.get("service_key") or "").strip()
    if not service_key:
        return api_error(E.VALIDATION_REQUIRED, "service_key is required")
    if not isinstance(data.get("rule"), dict):
        return api_error(E.VALIDATION_REQUIRED, "rule is required")

    rule = rule_store.add_rule(
        service_key, data.get("jurisdiction"), data["rule"], data.get("effective_from"),
        created_by=actor_id,
    )
    return jsonify(rule.to_dict()), 201


@rules_bp.route("/rules/<service_key>", methods=["GET"])
def list_rules(service_key):
    rule_store.get_service(service_key)
    rules = rule_store.list_rules(service_key, request.args.get("jurisdiction"))
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)})


@rules_bp.route("/rules/<int:rule_id>/deactivate", methods=["POST"])
def deactivate_rule(rule_id):
    _, role = current_actor()
    check_permission("rule_manage", role)
    return jsonify(rule_store.deactivate_rule(rule_id).to_dict())


@rules_bp.route("/rules/resolve", methods=["POST"])
def resolve_rule():
    """Body: { service_key, jurisdiction?, date }"""
    data = request.get_json(silent=True) or {}
    service_key = (data.get("service_key") or "").strip()
    if not service_key:
        return api_error(E.VALIDATION_REQUIRED, "service_key is required")
    as_of = require_date(data.get("date"), "date")
    rule = rule_store.resolve_active_rule(service_key, data.get("jurisdiction"), as_of)
    return jsonify(rule.to_dict())


@rules_bp.route("/rules/preview", methods=["POST"])
def preview_rule():
    """Due date and reminder schedule for a period, from a draft rule or the stored one.

    Body: { period_key, rule? } or { period_key, service_key, jurisdiction? }
    """
    data = request.get_json(silent=True) or {}
    period_key = (data.get("period_key") or "").strip()
    if not period_key:
        return api_error(E.VALIDATION_REQUIRED, "period_key is required")
    result = obligation_scheduler.preview_due_date(
        period_key,
        payload=data.get("rule"),
        service_key=data.get("service_key"),
        jurisdiction=data.get("jurisdiction"),
    )
    return jsonify(result)

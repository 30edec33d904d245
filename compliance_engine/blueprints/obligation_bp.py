"""
Obligation Blueprint — scheduling and the obligation lifecycle.

Routes:
  POST   /obligations/schedule                        – materialize one obligation
  GET    /obligations                                 – list (filters + limit/offset)
  GET    /obligations/<id>                            – detail (?include_reminders=true)
  GET    /obligations/<id>/history                    – status transitions
  GET    /obligations/<id>/reviews                    – quality review rounds
  POST   /obligations/<id>/start                      – scheduled → in_progress
  POST   /obligations/<id>/steps/<step_key>/complete  – complete current step
  POST   /obligations/<id>/documents                  – register an uploaded document
  POST   /obligations/<id>/submit                     – submit for quality review
  POST   /obligations/<id>/escalation/resolve         – reopen / close an escalation
"""

from flask import Blueprint, jsonify, request

from compliance_engine.auth import current_actor
from compliance_engine.blueprints import bool_arg, paginate_query
from compliance_engine.services import obligation_scheduler, obligation_tracker, quality_review
from compliance_engine.services.permission import check_permission
from compliance_engine.utils.errors import E, api_error

obligation_bp = Blueprint("obligation_bp", __name__, url_prefix="/api/v1/obligations")


# ═════════════════════════════════════════════════════════════════════════════
# SCHEDULING
# ═════════════════════════════════════════════════════════════════════════════

@obligation_bp.route("/schedule", methods=["POST"])
def schedule():
    """Materialize the obligation for (service, entity, period). Idempotent.

    Body: { service_key, entity_id, period_key }
    Returns 201 when created, 200 when it already existed.
    """
    actor_id, role = current_actor()
    check_permission("obligation_schedule", role)
    data = request.get_json(silent=True) or {}

    service_key = (data.get("service_key") or "").strip()
    period_key = (data.get("period_key") or "").strip()
    entity_id = data.get("entity_id")
    if not service_key or not period_key:
        return api_error(E.VALIDATION_REQUIRED, "service_key and period_key are required")
    if isinstance(entity_id, bool) or not isinstance(entity_id, int):
        return api_error(E.VALIDATION_INVALID, "entity_id must be an integer")

    instance, created = obligation_scheduler.schedule_obligation(
        service_key, entity_id, period_key, actor_id=actor_id,
    )
    result = instance.to_dict(include_reminders=True)
    result["created"] = created
    return jsonify(result), 201 if created else 200


# ═════════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════════

@obligation_bp.route("", methods=["GET"])
def list_obligations():
    """Filters: service_key, entity_id, status, period_key, sla_breached, include_archived."""
    filters = {
        "service_key": request.args.get("service_key"),
        "entity_id": request.args.get("entity_id", type=int),
        "status": request.args.get("status"),
        "period_key": request.args.get("period_key"),
        "sla_breached": bool_arg("sla_breached"),
        "include_archived": bool_arg("include_archived", False),
    }
    items, total = paginate_query(obligation_tracker.build_instance_query(filters))
    return jsonify({"items": [i.to_dict() for i in items], "total": total})


@obligation_bp.route("/<int:instance_id>", methods=["GET"])
def get_obligation(instance_id):
    instance = obligation_tracker.get_instance(instance_id)
    return jsonify(instance.to_dict(include_reminders=bool_arg("include_reminders", False)))


@obligation_bp.route("/<int:instance_id>/history", methods=["GET"])
def history(instance_id):
    transitions = obligation_tracker.transition_history(instance_id)
    return jsonify([t.to_dict() for t in transitions])


@obligation_bp.route("/<int:instance_id>/reviews", methods=["GET"])
def reviews(instance_id):
    obligation_tracker.get_instance(instance_id)
    return jsonify([r.to_dict() for r in quality_review.list_reviews(instance_id)])


# ═════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════

@obligation_bp.route("/<int:instance_id>/start", methods=["POST"])
def start(instance_id):
    actor_id, role = current_actor()
    instance = obligation_tracker.start_work(instance_id, actor_id=actor_id, actor_role=role)
    return jsonify(instance.to_dict())


@obligation_bp.route("/<int:instance_id>/steps/<step_key>/complete", methods=["POST"])
def complete_step(instance_id, step_key):
    actor_id, role = current_actor()
    instance = obligation_tracker.complete_step(instance_id, step_key,
                                                actor_id=actor_id, actor_role=role)
    return jsonify(instance.to_dict())


@obligation_bp.route("/<int:instance_id>/documents", methods=["POST"])
def record_document(instance_id):
    """Body: { doctype, storage_ref, verified? }"""
    actor_id, role = current_actor()
    check_permission("obligation_work", role)
    data = request.get_json(silent=True) or {}
    doctype = (data.get("doctype") or "").strip()
    if not doctype:
        return api_error(E.VALIDATION_REQUIRED, "doctype is required")
    result = obligation_tracker.record_document(
        instance_id, doctype, data.get("storage_ref"),
        verified=bool(data.get("verified", False)), actor_id=actor_id,
    )
    return jsonify(result), 201


@obligation_bp.route("/<int:instance_id>/submit", methods=["POST"])
def submit(instance_id):
    """Submit for review. 422 with ``missing`` doc codes when documents are incomplete."""
    actor_id, role = current_actor()
    instance, review = obligation_tracker.submit_for_review(instance_id, actor_id=actor_id,
                                                            actor_role=role)
    return jsonify({"instance": instance.to_dict(), "review": review.to_dict()})


@obligation_bp.route("/<int:instance_id>/escalation/resolve", methods=["POST"])
def resolve_escalation(instance_id):
    """Body: { action: "reopen" | "close", note? }"""
    actor_id, role = current_actor()
    data = request.get_json(silent=True) or {}
    instance = obligation_tracker.resolve_escalation(
        instance_id, data.get("action"), actor_id=actor_id, actor_role=role,
        note=data.get("note"),
    )
    return jsonify(instance.to_dict())

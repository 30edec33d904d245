"""
Quality Review Blueprint.

Routes:
  GET    /reviews/<id>                        – review detail
  POST   /reviews/<id>/start                  – claim the review
  POST   /reviews/<id>/submit                 – record checklist & decision
  GET    /reviews/checklist/<service_key>     – effective checklist template
  PUT    /reviews/checklist/<service_key>     – replace the service's checklist
"""

from flask import Blueprint, jsonify, request

from compliance_engine.auth import current_actor
from compliance_engine.services import quality_review, rule_store
from compliance_engine.utils.errors import E, api_error

review_bp = Blueprint("review_bp", __name__, url_prefix="/api/v1/reviews")


@review_bp.route("/<int:review_id>", methods=["GET"])
def get_review(review_id):
    review = quality_review.get_review(review_id)
    result = review.to_dict()
    result["computed_score"] = quality_review.score(review.checklist or [])
    return jsonify(result)


@review_bp.route("/<int:review_id>/start", methods=["POST"])
def start_review(review_id):
    actor_id, role = current_actor()
    review = quality_review.start_review(review_id, reviewer_id=actor_id, actor_role=role)
    return jsonify(review.to_dict())


@review_bp.route("/<int:review_id>/submit", methods=["POST"])
def submit_review(review_id):
    """Record the reviewer's decision.

    Body: {
        disposition: approved | rejected | rework_required,
        checklist?: [{id, status, notes?}],
        review_notes?, rework_instructions?
    }

    422 ERR_APPROVAL_BLOCKED when approving over a failed mandatory item;
    409 ESCALATION_REQUIRED when the rework budget is exhausted.
    """
    actor_id, role = current_actor()
    data = request.get_json(silent=True) or {}
    disposition = data.get("disposition") or ""
    if not isinstance(disposition, str):
        return api_error(E.VALIDATION_INVALID, "disposition must be a string")
    disposition = disposition.strip()
    if not disposition:
        return api_error(E.VALIDATION_REQUIRED, "disposition is required")

    review = quality_review.submit_review(
        review_id,
        checklist=data.get("checklist"),
        requested_disposition=disposition,
        reviewer_id=actor_id,
        actor_role=role,
        review_notes=data.get("review_notes"),
        rework_instructions=data.get("rework_instructions"),
    )
    return jsonify(review.to_dict())


@review_bp.route("/checklist/<service_key>", methods=["GET"])
def get_checklist(service_key):
    rule_store.get_service(service_key)
    return jsonify(quality_review.get_checklist_template(service_key))


@review_bp.route("/checklist/<service_key>", methods=["PUT"])
def set_checklist(service_key):
    """Body: { items: [...], approval_threshold?, escalation_threshold? }"""
    _, role = current_actor()
    data = request.get_json(silent=True) or {}
    template = quality_review.set_checklist_template(service_key, data, actor_role=role)
    return jsonify(template.to_dict())

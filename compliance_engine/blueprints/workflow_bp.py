"""
Workflow Template Registry Blueprint.

Routes:
  GET    /workflows/<service_key>/versions             – list versions
  POST   /workflows/<service_key>/versions             – create next version
  GET    /workflows/<service_key>/versions/<version>   – version detail
  GET    /workflows/<service_key>/published            – the published version
  POST   /workflows/<service_key>/publish              – publish a version (admin)
"""

from flask import Blueprint, jsonify, request

from compliance_engine.auth import current_actor
from compliance_engine.services import workflow_registry
from compliance_engine.services.permission import check_permission
from compliance_engine.utils.errors import E, api_error

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1/workflows")


@workflow_bp.route("/<service_key>/versions", methods=["GET"])
def list_versions(service_key):
    versions = workflow_registry.list_versions(service_key)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)})


@workflow_bp.route("/<service_key>/versions", methods=["POST"])
def create_version(service_key):
    """Create the next template version.

    Body: [steps] or { steps: [...], slaPolicy: {...} }
    """
    actor_id, role = current_actor()
    check_permission("catalog_manage", role)
    payload = request.get_json(silent=True)
    if payload is None:
        return api_error(E.VALIDATION_REQUIRED, "steps are required")
    template = workflow_registry.create_version(service_key, payload, author=actor_id)
    return jsonify(template.to_dict()), 201


@workflow_bp.route("/<service_key>/versions/<int:version>", methods=["GET"])
def get_version(service_key, version):
    return jsonify(workflow_registry.get_version(service_key, version).to_dict())


@workflow_bp.route("/<service_key>/published", methods=["GET"])
def get_published(service_key):
    return jsonify(workflow_registry.resolve_published(service_key).to_dict())


@workflow_bp.route("/<service_key>/publish", methods=["POST"])
def publish(service_key):
    """Body: { version }"""
    actor_id, role = current_actor()
    data = request.get_json(silent=True) or {}
    version = data.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        return api_error(E.VALIDATION_INVALID, "version must be an integer")
    template = workflow_registry.publish(service_key, version, role, actor_id=actor_id)
    return jsonify(template.to_dict())

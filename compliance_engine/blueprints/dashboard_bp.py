"""
Operations Dashboard Blueprint.
"""

from flask import Blueprint, jsonify

from compliance_engine.services import dashboard_service as svc

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api/v1/dashboard")


@dashboard_bp.route("/stats", methods=["GET"])
def stats():
    """Obligations per status, SLA breaches, review metrics and configuration coverage."""
    return jsonify(svc.get_dashboard_stats()), 200


@dashboard_bp.route("/status-counts", methods=["GET"])
def status_counts():
    return jsonify(svc.get_status_counts()), 200


@dashboard_bp.route("/configuration-gaps", methods=["GET"])
def configuration_gaps():
    """Services that cannot be scheduled yet."""
    gaps = svc.configuration_gaps()
    return jsonify({"items": gaps, "total": len(gaps)}), 200

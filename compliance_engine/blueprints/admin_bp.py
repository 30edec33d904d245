"""
Admin Blueprint — background job administration.

Routes:
  GET    /admin/jobs                 – registered jobs with run history
  GET    /admin/jobs/<name>          – one job
  POST   /admin/jobs/<name>/run      – run a job now
  PATCH  /admin/jobs/<name>/toggle   – enable / disable
"""

import logging

from flask import Blueprint, jsonify, request

from compliance_engine.auth import current_actor
from compliance_engine.services.permission import check_permission
from compliance_engine.services.scheduler_service import SchedulerService
from compliance_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/v1/admin")


@admin_bp.route("/jobs", methods=["GET"])
def list_jobs():
    """List all scheduled jobs with their status."""
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@admin_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job(job_name):
    status = SchedulerService.get_job_status(job_name)
    if status is None:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(status)


@admin_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a scheduled job."""
    actor_id, role = current_actor()
    check_permission("jobs_manage", role)
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return api_error(E.NOT_FOUND, result["error"])
    logger.info("Job %s triggered manually by %s", job_name, actor_id,
                extra={"job_name": job_name, "actor_id": actor_id})
    return jsonify(result)


@admin_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job(job_name):
    """Body: { enabled: true|false }"""
    _, role = current_actor()
    check_permission("jobs_manage", role)
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)

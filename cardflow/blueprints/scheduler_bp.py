"""
Cardflow Core
Scheduled Jobs Blueprint.

List the periodic jobs (entropy_sweep, bundle_delivery), trigger one by
hand, pause or resume it.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from cardflow.services.scheduler_service import SchedulerService

scheduler_bp = Blueprint("jobs", __name__, url_prefix="/api/v1")


@scheduler_bp.route("/jobs", methods=["GET"])
def list_jobs():
    """List all registered jobs with their run history."""
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job(job_name):
    status = SchedulerService.get_job_status(job_name)
    if status is None:
        return jsonify({"error": f"Job '{job_name}' not found"}), 404
    return jsonify(status)


@scheduler_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a scheduled job."""
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return jsonify(result), 404
    return jsonify(result)


@scheduler_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return jsonify({"error": "'enabled' field is required (true/false)"}), 400

    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return jsonify({"error": f"Job '{job_name}' not found"}), 404
    return jsonify(result)

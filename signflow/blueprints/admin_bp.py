"""
Admin Blueprint — scheduled jobs and provider event log.

Endpoints (all under /api/v1/admin):
    GET   /jobs                    registered jobs with their DB status
    GET   /jobs/<name>             one job
    POST  /jobs/<name>/run         run a job now (also when disabled)
    PUT   /jobs/<name>/toggle      enable / disable. Body: { "enabled": bool }
    GET   /provider-events         recent provider callbacks (?outcome=failed)
    POST  /documents/<id>/purge-orphans  delete records whose signer left the workflow
"""

from flask import Blueprint, jsonify, request

from signflow.models.provider_event import EVENT_OUTCOMES
from signflow.services import reconciliation_service, signature_service
from signflow.services.scheduler_service import SchedulerService
from signflow.utils.errors import E, api_error
from signflow.utils.helpers import actor_id_from_request

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")


@admin_bp.route("/jobs", methods=["GET"])
def list_jobs():
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@admin_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job(job_name):
    job = SchedulerService.get_job_status(job_name)
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job)


@admin_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a scheduled job."""
    result = SchedulerService.run_job(job_name, force=True)
    if result.get("status") == "error" and "Unknown job" in (result.get("error") or ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@admin_bp.route("/jobs/<job_name>/toggle", methods=["PUT"])
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)


@admin_bp.route("/provider-events", methods=["GET"])
def provider_events():
    outcome = request.args.get("outcome")
    if outcome and outcome not in EVENT_OUTCOMES:
        return api_error(E.VALIDATION_INVALID, f"outcome must be one of {sorted(EVENT_OUTCOMES)}")
    limit = request.args.get("limit", 50, type=int)
    events = reconciliation_service.list_events(outcome=outcome, limit=limit)
    return jsonify({"items": events, "total": len(events)})


@admin_bp.route("/documents/<int:doc_id>/purge-orphans", methods=["POST"])
def purge_orphans(doc_id):
    data = request.get_json(silent=True) or {}
    purged = signature_service.purge_orphaned_records(doc_id, actor_id_from_request(data))
    return jsonify({"document_id": doc_id, "purged": purged})

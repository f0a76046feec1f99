"""
Signatures Blueprint.

Endpoints (all under /api/v1/signatures):
    GET    /pending                pending, signable records of the caller
    GET    /history                paginated history of a signer's records
    GET    /stats                  counts per status, mean delay, overdue
                                   (?group_by=signer|month, ?signer_id=)
    GET    /<id>                   record + history + document summary
    POST   /<id>/sign              sign (caller must be the signer)
    POST   /<id>/reject            reject with a mandatory reason
    GET    /<id>/sign-url          cached or fresh provider signing URL
    POST   /<id>/remind            reminder (caller must be the document creator)

The caller is identified by ``actor_id`` in the body or the X-User-Id header.
"""

import logging

from flask import Blueprint, jsonify, request

from signflow.blueprints import page_args
from signflow.services import signature_service, workflow_service
from signflow.utils.errors import E, api_error
from signflow.utils.helpers import actor_id_from_request, client_ip

logger = logging.getLogger(__name__)

signatures_bp = Blueprint("signatures", __name__, url_prefix="/api/v1/signatures")


def _signer_from_args():
    signer_id = request.args.get("signer_id", type=int)
    return signer_id if signer_id is not None else actor_id_from_request({})


@signatures_bp.route("/pending", methods=["GET"])
def pending():
    signer_id = _signer_from_args()
    if signer_id is None:
        return api_error(E.VALIDATION_REQUIRED, "signer_id or X-User-Id is required")
    items = signature_service.pending_records_for_signer(signer_id)
    return jsonify({"items": items, "total": len(items)})


@signatures_bp.route("/history", methods=["GET"])
def history():
    signer_id = _signer_from_args()
    if signer_id is None:
        return api_error(E.VALIDATION_REQUIRED, "signer_id or X-User-Id is required")
    page, per_page = page_args(default_per_page=10, max_per_page=50)
    return jsonify(signature_service.signer_history(
        signer_id,
        status=request.args.get("status"),
        date_from=request.args.get("date_from"),
        date_to=request.args.get("date_to"),
        page=page,
        per_page=per_page,
    ))


@signatures_bp.route("/stats", methods=["GET"])
def stats():
    return jsonify(signature_service.signature_statistics(
        group_by=request.args.get("group_by") or None,
        signer_id=request.args.get("signer_id", type=int),
    ))


@signatures_bp.route("/<int:record_id>", methods=["GET"])
def get_record(record_id):
    return jsonify(signature_service.record_detail(record_id))


@signatures_bp.route("/<int:record_id>/sign", methods=["POST"])
def sign(record_id):
    """Sign a record.

    Body: { "comment": str?, "geolocation": {lat, lng}? }
    Returns 200 with the record, the document status and ``warnings``.
    """
    data = request.get_json(silent=True) or {}
    geolocation = data.get("geolocation")
    if geolocation is not None and not isinstance(geolocation, dict):
        return api_error(E.VALIDATION_INVALID, "geolocation must be an object")
    result = workflow_service.record_signature(
        record_id,
        actor_id_from_request(data),
        comment=data.get("comment"),
        geolocation=geolocation,
        source_ip=client_ip(),
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(result)


@signatures_bp.route("/<int:record_id>/reject", methods=["POST"])
def reject(record_id):
    """Reject a record. Body: { "reason": str, "comment": str? }"""
    data = request.get_json(silent=True) or {}
    result = workflow_service.record_rejection(
        record_id,
        actor_id_from_request(data),
        data.get("reason"),
        comment=data.get("comment"),
    )
    return jsonify(result)


@signatures_bp.route("/<int:record_id>/sign-url", methods=["GET"])
def sign_url(record_id):
    return jsonify(workflow_service.get_signing_url(record_id, actor_id_from_request({})))


@signatures_bp.route("/<int:record_id>/remind", methods=["POST"])
def remind(record_id):
    data = request.get_json(silent=True) or {}
    result = workflow_service.send_signature_reminder(
        record_id, actor_id_from_request(data), message=data.get("message"),
    )
    return jsonify(result)

"""
Documents Blueprint.

Endpoints (all under /api/v1/documents):
    POST   /                          create a draft document (+ workflow)
    GET    /                          list (filters: status, doc_type, category,
                                      created_by, signer_id, q; page, per_page)
    GET    /<id>                      detail: document + workflow + records
    PUT    /<id>                      update metadata (draft only)
    PUT    /<id>/workflow             replace the workflow (draft only)
    POST   /<id>/send                 dispatch for signature
    POST   /<id>/dispatch/retry       retry the provider request
    POST   /<id>/archive              signe → archive
    DELETE /<id>                      delete (creator only, never signed/archived)
    GET    /<id>/history              audit trail
    GET    /<id>/download?version=    original | signe

Layer contract:
    - Blueprint: parse input, resolve the actor, call the service, serialise.
    - Services raise signflow.core.exceptions; the factory maps them to JSON.
"""

import logging
import os

from flask import Blueprint, jsonify, request, send_file

from signflow.blueprints import page_args
from signflow.services import document_service, workflow_service
from signflow.utils.errors import E, api_error
from signflow.utils.helpers import actor_id_from_request

logger = logging.getLogger(__name__)

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1/documents")


@documents_bp.route("", methods=["POST"])
def create_document():
    data = request.get_json(silent=True) or {}
    document = document_service.create_document(data, actor_id_from_request(data))
    return jsonify(document_service.document_detail(document.id)), 201


@documents_bp.route("", methods=["GET"])
def list_documents():
    page, per_page = page_args()
    filters = {
        "status": request.args.get("status"),
        "doc_type": request.args.get("doc_type"),
        "category": request.args.get("category"),
        "created_by_id": request.args.get("created_by", type=int),
        "signer_id": request.args.get("signer_id", type=int),
        "search": (request.args.get("q") or "").strip() or None,
    }
    return jsonify(document_service.list_documents(filters, page=page, per_page=per_page))


@documents_bp.route("/<int:doc_id>", methods=["GET"])
def get_document(doc_id):
    """Detail view; counts a view unless ?track=false."""
    track = request.args.get("track", "true").lower() != "false"
    return jsonify(document_service.document_detail(doc_id, count_view=track))


@documents_bp.route("/<int:doc_id>", methods=["PUT"])
def update_document(doc_id):
    data = request.get_json(silent=True) or {}
    document_service.update_document(doc_id, actor_id_from_request(data), data)
    return jsonify(document_service.document_detail(doc_id))


@documents_bp.route("/<int:doc_id>/workflow", methods=["PUT"])
def replace_workflow(doc_id):
    data = request.get_json(silent=True) or {}
    if "workflow" not in data:
        return api_error(E.VALIDATION_REQUIRED, "'workflow' is required")
    document_service.replace_workflow(doc_id, actor_id_from_request(data), data["workflow"])
    return jsonify(document_service.document_detail(doc_id))


@documents_bp.route("/<int:doc_id>/send", methods=["POST"])
def send_for_signature(doc_id):
    """Create the signature records and the provider request.

    Returns 200 even when the provider call failed: the local records are
    created and ``warnings`` carries ``external_dispatch_pending``.
    """
    data = request.get_json(silent=True) or {}
    result = workflow_service.dispatch_for_signing(doc_id, actor_id_from_request(data))
    return jsonify(result)


@documents_bp.route("/<int:doc_id>/dispatch/retry", methods=["POST"])
def retry_dispatch(doc_id):
    data = request.get_json(silent=True) or {}
    return jsonify(workflow_service.retry_external_dispatch(doc_id, actor_id_from_request(data)))


@documents_bp.route("/<int:doc_id>/archive", methods=["POST"])
def archive_document(doc_id):
    data = request.get_json(silent=True) or {}
    document = document_service.archive_document(doc_id, actor_id_from_request(data))
    return jsonify(document.to_dict(include_workflow=False))


@documents_bp.route("/<int:doc_id>", methods=["DELETE"])
def delete_document(doc_id):
    return jsonify(document_service.delete_document(doc_id, actor_id_from_request({})))


@documents_bp.route("/<int:doc_id>/history", methods=["GET"])
def document_history(doc_id):
    history = document_service.document_history(doc_id)
    return jsonify({"items": history, "total": len(history)})


@documents_bp.route("/<int:doc_id>/download", methods=["GET"])
def download(doc_id):
    version = request.args.get("version", "original")
    path, name = document_service.file_for_download(doc_id, version)
    if not path or not os.path.isfile(path):
        logger.warning("Stored file missing on disk: %s", path, extra={"document_id": doc_id})
        return api_error(E.NOT_FOUND, "File not found on storage")
    return send_file(path, as_attachment=True, download_name=name)

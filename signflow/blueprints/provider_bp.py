"""
Signing provider Blueprint.

Endpoints (all under /api/v1/provider):
    POST /events   inbound provider callback
    POST /sync     manual resync of one provider request

Callback contract:
    - the envelope arrives as the ``json`` multipart form field, or as a raw
      JSON body
    - authenticity is checked before anything else: 401 on failure
    - 400 when the body is not a structurally valid envelope
    - otherwise 200 with the acknowledgement text the provider expects,
      whatever the outcome of the local reconciliation
"""

import json
import logging

from flask import Blueprint, jsonify, request

from signflow.services import reconciliation_service
from signflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

provider_bp = Blueprint("provider", __name__, url_prefix="/api/v1/provider")

ACKNOWLEDGEMENT = "Hello API Event Received"


def _read_envelope():
    raw = request.form.get("json")
    if raw is None:
        raw = request.get_data(as_text=True)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


@provider_bp.route("/events", methods=["POST"])
def receive_event():
    payload = _read_envelope()
    if payload is None:
        logger.warning("Provider callback with unreadable body")
        return api_error(E.VALIDATION_INVALID, "Unreadable event payload")

    event = payload.get("event") if isinstance(payload, dict) else None
    provided_hash = event.get("event_hash") if isinstance(event, dict) else None

    # UnauthorizedError / ValidationError propagate to the 401 / 400 handlers.
    outcome = reconciliation_service.handle_provider_event(payload, provided_hash)
    logger.info("Provider callback handled: %s", outcome.get("outcome"),
                extra={"event_type": outcome.get("event_type"),
                       "document_id": outcome.get("document_id")})
    return ACKNOWLEDGEMENT, 200, {"Content-Type": "text/plain; charset=utf-8"}


@provider_bp.route("/sync", methods=["POST"])
def manual_sync():
    """Pull the provider status of a request and reconcile it.

    Body: { "signature_request_id": str }
    Returns 200 with the resulting document status, 404 for an unknown
    request id, 502 when the provider is unreachable.
    """
    data = request.get_json(silent=True) or {}
    request_id = (data.get("signature_request_id") or "").strip()
    if not request_id:
        return api_error(E.VALIDATION_REQUIRED, "'signature_request_id' is required")
    return jsonify(reconciliation_service.sync_from_provider(request_id))

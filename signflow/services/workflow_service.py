"""
Workflow orchestrator.

Coordinates the document aggregate, the signature records, the signing
provider gateway and the notification fan-out:

    dispatch_for_signing     brouillon → en_attente_signature, one record per entry
    retry_external_dispatch  re-send a document whose provider request failed
    record_signature         local signature + recompute + notifications
    record_rejection         local rejection + recompute + creator notified
    fetch_signed_artifact    download the final PDF once the document is signed
    send_signature_reminder  manual reminder (creator only)
    send_automatic_reminders scheduled reminders
    get_signing_url          cached or fresh embedded signing URL

Local records are the source of truth: every provider call happens after
the local commit and its failure is recorded, never propagated.
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_, select

from signflow.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from signflow.integrations.signing_gateway import GatewayResult, signing_gateway
from signflow.models import db
from signflow.models.document import Document, validate_document_transition
from signflow.models.signature import SignatureRecord
from signflow.services import notification_service
from signflow.services.document_service import get_document, recompute_document_status
from signflow.services.signature_service import (
    create_record,
    get_record,
    reject_record,
    sign_record,
)
from signflow.utils.helpers import as_utc, sha256_file, utcnow

logger = logging.getLogger(__name__)

_OPEN_DOCUMENT_STATUSES = ("en_attente_signature", "partiellement_signe")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _signer_payload(document: Document) -> list[dict]:
    """Gateway signer list in workflow order.

    Only the signer identity is required here. Missing names or an empty
    email are rejected by the gateway and recorded as a failed dispatch.

    Raises:
        ValidationError: a workflow entry does not resolve to a user.
    """
    signers = []
    missing = []
    for entry in document.workflow_entries:
        user = entry.user
        if user is None:
            missing.append(entry.user_id)
            continue
        signers.append({
            "user_id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "order": entry.order,
        })
    if missing:
        raise ValidationError("Workflow signers do not exist", details={"signers": missing})
    return signers


def _link_provider_signers(document: Document, provider_signers: list[dict]) -> None:
    """Copy provider signer ids and signing URLs onto the matching records (by email)."""
    ttl = int(current_app.config.get("SIGN_URL_TTL_SECONDS", 3600))
    by_email = {
        (s.get("email") or "").strip().lower(): s for s in provider_signers if s.get("email")
    }
    for record in document.signature_records:
        email = (record.signer.email or "").strip().lower() if record.signer else ""
        signer = by_email.get(email)
        if signer is None:
            continue
        record.provider_request_id = document.signature_request_id
        record.provider_signer_id = signer.get("signer_id")
        record.provider_status_code = signer.get("status_code")
        if signer.get("sign_url"):
            record.sign_url = signer["sign_url"]
            record.sign_url_expires_at = signer.get("expires_at") or utcnow() + timedelta(seconds=ttl)
        record.add_history("envoi", None, "Demande transmise au fournisseur de signature",
                           metadata={"provider_signer_id": record.provider_signer_id})


def _attempt_external_dispatch(document: Document, signers: list[dict], actor_id: int | None) -> GatewayResult:
    """Create the provider request and record the outcome on the document. Commits."""
    document.external_dispatch_attempts = (document.external_dispatch_attempts or 0) + 1
    files = [{
        "name": document.file_original_name or document.file_name,
        "path": document.file_path,
        "mime_type": document.file_mime_type,
    }]
    embedded = bool(current_app.config.get("SIGNING_CLIENT_ID"))
    create = (signing_gateway.create_embedded_signing_request if embedded
              else signing_gateway.create_signing_request)

    try:
        result = create(document.title, document.description, files, signers, document.id)
    except (ValidationError, OSError) as exc:
        result = GatewayResult(ok=False, status_code=None, data=None, error=str(exc), duration_ms=0)

    if result.ok:
        document.signature_request_id = result.data["request_id"]
        document.test_mode = signing_gateway.test_mode
        document.external_dispatch_status = "dispatched"
        document.external_dispatch_error = None
        document.external_dispatched_at = utcnow()
        _link_provider_signers(document, result.data.get("signers") or [])
        document.add_history(
            "envoi", actor_id, "Demande de signature créée chez le fournisseur",
            metadata={"signature_request_id": document.signature_request_id,
                      "embedded": embedded, **result.to_log_dict()},
        )
        logger.info("External signing request created",
                    extra={"document_id": document.id,
                           "correlation_id": document.signature_request_id})
    else:
        document.external_dispatch_status = "failed"
        document.external_dispatch_error = (result.error or "")[:2000]
        document.add_history("envoi", actor_id, "Échec de l'envoi au fournisseur (à relancer)",
                             metadata=result.to_log_dict())
        logger.warning("External dispatch failed: %s", result.error,
                       extra={"document_id": document.id, "operation": "dispatch"})
    db.session.commit()
    return result


def _dispatch_summary(document: Document) -> dict:
    return {
        "status": document.external_dispatch_status,
        "error": document.external_dispatch_error,
        "attempts": document.external_dispatch_attempts,
        "signature_request_id": document.signature_request_id,
    }


# ── Dispatch ──────────────────────────────────────────────────────────────────


def dispatch_for_signing(document_id: int, actor_id: int | None) -> dict:
    """Send a draft document for signature.

    Creates one pending record per workflow entry (skipping existing ones),
    moves the document to ``en_attente_signature`` and commits. Then tries
    the provider request: a failure, including a missing file or signer
    details the gateway rejects, leaves ``external_dispatch_status`` at
    ``failed`` for a later retry while the local records stay. Signers are
    notified best-effort.

    Raises:
        NotFoundError, ForbiddenError (not creator/owner), InvalidStateError
        (not a draft), ValidationError (empty workflow, unknown signer).
    """
    document = get_document(document_id)
    if actor_id is None or actor_id not in (document.created_by_id, document.owner_id):
        raise ForbiddenError("Only the document creator or owner can send it for signature",
                             actor_id=actor_id)
    if not validate_document_transition(document.status, "en_attente_signature"):
        raise InvalidStateError("Document", document.status, "dispatch")
    if not document.workflow_entries:
        raise ValidationError("The workflow is empty", details={"workflow": "required"})
    signers = _signer_payload(document)

    existing = {r.signer_id for r in document.signature_records}
    created = []
    for entry in document.workflow_entries:
        if entry.user_id in existing:
            continue
        created.append(create_record(document, entry, created_by_id=actor_id,
                                     expires_at=document.signing_deadline))

    document.status = "en_attente_signature"
    document.external_dispatch_status = "pending"
    document.add_history("envoi", actor_id, "Document envoyé pour signature",
                         metadata={"records_created": len(created),
                                   "signers": [s["user_id"] for s in signers]})
    db.session.commit()
    logger.info("Document dispatched: %d records created", len(created),
                extra={"document_id": document.id})

    result = _attempt_external_dispatch(document, signers, actor_id)

    notified = 0
    for record in document.signature_records:
        if record.status == "en_attente" and notification_service.notify_signature_request(document, record):
            notified += 1
    db.session.commit()

    warnings = [] if result.ok else ["external_dispatch_pending"]
    return {
        "document": document.to_dict(include_workflow=False),
        "records": [r.to_dict() for r in document.signature_records],
        "records_created": len(created),
        "notified": notified,
        "external_dispatch": _dispatch_summary(document),
        "warnings": warnings,
    }


def retry_external_dispatch(document_id: int, actor_id: int | None = None) -> dict:
    """Re-attempt the provider request of a dispatched document.

    Raises:
        InvalidStateError: the document is not awaiting signatures, or
        already has a provider request.
    """
    document = get_document(document_id)
    if actor_id is not None and actor_id not in (document.created_by_id, document.owner_id):
        raise ForbiddenError("Only the document creator or owner can retry the dispatch",
                             actor_id=actor_id)
    if document.status not in _OPEN_DOCUMENT_STATUSES:
        raise InvalidStateError("Document", document.status, "retry_dispatch")
    if document.signature_request_id or document.external_dispatch_status == "dispatched":
        raise InvalidStateError("Document", document.status, "retry_dispatch",
                                reason="already dispatched to the signing provider")

    signers = _signer_payload(document)
    result = _attempt_external_dispatch(document, signers, actor_id)
    return {
        "document_id": document.id,
        "external_dispatch": _dispatch_summary(document),
        "warnings": [] if result.ok else ["external_dispatch_pending"],
    }


# ── Status side effects ───────────────────────────────────────────────────────


def after_status_change(
    document_id: int,
    old_status: str | None,
    new_status: str | None,
    *,
    signed_record_ids=(),
    rejected_record_ids=(),
) -> dict:
    """Artifact fetch and notifications after a committed status change.

    Shared by local actions and provider reconciliation. Best-effort: never
    raises for provider or mail failures.
    """
    document = db.session.get(Document, document_id)
    outcome = {"notified": 0, "artifact": None, "warnings": []}
    if document is None:
        return outcome

    if new_status == "signe" and old_status != "signe":
        outcome["artifact"] = fetch_signed_artifact(document_id)
        if outcome["artifact"] is False:
            outcome["warnings"].append("signed_file_pending")
        outcome["notified"] = notification_service.notify_document_signed(document)
    elif new_status == "rejete" and old_status != "rejete":
        for record_id in rejected_record_ids:
            record = db.session.get(SignatureRecord, record_id)
            if record is not None and notification_service.notify_document_rejected(document, record):
                outcome["notified"] += 1
    elif signed_record_ids and new_status in _OPEN_DOCUMENT_STATUSES:
        if notification_service.notify_next_signer(document):
            outcome["notified"] = 1

    db.session.commit()
    return outcome


def fetch_signed_artifact(document_id: int) -> bool | None:
    """Download the signed PDF and store its reference with a SHA-256 hash.

    Writes ``SIGNED_FILES_DIR/<document_id>_signed.pdf`` (last writer wins).

    Returns:
        True on success, False on a provider or filesystem failure (logged),
        None when the document has no provider request.
    """
    document = db.session.get(Document, document_id)
    if document is None:
        raise NotFoundError(resource="Document", resource_id=document_id)
    if not document.signature_request_id:
        logger.info("No provider request, no signed file to fetch",
                    extra={"document_id": document_id})
        return None

    destination = os.path.join(current_app.config["SIGNED_FILES_DIR"], f"{document.id}_signed.pdf")
    result = signing_gateway.download_signed_file(document.signature_request_id, destination)
    if not result.ok:
        logger.warning("Signed file download failed: %s", result.error,
                       extra={"document_id": document_id,
                              "correlation_id": document.signature_request_id})
        return False
    try:
        digest = sha256_file(result.data["file_path"])
    except OSError as exc:
        logger.warning("Signed file unreadable after download: %s", exc,
                       extra={"document_id": document_id})
        return False

    stem = os.path.splitext(document.file_original_name or document.file_name or "document")[0]
    document.signed_file_name = f"{stem}_signe.pdf"
    document.signed_file_path = result.data["file_path"]
    document.signed_file_size = result.data["size"]
    document.signed_file_created_at = utcnow()
    document.signed_file_hash = digest
    document.add_history("synchronisation", None, "Fichier signé récupéré",
                         metadata={"sha256": digest, "size": result.data["size"]})
    db.session.commit()
    logger.info("Signed file stored (%d bytes)", result.data["size"],
                extra={"document_id": document_id})
    return True


# ── Local signer actions ──────────────────────────────────────────────────────


def _sync_warnings(document: Document) -> list[str]:
    if document.external_dispatch_status != "dispatched":
        return ["external_sync_pending"]
    return []


def record_signature(
    record_id: int,
    actor_id: int | None,
    comment: str | None = None,
    geolocation: dict | None = None,
    source_ip: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Sign, recompute the document, then notify and fetch the artifact."""
    record = sign_record(record_id, actor_id, comment=comment, geolocation=geolocation,
                         source_ip=source_ip, user_agent=user_agent)
    old_status, new_status = recompute_document_status(record.document_id)
    document = record.document
    signer_name = record.signer.full_name if record.signer else f"#{record.signer_id}"
    document.add_history("signature", actor_id, f"Signé par {signer_name}",
                         metadata={"record_id": record.id, "status": [old_status, new_status]})
    db.session.commit()
    logger.info("Record signed locally", extra={"record_id": record.id, "document_id": document.id})

    effects = after_status_change(document.id, old_status, new_status, signed_record_ids=[record.id])
    return {
        "signature": record.to_dict(),
        "document": {"id": document.id, "status": new_status, "previous_status": old_status},
        "notified": effects["notified"],
        "warnings": _sync_warnings(document) + effects["warnings"],
    }


def record_rejection(record_id: int, actor_id: int | None, reason: str | None,
                     comment: str | None = None) -> dict:
    """Reject, recompute the document (``rejete`` for a required signer), notify the creator."""
    record = reject_record(record_id, actor_id, reason, comment=comment)
    old_status, new_status = recompute_document_status(record.document_id)
    document = record.document
    signer_name = record.signer.full_name if record.signer else f"#{record.signer_id}"
    document.add_history("rejet", actor_id, f"Rejeté par {signer_name} : {record.rejection_reason}",
                         metadata={"record_id": record.id, "reason": record.rejection_reason,
                                   "comment": comment})
    db.session.commit()
    logger.info("Record rejected locally", extra={"record_id": record.id, "document_id": document.id})

    effects = after_status_change(document.id, old_status, new_status, rejected_record_ids=[record.id])
    return {
        "signature": record.to_dict(),
        "document": {"id": document.id, "status": new_status, "previous_status": old_status},
        "notified": effects["notified"],
        "warnings": _sync_warnings(document) + effects["warnings"],
    }


# ── Reminders ─────────────────────────────────────────────────────────────────


def _remind(record: SignatureRecord, actor_id: int | None, message: str | None, *, automatic: bool) -> dict:
    document = record.document
    warnings = []
    provider_ok = None
    if document.signature_request_id and record.signer is not None:
        result = signing_gateway.send_reminder(document.signature_request_id, record.signer.email)
        provider_ok = result.ok
        if not result.ok:
            warnings.append("provider_reminder_failed")
            logger.warning("Provider reminder failed: %s", result.error,
                           extra={"record_id": record.id, "document_id": document.id})

    emailed = notification_service.notify_reminder(document, record, message)
    record.reminder_count = (record.reminder_count or 0) + 1
    record.last_reminded_at = utcnow()
    record.add_history("rappel", actor_id, "Rappel automatique" if automatic else "Rappel envoyé",
                       metadata={"provider": provider_ok, "email": emailed, "message": message})
    db.session.commit()
    return {
        "record_id": record.id,
        "provider_reminded": provider_ok,
        "email_sent": emailed,
        "reminder_count": record.reminder_count,
        "warnings": warnings,
    }


def send_signature_reminder(record_id: int, actor_id: int | None, message: str | None = None) -> dict:
    """Remind one pending signer. Only the document creator may do this."""
    record = get_record(record_id)
    if not record.document.is_creator(actor_id):
        raise ForbiddenError("Only the document creator can send reminders", actor_id=actor_id)
    if record.status != "en_attente":
        raise InvalidStateError("SignatureRecord", record.status, "remind")
    return _remind(record, actor_id, message, automatic=False)


def send_automatic_reminders(now=None) -> dict:
    """Remind signers pending for more than REMINDER_AFTER_DAYS, once per cooldown."""
    now = as_utc(now) or utcnow()
    cfg = current_app.config
    created_before = now - timedelta(days=int(cfg.get("REMINDER_AFTER_DAYS", 2)))
    reminded_before = now - timedelta(hours=int(cfg.get("REMINDER_COOLDOWN_HOURS", 24)))

    records = db.session.execute(
        select(SignatureRecord)
        .join(Document, Document.id == SignatureRecord.document_id)
        .where(
            SignatureRecord.status == "en_attente",
            Document.status.in_(_OPEN_DOCUMENT_STATUSES),
            SignatureRecord.created_at <= created_before,
            or_(SignatureRecord.last_reminded_at.is_(None),
                SignatureRecord.last_reminded_at <= reminded_before),
            or_(SignatureRecord.expires_at.is_(None), SignatureRecord.expires_at > now),
        )
        .order_by(SignatureRecord.id)
    ).scalars().all()

    reminded = []
    for record in records:
        _remind(record, None, None, automatic=True)
        reminded.append(record.id)
    if reminded:
        logger.info("Automatic reminders sent: %d", len(reminded))
    return {"reminded": len(reminded), "record_ids": reminded}


# ── Signing URL ───────────────────────────────────────────────────────────────


def get_signing_url(record_id: int, actor_id: int | None, now=None) -> dict:
    """Signing URL for the record's signer: cached if still valid, else fresh.

    A provider outage is reported as a warning, not an error.
    """
    now = as_utc(now) or utcnow()
    record = get_record(record_id)
    if actor_id is None or record.signer_id != actor_id:
        raise ForbiddenError("Only the designated signer can open this signing link", actor_id=actor_id)
    if not record.can_be_signed(now):
        raise InvalidStateError("SignatureRecord", record.status, "sign_url",
                                reason="expired" if record.status == "en_attente" else None)

    cached = record.cached_sign_url(now)
    if cached:
        return {"sign_url": cached, "expires_at": as_utc(record.sign_url_expires_at).isoformat(),
                "source": "cache", "warnings": []}
    if not record.provider_signer_id:
        return {"sign_url": None, "expires_at": None, "source": None,
                "warnings": ["external_sync_pending"]}

    result = signing_gateway.get_embedded_sign_url(record.provider_signer_id)
    if not result.ok:
        logger.warning("Embedded sign URL unavailable: %s", result.error,
                       extra={"record_id": record.id})
        return {"sign_url": None, "expires_at": None, "source": None,
                "warnings": ["signing_provider_unavailable"]}

    ttl = int(current_app.config.get("SIGN_URL_TTL_SECONDS", 3600))
    record.sign_url = result.data["sign_url"]
    record.sign_url_expires_at = result.data["expires_at"] or now + timedelta(seconds=ttl)
    db.session.commit()
    return {"sign_url": record.sign_url, "expires_at": as_utc(record.sign_url_expires_at).isoformat(),
            "source": "provider", "warnings": []}

"""
Provider event reconciliation.

Applies asynchronous, possibly duplicated, possibly out-of-order signing
provider callbacks to local state:

    1. authenticity check (nothing is read or written before it passes)
    2. envelope parsing into a ProviderEvent (tagged by EventKind)
    3. test events acknowledged, events without correlation id ignored
    4. dedupe through ProviderEventLog (replays of a processed event are no-ops)
    5. per-kind application through guarded record transitions
    6. document status re-derived from the full record set, then commit
    7. side effects (artifact fetch, notifications) after the commit

Local store failures (``OperationalError``) are retried a bounded number of
times, then the event is marked ``failed`` for the ``provider_event_retry``
job. The transport acknowledgement to the provider does not depend on it.

The manual resync path builds the same ProviderEvent from the gateway's
status response and goes through ``apply_event`` as well.
"""

from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from signflow.core.exceptions import (
    GatewayError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from signflow.integrations.signing_gateway import (
    normalize_signature_request,
    signing_gateway,
)
from signflow.models import db
from signflow.models.document import Document
from signflow.models.provider_event import ProviderEventLog
from signflow.models.signature import SignatureRecord
from signflow.services.document_service import recompute_document_status
from signflow.services.signature_service import transition_record
from signflow.utils.helpers import as_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DECLINE_REASON = "Non spécifié"


class EventKind(enum.Enum):
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    ALL_SIGNED = "all_signed"
    DECLINED = "declined"
    ERROR = "error"
    TEST = "test"
    MANUAL_SYNC = "manual_sync"
    UNKNOWN = "unknown"


_EVENT_TYPES = {
    "signature_request_sent": EventKind.SENT,
    "signature_request_viewed": EventKind.VIEWED,
    "signature_request_signed": EventKind.SIGNED,
    "signature_request_all_signed": EventKind.ALL_SIGNED,
    "signature_request_declined": EventKind.DECLINED,
    "signature_request_invalid": EventKind.ERROR,
    "signature_request_error": EventKind.ERROR,
    "file_error": EventKind.ERROR,
    "sign_url_invalid": EventKind.ERROR,
    "callback_test": EventKind.TEST,
}

# Kinds whose signer outcomes may move record statuses.
_MUTATING_KINDS = {EventKind.SIGNED, EventKind.ALL_SIGNED, EventKind.DECLINED, EventKind.MANUAL_SYNC}


@dataclass
class SignerOutcome:
    provider_signer_id: str | None
    email: str | None
    status_code: str | None
    signed_at: datetime | None = None
    decline_reason: str | None = None
    last_viewed_at: datetime | None = None


@dataclass
class ProviderEvent:
    kind: EventKind
    event_type: str
    event_time: datetime | None
    raw_event_time: str | None
    correlation_id: str | None
    document_hint: int | None = None
    outcomes: list[SignerOutcome] = field(default_factory=list)
    is_complete: bool = False
    is_declined: bool = False

    @property
    def dedupe_key(self) -> str:
        signers = ",".join(sorted(
            f"{o.provider_signer_id}:{o.status_code}" for o in self.outcomes
        ))
        raw = f"{self.correlation_id}|{self.event_type}|{self.raw_event_time}|{signers}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ── Parsing ────────────────────────────────────────────────────────────────────


def _outcomes(signers: list[dict]) -> list[SignerOutcome]:
    return [
        SignerOutcome(
            provider_signer_id=s.get("signer_id"),
            email=(s.get("email") or "").strip().lower() or None,
            status_code=s.get("status_code"),
            signed_at=parse_datetime(s.get("signed_at")),
            decline_reason=s.get("decline_reason"),
            last_viewed_at=parse_datetime(s.get("last_viewed_at")),
        )
        for s in signers
    ]


def _document_hint(metadata: dict) -> int | None:
    try:
        return int(metadata.get("document_id"))
    except (TypeError, ValueError):
        return None


def parse_event(payload) -> ProviderEvent:
    """Build a ProviderEvent from a callback envelope.

    Envelope: ``{"event": {"event_type", "event_time", "event_hash"},
    "signature_request": {...}}``. The signature request is absent on test
    callbacks.

    Raises:
        ValidationError: the envelope is not structurally understood.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), dict):
        raise ValidationError("Malformed provider event envelope")
    event = payload["event"]
    event_type = str(event.get("event_type") or "").strip()
    if not event_type:
        raise ValidationError("Provider event has no event_type")

    raw_request = payload.get("signature_request")
    if raw_request is not None and not isinstance(raw_request, dict):
        raise ValidationError("Malformed signature_request in provider event")
    request = normalize_signature_request(raw_request or {})

    raw_time = event.get("event_time")
    return ProviderEvent(
        kind=_EVENT_TYPES.get(event_type, EventKind.UNKNOWN),
        event_type=event_type,
        event_time=parse_datetime(raw_time),
        raw_event_time=str(raw_time) if raw_time is not None else None,
        correlation_id=request["request_id"],
        document_hint=_document_hint(request["metadata"]),
        outcomes=_outcomes(request["signers"]),
        is_complete=request["is_complete"],
        is_declined=request["is_declined"],
    )


def event_from_status(status_data: dict) -> ProviderEvent:
    """ProviderEvent equivalent of a ``get_request_status`` response."""
    now = utcnow()
    return ProviderEvent(
        kind=EventKind.MANUAL_SYNC,
        event_type="manual_sync",
        event_time=now,
        raw_event_time=now.isoformat(),
        correlation_id=status_data.get("request_id"),
        document_hint=_document_hint(status_data.get("metadata") or {}),
        outcomes=_outcomes(status_data.get("signers") or []),
        is_complete=bool(status_data.get("is_complete")),
        is_declined=bool(status_data.get("is_declined")),
    )


# ── Matching ───────────────────────────────────────────────────────────────────


def _resolve_document(event: ProviderEvent) -> Document | None:
    """Document by provider request id.

    Falls back to the ``document_id`` echoed in the request metadata, but only
    for a document that has no request id yet (dispatch response was lost).
    """
    document = db.session.execute(
        select(Document).where(Document.signature_request_id == event.correlation_id)
    ).scalar_one_or_none()
    if document is not None or event.document_hint is None:
        return document

    candidate = db.session.get(Document, event.document_hint)
    if candidate is not None and candidate.signature_request_id is None \
            and candidate.status != "brouillon":
        candidate.signature_request_id = event.correlation_id
        logger.info("Adopted provider request id from event metadata",
                    extra={"document_id": candidate.id, "correlation_id": event.correlation_id})
        return candidate
    return None


def _match_record(document: Document, outcome: SignerOutcome) -> SignatureRecord | None:
    """Record for a signer outcome: provider signer id first, then email.

    An email match stores the provider signer id on the record so later
    events match directly.
    """
    records = document.signature_records
    if outcome.provider_signer_id:
        for record in records:
            if record.provider_signer_id == outcome.provider_signer_id:
                return record
    if outcome.email:
        for record in records:
            signer_email = (record.signer.email or "").lower() if record.signer else ""
            if signer_email == outcome.email and not record.provider_signer_id:
                record.provider_signer_id = outcome.provider_signer_id
                record.provider_request_id = document.signature_request_id
                return record
    return None


# ── Application ────────────────────────────────────────────────────────────────


def _apply_signed(record: SignatureRecord, outcome: SignerOutcome, event: ProviderEvent) -> bool:
    signed_at = outcome.signed_at or event.event_time or utcnow()
    moved = transition_record(
        record.id, "signe",
        signed_at=signed_at,
        server_timestamp=utcnow(),
        provider_status_code=outcome.status_code,
    )
    if moved:
        record.add_history("signature", record.signer_id, "Signature confirmée par le fournisseur",
                           metadata={"source": "provider", "event_type": event.event_type})
    return moved


def _apply_declined(record: SignatureRecord, outcome: SignerOutcome, event: ProviderEvent) -> bool:
    reason = (outcome.decline_reason or "").strip() or DEFAULT_DECLINE_REASON
    moved = transition_record(
        record.id, "rejete",
        rejected_at=event.event_time or utcnow(),
        rejection_reason=reason,
        provider_status_code=outcome.status_code,
    )
    if moved:
        record.add_history("rejet", record.signer_id, f"Signature refusée chez le fournisseur : {reason}",
                           metadata={"source": "provider", "event_type": event.event_type,
                                     "reason": reason})
    return moved


def _note_view(record: SignatureRecord, outcome: SignerOutcome, event: ProviderEvent) -> None:
    if any(h.action == "ouverture" for h in record.history):
        return
    record.add_history("ouverture", record.signer_id, "Document consulté chez le fournisseur",
                       metadata={"viewed_at": (outcome.last_viewed_at or event.event_time or utcnow()).isoformat()})


def apply_event(event: ProviderEvent) -> dict:
    """Apply one parsed event to local state. Does not commit.

    Every path that reaches a document ends with
    ``recompute_document_status``.

    Returns:
        {"applied", "document_id", "previous_status", "status",
         "signed_record_ids", "rejected_record_ids", "reason"}
    """
    result = {
        "applied": False,
        "document_id": None,
        "previous_status": None,
        "status": None,
        "signed_record_ids": [],
        "rejected_record_ids": [],
        "reason": None,
    }
    if event.kind is EventKind.TEST:
        result["reason"] = "test event"
        return result
    if not event.correlation_id:
        logger.warning("Provider event %s without correlation id ignored", event.event_type,
                       extra={"event_type": event.event_type})
        result["reason"] = "missing correlation id"
        return result

    document = _resolve_document(event)
    if document is None:
        logger.warning("Provider event %s for unknown request ignored", event.event_type,
                       extra={"event_type": event.event_type, "correlation_id": event.correlation_id})
        result["reason"] = "unknown document"
        return result
    result["document_id"] = document.id

    if event.kind in (EventKind.ERROR, EventKind.UNKNOWN):
        logger.warning("Provider event %s logged without state change", event.event_type,
                       extra={"event_type": event.event_type, "document_id": document.id,
                              "correlation_id": event.correlation_id})
        result["reason"] = "informational"
        result["status"] = result["previous_status"] = document.status
        return result

    for outcome in event.outcomes:
        record = _match_record(document, outcome)
        if record is None:
            if event.kind in _MUTATING_KINDS:
                logger.warning("No signature record matches provider signer %s",
                               outcome.provider_signer_id,
                               extra={"document_id": document.id, "correlation_id": event.correlation_id})
            continue

        status_code = (outcome.status_code or "").lower()
        if event.kind in (EventKind.SIGNED, EventKind.ALL_SIGNED, EventKind.MANUAL_SYNC) \
                and status_code == "signed":
            if _apply_signed(record, outcome, event):
                result["signed_record_ids"].append(record.id)
        elif event.kind in (EventKind.DECLINED, EventKind.MANUAL_SYNC) and status_code == "declined":
            if _apply_declined(record, outcome, event):
                result["rejected_record_ids"].append(record.id)
        elif event.kind is EventKind.VIEWED and outcome.last_viewed_at:
            _note_view(record, outcome, event)

        if event.event_time and (record.last_event_at is None or event.kind is EventKind.MANUAL_SYNC
                                 or event.event_time >= as_utc(record.last_event_at)):
            record.last_event_type = event.event_type
            record.last_event_at = event.event_time
        if status_code and record.status == "en_attente":
            record.provider_status_code = status_code

    old_status, new_status = recompute_document_status(document.id)
    changed = result["signed_record_ids"] or result["rejected_record_ids"]
    if changed:
        document.add_history(
            "synchronisation", None,
            f"Événement fournisseur {event.event_type} appliqué",
            metadata={
                "event_type": event.event_type,
                "signed": result["signed_record_ids"],
                "rejected": result["rejected_record_ids"],
                "status": [old_status, new_status],
            },
        )
    if event.kind is EventKind.ALL_SIGNED and new_status != "signe":
        logger.warning("Provider reports all signed but local status is %s", new_status,
                       extra={"document_id": document.id, "correlation_id": event.correlation_id})

    result.update(applied=True, previous_status=old_status, status=new_status)
    return result


def _run_side_effects(result: dict) -> None:
    from signflow.services.workflow_service import after_status_change

    if not result.get("document_id"):
        return
    after_status_change(
        result["document_id"],
        result["previous_status"],
        result["status"],
        signed_record_ids=result["signed_record_ids"],
        rejected_record_ids=result["rejected_record_ids"],
    )


# ── Event log ─────────────────────────────────────────────────────────────────


def _register_delivery(event: ProviderEvent, payload) -> ProviderEventLog:
    key = event.dedupe_key
    log = db.session.execute(
        select(ProviderEventLog).where(ProviderEventLog.dedupe_key == key)
    ).scalar_one_or_none()
    if log is not None:
        log.delivery_count = (log.delivery_count or 1) + 1
        return log

    log = ProviderEventLog(
        dedupe_key=key,
        correlation_id=event.correlation_id,
        event_type=event.event_type,
        event_time=event.event_time,
        outcome="received",
        delivery_count=1,
        attempts=0,
        payload=payload,
    )
    try:
        with db.session.begin_nested():
            db.session.add(log)
            db.session.flush()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert.
        log = db.session.execute(
            select(ProviderEventLog).where(ProviderEventLog.dedupe_key == key)
        ).scalar_one()
        log.delivery_count = (log.delivery_count or 1) + 1
    return log


def _process(event: ProviderEvent, payload) -> dict:
    log = _register_delivery(event, payload)
    if log.outcome in ("processed", "ignored"):
        db.session.commit()
        logger.info("Duplicate provider event %s (delivery #%d) skipped",
                    event.event_type, log.delivery_count,
                    extra={"event_type": event.event_type, "correlation_id": event.correlation_id})
        return {"outcome": "duplicate", "event_type": event.event_type,
                "document_id": log.document_id}

    log.attempts = (log.attempts or 0) + 1
    result = apply_event(event)
    log.outcome = "processed" if result["applied"] else "ignored"
    log.document_id = result["document_id"]
    log.processed_at = utcnow()
    log.last_error = None
    db.session.commit()

    _run_side_effects(result)
    return {
        "outcome": log.outcome,
        "event_type": event.event_type,
        "document_id": result["document_id"],
        "status": result["status"],
        "reason": result["reason"],
    }


def _mark_failed(event: ProviderEvent, payload, error: Exception) -> None:
    try:
        log = _register_delivery(event, payload)
        log.outcome = "failed"
        log.attempts = (log.attempts or 0) + 1
        log.last_error = str(error)[:2000]
        db.session.commit()
    except OperationalError as exc:
        db.session.rollback()
        logger.error("Could not record failed provider event %s: %s", event.event_type, exc,
                     extra={"event_type": event.event_type, "correlation_id": event.correlation_id})


def _process_with_retry(event: ProviderEvent, payload) -> dict:
    attempts = max(int(current_app.config.get("EVENT_STORE_RETRY_ATTEMPTS", 3)), 1)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return _process(event, payload)
        except OperationalError as exc:
            db.session.rollback()
            last_error = exc
            logger.warning("Local store error applying %s (attempt %d/%d): %s",
                           event.event_type, attempt, attempts, exc,
                           extra={"event_type": event.event_type, "correlation_id": event.correlation_id})

    _mark_failed(event, payload, last_error)
    logger.error("Provider event %s left for retry after %d attempts", event.event_type, attempts,
                 extra={"event_type": event.event_type, "correlation_id": event.correlation_id})
    return {"outcome": "failed", "event_type": event.event_type, "document_id": None}


# ── Entry points ──────────────────────────────────────────────────────────────


def handle_provider_event(payload, provided_hash: str | None) -> dict:
    """Verify, parse, dedupe and apply one inbound provider callback.

    Raises:
        UnauthorizedError: authenticity check failed. Nothing was touched.
        ValidationError:   the envelope is not structurally understood.

    Returns:
        {"outcome": processed|ignored|duplicate|failed|acknowledged, ...}
    """
    if not signing_gateway.verify_event_authenticity(payload, provided_hash):
        logger.warning("Provider event rejected: authenticity check failed")
        raise UnauthorizedError("Provider event authenticity check failed")

    event = parse_event(payload)
    if event.kind is EventKind.TEST:
        logger.info("Provider callback test acknowledged")
        return {"outcome": "acknowledged", "event_type": event.event_type}
    if not event.correlation_id:
        logger.warning("Provider event %s without correlation id ignored", event.event_type,
                       extra={"event_type": event.event_type})
        return {"outcome": "ignored", "event_type": event.event_type,
                "reason": "missing correlation id"}

    return _process_with_retry(event, payload)


def sync_from_provider(request_id: str) -> dict:
    """Pull the provider's current status and reconcile it like an event.

    Raises:
        ValidationError: no request id given.
        GatewayError:    the provider could not be queried.
        NotFoundError:   no local document carries this request id.
    """
    request_id = (request_id or "").strip()
    if not request_id:
        raise ValidationError("A provider request id is required",
                              details={"signature_request_id": "required"})

    status = signing_gateway.get_request_status(request_id)
    if not status.ok:
        raise GatewayError("get_request_status", status.error, status.status_code)

    event = event_from_status(status.data or {})
    event.correlation_id = event.correlation_id or request_id
    result = apply_event(event)
    if result["document_id"] is None:
        db.session.rollback()
        raise NotFoundError(resource="Document for provider request", resource_id=request_id)

    document = db.session.get(Document, result["document_id"])
    document.add_history("synchronisation", None, "Synchronisation manuelle avec le fournisseur",
                         metadata={"signature_request_id": request_id,
                                   "signed": result["signed_record_ids"],
                                   "rejected": result["rejected_record_ids"]})
    db.session.commit()
    logger.info("Manual sync applied: %d signed, %d rejected",
                len(result["signed_record_ids"]), len(result["rejected_record_ids"]),
                extra={"document_id": result["document_id"], "correlation_id": request_id})

    _run_side_effects(result)
    return {
        "document_id": result["document_id"],
        "previous_status": result["previous_status"],
        "status": result["status"],
        "signed_record_ids": result["signed_record_ids"],
        "rejected_record_ids": result["rejected_record_ids"],
    }


def retry_failed_events(limit: int = 100) -> dict:
    """Re-apply events whose local processing failed. Used by the retry job."""
    failed = db.session.execute(
        select(ProviderEventLog)
        .where(ProviderEventLog.outcome == "failed")
        .order_by(ProviderEventLog.received_at)
        .limit(limit)
    ).scalars().all()

    retried = processed = still_failed = 0
    for log in failed:
        retried += 1
        try:
            event = parse_event(log.payload)
        except ValidationError as exc:
            log.outcome = "ignored"
            log.last_error = str(exc)
            db.session.commit()
            continue

        log_id = log.id
        try:
            log.attempts = (log.attempts or 0) + 1
            result = apply_event(event)
            log.outcome = "processed" if result["applied"] else "ignored"
            log.document_id = result["document_id"]
            log.processed_at = utcnow()
            log.last_error = None
            db.session.commit()
        except OperationalError as exc:
            db.session.rollback()
            still_failed += 1
            stale = db.session.get(ProviderEventLog, log_id)
            if stale is not None:
                stale.last_error = str(exc)[:2000]
                db.session.commit()
            logger.warning("Retry of provider event #%s failed again: %s", log_id, exc,
                           extra={"event_type": event.event_type})
            continue

        processed += 1
        _run_side_effects(result)

    return {"retried": retried, "processed": processed, "failed": still_failed}


def list_events(outcome: str | None = None, limit: int = 50) -> list[dict]:
    stmt = select(ProviderEventLog).order_by(ProviderEventLog.id.desc()).limit(min(limit, 200))
    if outcome:
        stmt = stmt.where(ProviderEventLog.outcome == outcome)
    return [e.to_dict() for e in db.session.execute(stmt).scalars()]

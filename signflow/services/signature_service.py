"""
Signature record service.

Per-signer obligation and its local state machine:

    en_attente ─┬─► signe
                ├─► rejete
                ├─► expire   (sweep only)
                └─► annule   (administrative)

Every status write is a guarded compare-and-set
(``UPDATE ... WHERE id = :id AND status = 'en_attente'``), so a late or
duplicated event can never move a record out of a terminal state, and
history is appended only by the caller whose UPDATE actually moved the row.

The primitives here do not commit: the workflow orchestrator and the
reconciliation engine recompute the document status in the same
transaction and commit once. The sweep and purge helpers commit themselves.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.util import identity_key

from signflow.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from signflow.models import db
from signflow.models.document import Document
from signflow.models.signature import (
    RECORD_STATUSES,
    SignatureRecord,
    validate_record_transition,
)
from signflow.models.user import User
from signflow.utils.helpers import as_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

_HISTORY_MAX_PER_PAGE = 50


# ── Lookups ────────────────────────────────────────────────────────────────────


def get_record(record_id: int) -> SignatureRecord:
    record = db.session.get(SignatureRecord, record_id)
    if record is None:
        raise NotFoundError(resource="SignatureRecord", resource_id=record_id)
    return record


def record_detail(record_id: int) -> dict:
    """Record with its history, its document summary and signer summary."""
    record = get_record(record_id)
    payload = record.to_dict(include_history=True)
    document = record.document
    payload["document"] = {
        "id": document.id,
        "title": document.title,
        "status": document.status,
        "doc_type": document.doc_type,
    }
    payload["signer"] = record.signer.summary() if record.signer else None
    return payload


# ── Creation ───────────────────────────────────────────────────────────────────


def create_record(document: Document, entry, *, created_by_id: int | None,
                  expires_at=None) -> SignatureRecord:
    """Insert the record for one workflow entry.

    Raises:
        ConflictError: a record already exists for (document, signer).
    """
    record = SignatureRecord(
        document_id=document.id,
        workflow_entry_id=entry.id,
        signer_id=entry.user_id,
        created_by_id=created_by_id,
        status="en_attente",
        order=entry.order,
        expires_at=expires_at,
    )
    try:
        with db.session.begin_nested():
            db.session.add(record)
            db.session.flush()
    except IntegrityError as exc:
        logger.warning("Duplicate signature record doc=%s signer=%s: %s",
                       document.id, entry.user_id, exc.orig,
                       extra={"document_id": document.id})
        raise ConflictError("SignatureRecord", "document_id,signer_id",
                            f"{document.id},{entry.user_id}") from exc
    record.add_history("creation", created_by_id,
                       "Signature créée lors de l'envoi pour signature")
    return record


# ── Guarded transitions ────────────────────────────────────────────────────────


def transition_record(record_id: int, to_status: str, *, unexpired_at=None, **values) -> bool:
    """Compare-and-set a record out of ``en_attente``.

    Args:
        to_status:    one of signe / rejete / expire / annule.
        unexpired_at: when set, the UPDATE additionally requires
                      ``expires_at IS NULL OR expires_at > unexpired_at``.
        values:       extra columns written together with the status.

    Returns:
        True when this call moved the row, False when it was no longer pending.
    """
    if not validate_record_transition("en_attente", to_status):
        raise ValueError(f"Invalid signature record target status: {to_status}")

    conditions = [SignatureRecord.id == record_id, SignatureRecord.status == "en_attente"]
    if unexpired_at is not None:
        conditions.append(or_(
            SignatureRecord.expires_at.is_(None),
            SignatureRecord.expires_at > unexpired_at,
        ))

    stmt = (
        update(SignatureRecord)
        .where(and_(*conditions))
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    moved = db.session.execute(stmt).rowcount == 1
    if moved:
        cached = db.session.identity_map.get(identity_key(SignatureRecord, record_id))
        if cached is not None:
            db.session.expire(cached)
        logger.debug("Signature record → %s", to_status,
                     extra={"record_id": record_id})
    return moved


def sign_record(
    record_id: int,
    actor_id: int | None,
    comment: str | None = None,
    geolocation: dict | None = None,
    source_ip: str | None = None,
    user_agent: str | None = None,
    *,
    now=None,
) -> SignatureRecord:
    """Sign a record on behalf of its signer.

    Raises:
        NotFoundError, ForbiddenError (actor is not the signer),
        InvalidStateError (not signable: terminal status or expired).
    """
    now = as_utc(now) or utcnow()
    record = get_record(record_id)
    if actor_id is None or record.signer_id != actor_id:
        raise ForbiddenError("Only the designated signer can sign this record", actor_id=actor_id)
    if not record.can_be_signed(now):
        reason = "expired" if record.status == "en_attente" else None
        raise InvalidStateError("SignatureRecord", record.status, "sign", reason=reason)

    moved = transition_record(
        record_id, "signe",
        unexpired_at=now,
        signed_at=now,
        server_timestamp=now,
        comment=comment,
        geolocation=geolocation,
        source_ip=source_ip,
        user_agent=(user_agent or "")[:500] or None,
    )
    if not moved:
        db.session.refresh(record)
        raise InvalidStateError("SignatureRecord", record.status, "sign",
                                reason="record changed concurrently")

    record.add_history("signature", actor_id, "Document signé",
                       metadata={"ip": source_ip, "user_agent": user_agent, "source": "local"})
    return record


def reject_record(
    record_id: int,
    actor_id: int | None,
    reason: str | None,
    comment: str | None = None,
    *,
    now=None,
) -> SignatureRecord:
    """Reject a record on behalf of its signer.

    Expiry is not checked: a lapsed pending record can still be rejected.

    Raises:
        ValidationError (reason missing), NotFoundError, ForbiddenError,
        InvalidStateError (status is not ``en_attente``).
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required", details={"reason": "required"})
    now = as_utc(now) or utcnow()
    record = get_record(record_id)
    if actor_id is None or record.signer_id != actor_id:
        raise ForbiddenError("Only the designated signer can reject this record", actor_id=actor_id)
    if record.status != "en_attente":
        raise InvalidStateError("SignatureRecord", record.status, "reject")

    moved = transition_record(
        record_id, "rejete",
        rejected_at=now,
        rejection_reason=reason,
        rejection_comment=comment,
    )
    if not moved:
        db.session.refresh(record)
        raise InvalidStateError("SignatureRecord", record.status, "reject",
                                reason="record changed concurrently")

    record.add_history("rejet", actor_id, f"Signature rejetée : {reason}",
                       metadata={"reason": reason, "comment": comment, "source": "local"})
    return record


# ── Expiration sweep ───────────────────────────────────────────────────────────


def expire_overdue_records(now=None) -> dict:
    """Move every pending record whose expiry has passed to ``expire``.

    Records without an expiry are never touched. Re-running is a no-op for
    records already expired. Commits.

    Returns:
        {"expired": int, "documents": [document ids recomputed]}
    """
    from signflow.services.document_service import recompute_document_status

    now = as_utc(now) or utcnow()
    candidates = db.session.execute(
        select(SignatureRecord.id, SignatureRecord.document_id)
        .where(
            SignatureRecord.status == "en_attente",
            SignatureRecord.expires_at.is_not(None),
            SignatureRecord.expires_at <= now,
        )
    ).all()

    expired = 0
    touched_documents: set[int] = set()
    for record_id, document_id in candidates:
        if not transition_record(record_id, "expire"):
            continue
        record = db.session.get(SignatureRecord, record_id)
        record.add_history("expiration", None, "Signature expirée",
                           metadata={"swept_at": now.isoformat()})
        expired += 1
        touched_documents.add(document_id)

    for document_id in sorted(touched_documents):
        recompute_document_status(document_id)

    db.session.commit()
    if expired:
        logger.info("Expiration sweep: %d records expired across %d documents",
                    expired, len(touched_documents))
    return {"expired": expired, "documents": sorted(touched_documents)}


# ── Read side ──────────────────────────────────────────────────────────────────


def pending_records_for_signer(signer_id: int, now=None) -> list[dict]:
    """Pending, still-signable records of a signer, newest first."""
    now = as_utc(now) or utcnow()
    rows = db.session.execute(
        select(SignatureRecord, Document)
        .join(Document, Document.id == SignatureRecord.document_id)
        .where(
            SignatureRecord.signer_id == signer_id,
            SignatureRecord.status == "en_attente",
            or_(SignatureRecord.expires_at.is_(None), SignatureRecord.expires_at > now),
        )
        .order_by(SignatureRecord.created_at.desc(), SignatureRecord.id.desc())
    ).all()

    creator_ids = {doc.created_by_id for _, doc in rows if doc.created_by_id}
    creators = {
        u.id: u for u in db.session.execute(
            select(User).where(User.id.in_(creator_ids))
        ).scalars()
    } if creator_ids else {}

    items = []
    for record, document in rows:
        item = record.to_dict()
        creator = creators.get(document.created_by_id)
        item["document"] = {
            "id": document.id,
            "title": document.title,
            "description": document.description,
            "status": document.status,
            "doc_type": document.doc_type,
            "signing_deadline": document.signing_deadline.isoformat() if document.signing_deadline else None,
            "created_by": creator.summary() if creator else None,
        }
        items.append(item)
    return items


def signer_history(
    signer_id: int,
    status: str | None = None,
    date_from=None,
    date_to=None,
    page: int = 1,
    per_page: int = 10,
) -> dict:
    """Paginated history of a signer's records (all statuses unless filtered)."""
    stmt = select(SignatureRecord).where(SignatureRecord.signer_id == signer_id)
    if status:
        if status not in RECORD_STATUSES:
            raise ValidationError(f"Unknown status '{status}'")
        stmt = stmt.where(SignatureRecord.status == status)
    start = parse_datetime(date_from)
    end = parse_datetime(date_to)
    if start:
        stmt = stmt.where(SignatureRecord.created_at >= start)
    if end:
        stmt = stmt.where(SignatureRecord.created_at <= end)

    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 10), 1), _HISTORY_MAX_PER_PAGE)
    total = db.session.execute(select(db.func.count()).select_from(stmt.subquery())).scalar_one()
    records = db.session.execute(
        stmt.order_by(SignatureRecord.updated_at.desc(), SignatureRecord.id.desc())
        .limit(per_page).offset((page - 1) * per_page)
    ).scalars().all()

    items = []
    for record in records:
        item = record.to_dict()
        item["document"] = {"id": record.document.id, "title": record.document.title,
                            "status": record.document.status}
        items.append(item)
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": math.ceil(total / per_page) if total else 0,
    }


def _mean_hours(delays) -> float | None:
    delays = [d for d in delays if d is not None]
    if not delays:
        return None
    seconds = sum(d.total_seconds() for d in delays) / len(delays)
    return round(seconds / 3600, 2)


def signature_statistics(group_by: str | None = None, signer_id: int | None = None, now=None) -> dict:
    """Counts per status, mean time-to-signature and overdue count.

    Mean delay is computed over signed records only. ``group_by="signer"``
    buckets signed records by signer id, ``group_by="month"`` by the
    (year, month) of ``signed_at``.
    """
    if group_by not in (None, "signer", "month"):
        raise ValidationError("group_by must be 'signer' or 'month'")
    now = as_utc(now) or utcnow()

    stmt = select(SignatureRecord)
    if signer_id is not None:
        stmt = stmt.where(SignatureRecord.signer_id == signer_id)
    records = db.session.execute(stmt).scalars().all()

    by_status = {s: 0 for s in sorted(RECORD_STATUSES)}
    for r in records:
        by_status[r.status] = by_status.get(r.status, 0) + 1
    signed = [r for r in records if r.status == "signe" and r.signed_at]

    stats: dict = {
        "total": len(records),
        "by_status": by_status,
        "mean_signing_delay_hours": _mean_hours(r.signing_delay() for r in signed),
        "overdue": sum(1 for r in records if r.is_overdue(now)),
    }

    if group_by == "signer":
        buckets = defaultdict(list)
        for r in signed:
            buckets[r.signer_id].append(r)
        stats["groups"] = [
            {
                "signer_id": sid,
                "signed": len(rs),
                "mean_signing_delay_hours": _mean_hours(r.signing_delay() for r in rs),
            }
            for sid, rs in sorted(buckets.items())
        ]
    elif group_by == "month":
        buckets = defaultdict(list)
        for r in signed:
            signed_at = as_utc(r.signed_at)
            buckets[(signed_at.year, signed_at.month)].append(r)
        stats["groups"] = [
            {
                "year": year,
                "month": month,
                "signed": len(rs),
                "mean_signing_delay_hours": _mean_hours(r.signing_delay() for r in rs),
            }
            for (year, month), rs in sorted(buckets.items())
        ]
    return stats


# ── Maintenance ───────────────────────────────────────────────────────────────


def purge_orphaned_records(document_id: int, actor_id: int | None = None) -> int:
    """Delete records whose signer no longer appears in the document's workflow.

    Removing a record from the collection deletes it through the
    delete-orphan cascade. This is the only way a record is deleted on its
    own. Commits.
    """
    document = db.session.get(Document, document_id)
    if document is None:
        raise NotFoundError(resource="Document", resource_id=document_id)

    workflow_users = {e.user_id for e in document.workflow_entries}
    orphans = [r for r in document.signature_records if r.signer_id not in workflow_users]
    orphan_ids = [r.id for r in orphans]
    for record in orphans:
        document.signature_records.remove(record)
    if orphans:
        document.add_history("modification", actor_id,
                             f"{len(orphans)} signature(s) orpheline(s) supprimée(s)",
                             metadata={"record_ids": orphan_ids})
    db.session.commit()
    if orphans:
        logger.warning("Purged %d orphaned signature records", len(orphans),
                       extra={"document_id": document_id})
    return len(orphans)

"""
Document aggregate service.

Owns document CRUD, the workflow definition and the one place where the
document status is written: ``recompute_document_status``.

Design decisions:
    - The aggregate status is re-derived from the full workflow + record
      set on every mutation, never patched incrementally.
    - Workflow and metadata are editable only while the document is a draft.
    - Services raise ``signflow.core.exceptions`` types and own the commit;
      blueprints only parse input and serialise output.
"""

from __future__ import annotations

import logging
import math

from sqlalchemy import or_, select

from signflow.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from signflow.integrations.signing_gateway import signing_gateway
from signflow.models import db
from signflow.models.document import (
    DOCUMENT_CATEGORIES,
    DOCUMENT_STATUSES,
    DOCUMENT_TYPES,
    ENTRY_ROLES,
    RECORD_TO_ENTRY_STATUS,
    Document,
    DocumentHistory,
    WorkflowEntry,
    derive_document_status,
)
from signflow.models.signature import SignatureRecord
from signflow.models.user import User
from signflow.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

_MAX_PER_PAGE = 100


# ── Private helpers ────────────────────────────────────────────────────────────


def _load_document(document_id: int, *, fresh: bool = False) -> Document:
    stmt = select(Document).where(Document.id == document_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    document = db.session.execute(stmt).scalar_one_or_none()
    if document is None:
        raise NotFoundError(resource="Document", resource_id=document_id)
    return document


def _require_creator(document: Document, actor_id: int | None, action: str) -> None:
    if not document.is_creator(actor_id):
        raise ForbiddenError(
            f"Only the document creator can {action} document {document.id}",
            actor_id=actor_id,
        )


def _require_draft(document: Document, action: str) -> None:
    if document.status != "brouillon":
        raise InvalidStateError("Document", document.status, action,
                                reason="only draft documents can be edited")


def _coerce_bool(value, default=True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "oui")
    return bool(value)


def _build_workflow_entries(raw_entries) -> list[WorkflowEntry]:
    """Validate a workflow definition and build unsaved WorkflowEntry rows."""
    if raw_entries is None:
        return []
    if not isinstance(raw_entries, list):
        raise ValidationError("workflow must be a list")

    entries: list[WorkflowEntry] = []
    seen_users: set[int] = set()
    errors: dict[str, str] = {}

    for idx, raw in enumerate(raw_entries):
        pos = str(idx + 1)
        if not isinstance(raw, dict):
            errors[pos] = "entry must be an object"
            continue
        try:
            user_id = int(raw.get("user_id"))
        except (TypeError, ValueError):
            errors[pos] = "user_id is required"
            continue
        if db.session.get(User, user_id) is None:
            errors[pos] = f"user {user_id} does not exist"
            continue
        if user_id in seen_users:
            errors[pos] = f"user {user_id} appears twice in the workflow"
            continue
        seen_users.add(user_id)

        role = raw.get("role") or "signataire"
        if role not in ENTRY_ROLES:
            errors[pos] = f"invalid role '{role}'"
            continue
        raw_order = raw.get("order")
        try:
            order = int(raw_order) if raw_order not in (None, "") else idx + 1
        except (TypeError, ValueError):
            errors[pos] = "order must be an integer"
            continue
        if order < 1:
            errors[pos] = "order must be >= 1"
            continue

        entries.append(WorkflowEntry(
            user_id=user_id,
            role=role,
            order=order,
            required=_coerce_bool(raw.get("required"), default=True),
            status="en_attente",
            due_date=parse_datetime(raw.get("due_date")),
        ))

    if errors:
        raise ValidationError("Invalid workflow definition", details={"workflow": errors})
    return entries


# ── Aggregate status ───────────────────────────────────────────────────────────


def recompute_document_status(document_id: int) -> tuple[str, str]:
    """Re-derive and persist the document status from its full record set.

    Reads the document, its workflow and every signature record fresh from
    the database, mirrors record statuses onto workflow entries, then writes
    the derived status. Does not commit; the caller's transaction does.

    Returns:
        (old_status, new_status)
    """
    document = _load_document(document_id, fresh=True)
    records = db.session.execute(
        select(SignatureRecord)
        .where(SignatureRecord.document_id == document_id)
        .execution_options(populate_existing=True)
    ).scalars().all()
    by_signer = {r.signer_id: r for r in records}

    for entry in document.workflow_entries:
        record = by_signer.get(entry.user_id)
        if record is None or entry.status != "en_attente":
            continue
        mirrored = RECORD_TO_ENTRY_STATUS.get(record.status, entry.status)
        if mirrored == entry.status:
            continue
        entry.status = mirrored
        if record.status == "signe":
            entry.signed_at = record.signed_at
            entry.comment = record.comment
            entry.source_ip = record.source_ip
        elif record.status == "rejete":
            entry.comment = record.rejection_comment or record.rejection_reason

    old_status = document.status
    new_status = derive_document_status(document, records)
    if new_status != old_status:
        document.status = new_status
        logger.info(
            "Document status %s → %s", old_status, new_status,
            extra={"document_id": document_id},
        )
    return old_status, new_status


# ── CRUD ───────────────────────────────────────────────────────────────────────


def create_document(data: dict, actor_id: int | None) -> Document:
    """Create a draft document with its (possibly empty) workflow.

    Body fields: title, description, doc_type, category, signing_deadline,
    file {name, original_name, path, size, mime_type, hash}, workflow [...].
    """
    errors: dict[str, str] = {}
    title = (data.get("title") or "").strip()
    if not title:
        errors["title"] = "required"
    elif len(title) > 255:
        errors["title"] = "must be ≤ 255 characters"

    file_info = data.get("file") or {}
    file_path = (file_info.get("path") or "").strip()
    file_name = (file_info.get("name") or "").strip()
    if not file_path:
        errors["file.path"] = "required"
    if not file_name:
        file_name = file_path.rsplit("/", 1)[-1] if file_path else ""

    doc_type = data.get("doc_type") or "autre"
    if doc_type not in DOCUMENT_TYPES:
        errors["doc_type"] = f"must be one of {sorted(DOCUMENT_TYPES)}"
    category = data.get("category") or "autre"
    if category not in DOCUMENT_CATEGORIES:
        errors["category"] = f"must be one of {sorted(DOCUMENT_CATEGORIES)}"

    if actor_id is None or db.session.get(User, actor_id) is None:
        errors["actor_id"] = "a valid creator is required"

    deadline = parse_datetime(data.get("signing_deadline"))
    if data.get("signing_deadline") and deadline is None:
        errors["signing_deadline"] = "invalid date"

    if errors:
        raise ValidationError("Invalid document", details=errors)

    entries = _build_workflow_entries(data.get("workflow"))

    document = Document(
        title=title,
        description=data.get("description"),
        doc_type=doc_type,
        category=category,
        file_name=file_name,
        file_original_name=file_info.get("original_name") or file_name,
        file_path=file_path,
        file_size=file_info.get("size"),
        file_mime_type=file_info.get("mime_type") or "application/pdf",
        file_hash=file_info.get("hash"),
        status="brouillon",
        created_by_id=actor_id,
        owner_id=data.get("owner_id") or actor_id,
        signing_deadline=deadline,
    )
    document.workflow_entries = entries
    db.session.add(document)
    document.add_history("creation", actor_id, "Document créé",
                         metadata={"workflow_size": len(entries)})
    db.session.commit()
    logger.info("Document created with %d workflow entries", len(entries),
                extra={"document_id": document.id})
    return document


def get_document(document_id: int) -> Document:
    return _load_document(document_id)


def list_documents(filters: dict | None = None, page: int = 1, per_page: int = 20) -> dict:
    """Paginated document list.

    Filters: status, created_by_id, signer_id (documents where the user is
    in the workflow), doc_type, category, search (title substring).
    """
    filters = filters or {}
    stmt = select(Document)

    status = filters.get("status")
    if status:
        if status not in DOCUMENT_STATUSES:
            raise ValidationError(f"Unknown status '{status}'")
        stmt = stmt.where(Document.status == status)
    if filters.get("created_by_id"):
        stmt = stmt.where(Document.created_by_id == int(filters["created_by_id"]))
    if filters.get("signer_id"):
        stmt = stmt.where(Document.workflow_entries.any(WorkflowEntry.user_id == int(filters["signer_id"])))
    if filters.get("doc_type"):
        stmt = stmt.where(Document.doc_type == filters["doc_type"])
    if filters.get("category"):
        stmt = stmt.where(Document.category == filters["category"])
    if filters.get("search"):
        term = f"%{filters['search']}%"
        stmt = stmt.where(or_(Document.title.ilike(term), Document.description.ilike(term)))

    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), _MAX_PER_PAGE)

    total = db.session.execute(
        select(db.func.count()).select_from(stmt.subquery())
    ).scalar_one()
    items = db.session.execute(
        stmt.order_by(Document.created_at.desc(), Document.id.desc())
        .limit(per_page).offset((page - 1) * per_page)
    ).scalars().all()

    return {
        "items": [d.to_dict(include_workflow=False) for d in items],
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": math.ceil(total / per_page) if total else 0,
    }


def update_document(document_id: int, actor_id: int | None, data: dict) -> Document:
    """Edit draft metadata (title, description, doc_type, category, deadline)."""
    document = _load_document(document_id)
    _require_creator(document, actor_id, "edit")
    _require_draft(document, "update")

    changed = []
    if "title" in data:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required", details={"title": "required"})
        document.title = title
        changed.append("title")
    if "description" in data:
        document.description = data.get("description")
        changed.append("description")
    if "doc_type" in data:
        if data["doc_type"] not in DOCUMENT_TYPES:
            raise ValidationError("Invalid doc_type", details={"doc_type": data["doc_type"]})
        document.doc_type = data["doc_type"]
        changed.append("doc_type")
    if "category" in data:
        if data["category"] not in DOCUMENT_CATEGORIES:
            raise ValidationError("Invalid category", details={"category": data["category"]})
        document.category = data["category"]
        changed.append("category")
    if "signing_deadline" in data:
        deadline = parse_datetime(data.get("signing_deadline"))
        if data.get("signing_deadline") and deadline is None:
            raise ValidationError("Invalid signing_deadline")
        document.signing_deadline = deadline
        changed.append("signing_deadline")

    if changed:
        document.add_history("modification", actor_id, "Document modifié",
                             metadata={"fields": changed})
        db.session.commit()
    return document


def replace_workflow(document_id: int, actor_id: int | None, entries: list) -> Document:
    """Replace the whole workflow of a draft document."""
    document = _load_document(document_id)
    _require_creator(document, actor_id, "edit the workflow of")
    _require_draft(document, "replace_workflow")

    new_entries = _build_workflow_entries(entries)
    document.workflow_entries = new_entries
    document.add_history("modification", actor_id, "Circuit de signature modifié",
                         metadata={"workflow_size": len(new_entries)})
    db.session.commit()
    return document


def archive_document(document_id: int, actor_id: int | None) -> Document:
    """``signe`` → ``archive``. Irreversible."""
    document = _load_document(document_id)
    _require_creator(document, actor_id, "archive")
    if document.status != "signe":
        raise InvalidStateError("Document", document.status, "archive",
                                reason="only fully signed documents can be archived")
    document.status = "archive"
    document.archived_at = utcnow()
    document.add_history("archivage", actor_id, "Document archivé")
    db.session.commit()
    logger.info("Document archived", extra={"document_id": document.id})
    return document


def delete_document(document_id: int, actor_id: int | None) -> dict:
    """Delete a document that is not signed or archived. Creator only.

    A pending provider request is cancelled best-effort; signature records
    and history go with the document.
    """
    document = _load_document(document_id)
    _require_creator(document, actor_id, "delete")
    if document.status in ("signe", "archive"):
        raise InvalidStateError("Document", document.status, "delete",
                                reason="signed documents are kept")

    cancelled = False
    if document.signature_request_id and document.status != "rejete":
        result = signing_gateway.cancel_request(document.signature_request_id)
        cancelled = result.ok
        if not result.ok:
            logger.warning(
                "Provider cancel failed for request %s: %s",
                document.signature_request_id, result.error,
                extra={"document_id": document.id, "correlation_id": document.signature_request_id},
            )

    record_count = len(document.signature_records)
    db.session.delete(document)
    db.session.commit()
    logger.info(
        "Document deleted by user=%s (%d signature records removed)", actor_id, record_count,
        extra={"document_id": document_id},
    )
    return {"deleted": True, "id": document_id, "provider_cancelled": cancelled}


# ── Read-side joins ───────────────────────────────────────────────────────────


def document_detail(document_id: int, *, count_view: bool = False) -> dict:
    """Document + workflow (with signer summary and record) + creator."""
    document = _load_document(document_id)
    if count_view:
        document.view_count = (document.view_count or 0) + 1
        db.session.commit()

    records = {r.signer_id: r for r in document.signature_records}
    user_ids = {e.user_id for e in document.workflow_entries}
    if document.created_by_id:
        user_ids.add(document.created_by_id)
    users = {
        u.id: u for u in db.session.execute(
            select(User).where(User.id.in_(user_ids))
        ).scalars()
    } if user_ids else {}

    workflow = []
    for entry in document.workflow_entries:
        item = entry.to_dict()
        signer = users.get(entry.user_id)
        item["signer"] = signer.summary() if signer else None
        record = records.get(entry.user_id)
        item["signature"] = record.to_dict() if record else None
        workflow.append(item)

    payload = document.to_dict(include_workflow=False)
    payload["workflow"] = workflow
    creator = users.get(document.created_by_id)
    payload["created_by"] = creator.summary() if creator else None
    payload["is_fully_signed"] = document.is_fully_signed()
    next_entry = document.next_signer()
    payload["next_signer_id"] = next_entry.user_id if next_entry else None
    return payload


def document_history(document_id: int) -> list[dict]:
    _load_document(document_id)
    rows = db.session.execute(
        select(DocumentHistory)
        .where(DocumentHistory.document_id == document_id)
        .order_by(DocumentHistory.id)
    ).scalars().all()
    return [h.to_dict() for h in rows]


def file_for_download(document_id: int, version: str = "original") -> tuple[str, str]:
    """Return (path, download name) and bump the download counter."""
    document = _load_document(document_id)
    if version == "signe":
        if not document.signed_file_path:
            raise NotFoundError(resource="Signed file for document", resource_id=document_id)
        path, name = document.signed_file_path, document.signed_file_name
    elif version == "original":
        path, name = document.file_path, document.file_original_name or document.file_name
    else:
        raise ValidationError("version must be 'original' or 'signe'")
    document.download_count = (document.download_count or 0) + 1
    db.session.commit()
    return path, name

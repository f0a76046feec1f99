"""
SignFlow — Document Signature Workflow
Document aggregate models.

Models:
    - Document: the file being signed, its workflow and aggregate status
    - WorkflowEntry: one signer slot (order, role, required flag)
    - DocumentHistory: append-only audit trail for a document

The document status is never written by hand: ``derive_document_status``
computes it from the workflow and the signature records, and
``document_service.recompute_document_status`` persists the result.
"""

from datetime import datetime, timezone

from signflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_STATUSES = {
    "brouillon", "en_attente_signature", "partiellement_signe",
    "signe", "rejete", "archive",
}
ENTRY_STATUSES = {"en_attente", "signe", "rejete", "annule"}
ENTRY_ROLES = {"signataire", "validateur", "observateur"}
DOCUMENT_TYPES = {"contrat", "devis", "facture", "bon_commande", "autre"}
DOCUMENT_CATEGORIES = {"commercial", "rh", "juridique", "financier", "technique", "autre"}
DISPATCH_STATUSES = {"not_sent", "pending", "dispatched", "failed"}
HISTORY_ACTIONS = {
    "creation", "modification", "envoi", "signature", "rejet",
    "archivage", "suppression", "synchronisation", "rappel",
}

# Manual transitions only; the signing statuses are derived, never set directly.
DOCUMENT_TRANSITIONS = {
    "brouillon":            ["en_attente_signature"],
    "en_attente_signature": ["partiellement_signe", "signe", "rejete"],
    "partiellement_signe":  ["partiellement_signe", "signe", "rejete"],
    "signe":                ["archive"],
    "rejete":               [],
    "archive":              [],
}

# Signature record status → workflow entry status
RECORD_TO_ENTRY_STATUS = {
    "en_attente": "en_attente",
    "signe": "signe",
    "rejete": "rejete",
    "annule": "annule",
    "expire": "annule",
}


def validate_document_transition(old_status, new_status):
    """Return True if Document status transition is valid."""
    return new_status in DOCUMENT_TRANSITIONS.get(old_status, [])


class Document(db.Model):
    """
    A document submitted for multi-party signature.

    Business rules:
    - Created in ``brouillon``; editable (metadata and workflow) only there.
    - ``signe`` and ``rejete`` are terminal for the signing process;
      ``signe`` may still be archived.
    - ``signature_request_id`` correlates the document with the external
      provider's signing request.
    """

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    doc_type = db.Column(db.String(30), default="autre",
                         comment="contrat | devis | facture | bon_commande | autre")
    category = db.Column(db.String(30), default="autre")

    # Original file
    file_name = db.Column(db.String(255), nullable=False)
    file_original_name = db.Column(db.String(255), nullable=True)
    file_path = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer, nullable=True)
    file_mime_type = db.Column(db.String(100), default="application/pdf")
    file_hash = db.Column(db.String(64), nullable=True)

    # Signed artifact (last-writer-wins, keyed by document id)
    signed_file_name = db.Column(db.String(255), nullable=True)
    signed_file_path = db.Column(db.String(500), nullable=True)
    signed_file_size = db.Column(db.Integer, nullable=True)
    signed_file_created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_file_hash = db.Column(db.String(64), nullable=True,
                                 comment="SHA-256 of the downloaded signed file")

    status = db.Column(db.String(30), nullable=False, default="brouillon", index=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                              nullable=True, index=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                         nullable=True)
    signing_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # External provider correlation
    signature_request_id = db.Column(db.String(100), nullable=True, unique=True)
    test_mode = db.Column(db.Boolean, default=True)
    external_dispatch_status = db.Column(
        db.String(20), nullable=False, default="not_sent",
        comment="not_sent | pending | dispatched | failed",
    )
    external_dispatch_error = db.Column(db.Text, nullable=True)
    external_dispatch_attempts = db.Column(db.Integer, default=0)
    external_dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    view_count = db.Column(db.Integer, default=0)
    download_count = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    workflow_entries = db.relationship(
        "WorkflowEntry", back_populates="document",
        order_by="(WorkflowEntry.order, WorkflowEntry.id)",
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "DocumentHistory", back_populates="document",
        order_by="DocumentHistory.id",
        cascade="all, delete-orphan",
    )
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    owner = db.relationship("User", foreign_keys=[owner_id])

    # ── Aggregate queries ────────────────────────────────────────────────

    def required_entries(self):
        return [e for e in self.workflow_entries if e.required]

    def is_fully_signed(self) -> bool:
        """True iff at least one required entry exists and all of them are signed."""
        required = self.required_entries()
        return bool(required) and all(e.status == "signe" for e in required)

    def next_signer(self):
        """Pending required entry with the smallest order, or None.

        Order only drives who gets notified next; it does not gate signing.
        """
        pending = [e for e in self.required_entries() if e.status == "en_attente"]
        if not pending:
            return None
        return min(pending, key=lambda e: (e.order, e.id or 0))

    def add_history(self, action, actor_id=None, details=None, metadata=None):
        """Append an immutable audit entry; earlier entries are never touched."""
        entry = DocumentHistory(
            action=action,
            actor_id=actor_id,
            details=details,
            extra=metadata or {},
        )
        self.history.append(entry)
        return entry

    def is_creator(self, user_id) -> bool:
        return user_id is not None and user_id in (self.created_by_id, self.owner_id)

    def signed_file_dict(self):
        if not self.signed_file_path:
            return None
        return {
            "name": self.signed_file_name,
            "path": self.signed_file_path,
            "size": self.signed_file_size,
            "created_at": self.signed_file_created_at.isoformat() if self.signed_file_created_at else None,
            "hash": self.signed_file_hash,
        }

    def to_dict(self, include_workflow=True):
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "doc_type": self.doc_type,
            "category": self.category,
            "file": {
                "name": self.file_name,
                "original_name": self.file_original_name,
                "path": self.file_path,
                "size": self.file_size,
                "mime_type": self.file_mime_type,
                "hash": self.file_hash,
            },
            "signed_file": self.signed_file_dict(),
            "status": self.status,
            "created_by_id": self.created_by_id,
            "owner_id": self.owner_id,
            "signing_deadline": self.signing_deadline.isoformat() if self.signing_deadline else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "signature_request_id": self.signature_request_id,
            "test_mode": self.test_mode,
            "external_dispatch": {
                "status": self.external_dispatch_status,
                "error": self.external_dispatch_error,
                "attempts": self.external_dispatch_attempts,
                "dispatched_at": self.external_dispatched_at.isoformat() if self.external_dispatched_at else None,
            },
            "view_count": self.view_count,
            "download_count": self.download_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_workflow:
            d["workflow"] = [e.to_dict() for e in self.workflow_entries]
        return d

    def __repr__(self):
        return f"<Document #{self.id} {self.title!r} [{self.status}]>"


class WorkflowEntry(db.Model):
    """One signer slot in a document's workflow.

    ``required`` entries count toward completion; optional ones never block it.
    ``status`` mirrors the matching signature record once the document is
    dispatched.
    """

    __tablename__ = "workflow_entries"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    role = db.Column(db.String(20), default="signataire",
                     comment="signataire | validateur | observateur")
    order = db.Column(db.Integer, nullable=False, default=1)
    required = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="en_attente")
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    source_ip = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint('"order" >= 1', name="ck_workflow_entry_order_positive"),
    )

    document = db.relationship("Document", back_populates="workflow_entries")
    user = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "role": self.role,
            "order": self.order,
            "required": self.required,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "comment": self.comment,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowEntry doc={self.document_id} user={self.user_id} #{self.order} [{self.status}]>"


class DocumentHistory(db.Model):
    """Append-only audit entry for a document. Never updated or deleted on its own."""

    __tablename__ = "document_history"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    action = db.Column(db.String(30), nullable=False)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                         nullable=True)
    details = db.Column(db.Text, nullable=True)
    extra = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    document = db.relationship("Document", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "actor_id": self.actor_id,
            "details": self.details,
            "metadata": self.extra or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ── Aggregate status derivation ──────────────────────────────────────────────


def effective_entry_status(entry, record=None):
    """Status of a workflow entry as implied by its signature record, if any."""
    if record is None:
        return entry.status
    return RECORD_TO_ENTRY_STATUS.get(record.status, entry.status)


def derive_document_status(document, records):
    """Compute the document status from its workflow and signature records.

    Pure: reads ``document.status``, ``document.workflow_entries`` and the
    given records, mutates nothing.

    - ``brouillon`` and ``archive`` are left alone.
    - ``signe`` and ``rejete`` are sticky.
    - ``rejete`` when any required entry's record is rejected.
    - ``signe`` when every required entry is signed (and there is one).
    - ``partiellement_signe`` when at least one required entry is signed.
    - ``en_attente_signature`` otherwise.
    """
    current = document.status
    if current in ("brouillon", "archive", "signe", "rejete"):
        return current

    by_signer = {r.signer_id: r for r in records}
    required = [
        effective_entry_status(e, by_signer.get(e.user_id))
        for e in document.workflow_entries
        if e.required
    ]

    if "rejete" in required:
        return "rejete"
    if required and all(s == "signe" for s in required):
        return "signe"
    if "signe" in required:
        return "partiellement_signe"
    return "en_attente_signature"

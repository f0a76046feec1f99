"""
SignFlow — Document Signature Workflow
Signature record models.

Models:
    - SignatureRecord: one signer's obligation against one document
    - SignatureHistory: append-only action log for a record

Business rules:
- At most one record per (document, signer).
- A record leaves ``en_attente`` exactly once, to ``signe``, ``rejete``,
  ``expire`` or ``annule``, and never comes back. Status writes go through
  ``signature_service.transition_record`` (guarded compare-and-set).
"""

from datetime import datetime, timezone

from signflow.models import db
from signflow.utils.helpers import as_utc

# ── Constants ────────────────────────────────────────────────────────────────

RECORD_STATUSES = {"en_attente", "signe", "rejete", "annule", "expire"}
TERMINAL_RECORD_STATUSES = {"signe", "rejete", "annule", "expire"}
SIGNATURE_HISTORY_ACTIONS = {
    "creation", "envoi", "ouverture", "signature",
    "rejet", "rappel", "annulation", "expiration",
}

RECORD_TRANSITIONS = {
    "en_attente": ["signe", "rejete", "expire", "annule"],
    "signe":      [],
    "rejete":     [],
    "expire":     [],
    "annule":     [],
}


def validate_record_transition(old_status, new_status):
    """Return True if SignatureRecord status transition is valid."""
    return new_status in RECORD_TRANSITIONS.get(old_status, [])


class SignatureRecord(db.Model):
    __tablename__ = "signature_records"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    workflow_entry_id = db.Column(db.Integer,
                                  db.ForeignKey("workflow_entries.id", ondelete="SET NULL"),
                                  nullable=True)
    signer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                              nullable=True)

    status = db.Column(db.String(20), nullable=False, default="en_attente", index=True,
                       comment="en_attente | signe | rejete | annule | expire")
    order = db.Column(db.Integer, nullable=False, default=1,
                      comment="Copied from the workflow entry at dispatch")
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    # Signature metadata
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    server_timestamp = db.Column(db.DateTime(timezone=True), nullable=True)
    source_ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    geolocation = db.Column(db.JSON, nullable=True)
    comment = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    rejection_comment = db.Column(db.Text, nullable=True)

    # Provider correlation
    provider_request_id = db.Column(db.String(100), nullable=True)
    provider_signer_id = db.Column(db.String(100), nullable=True, index=True)
    provider_status_code = db.Column(db.String(30), nullable=True)
    sign_url = db.Column(db.String(1000), nullable=True)
    sign_url_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_event_type = db.Column(db.String(50), nullable=True)
    last_event_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Reminders
    reminder_count = db.Column(db.Integer, nullable=False, default=0)
    last_reminded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("document_id", "signer_id", name="uq_signature_document_signer"),
        db.Index("ix_signature_status_expires", "status", "expires_at"),
    )

    document = db.relationship(
        "Document",
        backref=db.backref("signature_records", cascade="all, delete-orphan",
                           order_by="SignatureRecord.order"),
    )
    signer = db.relationship("User", foreign_keys=[signer_id])
    workflow_entry = db.relationship("WorkflowEntry")
    history = db.relationship(
        "SignatureHistory", back_populates="record",
        order_by="SignatureHistory.id",
        cascade="all, delete-orphan",
    )

    # ── State queries ────────────────────────────────────────────────────

    def can_be_signed(self, now=None) -> bool:
        """Pending and not yet at its expiry (exactly at ``expires_at`` is too late)."""
        if self.status != "en_attente":
            return False
        if self.expires_at is None:
            return True
        now = as_utc(now) or datetime.now(timezone.utc)
        return as_utc(self.expires_at) > now

    def is_expired(self, now=None) -> bool:
        if self.status == "expire":
            return True
        if self.expires_at is None:
            return False
        now = as_utc(now) or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= now

    def is_overdue(self, now=None) -> bool:
        """Still pending although its expiry has passed (sweep not yet run)."""
        return self.status == "en_attente" and self.is_expired(now)

    def cached_sign_url(self, now=None):
        """Provider signing URL while it is still valid, else None."""
        if not self.sign_url or self.sign_url_expires_at is None:
            return None
        now = as_utc(now) or datetime.now(timezone.utc)
        if as_utc(self.sign_url_expires_at) > now:
            return self.sign_url
        return None

    def signing_delay(self):
        """``signed_at - created_at`` for signed records, else None."""
        if self.status != "signe" or not self.signed_at or not self.created_at:
            return None
        return as_utc(self.signed_at) - as_utc(self.created_at)

    def add_history(self, action, actor_id=None, details=None, metadata=None):
        entry = SignatureHistory(
            action=action,
            actor_id=actor_id,
            details=details,
            extra=metadata or {},
        )
        self.history.append(entry)
        return entry

    def to_dict(self, include_history=False):
        d = {
            "id": self.id,
            "document_id": self.document_id,
            "workflow_entry_id": self.workflow_entry_id,
            "signer_id": self.signer_id,
            "created_by_id": self.created_by_id,
            "status": self.status,
            "order": self.order,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "server_timestamp": self.server_timestamp.isoformat() if self.server_timestamp else None,
            "comment": self.comment,
            "rejection_reason": self.rejection_reason,
            "rejection_comment": self.rejection_comment,
            "geolocation": self.geolocation,
            "provider": {
                "request_id": self.provider_request_id,
                "signer_id": self.provider_signer_id,
                "status_code": self.provider_status_code,
                "last_event_type": self.last_event_type,
                "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            },
            "reminder_count": self.reminder_count,
            "last_reminded_at": self.last_reminded_at.isoformat() if self.last_reminded_at else None,
            "can_be_signed": self.can_be_signed(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_history:
            d["history"] = [h.to_dict() for h in self.history]
        return d

    def __repr__(self):
        return f"<SignatureRecord #{self.id} doc={self.document_id} signer={self.signer_id} [{self.status}]>"


class SignatureHistory(db.Model):
    """Append-only action log entry for a signature record."""

    __tablename__ = "signature_history"

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("signature_records.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    action = db.Column(db.String(30), nullable=False,
                       comment="creation | envoi | ouverture | signature | rejet | rappel | annulation | expiration")
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                         nullable=True)
    details = db.Column(db.Text, nullable=True)
    extra = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    record = db.relationship("SignatureRecord", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "actor_id": self.actor_id,
            "details": self.details,
            "metadata": self.extra or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

"""
SignFlow — Document Signature Workflow
Inbound provider event log.

Every authentic callback from the signing provider is recorded once, keyed
by a dedupe key derived from (correlation id, event type, event time,
signer ids). Redeliveries bump ``delivery_count`` instead of creating a new
row, and an already ``processed`` event is never applied twice.
"""

from datetime import datetime, timezone

from signflow.models import db

EVENT_OUTCOMES = {"received", "processed", "ignored", "failed"}


class ProviderEventLog(db.Model):
    __tablename__ = "provider_events"

    id = db.Column(db.Integer, primary_key=True)
    dedupe_key = db.Column(db.String(64), nullable=False, unique=True)
    correlation_id = db.Column(db.String(100), nullable=True, index=True)
    event_type = db.Column(db.String(50), nullable=False)
    event_time = db.Column(db.DateTime(timezone=True), nullable=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"),
                            nullable=True, index=True)
    outcome = db.Column(db.String(20), nullable=False, default="received",
                        comment="received | processed | ignored | failed")
    delivery_count = db.Column(db.Integer, nullable=False, default=1)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    received_at = db.Column(db.DateTime(timezone=True),
                            default=lambda: datetime.now(timezone.utc))
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("ix_provider_events_outcome", "outcome"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "dedupe_key": self.dedupe_key,
            "correlation_id": self.correlation_id,
            "event_type": self.event_type,
            "event_time": self.event_time.isoformat() if self.event_time else None,
            "document_id": self.document_id,
            "outcome": self.outcome,
            "delivery_count": self.delivery_count,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f"<ProviderEventLog {self.event_type} {self.correlation_id} [{self.outcome}]>"

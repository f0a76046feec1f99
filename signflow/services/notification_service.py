"""
SignFlow — Document Signature Workflow
Notification fan-out for the signature workflow.

Events:
    - new signature request  → the signer
    - next signer            → the pending required signer with the lowest order
    - document fully signed  → every participant + the creator
    - document rejected      → the creator
    - reminder               → the signer

Every call is best-effort: the state transition that triggered it is
already committed, a failed email is logged and swallowed here. Each send
runs in a SAVEPOINT so a failed EmailLog insert cannot poison the caller's
session.
"""

from __future__ import annotations

import logging

from flask import current_app

from signflow.models import db
from signflow.models.user import User
from signflow.services.email_service import EmailService

logger = logging.getLogger(__name__)


def _document_link(document) -> str:
    base = (current_app.config.get("FRONTEND_URL") or "").rstrip("/")
    return f"{base}/documents/{document.id}"


def _deliver(*, user, template_name: str, context: dict, category: str, document) -> bool:
    if user is None or not user.email:
        return False
    try:
        with db.session.begin_nested():
            EmailService.send_from_template(
                to_email=user.email,
                to_name=user.full_name or None,
                template_name=template_name,
                context=context,
                category=category,
                document_id=document.id,
            )
        return True
    except Exception as exc:
        logger.warning(
            "Notification '%s' to user=%s failed: %s", template_name, user.id, exc,
            extra={"document_id": document.id},
        )
        return False


def notify_signature_request(document, record) -> bool:
    """Tell a signer a document awaits their signature."""
    signer = record.signer or db.session.get(User, record.signer_id)
    creator = document.created_by
    deadline = (
        f"Date limite : {record.expires_at:%d/%m/%Y}" if record.expires_at else ""
    )
    return _deliver(
        user=signer,
        template_name="signature_request",
        context={
            "signer_name": signer.full_name if signer else "",
            "sender_name": creator.full_name if creator else "SignFlow",
            "document_title": document.title,
            "deadline_line": deadline,
            "link": _document_link(document),
        },
        category="signature_request",
        document=document,
    )


def notify_next_signer(document) -> bool:
    """Notify the next pending required signer, if any."""
    entry = document.next_signer()
    if entry is None:
        return False
    record = next(
        (r for r in document.signature_records if r.signer_id == entry.user_id),
        None,
    )
    if record is None or record.status != "en_attente":
        return False
    return notify_signature_request(document, record)


def notify_document_signed(document) -> int:
    """Tell every participant and the creator that signing is complete."""
    recipients: dict[int, User] = {}
    for entry in document.workflow_entries:
        if entry.user is not None:
            recipients[entry.user.id] = entry.user
    if document.created_by is not None:
        recipients[document.created_by.id] = document.created_by

    sent = 0
    for user in recipients.values():
        if _deliver(
            user=user,
            template_name="document_signed",
            context={
                "recipient_name": user.full_name,
                "document_title": document.title,
                "link": _document_link(document),
            },
            category="completed",
            document=document,
        ):
            sent += 1
    return sent


def notify_document_rejected(document, record) -> bool:
    """Tell the creator a signer rejected the document."""
    signer = record.signer or db.session.get(User, record.signer_id)
    creator = document.created_by
    return _deliver(
        user=creator,
        template_name="document_rejected",
        context={
            "recipient_name": creator.full_name if creator else "",
            "signer_name": signer.full_name if signer else "Un signataire",
            "document_title": document.title,
            "reason": record.rejection_reason or "Non spécifié",
            "comment": record.rejection_comment or "",
            "link": _document_link(document),
        },
        category="rejected",
        document=document,
    )


def notify_reminder(document, record, message: str | None = None) -> bool:
    signer = record.signer or db.session.get(User, record.signer_id)
    return _deliver(
        user=signer,
        template_name="signature_reminder",
        context={
            "signer_name": signer.full_name if signer else "",
            "document_title": document.title,
            "message": message or "",
            "link": _document_link(document),
        },
        category="reminder",
        document=document,
    )

"""
SignFlow — Document Signature Workflow
Email Service.

Provides email sending with template support.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address

Every email is recorded in EmailLog for audit.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from signflow.models import db
from signflow.models.scheduling import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: 'Inter', Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {header_color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            SignFlow — notification automatique
        </p>
    </div>
</div>
"""

_BUTTON = (
    '<p style="margin-top: 20px;"><a href="{link}" style="background: #2563eb; color: white; '
    'padding: 10px 18px; border-radius: 6px; text-decoration: none;">{label}</a></p>'
)


def _layout(heading: str, body: str, header_color: str = "#1e293b") -> str:
    # Pre-render the chrome so only the per-message placeholders remain
    return (
        _LAYOUT.replace("{header_color}", header_color)
        .replace("{heading}", heading)
        .replace("{body}", body)
    )


_TEMPLATES: dict[str, dict[str, str]] = {
    "signature_request": {
        "subject": "[SignFlow] Signature requise : {document_title}",
        "html": _layout(
            "Nouvelle demande de signature",
            '<p style="color: #1e293b;">Bonjour {signer_name},</p>'
            '<p style="color: #64748b; line-height: 1.6;">{sender_name} vous invite à signer '
            'le document <strong>{document_title}</strong>.</p>'
            '<p style="color: #64748b;">{deadline_line}</p>'
            + _BUTTON.replace("{label}", "Signer le document"),
        ),
    },
    "signature_reminder": {
        "subject": "[SignFlow] Rappel : {document_title} attend votre signature",
        "html": _layout(
            "Rappel de signature",
            '<p style="color: #1e293b;">Bonjour {signer_name},</p>'
            '<p style="color: #64748b; line-height: 1.6;">Le document <strong>{document_title}</strong> '
            'attend toujours votre signature.</p>'
            '<p style="color: #64748b;">{message}</p>'
            + _BUTTON.replace("{label}", "Signer maintenant"),
            header_color="#f59e0b",
        ),
    },
    "document_signed": {
        "subject": "[SignFlow] Document entièrement signé : {document_title}",
        "html": _layout(
            "Document signé",
            '<p style="color: #1e293b;">Bonjour {recipient_name},</p>'
            '<p style="color: #64748b; line-height: 1.6;">Toutes les signatures requises ont été '
            'recueillies pour <strong>{document_title}</strong>.</p>'
            + _BUTTON.replace("{label}", "Voir le document"),
            header_color="#16a34a",
        ),
    },
    "document_rejected": {
        "subject": "[SignFlow] Document rejeté : {document_title}",
        "html": _layout(
            "Document rejeté",
            '<p style="color: #1e293b;">Bonjour {recipient_name},</p>'
            '<p style="color: #64748b; line-height: 1.6;">{signer_name} a rejeté le document '
            '<strong>{document_title}</strong>.</p>'
            '<p style="color: #64748b;">Motif : {reason}</p>'
            '<p style="color: #64748b;">{comment}</p>'
            + _BUTTON.replace("{label}", "Voir le document"),
            header_color="#dc2626",
        ),
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        """Get an email template by name."""
        return _TEMPLATES.get(template_name)

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        category: str = "system",
        document_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        Without SMTP the EmailLog row is written with status='logged'.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            category=category,
            status="queued",
            document_id=document_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "logged"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
                extra={"document_id": document_id},
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject,
                        extra={"document_id": document_id})
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc,
                         extra={"document_id": document_id})

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        category: str = "system",
        document_id: int | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return None

        subject = template["subject"].format_map(_SafeDict(context))
        html_body = template["html"].format_map(_SafeDict(context))

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            category=category,
            document_id=document_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"

"""
SignFlow — Document Signature Workflow
Scheduled Jobs.

Jobs:
    - signature_expiration_sweep: pending records past their expiry → expire
    - signature_reminders: reminders for signers pending too long
    - provider_event_retry: re-applies provider events whose local processing failed
"""

from __future__ import annotations

import logging
from typing import Any

from signflow.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("signature_expiration_sweep")
def expire_signatures(app) -> dict[str, Any]:
    """Expire pending signature records whose expiry has passed."""
    from signflow.services.signature_service import expire_overdue_records

    result = expire_overdue_records()
    logger.info("Expiration sweep: %d expired", result["expired"])
    return result


@register_job("signature_reminders")
def remind_pending_signers(app) -> dict[str, Any]:
    """Send automatic reminders to signers who have not signed yet."""
    from signflow.services.workflow_service import send_automatic_reminders

    result = send_automatic_reminders()
    return {"reminded": result["reminded"]}


@register_job("provider_event_retry")
def retry_provider_events(app) -> dict[str, Any]:
    """Retry provider events whose local processing failed."""
    from signflow.services.reconciliation_service import retry_failed_events

    result = retry_failed_events()
    if result["failed"]:
        logger.warning("Provider event retry: %d still failing", result["failed"])
    return result

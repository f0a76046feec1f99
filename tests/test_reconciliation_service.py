"""Unit tests for signflow.services.reconciliation_service.

Test strategy
-------------
Callbacks are built with the ``provider_event`` fixture, which signs them
with the configured webhook secret exactly like the provider does. The
document under test is ``dispatched_document`` (provider request
``req-123``, signers ``sig-a`` / ``sig-b``). Gateway calls made as side
effects (signed file download, status pull) are patched on the module-level
``signing_gateway`` singleton.

Coverage
--------
    1. signed / all_signed / declined / viewed / error events
    2. duplicate and out-of-order deliveries
    3. authenticity failure, test callbacks, missing correlation id,
       unknown request, metadata fallback, email matching
    4. local store failures: bounded retry, failed log, retry job
    5. manual resync through the gateway
"""

import os
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from signflow.core.exceptions import (
    GatewayError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from signflow.integrations.signing_gateway import GatewayResult, signing_gateway
from signflow.models import db
from signflow.models.document import Document, DocumentHistory
from signflow.models.provider_event import ProviderEventLog
from signflow.models.signature import SignatureHistory, SignatureRecord
from signflow.services import reconciliation_service as svc
from signflow.services import workflow_service
from signflow.utils.helpers import sha256_file


def _handle(payload):
    return svc.handle_provider_event(payload, payload["event"]["event_hash"])


def _status(record):
    return db.session.get(SignatureRecord, record.id).status


def _history_count(record, action):
    return SignatureHistory.query.filter_by(record_id=record.id, action=action).count()


def _fake_download(request_id, destination):
    os.makedirs(os.path.dirname(destination), exist_ok=True)
    with open(destination, "wb") as fh:
        fh.write(b"%PDF-1.4 signed")
    return GatewayResult(ok=True, status_code=200, data={"file_path": destination, "size": 15},
                         error=None, duration_ms=1)


def _locked():
    return OperationalError("UPDATE signature_records", {}, Exception("database is locked"))


# ═══════════════════════════════════════════════════════════════════════════
#  Business events
# ═══════════════════════════════════════════════════════════════════════════


class TestSignedEvents:

    def test_signed_event_moves_record_and_document(self, dispatched_document, records,
                                                    signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")])
        outcome = _handle(payload)

        assert outcome["outcome"] == "processed"
        assert outcome["status"] == "partiellement_signe"
        assert _status(records["a"]) == "signe"
        assert _status(records["b"]) == "en_attente"
        assert db.session.get(Document, dispatched_document.id).status == "partiellement_signe"
        assert _history_count(records["a"], "signature") == 1
        assert DocumentHistory.query.filter_by(document_id=dispatched_document.id,
                                               action="synchronisation").count() == 1

    def test_identical_redelivery_is_a_duplicate(self, records, signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")])
        _handle(payload)
        second = _handle(payload)

        assert second["outcome"] == "duplicate"
        log = ProviderEventLog.query.one()
        assert log.delivery_count == 2
        assert log.outcome == "processed"
        assert _history_count(records["a"], "signature") == 1

    def test_signed_event_for_already_signed_record(self, dispatched_document, records, signer_a,
                                                    provider_event):
        _handle(provider_event("signature_request_signed", "req-123",
                               [("sig-a", signer_a.email, "signed")], event_time="1700000000"))
        later = _handle(provider_event("signature_request_signed", "req-123",
                                       [("sig-a", signer_a.email, "signed")], event_time="1700000500"))

        assert later["outcome"] == "processed"
        assert later["status"] == "partiellement_signe"
        assert _history_count(records["a"], "signature") == 1
        assert DocumentHistory.query.filter_by(document_id=dispatched_document.id,
                                               action="synchronisation").count() == 1

    def test_all_signed_completes_and_fetches_artifact(self, dispatched_document, records,
                                                       signer_a, signer_b, provider_event):
        payload = provider_event("signature_request_all_signed", "req-123", [
            ("sig-a", signer_a.email, "signed"),
            ("sig-b", signer_b.email, "signed"),
        ])
        with patch.object(signing_gateway, "download_signed_file", side_effect=_fake_download) as dl:
            outcome = _handle(payload)

        assert outcome["status"] == "signe"
        dl.assert_called_once()
        doc = db.session.get(Document, dispatched_document.id)
        assert doc.status == "signe"
        assert doc.is_fully_signed() is True
        assert doc.signed_file_name == "contrat_signe.pdf"
        assert doc.signed_file_path.endswith(f"{doc.id}_signed.pdf")
        assert doc.signed_file_hash == sha256_file(doc.signed_file_path)

    def test_artifact_failure_does_not_undo_completion(self, dispatched_document, records,
                                                       signer_a, signer_b, provider_event):
        payload = provider_event("signature_request_all_signed", "req-123", [
            ("sig-a", signer_a.email, "signed"),
            ("sig-b", signer_b.email, "signed"),
        ])
        failed = GatewayResult(ok=False, status_code=503, data=None, error="down", duration_ms=1)
        with patch.object(signing_gateway, "download_signed_file", return_value=failed):
            outcome = _handle(payload)

        assert outcome["outcome"] == "processed"
        doc = db.session.get(Document, dispatched_document.id)
        assert doc.status == "signe"
        assert doc.signed_file_path is None

    def test_provider_signature_does_not_revive_expired_record(self, records, signer_a, provider_event):
        SignatureRecord.query.filter_by(id=records["a"].id).update({"status": "expire"})
        db.session.commit()
        _handle(provider_event("signature_request_signed", "req-123",
                               [("sig-a", signer_a.email, "signed")]))
        assert _status(records["a"]) == "expire"


class TestDeclinedEvents:

    def test_declined_rejects_record_and_document(self, dispatched_document, records, signer_a,
                                                  provider_event):
        payload = provider_event("signature_request_declined", "req-123",
                                 [("sig-a", signer_a.email, "declined")],
                                 declined_reason="Montant incorrect")
        outcome = _handle(payload)

        assert outcome["status"] == "rejete"
        record = db.session.get(SignatureRecord, records["a"].id)
        assert record.status == "rejete"
        assert record.rejection_reason == "Montant incorrect"
        assert _status(records["b"]) == "en_attente"

    def test_decline_reason_defaults(self, records, signer_b, provider_event):
        _handle(provider_event("signature_request_declined", "req-123",
                               [("sig-b", signer_b.email, "declined")]))
        assert db.session.get(SignatureRecord, records["b"].id).rejection_reason == svc.DEFAULT_DECLINE_REASON

    def test_rejected_document_stays_rejected(self, dispatched_document, records, signer_a, signer_b,
                                              provider_event):
        _handle(provider_event("signature_request_declined", "req-123",
                               [("sig-a", signer_a.email, "declined")]))
        _handle(provider_event("signature_request_signed", "req-123",
                               [("sig-b", signer_b.email, "signed")], event_time="1700000900"))
        assert db.session.get(Document, dispatched_document.id).status == "rejete"


class TestInformationalEvents:

    def test_viewed_event_logged_once(self, records, signer_a, provider_event):
        for event_time in ("1700000000", "1700000100"):
            payload = provider_event("signature_request_viewed", "req-123",
                                     [("sig-a", signer_a.email, "awaiting_signature")],
                                     event_time=event_time)
            payload["signature_request"]["signatures"][0]["last_viewed_at"] = int(event_time)
            _handle(payload)
        assert _history_count(records["a"], "ouverture") == 1
        assert _status(records["a"]) == "en_attente"

    def test_error_event_changes_nothing(self, dispatched_document, records, signer_a, provider_event):
        outcome = _handle(provider_event("file_error", "req-123", [("sig-a", signer_a.email, "error")]))
        assert outcome["outcome"] == "ignored"
        assert _status(records["a"]) == "en_attente"
        assert db.session.get(Document, dispatched_document.id).status == "en_attente_signature"

    def test_unknown_event_type_changes_nothing(self, records, signer_a, provider_event):
        outcome = _handle(provider_event("account_confirmed", "req-123", [("sig-a", signer_a.email, "signed")]))
        assert outcome["outcome"] == "ignored"
        assert _status(records["a"]) == "en_attente"


# ═══════════════════════════════════════════════════════════════════════════
#  Envelope handling
# ═══════════════════════════════════════════════════════════════════════════


class TestEnvelope:

    def test_out_of_range_event_time_does_not_fail(self, records, signer_a, provider_event):
        payload = provider_event("signature_request_viewed", "req-123",
                                 [("sig-a", signer_a.email, "awaiting_signature")],
                                 event_time="99999999999999999")
        outcome = _handle(payload)
        assert outcome["outcome"] == "processed"
        assert _status(records["a"]) == "en_attente"

    def test_out_of_range_signed_at_falls_back_to_now(self, records, signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")],
                                 event_time="99999999999999999")
        outcome = _handle(payload)
        assert outcome["outcome"] == "processed"
        record = db.session.get(SignatureRecord, records["a"].id)
        assert record.status == "signe"
        assert record.signed_at is not None

    def test_unauthenticated_event_touches_nothing(self, dispatched_document, records, signer_a,
                                                   provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")], valid_hash=False)
        with patch.object(svc, "parse_event") as parse, patch.object(svc, "_resolve_document") as resolve:
            with pytest.raises(UnauthorizedError):
                _handle(payload)
        parse.assert_not_called()
        resolve.assert_not_called()
        assert ProviderEventLog.query.count() == 0
        assert _status(records["a"]) == "en_attente"

    def test_missing_hash_is_unauthorized(self, provider_event):
        payload = provider_event("signature_request_signed", "req-123")
        with pytest.raises(UnauthorizedError):
            svc.handle_provider_event(payload, None)

    def test_callback_test_is_acknowledged(self, provider_event):
        outcome = _handle(provider_event("callback_test", request_id=None))
        assert outcome["outcome"] == "acknowledged"
        assert ProviderEventLog.query.count() == 0

    def test_missing_correlation_id_is_ignored(self, provider_event):
        outcome = _handle(provider_event("signature_request_signed", request_id=None))
        assert outcome["outcome"] == "ignored"
        assert ProviderEventLog.query.count() == 0

    def test_unknown_request_is_ignored(self, records, signer_a, provider_event):
        outcome = _handle(provider_event("signature_request_signed", "req-unknown",
                                         [("sig-a", signer_a.email, "signed")]))
        assert outcome["outcome"] == "ignored"
        assert outcome["document_id"] is None
        assert ProviderEventLog.query.one().outcome == "ignored"
        assert _status(records["a"]) == "en_attente"

    def test_malformed_signature_request(self, provider_event):
        payload = provider_event("signature_request_signed", None)
        payload["signature_request"] = "oops"
        with pytest.raises(ValidationError):
            _handle(payload)

    def test_parse_event_kinds(self, provider_event, signer_a):
        event = svc.parse_event(provider_event("signature_request_all_signed", "req-9",
                                               [("sig-a", signer_a.email.upper(), "signed")],
                                               metadata={"document_id": "12"}))
        assert event.kind is svc.EventKind.ALL_SIGNED
        assert event.correlation_id == "req-9"
        assert event.document_hint == 12
        assert event.outcomes[0].email == signer_a.email
        assert event.outcomes[0].signed_at is not None
        assert svc.parse_event(provider_event("something_new", "req-9")).kind is svc.EventKind.UNKNOWN


class TestMatching:

    def test_metadata_hint_adopts_request_id(self, draft_document, creator, signer_a, provider_event,
                                             error_result):
        with patch.object(signing_gateway, "create_embedded_signing_request", return_value=error_result()):
            workflow_service.dispatch_for_signing(draft_document.id, creator.id)
        doc = db.session.get(Document, draft_document.id)
        assert doc.signature_request_id is None

        outcome = _handle(provider_event("signature_request_signed", "req-late",
                                         [("sig-a", signer_a.email, "signed")],
                                         metadata={"document_id": str(doc.id)}))

        assert outcome["outcome"] == "processed"
        doc = db.session.get(Document, draft_document.id)
        assert doc.signature_request_id == "req-late"
        record = SignatureRecord.query.filter_by(document_id=doc.id, signer_id=signer_a.id).one()
        assert record.status == "signe"
        assert record.provider_signer_id == "sig-a"

    def test_metadata_hint_ignored_for_drafts(self, draft_document, signer_a, provider_event):
        outcome = _handle(provider_event("signature_request_signed", "req-x",
                                         [("sig-a", signer_a.email, "signed")],
                                         metadata={"document_id": str(draft_document.id)}))
        assert outcome["outcome"] == "ignored"
        assert db.session.get(Document, draft_document.id).signature_request_id is None

    def test_email_match_stores_provider_signer_id(self, records, signer_b, provider_event):
        SignatureRecord.query.filter_by(id=records["b"].id).update({"provider_signer_id": None})
        db.session.commit()
        _handle(provider_event("signature_request_signed", "req-123",
                               [("sig-new", signer_b.email, "signed")]))
        record = db.session.get(SignatureRecord, records["b"].id)
        assert record.status == "signe"
        assert record.provider_signer_id == "sig-new"


# ═══════════════════════════════════════════════════════════════════════════
#  Local store failures
# ═══════════════════════════════════════════════════════════════════════════


class TestStoreFailures:

    def test_bounded_retry_then_failed(self, app, records, signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")])
        with patch.object(svc, "apply_event", side_effect=_locked()) as apply:
            outcome = _handle(payload)

        assert outcome["outcome"] == "failed"
        assert apply.call_count == app.config["EVENT_STORE_RETRY_ATTEMPTS"]
        log = ProviderEventLog.query.one()
        assert log.outcome == "failed"
        assert "database is locked" in log.last_error
        assert _status(records["a"]) == "en_attente"

    def test_retry_job_applies_failed_event(self, dispatched_document, records, signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")])
        with patch.object(svc, "apply_event", side_effect=_locked()):
            _handle(payload)

        result = svc.retry_failed_events()

        assert result == {"retried": 1, "processed": 1, "failed": 0}
        assert ProviderEventLog.query.one().outcome == "processed"
        assert _status(records["a"]) == "signe"
        assert db.session.get(Document, dispatched_document.id).status == "partiellement_signe"

    def test_retry_job_keeps_failing_event(self, records, signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")])
        with patch.object(svc, "apply_event", side_effect=_locked()):
            _handle(payload)
            result = svc.retry_failed_events()
        assert result["failed"] == 1
        assert ProviderEventLog.query.one().outcome == "failed"

    def test_processed_event_is_not_replayed_after_failure_log(self, records, signer_a, provider_event):
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", signer_a.email, "signed")])
        _handle(payload)
        assert svc.retry_failed_events() == {"retried": 0, "processed": 0, "failed": 0}
        assert svc.list_events(outcome="processed")[0]["event_type"] == "signature_request_signed"


# ═══════════════════════════════════════════════════════════════════════════
#  Manual resync
# ═══════════════════════════════════════════════════════════════════════════


def _status_data(signer_a, signer_b, a_status="signed", b_status="awaiting_signature", **extra):
    signers = [
        {"signer_id": "sig-a", "email": signer_a.email, "status_code": a_status,
         "signed_at": 1700000000 if a_status == "signed" else None,
         "decline_reason": "Erreur de montant" if a_status == "declined" else None},
        {"signer_id": "sig-b", "email": signer_b.email, "status_code": b_status,
         "signed_at": 1700000300 if b_status == "signed" else None},
    ]
    data = {"request_id": "req-123", "is_complete": False, "is_declined": False,
            "has_error": False, "metadata": {}, "signers": signers}
    data.update(extra)
    return data


class TestManualSync:

    def test_sync_applies_provider_state(self, dispatched_document, records, signer_a, signer_b, ok_result):
        with patch.object(signing_gateway, "get_request_status",
                          return_value=ok_result(_status_data(signer_a, signer_b))):
            result = svc.sync_from_provider("req-123")

        assert result["status"] == "partiellement_signe"
        assert result["signed_record_ids"] == [records["a"].id]
        assert _status(records["a"]) == "signe"
        assert _history_count(records["a"], "signature") == 1

    def test_sync_matches_webhook_end_state(self, dispatched_document, records, signer_a, signer_b,
                                            ok_result):
        data = _status_data(signer_a, signer_b, b_status="signed", is_complete=True)
        with patch.object(signing_gateway, "get_request_status", return_value=ok_result(data)), \
                patch.object(signing_gateway, "download_signed_file", side_effect=_fake_download):
            result = svc.sync_from_provider("req-123")

        assert result["status"] == "signe"
        doc = db.session.get(Document, dispatched_document.id)
        assert doc.signed_file_hash is not None
        assert {_status(records["a"]), _status(records["b"])} == {"signe"}

    def test_sync_declined(self, dispatched_document, records, signer_a, signer_b, ok_result):
        data = _status_data(signer_a, signer_b, a_status="declined", is_declined=True)
        with patch.object(signing_gateway, "get_request_status", return_value=ok_result(data)):
            result = svc.sync_from_provider("req-123")
        assert result["status"] == "rejete"
        assert db.session.get(SignatureRecord, records["a"].id).rejection_reason == "Erreur de montant"

    def test_repeated_sync_is_idempotent(self, records, signer_a, signer_b, ok_result):
        with patch.object(signing_gateway, "get_request_status",
                          return_value=ok_result(_status_data(signer_a, signer_b))):
            svc.sync_from_provider("req-123")
            second = svc.sync_from_provider("req-123")
        assert second["signed_record_ids"] == []
        assert _history_count(records["a"], "signature") == 1

    def test_gateway_failure(self, dispatched_document, error_result):
        with patch.object(signing_gateway, "get_request_status", return_value=error_result()):
            with pytest.raises(GatewayError):
                svc.sync_from_provider("req-123")

    def test_unknown_request(self, dispatched_document, signer_a, signer_b, ok_result):
        data = _status_data(signer_a, signer_b, request_id="req-other")
        with patch.object(signing_gateway, "get_request_status", return_value=ok_result(data)):
            with pytest.raises(NotFoundError):
                svc.sync_from_provider("req-other")

    def test_request_id_required(self):
        with pytest.raises(ValidationError):
            svc.sync_from_provider("  ")

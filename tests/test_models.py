"""
Model-level rules: record signability, document status derivation,
workflow ordering helpers and transition tables.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from signflow.models import db
from signflow.models.document import (
    Document,
    WorkflowEntry,
    derive_document_status,
    validate_document_transition,
)
from signflow.models.signature import SignatureRecord, validate_record_transition
from signflow.models.user import User

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _document(status="en_attente_signature", entries=()):
    doc = Document(title="Doc", file_name="doc.pdf", file_path="/tmp/doc.pdf", status=status)
    doc.workflow_entries = [
        WorkflowEntry(id=i + 1, user_id=user_id, order=order, required=required, status="en_attente")
        for i, (user_id, order, required) in enumerate(entries)
    ]
    return doc


def _record(signer_id, status="en_attente", **kwargs):
    return SignatureRecord(signer_id=signer_id, status=status, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
#  SignatureRecord
# ═══════════════════════════════════════════════════════════════════════════


class TestCanBeSigned:

    def test_pending_without_expiry(self):
        assert _record(1).can_be_signed(NOW) is True

    def test_strictly_before_expiry(self):
        assert _record(1, expires_at=NOW + timedelta(seconds=1)).can_be_signed(NOW) is True

    def test_exactly_at_expiry_is_too_late(self):
        assert _record(1, expires_at=NOW).can_be_signed(NOW) is False

    def test_after_expiry(self):
        assert _record(1, expires_at=NOW - timedelta(minutes=1)).can_be_signed(NOW) is False

    def test_naive_expiry_is_read_as_utc(self):
        naive = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert _record(1, expires_at=naive).can_be_signed(NOW) is True

    @pytest.mark.parametrize("status", ["signe", "rejete", "expire", "annule"])
    def test_terminal_records_are_not_signable(self, status):
        assert _record(1, status=status).can_be_signed(NOW) is False


class TestRecordHelpers:

    def test_overdue_only_while_pending(self):
        past = NOW - timedelta(days=1)
        assert _record(1, expires_at=past).is_overdue(NOW) is True
        assert _record(1, status="signe", expires_at=past).is_overdue(NOW) is False

    def test_cached_sign_url_valid_until_expiry(self):
        record = _record(1, sign_url="https://sign.test/x",
                         sign_url_expires_at=NOW + timedelta(minutes=5))
        assert record.cached_sign_url(NOW) == "https://sign.test/x"
        assert record.cached_sign_url(NOW + timedelta(minutes=5)) is None

    def test_cached_sign_url_without_expiry(self):
        assert _record(1, sign_url="https://sign.test/x").cached_sign_url(NOW) is None

    def test_signing_delay(self):
        record = _record(1, status="signe", created_at=NOW - timedelta(hours=5), signed_at=NOW)
        assert record.signing_delay() == timedelta(hours=5)
        assert _record(1, created_at=NOW).signing_delay() is None

    def test_record_transitions(self):
        for target in ("signe", "rejete", "expire", "annule"):
            assert validate_record_transition("en_attente", target)
        assert not validate_record_transition("signe", "en_attente")
        assert not validate_record_transition("expire", "signe")


# ═══════════════════════════════════════════════════════════════════════════
#  Document
# ═══════════════════════════════════════════════════════════════════════════


class TestDocumentHelpers:

    def test_next_signer_is_lowest_pending_required_order(self):
        doc = _document(entries=[(1, 2, True), (2, 1, True), (3, 1, False)])
        assert doc.next_signer().user_id == 2
        doc.workflow_entries[1].status = "signe"
        assert doc.next_signer().user_id == 1

    def test_next_signer_ties_broken_by_creation(self):
        doc = _document(entries=[(1, 1, True), (2, 1, True)])
        assert doc.next_signer().user_id == 1

    def test_fully_signed_needs_a_required_entry(self):
        assert _document(entries=[(1, 1, False)]).is_fully_signed() is False
        doc = _document(entries=[(1, 1, True), (2, 2, False)])
        doc.workflow_entries[0].status = "signe"
        assert doc.is_fully_signed() is True

    def test_add_history_appends(self):
        doc = _document()
        doc.add_history("creation", 1, "created")
        doc.add_history("modification", 1, "edited")
        assert [h.action for h in doc.history] == ["creation", "modification"]

    def test_manual_transitions(self):
        assert validate_document_transition("brouillon", "en_attente_signature")
        assert validate_document_transition("signe", "archive")
        assert not validate_document_transition("rejete", "en_attente_signature")
        assert not validate_document_transition("archive", "signe")


class TestDeriveDocumentStatus:

    def test_nothing_signed(self):
        doc = _document(entries=[(1, 1, True), (2, 2, True)])
        assert derive_document_status(doc, [_record(1), _record(2)]) == "en_attente_signature"

    def test_one_of_two_signed(self):
        doc = _document(entries=[(1, 1, True), (2, 2, True)])
        assert derive_document_status(doc, [_record(1, "signe"), _record(2)]) == "partiellement_signe"

    def test_out_of_order_signature_is_partial(self):
        doc = _document(entries=[(1, 1, True), (2, 2, True)])
        assert derive_document_status(doc, [_record(1), _record(2, "signe")]) == "partiellement_signe"

    def test_all_required_signed_with_optional_pending(self):
        doc = _document(entries=[(1, 1, True), (2, 2, True), (3, 3, False)])
        records = [_record(1, "signe"), _record(2, "signe"), _record(3)]
        assert derive_document_status(doc, records) == "signe"

    def test_required_rejection_rejects(self):
        doc = _document(entries=[(1, 1, True), (2, 2, True)])
        assert derive_document_status(doc, [_record(1, "signe"), _record(2, "rejete")]) == "rejete"

    def test_optional_rejection_does_not_reject(self):
        doc = _document(entries=[(1, 1, True), (2, 2, False)])
        assert derive_document_status(doc, [_record(1), _record(2, "rejete")]) == "en_attente_signature"

    def test_optional_signature_alone_is_not_partial(self):
        doc = _document(entries=[(1, 1, True), (2, 2, False)])
        assert derive_document_status(doc, [_record(1), _record(2, "signe")]) == "en_attente_signature"

    def test_expired_required_record_leaves_document_open(self):
        doc = _document(entries=[(1, 1, True), (2, 2, True)])
        assert derive_document_status(doc, [_record(1, "expire"), _record(2, "signe")]) == "partiellement_signe"

    @pytest.mark.parametrize("status", ["brouillon", "archive", "signe", "rejete"])
    def test_settled_statuses_are_kept(self, status):
        doc = _document(status=status, entries=[(1, 1, True)])
        assert derive_document_status(doc, [_record(1, "rejete" if status == "signe" else "signe")]) == status

    def test_signe_iff_fully_signed(self):
        doc = _document(entries=[(1, 1, True), (2, 2, False)])
        records = [_record(1, "signe"), _record(2)]
        derived = derive_document_status(doc, records)
        doc.workflow_entries[0].status = "signe"
        assert (derived == "signe") == doc.is_fully_signed()


# ═══════════════════════════════════════════════════════════════════════════
#  User
# ═══════════════════════════════════════════════════════════════════════════


class TestUserSchema:

    def test_email_has_a_single_unique_index(self):
        indexed = [ix for ix in inspect(db.engine).get_indexes("users") if "email" in ix["column_names"]]
        assert indexed == []
        uniques = inspect(db.engine).get_unique_constraints("users")
        assert [u["column_names"] for u in uniques] == [["email"]]

    def test_duplicate_email_rejected(self):
        db.session.add(User(email="dup@example.com", first_name="A", last_name="B"))
        db.session.commit()
        db.session.add(User(email="dup@example.com", first_name="C", last_name="D"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

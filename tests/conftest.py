"""
Shared pytest fixtures for the SignFlow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - creator / signer_a / signer_b: pre-created users
    - draft_document: brouillon document with a two-signer workflow
    - dispatched_document: the same document sent for signature, gateway mocked
    - provider_event: builder for signed provider callback envelopes
"""

from unittest.mock import patch

import pytest

from signflow import create_app
from signflow.integrations.signing_gateway import GatewayResult, signing_gateway
from signflow.models import db as _db
from signflow.models.document import Document
from signflow.models.user import User


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db, tmp_path):
    """Per-test: open app context, rollback after test, recreate tables.

    Signed artifacts land in the test's tmp directory.
    """
    signed_dir = app.config["SIGNED_FILES_DIR"]
    app.config["SIGNED_FILES_DIR"] = str(tmp_path / "signed")
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    app.config["SIGNED_FILES_DIR"] = signed_dir


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Gateway helpers ──────────────────────────────────────────────────────


def gateway_ok(data=None, status_code=200):
    return GatewayResult(ok=True, status_code=status_code, data=data, error=None, duration_ms=3)


def gateway_error(error="HTTP 503: unavailable", status_code=503):
    return GatewayResult(ok=False, status_code=status_code, data=None, error=error, duration_ms=3)


@pytest.fixture()
def ok_result():
    return gateway_ok


@pytest.fixture()
def error_result():
    return gateway_error


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_user(email, first_name, last_name, role="signataire"):
    user = User(email=email, first_name=first_name, last_name=last_name, role=role)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def creator():
    return _make_user("claire.dupont@example.com", "Claire", "Dupont", role="gestionnaire")


@pytest.fixture()
def signer_a():
    return _make_user("alice.martin@example.com", "Alice", "Martin")


@pytest.fixture()
def signer_b():
    return _make_user("bruno.leroy@example.com", "Bruno", "Leroy")


@pytest.fixture()
def pdf_file(tmp_path):
    """A small non-empty file standing in for the uploaded PDF."""
    path = tmp_path / "contrat.pdf"
    path.write_bytes(b"%PDF-1.4\n% signflow test document\n%%EOF\n")
    return str(path)


@pytest.fixture()
def draft_document(creator, signer_a, signer_b, pdf_file):
    """brouillon document: signer A (order 1) then signer B (order 2), both required."""
    from signflow.services import document_service

    return document_service.create_document(
        {
            "title": "Contrat de prestation",
            "description": "Prestation annuelle",
            "doc_type": "contrat",
            "category": "commercial",
            "file": {"name": "contrat.pdf", "path": pdf_file, "size": 40},
            "workflow": [
                {"user_id": signer_a.id, "order": 1, "required": True},
                {"user_id": signer_b.id, "order": 2, "required": True},
            ],
        },
        creator.id,
    )


def provider_request_data(signer_a, signer_b, request_id="req-123"):
    """Normalised create-request response for the two fixture signers."""
    return {
        "request_id": request_id,
        "title": "Contrat de prestation",
        "is_complete": False,
        "is_declined": False,
        "has_error": False,
        "metadata": {},
        "signers": [
            {"signer_id": "sig-a", "email": signer_a.email, "name": "Alice Martin",
             "order": 1, "status_code": "awaiting_signature",
             "sign_url": "https://sign.test/embedded/a", "expires_at": None},
            {"signer_id": "sig-b", "email": signer_b.email, "name": "Bruno Leroy",
             "order": 2, "status_code": "awaiting_signature",
             "sign_url": "https://sign.test/embedded/b", "expires_at": None},
        ],
    }


@pytest.fixture()
def dispatched_document(draft_document, creator, signer_a, signer_b):
    """draft_document sent for signature with a successful provider request ``req-123``."""
    from signflow.services import workflow_service

    with patch.object(signing_gateway, "create_embedded_signing_request",
                      return_value=gateway_ok(provider_request_data(signer_a, signer_b))):
        workflow_service.dispatch_for_signing(draft_document.id, creator.id)
    return _db.session.get(Document, draft_document.id)


@pytest.fixture()
def records(dispatched_document, signer_a, signer_b):
    """{"a": record of signer A, "b": record of signer B}"""
    by_signer = {r.signer_id: r for r in dispatched_document.signature_records}
    return {"a": by_signer[signer_a.id], "b": by_signer[signer_b.id]}


@pytest.fixture()
def provider_event():
    """Build a provider callback envelope carrying a valid ``event_hash``.

    Usage:
        payload = provider_event("signature_request_signed", "req-123",
                                 [("sig-a", "alice@...", "signed")])
    """

    def _build(event_type, request_id="req-123", signatures=(), *, event_time="1700000000",
               metadata=None, valid_hash=True, declined_reason=None):
        signature_objects = []
        for signer_id, email, status_code in signatures:
            entry = {
                "signature_id": signer_id,
                "signer_email_address": email,
                "signer_name": email.split("@")[0],
                "status_code": status_code,
            }
            if status_code == "signed":
                entry["signed_at"] = int(event_time) - 60
            if status_code == "declined":
                entry["decline_reason"] = declined_reason
            signature_objects.append(entry)

        event_hash = signing_gateway.compute_event_hash(event_time, event_type)
        payload = {
            "event": {
                "event_type": event_type,
                "event_time": event_time,
                "event_hash": event_hash if valid_hash else "0" * 64,
            },
        }
        if request_id is not None or signature_objects:
            payload["signature_request"] = {
                "signature_request_id": request_id,
                "is_complete": False,
                "metadata": metadata or {},
                "signatures": signature_objects,
            }
        return payload

    return _build

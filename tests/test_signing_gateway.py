"""Unit tests for signflow.integrations.signing_gateway.

Test strategy
-------------
No real HTTP: every SigningGateway here gets a stub ``requests.Session``
that replays queued responses (or raises) and records each call. Backoff
is disabled with ``retry_backoff=[]``.

Coverage
--------
    1. request(): success, 4xx without retry, 5xx / transport retry,
       circuit breaker, missing API key
    2. create_signing_request / create_embedded_signing_request:
       signer and file validation, form building, response normalisation
    3. get_request_status / get_embedded_sign_url normalisation
    4. download_signed_file: writes the file, empty body, unwritable target
    5. verify_event_authenticity: valid, tampered, missing secret / hash
"""

import hashlib
import hmac
import json

import pytest
import requests

from signflow.core.exceptions import ValidationError
from signflow.integrations.signing_gateway import SigningGateway


class _StubResponse:
    def __init__(self, status_code=200, body=None, content=None):
        self.status_code = status_code
        if content is None:
            content = json.dumps(body).encode("utf-8") if body is not None else b""
        self.content = content
        self.text = content.decode("utf-8", errors="replace")

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        return json.loads(self.content.decode("utf-8"))


class _StubSession:
    """Replays queued responses; an Exception instance in the queue is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _gateway(*responses, **kwargs):
    session = _StubSession(*responses)
    params = {
        "base_url": "https://signing.test/v3",
        "api_key": "secret-key",
        "client_id": "client-1",
        "retry_backoff": [],
    }
    params.update(kwargs)
    return SigningGateway(session=session, **params), session


SIGNERS = [
    {"email": "alice@example.com", "first_name": "Alice", "last_name": "Martin", "order": 1},
    {"email": "bruno@example.com", "first_name": "Bruno", "last_name": "Leroy", "order": 2},
]


def _request_body(request_id="req-1"):
    return {
        "signature_request": {
            "signature_request_id": request_id,
            "title": "Contrat",
            "is_complete": False,
            "metadata": {"document_id": "7"},
            "signatures": [
                {"signature_id": "sig-a", "signer_email_address": "alice@example.com",
                 "signer_name": "Alice Martin", "order": 0, "status_code": "awaiting_signature"},
                {"signature_id": "sig-b", "signer_email_address": "bruno@example.com",
                 "signer_name": "Bruno Leroy", "order": 1, "status_code": "signed",
                 "signed_at": 1700000000},
            ],
        },
    }


@pytest.fixture()
def pdf(tmp_path):
    path = tmp_path / "doc.pdf"
    path.write_bytes(b"%PDF-1.4 test")
    return [{"name": "doc.pdf", "path": str(path)}]


# ═══════════════════════════════════════════════════════════════════════════
#  request()
# ═══════════════════════════════════════════════════════════════════════════


class TestRequest:

    def test_success_uses_basic_auth_and_timeout(self):
        gw, session = _gateway(_StubResponse(200, {"account": {"email": "ops@example.com"}}), timeout=7)
        result = gw.request("GET", "/account")
        assert result.ok is True
        assert result.data == {"account": {"email": "ops@example.com"}}
        call = session.calls[0]
        assert call["url"] == "https://signing.test/v3/account"
        assert call["auth"] == ("secret-key", "")
        assert call["timeout"] == 7

    def test_client_error_is_not_retried(self):
        gw, session = _gateway(_StubResponse(400, {"error": {"error_msg": "Invalid signer"}}))
        result = gw.request("POST", "/signature_request/send", data={"title": "x"})
        assert result.ok is False
        assert result.status_code == 400
        assert "Invalid signer" in result.error
        assert len(session.calls) == 1

    def test_server_error_is_retried_then_fails(self):
        gw, session = _gateway(_StubResponse(503), _StubResponse(502), _StubResponse(500))
        result = gw.request("GET", "/signature_request/req-1")
        assert result.ok is False
        assert result.status_code == 500
        assert len(session.calls) == 3

    def test_transport_error_then_success(self):
        gw, session = _gateway(requests.ConnectionError("reset"), _StubResponse(200, {"ok": True}))
        result = gw.request("GET", "/signature_request/req-1")
        assert result.ok is True
        assert len(session.calls) == 2

    def test_timeout_reported(self):
        gw, _ = _gateway(requests.Timeout(), requests.Timeout(), requests.Timeout(), timeout=2)
        result = gw.request("GET", "/signature_request/req-1")
        assert result.ok is False
        assert result.status_code is None
        assert "timed out after 2s" in result.error

    def test_circuit_opens_after_repeated_failures(self):
        gw, session = _gateway(*[_StubResponse(503) for _ in range(6)])
        gw.request("GET", "/a")
        gw.request("GET", "/b")
        calls_before = len(session.calls)
        result = gw.request("GET", "/c")
        assert result.ok is False
        assert "Circuit breaker" in result.error
        assert len(session.calls) == calls_before

    def test_missing_api_key(self):
        gw, session = _gateway(api_key="")
        result = gw.request("GET", "/account")
        assert result.ok is False
        assert session.calls == []

    def test_payload_hash_recorded(self):
        gw, _ = _gateway(_StubResponse(200, {}))
        result = gw.request("POST", "/x", data={"b": 1, "a": 2})
        expected = hashlib.sha256(json.dumps({"a": 2, "b": 1}, sort_keys=True).encode()).hexdigest()
        assert result.payload_hash == expected


# ═══════════════════════════════════════════════════════════════════════════
#  Request creation
# ═══════════════════════════════════════════════════════════════════════════


class TestCreateSigningRequest:

    def test_builds_form_and_normalises_response(self, pdf):
        gw, session = _gateway(_StubResponse(200, _request_body()))
        result = gw.create_signing_request("Contrat", None, pdf, SIGNERS, 7)

        assert result.ok is True
        assert result.data["request_id"] == "req-1"
        assert [s["signer_id"] for s in result.data["signers"]] == ["sig-a", "sig-b"]
        assert result.data["signers"][0]["email"] == "alice@example.com"

        call = session.calls[0]
        assert call["url"].endswith("/signature_request/send")
        form = call["data"]
        assert form["signers[0][email_address]"] == "alice@example.com"
        assert form["signers[1][name]"] == "Bruno Leroy"
        assert form["metadata[document_id]"] == "7"
        assert form["test_mode"] == "1"
        assert call["files"][0][1][0] == "doc.pdf"
        assert call["files"][0][1][1] == b"%PDF-1.4 test"

    @pytest.mark.parametrize("field", ["email", "first_name", "last_name"])
    def test_incomplete_signer(self, pdf, field):
        gw, session = _gateway()
        signers = [dict(SIGNERS[0], **{field: " "})]
        with pytest.raises(ValidationError) as exc:
            gw.create_signing_request("Contrat", None, pdf, signers, 7)
        assert exc.value.details["missing"] == [field]
        assert session.calls == []

    def test_no_signers(self, pdf):
        gw, _ = _gateway()
        with pytest.raises(ValidationError):
            gw.create_signing_request("Contrat", None, pdf, [], 7)

    def test_missing_file(self, tmp_path):
        gw, session = _gateway()
        with pytest.raises(OSError):
            gw.create_signing_request("Contrat", None, [{"path": str(tmp_path / "absent.pdf")}], SIGNERS, 7)
        assert session.calls == []

    def test_empty_file(self, tmp_path):
        empty = tmp_path / "empty.pdf"
        empty.write_bytes(b"")
        gw, _ = _gateway()
        with pytest.raises(OSError):
            gw.create_signing_request("Contrat", None, [{"path": str(empty)}], SIGNERS, 7)

    def test_embedded_request_fetches_sign_urls(self, pdf):
        gw, session = _gateway(
            _StubResponse(200, _request_body()),
            _StubResponse(200, {"embedded": {"sign_url": "https://sign.test/e/a", "expires_at": 1700003600}}),
            _StubResponse(404, {"error": {"error_msg": "Signature already signed"}}),
        )
        result = gw.create_embedded_signing_request("Contrat", None, pdf, SIGNERS, 7)

        assert result.ok is True
        first, second = result.data["signers"]
        assert first["sign_url"] == "https://sign.test/e/a"
        assert first["expires_at"].timestamp() == 1700003600
        assert second["sign_url"] is None
        assert session.calls[0]["url"].endswith("/signature_request/create_embedded")
        assert session.calls[0]["data"]["client_id"] == "client-1"

    def test_embedded_request_requires_client_id(self, pdf):
        gw, session = _gateway(client_id="")
        result = gw.create_embedded_signing_request("Contrat", None, pdf, SIGNERS, 7)
        assert result.ok is False
        assert session.calls == []


# ═══════════════════════════════════════════════════════════════════════════
#  Status / files / reminders
# ═══════════════════════════════════════════════════════════════════════════


class TestProviderOperations:

    def test_status_normalised(self):
        gw, _ = _gateway(_StubResponse(200, _request_body()))
        result = gw.get_request_status("req-1")
        assert result.data["metadata"] == {"document_id": "7"}
        assert result.data["signers"][1]["status_code"] == "signed"
        assert result.data["signers"][1]["signed_at"] == 1700000000

    def test_download_writes_file(self, tmp_path):
        gw, session = _gateway(_StubResponse(200, content=b"%PDF signed"))
        destination = tmp_path / "signed" / "7_signed.pdf"
        result = gw.download_signed_file("req-1", str(destination))
        assert result.ok is True
        assert result.data == {"file_path": str(destination), "size": 11}
        assert destination.read_bytes() == b"%PDF signed"
        assert session.calls[0]["params"] == {"file_type": "pdf"}

    def test_download_empty_body(self, tmp_path):
        gw, _ = _gateway(_StubResponse(200, content=b""))
        result = gw.download_signed_file("req-1", str(tmp_path / "x.pdf"))
        assert result.ok is False
        assert not (tmp_path / "x.pdf").exists()

    def test_download_unwritable_destination(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        gw, _ = _gateway(_StubResponse(200, content=b"%PDF"))
        result = gw.download_signed_file("req-1", str(blocker / "x.pdf"))
        assert result.ok is False
        assert "Could not write" in result.error

    def test_reminder_and_cancel_paths(self):
        gw, session = _gateway(_StubResponse(200, {}), _StubResponse(200, {}))
        assert gw.send_reminder("req-1", "alice@example.com").ok is True
        assert gw.cancel_request("req-1").ok is True
        assert session.calls[0]["url"].endswith("/signature_request/remind/req-1")
        assert session.calls[0]["data"] == {"email_address": "alice@example.com"}
        assert session.calls[1]["url"].endswith("/signature_request/cancel/req-1")


# ═══════════════════════════════════════════════════════════════════════════
#  Inbound event authenticity
# ═══════════════════════════════════════════════════════════════════════════


class TestEventAuthenticity:

    @staticmethod
    def _payload(event_hash, event_time="1700000000", event_type="signature_request_signed"):
        return {"event": {"event_time": event_time, "event_type": event_type, "event_hash": event_hash}}

    def test_valid_hash(self):
        gw, _ = _gateway()
        expected = hmac.new(b"secret-key", b"1700000000signature_request_signed", hashlib.sha256).hexdigest()
        assert gw.compute_event_hash("1700000000", "signature_request_signed") == expected
        assert gw.verify_event_authenticity(self._payload(expected), expected) is True

    def test_tampered_event_type(self):
        gw, _ = _gateway()
        good = gw.compute_event_hash("1700000000", "signature_request_signed")
        payload = self._payload(good, event_type="signature_request_all_signed")
        assert gw.verify_event_authenticity(payload, good) is False

    def test_dedicated_webhook_secret(self):
        gw, _ = _gateway(webhook_secret="hook-secret")
        with_api_key = hmac.new(b"secret-key", b"1700000000signature_request_signed", hashlib.sha256).hexdigest()
        assert gw.verify_event_authenticity(self._payload(with_api_key), with_api_key) is False

    @pytest.mark.parametrize("provided", [None, ""])
    def test_missing_hash(self, provided):
        gw, _ = _gateway()
        assert gw.verify_event_authenticity(self._payload(provided), provided) is False

    def test_missing_secret(self):
        gw, _ = _gateway(api_key="", webhook_secret="")
        digest = hmac.new(b"", b"1700000000signature_request_signed", hashlib.sha256).hexdigest()
        assert gw.verify_event_authenticity(self._payload(digest), digest) is False

    def test_malformed_envelope(self):
        gw, _ = _gateway()
        assert gw.verify_event_authenticity({"event": "x"}, "abc") is False
        assert gw.verify_event_authenticity(["event"], "abc") is False

    def test_non_ascii_hash_fails_verification(self):
        gw, _ = _gateway()
        forged = "\u00e9" * 64
        assert gw.verify_event_authenticity(self._payload(forged), forged) is False
        assert gw.verify_event_authenticity(self._payload("\ud800"), "\ud800") is False

    def test_uppercase_hash_accepted(self):
        gw, _ = _gateway()
        good = gw.compute_event_hash("1700000000", "signature_request_signed")
        assert gw.verify_event_authenticity(self._payload(good.upper()), good.upper()) is True

"""
External signing provider gateway.

All outbound HTTP calls to the signing provider (Dropbox Sign compatible
REST API) go through this class. Direct `requests` calls in services or
blueprints are FORBIDDEN.

  - HTTP basic auth with the account API key
  - Retry: max 2 attempts on 5xx / transport errors, backoff 1 s → 4 s
  - Timeout: SIGNING_TIMEOUT_SECONDS (default 30 s) per call
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per API account
  - Every call returns a GatewayResult; nothing but caller-input errors
    (ValidationError, OSError) is raised

Threading: circuit breaker state is an in-memory dict. For multi-worker
deployments every worker keeps its own breaker.

Testability: pass a stub `session` to SigningGateway() in tests instead of
letting it create a real requests.Session internally, or patch methods of
the module-level `signing_gateway` singleton.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from signflow.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5
_CB_WINDOW_SECONDS = 60
_CB_OPEN_DURATION_SECONDS = 30

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]

_DEFAULT_TIMEOUT = 30
_DEFAULT_BASE_URL = "https://api.hellosign.com/v3"


class GatewayResult:
    """Structured return value from SigningGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed / normalised response body, else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        payload_hash:   SHA-256 of the serialised request payload (hex).
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        payload_hash: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.payload_hash = payload_hash

    def to_log_dict(self) -> dict:
        """Fields suitable for structured logging / history metadata."""
        return {
            "http_status_code": self.status_code,
            "error_message": self.error,
            "duration_ms": self.duration_ms,
            "payload_hash": self.payload_hash,
            "sync_status": "success" if self.ok else "error",
        }

    def __repr__(self) -> str:
        return f"<GatewayResult ok={self.ok} status={self.status_code} error={self.error!r}>"


def normalize_signature(sig: dict) -> dict:
    """Map one provider ``signatures[]`` entry onto our signer shape.

    Used for API responses and for webhook payloads, which embed the same
    ``signature_request`` object.
    """
    return {
        "signer_id": sig.get("signature_id"),
        "email": sig.get("signer_email_address"),
        "name": sig.get("signer_name"),
        "order": sig.get("order"),
        "status_code": sig.get("status_code"),
        "decline_reason": sig.get("decline_reason"),
        "signed_at": sig.get("signed_at"),
        "last_viewed_at": sig.get("last_viewed_at"),
        "last_reminded_at": sig.get("last_reminded_at"),
        "sign_url": sig.get("sign_url"),
        "error": sig.get("error"),
    }


def normalize_signature_request(body: dict) -> dict:
    """Map a provider ``signature_request`` object onto our request shape."""
    return {
        "request_id": body.get("signature_request_id"),
        "title": body.get("title"),
        "is_complete": bool(body.get("is_complete")),
        "is_declined": bool(body.get("is_declined")),
        "has_error": bool(body.get("has_error")),
        "metadata": body.get("metadata") or {},
        "signers": [normalize_signature(s) for s in body.get("signatures") or []],
    }


class SigningGateway:
    """Signing provider REST API gateway.

    Instantiate once at module level (module-level singleton pattern) and
    call ``configure(app)`` from the application factory.

    Usage:
        from signflow.integrations.signing_gateway import signing_gateway
        result = signing_gateway.get_request_status("fa5c8a0b...")
        if result.ok:
            ...
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        base_url: str = _DEFAULT_BASE_URL,
        api_key: str = "",
        client_id: str = "",
        webhook_secret: str = "",
        timeout: int = _DEFAULT_TIMEOUT,
        test_mode: bool = True,
        retry_backoff: list[float] | None = None,
    ) -> None:
        self._session: requests.Session | None = session
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client_id = client_id
        self.webhook_secret = webhook_secret or api_key
        self.timeout = timeout
        self.test_mode = test_mode
        self.retry_backoff = list(retry_backoff) if retry_backoff is not None else list(_RETRY_BACKOFF_SECONDS)

        # Circuit breaker: account key → {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict[str, dict] = {}

    def configure(self, app) -> None:
        """Pull provider settings from the Flask config."""
        cfg = app.config
        self.base_url = (cfg.get("SIGNING_API_BASE_URL") or _DEFAULT_BASE_URL).rstrip("/")
        self.api_key = cfg.get("SIGNING_API_KEY") or ""
        self.client_id = cfg.get("SIGNING_CLIENT_ID") or ""
        self.webhook_secret = cfg.get("SIGNING_WEBHOOK_SECRET") or self.api_key
        self.timeout = int(cfg.get("SIGNING_TIMEOUT_SECONDS") or _DEFAULT_TIMEOUT)
        self.test_mode = bool(cfg.get("SIGNING_TEST_MODE", True))
        self._cb_state.clear()

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def _account_key(self) -> str:
        return hashlib.sha256(self.api_key.encode("utf-8")).hexdigest()[:12]

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _ensure_cb_entry(self, account: str) -> dict:
        if account not in self._cb_state:
            self._cb_state[account] = {"failures": [], "open_until": None}
        return self._cb_state[account]

    def _circuit_closed(self, account: str) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        state = self._ensure_cb_entry(account)
        now = datetime.now(timezone.utc)

        if state["open_until"] and now < state["open_until"]:
            logger.warning("Signing circuit open for account=%s until %s", account, state["open_until"])
            return False

        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        state["failures"] = [f for f in state["failures"] if f >= window_start]

        if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
            state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "Signing circuit opened for account=%s: %d failures in %ds window",
                account, len(state["failures"]), _CB_WINDOW_SECONDS,
            )
            return False

        return True

    def _record_failure(self, account: str) -> None:
        state = self._ensure_cb_entry(account)
        state["failures"].append(datetime.now(timezone.utc))

    def _record_success(self, account: str) -> None:
        state = self._ensure_cb_entry(account)
        state["failures"].clear()
        state["open_until"] = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _compute_payload_hash(self, payload: dict | list | None) -> str | None:
        """Return SHA-256 hex digest of the JSON-serialised payload."""
        if payload is None:
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def _do_request(
        self,
        method: str,
        url: str,
        *,
        data: dict | None = None,
        files: list | None = None,
        params: dict | None = None,
        timeout: int,
    ) -> requests.Response:
        """Execute a single HTTP request, no retry logic here."""
        kwargs: dict[str, Any] = {
            "auth": (self.api_key, ""),
            "headers": {"Accept": "application/json"},
            "timeout": timeout,
        }
        if data is not None:
            kwargs["data"] = data
        if files:
            kwargs["files"] = files
        if params:
            kwargs["params"] = params
        return self.session.request(method, url, **kwargs)

    def request(
        self,
        method: str,
        path: str,
        *,
        data: dict | None = None,
        files: list | None = None,
        params: dict | None = None,
        raw: bool = False,
        timeout: int | None = None,
    ) -> GatewayResult:
        """Execute an authenticated request to the provider with retries.

        Implements:
          1. Circuit breaker check — reject immediately if the account is paused.
          2. Execute request; on 2xx → return success result.
          3. 4xx → return error result at once (retrying won't help).
          4. 5xx / timeout / network error → record failure, retry up to
             _RETRY_MAX times with backoff.

        Args:
            method:   HTTP verb.
            path:     Path below the API base URL (e.g. "/signature_request/send").
            data:     Form fields (the provider takes multipart/form-encoded bodies).
            files:    requests-style ``files`` list for uploads.
            params:   URL query params.
            raw:      Return ``{"content": bytes}`` instead of parsed JSON.
            timeout:  Per-request timeout in seconds.

        Returns:
            GatewayResult — always returns (never raises). Callers check .ok.
        """
        account = self._account_key
        timeout = timeout or self.timeout
        url = f"{self.base_url}{path}"

        if not self.api_key:
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error="Signing provider API key is not configured", duration_ms=0,
            )

        if not self._circuit_closed(account):
            return GatewayResult(
                ok=False,
                status_code=None,
                data=None,
                error="Circuit breaker is open — signing provider calls temporarily suspended",
                duration_ms=0,
            )

        payload_hash = self._compute_payload_hash(data)
        last_error: str = "Unknown error"
        last_status: int | None = None
        started = time.perf_counter()

        for attempt in range(_RETRY_MAX + 1):
            try:
                t0 = time.perf_counter()
                resp = self._do_request(method, url, data=data, files=files, params=params, timeout=timeout)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success(account)
                    if raw:
                        body: dict | list = {"content": resp.content or b""}
                    else:
                        try:
                            body = resp.json() if resp.content else {}
                        except ValueError:
                            body = {}
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=body,
                        error=None,
                        duration_ms=duration_ms,
                        payload_hash=payload_hash,
                    )

                last_error = f"HTTP {resp.status_code}: {_error_message(resp)}"
                if resp.status_code < 500:
                    logger.warning(
                        "Signing request rejected status=%d path=%s error=%s",
                        resp.status_code, path, last_error,
                        extra={"operation": path, "status": resp.status_code},
                    )
                    return GatewayResult(
                        ok=False,
                        status_code=resp.status_code,
                        data=None,
                        error=last_error,
                        duration_ms=duration_ms,
                        payload_hash=payload_hash,
                    )

                self._record_failure(account)
                logger.warning(
                    "Signing request failed attempt=%d/%d status=%d path=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, path,
                )

            except requests.Timeout:
                last_error = f"Request timed out after {timeout}s"
                self._record_failure(account)
                logger.warning(
                    "Signing request timed out attempt=%d/%d path=%s",
                    attempt + 1, _RETRY_MAX + 1, path,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure(account)
                logger.warning(
                    "Signing network error attempt=%d/%d path=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, path, last_error,
                )

            if attempt < _RETRY_MAX:
                sleep_s = self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)] if self.retry_backoff else 0
                if sleep_s:
                    logger.info("Retrying signing request in %ss (attempt %d)", sleep_s, attempt + 2)
                    time.sleep(sleep_s)

        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=int((time.perf_counter() - started) * 1000),
            payload_hash=payload_hash,
        )

    # ── Request building ─────────────────────────────────────────────────────

    @staticmethod
    def _validate_signers(signers: list[dict]) -> None:
        if not signers:
            raise ValidationError("At least one signer is required")
        for idx, signer in enumerate(signers):
            missing = [
                f for f in ("email", "first_name", "last_name")
                if not str(signer.get(f) or "").strip()
            ]
            if missing:
                raise ValidationError(
                    f"Incomplete signer data at position {idx + 1}",
                    details={"signer": idx + 1, "missing": missing},
                )

    @staticmethod
    def _read_files(files: list[dict]) -> list[tuple]:
        """Read every file into memory; OSError when missing or empty."""
        if not files:
            raise OSError("No file to send for signature")
        parts = []
        for idx, f in enumerate(files):
            path = f.get("path")
            name = f.get("name") or os.path.basename(path or "") or f"document-{idx + 1}.pdf"
            if not path or not os.path.isfile(path):
                raise OSError(f"Cannot read file: {name}")
            with open(path, "rb") as fh:
                content = fh.read()
            if not content:
                raise OSError(f"Empty file: {name}")
            parts.append((f"file[{idx}]", (name, content, f.get("mime_type") or "application/pdf")))
        return parts

    def _signing_form(self, title, message, signers, correlation_id) -> dict:
        form: dict[str, Any] = {
            "title": title,
            "subject": title,
            "message": message or f"Veuillez signer le document : {title}",
            "test_mode": "1" if self.test_mode else "0",
            "metadata[document_id]": str(correlation_id),
            "metadata[platform]": "signflow",
        }
        if self.client_id:
            form["client_id"] = self.client_id
        for idx, signer in enumerate(signers):
            form[f"signers[{idx}][email_address]"] = signer["email"].strip()
            form[f"signers[{idx}][name]"] = f"{signer['first_name'].strip()} {signer['last_name'].strip()}"
            form[f"signers[{idx}][order]"] = str(signer.get("order") or idx + 1)
        return form

    # ── Provider operations ──────────────────────────────────────────────────

    def create_signing_request(
        self,
        title: str,
        message: str | None,
        files: list[dict],
        signers: list[dict],
        correlation_id: str | int,
    ) -> GatewayResult:
        """Create a provider-hosted signing request.

        Args:
            files:    [{"name": display name, "path": stored file path}]
            signers:  [{"email", "first_name", "last_name", "order"}]
            correlation_id: our document id, echoed back in the metadata.

        Raises:
            ValidationError: a signer lacks email / first name / last name.
            OSError: a file is missing or empty.

        Returns:
            GatewayResult.data = {"request_id", "signers": [{signer_id, email,
            name, status_code, sign_url, ...}]}
        """
        self._validate_signers(signers)
        file_parts = self._read_files(files)
        form = self._signing_form(title, message, signers, correlation_id)

        result = self.request("POST", "/signature_request/send", data=form, files=file_parts)
        if result.ok:
            result.data = normalize_signature_request((result.data or {}).get("signature_request") or {})
            logger.info(
                "Signing request created request_id=%s signers=%d",
                result.data["request_id"], len(result.data["signers"]),
                extra={"correlation_id": result.data["request_id"], "operation": "create_signing_request"},
            )
        return result

    def create_embedded_signing_request(
        self,
        title: str,
        message: str | None,
        files: list[dict],
        signers: list[dict],
        correlation_id: str | int,
    ) -> GatewayResult:
        """Create a signing request signed inside our own UI.

        Same contract as ``create_signing_request``; every signer entry in the
        result additionally carries an embedded ``sign_url`` and its
        ``expires_at``. A signer whose URL could not be fetched keeps
        ``sign_url=None`` (the caller asks again later via
        ``get_embedded_sign_url``).
        """
        self._validate_signers(signers)
        file_parts = self._read_files(files)
        form = self._signing_form(title, message, signers, correlation_id)
        if not self.client_id:
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error="SIGNING_CLIENT_ID is required for embedded signing", duration_ms=0,
            )

        result = self.request("POST", "/signature_request/create_embedded", data=form, files=file_parts)
        if not result.ok:
            return result

        normalized = normalize_signature_request((result.data or {}).get("signature_request") or {})
        for signer in normalized["signers"]:
            signer["sign_url"] = None
            signer["expires_at"] = None
            if not signer["signer_id"]:
                continue
            url_result = self.get_embedded_sign_url(signer["signer_id"])
            if url_result.ok:
                signer["sign_url"] = url_result.data["sign_url"]
                signer["expires_at"] = url_result.data["expires_at"]
            else:
                logger.warning("Embedded sign URL unavailable signer_id=%s: %s",
                               signer["signer_id"], url_result.error)
        result.data = normalized
        return result

    def get_embedded_sign_url(self, signer_id: str) -> GatewayResult:
        """Fresh short-lived embedded signing URL for one provider signer.

        Returns:
            GatewayResult.data = {"sign_url": str, "expires_at": datetime|None}
        """
        result = self.request("GET", f"/embedded/sign_url/{signer_id}")
        if result.ok:
            embedded = (result.data or {}).get("embedded") or {}
            expires = embedded.get("expires_at")
            result.data = {
                "sign_url": embedded.get("sign_url"),
                "expires_at": datetime.fromtimestamp(int(expires), tz=timezone.utc) if expires else None,
            }
        return result

    def get_request_status(self, request_id: str) -> GatewayResult:
        """Current provider-side status of a request and each of its signers.

        Returns:
            GatewayResult.data = {"request_id", "is_complete", "is_declined",
            "has_error", "signers": [{signer_id, email, name, order,
            status_code, decline_reason, signed_at, last_viewed_at,
            last_reminded_at}]}
        """
        result = self.request("GET", f"/signature_request/{request_id}")
        if result.ok:
            result.data = normalize_signature_request((result.data or {}).get("signature_request") or {})
        return result

    def download_signed_file(self, request_id: str, destination: str) -> GatewayResult:
        """Fetch the final signed PDF and write it to *destination*.

        The caller hashes the written file. Filesystem errors come back as
        a failed result, like transport errors.

        Returns:
            GatewayResult.data = {"file_path": str, "size": int}
        """
        result = self.request(
            "GET", f"/signature_request/files/{request_id}",
            params={"file_type": "pdf"}, raw=True,
        )
        if not result.ok:
            return result

        content = (result.data or {}).get("content") or b""
        if not content:
            return GatewayResult(
                ok=False, status_code=result.status_code, data=None,
                error="Signed file is empty", duration_ms=result.duration_ms,
            )
        try:
            os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
            with open(destination, "wb") as fh:
                fh.write(content)
        except OSError as exc:
            logger.error("Could not write signed file to %s: %s", destination, exc)
            return GatewayResult(
                ok=False, status_code=result.status_code, data=None,
                error=f"Could not write signed file: {exc}", duration_ms=result.duration_ms,
            )
        result.data = {"file_path": destination, "size": len(content)}
        return result

    def send_reminder(self, request_id: str, signer_email: str) -> GatewayResult:
        """Ask the provider to re-notify one signer. Best-effort for callers."""
        return self.request(
            "POST", f"/signature_request/remind/{request_id}",
            data={"email_address": signer_email},
        )

    def cancel_request(self, request_id: str) -> GatewayResult:
        """Cancel an incomplete signing request."""
        return self.request("POST", f"/signature_request/cancel/{request_id}")

    # ── Inbound event authenticity ───────────────────────────────────────────

    def compute_event_hash(self, event_time: Any, event_type: Any) -> str:
        """Hex HMAC-SHA256 of ``event_time + event_type`` keyed by the webhook secret."""
        message = f"{event_time}{event_type}".encode("utf-8")
        return hmac.new(self.webhook_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify_event_authenticity(self, payload: Any, provided_hash: str | None) -> bool:
        """Check an inbound callback against its ``event_hash``.

        There is no switch to turn this off. A missing secret, a missing
        hash or a malformed envelope all fail verification.
        """
        if not self.webhook_secret or not provided_hash:
            return False
        if not isinstance(payload, dict):
            return False
        event = payload.get("event")
        if not isinstance(event, dict):
            return False
        event_time = event.get("event_time")
        event_type = event.get("event_type")
        if event_time in (None, "") or not event_type:
            return False
        expected = self.compute_event_hash(event_time, event_type)
        provided = str(provided_hash).strip().lower()
        return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8", "surrogatepass"))


def _error_message(resp: requests.Response) -> str:
    """Provider error message from a JSON error body, else the raw text."""
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:500]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("error_msg") or err.get("error_name") or err)[:500]
    return (resp.text or "")[:500]


# Module-level singleton, configured by create_app() and imported by services.
# In tests, patch its methods:
#   patch.object(gw_module.signing_gateway, "get_request_status", return_value=...)
signing_gateway = SigningGateway()

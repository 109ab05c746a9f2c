"""
Student Information System / Learning Management System gateway.

All outbound HTTP calls to the SIS and LMS go through ``IntegrationGateway``.
Direct `requests` calls in services or blueprints are FORBIDDEN.

  - API key auth via ``X-API-Key`` header
  - Retry: max 2 retries, exponential backoff (1 s → 4 s)
  - Timeout: 30 s (configurable per call)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per system
  - Structured ``GatewayResult`` returned; the gateway never raises

``IntegrationSync`` turns a stage change into SIS/LMS calls. It raises
``IntegrationError`` on a failed result so the side-effect outbox records
the attempt and retries the job later.

Testability: pass a mock `session` to IntegrationGateway() in tests instead
of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from admissions.core.exceptions import IntegrationError

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]    # sleep[0] after 1st fail, sleep[1] after 2nd

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30


class GatewayResult:
    """Structured return value from IntegrationGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
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
        """Return fields suitable for the side-effect job result column."""
        return {
            "http_status_code": self.status_code,
            "error_message": self.error,
            "duration_ms": self.duration_ms,
            "payload_hash": self.payload_hash,
            "sync_status": "success" if self.ok else "error",
        }


class IntegrationGateway:
    """REST gateway for one external system ("SIS" or "LMS").

    A gateway without a ``base_url`` is disabled: ``enabled`` is False and
    callers skip it.

    Usage:
        gw = IntegrationGateway("SIS", "https://sis.example.edu", api_key="…")
        result = gw.request("POST", "/api/v1/applicants/42/status", json_body={...})
    """

    def __init__(
        self,
        system: str,
        base_url: str | None,
        api_key: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.system = system
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

        # Circuit breaker: {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict = {"failures": [], "open_until": None}

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _circuit_closed(self) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        state = self._cb_state
        now = datetime.now(timezone.utc)

        if state["open_until"] and now < state["open_until"]:
            logger.warning("Circuit open for %s until %s", self.system, state["open_until"])
            return False

        # Prune failures outside the counting window
        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        state["failures"] = [f for f in state["failures"] if f >= window_start]

        if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
            state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "Circuit opened for %s: %d failures in %ds window",
                self.system, len(state["failures"]), _CB_WINDOW_SECONDS,
            )
            return False

        return True

    def _record_failure(self) -> None:
        self._cb_state["failures"].append(datetime.now(timezone.utc))

    def _record_success(self) -> None:
        """On success, reset failure history and close the circuit."""
        self._cb_state["failures"].clear()
        self._cb_state["open_until"] = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    @staticmethod
    def _compute_payload_hash(payload: dict | list | None) -> str | None:
        if payload is None:
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> GatewayResult:
        """Execute a request against the system with retries.

        Returns:
            GatewayResult — always returns (never raises). Callers check .ok.
        """
        if not self.enabled:
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error=f"{self.system} integration is not configured", duration_ms=0,
            )
        if not self._circuit_closed():
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error=f"Circuit breaker is open — {self.system} calls temporarily suspended",
                duration_ms=0,
            )

        url = f"{self.base_url}/{path.lstrip('/')}"
        payload_hash = self._compute_payload_hash(json_body)
        last_error = "Unknown error"
        last_status: int | None = None

        for attempt in range(_RETRY_MAX + 1):  # 0, 1, 2
            try:
                kwargs: dict[str, Any] = {"headers": self._headers(), "timeout": timeout}
                if json_body is not None:
                    kwargs["json"] = json_body
                if params:
                    kwargs["params"] = params

                t0 = time.perf_counter()
                resp = self.session.request(method, url, **kwargs)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success()
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=data,
                        error=None,
                        duration_ms=duration_ms,
                        payload_hash=payload_hash,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                self._record_failure()
                logger.warning(
                    "%s request failed attempt=%d/%d status=%d url=%s",
                    self.system, attempt + 1, _RETRY_MAX + 1, resp.status_code, url,
                )
                # Client errors other than throttling will not succeed on retry
                if 400 <= resp.status_code < 500 and resp.status_code != 429:
                    break

            except requests.Timeout:
                last_error = f"Request timed out after {timeout}s"
                self._record_failure()
                logger.warning(
                    "%s request timed out attempt=%d/%d url=%s",
                    self.system, attempt + 1, _RETRY_MAX + 1, url,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure()
                logger.warning(
                    "%s network error attempt=%d/%d url=%s error=%s",
                    self.system, attempt + 1, _RETRY_MAX + 1, url, last_error,
                )

            if attempt < _RETRY_MAX:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying %s request in %ss (attempt %d)", self.system, sleep_s, attempt + 2)
                time.sleep(sleep_s)

        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=0,
            payload_hash=payload_hash,
        )


class IntegrationSync:
    """
    Pushes application stage changes to the SIS (always) and the LMS
    (only when the new stage is one of ``lms_sync_stages``).

    A disabled gateway counts as ``skipped``. A failed call raises
    ``IntegrationError``.
    """

    def __init__(
        self,
        sis: IntegrationGateway,
        lms: IntegrationGateway,
        lms_sync_stages=("Enrollment",),
    ) -> None:
        self.sis = sis
        self.lms = lms
        self.lms_sync_stages = {s.strip() for s in lms_sync_stages if s and s.strip()}

    @classmethod
    def from_config(cls, config, session: requests.Session | None = None) -> "IntegrationSync":
        stages = config.get("LMS_SYNC_STAGES") or ""
        if isinstance(stages, str):
            stages = stages.split(",")
        return cls(
            sis=IntegrationGateway("SIS", config.get("SIS_BASE_URL"), config.get("SIS_API_KEY"), session),
            lms=IntegrationGateway("LMS", config.get("LMS_BASE_URL"), config.get("LMS_API_KEY"), session),
            lms_sync_stages=stages,
        )

    def sync_on_status_change(self, application, new_stage) -> dict:
        """
        Sync one stage change. Returns ``{"sis": status, "lms": status}``
        where status is ``synced`` or ``skipped``.
        """
        stage_name = getattr(new_stage, "name", None)
        body = {
            "application_id": application.id,
            "applicant_user_id": application.applicant_user_id,
            "application_type": application.application_type,
            "stage_id": getattr(new_stage, "id", None),
            "stage": stage_name,
            "workflow_state": application.workflow_state,
            "changed_at": datetime.now(timezone.utc).isoformat(),
        }
        outcome = {"sis": "skipped", "lms": "skipped"}

        if self.sis.enabled:
            result = self.sis.request(
                "POST", f"/api/v1/applications/{application.id}/status", json_body=body,
            )
            if not result.ok:
                raise IntegrationError("SIS", result.error or "unknown error", result.status_code)
            outcome["sis"] = "synced"

        if stage_name in self.lms_sync_stages and self.lms.enabled:
            result = self.lms.request("POST", "/api/v1/enrollments", json_body=body)
            if not result.ok:
                raise IntegrationError("LMS", result.error or "unknown error", result.status_code)
            outcome["lms"] = "synced"

        logger.info(
            "Integration sync for stage '%s': sis=%s lms=%s", stage_name, outcome["sis"], outcome["lms"],
            extra={"application_id": application.id, "event_type": "integration_sync"},
        )
        return outcome

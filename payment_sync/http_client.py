"""HTTP client for the clinic backend payment endpoints.

Purpose: One place for connection pooling, timeouts, auth headers and
resilience policy of every call the reconciliation client makes.

Pattern: requests.Session with pooled adapter, tenacity retries for status
reads only, and a circuit breaker around every call.

Retry policy:
- POST /payments/execute is never retried (a second capture is the
  backend's business, not ours)
- PATCH /payments/fix-appointment is never retried here; callers own retry
- GET reads retry on connection errors and timeouts
"""
import logging
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from payment_sync import config
from payment_sync.circuit_breaker import CircuitBreaker
from payment_sync.errors import BackendError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]

# Failures that say "backend unreachable", as opposed to "backend said no"
TRANSIENT_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


def create_http_session(
    max_retries: int = 3,
    backoff_factor: float = 0.5
) -> requests.Session:
    """
    Create HTTP session with connection pooling.

    urllib3 retries are restricted to GET so a capture or correction
    request is sent exactly once.

    Args:
        max_retries: Status-based retries for GET (429/502/503/504)
        backoff_factor: Backoff multiplier for those retries

    Returns:
        Configured requests.Session
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Content-Type": "application/json"})

    return session


def _error_message(response: requests.Response) -> str:
    """Pull the backend's error text out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        error = body.get("error")
        details = body.get("details")
        if error and details and details != error:
            return f"{error}: {details}"
        if error or details:
            return str(error or details)
    return f"HTTP {response.status_code}"


class BackendClient:
    """
    Thin REST client for the backend payment and appointment endpoints.

    The bearer token is resolved per call because identity can appear
    after the client was built (restored session after a reload).
    """

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        token_provider: Optional[TokenProvider] = None,
        session: Optional[requests.Session] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        timeout: float = config.REQUEST_TIMEOUT,
        read_retries: int = config.READ_RETRIES,
        read_backoff: float = 0.5
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider or (lambda: None)
        self.session = session or create_http_session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="backend",
            failure_threshold=config.BREAKER_FAILURE_THRESHOLD,
            timeout=config.BREAKER_TIMEOUT,
            counted=TRANSIENT_ERRORS,
        )
        self.timeout = timeout

        self._get_with_retry = retry(
            stop=stop_after_attempt(read_retries + 1),
            wait=wait_exponential(multiplier=read_backoff, min=read_backoff, max=8 * read_backoff),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(self._send)

    def execute_payment(self, payment_id: str, payer_id: str) -> Dict[str, Any]:
        """POST /payments/execute - finalize the authorized payment."""
        return self.circuit_breaker.call(
            self._send, "POST", "/payments/execute",
            json={"payment_id": payment_id, "payer_id": payer_id}
        )

    def get_appointment(self, appointment_id: str) -> Optional[Dict[str, Any]]:
        """GET /appointments/{id} - returns the appointment sub-record."""
        body = self.circuit_breaker.call(
            self._get_with_retry, "GET", f"/appointments/{appointment_id}"
        )
        return body.get("appointment") if isinstance(body, dict) else None

    def fix_appointment(self, appointment_id: str) -> Dict[str, Any]:
        """PATCH /payments/fix-appointment/{id} - idempotent force-correct."""
        return self.circuit_breaker.call(
            self._send, "PATCH", f"/payments/fix-appointment/{appointment_id}"
        )

    def debug_appointment(self, appointment_id: str) -> Dict[str, Any]:
        """GET /payments/debug-appointment/{id} - payment vs appointment diagnosis."""
        return self.circuit_breaker.call(
            self._get_with_retry, "GET", f"/payments/debug-appointment/{appointment_id}"
        )

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider()
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Issue one request and decode the JSON body.

        Raises:
            BackendError: Non-2xx status or non-JSON body
            requests.exceptions.RequestException: Transport failure
        """
        kwargs.setdefault("timeout", self.timeout)
        response = self.session.request(
            method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
        )

        if response.status_code >= 400:
            raise BackendError(_error_message(response), status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                f"Invalid JSON from {method} {path}: {e}",
                status_code=response.status_code
            ) from e

"""Gateway capture client.

Purpose: Turn the processor redirect (payment + payer reference) into exactly
one capture request against the backend, which executes the payment with
the processor and reports its own view of the appointment.

Every failure after validation comes back as a tagged CaptureResult, never
as an exception, so the caller can branch without try/except.
"""
from dataclasses import dataclass
from typing import Optional

import requests
from pydantic import ValidationError

from payment_sync.circuit_breaker import CircuitBreakerOpen
from payment_sync.errors import BackendError, CaptureFailed
from payment_sync.http_client import BackendClient
from payment_sync.logging_config import get_logger
from payment_sync.models import CaptureResponse, CheckoutCallback

logger = get_logger(__name__)


@dataclass
class CaptureResult:
    """Outcome of one capture attempt."""
    success: bool
    response: Optional[CaptureResponse] = None
    error: Optional[CaptureFailed] = None

    @classmethod
    def failed(cls, message: str) -> "CaptureResult":
        return cls(success=False, error=CaptureFailed(message))


class CaptureClient:
    """Issues the capture/execute call. Not idempotent on its own."""

    def __init__(self, backend: BackendClient):
        self.backend = backend

    def capture(self, payment_reference: str, payer_reference: str) -> CaptureResult:
        """
        Capture an authorized payment.

        Args:
            payment_reference: Processor payment id from the redirect
            payer_reference: Processor payer id from the redirect

        Returns:
            CaptureResult with the parsed response, or a CaptureFailed error

        Raises:
            InvalidCheckoutCallback: If either reference is missing (no request sent)
        """
        callback = CheckoutCallback.validated(payment_reference, payer_reference)
        return self.capture_callback(callback)

    def capture_callback(self, callback: CheckoutCallback) -> CaptureResult:
        """Capture using an already validated callback."""
        logger.info("capture_started", payment_reference=callback.payment_reference)

        try:
            body = self.backend.execute_payment(
                callback.payment_reference, callback.payer_reference
            )
        except BackendError as e:
            if e.status_code is not None and e.status_code < 400:
                # 2xx means the processor took the money; only the body is bad
                logger.warning("capture_response_unreadable", reason=str(e))
                return CaptureResult(success=True, response=CaptureResponse())
            logger.error("capture_failed", reason=str(e), status_code=e.status_code)
            return CaptureResult.failed(str(e))
        except CircuitBreakerOpen as e:
            logger.error("capture_failed", reason=str(e))
            return CaptureResult.failed(str(e))
        except requests.exceptions.RequestException as e:
            logger.error("capture_failed", reason=str(e), network=True)
            return CaptureResult.failed(str(e))

        try:
            response = CaptureResponse.model_validate(body)
        except ValidationError as e:
            logger.warning("capture_response_unreadable", errors=e.error_count())
            return CaptureResult(success=True, response=CaptureResponse())

        logger.info(
            "capture_succeeded",
            appointment_id=response.target_appointment_id(),
            sync_failed=response.sync_failed
        )
        return CaptureResult(success=True, response=response)

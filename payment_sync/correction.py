"""Manual correction gateway.

Asks the backend to recompute an appointment's payment status from its
payment ledger. Used by the pending-sync drain and by the user-facing
"fix payment status" action. One request per call - retry policy belongs
to the caller.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from payment_sync.circuit_breaker import CircuitBreakerOpen
from payment_sync.errors import BackendError, CorrectionFailed
from payment_sync.http_client import BackendClient
from payment_sync.logging_config import get_logger
from payment_sync.models import AppointmentSnapshot, SyncDiagnosis

logger = get_logger(__name__)


@dataclass
class CorrectionResult:
    """Outcome of one correction request."""
    success: bool
    appointment_id: str
    snapshot: Optional[AppointmentSnapshot] = None
    error: Optional[CorrectionFailed] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def failed(cls, appointment_id: str, message: str,
               data: Optional[Dict[str, Any]] = None) -> "CorrectionResult":
        return cls(
            success=False,
            appointment_id=appointment_id,
            error=CorrectionFailed(appointment_id, message),
            data=data
        )


class CorrectionGateway:
    """Client for the idempotent force-correct endpoint."""

    def __init__(self, backend: BackendClient):
        self.backend = backend

    def correct(self, appointment_id: str) -> CorrectionResult:
        """
        Force the backend to repair payment_status for appointment_id.

        Calling it on an appointment that is already paid is a no-op on the
        backend and returns the current snapshot.

        Args:
            appointment_id: Appointment to repair

        Returns:
            CorrectionResult - success only when the returned snapshot is paid
        """
        appointment_id = str(appointment_id)
        logger.info("correction_requested", appointment_id=appointment_id)

        try:
            body = self.backend.fix_appointment(appointment_id)
        except (BackendError, CircuitBreakerOpen, requests.exceptions.RequestException) as e:
            logger.error("correction_failed", appointment_id=appointment_id, error=str(e))
            return CorrectionResult.failed(appointment_id, str(e))

        record = body.get("appointment") if isinstance(body, dict) else None
        if not record:
            logger.error("correction_failed", appointment_id=appointment_id, error="no appointment in response")
            return CorrectionResult.failed(appointment_id, "Correction response has no appointment", body)

        try:
            snapshot = AppointmentSnapshot.model_validate(record)
        except ValidationError as e:
            logger.error("correction_failed", appointment_id=appointment_id, error="unreadable appointment")
            return CorrectionResult.failed(appointment_id, f"Unreadable appointment: {e}", body)

        if not snapshot.is_paid:
            message = f"Appointment is still {snapshot.payment_status.value} after correction"
            logger.error("correction_failed", appointment_id=appointment_id, error=message)
            result = CorrectionResult.failed(appointment_id, message, body)
            result.snapshot = snapshot
            return result

        logger.info("correction_succeeded", appointment_id=appointment_id)
        return CorrectionResult(
            success=True,
            appointment_id=appointment_id,
            snapshot=snapshot,
            data=body
        )

    def check_sync_status(self, appointment_id: str) -> SyncDiagnosis:
        """
        Ask the backend whether payment and appointment agree.

        Raises:
            BackendError: Backend rejected the request or returned garbage
            CircuitBreakerOpen: Backend considered down
            requests.exceptions.RequestException: Transport failure
        """
        body = self.backend.debug_appointment(str(appointment_id))
        try:
            diagnosis = SyncDiagnosis.model_validate(body)
        except ValidationError as e:
            raise BackendError(f"Unreadable sync diagnosis: {e}") from e

        logger.info(
            "sync_status_checked",
            appointment_id=diagnosis.appointment_id,
            sync_status=diagnosis.sync_status.value if diagnosis.sync_status else None
        )
        return diagnosis

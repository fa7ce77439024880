"""Error taxonomy for payment status reconciliation.

Only InvalidCheckoutCallback and CaptureFailed may block the success screen.
Everything raised after a successful capture is recovered locally.
"""
from typing import Optional


class PaymentSyncError(Exception):
    """Base class for all payment_sync errors."""
    pass


class InvalidCheckoutCallback(PaymentSyncError):
    """Raised when the processor redirect is missing or has blank references."""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = missing or []


class CaptureFailed(PaymentSyncError):
    """Processor or backend rejected the capture (raw message preserved)."""
    pass


class CorrectionFailed(PaymentSyncError):
    """Manual correction did not bring the mirror to paid."""

    def __init__(self, appointment_id: str, message: str):
        super().__init__(message)
        self.appointment_id = appointment_id


class TransientReadError(PaymentSyncError):
    """A single status read failed; logged by the poller, never surfaced."""

    def __init__(self, appointment_id: str, message: str):
        super().__init__(message)
        self.appointment_id = appointment_id


class InvalidTransition(PaymentSyncError):
    """Transaction lifecycle move that is not in VALID_TRANSITIONS."""
    pass


class BackendError(PaymentSyncError):
    """Backend answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

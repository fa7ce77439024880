"""Payment status reconciliation for redirect-based checkouts."""
from payment_sync.capture import CaptureClient, CaptureResult
from payment_sync.correction import CorrectionGateway, CorrectionResult
from payment_sync.errors import (
    BackendError,
    CaptureFailed,
    CorrectionFailed,
    InvalidCheckoutCallback,
    PaymentSyncError,
    TransientReadError,
)
from payment_sync.pending_queue import PendingSyncQueue
from payment_sync.poller import PollState, StatusPoller
from payment_sync.reconciler import CheckoutOutcome, CheckoutReconciler, CheckoutStatus
from payment_sync.verifier import SyncOutcome, verify_sync

__all__ = [
    "BackendError",
    "CaptureClient",
    "CaptureFailed",
    "CaptureResult",
    "CheckoutOutcome",
    "CheckoutReconciler",
    "CheckoutStatus",
    "CorrectionFailed",
    "CorrectionGateway",
    "CorrectionResult",
    "InvalidCheckoutCallback",
    "PaymentSyncError",
    "PendingSyncQueue",
    "PollState",
    "StatusPoller",
    "SyncOutcome",
    "TransientReadError",
    "verify_sync",
]

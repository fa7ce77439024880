"""Checkout reconciler: drives one redirect-based checkout to convergence.

Flow:
    success redirect -> validate callback -> capture -> verify
        synced    -> done, no poller
        uncertain -> tell the user it succeeded, enqueue a pending sync
                     and poll the appointment until the mirror reads paid

Only an invalid callback or a failed capture is reported as a failure.
Once the processor has captured the money, nothing on the reconciliation
path may turn the outcome back into an error.
"""
import threading
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from payment_sync import config
from payment_sync.capture import CaptureClient
from payment_sync.correction import CorrectionGateway, CorrectionResult
from payment_sync.errors import InvalidCheckoutCallback
from payment_sync.http_client import BackendClient, TokenProvider
from payment_sync.logging_config import bind_checkout, clear_checkout, generate_checkout_id, get_logger
from payment_sync.models import (
    AppointmentSnapshot,
    CaptureResponse,
    CheckoutCallback,
    SyncDiagnosis,
    Transaction,
    TransactionState,
)
from payment_sync.pending_queue import PendingSyncQueue
from payment_sync.poller import StatusPoller
from payment_sync.storage import InMemoryStore, KeyValueStore
from payment_sync.verifier import SyncVerdict, verify_sync

logger = get_logger(__name__)

StatusListener = Callable[[str, str, Optional[AppointmentSnapshot]], None]


class CheckoutStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    INVALID_CALLBACK = "invalid_callback"
    CAPTURE_FAILED = "capture_failed"


@dataclass
class CheckoutOutcome:
    """What the success page should show after a redirect."""
    status: CheckoutStatus
    message: str
    redirect_to: str
    synced: bool = False
    needs_manual_fix: bool = False
    appointment_id: Optional[str] = None
    error: Optional[Exception] = None
    response: Optional[CaptureResponse] = None
    verdict: Optional[SyncVerdict] = None

    @property
    def failed(self) -> bool:
        return self.status in (CheckoutStatus.INVALID_CALLBACK, CheckoutStatus.CAPTURE_FAILED)


class CheckoutReconciler:
    """
    Orchestrates capture, verification and the poll/queue fallbacks.

    Status events are pushed to ``listener(event, appointment_id, snapshot)``
    with events ``converged``, ``corrected`` and ``manual_fix_needed``.
    """

    def __init__(
        self,
        capture_client: CaptureClient,
        correction_gateway: CorrectionGateway,
        poller: StatusPoller,
        queue: PendingSyncQueue,
        store: KeyValueStore,
        listener: Optional[StatusListener] = None
    ):
        self.capture_client = capture_client
        self.correction_gateway = correction_gateway
        self.poller = poller
        self.queue = queue
        self.store = store
        self.listener = listener
        self.transactions: Dict[str, Transaction] = {}

        if self.poller.on_gave_up is None:
            self.poller.on_gave_up = self._on_poll_gave_up

        self._lock = threading.Lock()
        self._capturing: set = set()

    @classmethod
    def from_config(
        cls,
        token_provider: Optional[TokenProvider] = None,
        store: Optional[KeyValueStore] = None,
        base_url: str = config.API_BASE_URL,
        listener: Optional[StatusListener] = None
    ) -> "CheckoutReconciler":
        """Wire a reconciler against the configured backend."""
        backend = BackendClient(
            base_url=base_url,
            token_provider=token_provider,
        )
        store = store if store is not None else InMemoryStore()
        return cls(
            capture_client=CaptureClient(backend),
            correction_gateway=CorrectionGateway(backend),
            poller=StatusPoller(
                backend.get_appointment,
                interval=config.POLL_INTERVAL,
                max_ticks=config.POLL_MAX_TICKS,
            ),
            queue=PendingSyncQueue(store),
            store=store,
            listener=listener,
        )

    def begin_checkout(
        self,
        payment_reference: str,
        appointment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "PHP"
    ) -> Transaction:
        """Record a checkout the processor has just issued payment_reference for."""
        transaction = Transaction(
            payment_reference=payment_reference,
            appointment_id=appointment_id,
            amount=amount,
            currency=currency,
        )
        self.transactions[payment_reference] = transaction
        logger.info("checkout_initiated", payment_reference=payment_reference, appointment_id=appointment_id)
        return transaction

    def handle_success_redirect(self, query_params: Mapping[str, Any]) -> CheckoutOutcome:
        """
        Process the processor's success redirect.

        Args:
            query_params: Redirect query parameters (paymentId/PayerID or
                paymentReference/payerReference)

        Returns:
            CheckoutOutcome for the result page
        """
        try:
            callback = CheckoutCallback.from_query(query_params)
        except InvalidCheckoutCallback as e:
            logger.error("checkout_callback_invalid", missing=e.missing)
            return CheckoutOutcome(
                status=CheckoutStatus.INVALID_CALLBACK,
                message="Invalid payment parameters",
                redirect_to=config.SAFE_LANDING_PATH,
                error=e,
            )

        reference = callback.payment_reference
        with self._lock:
            duplicate = (
                reference in self._capturing
                or self.store.get(config.PROCESSED_PAYMENT_KEY) == reference
            )
            if not duplicate:
                self._capturing.add(reference)

        if duplicate:
            logger.info("checkout_already_processed", payment_reference=reference)
            return CheckoutOutcome(
                status=CheckoutStatus.ALREADY_PROCESSED,
                message="Payment already processed",
                redirect_to=config.SAFE_LANDING_PATH,
            )

        bind_checkout(generate_checkout_id(), reference)
        try:
            return self._capture_and_verify(callback)
        finally:
            with self._lock:
                self._capturing.discard(reference)
            clear_checkout()

    def handle_cancel_redirect(self, payment_reference: str) -> Optional[Transaction]:
        """The payer cancelled at the processor; nothing was charged."""
        transaction = self.transactions.get(payment_reference)
        if transaction is not None:
            self._advance(transaction, TransactionState.ABANDONED)
        logger.info("checkout_abandoned", payment_reference=payment_reference)
        return transaction

    def on_identity_available(self) -> Optional[bool]:
        """
        Drain the pending-sync slot now that requests can be authenticated.

        Returns:
            None if nothing was pending, else whether the correction succeeded
        """
        entry = self.queue.peek()
        if entry is None:
            return None

        corrected: Dict[str, CorrectionResult] = {}

        def correct(appointment_id: str) -> CorrectionResult:
            corrected[appointment_id] = self.correction_gateway.correct(appointment_id)
            return corrected[appointment_id]

        drained = self.queue.drain(correct)
        if drained:
            for appointment_id, result in corrected.items():
                self._mark_reconciled(appointment_id)
                self._notify("corrected", appointment_id, result.snapshot)
        return drained

    def manual_fix(self, appointment_id: str) -> CorrectionResult:
        """User-triggered last-resort correction."""
        result = self.correction_gateway.correct(appointment_id)
        if result.success:
            self.queue.clear(appointment_id)
            self._mark_reconciled(result.appointment_id)
            self._notify("corrected", result.appointment_id, result.snapshot)
        return result

    def check_sync_status(self, appointment_id: str) -> SyncDiagnosis:
        return self.correction_gateway.check_sync_status(appointment_id)

    def shutdown(self):
        """Stop background polling (page left / client closing)."""
        self.poller.stop()

    def _capture_and_verify(self, callback: CheckoutCallback) -> CheckoutOutcome:
        transaction = self.transactions.get(callback.payment_reference)
        if transaction is None:
            transaction = Transaction(payment_reference=callback.payment_reference)
            self.transactions[callback.payment_reference] = transaction
        transaction.payer_reference = callback.payer_reference
        self._advance(transaction, TransactionState.AUTHORIZED)

        result = self.capture_client.capture_callback(callback)
        if not result.success:
            self._advance(transaction, TransactionState.FAILED)
            return CheckoutOutcome(
                status=CheckoutStatus.CAPTURE_FAILED,
                message="Payment execution failed. Please try again.",
                redirect_to=config.SAFE_LANDING_PATH,
                error=result.error,
            )

        self.store.set(config.PROCESSED_PAYMENT_KEY, callback.payment_reference)
        self._advance(transaction, TransactionState.CAPTURED)

        response = result.response
        verdict = verify_sync(response, transaction.appointment_id)
        appointment_id = verdict.appointment_id
        if appointment_id is not None:
            transaction.appointment_id = appointment_id
            self.store.set(config.COMPLETED_APPOINTMENT_KEY, appointment_id)

        redirect_to = f"{config.SAFE_LANDING_PATH}?payment=success"
        if appointment_id is not None:
            redirect_to += f"&appointmentId={appointment_id}"

        if verdict.synced:
            self._advance(transaction, TransactionState.RECONCILED)
            logger.info("checkout_synced", appointment_id=appointment_id)
            return CheckoutOutcome(
                status=CheckoutStatus.SUCCESS,
                message="Payment completed and status updated successfully!",
                redirect_to=redirect_to,
                synced=True,
                appointment_id=appointment_id,
                response=response,
                verdict=verdict,
            )

        self._advance(transaction, TransactionState.RECONCILIATION_PENDING)
        logger.warning(
            "checkout_sync_uncertain",
            appointment_id=appointment_id,
            reason=verdict.reason.value if verdict.reason else None,
            detail=verdict.detail
        )
        self._reconcile_later(verdict)
        return CheckoutOutcome(
            status=CheckoutStatus.SUCCESS,
            message="Payment completed! Status update in progress...",
            redirect_to=redirect_to,
            synced=False,
            needs_manual_fix=True,
            appointment_id=appointment_id,
            response=response,
            verdict=verdict,
        )

    def _reconcile_later(self, verdict: SyncVerdict):
        appointment_id = verdict.appointment_id
        if appointment_id is None:
            logger.error("checkout_unreconcilable", reason="no appointment id in capture response")
            return

        reason = verdict.reason.value if verdict.reason else "sync_uncertain"
        self.queue.enqueue(appointment_id, reason=reason)

        # Only the newest checkout in this session is worth watching
        if self.poller.running and self.poller.appointment_id != appointment_id:
            self.poller.stop()
        self.poller.start(appointment_id, on_converged=self._on_converged)

    def _on_converged(self, snapshot: AppointmentSnapshot):
        self.queue.clear(snapshot.id)
        self._mark_reconciled(snapshot.id)
        self._notify("converged", snapshot.id, snapshot)

    def _on_poll_gave_up(self, appointment_id: str):
        # Entry stays queued for the next identity event or a manual fix
        transaction = self._transaction_for(appointment_id)
        if transaction is not None:
            self._advance(transaction, TransactionState.FAILED)
        self._notify("manual_fix_needed", appointment_id, None)

    def _mark_reconciled(self, appointment_id: str):
        if self.poller.running and self.poller.appointment_id == str(appointment_id):
            self.poller.stop()
        transaction = self._transaction_for(appointment_id)
        if transaction is not None:
            self._advance(transaction, TransactionState.RECONCILED)

    def _transaction_for(self, appointment_id: str) -> Optional[Transaction]:
        for transaction in reversed(list(self.transactions.values())):
            if transaction.appointment_id == str(appointment_id):
                return transaction
        return None

    def _advance(self, transaction: Transaction, state: TransactionState):
        if transaction.state == state:
            return
        if not transaction.can_transition(state):
            logger.debug(
                "transaction_transition_skipped",
                payment_reference=transaction.payment_reference,
                current=transaction.state.value,
                requested=state.value
            )
            return
        transaction.transition(state)

    def _notify(self, event: str, appointment_id: str, snapshot: Optional[AppointmentSnapshot]):
        if self.listener is None:
            return
        try:
            self.listener(event, str(appointment_id), snapshot)
        except Exception:
            logger.exception("status_listener_failed", status_event=event, appointment_id=appointment_id)

"""Tests for checkout, capture and transaction models."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from payment_sync.errors import InvalidCheckoutCallback, InvalidTransition
from payment_sync.models import (
    AppointmentSnapshot,
    CaptureResponse,
    CheckoutCallback,
    PaymentStatus,
    SyncDiagnosis,
    SyncStatus,
    Transaction,
    TransactionState,
    VALID_TRANSITIONS,
)


class TestCheckoutCallback:

    def test_parses_processor_parameter_names(self):
        callback = CheckoutCallback.from_query({"paymentId": "PAYID-123", "PayerID": "PAYER-9"})

        assert callback.payment_reference == "PAYID-123"
        assert callback.payer_reference == "PAYER-9"

    def test_parses_reference_parameter_names(self):
        callback = CheckoutCallback.from_query(
            {"paymentReference": "PAYID-123", "payerReference": "PAYER-9"}
        )

        assert callback.payment_reference == "PAYID-123"

    def test_accepts_multi_value_query_dicts(self):
        callback = CheckoutCallback.from_query({"paymentId": ["PAYID-1"], "PayerID": ["PAYER-1"]})

        assert callback.payer_reference == "PAYER-1"

    def test_missing_payer_reference(self):
        with pytest.raises(InvalidCheckoutCallback) as exc_info:
            CheckoutCallback.from_query({"paymentId": "PAYID-123"})

        assert exc_info.value.missing == ["payerReference"]

    def test_blank_values_are_missing(self):
        with pytest.raises(InvalidCheckoutCallback) as exc_info:
            CheckoutCallback.from_query({"paymentId": "   ", "PayerID": ""})

        assert exc_info.value.missing == ["paymentReference", "payerReference"]

    def test_blank_preferred_key_falls_back_to_processor_name(self):
        callback = CheckoutCallback.from_query(
            {"paymentReference": "  ", "paymentId": "PAYID-123", "PayerID": "PAYER-9"}
        )

        assert callback.payment_reference == "PAYID-123"

    def test_strips_whitespace(self):
        callback = CheckoutCallback.validated(" PAYID-1 ", "PAYER-1\n")

        assert callback.payment_reference == "PAYID-1"
        assert callback.payer_reference == "PAYER-1"


class TestAppointmentSnapshot:

    def test_integer_id_coerced_to_str(self, paid_appointment):
        snapshot = AppointmentSnapshot.model_validate(paid_appointment)

        assert snapshot.id == "42"
        assert snapshot.is_paid

    def test_ignores_extra_fields(self):
        snapshot = AppointmentSnapshot.model_validate(
            {"id": "7", "payment_status": "refunded", "patient_id": "p-1"}
        )

        assert snapshot.payment_status == PaymentStatus.REFUNDED
        assert not snapshot.is_paid

    def test_rejects_unknown_status(self):
        with pytest.raises(ValidationError):
            AppointmentSnapshot.model_validate({"id": "7", "payment_status": "pending"})


class TestCaptureResponse:

    def test_reads_backend_field_names(self, paid_appointment):
        response = CaptureResponse.model_validate({
            "message": "Payment completed successfully",
            "payment": {"id": 5, "appointment_id": 42, "amount": 1500},
            "paypal_payment": {"id": "PAYID-1", "state": "approved"},
            "verifyAppointment": paid_appointment,
            "appointmentUpdate": [paid_appointment],
        })

        assert response.processor_record["state"] == "approved"
        assert response.verify_appointment == paid_appointment
        assert response.updated_rows == [paid_appointment]
        assert response.target_appointment_id() == "42"

    def test_reads_snapshot_alias(self):
        response = CaptureResponse.model_validate({
            "processorRecord": {"state": "approved"},
            "appointmentSnapshot": {"id": 3, "payment_status": "unpaid"},
        })

        assert response.verify_appointment["payment_status"] == "unpaid"
        assert response.target_appointment_id() == "3"

    def test_target_from_sync_failure_payload(self):
        response = CaptureResponse.model_validate({
            "payment": {"id": 5},
            "sync_failed": True,
            "sync_error": "Payment sync failed - manual intervention required",
            "appointment_id": 42,
            "verifyAppointment": None,
        })

        assert response.sync_failed
        assert response.target_appointment_id() == "42"

    def test_target_from_legacy_update(self):
        response = CaptureResponse.model_validate({
            "appointment_update": {"appointment_id": 9, "updated": False},
        })

        assert response.target_appointment_id() == "9"

    def test_no_target(self):
        assert CaptureResponse().target_appointment_id() is None


class TestSyncDiagnosis:

    def test_mismatch_needs_fix(self):
        diagnosis = SyncDiagnosis.model_validate({
            "appointment_id": 42,
            "appointment": {"id": 42, "payment_status": "unpaid"},
            "payments": [{"id": 5, "status": "completed"}],
            "sync_status": "MISMATCH_DETECTED",
            "issue_detected": True,
        })

        assert diagnosis.appointment_id == "42"
        assert diagnosis.needs_fix

    def test_missing_status_when_no_payments(self):
        diagnosis = SyncDiagnosis.model_validate({"appointment_id": "42", "sync_status": None})

        assert diagnosis.sync_status is None
        assert not diagnosis.needs_fix

    def test_synced(self):
        diagnosis = SyncDiagnosis.model_validate(
            {"appointment_id": "42", "sync_status": "CORRECTLY_SYNCED"}
        )
        assert diagnosis.sync_status == SyncStatus.CORRECTLY_SYNCED
        assert not diagnosis.needs_fix


class TestTransactionLifecycle:

    def test_happy_path(self):
        transaction = Transaction(payment_reference="PAYID-1", amount=Decimal("1500.00"))

        for state in (TransactionState.AUTHORIZED, TransactionState.CAPTURED, TransactionState.RECONCILED):
            transaction.transition(state)

        assert transaction.state == TransactionState.RECONCILED
        assert transaction.is_terminal

    def test_pending_path(self):
        transaction = Transaction(payment_reference="PAYID-1")
        transaction.transition(TransactionState.AUTHORIZED)
        transaction.transition(TransactionState.CAPTURED)
        transaction.transition(TransactionState.RECONCILIATION_PENDING)

        assert not transaction.is_terminal
        transaction.transition(TransactionState.RECONCILED)
        assert transaction.is_terminal

    def test_cannot_skip_capture(self):
        transaction = Transaction(payment_reference="PAYID-1")
        transaction.transition(TransactionState.AUTHORIZED)

        with pytest.raises(InvalidTransition):
            transaction.transition(TransactionState.RECONCILED)

    def test_captured_cannot_be_abandoned(self):
        """Money has moved - the checkout can no longer be abandoned."""
        transaction = Transaction(payment_reference="PAYID-1", state=TransactionState.CAPTURED)

        assert not transaction.can_transition(TransactionState.ABANDONED)
        assert not transaction.can_transition(TransactionState.FAILED)

    def test_rejected_capture_can_be_retried(self):
        transaction = Transaction(payment_reference="PAYID-1")
        transaction.transition(TransactionState.AUTHORIZED)
        transaction.transition(TransactionState.FAILED)

        transaction.transition(TransactionState.AUTHORIZED)
        transaction.transition(TransactionState.CAPTURED)

        assert transaction.state == TransactionState.CAPTURED

    def test_terminal_states_have_no_exits(self):
        assert VALID_TRANSITIONS[TransactionState.RECONCILED] == []
        assert VALID_TRANSITIONS[TransactionState.ABANDONED] == []

    def test_every_state_has_transition_entry(self):
        assert set(VALID_TRANSITIONS) == set(TransactionState)

    def test_amount_and_currency_are_frozen(self):
        transaction = Transaction(payment_reference="PAYID-1", amount=Decimal("1500.00"))

        with pytest.raises(ValidationError):
            transaction.amount = Decimal("1.00")
        with pytest.raises(ValidationError):
            transaction.currency = "USD"

        assert transaction.currency == "PHP"

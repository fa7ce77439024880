"""Tests for the correction gateway and sync diagnosis."""
import pytest
import requests

from payment_sync.correction import CorrectionGateway
from payment_sync.errors import BackendError
from payment_sync.models import SyncStatus


@pytest.fixture
def gateway(backend):
    return CorrectionGateway(backend)


class TestCorrect:

    def test_paid_snapshot_is_success(self, gateway, http_session, make_response, paid_appointment):
        http_session.request.return_value = make_response(200, {
            "message": "Appointment payment status fixed",
            "appointment": paid_appointment,
        })

        result = gateway.correct(42)

        assert result.success
        assert result.appointment_id == "42"
        assert result.snapshot.is_paid
        method, url = http_session.request.call_args[0]
        assert method == "PATCH"
        assert url == "http://clinic.test/api/payments/fix-appointment/42"

    def test_repeated_correction_returns_same_snapshot(self, gateway, http_session, make_response,
                                                       paid_appointment):
        http_session.request.return_value = make_response(200, {"appointment": paid_appointment})

        first = gateway.correct("42")
        second = gateway.correct("42")

        assert first.success and second.success
        assert first.snapshot == second.snapshot

    def test_still_unpaid_is_failure_with_snapshot(self, gateway, http_session, make_response,
                                                   unpaid_appointment):
        http_session.request.return_value = make_response(200, {"appointment": unpaid_appointment})

        result = gateway.correct("42")

        assert not result.success
        assert result.snapshot is not None
        assert "unpaid" in str(result.error)

    def test_missing_appointment_is_failure(self, gateway, http_session, make_response):
        http_session.request.return_value = make_response(200, {"message": "ok"})

        result = gateway.correct("42")

        assert not result.success
        assert result.data == {"message": "ok"}

    def test_backend_error_is_failure(self, gateway, http_session, make_response):
        http_session.request.return_value = make_response(404, {"error": "Appointment not found"})

        result = gateway.correct("42")

        assert not result.success
        assert "Appointment not found" in str(result.error)

    def test_network_error_is_not_retried(self, gateway, http_session):
        http_session.request.side_effect = requests.exceptions.Timeout("timed out")

        result = gateway.correct("42")

        assert not result.success
        assert http_session.request.call_count == 1


class TestCheckSyncStatus:

    def test_returns_diagnosis(self, gateway, http_session, make_response, unpaid_appointment):
        http_session.request.return_value = make_response(200, {
            "appointment_id": 42,
            "appointment": unpaid_appointment,
            "payments": [{"id": 5, "status": "completed"}],
            "sync_status": "MISMATCH_DETECTED",
            "issue_detected": True,
        })

        diagnosis = gateway.check_sync_status("42")

        assert diagnosis.sync_status == SyncStatus.MISMATCH_DETECTED
        assert diagnosis.needs_fix
        method, url = http_session.request.call_args[0]
        assert method == "GET"
        assert url.endswith("/payments/debug-appointment/42")

    def test_unreadable_diagnosis_raises(self, gateway, http_session, make_response):
        http_session.request.return_value = make_response(200, {"sync_status": "SOMETHING_ELSE"})

        with pytest.raises(BackendError):
            gateway.check_sync_status("42")

    def test_transient_read_is_retried(self, gateway, http_session, make_response):
        http_session.request.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            make_response(200, {"appointment_id": "42", "sync_status": "CORRECTLY_SYNCED"}),
        ]

        diagnosis = gateway.check_sync_status("42")

        assert not diagnosis.needs_fix
        assert http_session.request.call_count == 2

"""Tests for the single-slot pending-sync queue."""
import threading
from unittest.mock import Mock

import pytest

from payment_sync.correction import CorrectionResult
from payment_sync.errors import CorrectionFailed
from payment_sync.pending_queue import PendingSyncQueue


@pytest.fixture
def queue(store):
    return PendingSyncQueue(store)


def ok(appointment_id):
    return CorrectionResult(success=True, appointment_id=appointment_id)


def not_ok(appointment_id):
    return CorrectionResult.failed(appointment_id, "Manual sync failed")


class TestEnqueue:

    def test_enqueue_then_peek(self, queue):
        queue.enqueue("42", reason="snapshot_stale")

        entry = queue.peek()
        assert entry.appointment_id == "42"
        assert entry.reason == "snapshot_stale"

    def test_second_enqueue_overwrites(self, queue):
        queue.enqueue("42")
        queue.enqueue("43")

        assert queue.peek().appointment_id == "43"

    def test_same_appointment_overwrites_reason(self, queue):
        queue.enqueue("42", reason="snapshot_missing")
        queue.enqueue("42", reason="sync_failed")

        assert queue.peek().reason == "sync_failed"

    def test_stored_under_configured_key(self, store):
        PendingSyncQueue(store, key="pendingPaymentSync").enqueue(42)

        assert '"appointment_id":"42"' in store.get("pendingPaymentSync")

    def test_empty_queue(self, queue):
        assert queue.peek() is None


class TestDrain:

    def test_drain_empty_does_not_call_correction(self, queue):
        correction = Mock()

        assert queue.drain(correction) is None
        correction.assert_not_called()

    def test_success_removes_entry(self, queue):
        queue.enqueue("42")
        correction = Mock(side_effect=ok)

        assert queue.drain(correction) is True
        correction.assert_called_once_with("42")
        assert queue.peek() is None

    def test_failure_keeps_entry(self, queue):
        queue.enqueue("42")
        correction = Mock(side_effect=not_ok)

        assert queue.drain(correction) is False
        correction.assert_called_once_with("42")
        assert queue.peek().appointment_id == "42"

    def test_raised_correction_failure_keeps_entry(self, queue):
        queue.enqueue("42")

        def correction(appointment_id):
            raise CorrectionFailed(appointment_id, "still unpaid")

        assert queue.drain(correction) is False
        assert queue.peek().appointment_id == "42"

    def test_unexpected_error_propagates_and_keeps_entry(self, queue):
        queue.enqueue("42")

        with pytest.raises(RuntimeError):
            queue.drain(Mock(side_effect=RuntimeError("boom")))

        assert queue.peek().appointment_id == "42"
        # Drain flag released
        assert queue.drain(Mock(side_effect=ok)) is True

    def test_bool_correction_result(self, queue):
        queue.enqueue("42")

        assert queue.drain(lambda appointment_id: True) is True
        assert queue.peek() is None

    def test_enqueue_during_correction_survives(self, queue):
        queue.enqueue("42")

        def correction(appointment_id):
            queue.enqueue("43")
            return ok(appointment_id)

        assert queue.drain(correction) is True
        assert queue.peek().appointment_id == "43"

    def test_concurrent_drain_calls_correction_once(self, queue):
        queue.enqueue("42")
        entered = threading.Event()
        release = threading.Event()
        calls = []

        def slow_correction(appointment_id):
            calls.append(appointment_id)
            entered.set()
            release.wait(2)
            return ok(appointment_id)

        worker = threading.Thread(target=queue.drain, args=(slow_correction,))
        worker.start()
        assert entered.wait(2)

        assert queue.drain(slow_correction) is None

        release.set()
        worker.join(2)
        assert calls == ["42"]
        assert queue.peek() is None


class TestClear:

    def test_clear_only_matching_appointment(self, queue):
        queue.enqueue("42")

        assert queue.clear("43") is False
        assert queue.peek().appointment_id == "42"
        assert queue.clear("42") is True
        assert queue.peek() is None

    def test_clear_any(self, queue):
        queue.enqueue("42")

        assert queue.clear() is True
        assert queue.clear() is False


class TestSlotDecoding:

    def test_legacy_bare_id(self, store, queue):
        store.set("pendingPaymentSync", "42")

        entry = queue.peek()
        assert entry.appointment_id == "42"
        assert entry.reason == "legacy"

    def test_corrupt_slot_is_discarded(self, store, queue):
        store.set("pendingPaymentSync", '{"appointment_id": ')

        assert queue.peek() is None
        assert store.get("pendingPaymentSync") is None

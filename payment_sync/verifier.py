"""Sync verifier: did the backend mirror follow the capture?

A capture response either proves the appointment is paid, or it does not.
It can never prove the payment failed - money has moved by the time a
response exists - so the only outcomes are SYNCED and UNCERTAIN.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from payment_sync.models import AppointmentSnapshot, CaptureResponse


class SyncOutcome(str, Enum):
    """Verdict on the backend mirror after a successful capture."""
    SYNCED = "synced"
    UNCERTAIN = "uncertain"


class UncertainReason(str, Enum):
    SYNC_FAILED = "sync_failed"
    SNAPSHOT_MISSING = "snapshot_missing"
    SNAPSHOT_UNREADABLE = "snapshot_unreadable"
    SNAPSHOT_STALE = "snapshot_stale"
    SNAPSHOT_MISMATCH = "snapshot_mismatch"


@dataclass
class SyncVerdict:
    outcome: SyncOutcome
    appointment_id: Optional[str] = None
    snapshot: Optional[AppointmentSnapshot] = None
    reason: Optional[UncertainReason] = None
    detail: Optional[str] = None

    @property
    def synced(self) -> bool:
        return self.outcome == SyncOutcome.SYNCED


def verify_sync(
    response: CaptureResponse,
    appointment_id: Optional[str] = None
) -> SyncVerdict:
    """
    Inspect a capture response for proof that the appointment is paid.

    Args:
        response: Parsed capture response
        appointment_id: Expected appointment (defaults to the one the
            response itself names)

    Returns:
        SyncVerdict - SYNCED only when the response carries a paid snapshot
        for the target appointment
    """
    target = str(appointment_id) if appointment_id is not None else response.target_appointment_id()

    def uncertain(reason: UncertainReason, detail: Optional[str] = None,
                  snapshot: Optional[AppointmentSnapshot] = None) -> SyncVerdict:
        return SyncVerdict(
            outcome=SyncOutcome.UNCERTAIN,
            appointment_id=target,
            snapshot=snapshot,
            reason=reason,
            detail=detail
        )

    if response.sync_failed:
        return uncertain(UncertainReason.SYNC_FAILED, response.sync_error)

    if not response.verify_appointment:
        return uncertain(UncertainReason.SNAPSHOT_MISSING)

    try:
        snapshot = AppointmentSnapshot.model_validate(response.verify_appointment)
    except ValidationError as e:
        return uncertain(UncertainReason.SNAPSHOT_UNREADABLE, str(e))

    if target is not None and snapshot.id != target:
        return uncertain(
            UncertainReason.SNAPSHOT_MISMATCH,
            f"snapshot is for appointment {snapshot.id}, expected {target}",
            snapshot
        )

    if not snapshot.is_paid:
        return uncertain(
            UncertainReason.SNAPSHOT_STALE,
            f"payment_status is still {snapshot.payment_status.value}",
            snapshot
        )

    return SyncVerdict(
        outcome=SyncOutcome.SYNCED,
        appointment_id=snapshot.id,
        snapshot=snapshot
    )

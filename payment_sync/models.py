"""Pydantic models for checkout, capture and appointment payloads.

Backend payloads are parsed leniently (unknown fields ignored, id types
coerced to str). Only the fields the reconciliation protocol inspects are
modelled; everything else is passed through as raw dicts.
"""
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from payment_sync.errors import InvalidCheckoutCallback, InvalidTransition


def _coerce_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class PaymentStatus(str, Enum):
    """Appointment payment status as authored by the backend."""
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class AppointmentSnapshot(BaseModel):
    """Client-side mirror of one appointment row. Never authored locally."""
    id: str
    payment_status: PaymentStatus
    status: Optional[str] = None
    updated_at: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID


class CheckoutCallback(BaseModel):
    """References delivered by the processor redirect."""
    payment_reference: str
    payer_reference: str

    # Spec-level names first, then the names the processor actually sends
    PAYMENT_KEYS: ClassVar[tuple] = ("paymentReference", "paymentId", "payment_id")
    PAYER_KEYS: ClassVar[tuple] = ("payerReference", "PayerID", "payer_id")

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "CheckoutCallback":
        """
        Parse redirect query parameters.

        Args:
            params: Query string mapping from the success redirect

        Returns:
            CheckoutCallback with both references

        Raises:
            InvalidCheckoutCallback: If either reference is missing or blank
        """
        payment_reference = _first_present(params, cls.PAYMENT_KEYS)
        payer_reference = _first_present(params, cls.PAYER_KEYS)
        return cls.validated(payment_reference, payer_reference)

    @classmethod
    def validated(
        cls,
        payment_reference: Optional[str],
        payer_reference: Optional[str]
    ) -> "CheckoutCallback":
        missing = []
        if not payment_reference or not str(payment_reference).strip():
            missing.append("paymentReference")
        if not payer_reference or not str(payer_reference).strip():
            missing.append("payerReference")
        if missing:
            raise InvalidCheckoutCallback(
                f"Invalid payment parameters: missing {', '.join(missing)}",
                missing=missing
            )
        return cls(
            payment_reference=str(payment_reference).strip(),
            payer_reference=str(payer_reference).strip()
        )


def _first_present(params: Mapping[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = params.get(key)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if isinstance(value, str):
            value = value.strip()
        if value:
            return value
    return None


class CaptureResponse(BaseModel):
    """Body of a successful POST /payments/execute."""
    message: Optional[str] = None
    payment: Optional[Dict[str, Any]] = None
    processor_record: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("paypal_payment", "processorRecord", "processor_record")
    )
    verify_appointment: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices(
            "verifyAppointment", "appointmentSnapshot", "appointment_snapshot", "verify_appointment"
        )
    )
    updated_rows: Optional[List[Dict[str, Any]]] = Field(
        None,
        validation_alias=AliasChoices("appointmentUpdate", "updated_rows")
    )
    legacy_update: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("appointment_update", "legacy_update")
    )
    sync_failed: bool = False
    sync_error: Optional[str] = None
    appointment_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("appointment_id", mode="before")
    @classmethod
    def coerce_appointment_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    def target_appointment_id(self) -> Optional[str]:
        """Resolve which appointment this capture paid for."""
        candidates = [
            (self.payment or {}).get("appointment_id"),
            self.appointment_id,
            (self.legacy_update or {}).get("appointment_id"),
            self.updated_rows[0].get("id") if self.updated_rows else None,
            (self.verify_appointment or {}).get("id"),
        ]
        for candidate in candidates:
            if candidate is not None and candidate != "":
                return str(candidate)
        return None


class SyncStatus(str, Enum):
    """Backend diagnosis of payment vs appointment agreement."""
    MISMATCH_DETECTED = "MISMATCH_DETECTED"
    CORRECTLY_SYNCED = "CORRECTLY_SYNCED"
    CORRECTLY_UNPAID = "CORRECTLY_UNPAID"
    OTHER_STATE = "OTHER_STATE"


class SyncDiagnosis(BaseModel):
    """Body of GET /payments/debug-appointment/{id}."""
    appointment_id: str
    appointment: Optional[Dict[str, Any]] = None
    payments: List[Dict[str, Any]] = Field(default_factory=list)
    sync_status: Optional[SyncStatus] = None
    issue_detected: bool = False
    issue_description: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("appointment_id", mode="before")
    @classmethod
    def coerce_appointment_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    @property
    def needs_fix(self) -> bool:
        return self.sync_status == SyncStatus.MISMATCH_DETECTED


class TransactionState(str, Enum):
    """Lifecycle of one checkout attempt."""
    INITIATED = "initiated"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RECONCILIATION_PENDING = "reconciliation_pending"
    RECONCILED = "reconciled"
    FAILED = "failed"
    ABANDONED = "abandoned"


# Pattern: Current state -> [allowed next states]
VALID_TRANSITIONS: Dict[TransactionState, list[TransactionState]] = {
    TransactionState.INITIATED: [
        TransactionState.AUTHORIZED,
        TransactionState.ABANDONED,
    ],
    TransactionState.AUTHORIZED: [
        TransactionState.CAPTURED,
        TransactionState.FAILED,
        TransactionState.ABANDONED,
    ],
    TransactionState.CAPTURED: [
        TransactionState.RECONCILED,
        TransactionState.RECONCILIATION_PENDING,
    ],
    TransactionState.RECONCILIATION_PENDING: [
        TransactionState.RECONCILED,
        TransactionState.FAILED,
    ],
    # Rejected capture may be retried; an unreconciled capture can still be fixed by hand
    TransactionState.FAILED: [
        TransactionState.AUTHORIZED,
        TransactionState.RECONCILED,
    ],
    TransactionState.RECONCILED: [],
    TransactionState.ABANDONED: [],
}

TERMINAL_STATES = {TransactionState.RECONCILED, TransactionState.ABANDONED}


class Transaction(BaseModel):
    """One checkout attempt. Monetary fields are frozen at creation."""
    payment_reference: str
    payer_reference: Optional[str] = None
    appointment_id: Optional[str] = None
    amount: Optional[Decimal] = Field(None, frozen=True)
    currency: str = Field("PHP", min_length=3, max_length=3, frozen=True)
    state: TransactionState = TransactionState.INITIATED
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("appointment_id", mode="before")
    @classmethod
    def coerce_appointment_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, new_state: TransactionState) -> bool:
        return new_state in VALID_TRANSITIONS[self.state]

    def transition(self, new_state: TransactionState) -> "Transaction":
        """
        Move to new_state.

        Raises:
            InvalidTransition: If the move is not allowed from the current state
        """
        if not self.can_transition(new_state):
            raise InvalidTransition(
                f"Transaction {self.payment_reference}: "
                f"{self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state
        self.updated_at = datetime.now(UTC)
        return self

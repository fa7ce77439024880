"""Pending-sync queue: remember a captured-but-unconfirmed appointment.

One slot per session. The UI only tracks the most recent unresolved
checkout, so a newer entry simply replaces the older one. The slot is
drained reactively when identity becomes available, never on a timer.
"""
import threading
from datetime import datetime, UTC
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from payment_sync import config
from payment_sync.errors import CorrectionFailed
from payment_sync.logging_config import get_logger
from payment_sync.storage import KeyValueStore

logger = get_logger(__name__)

CorrectionFn = Callable[[str], Any]


class PendingSyncEntry(BaseModel):
    appointment_id: str
    reason: str = "sync_uncertain"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PendingSyncQueue:
    """
    Single-slot, last-writer-wins queue over a KeyValueStore.

    The slot is read-modified-written under a lock because the status
    poller and the caller run on different threads.
    """

    def __init__(self, store: KeyValueStore, key: str = config.PENDING_SYNC_KEY):
        self.store = store
        self.key = key
        self._lock = threading.Lock()
        self._draining = False

    def enqueue(self, appointment_id: str, reason: str = "sync_uncertain") -> PendingSyncEntry:
        """Store appointment_id for a later correction, replacing any previous entry."""
        entry = PendingSyncEntry(appointment_id=str(appointment_id), reason=reason)
        with self._lock:
            previous = self._read()
            self.store.set(self.key, entry.model_dump_json())

        if previous and previous.appointment_id != entry.appointment_id:
            logger.info(
                "pending_sync_replaced",
                appointment_id=entry.appointment_id,
                replaced=previous.appointment_id
            )
        else:
            logger.info("pending_sync_enqueued", appointment_id=entry.appointment_id, reason=reason)
        return entry

    def peek(self) -> Optional[PendingSyncEntry]:
        with self._lock:
            return self._read()

    def clear(self, appointment_id: Optional[str] = None) -> bool:
        """
        Remove the entry.

        Args:
            appointment_id: Only remove if the slot holds this appointment

        Returns:
            True if an entry was removed
        """
        with self._lock:
            entry = self._read()
            if entry is None:
                return False
            if appointment_id is not None and entry.appointment_id != str(appointment_id):
                return False
            self.store.delete(self.key)
            return True

    def drain(self, correction_fn: CorrectionFn) -> Optional[bool]:
        """
        Try to resolve the pending entry once.

        Args:
            correction_fn: Called with the appointment id; returns a result
                with a ``success`` attribute (or a bool), or raises
                CorrectionFailed

        Returns:
            None if there is nothing to drain (or a drain is already running),
            True if the correction succeeded and the entry was removed,
            False if it failed and the entry was kept
        """
        with self._lock:
            if self._draining:
                return None
            entry = self._read()
            if entry is None:
                return None
            self._draining = True

        logger.info("pending_sync_drain_started", appointment_id=entry.appointment_id)
        try:
            try:
                result = correction_fn(entry.appointment_id)
            except CorrectionFailed as e:
                logger.warning(
                    "pending_sync_drain_failed",
                    appointment_id=entry.appointment_id,
                    error=str(e)
                )
                return False

            if not getattr(result, "success", result):
                logger.warning(
                    "pending_sync_drain_failed",
                    appointment_id=entry.appointment_id,
                    error=str(getattr(result, "error", "correction unsuccessful"))
                )
                return False

            # An enqueue that raced the correction must survive
            self.clear(entry.appointment_id)
            logger.info("pending_sync_resolved", appointment_id=entry.appointment_id)
            return True
        finally:
            with self._lock:
                self._draining = False

    def _read(self) -> Optional[PendingSyncEntry]:
        raw = self.store.get(self.key)
        if raw is None:
            return None
        try:
            return PendingSyncEntry.model_validate_json(raw)
        except ValidationError:
            # Older clients stored the bare appointment id
            if raw.strip() and not raw.lstrip().startswith("{"):
                return PendingSyncEntry(appointment_id=raw.strip(), reason="legacy")
            logger.error("pending_sync_slot_corrupt", key=self.key)
            self.store.delete(self.key)
            return None

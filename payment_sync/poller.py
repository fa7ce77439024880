"""Status poller: watch one appointment until its mirror reads paid.

Purpose: Background convergence check after a capture whose backend
confirmation was uncertain.

Pattern: One daemon worker thread per poll session, paced by
threading.Event.wait so stop() interrupts the sleep immediately.

Rules:
- At most one session at a time; start() while running is a no-op
- The first read happens one interval after start()
- Observing paid fires on_converged exactly once and ends the session
- A failed read is logged and the loop carries on
- After max_ticks reads without convergence the session gives up
"""
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from payment_sync import config
from payment_sync.errors import TransientReadError
from payment_sync.logging_config import get_logger
from payment_sync.models import AppointmentSnapshot

logger = get_logger(__name__)

ReadFn = Callable[[str], Optional[Dict[str, Any]]]
ConvergedCallback = Callable[[AppointmentSnapshot], None]
GaveUpCallback = Callable[[str], None]


class PollState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CONVERGED = "converged"
    GAVE_UP = "gave_up"
    STOPPED = "stopped"


class StatusPoller:
    """Single-instance, cancellable polling loop for one appointment."""

    def __init__(
        self,
        read_fn: ReadFn,
        interval: float = config.POLL_INTERVAL,
        max_ticks: Optional[int] = config.POLL_MAX_TICKS,
        on_gave_up: Optional[GaveUpCallback] = None
    ):
        """
        Args:
            read_fn: Returns the appointment record for an id (raises on failure)
            interval: Seconds between reads
            max_ticks: Reads before giving up; None polls until stop()
            on_gave_up: Called once with the appointment id when giving up
        """
        self.read_fn = read_fn
        self.interval = interval
        self.max_ticks = max_ticks
        self.on_gave_up = on_gave_up

        self._lock = threading.Lock()
        self._state = PollState.IDLE
        self._generation = 0
        self._appointment_id: Optional[str] = None
        self._on_converged: Optional[ConvergedCallback] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._in_flight = False
        self.ticks = 0

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == PollState.RUNNING

    @property
    def appointment_id(self) -> Optional[str]:
        return self._appointment_id

    def start(self, appointment_id: str, on_converged: Optional[ConvergedCallback] = None) -> bool:
        """
        Begin polling appointment_id.

        Returns:
            False if a session is already running (it continues unaffected)
        """
        with self._lock:
            if self._state == PollState.RUNNING:
                logger.info(
                    "poller_already_running",
                    appointment_id=self._appointment_id,
                    requested=str(appointment_id)
                )
                return False

            self._generation += 1
            self._appointment_id = str(appointment_id)
            self._on_converged = on_converged
            self._in_flight = False
            self.ticks = 0
            self._state = PollState.RUNNING
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._generation, self._stop_event),
                name=f"payment-poller-{appointment_id}",
                daemon=True
            )
            self._thread.start()

        logger.info(
            "poller_started",
            appointment_id=self._appointment_id,
            interval=self.interval,
            max_ticks=self.max_ticks
        )
        return True

    def stop(self):
        """Cancel the session. Safe to call at any time, including from callbacks."""
        with self._lock:
            was_running = self._state == PollState.RUNNING
            if was_running:
                self._state = PollState.STOPPED
            # Invalidate any tick still in flight
            self._generation += 1
            if self._stop_event is not None:
                self._stop_event.set()

        if was_running:
            logger.info("poller_stopped", appointment_id=self._appointment_id, ticks=self.ticks)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the worker thread of the last session exits.

        Returns:
            True if the thread is gone
        """
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def check_now(self) -> Optional[AppointmentSnapshot]:
        """
        Run one read immediately on the caller's thread.

        Skipped (returns None) when idle or when a tick is already in flight.
        """
        with self._lock:
            generation = self._generation
        return self._tick(generation)

    def _run(self, generation: int, stop_event: threading.Event):
        while not stop_event.wait(self.interval):
            self._tick(generation)

    def _tick(self, generation: int) -> Optional[AppointmentSnapshot]:
        with self._lock:
            if generation != self._generation or self._state != PollState.RUNNING:
                return None
            if self._in_flight:
                logger.debug("poll_tick_skipped", appointment_id=self._appointment_id)
                return None
            self._in_flight = True
            self.ticks += 1
            tick = self.ticks
            appointment_id = self._appointment_id

        snapshot = None
        try:
            snapshot = self._read(appointment_id)
        except TransientReadError as e:
            logger.warning("poll_tick_failed", appointment_id=appointment_id, tick=tick, error=str(e))
        finally:
            with self._lock:
                if generation == self._generation:
                    self._in_flight = False

        if snapshot is not None and snapshot.id != appointment_id:
            logger.warning(
                "poll_snapshot_mismatch",
                appointment_id=appointment_id,
                snapshot_id=snapshot.id,
                tick=tick
            )
        elif snapshot is not None and snapshot.is_paid:
            self._converge(generation, snapshot)
            return snapshot

        if self.max_ticks is not None and tick >= self.max_ticks:
            self._give_up(generation, appointment_id)

        return snapshot

    def _read(self, appointment_id: str) -> Optional[AppointmentSnapshot]:
        try:
            record = self.read_fn(appointment_id)
        except Exception as e:
            raise TransientReadError(appointment_id, str(e)) from e

        if not record:
            return None
        try:
            return AppointmentSnapshot.model_validate(record)
        except ValidationError as e:
            raise TransientReadError(appointment_id, f"unreadable appointment: {e}") from e

    def _converge(self, generation: int, snapshot: AppointmentSnapshot):
        with self._lock:
            if generation != self._generation or self._state != PollState.RUNNING:
                return
            self._state = PollState.CONVERGED
            self._stop_event.set()
            callback = self._on_converged

        logger.info("poller_converged", appointment_id=snapshot.id, ticks=self.ticks)
        if callback is not None:
            self._safe_call(callback, snapshot)

    def _give_up(self, generation: int, appointment_id: str):
        with self._lock:
            if generation != self._generation or self._state != PollState.RUNNING:
                return
            self._state = PollState.GAVE_UP
            self._stop_event.set()

        logger.warning("poller_gave_up", appointment_id=appointment_id, ticks=self.ticks)
        if self.on_gave_up is not None:
            self._safe_call(self.on_gave_up, appointment_id)

    def _safe_call(self, callback: Callable, arg: Any):
        # Runs on the worker thread for timer ticks
        try:
            callback(arg)
        except Exception:
            logger.exception("poller_callback_failed", appointment_id=self._appointment_id)

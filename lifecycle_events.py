"""
Lifecycle/Event Notifier

Publishes engine lifecycle events (keys generated or rotated, data encrypted
or decrypted, operations performed, proofs generated or verified) to any
number of registered listeners.

Delivery happens on a background thread. A slow or failing listener never
blocks or fails the cryptographic call that produced the event: listener
exceptions are caught and logged here and go no further.
"""

import queue
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from he_errors import error_kind
from he_logging import get_logger

event_logger = get_logger("lifecycle_events")


class EventType(Enum):
    KEY_GENERATED = "key_generated"
    KEYS_ROTATED = "keys_rotated"
    DATA_ENCRYPTED = "data_encrypted"
    DATA_DECRYPTED = "data_decrypted"
    OPERATION_PERFORMED = "operation_performed"
    CIPHERTEXT_DISCARDED = "ciphertext_discarded"
    PROOF_GENERATED = "proof_generated"
    PROOF_VERIFIED = "proof_verified"
    RANDOMNESS_GENERATED = "randomness_generated"
    OPERATION_TIMEOUT = "operation_timeout"


@dataclass(frozen=True)
class LifecycleEvent:
    """An event as seen by listeners. Details are a read-only copy."""
    event_id: str
    event_type: EventType
    timestamp: datetime
    details: Mapping[str, Any]
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None


Listener = Callable[[LifecycleEvent], None]

_STOP = object()


class LifecycleNotifier:
    """
    Asynchronous fan-out of lifecycle events to listeners.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False
        self._published = 0
        self._listener_failures = 0
        self._worker = threading.Thread(target=self._deliver_loop, name="he-lifecycle-events", daemon=True)
        self._worker.start()

        event_logger.info("Lifecycle notifier started")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that unsubscribes the listener
        """
        if not callable(listener):
            raise TypeError("Listener must be callable")
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event_type, details: Optional[Mapping[str, Any]] = None,
                error: Optional[BaseException] = None) -> Optional[LifecycleEvent]:
        """
        Queue an event for delivery. Never raises because of listeners.

        Args:
            event_type: EventType or its value
            details: Event details (copied)
            error: Exception when the event reports a failure

        Returns:
            The queued event, or None once the notifier is closed
        """
        if self._closed:
            return None

        event = LifecycleEvent(
            event_id=str(uuid.uuid4()),
            event_type=EventType(event_type),
            timestamp=datetime.now(),
            details=MappingProxyType(dict(details or {})),
            error_kind=error_kind(error) if error is not None else None,
            error_message=str(error) if error is not None else None
        )
        self._queue.put(event)
        with self._listeners_lock:
            self._published += 1
        return event

    def _deliver_loop(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: LifecycleEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                self._listener_failures += 1
                event_logger.error(
                    f"Listener {getattr(listener, '__name__', listener)!r} failed on "
                    f"{event.event_type.value}: {e}")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued event has been delivered.

        Returns:
            True if the queue drained within the timeout
        """
        if timeout is None:
            self._queue.join()
            return True

        done = threading.Event()

        def wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=wait, daemon=True).start()
        return done.wait(timeout)

    def stats(self) -> Dict[str, int]:
        with self._listeners_lock:
            listener_count = len(self._listeners)
            published = self._published
        return {
            'published': published,
            'listener_failures': self._listener_failures,
            'listeners': listener_count,
            'pending': self._queue.qsize(),
        }

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver what is queued, then stop the worker thread."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._worker.join(timeout)
        event_logger.info("Lifecycle notifier stopped")

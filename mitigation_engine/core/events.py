"""Typed workflow events delivered to explicit subscribers."""

import threading
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from ..models.core import WorkflowEvent, WorkflowEventType
from .logging import get_logger

logger = get_logger(__name__)

EventCallback = Callable[[WorkflowEvent], None]


class EventDispatcher:
    """Delivers workflow events to registered callbacks.

    Each engine owns its own dispatcher; there is no process-wide listener
    registry. Subscriber failures are logged and never reach the emitter.
    """

    def __init__(self, history_size: int = 1000):
        self._subscribers: Dict[str, Tuple[EventCallback, Optional[Set[WorkflowEventType]]]] = {}
        self._history: Deque[WorkflowEvent] = deque(maxlen=history_size)
        self._lock = threading.RLock()

    def subscribe(self, callback: EventCallback,
                  event_types: Optional[Iterable[WorkflowEventType]] = None) -> str:
        """Register a callback, optionally restricted to some event types.

        Returns:
            Subscription id accepted by ``unsubscribe``.
        """
        subscription_id = str(uuid.uuid4())
        wanted = set(event_types) if event_types is not None else None
        with self._lock:
            self._subscribers[subscription_id] = (callback, wanted)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscribers.pop(subscription_id, None) is not None

    def emit(self, event_type: WorkflowEventType, execution_id: Optional[str] = None, **payload) -> WorkflowEvent:
        """Build an event and deliver it to matching subscribers."""
        event = WorkflowEvent(event_type=event_type, execution_id=execution_id, payload=payload)
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers.values())

        for callback, wanted in subscribers:
            if wanted is not None and event.event_type not in wanted:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Event subscriber failed for {event.event_type.value}: {str(e)}",
                    exc_info=True
                )
        return event

    def history(self, execution_id: Optional[str] = None,
                event_type: Optional[WorkflowEventType] = None) -> List[WorkflowEvent]:
        """Return recently emitted events, oldest first."""
        with self._lock:
            events = list(self._history)
        if execution_id is not None:
            events = [e for e in events if e.execution_id == execution_id]
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events

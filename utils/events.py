import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Type

from pydantic import BaseModel

Handler = Callable[[BaseModel], None]


class EventBus:
    """In-process publish/subscribe channel for sync events.

    Handlers subscribe to one event class, or to every event with
    ``subscribe_all``. A failing handler is logged and the remaining
    handlers still receive the event.
    """

    def __init__(self):
        self._handlers: Dict[Optional[Type[BaseModel]], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[BaseModel], handler: Handler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        with self._lock:
            self._handlers[None].append(handler)

    def unsubscribe(self, event_type: Optional[Type[BaseModel]], handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

    def publish(self, event: BaseModel) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), [])) + list(self._handlers.get(None, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logging.exception(f"Event handler {handler!r} failed for {type(event).__name__}")


from __future__ import annotations

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
import logging
import threading
from typing import Any, Callable

logger = logging.getLogger("attendance_core.events")

EventHandler = Callable[[str, dict[str, Any]], None]

EVENT_PUNCHED = "attendance.punched"
EVENT_REQUESTED = "attendance.requested"
EVENT_RESOLVED = "attendance.resolved"
EVENT_RECORD_UPDATED = "attendance.record.updated"
EVENT_ABSENCE_GENERATED = "attendance.absence.generated"
EVENT_RULE_UPDATED = "attendance.rule.updated"


class EventBus:
    """Fire-and-forget domain notifications.

    ``publish`` never raises into the caller. With ``max_workers`` > 0 handlers
    run on a thread pool, otherwise inline.
    """

    def __init__(self, max_workers: int = 0):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="attendance-events")
            if max_workers > 0
            else None
        )

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_name].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event_name]:
                    self._handlers[event_name].remove(handler)

        return unsubscribe

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            handlers = [*self._handlers.get(event_name, ()), *self._handlers.get("*", ())]
        for handler in handlers:
            if self._executor is not None:
                try:
                    self._executor.submit(self._dispatch, handler, event_name, payload)
                except RuntimeError:
                    logger.warning("event_bus_closed", extra={"event_name": event_name})
            else:
                self._dispatch(handler, event_name, payload)

    @staticmethod
    def _dispatch(handler: EventHandler, event_name: str, payload: dict[str, Any]) -> None:
        try:
            handler(event_name, payload)
        except Exception:
            logger.exception("event_handler_failed", extra={"event_name": event_name})

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)


class ServiceNotRegistered(LookupError):
    pass


class ServiceRegistry:
    """Explicit capability-name to service wiring."""

    def __init__(self) -> None:
        self._services: dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, capability: str, service: Any, *, replace: bool = False) -> None:
        with self._lock:
            if capability in self._services and not replace:
                raise ValueError(f"Service already registered: {capability}")
            self._services[capability] = service

    def lookup(self, capability: str) -> Any | None:
        with self._lock:
            return self._services.get(capability)

    def require(self, capability: str) -> Any:
        service = self.lookup(capability)
        if service is None:
            raise ServiceNotRegistered(capability)
        return service

    def capabilities(self) -> list[str]:
        with self._lock:
            return sorted(self._services)

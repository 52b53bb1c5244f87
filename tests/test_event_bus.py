from __future__ import annotations

import threading
import unittest

from attendance_core.services.registry import (
    EVENT_PUNCHED,
    EVENT_RESOLVED,
    EventBus,
    ServiceNotRegistered,
    ServiceRegistry,
)


class EventBusTests(unittest.TestCase):
    def test_named_and_wildcard_handlers(self) -> None:
        bus = EventBus()
        named: list[dict] = []
        everything: list[str] = []
        bus.subscribe(EVENT_PUNCHED, lambda _name, payload: named.append(payload))
        bus.subscribe("*", lambda name, _payload: everything.append(name))

        bus.publish(EVENT_PUNCHED, {"event_id": "e-1"})
        bus.publish(EVENT_RESOLVED, {"request_id": "r-1"})

        self.assertEqual(named, [{"event_id": "e-1"}])
        self.assertEqual(everything, [EVENT_PUNCHED, EVENT_RESOLVED])

    def test_failing_handler_is_logged_not_raised(self) -> None:
        bus = EventBus()
        received: list[str] = []

        def broken(_name: str, _payload: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe(EVENT_PUNCHED, broken)
        bus.subscribe(EVENT_PUNCHED, lambda name, _payload: received.append(name))

        with self.assertLogs("attendance_core.events", level="ERROR") as logs:
            bus.publish(EVENT_PUNCHED, {})

        self.assertEqual(received, [EVENT_PUNCHED])
        self.assertIn("event_handler_failed", logs.output[0])

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[str] = []
        unsubscribe = bus.subscribe(EVENT_PUNCHED, lambda name, _payload: received.append(name))

        unsubscribe()
        unsubscribe()
        bus.publish(EVENT_PUNCHED, {})

        self.assertEqual(received, [])

    def test_thread_pool_dispatch(self) -> None:
        bus = EventBus(max_workers=2)
        done = threading.Event()
        bus.subscribe(EVENT_PUNCHED, lambda _name, _payload: done.set())

        bus.publish(EVENT_PUNCHED, {})
        self.assertTrue(done.wait(timeout=5))

        bus.close()
        with self.assertLogs("attendance_core.events", level="WARNING"):
            bus.publish(EVENT_PUNCHED, {})


class ServiceRegistryTests(unittest.TestCase):
    def test_register_lookup_require(self) -> None:
        registry = ServiceRegistry()
        service = object()
        registry.register("permissions", service)

        self.assertIs(registry.lookup("permissions"), service)
        self.assertIsNone(registry.lookup("events"))
        self.assertEqual(registry.capabilities(), ["permissions"])
        with self.assertRaises(ServiceNotRegistered):
            registry.require("events")

    def test_duplicate_needs_replace(self) -> None:
        registry = ServiceRegistry()
        registry.register("events", "first")

        with self.assertRaises(ValueError):
            registry.register("events", "second")
        registry.register("events", "second", replace=True)

        self.assertEqual(registry.require("events"), "second")


if __name__ == "__main__":
    unittest.main()

"""
Object Server

In-process object exposition: every slave and source is registered under
an object path together with the interface it implements, clients can
introspect the current properties of any object, and each registration,
removal and property change is fanned out to subscribers (the HTTP API
streams them over a WebSocket).

The server only holds non-owning references. The registry owns slaves,
slaves own sources, and each owner unregisters its objects before
releasing them.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from ...common.exceptions import InvalidArgsError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("bus.objects")

MANAGER_IFACE = "modbus_gateway.Manager1"
SLAVE_IFACE = "modbus_gateway.Slave1"
SOURCE_IFACE = "modbus_gateway.Source1"

# Per-stream queue bound; a consumer falling this far behind loses events
EVENT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class ObjectEvent:
    """An object was added, removed, or one of its properties changed"""
    kind: str  # added, removed, changed
    path: str
    interface: str
    property: str | None = None
    value: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = {
            "event": self.kind,
            "path": self.path,
            "interface": self.interface,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.property is not None:
            data["property"] = self.property
            data["value"] = self.value
        return data


EventCallback = Callable[[ObjectEvent], None]


@dataclass
class _Registration:
    interface: str
    provider: Any  # anything with properties() -> dict


class ObjectServer:
    """
    Registry of exposed objects keyed by path.

    Providers must implement `properties() -> dict`.
    """

    def __init__(self):
        self._objects: dict[str, _Registration] = {}
        self._subscribers: list[EventCallback] = []
        self._queues: list[asyncio.Queue] = []

    def register_object(self, path: str, interface: str, provider: Any) -> None:
        """Expose a provider under `path`"""
        if not path.startswith("/"):
            raise InvalidArgsError(f"Invalid object path: {path!r}")
        if path in self._objects:
            raise InvalidArgsError(f"Object already registered: {path}")

        self._objects[path] = _Registration(interface=interface, provider=provider)
        logger.debug(f"Registered {interface} at {path}")
        self._publish(ObjectEvent(kind="added", path=path, interface=interface))

    def unregister_object(self, path: str) -> bool:
        """Withdraw an object. Returns False when it was not registered."""
        registration = self._objects.pop(path, None)
        if registration is None:
            return False

        logger.debug(f"Unregistered {registration.interface} at {path}")
        self._publish(ObjectEvent(kind="removed", path=path, interface=registration.interface))
        return True

    def notify_property_changed(
        self,
        path: str,
        interface: str,
        prop: str,
    ) -> ObjectEvent | None:
        """
        Publish the current value of one property.

        Returns the published event, or None for an unknown path.
        """
        registration = self._objects.get(path)
        if registration is None:
            logger.debug(f"Change of {prop} on unknown object {path} dropped")
            return None

        value = registration.provider.properties().get(prop)
        event = ObjectEvent(
            kind="changed",
            path=path,
            interface=interface,
            property=prop,
            value=value,
        )
        self._publish(event)
        return event

    def get(self, path: str) -> Any | None:
        registration = self._objects.get(path)
        return registration.provider if registration else None

    def interface_of(self, path: str) -> str | None:
        registration = self._objects.get(path)
        return registration.interface if registration else None

    def introspect(self, path: str | None = None) -> dict[str, dict]:
        """
        Snapshot of exposed objects and their properties.

        Args:
            path: Limit to one object (and nothing else) when given
        """
        if path is not None:
            registration = self._objects.get(path)
            if registration is None:
                return {}
            items = [(path, registration)]
        else:
            items = list(self._objects.items())

        return {
            obj_path: {
                "interface": registration.interface,
                "properties": registration.provider.properties(),
            }
            for obj_path, registration in items
        }

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Receive every event synchronously.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def open_stream(self) -> asyncio.Queue:
        """Queue receiving every event until close_stream()"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._queues.append(queue)
        return queue

    def close_stream(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def _publish(self, event: ObjectEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.path}: {e}")

        for queue in self._queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event stream full, dropping {event.kind} on {event.path}")

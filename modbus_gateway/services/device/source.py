"""
Source

One typed, addressed, polled memory point of a slave. A source knows
nothing about the network: the slave's poller reads the device and hands
the decoded value to set_value().
"""

from typing import Any

from ...common.config import SourceType
from ...common.exceptions import InvalidArgsError
from ...common.logging_setup import get_service_logger
from ...storage.config_store import ConfigStore
from ..bus.objects import SOURCE_IFACE
from .context import GatewayContext

logger = get_service_logger("device.source")

MAX_ADDRESS = 0xFFFF


def source_group(address: int) -> str:
    """Store group (and path suffix) of a source address"""
    return f"{address:04x}"


def parse_address(value: Any) -> int:
    """Accept an int or a decimal/0x-prefixed string"""
    if isinstance(value, bool):
        raise InvalidArgsError(f"Invalid source address: {value!r}")
    if isinstance(value, str):
        try:
            value = int(value, 0)
        except ValueError:
            raise InvalidArgsError(f"Invalid source address: {value!r}") from None
    if not isinstance(value, int) or not 0 < value <= MAX_ADDRESS:
        raise InvalidArgsError(f"Source address out of range: {value!r}")
    return value


def parse_interval(value: Any) -> int:
    """Polling interval in ms, strictly positive"""
    if isinstance(value, bool):
        raise InvalidArgsError(f"Invalid polling interval: {value!r}")
    try:
        interval = int(value)
    except (TypeError, ValueError):
        raise InvalidArgsError(f"Invalid polling interval: {value!r}") from None
    if interval <= 0:
        raise InvalidArgsError(f"Polling interval must be positive: {value!r}")
    return interval


def parse_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgsError(f"Invalid name: {value!r}")
    return value.strip()


class Source:
    """
    A polled point.

    Type and address are fixed at creation. Name and polling interval are
    mutable and written through to the owning slave's store.
    """

    def __init__(
        self,
        context: GatewayContext,
        owner_path: str,
        store: ConfigStore,
        name: str,
        source_type: SourceType | str,
        address: int,
        interval_ms: int | None = None,
    ):
        self._context = context
        self._store = store
        self._name = parse_name(name)
        self._type = SourceType.parse(source_type)
        self._address = parse_address(address)

        if interval_ms is None:
            interval_ms = context.options.polling_interval_ms
        self._interval_ms = parse_interval(interval_ms)

        self._value: bool | int = self._type.default_value
        self.path = f"{owner_path}/source_{source_group(self._address)}"

    @classmethod
    def from_storage(
        cls,
        context: GatewayContext,
        owner_path: str,
        store: ConfigStore,
        group: str,
        values: dict[str, str],
    ) -> "Source":
        """Rebuild a source from its persisted group"""
        try:
            address = int(group, 16)
        except ValueError:
            raise InvalidArgsError(f"Invalid source group: [{group}]") from None

        return cls(
            context,
            owner_path,
            store,
            name=values["Name"],
            source_type=values["Type"],
            address=address,
            interval_ms=values.get("PollingInterval") or None,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def source_type(self) -> SourceType:
        return self._type

    @property
    def address(self) -> int:
        return self._address

    @property
    def group(self) -> str:
        return source_group(self._address)

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def value(self) -> bool | int:
        return self._value

    def persist(self) -> None:
        """Write every persisted attribute with a single rewrite"""
        self._store.write_group(self.group, {
            "Name": self._name,
            "Type": self._type.value,
            "PollingInterval": self._interval_ms,
        })

    def set_value(self, value: bool | int) -> bool:
        """
        Store a freshly read value.

        Returns:
            True when the value changed (exactly one notification sent),
            False for a no-op write
        """
        if self._type == SourceType.BOOL:
            value = bool(value)

        if value == self._value:
            return False

        self._value = value
        self._context.objects.notify_property_changed(self.path, SOURCE_IFACE, "Value")
        return True

    def rename(self, name: str) -> None:
        name = parse_name(name)
        if name == self._name:
            return

        self._store.write_string(self.group, "Name", name)
        self._name = name
        self._context.objects.notify_property_changed(self.path, SOURCE_IFACE, "Name")

    def set_interval(self, interval_ms: int) -> None:
        """Change the cadence. A running timer picks it up on its next wait."""
        interval_ms = parse_interval(interval_ms)
        if interval_ms == self._interval_ms:
            return

        self._store.write_int(self.group, "PollingInterval", interval_ms)
        self._interval_ms = interval_ms
        self._context.objects.notify_property_changed(self.path, SOURCE_IFACE, "PollingInterval")

    def properties(self) -> dict[str, Any]:
        return {
            "Name": self._name,
            "Type": self._type.value,
            "Address": self._address,
            "PollingInterval": self._interval_ms,
            "Value": self._value,
        }

    def __repr__(self) -> str:
        return f"<Source {self.path} {self._type.value} every {self._interval_ms}ms>"

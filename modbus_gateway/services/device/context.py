"""
Gateway Context

Everything the registry, slaves and sources share, built once at start-up
and passed down explicitly.
"""

from dataclasses import dataclass, field
from typing import Any, Callable

from ...common.config import GatewayOptions
from ...storage.config_store import ConfigStore
from ..bus.objects import ObjectServer
from .modbus_client import ModbusClient

# (host, port, unit_id) -> client exposing connect/read_value/disconnect
ClientFactory = Callable[[str, int, int], Any]


@dataclass
class GatewayContext:
    """Shared services threaded through Registry, Slave and Source"""
    options: GatewayOptions = field(default_factory=GatewayOptions)
    objects: ObjectServer = field(default_factory=ObjectServer)
    client_factory: ClientFactory | None = None

    # Top-level store; opened by Registry.start()
    slaves_store: ConfigStore | None = None

    def create_client(self, host: str, port: int, unit_id: int) -> Any:
        """New register client for one slave"""
        if self.client_factory is not None:
            return self.client_factory(host, port, unit_id)

        return ModbusClient(
            host=host,
            port=port,
            unit_id=unit_id,
            timeout=self.options.modbus.timeout_s,
            retries=self.options.modbus.retries,
        )

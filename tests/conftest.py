from __future__ import annotations

import asyncio
import errno
from pathlib import Path
from typing import Any, Callable

import pytest

from modbus_gateway.common.config import GatewayOptions, SourceType
from modbus_gateway.common.exceptions import ConnectFailureError, ReadFailureError
from modbus_gateway.services.bus.objects import ObjectEvent, ObjectServer
from modbus_gateway.services.device.context import GatewayContext
from modbus_gateway.services.device.registry import Registry
from modbus_gateway.storage import config_store

# Short enough that a test sees several ticks, long enough to stay stable
TEST_INTERVAL_MS = 20


class FakeClient:
    """Stands in for ModbusClient; all devices live in a FakeNetwork"""

    def __init__(self, network: "FakeNetwork", host: str, port: int, unit_id: int):
        self.network = network
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self.on_disconnect: Callable[[], None] | None = None
        self.connected = False
        self.disconnect_calls = 0

    async def connect(self) -> None:
        self.network.connect_attempts += 1
        await asyncio.sleep(0)
        if self.network.refuse:
            raise ConnectFailureError(
                "Connection refused",
                host=self.host,
                port=self.port,
                errno=errno.ECONNREFUSED,
            )
        self.connected = True

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def read_value(self, address: int, source_type: SourceType) -> bool | int:
        self.network.reads.append(address)
        await asyncio.sleep(0)
        if self.network.fail_reads:
            raise ReadFailureError(
                "Read timeout",
                address=address,
                host=self.host,
                port=self.port,
                connection_lost=self.network.link_down,
            )
        return self.network.values.get(address, source_type.default_value)

    def drop(self) -> None:
        """Peer closed the connection"""
        self.connected = False
        callback = self.on_disconnect
        if callback:
            callback()


class FakeNetwork:
    """Client factory handing out FakeClients"""

    def __init__(self):
        self.clients: list[FakeClient] = []
        self.values: dict[int, bool | int] = {}
        self.reads: list[int] = []
        self.connect_attempts = 0
        self.refuse = False
        self.fail_reads = False
        self.link_down = False

    def __call__(self, host: str, port: int, unit_id: int) -> FakeClient:
        client = FakeClient(self, host, port, unit_id)
        self.clients.append(client)
        return client

    @property
    def last_client(self) -> FakeClient:
        return self.clients[-1]

    def reads_of(self, address: int) -> int:
        return self.reads.count(address)


async def wait_for(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def fail_next_fsync(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the next store rewrite fail with EIO, later ones succeed"""
    real_fsync = config_store.os.fsync
    calls = []

    def flaky(fd: int) -> None:
        calls.append(fd)
        if len(calls) == 1:
            raise OSError(errno.EIO, "Input/output error")
        real_fsync(fd)

    monkeypatch.setattr(config_store.os, "fsync", flaky)


def property_events(events: list[ObjectEvent], path: str, prop: str) -> list[ObjectEvent]:
    return [e for e in events if e.kind == "changed" and e.path == path and e.property == prop]


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    return tmp_path / "gateway"


@pytest.fixture
def options(storage_dir: Path) -> GatewayOptions:
    options = GatewayOptions(storage_dir=storage_dir, polling_interval_ms=TEST_INTERVAL_MS)
    options.api.enabled = False
    return options


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def context(options: GatewayOptions, network: FakeNetwork) -> GatewayContext:
    return GatewayContext(options=options, objects=ObjectServer(), client_factory=network)


@pytest.fixture
def events(context: GatewayContext) -> list[ObjectEvent]:
    received: list[ObjectEvent] = []
    context.objects.subscribe(received.append)
    return received


@pytest.fixture
async def registry(context: GatewayContext):
    registry = Registry(context)
    registry.start()
    yield registry
    registry.stop()

from __future__ import annotations

import asyncio
import errno

import pytest

from modbus_gateway.common.config import ConnectionState
from modbus_gateway.common.exceptions import (
    AlreadyInStateError,
    ConnectFailureError,
    DuplicateAddressError,
    InvalidArgsError,
    NotFoundError,
    StorageError,
)
from modbus_gateway.services.device.registry import Registry
from modbus_gateway.services.device.slave import Slave, parse_slave_address
from modbus_gateway.storage.config_store import ConfigStore

from tests.conftest import TEST_INTERVAL_MS, FakeNetwork, fail_next_fsync, property_events, wait_for

INTERVAL_S = TEST_INTERVAL_MS / 1000


def _slave(registry: Registry, sources: int = 0) -> Slave:
    slave = registry.add_slave("127.0.0.1:1502", 1, name="Meter")
    for index in range(sources):
        slave.add_source(f"reg{index}", "16bit", 0x10 + index)
    return slave


def _online_events(events: list, slave: Slave) -> list[bool]:
    return [e.value for e in property_events(events, slave.path, "Online")]


@pytest.mark.parametrize(
    "address,expected",
    [
        ("10.0.0.5:502", ("10.0.0.5", 502)),
        ("plc.local:1502", ("plc.local", 1502)),
        ("[::1]:502", ("::1", 502)),
    ],
)
def test_parse_slave_address(address: str, expected: tuple[str, int]) -> None:
    assert parse_slave_address(address) == expected


@pytest.mark.parametrize("address", ["10.0.0.5", ":502", "10.0.0.5:", "10.0.0.5:70000", "h:nosuchservice"])
def test_parse_slave_address_rejects(address: str) -> None:
    with pytest.raises(InvalidArgsError):
        parse_slave_address(address)


@pytest.mark.asyncio
async def test_new_slave_is_disconnected(registry: Registry) -> None:
    slave = _slave(registry)

    assert slave.state is ConnectionState.DISCONNECTED
    assert slave.online is False
    assert slave.path == f"/slave_{slave.key}"
    assert slave.properties()["Sources"] == []


@pytest.mark.asyncio
async def test_enable_connects_and_polls(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry, sources=2)
    network.values[0x10] = 99

    await slave.enable()

    assert slave.online
    assert network.last_client.unit_id == 1
    assert (network.last_client.host, network.last_client.port) == ("127.0.0.1", 1502)
    await wait_for(lambda: network.reads_of(0x10) >= 2 and network.reads_of(0x11) >= 2)
    assert slave.get_source(0x10).value == 99
    assert _online_events(events, slave) == [True]


@pytest.mark.asyncio
async def test_enable_twice_is_already_in_state(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry)
    await slave.enable()

    with pytest.raises(AlreadyInStateError):
        await slave.enable()

    assert network.connect_attempts == 1


@pytest.mark.asyncio
async def test_enable_while_connecting_is_already_in_state(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry)

    first = asyncio.ensure_future(slave.enable())
    await asyncio.sleep(0)
    with pytest.raises(AlreadyInStateError):
        await slave.enable()
    await first

    assert network.connect_attempts == 1
    assert slave.online


@pytest.mark.asyncio
async def test_disable_when_disconnected_is_already_in_state(registry: Registry) -> None:
    slave = _slave(registry)

    with pytest.raises(AlreadyInStateError):
        slave.disable()


@pytest.mark.asyncio
async def test_connect_failure_leaves_slave_disconnected(
    registry: Registry, network: FakeNetwork, events: list
) -> None:
    slave = _slave(registry, sources=1)
    network.refuse = True

    with pytest.raises(ConnectFailureError) as exc_info:
        await slave.enable()

    assert exc_info.value.errno == errno.ECONNREFUSED
    assert slave.state is ConnectionState.DISCONNECTED
    assert slave.poller.armed_count == 0
    assert _online_events(events, slave) == []

    network.refuse = False
    await slave.enable()
    assert slave.online


@pytest.mark.asyncio
async def test_disable_stops_polling(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry, sources=1)
    await slave.enable()
    await wait_for(lambda: network.reads_of(0x10) >= 1)

    slave.disable()
    reads = len(network.reads)
    await asyncio.sleep(INTERVAL_S * 4)

    assert len(network.reads) == reads
    assert network.last_client.disconnect_calls == 1
    assert _online_events(events, slave) == [True, False]


@pytest.mark.asyncio
async def test_peer_disconnect_tears_down_once(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry, sources=2)
    await slave.enable()
    client = network.last_client

    client.drop()
    client.drop()

    assert slave.state is ConnectionState.DISCONNECTED
    assert slave.poller.armed_count == 0
    assert _online_events(events, slave) == [True, False]
    assert client.disconnect_calls == 1

    reads = len(network.reads)
    await asyncio.sleep(INTERVAL_S * 4)
    assert len(network.reads) == reads

    with pytest.raises(AlreadyInStateError):
        slave.disable()
    assert _online_events(events, slave) == [True, False]


@pytest.mark.asyncio
async def test_stale_client_disconnect_is_ignored(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry)
    await slave.enable()
    old_client = network.last_client
    slave.disable()
    await slave.enable()

    old_client.drop()

    assert slave.online
    assert _online_events(events, slave) == [True, False, True]


@pytest.mark.asyncio
async def test_lost_link_during_read_tears_down(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry, sources=1)
    await slave.enable()
    network.fail_reads = True
    network.link_down = True

    await wait_for(lambda: not slave.online)

    assert slave.poller.armed_count == 0
    assert _online_events(events, slave) == [True, False]


@pytest.mark.asyncio
async def test_failed_reads_keep_polling(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry, sources=1)
    network.fail_reads = True
    await slave.enable()

    await wait_for(lambda: network.reads_of(0x10) >= 3)
    assert slave.online
    assert slave.get_source(0x10).value == 0

    network.fail_reads = False
    network.values[0x10] = 7
    await wait_for(lambda: slave.get_source(0x10).value == 7)


@pytest.mark.asyncio
async def test_value_changes_notify_once(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry, sources=1)
    source = slave.get_source(0x10)
    network.values[0x10] = 5
    await slave.enable()

    await wait_for(lambda: network.reads_of(0x10) >= 4)

    assert [e.value for e in property_events(events, source.path, "Value")] == [5]


@pytest.mark.asyncio
async def test_add_source_while_connected_is_polled(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry)
    await slave.enable()

    slave.add_source("late", "32bit", 0x40, interval_ms=TEST_INTERVAL_MS)

    assert slave.poller.is_armed(0x40)
    await wait_for(lambda: network.reads_of(0x40) >= 1, timeout=INTERVAL_S * 10)


@pytest.mark.asyncio
async def test_add_source_while_disconnected_is_not_polled(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry)

    slave.add_source("idle", "uint16", 0x40)
    await asyncio.sleep(INTERVAL_S * 3)

    assert not slave.poller.is_armed(0x40)
    assert network.reads == []


@pytest.mark.asyncio
async def test_add_source_persists_and_notifies(registry: Registry, events: list) -> None:
    slave = _slave(registry)

    source = slave.add_source("Flow", "q", 0x21, interval_ms=500)

    store = ConfigStore.open(registry.context.options.sources_file(slave.key))
    assert store.get_group("0021") == {"Name": "Flow", "Type": "q", "PollingInterval": "500"}
    assert registry.context.objects.get(source.path) is source
    sources_events = property_events(events, slave.path, "Sources")
    assert sources_events[-1].value == [source.path]


@pytest.mark.asyncio
async def test_duplicate_address_rejected(registry: Registry) -> None:
    slave = _slave(registry, sources=1)

    with pytest.raises(DuplicateAddressError):
        slave.add_source("again", "16bit", "0x0010")

    assert len(slave.sources) == 1


@pytest.mark.asyncio
async def test_remove_source_stops_reads(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry, sources=2)
    await slave.enable()
    await wait_for(lambda: network.reads_of(0x10) >= 1)

    slave.remove_source(0x10)
    reads = network.reads_of(0x10)
    await asyncio.sleep(INTERVAL_S * 4)

    assert network.reads_of(0x10) == reads
    assert network.reads_of(0x11) > 1
    assert registry.context.objects.get(f"{slave.path}/source_0010") is None
    store = ConfigStore.open(registry.context.options.sources_file(slave.key))
    assert store.groups() == ["0011"]


@pytest.mark.asyncio
async def test_remove_unknown_source(registry: Registry) -> None:
    slave = _slave(registry)

    with pytest.raises(NotFoundError):
        slave.remove_source(0x99)


@pytest.mark.asyncio
async def test_interval_change_applies_to_running_timer(registry: Registry, network: FakeNetwork) -> None:
    slave = _slave(registry, sources=1)
    await slave.enable()
    await wait_for(lambda: network.reads_of(0x10) >= 1)

    slave.get_source(0x10).set_interval(60_000)
    await asyncio.sleep(INTERVAL_S * 2)
    reads = network.reads_of(0x10)
    await asyncio.sleep(INTERVAL_S * 4)

    assert network.reads_of(0x10) == reads


@pytest.mark.asyncio
async def test_rename_persists_in_registry_store(registry: Registry, events: list) -> None:
    slave = _slave(registry)

    slave.rename("Main meter")

    store = ConfigStore.open(registry.context.options.slaves_file)
    assert store.read_string(slave.key, "Name") == "Main meter"
    assert [e.value for e in property_events(events, slave.path, "Name")] == ["Main meter"]


@pytest.mark.asyncio
async def test_destroy_while_connected(registry: Registry, network: FakeNetwork, events: list) -> None:
    slave = _slave(registry, sources=1)
    await slave.enable()
    source_path = slave.get_source(0x10).path

    slave.destroy(purge_storage=False)

    assert not slave.online
    assert network.last_client.disconnect_calls == 1
    assert slave.poller.armed_count == 0
    assert registry.context.objects.get(slave.path) is None
    assert registry.context.objects.get(source_path) is None
    assert slave.storage_dir.exists()
    assert _online_events(events, slave) == [True, False]


@pytest.mark.asyncio
async def test_failed_add_source_leaves_no_trace(
    registry: Registry,
    events: list,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    slave = _slave(registry)
    fail_next_fsync(monkeypatch)

    with pytest.raises(StorageError):
        slave.add_source("Ghost", "16bit", 0x10)
    slave.add_source("Real", "16bit", 0x20)

    assert [s.address for s in slave.sources] == [0x20]
    assert registry.context.objects.get(f"{slave.path}/source_0010") is None
    store = ConfigStore.open(registry.context.options.sources_file(slave.key))
    assert store.groups() == ["0020"]
    sources_events = property_events(events, slave.path, "Sources")
    assert sources_events[-1].value == [f"{slave.path}/source_0020"]
    assert all(f"{slave.path}/source_0010" not in e.value for e in sources_events)


@pytest.mark.asyncio
async def test_failed_remove_source_keeps_source(
    registry: Registry,
    network: FakeNetwork,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    slave = _slave(registry, sources=1)
    await slave.enable()
    fail_next_fsync(monkeypatch)

    with pytest.raises(StorageError):
        slave.remove_source(0x10)
    slave.add_source("other", "16bit", 0x30)

    assert slave.get_source(0x10).name == "reg0"
    assert slave.poller.is_armed(0x10)
    reads = network.reads_of(0x10)
    await wait_for(lambda: network.reads_of(0x10) > reads)
    store = ConfigStore.open(registry.context.options.sources_file(slave.key))
    assert store.groups() == ["0010", "0030"]


@pytest.mark.asyncio
async def test_failed_rename_changes_nothing(
    registry: Registry,
    events: list,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    slave = _slave(registry, sources=1)
    source = slave.get_source(0x10)

    fail_next_fsync(monkeypatch)
    with pytest.raises(StorageError):
        slave.rename("Renamed")
    fail_next_fsync(monkeypatch)
    with pytest.raises(StorageError):
        source.rename("Renamed")
    fail_next_fsync(monkeypatch)
    with pytest.raises(StorageError):
        source.set_interval(5000)
    source.set_interval(TEST_INTERVAL_MS * 2)

    assert slave.name == "Meter"
    assert source.name == "reg0"
    assert property_events(events, slave.path, "Name") == []
    assert property_events(events, source.path, "Name") == []
    assert [e.value for e in property_events(events, source.path, "PollingInterval")] == [TEST_INTERVAL_MS * 2]
    registry_store = ConfigStore.open(registry.context.options.slaves_file)
    assert registry_store.read_string(slave.key, "Name") == "Meter"
    store = ConfigStore.open(registry.context.options.sources_file(slave.key))
    assert store.get_group("0010") == {"Name": "reg0", "Type": "q", "PollingInterval": str(TEST_INTERVAL_MS * 2)}

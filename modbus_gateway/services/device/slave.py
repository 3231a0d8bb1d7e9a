"""
Slave

A field device reachable over Modbus TCP: owns its sources, one register
client connection, one scoped configuration store and the poll timers of
its sources.

Connection states:
    DISCONNECTED --enable()--> CONNECTED
    CONNECTED --disable() / peer disconnect / destroy()--> DISCONNECTED

Every path back to DISCONNECTED runs the same teardown, so timers are
cancelled and the "Online" change is published exactly once whichever
trigger fires first.
"""

import socket
from functools import partial
from pathlib import Path
from typing import Any

from ...common.config import ConnectionState, MAX_UNIT_ID, MIN_UNIT_ID, SourceType
from ...common.exceptions import (
    AlreadyInStateError,
    ConnectFailureError,
    DuplicateAddressError,
    InvalidArgsError,
    NotFoundError,
    StorageError,
)
from ...common.logging_setup import get_service_logger, log_slave_state
from ...storage.config_store import ConfigStore
from ..bus.objects import SLAVE_IFACE, SOURCE_IFACE
from .context import GatewayContext
from .poller import SourcePoller
from .source import Source, parse_address, parse_name

logger = get_service_logger("device.slave")


def parse_slave_address(address: Any) -> tuple[str, int]:
    """
    Split "host:service" into host and TCP port.

    The service is a port number or a TCP service name ("host:mbap").
    IPv6 literals are written in brackets ("[::1]:502").
    """
    if not isinstance(address, str):
        raise InvalidArgsError(f"Invalid slave address: {address!r}")

    host, sep, service = address.strip().rpartition(":")
    host = host.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    if not sep or not host or not service:
        raise InvalidArgsError(f"Slave address must be host:port, got {address!r}")

    if service.isdigit():
        port = int(service)
    else:
        try:
            port = socket.getservbyname(service, "tcp")
        except OSError:
            raise InvalidArgsError(f"Unknown service in slave address: {service!r}") from None

    if not 0 < port < 65536:
        raise InvalidArgsError(f"Slave port out of range: {port}")

    return host, port


def validate_unit_id(unit_id: Any) -> int:
    if isinstance(unit_id, bool):
        raise InvalidArgsError(f"Invalid slave id: {unit_id!r}")
    try:
        unit_id = int(unit_id)
    except (TypeError, ValueError):
        raise InvalidArgsError(f"Invalid slave id: {unit_id!r}") from None
    if not MIN_UNIT_ID <= unit_id <= MAX_UNIT_ID:
        raise InvalidArgsError(
            f"Slave id out of range ({MIN_UNIT_ID} - {MAX_UNIT_ID}): {unit_id}"
        )
    return unit_id


def remove_tree(root: Path) -> int:
    """
    Delete a storage subtree, children first.

    Returns:
        Number of entries that could not be deleted (each logged)
    """
    if not root.exists():
        return 0

    failures = 0
    for path in [*sorted(root.rglob("*"), reverse=True), root]:
        try:
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink()
        except OSError as e:
            failures += 1
            logger.warning(f"Unable to delete {path}: {e}")

    return failures


class Slave:
    """
    One Modbus device and its sources.

    Use Slave.create() rather than the constructor: it opens the slave's
    store and registers the exposed objects.
    """

    def __init__(
        self,
        context: GatewayContext,
        key: str,
        unit_id: int,
        name: str,
        address: str,
        host: str,
        port: int,
        store: ConfigStore,
    ):
        self._context = context
        self._key = key
        self._unit_id = unit_id
        self._name = name
        self._address = address
        self.host = host
        self.port = port
        self.path = f"/slave_{key}"

        self._store = store
        self._sources: dict[int, Source] = {}
        self._poller = SourcePoller(name, on_connection_lost=self._connection_lost)

        self._state = ConnectionState.DISCONNECTED
        self._client: Any = None
        self._connecting = False
        self._released = False

    @classmethod
    def create(
        cls,
        context: GatewayContext,
        key: str,
        unit_id: int,
        name: str,
        address: str,
    ) -> "Slave":
        """
        Build a slave from a definition.

        A pre-existing sources file means the slave is being restored: its
        sources are loaded and the registry-level group is left alone.
        Otherwise the slave is new and its registry-level group is written.

        Raises:
            InvalidArgsError: bad address, id or name
            StorageError: store could not be opened or written
        """
        unit_id = validate_unit_id(unit_id)
        name = parse_name(name)
        host, port = parse_slave_address(address)

        store = ConfigStore.open(context.options.sources_file(key))
        slave = cls(context, key, unit_id, name, address.strip(), host, port, store)

        try:
            if store.existed:
                slave._restore_sources()
            else:
                slave._persist()
        except StorageError:
            store.close()
            if not store.existed:
                remove_tree(context.options.slave_dir(key))
            raise

        context.objects.register_object(slave.path, SLAVE_IFACE, slave)
        for source in slave._sources.values():
            context.objects.register_object(source.path, SOURCE_IFACE, source)

        logger.info(
            f"{'Restored' if store.existed else 'Created'} slave {name} "
            f"({key}) at {host}:{port} id={unit_id}, {len(slave._sources)} sources",
            extra={"slave_key": key, "restored": store.existed},
        )
        return slave

    @property
    def key(self) -> str:
        return self._key

    @property
    def unit_id(self) -> int:
        return self._unit_id

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> str:
        return self._address

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def online(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def storage_dir(self) -> Path:
        return self._context.options.slave_dir(self._key)

    @property
    def sources(self) -> list[Source]:
        return list(self._sources.values())

    @property
    def poller(self) -> SourcePoller:
        return self._poller

    def get_source(self, address: int | str) -> Source:
        source = self._sources.get(parse_address(address))
        if source is None:
            raise NotFoundError(f"Slave {self._key} has no source at {address}")
        return source

    async def enable(self) -> None:
        """
        Connect and start polling every source.

        Raises:
            AlreadyInStateError: already connected or connecting
            ConnectFailureError: the slave stays disconnected
        """
        if self._state == ConnectionState.CONNECTED or self._connecting:
            raise AlreadyInStateError(self._key, online=True)

        client = self._context.create_client(self.host, self.port, self._unit_id)

        self._connecting = True
        try:
            await client.connect()
        except ConnectFailureError as e:
            logger.error(
                f"Slave {self._name} ({self._key}) connect failed: {e.message}",
                extra={"slave_key": self._key, "errno": e.errno},
            )
            raise
        finally:
            self._connecting = False

        if self._released:
            client.disconnect()
            raise NotFoundError(f"Slave {self._key} was removed while connecting")

        self._client = client
        client.on_disconnect = partial(self._connection_lost, client)
        self._poller.attach(client)
        self._state = ConnectionState.CONNECTED

        for source in self._sources.values():
            self._poller.arm(source)

        log_slave_state(logger, self._key, self._name, online=True)
        self._context.objects.notify_property_changed(self.path, SLAVE_IFACE, "Online")

    def disable(self) -> None:
        """
        Stop polling and close the connection.

        Raises:
            AlreadyInStateError: already disconnected
        """
        if self._state == ConnectionState.DISCONNECTED:
            raise AlreadyInStateError(self._key, online=False)

        self._teardown("disabled")

    def _connection_lost(self, client: Any = None) -> None:
        """Disconnect watcher, also reached from the poller on a dead link"""
        if self._client is None:
            return
        if client is not None and client is not self._client:
            return

        logger.warning(
            f"Slave {self._name} ({self._key}) connection lost",
            extra={"slave_key": self._key},
        )
        self._teardown("connection lost")

    def _teardown(self, reason: str) -> bool:
        """
        The single CONNECTED -> DISCONNECTED transition.

        Returns:
            False when already disconnected (nothing done)
        """
        if self._state == ConnectionState.DISCONNECTED:
            return False

        # Timers first: no tick may run against a closed client
        self._poller.disarm_all()
        self._poller.detach()

        client, self._client = self._client, None
        if client is not None:
            client.on_disconnect = None
            client.disconnect()

        self._state = ConnectionState.DISCONNECTED

        log_slave_state(logger, self._key, self._name, online=False, reason=reason)
        self._context.objects.notify_property_changed(self.path, SLAVE_IFACE, "Online")
        return True

    def add_source(
        self,
        name: str,
        source_type: SourceType | str,
        address: int | str,
        interval_ms: int | None = None,
    ) -> Source:
        """
        Add and persist a source. Polling starts at once when connected.

        Raises:
            DuplicateAddressError: address already used on this slave
            InvalidArgsError: bad name, type, address or interval
            StorageError: the source could not be persisted
        """
        address = parse_address(address)
        if address in self._sources:
            raise DuplicateAddressError(address, self._key)

        source = Source(
            self._context,
            self.path,
            self._store,
            name=name,
            source_type=source_type,
            address=address,
            interval_ms=interval_ms,
        )
        source.persist()

        self._sources[address] = source
        self._context.objects.register_object(source.path, SOURCE_IFACE, source)
        self._context.objects.notify_property_changed(self.path, SLAVE_IFACE, "Sources")

        if self._state == ConnectionState.CONNECTED:
            self._poller.arm(source)

        logger.info(
            f"Slave {self._name}: added source {source.name} at 0x{address:04x} "
            f"({source.source_type.value}, {source.interval_ms}ms)",
            extra={"slave_key": self._key, "address": address},
        )
        return source

    def remove_source(self, address: int | str) -> None:
        """
        Stop polling a source, delete its persisted group and release it.

        Raises:
            NotFoundError: no source at that address
            StorageError: the group could not be deleted (source kept)
        """
        source = self.get_source(address)

        self._poller.disarm(source.address)
        try:
            self._store.remove_group(source.group)
        except StorageError:
            if self._state == ConnectionState.CONNECTED:
                self._poller.arm(source)
            raise

        del self._sources[source.address]
        self._context.objects.unregister_object(source.path)
        self._context.objects.notify_property_changed(self.path, SLAVE_IFACE, "Sources")

        logger.info(
            f"Slave {self._name}: removed source at 0x{source.address:04x}",
            extra={"slave_key": self._key, "address": source.address},
        )

    def rename(self, name: str) -> None:
        """Change the display name, persisted in the registry-level group"""
        name = parse_name(name)
        if name == self._name:
            return

        self._registry_store().write_string(self._key, "Name", name)
        self._name = name
        self._poller.slave_name = name
        self._context.objects.notify_property_changed(self.path, SLAVE_IFACE, "Name")

    def destroy(self, purge_storage: bool = False) -> None:
        """
        Disconnect and release everything the slave holds.

        Args:
            purge_storage: Also delete the storage subtree and the
                registry-level group. Deletion failures are logged only.
        """
        if self._released:
            return

        self._teardown("removed")

        for source in self._sources.values():
            self._context.objects.unregister_object(source.path)
        self._sources.clear()

        self._context.objects.unregister_object(self.path)
        self._store.close()
        self._released = True

        if purge_storage:
            self._purge_storage()

        logger.info(
            f"Slave {self._name} ({self._key}) released"
            f"{' and purged' if purge_storage else ''}",
            extra={"slave_key": self._key},
        )

    def properties(self) -> dict[str, Any]:
        return {
            "Key": self._key,
            "Id": self._unit_id,
            "Name": self._name,
            "Address": self._address,
            "Online": self.online,
            "Sources": [source.path for source in self._sources.values()],
        }

    def get_stats(self) -> dict:
        return {
            "key": self._key,
            "state": self._state.value,
            "sources": len(self._sources),
            "timers": self._poller.get_stats(),
        }

    def _registry_store(self) -> ConfigStore:
        store = self._context.slaves_store
        if store is None:
            raise StorageError("Slave registry store is not open")
        return store

    def _persist(self) -> None:
        """Write the registry-level group of a new slave"""
        self._registry_store().write_group(self._key, {
            "Id": self._unit_id,
            "Name": self._name,
            "Address": self._address,
        })

    def _restore_sources(self) -> None:
        def visit(group: str, values: dict[str, str]) -> None:
            source = Source.from_storage(self._context, self.path, self._store, group, values)
            if source.address in self._sources:
                raise DuplicateAddressError(source.address, self._key)
            self._sources[source.address] = source

        skipped = self._store.for_each_group(visit, required=("Name", "Type"))
        if skipped:
            logger.warning(
                f"Slave {self._name}: skipped {skipped} malformed source entries",
                extra={"slave_key": self._key, "skipped": skipped},
            )

    def _purge_storage(self) -> None:
        store = self._context.slaves_store
        if store is not None and not store.closed:
            try:
                store.remove_group(self._key)
            except StorageError as e:
                logger.error(f"Unable to remove slave {self._key} from registry: {e}")

        failures = remove_tree(self.storage_dir)
        if failures:
            logger.warning(
                f"Slave {self._key}: storage partially removed ({failures} failures)",
                extra={"slave_key": self._key, "failures": failures},
            )

    def __repr__(self) -> str:
        return f"<Slave {self._key} {self._name!r} {self._address} {self._state.value}>"

"""
Slave Registry

Owns every slave and the top-level store. Restores persisted slaves at
start-up, adds and removes slaves on request, and releases them (without
touching storage) at shutdown.
"""

import secrets
from typing import Any

from ...common.exceptions import InvalidArgsError, NotFoundError
from ...common.logging_setup import get_service_logger
from ...storage.config_store import ConfigStore
from ..bus.objects import MANAGER_IFACE
from .context import GatewayContext
from .slave import Slave, parse_slave_address, validate_unit_id

logger = get_service_logger("device.registry")

MANAGER_PATH = "/"

# 64 random bits rendered as 16 hex digits
KEY_BYTES = 8
MAX_KEY_ATTEMPTS = 8


class Registry:
    """
    The process-wide owner of all slaves.

    Other components (the object server, API handlers) only look slaves up
    by key or path and never keep them alive.
    """

    def __init__(self, context: GatewayContext):
        self._context = context
        self._slaves: list[Slave] = []
        self._started = False

    @property
    def context(self) -> GatewayContext:
        return self._context

    @property
    def slaves(self) -> list[Slave]:
        return list(self._slaves)

    def start(self) -> list[Slave]:
        """
        Open the top-level store and restore every persisted slave.

        A slave whose group or store cannot be loaded is skipped with a
        warning; the rest are restored.

        Returns:
            The restored slaves
        """
        if self._started:
            return self.slaves

        store = ConfigStore.open(self._context.options.slaves_file)
        self._context.slaves_store = store

        def visit(group: str, values: dict[str, str]) -> None:
            if self._find(group) is not None:
                raise InvalidArgsError(f"Duplicate slave key {group}")
            slave = Slave.create(
                self._context,
                key=group,
                unit_id=values["Id"],
                name=values["Name"],
                address=values["Address"],
            )
            self._slaves.append(slave)

        skipped = store.for_each_group(visit, required=("Id", "Name", "Address"))

        self._context.objects.register_object(MANAGER_PATH, MANAGER_IFACE, self)
        self._started = True

        logger.info(
            f"Registry started: {len(self._slaves)} slaves restored, {skipped} skipped",
            extra={"restored": len(self._slaves), "skipped": skipped},
        )
        return self.slaves

    def stop(self) -> None:
        """Release every slave without purging storage, close the store"""
        if not self._started:
            return

        for slave in self._slaves:
            slave.destroy(purge_storage=False)
        self._slaves.clear()

        self._context.objects.unregister_object(MANAGER_PATH)

        if self._context.slaves_store is not None:
            self._context.slaves_store.close()
            self._context.slaves_store = None

        self._started = False
        logger.info("Registry stopped")

    def add_slave(
        self,
        address: str,
        unit_id: int,
        name: str | None = None,
    ) -> Slave:
        """
        Create and persist a new slave.

        Args:
            address: "host:port"
            unit_id: Modbus unit id (1 - 247)
            name: Display name, defaults to the address

        Raises:
            InvalidArgsError: missing or malformed arguments
            StorageError: the slave could not be persisted
        """
        self._require_started()

        if not address or not isinstance(address, str):
            raise InvalidArgsError("Slave address missing")
        unit_id = validate_unit_id(unit_id)
        parse_slave_address(address)

        if name is None or (isinstance(name, str) and not name.strip()):
            name = address

        key = self._generate_key()
        logger.info(f"Creating new slave({unit_id}, {address}) as {key}")

        slave = Slave.create(self._context, key=key, unit_id=unit_id, name=name, address=address)
        self._slaves.append(slave)
        self._context.objects.notify_property_changed(MANAGER_PATH, MANAGER_IFACE, "Slaves")
        return slave

    def remove_slave(self, ref: str) -> None:
        """
        Destroy a slave and purge its storage.

        Args:
            ref: Slave key or object path

        Raises:
            NotFoundError: unknown slave
        """
        self._require_started()

        slave = self.get_slave(ref)
        self._slaves.remove(slave)
        slave.destroy(purge_storage=True)
        self._context.objects.notify_property_changed(MANAGER_PATH, MANAGER_IFACE, "Slaves")

    def get_slave(self, ref: str) -> Slave:
        """
        Raises:
            NotFoundError: no slave with that key or path
        """
        slave = self._find(ref)
        if slave is None:
            raise NotFoundError(f"Slave does not exist: {ref}")
        return slave

    def properties(self) -> dict[str, Any]:
        return {
            "Slaves": [slave.path for slave in self._slaves],
        }

    def _find(self, ref: str) -> Slave | None:
        return next(
            (s for s in self._slaves if s.key == ref or s.path == ref),
            None,
        )

    def _generate_key(self) -> str:
        """Random key unused by a live slave or a storage directory"""
        for _ in range(MAX_KEY_ATTEMPTS):
            key = secrets.token_hex(KEY_BYTES)
            if self._find(key) is None and not self._context.options.slave_dir(key).exists():
                return key
            logger.warning(f"Slave key collision on {key}, regenerating")

        raise InvalidArgsError("Unable to allocate a unique slave key")

    def _require_started(self) -> None:
        if not self._started:
            raise InvalidArgsError("Registry is not started")

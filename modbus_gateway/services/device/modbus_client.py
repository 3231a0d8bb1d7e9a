"""
Async Modbus Client

Wrapper around pymodbus for Modbus TCP: one connection per slave, coil and
holding-register reads, typed decoding, and a disconnect callback.
"""

import asyncio
import errno
import os
from typing import Callable

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from ...common.config import SourceType
from ...common.exceptions import ConnectFailureError, ReadFailureError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")


class ModbusClient:
    """
    Async Modbus TCP client bound to one unit id.

    Automatic reconnection is disabled: a lost connection is reported once
    through `on_disconnect` and the owner decides what to do next.
    """

    def __init__(
        self,
        host: str,
        port: int = 502,
        unit_id: int = 1,
        timeout: float = 3.0,
        retries: int = 0,
    ):
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self.timeout = timeout
        self.retries = retries

        # Called without arguments when the peer drops the connection
        self.on_disconnect: Callable[[], None] | None = None

        self._client: AsyncModbusTcpClient | None = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    async def connect(self) -> None:
        """
        Establish connection to the Modbus device.

        Raises:
            ConnectFailureError: with the OS error code when one is known
        """
        if self.is_connected:
            return

        self._closing = False
        self._client = AsyncModbusTcpClient(
            host=self.host,
            port=self.port,
            timeout=self.timeout,
            retries=self.retries,
            reconnect_delay=0,
            trace_connect=self._connection_callback,
        )

        try:
            connected = await self._client.connect()
        except asyncio.TimeoutError as e:
            self._discard()
            raise ConnectFailureError(
                f"Connection to {self.host}:{self.port} timed out",
                host=self.host,
                port=self.port,
                errno=errno.ETIMEDOUT,
            ) from e
        except OSError as e:
            self._discard()
            raise ConnectFailureError(
                f"Connection to {self.host}:{self.port} failed: {e.strerror or e}",
                host=self.host,
                port=self.port,
                errno=e.errno,
            ) from e
        except ModbusException as e:
            self._discard()
            raise ConnectFailureError(
                f"Connection to {self.host}:{self.port} failed: {e}",
                host=self.host,
                port=self.port,
            ) from e

        if not connected:
            self._discard()
            # pymodbus logs the socket error and only reports False
            os_errno = await self._connect_errno()
            reason = os.strerror(os_errno) if os_errno else "no connection"
            raise ConnectFailureError(
                f"Unable to connect to {self.host}:{self.port}: {reason}",
                host=self.host,
                port=self.port,
                errno=os_errno,
            )

        logger.debug(f"Connected to Modbus device at {self.host}:{self.port}")

    def disconnect(self) -> None:
        """Close the connection without reporting it as a disconnect"""
        self.on_disconnect = None
        self._discard()
        logger.debug(f"Disconnected from {self.host}:{self.port}")

    async def read_bits(self, address: int, count: int) -> list[bool]:
        """
        Read coils.

        Raises:
            ReadFailureError: on timeout, exception response or lost link
        """
        client = self._require_client(address)

        try:
            response = await client.read_coils(
                address=address,
                count=count,
                device_id=self.unit_id,
            )
        except ModbusException as e:
            raise self._read_error(f"Modbus exception: {e}", address) from e
        except asyncio.TimeoutError as e:
            raise self._read_error("Read timeout", address) from e

        if response.isError():
            raise self._read_error(f"Modbus error: {response}", address)

        return [bool(bit) for bit in response.bits[:count]]

    async def read_registers(self, address: int, count: int) -> list[int]:
        """
        Read holding registers.

        Raises:
            ReadFailureError: on timeout, exception response or lost link
        """
        client = self._require_client(address)

        try:
            response = await client.read_holding_registers(
                address=address,
                count=count,
                device_id=self.unit_id,
            )
        except ModbusException as e:
            raise self._read_error(f"Modbus exception: {e}", address) from e
        except asyncio.TimeoutError as e:
            raise self._read_error("Read timeout", address) from e

        if response.isError():
            raise self._read_error(f"Modbus error: {response}", address)

        return list(response.registers[:count])

    async def read_value(self, address: int, source_type: SourceType) -> bool | int:
        """One read sized by the source type, decoded"""
        if source_type.is_bits:
            bits = await self.read_bits(address, source_type.read_count)
            return self.convert_bits(bits, source_type)

        registers = await self.read_registers(address, source_type.read_count)
        return self.convert_registers(registers, source_type)

    @staticmethod
    def convert_bits(bits: list[bool], source_type: SourceType) -> bool | int:
        """Convert coil states to a boolean or a byte (first coil is bit 0)"""
        if len(bits) < source_type.read_count:
            raise ReadFailureError(
                f"Short read: {len(bits)} of {source_type.read_count} bits"
            )

        if source_type == SourceType.BOOL:
            return bool(bits[0])

        value = 0
        for index, bit in enumerate(bits[:8]):
            if bit:
                value |= 1 << index
        return value

    @staticmethod
    def convert_registers(registers: list[int], source_type: SourceType) -> int:
        """Convert raw registers to an unsigned value, high word first"""
        if len(registers) < source_type.read_count:
            raise ReadFailureError(
                f"Short read: {len(registers)} of {source_type.read_count} registers"
            )

        value = 0
        for register in registers[:source_type.read_count]:
            value = (value << 16) | (register & 0xFFFF)
        return value

    async def _connect_errno(self) -> int | None:
        """OS error code of a plain TCP connect to the device, None if it succeeds"""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return errno.ETIMEDOUT
        except OSError as e:
            return e.errno

        writer.close()
        return None

    def _connection_callback(self, connected: bool) -> None:
        if connected or self._closing:
            return

        logger.warning(f"Connection to {self.host}:{self.port} lost")
        callback = self.on_disconnect
        if callback:
            callback()

    def _require_client(self, address: int) -> AsyncModbusTcpClient:
        if self._client is None or not self._client.connected:
            raise ReadFailureError(
                f"Not connected to {self.host}:{self.port}",
                address=address,
                host=self.host,
                port=self.port,
                connection_lost=True,
            )
        return self._client

    def _read_error(self, message: str, address: int) -> ReadFailureError:
        return ReadFailureError(
            message,
            address=address,
            host=self.host,
            port=self.port,
            connection_lost=not self.is_connected,
        )

    def _discard(self) -> None:
        self._closing = True
        if self._client:
            self._client.close()
            self._client = None

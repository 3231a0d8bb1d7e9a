"""
Custom Exception Classes for the Modbus Gateway

Hierarchical exception structure shared by storage, device and API layers.
"""


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    # Short machine-readable kind reported to API clients
    kind = "Failed"

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(GatewayError):
    """Invalid gateway options"""

    kind = "ConfigError"

    def __init__(self, message: str):
        super().__init__(f"Config Error: {message}", recoverable=False)


class InvalidArgsError(GatewayError):
    """A request carried missing or malformed arguments"""

    kind = "InvalidArgs"

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class InvalidTypeError(InvalidArgsError):
    """Unsupported source type tag"""

    kind = "InvalidType"


class NotFoundError(GatewayError):
    """Referenced slave or source does not exist"""

    kind = "NotFound"

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class DuplicateAddressError(GatewayError):
    """A source with the same address already exists on the slave"""

    kind = "DuplicateAddress"

    def __init__(self, address: int, slave_key: str | None = None):
        self.address = address
        self.slave_key = slave_key
        super().__init__(
            f"Source address 0x{address:04x} already in use",
            recoverable=False,
        )


class AlreadyInStateError(GatewayError):
    """Soft failure: the slave is already in the requested state"""

    kind = "AlreadyInState"

    def __init__(self, slave_key: str, online: bool):
        self.slave_key = slave_key
        self.online = online
        state = "enabled" if online else "disabled"
        super().__init__(f"Slave {slave_key} already {state}", recoverable=True)


class StorageError(GatewayError):
    """Reading or writing a configuration store failed"""

    kind = "IOError"

    def __init__(self, message: str, path: str | None = None, errno: int | None = None):
        self.path = path
        self.errno = errno
        super().__init__(f"Storage Error: {message}", recoverable=True)


class DeviceError(GatewayError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        errno: int | None = None,
        recoverable: bool = True,
    ):
        self.host = host
        self.port = port
        self.errno = errno
        super().__init__(f"Device Error: {message}", recoverable)


class ConnectFailureError(DeviceError):
    """Opening the Modbus TCP connection failed"""

    kind = "ConnectFailure"


class ReadFailureError(DeviceError):
    """A poll read failed (logged only, polling continues)"""

    kind = "ReadFailure"

    def __init__(
        self,
        message: str,
        address: int | None = None,
        host: str | None = None,
        port: int | None = None,
        connection_lost: bool = False,
    ):
        self.address = address
        self.connection_lost = connection_lost
        super().__init__(message, host=host, port=port)

"""
Device Service - Modbus Communication

Responsibilities:
- Maintain one Modbus TCP connection per enabled slave
- Poll every source on its own interval
- Persist slaves and sources across restarts
- Track slave online/offline status
"""

from .context import GatewayContext
from .registry import Registry
from .service import GatewayService
from .slave import Slave
from .source import Source

__all__ = ["GatewayContext", "Registry", "GatewayService", "Slave", "Source"]

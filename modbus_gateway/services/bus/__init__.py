"""
Object Bus

Object exposition (ObjectServer) and the HTTP/WebSocket request surface
(GatewayApi).
"""

from .objects import ObjectServer, ObjectEvent

__all__ = ["ObjectServer", "ObjectEvent"]

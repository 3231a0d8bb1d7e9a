"""
Gateway HTTP API

Request surface for supervisory applications:
- Add/remove slaves and sources
- Enable/disable slaves, rename slaves and sources, change intervals
- Introspect the exposed object tree and per-slave poll statistics
- Stream object events over a WebSocket (/events)

Errors are returned as {"error": <kind>, "message": <text>}.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, TYPE_CHECKING

from aiohttp import web, WSMsgType

from ...common.exceptions import (
    AlreadyInStateError,
    ConnectFailureError,
    DuplicateAddressError,
    GatewayError,
    InvalidArgsError,
    NotFoundError,
    StorageError,
)
from ...common.logging_setup import get_service_logger

if TYPE_CHECKING:
    from ..device.registry import Registry
    from ..device.slave import Slave
    from ..device.source import Source

logger = get_service_logger("bus.api")

# Checked in order, first match wins
_ERROR_STATUS: list[tuple[type, int]] = [
    (InvalidArgsError, 400),
    (NotFoundError, 404),
    (DuplicateAddressError, 409),
    (ConnectFailureError, 502),
    (StorageError, 500),
]


def error_status(error: GatewayError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Translate gateway errors into JSON error responses"""
    try:
        return await handler(request)
    except GatewayError as e:
        status = error_status(e)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        else:
            logger.info(f"{request.method} {request.path} rejected: {e.message}")

        body = {"error": e.kind, "message": e.message}
        errno = getattr(e, "errno", None)
        if errno is not None:
            body["errno"] = errno
        return web.json_response(body, status=status)


def source_to_dict(source: "Source") -> dict[str, Any]:
    return {"path": source.path, **source.properties()}


def slave_to_dict(slave: "Slave") -> dict[str, Any]:
    data = {"path": slave.path, **slave.properties()}
    data["Sources"] = [source_to_dict(source) for source in slave.sources]
    return data


async def read_json(request: web.Request) -> dict[str, Any]:
    """Request body as a JSON object"""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidArgsError("Request body is not valid JSON") from None

    if not isinstance(body, dict):
        raise InvalidArgsError("Request body must be a JSON object")
    return body


def _pick(body: dict[str, Any], *names: str, required: bool = True) -> Any:
    """First present key among aliases (e.g. "id" / "Id")"""
    for name in names:
        if name in body:
            return body[name]
    if required:
        raise InvalidArgsError(f"Missing argument: {names[0]}")
    return None


class GatewayApi:
    """aiohttp application exposing a Registry"""

    def __init__(self, registry: "Registry"):
        self.registry = registry
        self.objects = registry.context.objects
        self._start_time = datetime.now(timezone.utc)

        self.app = web.Application(middlewares=[error_middleware])
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_get("/objects", self._objects_handler)
        self.app.router.add_get("/events", self._events_handler)
        self.app.router.add_get("/slaves", self._list_slaves_handler)
        self.app.router.add_post("/slaves", self._add_slave_handler)
        self.app.router.add_get("/slaves/{key}", self._get_slave_handler)
        self.app.router.add_delete("/slaves/{key}", self._remove_slave_handler)
        self.app.router.add_put("/slaves/{key}/enable", self._set_enable_handler)
        self.app.router.add_put("/slaves/{key}/name", self._set_slave_name_handler)
        self.app.router.add_get("/slaves/{key}/stats", self._slave_stats_handler)
        self.app.router.add_post("/slaves/{key}/sources", self._add_source_handler)
        self.app.router.add_get("/slaves/{key}/sources/{address}", self._get_source_handler)
        self.app.router.add_delete("/slaves/{key}/sources/{address}", self._remove_source_handler)
        self.app.router.add_put(
            "/slaves/{key}/sources/{address}/name", self._set_source_name_handler
        )
        self.app.router.add_put(
            "/slaves/{key}/sources/{address}/interval", self._set_interval_handler
        )

    def _slave(self, request: web.Request) -> "Slave":
        return self.registry.get_slave(request.match_info["key"])

    def _source(self, request: web.Request) -> "Source":
        return self._slave(request).get_source(request.match_info["address"])

    async def _health_handler(self, request: web.Request) -> web.Response:
        slaves = self.registry.slaves
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return web.json_response({
            "status": "healthy",
            "service": "modbus-gateway",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "slaves": len(slaves),
            "online": sum(1 for slave in slaves if slave.online),
            "sources": sum(len(slave.sources) for slave in slaves),
        })

    async def _objects_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.objects.introspect())

    async def _list_slaves_handler(self, request: web.Request) -> web.Response:
        return web.json_response([slave_to_dict(slave) for slave in self.registry.slaves])

    async def _get_slave_handler(self, request: web.Request) -> web.Response:
        return web.json_response(slave_to_dict(self._slave(request)))

    async def _add_slave_handler(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        slave = self.registry.add_slave(
            address=_pick(body, "address", "Address", "URL"),
            unit_id=_pick(body, "id", "Id"),
            name=_pick(body, "name", "Name", required=False),
        )
        return web.json_response(slave_to_dict(slave), status=201)

    async def _remove_slave_handler(self, request: web.Request) -> web.Response:
        self.registry.remove_slave(request.match_info["key"])
        return web.json_response({"status": "ok"})

    async def _set_enable_handler(self, request: web.Request) -> web.Response:
        slave = self._slave(request)
        body = await read_json(request)
        enable = _pick(body, "enable", "Enable")
        if not isinstance(enable, bool):
            raise InvalidArgsError("enable must be true or false")

        try:
            if enable:
                await slave.enable()
            else:
                slave.disable()
        except AlreadyInStateError as e:
            return web.json_response({
                "status": "ok",
                "already": True,
                "message": e.message,
                "online": slave.online,
            })

        return web.json_response({"status": "ok", "already": False, "online": slave.online})

    async def _slave_stats_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self._slave(request).get_stats())

    async def _set_slave_name_handler(self, request: web.Request) -> web.Response:
        slave = self._slave(request)
        body = await read_json(request)
        slave.rename(_pick(body, "name", "Name"))
        return web.json_response(slave_to_dict(slave))

    async def _add_source_handler(self, request: web.Request) -> web.Response:
        slave = self._slave(request)
        body = await read_json(request)
        source = slave.add_source(
            name=_pick(body, "name", "Name"),
            source_type=_pick(body, "type", "Type"),
            address=_pick(body, "address", "Address"),
            interval_ms=_pick(body, "interval", "interval_ms", "PollingInterval", required=False),
        )
        return web.json_response(source_to_dict(source), status=201)

    async def _get_source_handler(self, request: web.Request) -> web.Response:
        return web.json_response(source_to_dict(self._source(request)))

    async def _remove_source_handler(self, request: web.Request) -> web.Response:
        self._slave(request).remove_source(request.match_info["address"])
        return web.json_response({"status": "ok"})

    async def _set_source_name_handler(self, request: web.Request) -> web.Response:
        source = self._source(request)
        body = await read_json(request)
        source.rename(_pick(body, "name", "Name"))
        return web.json_response(source_to_dict(source))

    async def _set_interval_handler(self, request: web.Request) -> web.Response:
        source = self._source(request)
        body = await read_json(request)
        source.set_interval(_pick(body, "interval", "interval_ms", "PollingInterval"))
        return web.json_response(source_to_dict(source))

    async def _events_handler(self, request: web.Request) -> web.WebSocketResponse:
        """Snapshot of the object tree, then one message per object event"""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        queue = self.objects.open_stream()
        reader = asyncio.ensure_future(self._drain(ws))
        try:
            await ws.send_json({"event": "snapshot", "objects": self.objects.introspect()})

            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, reader},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    getter.cancel()
                    break
                await ws.send_json(getter.result().to_dict())
        except ConnectionResetError:
            logger.debug("Event stream client went away")
        finally:
            reader.cancel()
            self.objects.close_stream(queue)

        return ws

    @staticmethod
    async def _drain(ws: web.WebSocketResponse) -> None:
        """Consume client messages until the socket closes"""
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning(f"Event stream error: {ws.exception()}")
                break

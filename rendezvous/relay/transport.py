"""WebSocket transport for the relay.

One persistent WebSocket per device.  The transport assigns each connection a
random id, works out the peer address, and feeds decoded envelopes to a
``ConnectionHandler`` (the router).  Outbound envelopes go through a
per-connection queue drained by a writer task, so ``send`` never blocks the
caller and a slow socket never stalls another device.

Plain HTTP requests on the same port are answered with small JSON status
documents (``/health``, ``/api/status``); anything else that is not a
WebSocket upgrade gets a 404.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Protocol

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from rendezvous.relay.protocol import Envelope, decode_frame
from rendezvous.relay.sweeper import spawn_logged

# Close code sent to sessions dropped for missing heartbeats (private range).
CLOSE_EVICTED = 4408


class ConnectionHandler(Protocol):
    """Inbound side of the transport (implemented by ``Router``)."""

    def handle_connect(self, conn_id: str, address: str) -> Any: ...

    def handle_event(self, conn_id: str, event: str, data: Any = None) -> None: ...

    def handle_disconnect(self, conn_id: str) -> Any: ...


@dataclass
class _Connection:
    ws: ServerConnection
    address: str
    outbound: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer: asyncio.Task | None = None


class RelayTransport:
    """WebSocket server that moves envelopes between devices and the router.

    Parameters
    ----------
    host:
        Interface to bind on (default ``"0.0.0.0"``).
    port:
        TCP port to listen on; 0 picks a free port (see ``bound_port``).
    max_message_size:
        Largest accepted frame in bytes (file chunks travel in one frame).
    trust_forwarded_for:
        Take the peer address from the first ``X-Forwarded-For`` entry
        when present (the server usually sits behind a reverse proxy).
    status_fn:
        Returns the dict served at ``/api/status``.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 3030,
        *,
        max_message_size: int = 100_000_000,
        trust_forwarded_for: bool = True,
        status_fn: Callable[[], dict[str, Any]] | None = None,
    ):
        self.host = host
        self.port = port
        self.max_message_size = max_message_size
        self.trust_forwarded_for = trust_forwarded_for
        self.handler: ConnectionHandler | None = None
        self._status_fn = status_fn
        self._server: Server | None = None
        self._connections: dict[str, _Connection] = {}

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self.handler is None:
            raise RuntimeError("RelayTransport.handler must be set before start()")
        self._server = await serve(
            self._handle_connection,
            self.host,
            self.port,
            max_size=self.max_message_size,
            process_request=self._process_request,
        )
        logger.info("[Relay/Transport] listening on {}:{}", self.host, self.bound_port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("[Relay/Transport] stopped")

    @property
    def bound_port(self) -> int:
        """Actual listening port (differs from ``port`` when it was 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self.port

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # -- outbound (Outbox) ---------------------------------------------------

    def send(self, conn_id: str, envelope: Envelope) -> bool:
        """Queue *envelope* for *conn_id*.  ``False`` if it is not connected."""
        conn = self._connections.get(conn_id)
        if conn is None:
            return False
        conn.outbound.put_nowait(envelope)
        return True

    def close(self, conn_id: str) -> None:
        """Close a connection in the background (used after eviction)."""
        conn = self._connections.get(conn_id)
        if conn is None:
            return
        spawn_logged(
            conn.ws.close(CLOSE_EVICTED, "heartbeat timeout"),
            name=f"close-{conn_id[:8]}",
        )

    async def _write_loop(self, conn_id: str, conn: _Connection) -> None:
        while True:
            env: Envelope = await conn.outbound.get()
            try:
                frame = env.encode()
            except (TypeError, ValueError) as exc:
                logger.error(
                    "[Relay/Transport] cannot encode {} for {}: {}", env.event, conn_id, exc,
                )
                continue
            try:
                await conn.ws.send(frame)
            except ConnectionClosed:
                logger.debug("[Relay/Transport] {} closed, dropping outbound queue", conn_id)
                return

    # -- inbound -------------------------------------------------------------

    def peer_address(self, ws: ServerConnection) -> str:
        """Best guess at the device's address (proxy-aware)."""
        if self.trust_forwarded_for and ws.request is not None:
            forwarded = ws.request.headers.get("X-Forwarded-For", "")
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        remote = ws.remote_address
        if remote:
            return str(remote[0])
        return ""

    async def _handle_connection(self, ws: ServerConnection) -> None:
        handler = self.handler
        assert handler is not None
        conn_id = uuid.uuid4().hex
        conn = _Connection(ws=ws, address=self.peer_address(ws))
        self._connections[conn_id] = conn
        conn.writer = spawn_logged(
            self._write_loop(conn_id, conn), name=f"writer-{conn_id[:8]}",
        )
        logger.info("[Relay/Transport] device connected: {} from {}", conn_id, conn.address)
        try:
            handler.handle_connect(conn_id, conn.address)
            async for frame in ws:
                try:
                    env = decode_frame(frame)
                    if env is not None:
                        handler.handle_event(conn_id, env.event, env.data)
                except Exception as exc:
                    logger.error(
                        "[Relay/Transport] frame from {} dropped: {!r}", conn_id, exc,
                    )
        except ConnectionClosed as exc:
            logger.debug("[Relay/Transport] {} closed: {}", conn_id, exc)
        finally:
            self._connections.pop(conn_id, None)
            if conn.writer is not None:
                conn.writer.cancel()
            handler.handle_disconnect(conn_id)

    # -- plain HTTP ----------------------------------------------------------

    def _process_request(self, ws: ServerConnection, request: Request) -> Response | None:
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None
        path = request.path.split("?", 1)[0]
        if path == "/health":
            return _json_response(HTTPStatus.OK, {"status": "ok", "time": time.time()})
        if path == "/api/status":
            status = self._status_fn() if self._status_fn is not None else {}
            return _json_response(HTTPStatus.OK, status)
        return _json_response(HTTPStatus.NOT_FOUND, {"error": "not found"})


def _json_response(status: HTTPStatus, body: dict[str, Any]) -> Response:
    payload = json.dumps(body).encode("utf-8")
    headers = Headers([
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(payload))),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, payload)

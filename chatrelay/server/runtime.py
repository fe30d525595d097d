from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from chatrelay.core import proto
from chatrelay.core.conversations import ConversationRegistry
from chatrelay.core.fanout import FanoutDispatcher
from chatrelay.core.identity import IdentityDirectory
from chatrelay.core.messages import DEFAULT_HISTORY_LIMIT, MessageLog
from chatrelay.core.presence import PresenceRegistry
from chatrelay.core.session import SessionProtocol
from chatrelay.core.store import Store

log = logging.getLogger("chatrelay.server.runtime")

HEALTH_PATH = "/health"


@dataclass(slots=True)
class Connection:
    websocket: ServerConnection
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = proto.encode_frame(frame)
        async with self.send_lock:
            await self.websocket.send(text)


class ServerRuntime:
    """WebSocket front end wiring transport connections to the session protocol."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.server_id = config.get("server_id") or f"relay-{os.uname().nodename}"
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:7001"))
        self.db_path = config.get("db_path", "chatrelay.db")
        self.history_limit = int(config.get("history_limit", DEFAULT_HISTORY_LIMIT))

        self._connections: Dict[str, Connection] = {}
        self._ws_server: Optional[Server] = None

        self.store = Store(self.db_path)
        self.presence = PresenceRegistry()
        self.dispatcher = FanoutDispatcher(
            self.presence,
            self._send_to,
            lambda: list(self._connections),
            server_id=self.server_id,
        )
        self.session = SessionProtocol(
            IdentityDirectory(self.store),
            ConversationRegistry(self.store),
            MessageLog(self.store),
            self.presence,
            self.dispatcher,
            self._send_to,
            server_id=self.server_id,
            history_limit=self.history_limit,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        # StoreUnavailable propagates: no degraded mode without storage
        await self.store.open()
        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            process_request=self._process_request,
        )
        log.info("chatrelay %s listening on ws://%s:%d", self.server_id, self.listen_host, self.bound_port)

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        self._connections.clear()
        await self.store.close()

    @property
    def bound_port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.listen_port

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.path == HEALTH_PATH:
            return connection.respond(HTTPStatus.OK, "OK\n")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket)
        self._connections[conn.connection_id] = conn
        self.session.open(conn.connection_id)
        log.debug("Accepted connection %s from %s", conn.connection_id, self._fmt_remote(websocket))
        try:
            async for raw in websocket:
                await self.session.handle_raw(conn.connection_id, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._connections.pop(conn.connection_id, None)
            await self.session.close(conn.connection_id)

    async def _send_to(self, connection_id: str, frame: Dict[str, Any]) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            log.debug("Dropped %s for gone connection %s", frame.get("type"), connection_id)
            return
        await conn.send(frame)

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime", "Connection"]

"""
Gateway Server — the agent's network surface.

WebSocket + HTTP server built on aiohttp. The gateway owns connection
lifecycle and authentication; every request is delegated to RequestRouter.

Routes:
  GET  /ws      — WebSocket (JSON-RPC 2.0 requests, authenticated)
  GET  /health  — Health check (unauthenticated)

Authentication happens once, at upgrade time. The token is taken from an
``Authorization: Bearer <token>`` header or a ``token`` query parameter and
compared in constant time. A connection that fails the check is accepted and
immediately closed with 1008 (policy violation). With no token configured,
every connection is accepted and a warning is logged.

Each inbound frame is handled in its own task, so a slow agent turn never
blocks other requests on the same socket; responses carry the request id and
may arrive out of order.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from aiohttp import WSCloseCode, WSMsgType, web

from openclaw.config import GatewayConfig
from openclaw.rpc import INVALID_REQUEST, PARSE_ERROR, RequestRouter, make_error

logger = structlog.get_logger(__name__)


@dataclass
class ClientConnection:
    """Per-WebSocket connection state."""

    conn_id: str
    ws: web.WebSocketResponse
    remote: str = ""
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    connected_at: float = field(default_factory=time.time)
    requests: int = 0


class GatewayServer:
    """WebSocket + HTTP gateway server.

    Lifecycle: create → start() → (serve requests) → stop()
    """

    def __init__(self, config: GatewayConfig, router: RequestRouter) -> None:
        self._config = config
        self._router = router
        self._auth_token = config.auth_token or None
        self._max_connections = max(1, config.max_connections)

        # Authenticated connections only
        self._connections: dict[str, ClientConnection] = {}
        # In-flight request tasks (cancelled on shutdown)
        self._request_tasks: set[asyncio.Task[None]] = set()

        # aiohttp internals
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._started_at: float = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        """Create the aiohttp application with the gateway's routes."""
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/health", self._handle_health)
        self._started_at = self._started_at or time.monotonic()
        return app

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Start the HTTP/WebSocket server."""
        host = host or self._config.host
        port = self._config.port if port is None else port

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        self._started_at = time.monotonic()

        logger.info(
            "gateway.started",
            host=host,
            port=port,
            auth_enabled=self._auth_token is not None,
        )

    async def stop(self) -> None:
        """Graceful shutdown: cancel in-flight requests, close connections, stop server."""
        for task in list(self._request_tasks):
            task.cancel()
        if self._request_tasks:
            await asyncio.gather(*self._request_tasks, return_exceptions=True)
        self._request_tasks.clear()

        close_tasks = [
            self._close_connection(conn, WSCloseCode.GOING_AWAY, "server_shutdown")
            for conn in list(self._connections.values())
        ]
        if close_tasks:
            await asyncio.gather(*close_tasks, return_exceptions=True)

        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None

        logger.info("gateway.stopped")

    @property
    def active_connection_count(self) -> int:
        """Number of authenticated, open WebSocket connections."""
        return len(self._connections)

    @property
    def auth_enabled(self) -> bool:
        return self._auth_token is not None

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check — unauthenticated, for monitoring."""
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return web.json_response({
            "status": "ok",
            "uptime": round(uptime, 1),
            "connections": len(self._connections),
        })

    # ------------------------------------------------------------------
    # WebSocket handler
    # ------------------------------------------------------------------

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        """Handle a WebSocket connection lifecycle."""
        ws = web.WebSocketResponse(
            heartbeat=self._config.heartbeat_seconds,
            max_msg_size=self._config.max_message_bytes,
        )
        await ws.prepare(request)
        remote = request.remote or ""

        if not self._is_authorized(request):
            logger.warning("gateway.unauthorized", remote=remote)
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"Unauthorized")
            return ws

        if len(self._connections) >= self._max_connections:
            logger.warning(
                "gateway.connection_rejected",
                active=len(self._connections),
                max=self._max_connections,
            )
            await ws.send_json(make_error(None, INVALID_REQUEST, "max connections reached"))
            await ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"Too many connections")
            return ws

        conn = ClientConnection(conn_id=uuid.uuid4().hex[:12], ws=ws, remote=remote)
        self._connections[conn.conn_id] = conn
        if self._auth_token is None:
            logger.warning("gateway.auth_disabled_connection_accepted", conn_id=conn.conn_id, remote=remote)
        logger.info("gateway.ws_connected", conn_id=conn.conn_id, remote=remote)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    conn.requests += 1
                    task = asyncio.create_task(
                        self._handle_frame(conn, msg.data),
                        name=f"gateway-request-{conn.conn_id}",
                    )
                    self._request_tasks.add(task)
                    task.add_done_callback(self._request_tasks.discard)
                elif msg.type == WSMsgType.BINARY:
                    await self._send(conn, make_error(
                        None, INVALID_REQUEST, "binary frames are not supported",
                    ))
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "gateway.ws_protocol_error",
                        conn_id=conn.conn_id,
                        error=str(ws.exception()),
                    )
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "gateway.ws_error",
                conn_id=conn.conn_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            self._connections.pop(conn.conn_id, None)
            if not ws.closed:
                await ws.close()
            logger.info(
                "gateway.ws_disconnected",
                conn_id=conn.conn_id,
                requests=conn.requests,
            )

        return ws

    async def _handle_frame(self, conn: ClientConnection, raw: str) -> None:
        """Parse one text frame, dispatch it, and send the response."""
        try:
            data = json.loads(raw)
        except ValueError:
            await self._send(conn, make_error(None, PARSE_ERROR, "invalid JSON"))
            return

        if not isinstance(data, dict):
            await self._send(conn, make_error(None, INVALID_REQUEST, "expected JSON object"))
            return

        req_id = data.get("id")
        method = data.get("method")
        if not isinstance(method, str) or not method:
            await self._send(conn, make_error(req_id, INVALID_REQUEST, "missing method"))
            return

        params = data.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            await self._send(conn, make_error(req_id, INVALID_REQUEST, "params must be an object"))
            return

        logger.debug("gateway.request", conn_id=conn.conn_id, method=method, req_id=req_id)
        response = await self._router.dispatch(method, params, req_id)
        await self._send(conn, response)

    async def _send(self, conn: ClientConnection, payload: dict[str, Any]) -> None:
        """Serialize sends on one socket; a vanished peer is logged, not raised."""
        async with conn.send_lock:
            if conn.ws.closed:
                logger.debug("gateway.send_skipped_closed", conn_id=conn.conn_id)
                return
            try:
                await conn.ws.send_json(payload)
            except (ConnectionError, RuntimeError) as e:
                logger.debug("gateway.send_failed", conn_id=conn.conn_id, error=str(e))

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_token(request: web.Request) -> Optional[str]:
        """Bearer header first, then the ``token`` query parameter."""
        header = request.headers.get("Authorization", "")
        if header[:7].lower() == "bearer ":
            # compared byte for byte; surrounding whitespace is part of the token
            token = header[7:]
            if token:
                return token
        token = request.query.get("token", "")
        return token or None

    def _is_authorized(self, request: web.Request) -> bool:
        if self._auth_token is None:
            return True
        provided = self._extract_token(request)
        if provided is None:
            return False
        return hmac.compare_digest(
            provided.encode("utf-8"),
            self._auth_token.encode("utf-8"),
        )

    async def _close_connection(
        self,
        conn: ClientConnection,
        code: int,
        reason: str,
    ) -> None:
        """Close a WebSocket connection gracefully."""
        try:
            if not conn.ws.closed:
                await conn.ws.close(code=code, message=reason.encode("utf-8"))
        except Exception as e:
            logger.debug(
                "gateway.close_failed",
                conn_id=conn.conn_id,
                error=str(e),
            )

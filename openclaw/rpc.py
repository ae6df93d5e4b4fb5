"""
Request Router — Transport-Independent JSON-RPC Dispatch.

The gateway parses frames and hands (method, params, id) to this router,
which looks up a handler, runs it, and wraps the outcome in a JSON-RPC 2.0
envelope. Handlers are plain callables (sync or async) taking the params
dict and returning the result dict.

Error mapping:
  - unknown method                          → METHOD_NOT_FOUND
  - InvalidParamsError / unknown session    → INVALID_PARAMS
  - anything else a handler raises          → INTERNAL_ERROR "internal error"

Turns for the same session are serialized with per-session locks; turns for
different sessions run concurrently.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

import structlog

from openclaw.errors import InvalidParamsError, MethodNotFoundError, SessionNotFoundError
from openclaw.memory.session_store import SessionStore

if TYPE_CHECKING:
    from openclaw.harness.loop import AgentLoop

logger = structlog.get_logger(__name__)

Handler = Callable[[dict[str, Any]], Any]


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 helpers
# ---------------------------------------------------------------------------


def make_response(req_id: str | int | None, result: Any) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 success response."""
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(
    req_id: str | int | None,
    code: int,
    message: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 error response."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": req_id, "error": error}


# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RequestRouter:
    """Name → handler table with envelope-building dispatch."""

    def __init__(self, max_session_locks: int = 512) -> None:
        self._handlers: dict[str, Handler] = {}
        # Bounded to prevent unbounded growth over long runtimes.
        self._session_locks: OrderedDict[str, asyncio.Lock] = OrderedDict()
        self._max_session_locks = max(1, max_session_locks)
        # Requests holding or waiting on each lock
        self._lock_users: dict[str, int] = {}

    def register(self, method: str, handler: Handler) -> None:
        if method in self._handlers:
            logger.warning("rpc.handler_replaced", method=method)
        self._handlers[method] = handler

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    async def route(self, method: str, params: dict[str, Any]) -> Any:
        """Call the handler for method and return its result.

        Raises:
            MethodNotFoundError: no handler is registered for method.
            Whatever the handler raises.
        """
        handler = self._handlers.get(method)
        if handler is None:
            raise MethodNotFoundError(method)
        result = handler(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def dispatch(
        self,
        method: str,
        params: dict[str, Any],
        req_id: str | int | None,
    ) -> dict[str, Any]:
        """Route a request and return the JSON-RPC 2.0 response envelope."""
        try:
            result = await self.route(method, params)
        except MethodNotFoundError as e:
            logger.warning("rpc.method_not_found", method=method)
            return make_error(req_id, METHOD_NOT_FOUND, str(e))
        except SessionNotFoundError as e:
            return make_error(req_id, INVALID_PARAMS, f"session not found: {e.session_id}")
        except InvalidParamsError as e:
            return make_error(req_id, INVALID_PARAMS, str(e))
        except Exception as e:
            logger.error("rpc.dispatch_error", method=method, error=str(e), exc_info=True)
            return make_error(req_id, INTERNAL_ERROR, "internal error")
        return make_response(req_id, result)

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Return the lock that serializes turns for session_id."""
        if session_id in self._session_locks:
            self._session_locks.move_to_end(session_id)
            return self._session_locks[session_id]
        lock = asyncio.Lock()
        self._session_locks[session_id] = lock
        # Evict the oldest lock nobody holds or waits on if over capacity
        while len(self._session_locks) > self._max_session_locks:
            evicted = False
            for key in list(self._session_locks):
                if key == session_id:
                    continue
                if not self._session_locks[key].locked() and not self._lock_users.get(key):
                    del self._session_locks[key]
                    evicted = True
                    break
            if not evicted:
                break  # All locks held; allow temporary overshoot
        return lock

    @asynccontextmanager
    async def serialized(self, session_id: str) -> AsyncIterator[None]:
        """Hold session_id's lock for the duration of the block.

        The lock stays registered while anyone holds or waits on it, so a
        waiter that has not woken up yet still shares it with later requests.
        """
        lock = self.session_lock(session_id)
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[session_id] - 1
            if remaining:
                self._lock_users[session_id] = remaining
            else:
                del self._lock_users[session_id]


# ---------------------------------------------------------------------------
# Parameter helpers
# ---------------------------------------------------------------------------


def _require_str(params: dict[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParamsError(f"missing or invalid '{key}'")
    return value


def _optional_str(params: dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = params.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise InvalidParamsError(f"'{key}' must be a string")
    return value.strip() or default


def _optional_positive_int(params: dict[str, Any], key: str) -> Optional[int]:
    value = params.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidParamsError(f"'{key}' must be a positive integer")
    return value


# ---------------------------------------------------------------------------
# Default method table
# ---------------------------------------------------------------------------


def register_default_methods(
    router: RequestRouter,
    agent_loop: AgentLoop,
    session_store: SessionStore,
) -> None:
    """Register the gateway's RPC methods on router."""

    def _existing_session(params: dict[str, Any]) -> str:
        session_id = _require_str(params, "sessionId")
        if session_store.get_session(session_id) is None:
            raise InvalidParamsError(f"session not found: {session_id}")
        return session_id

    def health(params: dict[str, Any]) -> dict[str, Any]:
        return {"status": "ok"}

    def create_session(params: dict[str, Any]) -> dict[str, Any]:
        channel = _optional_str(params, "channel", "gateway")
        user_id = _optional_str(params, "userId", "anonymous")
        session = session_store.create_session(channel, user_id)
        return {"sessionId": session.id}

    def list_sessions(params: dict[str, Any]) -> dict[str, Any]:
        limit = _optional_positive_int(params, "limit") or 50
        return {"sessions": session_store.list_sessions(limit=limit)}

    async def send(params: dict[str, Any]) -> dict[str, Any]:
        session_id = _existing_session(params)
        message = _require_str(params, "message")
        async with router.serialized(session_id):
            response = await agent_loop.execute(session_id, message)
        return {"response": response}

    async def ralph(params: dict[str, Any]) -> dict[str, Any]:
        session_id = _existing_session(params)
        message = _require_str(params, "message")
        sentinel = _optional_str(params, "sentinel")
        max_iterations = _optional_positive_int(params, "maxIterations")
        async with router.serialized(session_id):
            response = await agent_loop.run_until_complete(
                session_id,
                message,
                sentinel=sentinel,
                max_iterations=max_iterations,
            )
        return {"response": response}

    router.register("gateway.health", health)
    router.register("session.create", create_session)
    router.register("session.list", list_sessions)
    router.register("agent.send", send)
    router.register("agent.ralph", ralph)

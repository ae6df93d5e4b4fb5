"""
Tool Executor — dispatches the model's tool requests.

When the model asks for tools, this module runs them. It is the boundary
between "deciding to do something" and "doing it", and it guarantees that
nothing on the far side of that boundary can break the turn:

1. UNKNOWN TOOLS: answered with an error result naming the tool
2. BAD INPUT: checked against the tool's JSON Schema before execution
3. TIMEOUTS: every invocation is bounded, independently of its siblings
4. EXCEPTIONS: captured and fed back to the model as error results
5. ORDER: results come back in request order, whatever order they finish in

A single request runs inline. Several requests fan out concurrently, bounded
by a semaphore so a turn with many tool calls cannot spawn unbounded work.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import structlog

from openclaw.tools.registry import Tool, ToolRegistry, ToolResult

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolExecutionResult:
    """
    The result of executing a tool call — success or failure.

    Carries the invocation id so the agent loop can correlate it with the
    tool_use block that asked for it.
    """

    tool_use_id: str
    tool_name: str
    result: ToolResult
    execution_time: float = 0.0

    @property
    def success(self) -> bool:
        return not self.result.is_error

    @property
    def output(self) -> str:
        return self.result.output


# JSON Schema type → Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def _validate_tool_input(
    schema: dict[str, Any],
    tool_input: dict[str, Any],
) -> Optional[str]:
    """
    Lightweight JSON Schema validation for tool inputs.

    Checks required fields and basic type constraints. Returns an error
    message string on failure, or None if the input is valid.
    """
    if not isinstance(schema, dict):
        return None
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not prop_schema or not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        if not expected_type:
            continue
        py_types = _JSON_TYPE_MAP.get(expected_type)
        if py_types is None:
            continue
        # In Python bool is a subclass of int, but JSON booleans are distinct
        if isinstance(value, bool) and expected_type in ("integer", "number"):
            return f"Parameter '{name}' expected {expected_type}, got boolean"
        if not isinstance(value, py_types):
            return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"

    return None


class ToolExecutor:
    """
    Executes tool calls with validation, timeouts, and observability.

    The executor never raises for a tool-level problem: every outcome,
    including an unknown tool name, becomes a ToolExecutionResult.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 30.0,
        max_output_length: int = 25000,
        max_concurrent: int = 8,
    ):
        self._registry = registry
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length
        self._max_concurrent = max(1, int(max_concurrent))
        self._fanout_slot = asyncio.Semaphore(self._max_concurrent)
        self._sync_slot = asyncio.BoundedSemaphore(self._max_concurrent)

        # Execution statistics
        self._total_executions = 0
        self._total_failures = 0

        logger.info(
            "tool_executor.initialized",
            timeout=default_timeout,
            max_output=max_output_length,
            max_concurrent=self._max_concurrent,
        )

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def run(self, calls: Sequence[ToolCall]) -> list[ToolExecutionResult]:
        """
        Execute a batch of tool calls and return results in request order.

        One call runs inline in the caller's flow. Several calls run
        concurrently, at most max_concurrent at a time.
        """
        if not calls:
            return []
        if len(calls) == 1:
            call = calls[0]
            return [await self.execute(call.id, call.name, call.input)]

        async def _bounded(call: ToolCall) -> ToolExecutionResult:
            async with self._fanout_slot:
                return await self.execute(call.id, call.name, call.input)

        logger.info("tool_executor.fan_out", calls=len(calls))
        # gather preserves argument order regardless of completion order
        results = await asyncio.gather(*(_bounded(c) for c in calls))
        return list(results)

    async def execute(
        self,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> ToolExecutionResult:
        """
        Execute a single tool call from the model.

        Args:
            tool_use_id: The id from the tool_use block (for correlation)
            tool_name: Which tool to execute
            tool_input: The parameters the model provided

        Returns:
            ToolExecutionResult with the tool's ToolResult, or an error result
        """
        start_time = time.monotonic()
        self._total_executions += 1

        logger.info(
            "tool_executor.executing",
            tool_name=tool_name,
            tool_use_id=tool_use_id,
        )

        tool = self._registry.get(tool_name)
        if tool is None:
            logger.warning("tool_executor.unknown_tool", tool_name=tool_name)
            return self._failure(tool_use_id, tool_name, f"Unknown tool: {tool_name}")

        if not isinstance(tool_input, dict):
            return self._failure(
                tool_use_id, tool_name, f"Tool '{tool_name}' input must be an object"
            )

        validation_error = _validate_tool_input(tool.input_schema, tool_input)
        if validation_error:
            return self._failure(tool_use_id, tool_name, validation_error)

        timeout = getattr(tool, "timeout", None)
        if timeout is None:
            timeout = self._default_timeout

        try:
            outcome = await self._invoke(tool, tool_input, timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_executor.timeout", tool_name=tool_name, timeout=timeout)
            return self._failure(
                tool_use_id,
                tool_name,
                f"Tool '{tool_name}' timed out after {timeout}s",
                start_time,
            )
        except Exception as e:
            error_detail = f"{type(e).__name__}: {e}"
            logger.error(
                "tool_executor.error",
                tool_name=tool_name,
                error=error_detail,
                traceback=traceback.format_exc(),
            )
            return self._failure(tool_use_id, tool_name, error_detail, start_time)

        if not isinstance(outcome, ToolResult):
            outcome = ToolResult.success("" if outcome is None else str(outcome))
        outcome = self._truncate(outcome)

        elapsed = time.monotonic() - start_time
        if outcome.is_error:
            self._total_failures += 1
        logger.info(
            "tool_executor.finished",
            tool_name=tool_name,
            is_error=outcome.is_error,
            elapsed=round(elapsed, 2),
            result_length=len(outcome.output),
        )
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            result=outcome,
            execution_time=elapsed,
        )

    async def _invoke(self, tool: Tool, tool_input: dict[str, Any], timeout: float) -> Any:
        if inspect.iscoroutinefunction(tool.execute):
            return await asyncio.wait_for(tool.execute(tool_input), timeout=timeout)
        # The slot wait and the run share one deadline
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        outcome = await self._execute_sync(tool.execute, tool_input, deadline)
        if inspect.isawaitable(outcome):
            outcome = await asyncio.wait_for(outcome, timeout=max(0.0, deadline - loop.time()))
        return outcome

    async def _execute_sync(
        self,
        func: Callable[[dict[str, Any]], Any],
        tool_input: dict[str, Any],
        deadline: float,
    ) -> Any:
        """
        Run a synchronous tool on a dedicated daemon thread.

        The number of live tool threads is capped by _sync_slot; a thread that
        outlives its timeout gives its slot back so a stuck tool cannot starve
        the pool. Time spent waiting for a slot counts against the deadline
        (event-loop time).
        """
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                self._sync_slot.acquire(), timeout=max(0.0, deadline - loop.time())
            )
        except asyncio.TimeoutError as exc:
            raise RuntimeError(
                "Sync tool executor is saturated with long-running tasks."
            ) from exc

        future: asyncio.Future[Any] = loop.create_future()
        state = {"released": False, "abandoned": False}

        def _release() -> None:
            if not state["released"]:
                state["released"] = True
                self._sync_slot.release()

        def _settle(value: Any, error: Optional[BaseException]) -> None:
            _release()
            if state["abandoned"] or future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(value)

        def _invoke() -> None:
            value: Any = None
            error: Optional[BaseException] = None
            try:
                value = func(tool_input)
            except Exception as exc:
                error = exc
            try:
                loop.call_soon_threadsafe(_settle, value, error)
            except RuntimeError:  # pragma: no cover - loop closed during shutdown
                pass

        try:
            threading.Thread(target=_invoke, daemon=True, name="openclaw-tool").start()
        except Exception:
            _release()
            raise

        try:
            return await asyncio.wait_for(
                asyncio.shield(future), timeout=max(0.0, deadline - loop.time())
            )
        except asyncio.TimeoutError:
            state["abandoned"] = True
            _release()
            raise

    def _truncate(self, result: ToolResult) -> ToolResult:
        if len(result.output) <= self._max_output_length:
            return result
        keep = self._max_output_length - 100
        return ToolResult(
            output=(
                result.output[:keep]
                + f"\n\n[Output truncated — {len(result.output)} chars total, "
                f"showing first {keep}]"
            ),
            is_error=result.is_error,
            exit_code=result.exit_code,
        )

    def _failure(
        self,
        tool_use_id: str,
        tool_name: str,
        message: str,
        start_time: Optional[float] = None,
    ) -> ToolExecutionResult:
        self._total_failures += 1
        elapsed = time.monotonic() - start_time if start_time is not None else 0.0
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            result=ToolResult.error(message),
            execution_time=elapsed,
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._total_executions,
            "failures": self._total_failures,
            "success_rate": (
                (self._total_executions - self._total_failures)
                / max(1, self._total_executions)
            ),
        }

"""
The Agent Loop — one user turn, driven to a final answer.

The pattern is simple:

    while iterations remain:
        response = llm.complete(system + history, tools)
        if response has no tool calls:
            return response.text
        history.append(response's tool-use blocks)
        history.append(run(tool calls))

Everything the loop produces goes through the session store, so the durable
log sees the turn exactly as the model did: user message, tool-use requests,
tool results in request order, final assistant text.

The loop never raises to its caller once the turn has started. Any failure
becomes an "Error: ..." assistant message, which keeps the log well-formed
and gives the user something to read.

On top of the single-turn loop sits run_until_complete() ("ralph mode"): it
keeps re-prompting the agent to continue until the reply contains a
completion marker or the iteration cap is reached.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Optional

import structlog

from openclaw.config import AgentConfig
from openclaw.errors import SessionNotFoundError
from openclaw.harness.context import ContextManager
from openclaw.harness.prompt import SystemPromptBuilder
from openclaw.memory.messages import Message, Session
from openclaw.memory.session_store import SessionStore
from openclaw.tools.executor import ToolCall, ToolExecutor

if TYPE_CHECKING:
    from openclaw.api.claude import LLMClient

logger = structlog.get_logger(__name__)

MAX_STEPS_MESSAGE = (
    "I've reached the maximum number of tool use steps. Here's what I have so far "
    "— please try rephrasing your request if you need more."
)


def continuation_prompt(sentinel: str) -> str:
    return (
        "Continue working on the task from where you left off. "
        f"When the task is fully complete, output {sentinel} in your reply."
    )


class AgentLoop:
    """
    Drives a session through the tool-use loop.

    Collaborators are injected; the loop owns no state besides telemetry.
    """

    def __init__(
        self,
        session_store: SessionStore,
        llm: "LLMClient",
        executor: ToolExecutor,
        context_manager: ContextManager,
        prompt_builder: SystemPromptBuilder,
        config: AgentConfig,
        model: Optional[str] = None,
    ):
        self._store = session_store
        self._llm = llm
        self._executor = executor
        self._context = context_manager
        self._prompt = prompt_builder
        self._config = config
        self._model = model
        self._max_iterations = config.max_tool_iterations

        # Loop telemetry
        self._total_runs = 0
        self._total_iterations = 0
        self._total_tool_calls = 0
        self._total_errors = 0

        logger.info("agent_loop.initialized", max_iterations=self._max_iterations)

    async def execute(self, session_id: str, user_text: str) -> str:
        """
        Run one user turn and return the final reply text.

        Raises:
            SessionNotFoundError: before anything is appended, when the
                session id is unknown.
        """
        if self._store.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)

        self._total_runs += 1
        start_time = time.monotonic()
        self._store.append_message(session_id, Message.user(user_text))

        try:
            reply = await self._run_turn(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._total_errors += 1
            logger.error(
                "agent_loop.failed",
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
            reply = f"Error: {e}"

        self._store.append_message(session_id, Message.assistant(reply))
        logger.info(
            "agent_loop.turn_complete",
            session_id=session_id,
            elapsed_seconds=round(time.monotonic() - start_time, 2),
            response_length=len(reply),
        )
        return reply

    async def run_until_complete(
        self,
        session_id: str,
        prompt: str,
        sentinel: Optional[str] = None,
        max_iterations: Optional[int] = None,
    ) -> str:
        """
        Repeat turns until a reply contains the sentinel.

        The first turn sends the prompt; every later turn sends the fixed
        continuation instruction. max_iterations counts the first turn.
        Returns the last reply whether or not the sentinel appeared.
        """
        marker = sentinel or self._config.ralph_sentinel
        limit = max_iterations if max_iterations is not None else self._config.ralph_max_iterations
        limit = max(1, int(limit))

        reply = await self.execute(session_id, prompt)
        iteration = 1
        while marker not in reply and iteration < limit:
            iteration += 1
            logger.info(
                "agent_loop.ralph_continue",
                session_id=session_id,
                iteration=iteration,
                max_iterations=limit,
            )
            reply = await self.execute(session_id, continuation_prompt(marker))

        logger.info(
            "agent_loop.ralph_finished",
            session_id=session_id,
            iterations=iteration,
            completed=marker in reply,
        )
        return reply

    async def _run_turn(self, session_id: str) -> str:
        tools = self._executor.registry.get_api_tools() or None

        for iteration in range(1, self._max_iterations + 1):
            self._total_iterations += 1
            session = self._require_session(session_id)

            context = self._context.build_context(self._prompt.build(), session.messages)
            response = await self._llm.complete(context, model=self._model, tools=tools)

            blocks = response.tool_use_blocks
            if not response.has_tool_use or not blocks:
                return response.text

            logger.info(
                "agent_loop.tool_use",
                session_id=session_id,
                iteration=iteration,
                tools=[b.name for b in blocks],
            )
            self._store.append_message(
                session_id,
                Message.assistant_tool_use(response.content_blocks_for_replay()),
            )

            calls = [ToolCall(id=b.id or "", name=b.name or "", input=b.input) for b in blocks]
            self._total_tool_calls += len(calls)
            results = await self._executor.run(calls)
            for result in results:
                self._store.append_message(
                    session_id,
                    Message.tool_result(
                        result.tool_use_id,
                        result.output,
                        is_error=result.result.is_error,
                    ),
                )

        logger.warning(
            "agent_loop.max_iterations",
            session_id=session_id,
            max=self._max_iterations,
        )
        return MAX_STEPS_MESSAGE

    def _require_session(self, session_id: str) -> Session:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
            "total_errors": self._total_errors,
            "avg_iterations_per_run": (
                self._total_iterations / max(1, self._total_runs)
            ),
        }

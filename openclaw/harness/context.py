"""
Context Manager — keeps each model call inside the token budget.

Sessions grow without bound; model context windows do not. Before every call
the agent loop asks this module for a context: the system prompt followed by
as much of the session history as fits, newest messages first.

Token counts are estimates: characters / chars_per_token, rounded up.

Two rules keep the truncated history valid for the Messages API:

- when anything was dropped, a short user notice leads the history so the
  model knows the conversation did not start there
- a tool_result never opens the history without the assistant_tool_use that
  requested it; such orphans are dropped along with their request
- every tool-use request is answered; an invocation whose result never made
  it into the log (the turn was cancelled or the process died mid-tool) gets
  an error result saying it was interrupted
"""

from __future__ import annotations

import json
import math
from typing import Any, Sequence

import structlog

from openclaw.config import AgentConfig
from openclaw.memory.messages import Message

logger = structlog.get_logger(__name__)

INTERRUPTED_TOOL_RESULT = "Tool call was interrupted before it returned a result."


class ContextManager:
    """Builds token-budgeted contexts from session history."""

    def __init__(self, config: AgentConfig):
        self._budget = config.context_token_budget
        self._chars_per_token = config.chars_per_token

        self._total_builds = 0
        self._total_truncations = 0

    @property
    def token_budget(self) -> int:
        return self._budget

    def estimate_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)

    def estimate_message_tokens(self, message: Message) -> int:
        """Structured blocks are measured on their JSON text."""
        if message.content_blocks is not None:
            blocks = json.dumps(message.content_blocks, ensure_ascii=False, default=str)
            return self.estimate_tokens(blocks) + self.estimate_tokens(message.content or "")
        return self.estimate_tokens(message.content or "")

    def build_context(self, system_prompt: str, history: Sequence[Message]) -> list[Message]:
        """
        Return [system, (notice), *kept_history] within the token budget.

        History is walked newest to oldest and kept while the running total
        fits; the first message that does not fit stops the walk.
        """
        self._total_builds += 1
        history = self.answer_dangling_tool_use(history)
        remaining = self._budget - self.estimate_tokens(system_prompt)

        kept: list[Message] = []
        used = 0
        for message in reversed(history):
            cost = self.estimate_message_tokens(message)
            if used + cost > remaining:
                break
            kept.append(message)
            used += cost
        kept.reverse()

        # Leading tool results whose request was cut off would dangle.
        while kept and kept[0].role == "tool_result":
            kept.pop(0)

        context = [Message.system(system_prompt)]
        omitted = len(history) - len(kept)
        if omitted > 0:
            self._total_truncations += 1
            logger.info(
                "context.truncated",
                omitted=omitted,
                kept=len(kept),
                budget=self._budget,
                used_tokens=used,
            )
            context.append(Message.user(self.omission_notice(omitted)))
        context.extend(kept)
        return context

    @staticmethod
    def answer_dangling_tool_use(history: Sequence[Message]) -> list[Message]:
        """
        Give every tool-use request a result.

        The API only accepts results that directly follow their request, so a
        request is answered by the run of tool_result messages right after it.
        Ids missing from that run get an error result appended to the run.
        The session log itself is left untouched.
        """
        repaired: list[Message] = []
        index = 0
        while index < len(history):
            message = history[index]
            repaired.append(message)
            index += 1
            if message.role != "assistant_tool_use":
                continue

            answered: set[str] = set()
            while index < len(history) and history[index].role == "tool_result":
                answered.add(history[index].tool_use_id or "")
                repaired.append(history[index])
                index += 1

            missing = [tid for tid in message.tool_use_ids if tid not in answered]
            if missing:
                logger.warning("context.dangling_tool_use", tool_use_ids=missing)
            for tool_use_id in missing:
                repaired.append(
                    Message.tool_result(tool_use_id, INTERRUPTED_TOOL_RESULT, is_error=True)
                )
        return repaired

    @staticmethod
    def omission_notice(omitted: int) -> str:
        noun = "message" if omitted == 1 else "messages"
        return (
            f"[{omitted} earlier {noun} omitted to fit the context window; "
            "the conversation continues below.]"
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "builds": self._total_builds,
            "truncations": self._total_truncations,
            "token_budget": self._budget,
        }

"""
Claude API Client — the agent's interface to the model.

This module wraps the Anthropic SDK. It owns three jobs:

1. Translating the session's internal message log into the Messages API wire
   shape (system prompt hoisted, tool results grouped per turn, tool-use
   turns replayed verbatim).
2. Calling the API with bounded, classified retries (harness/retry.py).
3. Normalizing the reply into an LLMResponse: a stop reason plus an ordered
   list of text and tool-use content blocks.

The client keeps no conversation state. It receives context and returns a reply.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import anthropic
import structlog

from openclaw.config import ClaudeConfig
from openclaw.errors import LLMProtocolError
from openclaw.harness.retry import RetryConfig, with_retries
from openclaw.memory.messages import Message

logger = structlog.get_logger(__name__)


class LLMClientInitError(RuntimeError):
    """Raised when the API client cannot be constructed."""


@dataclass(frozen=True)
class ContentBlock:
    """One block of a model reply — either text or a tool-use request."""

    type: str
    text: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text_block(cls, text: str) -> "ContentBlock":
        return cls(type="text", text=text)

    @classmethod
    def tool_use(cls, tool_use_id: str, name: str, tool_input: dict[str, Any]) -> "ContentBlock":
        return cls(type="tool_use", id=tool_use_id, name=name, input=dict(tool_input))

    def to_dict(self) -> dict[str, Any]:
        """The block in Messages API shape, used for storage and replay."""
        if self.type == "tool_use":
            return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}
        return {"type": "text", "text": self.text or ""}


@dataclass(frozen=True)
class LLMResponse:
    """A normalized model reply."""

    stop_reason: str
    content: list[ContentBlock] = field(default_factory=list)

    @property
    def tool_use_blocks(self) -> list[ContentBlock]:
        return [b for b in self.content if b.type == "tool_use"]

    @property
    def has_tool_use(self) -> bool:
        return self.stop_reason == "tool_use" or bool(self.tool_use_blocks)

    @property
    def text(self) -> str:
        """All text blocks joined by newlines, ignoring tool calls."""
        return "\n".join(b.text for b in self.content if b.type == "text" and b.text)

    def content_blocks_for_replay(self) -> list[dict[str, Any]]:
        return [b.to_dict() for b in self.content]


def to_wire_messages(
    messages: Sequence[Message],
) -> tuple[Optional[str], list[dict[str, Any]]]:
    """
    Convert internal messages to (system, messages) for the Messages API.

    - the system message becomes the top-level system field
    - a run of consecutive tool_result messages becomes ONE user turn with one
      tool_result block per message, because the API expects all results for
      an assistant turn together
    - assistant_tool_use messages replay their stored content blocks verbatim
      so the API sees the same tool-use ids it issued
    """
    system: Optional[str] = None
    wire: list[dict[str, Any]] = []
    open_results: Optional[list[dict[str, Any]]] = None

    for msg in messages:
        if msg.role == "system":
            system = msg.content or ""
            open_results = None
        elif msg.role == "tool_result":
            if open_results is None:
                open_results = []
                wire.append({"role": "user", "content": open_results})
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": msg.tool_use_id,
                "content": msg.content or "",
            }
            if msg.tool_error:
                block["is_error"] = True
            open_results.append(block)
        elif msg.role == "assistant_tool_use":
            content: Any = (
                [dict(b) for b in msg.content_blocks]
                if msg.content_blocks is not None
                else (msg.content or "")
            )
            wire.append({"role": "assistant", "content": content})
            open_results = None
        else:
            wire.append({"role": msg.role, "content": msg.content or ""})
            open_results = None

    return system, wire


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def parse_response(response: Any) -> LLMResponse:
    """Normalize an SDK Message (or an equivalent dict) into an LLMResponse."""
    raw_content = _field(response, "content")
    if not isinstance(raw_content, (list, tuple)):
        raise LLMProtocolError("model response has no content list")

    blocks: list[ContentBlock] = []
    for raw in raw_content:
        block_type = _field(raw, "type")
        if block_type == "text":
            blocks.append(ContentBlock.text_block(str(_field(raw, "text", "") or "")))
        elif block_type == "tool_use":
            tool_id = _field(raw, "id")
            tool_name = _field(raw, "name")
            if not tool_id or not tool_name:
                raise LLMProtocolError("tool_use block is missing its id or name")
            tool_input = _field(raw, "input") or {}
            if not isinstance(tool_input, dict):
                raise LLMProtocolError(f"tool_use block {tool_id} has non-object input")
            blocks.append(ContentBlock.tool_use(str(tool_id), str(tool_name), tool_input))
        # thinking / redacted blocks carry nothing the loop replays

    stop_reason = _field(response, "stop_reason") or "end_turn"
    return LLMResponse(stop_reason=str(stop_reason), content=blocks)


class LLMClient:
    """
    Wraps the Anthropic Messages API behind a single complete() call.

    SDK-level retries are disabled; every attempt goes through with_retries()
    so the backoff sequence is ours and observable in the logs.
    """

    def __init__(self, config: ClaudeConfig):
        try:
            client_kwargs: dict[str, Any] = {
                "api_key": config.api_key,
                "max_retries": 0,
                "timeout": float(config.request_timeout_seconds),
            }
            if config.base_url:
                client_kwargs["base_url"] = config.base_url
            self._async_client = anthropic.AsyncAnthropic(**client_kwargs)
        except Exception as exc:
            raise LLMClientInitError(f"Failed to initialize LLM client: {exc}") from exc

        self._model = config.model
        self._max_tokens = config.max_tokens
        self._request_timeout_seconds = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig(
            max_attempts=config.retry_max_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
        )

        # Telemetry
        self._total_calls = 0
        self._total_input_tokens = 0
        self._total_output_tokens = 0

        logger.info(
            "llm_client.initialized",
            model=self._model,
            base_url=config.base_url,
            max_attempts=self._retry_config.max_attempts,
        )

    @property
    def model(self) -> str:
        return self._model

    def build_request(
        self,
        messages: Sequence[Message],
        model: Optional[str] = None,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> dict[str, Any]:
        """Build the messages.create kwargs for a call."""
        system, wire = to_wire_messages(messages)
        kwargs: dict[str, Any] = {
            "model": model or self._model,
            "max_tokens": self._max_tokens,
            "messages": wire,
        }
        if system is not None:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "input_schema": t.get("input_schema") or {"type": "object", "properties": {}},
                }
                for t in tools
            ]
        return kwargs

    async def complete(
        self,
        messages: Sequence[Message],
        model: Optional[str] = None,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> LLMResponse:
        """
        Send the context to the model and return its normalized reply.

        Raises:
            anthropic.APIError subclasses when the call fails for good
            (non-retryable status, or retries exhausted).
            LLMProtocolError when the reply cannot be interpreted.
        """
        kwargs = self.build_request(messages, model=model, tools=tools)
        start_time = time.monotonic()

        async def _create() -> Any:
            return await asyncio.wait_for(
                self._async_client.messages.create(**kwargs),
                timeout=self._request_timeout_seconds,
            )

        try:
            raw = await with_retries(_create, config=self._retry_config)
        except anthropic.APIConnectionError as e:
            logger.error("llm_client.connection_error", error=str(e))
            raise
        except anthropic.APIStatusError as e:
            logger.error("llm_client.api_error", error=str(e)[:200], status=e.status_code)
            raise

        response = parse_response(raw)

        self._total_calls += 1
        usage = getattr(raw, "usage", None)
        if usage is not None:
            self._total_input_tokens += int(getattr(usage, "input_tokens", 0) or 0)
            self._total_output_tokens += int(getattr(usage, "output_tokens", 0) or 0)

        logger.debug(
            "llm_client.complete",
            model=kwargs["model"],
            elapsed_seconds=round(time.monotonic() - start_time, 2),
            stop_reason=response.stop_reason,
            tool_calls=len(response.tool_use_blocks),
        )
        return response

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }

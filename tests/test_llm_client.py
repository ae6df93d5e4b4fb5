"""Tests for openclaw.api.claude — wire translation, parsing, and the client."""

from __future__ import annotations

from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from conftest import MockMessage, MockTextBlock, MockThinkingBlock, MockToolUseBlock
from openclaw.api.claude import (
    ContentBlock,
    LLMClient,
    LLMResponse,
    parse_response,
    to_wire_messages,
)
from openclaw.config import ClaudeConfig
from openclaw.errors import LLMProtocolError
from openclaw.memory.messages import Message

_BLOCKS = [
    {"type": "text", "text": "Checking both."},
    {"type": "tool_use", "id": "toolu_a", "name": "read_file", "input": {"path": "a"}},
    {"type": "tool_use", "id": "toolu_b", "name": "read_file", "input": {"path": "b"}},
]


def _client(**overrides) -> LLMClient:
    settings = {
        "api_key": "test-key",
        "model": "claude-test",
        "max_tokens": 256,
        "retry_max_attempts": 3,
        "retry_initial_delay": 1.0,
    }
    settings.update(overrides)
    return LLMClient(ClaudeConfig(**settings))


# ---------------------------------------------------------------------------
# Wire translation
# ---------------------------------------------------------------------------


class TestToWireMessages:
    def test_system_is_hoisted(self) -> None:
        system, wire = to_wire_messages([Message.system("be brief"), Message.user("hi")])
        assert system == "be brief"
        assert wire == [{"role": "user", "content": "hi"}]

    def test_consecutive_tool_results_form_one_user_turn(self) -> None:
        messages = [
            Message.user("read a and b"),
            Message.assistant_tool_use(_BLOCKS),
            Message.tool_result("toolu_a", "A body"),
            Message.tool_result("toolu_b", "missing", is_error=True),
            Message.assistant("done"),
        ]
        _, wire = to_wire_messages(messages)

        assert [turn["role"] for turn in wire] == ["user", "assistant", "user", "assistant"]
        assert wire[1]["content"] == _BLOCKS
        results = wire[2]["content"]
        assert results == [
            {"type": "tool_result", "tool_use_id": "toolu_a", "content": "A body"},
            {"type": "tool_result", "tool_use_id": "toolu_b", "content": "missing", "is_error": True},
        ]

    def test_other_messages_break_the_tool_result_run(self) -> None:
        messages = [
            Message.tool_result("toolu_a", "first"),
            Message.user("interjection"),
            Message.tool_result("toolu_b", "second"),
        ]
        _, wire = to_wire_messages(messages)
        assert len(wire) == 3
        assert len(wire[0]["content"]) == 1
        assert len(wire[2]["content"]) == 1

    def test_assistant_tool_use_without_blocks_falls_back_to_text(self) -> None:
        message = Message(role="assistant_tool_use", content="legacy text")
        _, wire = to_wire_messages([message])
        assert wire == [{"role": "assistant", "content": "legacy text"}]

    def test_no_system_message(self) -> None:
        system, _ = to_wire_messages([Message.user("hi")])
        assert system is None


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


class TestParseResponse:
    def test_text_and_tool_use_blocks(self) -> None:
        raw = MockMessage(
            content=[
                MockThinkingBlock(thinking="hmm"),
                MockTextBlock(text="Let me look."),
                MockToolUseBlock(id="toolu_1", name="read_file", input={"path": "x"}),
            ],
            stop_reason="tool_use",
        )
        response = parse_response(raw)

        assert response.stop_reason == "tool_use"
        assert response.has_tool_use is True
        assert response.text == "Let me look."
        assert [b.id for b in response.tool_use_blocks] == ["toolu_1"]
        assert response.content_blocks_for_replay() == [
            {"type": "text", "text": "Let me look."},
            {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "x"}},
        ]

    def test_dict_payload_is_accepted(self) -> None:
        response = parse_response({
            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            "stop_reason": "end_turn",
        })
        assert response.text == "a\nb"
        assert response.has_tool_use is False

    def test_missing_stop_reason_defaults_to_end_turn(self) -> None:
        response = parse_response({"content": [{"type": "text", "text": "hi"}]})
        assert response.stop_reason == "end_turn"

    def test_missing_content_is_a_protocol_error(self) -> None:
        with pytest.raises(LLMProtocolError):
            parse_response({"stop_reason": "end_turn"})

    def test_tool_use_without_id_is_a_protocol_error(self) -> None:
        with pytest.raises(LLMProtocolError):
            parse_response({"content": [{"type": "tool_use", "name": "x", "input": {}}]})

    def test_tool_use_with_non_object_input_is_a_protocol_error(self) -> None:
        with pytest.raises(LLMProtocolError):
            parse_response({"content": [{"type": "tool_use", "id": "t", "name": "x", "input": [1]}]})

    def test_stop_reason_tool_use_counts_as_tool_use(self) -> None:
        response = LLMResponse(stop_reason="tool_use", content=[ContentBlock.text_block("x")])
        assert response.has_tool_use is True
        assert response.tool_use_blocks == []


# ---------------------------------------------------------------------------
# LLMClient
# ---------------------------------------------------------------------------


class TestLLMClient:
    def test_sdk_retries_are_disabled(self) -> None:
        client = _client()
        assert client._async_client.max_retries == 0
        assert client.model == "claude-test"

    def test_base_url_is_forwarded(self) -> None:
        client = _client(base_url="http://proxy.local:8080/")
        assert str(client._async_client.base_url).startswith("http://proxy.local:8080")

    def test_build_request_attaches_tools_and_system(self) -> None:
        client = _client()
        tools = [{"name": "read_file", "description": "Read a file", "input_schema": {"type": "object"}}]
        kwargs = client.build_request(
            [Message.system("sys"), Message.user("hi")],
            tools=tools,
        )
        assert kwargs["model"] == "claude-test"
        assert kwargs["max_tokens"] == 256
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["tools"] == tools

    def test_build_request_omits_empty_tools(self) -> None:
        kwargs = _client().build_request([Message.user("hi")], model="other-model", tools=[])
        assert "tools" not in kwargs
        assert "system" not in kwargs
        assert kwargs["model"] == "other-model"

    @pytest.mark.asyncio
    async def test_complete_returns_parsed_response(self) -> None:
        client = _client()
        create = AsyncMock(return_value=MockMessage(content=[MockTextBlock(text="hello")]))
        client._async_client.messages.create = create

        response = await client.complete([Message.system("sys"), Message.user("hi")])

        assert response.text == "hello"
        assert create.await_args.kwargs["system"] == "sys"
        assert client.telemetry["total_calls"] == 1
        assert client.telemetry["total_input_tokens"] == 100

    @pytest.mark.asyncio
    async def test_complete_retries_rate_limits(self, monkeypatch) -> None:
        delays: list[float] = []

        async def _fake_sleep(delay: float) -> None:
            delays.append(delay)

        monkeypatch.setattr("openclaw.harness.retry.asyncio.sleep", _fake_sleep)

        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        rate_limited = anthropic.RateLimitError(
            message="rate limit",
            response=httpx.Response(429, request=request),
            body={},
        )
        client = _client()
        client._async_client.messages.create = AsyncMock(
            side_effect=[rate_limited, rate_limited, MockMessage(content=[MockTextBlock(text="ok")])]
        )

        response = await client.complete([Message.user("hi")])

        assert response.text == "ok"
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_complete_does_not_retry_auth_errors(self) -> None:
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        unauthorized = anthropic.AuthenticationError(
            message="bad key",
            response=httpx.Response(401, request=request),
            body={},
        )
        client = _client()
        create = AsyncMock(side_effect=unauthorized)
        client._async_client.messages.create = create

        with pytest.raises(anthropic.AuthenticationError):
            await client.complete([Message.user("hi")])
        assert create.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_response_raises_protocol_error(self) -> None:
        client = _client()
        client._async_client.messages.create = AsyncMock(return_value={"stop_reason": "end_turn"})

        with pytest.raises(LLMProtocolError):
            await client.complete([Message.user("hi")])

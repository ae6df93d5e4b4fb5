"""
Shared fixtures for the OpenClaw test suite.

Provides configs pointed at tmp_path, a session store, scripted stand-ins for
the model backend, and small tool helpers so individual test modules can
focus on behavior rather than setup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import pytest

from openclaw.api.claude import ContentBlock, LLMResponse
from openclaw.config import AgentConfig
from openclaw.memory.messages import Message
from openclaw.memory.session_store import SessionStore


# ---------------------------------------------------------------------------
# Mock Claude API types (stand-ins for anthropic.types.Message)
# ---------------------------------------------------------------------------

@dataclass
class MockUsage:
    input_tokens: int = 100
    output_tokens: int = 50


@dataclass
class MockTextBlock:
    type: str = "text"
    text: str = ""


@dataclass
class MockToolUseBlock:
    type: str = "tool_use"
    id: str = "toolu_1"
    name: str = ""
    input: dict = field(default_factory=dict)


@dataclass
class MockThinkingBlock:
    type: str = "thinking"
    thinking: str = ""


@dataclass
class MockMessage:
    content: list = field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: MockUsage = field(default_factory=MockUsage)


# ---------------------------------------------------------------------------
# Scripted LLM client
# ---------------------------------------------------------------------------

def text_response(text: str) -> LLMResponse:
    return LLMResponse(stop_reason="end_turn", content=[ContentBlock.text_block(text)])


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: Optional[str] = None) -> LLMResponse:
    blocks = [ContentBlock.text_block(text)] if text else []
    blocks.extend(ContentBlock.tool_use(cid, name, tool_input) for cid, name, tool_input in calls)
    return LLMResponse(stop_reason="tool_use", content=blocks)


class ScriptedLLM:
    """
    Returns pre-scripted responses in order and records every call.

    A scripted Exception is raised instead of returned. When the script runs
    out, the last entry is repeated.
    """

    def __init__(self, script: list[Any]) -> None:
        self._script = list(script)
        self.calls: list[dict[str, Any]] = []

    @property
    def model(self) -> str:
        return "mock-model"

    async def complete(
        self,
        messages: list[Message],
        model: Optional[str] = None,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "model": model, "tools": tools})
        index = min(len(self.calls) - 1, len(self._script) - 1)
        item = self._script[index]
        if isinstance(item, Exception):
            raise item
        return item


# ---------------------------------------------------------------------------
# Config / store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def agent_config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(
        OPENCLAW_SYSTEM_PROMPT="You are a test agent.",
        OPENCLAW_WORKSPACE_DIR=tmp_path / "workspace",
    )


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture
def session_store(sessions_dir: Path) -> SessionStore:
    return SessionStore(sessions_dir)

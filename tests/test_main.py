"""Tests for the entry point helpers and the assembled GatewayRuntime."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from conftest import ScriptedLLM, text_response
from openclaw.config import AgentConfig, GatewayConfig, OpenClawConfig, SessionConfig
from openclaw.main import _redact_sensitive_fields
from openclaw.service import GatewayRuntime


class TestRedaction:
    def test_sensitive_fields_are_redacted(self) -> None:
        event = {
            "event": "gateway.started",
            "auth_token": "abc",
            "api_key": "sk-123",
            "Authorization": "Bearer abc",
            "db_password": "hunter2",
            "port": 18789,
        }
        out = _redact_sensitive_fields(None, "info", dict(event))
        assert out["auth_token"] == "[redacted]"
        assert out["api_key"] == "[redacted]"
        assert out["Authorization"] == "[redacted]"
        assert out["db_password"] == "[redacted]"
        assert out["port"] == 18789
        assert out["event"] == "gateway.started"

    def test_similar_names_are_not_redacted(self) -> None:
        out = _redact_sensitive_fields(None, "info", {"event": "llm.usage", "used_tokens": 42})
        assert out["used_tokens"] == 42

    def test_none_values_left_alone(self) -> None:
        out = _redact_sensitive_fields(None, "info", {"event": "x", "token": None})
        assert out["token"] is None


@pytest.fixture
def runtime(tmp_path: Path) -> GatewayRuntime:
    config = OpenClawConfig(
        agent=AgentConfig(
            OPENCLAW_SYSTEM_PROMPT="You are a test agent.",
            OPENCLAW_WORKSPACE_DIR=tmp_path / "workspace",
        ),
        sessions=SessionConfig(OPENCLAW_SESSIONS_DIR=tmp_path / "sessions"),
        gateway=GatewayConfig(
            OPENCLAW_GATEWAY_HOST="127.0.0.1",
            OPENCLAW_GATEWAY_PORT=0,
            OPENCLAW_GATEWAY_TOKEN="secret",
        ),
    )
    return GatewayRuntime(config, llm=ScriptedLLM([text_response("hi there")]))


class TestGatewayRuntime:
    @pytest.mark.asyncio
    async def test_router_reaches_agent_loop(self, runtime: GatewayRuntime) -> None:
        created = await runtime.router.dispatch("session.create", {"channel": "cli"}, 1)
        session_id = created["result"]["sessionId"]

        resp = await runtime.router.dispatch(
            "agent.send", {"sessionId": session_id, "message": "hello"}, 2
        )

        assert resp["result"] == {"response": "hi there"}
        roles = [m.role for m in runtime.session_store.get_session(session_id).messages]
        assert roles == ["user", "assistant"]

    def test_default_methods_registered(self, runtime: GatewayRuntime) -> None:
        assert set(runtime.router.methods) >= {
            "gateway.health", "session.create", "session.list", "agent.send", "agent.ralph",
        }

    @pytest.mark.asyncio
    async def test_run_until_shutdown_requested(self, runtime: GatewayRuntime) -> None:
        task = asyncio.create_task(runtime.run())
        await asyncio.sleep(0.1)
        assert not task.done()

        runtime.request_shutdown("test")
        await asyncio.wait_for(task, timeout=5)

        assert runtime.gateway.active_connection_count == 0


def test_configure_logging_is_idempotent(monkeypatch: pytest.MonkeyPatch) -> None:
    import openclaw.main as main_module

    calls = []
    monkeypatch.setattr(main_module, "_logging_configured", False)
    monkeypatch.setattr(main_module.structlog, "configure", lambda **kw: calls.append(kw))
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: None)

    main_module.configure_logging()
    main_module.configure_logging()

    assert len(calls) == 1
    assert main_module._redact_sensitive_fields in calls[0]["processors"]

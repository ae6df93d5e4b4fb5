from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from openclaw.memory.messages import Message, Session


class TestMessage:
    def test_constructors_set_roles(self) -> None:
        assert Message.system("s").role == "system"
        assert Message.user("u").role == "user"
        assert Message.assistant("a").role == "assistant"

    def test_tool_result_fields(self) -> None:
        msg = Message.tool_result("toolu_1", "boom", is_error=True)
        assert msg.role == "tool_result"
        assert msg.tool_use_id == "toolu_1"
        assert msg.content == "boom"
        assert msg.tool_error is True

    def test_tool_result_requires_id(self) -> None:
        with pytest.raises(ValidationError):
            Message(role="tool_result", content="x")

    def test_tool_use_requires_blocks(self) -> None:
        with pytest.raises(ValidationError):
            Message(role="assistant_tool_use")

    def test_unknown_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Message(role="robot", content="beep")

    def test_messages_are_frozen(self) -> None:
        msg = Message.user("hi")
        with pytest.raises(ValidationError):
            msg.content = "changed"

    def test_json_line_is_flat_and_single_line(self) -> None:
        msg = Message.user("line one\nline two")
        line = msg.to_json_line()
        assert "\n" not in line
        data = json.loads(line)
        assert data["role"] == "user"
        assert data["content"] == "line one\nline two"
        assert "timestamp" in data
        assert "tool_use_id" not in data
        assert "content_blocks" not in data

    def test_json_line_parses_back(self) -> None:
        blocks = [
            {"type": "text", "text": "Let me look."},
            {"type": "tool_use", "id": "toolu_9", "name": "read", "input": {"path": "a.txt"}},
        ]
        original = Message.assistant_tool_use(blocks)
        parsed = Message.from_json_line(original.to_json_line())
        assert parsed.content_blocks == blocks
        assert parsed.timestamp == original.timestamp

    def test_tool_use_ids(self) -> None:
        msg = Message.assistant_tool_use([
            {"type": "text", "text": "two calls"},
            {"type": "tool_use", "id": "a", "name": "x", "input": {}},
            {"type": "tool_use", "id": "b", "name": "y", "input": {}},
        ])
        assert msg.tool_use_ids == ["a", "b"]
        assert Message.user("hi").tool_use_ids == []


class TestSession:
    def test_new_session_has_uuid_and_no_messages(self) -> None:
        session = Session(channel="web", user_id="alice")
        assert len(session.id) == 36
        assert session.message_count == 0

    def test_add_message_bumps_activity(self) -> None:
        session = Session(channel="web", user_id="alice")
        before = session.last_active_at
        session.add_message(Message.user("hi"))
        assert session.message_count == 1
        assert session.last_active_at >= before

    def test_summary(self) -> None:
        session = Session(channel="web", user_id="alice")
        session.add_message(Message.user("hi"))
        summary = session.summary()
        assert summary["id"] == session.id
        assert summary["channel"] == "web"
        assert summary["user_id"] == "alice"
        assert summary["message_count"] == 1
        assert summary["created_at"] == session.created_at.isoformat()

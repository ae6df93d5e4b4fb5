"""
Conversation data model — messages and sessions.

A Message is one entry in a session's append-only log. It is a tagged variant
over roles; the role-specific fields ride along as optional attributes so that
every message serializes to a single flat JSON object (one line in the log).

    system              — the prompt that frames a model call (never persisted)
    user                — text a human sent
    assistant           — the final text of a turn
    assistant_tool_use  — the model's tool requests, kept verbatim for replay
    tool_result         — the outcome of one tool invocation
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["system", "user", "assistant", "tool_result", "assistant_tool_use"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A single immutable conversation message."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Role
    content: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    # tool_result only
    tool_use_id: Optional[str] = None
    tool_error: bool = False

    # assistant_tool_use only: text / tool_use blocks exactly as the model sent them
    content_blocks: Optional[list[dict[str, Any]]] = None

    @model_validator(mode="after")
    def _check_role_fields(self) -> "Message":
        if self.role == "tool_result" and not self.tool_use_id:
            raise ValueError("tool_result messages require a tool_use_id")
        if self.role == "assistant_tool_use" and self.content_blocks is None and self.content is None:
            raise ValueError("assistant_tool_use messages require content_blocks")
        return self

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role="system", content=text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(role="assistant", content=text)

    @classmethod
    def tool_result(cls, tool_use_id: str, output: str, is_error: bool = False) -> "Message":
        return cls(
            role="tool_result",
            content=output,
            tool_use_id=tool_use_id,
            tool_error=is_error,
        )

    @classmethod
    def assistant_tool_use(cls, content_blocks: list[dict[str, Any]]) -> "Message":
        return cls(role="assistant_tool_use", content_blocks=list(content_blocks))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json_line(self) -> str:
        """Serialize to one self-contained JSON line (no trailing newline)."""
        return self.model_dump_json(exclude_none=True, exclude_defaults=False)

    @classmethod
    def from_json_line(cls, line: str) -> "Message":
        return cls.model_validate_json(line)

    @property
    def tool_use_ids(self) -> list[str]:
        """Invocation ids requested by an assistant_tool_use message."""
        if not self.content_blocks:
            return []
        return [
            str(block.get("id"))
            for block in self.content_blocks
            if isinstance(block, dict) and block.get("type") == "tool_use"
        ]


@dataclass
class Session:
    """An ordered conversation between one user/channel pair and the agent."""

    channel: str
    user_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.last_active_at = _utcnow()

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel,
            "user_id": self.user_id,
            "message_count": len(self.messages),
            "created_at": self.created_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
        }

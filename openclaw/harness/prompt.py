"""
System prompt source.

The prompt that frames every model call comes from the first of:

1. the configured override (OPENCLAW_SYSTEM_PROMPT)
2. IDENTITY.md in the agent's workspace directory
3. a built-in default
"""

from __future__ import annotations

from pathlib import Path

import structlog

from openclaw.config import AgentConfig

logger = structlog.get_logger(__name__)

IDENTITY_FILENAME = "IDENTITY.md"

DEFAULT_SYSTEM_PROMPT = (
    "You are OpenClaw, a helpful AI assistant. "
    "You answer concisely and accurately. "
    "Use the tools available to you when a request needs them, and "
    "always confirm with the user before doing anything destructive."
)


class SystemPromptBuilder:
    """Resolves the system prompt for a model call."""

    def __init__(self, config: AgentConfig):
        self._config = config

    @property
    def identity_path(self) -> Path:
        return Path(self._config.workspace_dir) / IDENTITY_FILENAME

    def build(self) -> str:
        if self._config.system_prompt:
            return self._config.system_prompt

        path = self.identity_path
        if path.is_file():
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(
                    "system_prompt.identity_read_failed",
                    path=str(path),
                    error=str(e),
                )
            else:
                if text.strip():
                    return text

        return DEFAULT_SYSTEM_PROMPT

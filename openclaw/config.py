# openclaw/config.py
"""
Configuration for the OpenClaw gateway.

All configuration flows through this module. Values are loaded from environment
variables (via an optional .env file) and validated with Pydantic. Each
subsystem gets its own settings class; OpenClawConfig composes them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import structlog
from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above openclaw/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_DEFAULT_HOME = Path.home() / ".openclaw"


class ClaudeConfig(BaseSettings):
    """Connection settings for the Anthropic Messages API."""

    api_key: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "OPENCLAW_API_KEY"),
    )
    base_url: Optional[str] = Field(None, alias="OPENCLAW_LLM_BASE_URL")
    model: str = Field("claude-sonnet-4-20250514", alias="OPENCLAW_MODEL")
    max_tokens: int = Field(4096, alias="OPENCLAW_MAX_TOKENS")
    request_timeout_seconds: float = Field(120.0, alias="OPENCLAW_LLM_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(3, alias="OPENCLAW_RETRY_MAX_ATTEMPTS")
    retry_initial_delay: float = Field(1.0, alias="OPENCLAW_RETRY_INITIAL_DELAY")
    retry_max_delay: float = Field(30.0, alias="OPENCLAW_RETRY_MAX_DELAY")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "ClaudeConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_attempts = max(1, int(self.retry_max_attempts))
        self.retry_initial_delay = max(0.0, float(self.retry_initial_delay))
        self.retry_max_delay = max(self.retry_initial_delay, float(self.retry_max_delay))
        if isinstance(self.base_url, str):
            self.base_url = self.base_url.strip().rstrip("/") or None
        return self


class AgentConfig(BaseSettings):
    """Agent loop behaviour: prompt source, iteration caps, context budget."""

    system_prompt: Optional[str] = Field(None, alias="OPENCLAW_SYSTEM_PROMPT")
    workspace_dir: Path = Field(_DEFAULT_HOME / "workspace", alias="OPENCLAW_WORKSPACE_DIR")
    max_tool_iterations: int = Field(10, alias="OPENCLAW_MAX_TOOL_ITERATIONS")
    ralph_max_iterations: int = Field(10, alias="OPENCLAW_RALPH_MAX_ITERATIONS")
    ralph_sentinel: str = Field("TASK_COMPLETE", alias="OPENCLAW_RALPH_SENTINEL")

    # Token estimation (rough: 1 token ≈ 4 chars)
    context_token_budget: int = Field(100000, alias="OPENCLAW_CONTEXT_TOKEN_BUDGET")
    chars_per_token: float = 4.0

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "AgentConfig":
        self.max_tool_iterations = max(1, int(self.max_tool_iterations))
        self.ralph_max_iterations = max(1, int(self.ralph_max_iterations))
        self.context_token_budget = max(1, int(self.context_token_budget))
        self.chars_per_token = max(1.0, float(self.chars_per_token))
        if isinstance(self.system_prompt, str) and not self.system_prompt.strip():
            self.system_prompt = None
        self.ralph_sentinel = self.ralph_sentinel.strip() or "TASK_COMPLETE"
        return self


class ToolConfig(BaseSettings):
    """Tool dispatcher limits."""

    default_timeout: float = Field(30.0, alias="OPENCLAW_TOOL_TIMEOUT")
    max_concurrent: int = Field(8, alias="OPENCLAW_TOOL_MAX_CONCURRENT")
    max_output_length: int = Field(25000, alias="OPENCLAW_TOOL_MAX_OUTPUT_LENGTH")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ToolConfig":
        self.default_timeout = max(0.1, float(self.default_timeout))
        self.max_concurrent = max(1, int(self.max_concurrent))
        self.max_output_length = max(200, int(self.max_output_length))
        return self


class SessionConfig(BaseSettings):
    """Session store: log directory, idle TTL, eviction cadence."""

    sessions_dir: Path = Field(_DEFAULT_HOME / "sessions", alias="OPENCLAW_SESSIONS_DIR")
    session_ttl: float = Field(24 * 3600.0, alias="OPENCLAW_SESSION_TTL")
    eviction_interval: float = Field(15 * 60.0, alias="OPENCLAW_SESSION_EVICTION_INTERVAL")
    # When set, a failed log write raises instead of being logged and ignored.
    strict_persistence: bool = Field(False, alias="OPENCLAW_SESSION_STRICT_PERSISTENCE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SessionConfig":
        self.session_ttl = max(1.0, float(self.session_ttl))
        self.eviction_interval = max(1.0, float(self.eviction_interval))
        return self


class GatewayConfig(BaseSettings):
    """WebSocket gateway settings."""

    host: str = Field("127.0.0.1", alias="OPENCLAW_GATEWAY_HOST")
    port: int = Field(18789, alias="OPENCLAW_GATEWAY_PORT")
    auth_token: Optional[str] = Field(None, alias="OPENCLAW_GATEWAY_TOKEN")
    max_connections: int = Field(32, alias="OPENCLAW_GATEWAY_MAX_CONNECTIONS")
    max_message_bytes: int = Field(4 * 1024 * 1024, alias="OPENCLAW_GATEWAY_MAX_MESSAGE_BYTES")
    heartbeat_seconds: float = Field(30.0, alias="OPENCLAW_GATEWAY_HEARTBEAT")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "GatewayConfig":
        self.max_connections = max(1, int(self.max_connections))
        self.max_message_bytes = max(1024, int(self.max_message_bytes))
        self.heartbeat_seconds = max(1.0, float(self.heartbeat_seconds))
        if isinstance(self.auth_token, str) and not self.auth_token.strip():
            self.auth_token = None
        return self


class OpenClawConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. No global state, no hidden
    settings — everything is explicit.
    """

    def __init__(
        self,
        *,
        claude: ClaudeConfig | None = None,
        agent: AgentConfig | None = None,
        tools: ToolConfig | None = None,
        sessions: SessionConfig | None = None,
        gateway: GatewayConfig | None = None,
    ) -> None:
        self.claude = claude or ClaudeConfig()
        self.agent = agent or AgentConfig()
        self.tools = tools or ToolConfig()
        self.sessions = sessions or SessionConfig()
        self.gateway = gateway or GatewayConfig()

        # Resolve all Path fields to absolute so CWD changes don't break them.
        self._resolve_paths()

        if self.gateway.auth_token is None:
            logger.warning("config.gateway_auth_disabled")

    def _resolve_paths(self) -> None:
        def _resolve(p: Path) -> Path:
            p = p.expanduser()
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.agent.workspace_dir = _resolve(self.agent.workspace_dir)
        self.sessions.sessions_dir = _resolve(self.sessions.sessions_dir)

    def __repr__(self) -> str:
        return (
            f"OpenClawConfig(model={self.claude.model}, "
            f"port={self.gateway.port}, "
            f"sessions_dir={self.sessions.sessions_dir})"
        )

"""Agent harness — the runtime infrastructure that turns a model into an agent."""
from openclaw.harness.context import ContextManager
from openclaw.harness.loop import AgentLoop
from openclaw.harness.prompt import SystemPromptBuilder
from openclaw.harness.retry import RetryConfig, with_retries

__all__ = ["AgentLoop", "ContextManager", "SystemPromptBuilder", "RetryConfig", "with_retries"]

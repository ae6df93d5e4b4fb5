"""
Main — the gateway's entry point.

`openclaw-gateway` (or `python -m openclaw.main`):
  1. Configures logging
  2. Loads configuration from the environment
  3. Builds the runtime (store, model client, tools, loop, router, gateway)
  4. Serves until SIGINT/SIGTERM, then shuts down cleanly
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import structlog

from openclaw.api.claude import LLMClientInitError
from openclaw.config import OpenClawConfig
from openclaw.service import GatewayRuntime

# Suffix match: "auth_token" is sensitive, "used_tokens" is not.
_SENSITIVE_KEY_SUFFIXES = ("token", "api_key", "apikey", "authorization", "secret", "password")
_REDACTED = "[redacted]"


def _is_sensitive_key(key: str) -> bool:
    return key.lower().endswith(_SENSITIVE_KEY_SUFFIXES)


def _redact_sensitive_fields(logger: Any, method_name: str, event_dict: dict) -> dict:
    """
    Structlog processor that keeps credentials out of log output.

    Any field whose name looks like a token, key, or password is replaced
    wholesale; the event name itself is left alone.
    """
    for key in list(event_dict):
        if key == "event":
            continue
        if _is_sensitive_key(key) and event_dict[key] is not None:
            event_dict[key] = _REDACTED
    return event_dict


_logging_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once — subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level, stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)


def main() -> None:
    """Entry point for the `openclaw-gateway` console script."""
    configure_logging()

    try:
        config = OpenClawConfig()
    except Exception as e:
        print(f"[openclaw] Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        runtime = GatewayRuntime(config)
    except LLMClientInitError as e:
        logger.error("main.llm_init_failed", error=str(e))
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    runtime.install_signal_handlers(loop)
    try:
        loop.run_until_complete(runtime.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()

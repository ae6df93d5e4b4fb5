"""
OpenClaw — Conversational Agent Gateway

This package contains a persistent agent gateway built on Anthropic's Claude
API. Clients connect over a WebSocket, send user turns as JSON-RPC requests,
and the agent loop answers them, calling tools when the model asks for them
and recording every message in a durable per-session log.

Architecture layers (bottom to top):
    1. Session store (append-only JSONL logs, recovery, expiry)
    2. Claude API client (wire translation, retries)
    3. Tools (capability registry + concurrent dispatcher)
    4. Agent harness (tool-use loop, context truncation, prompt source)
    5. RPC router + WebSocket gateway
"""

__version__ = "0.1.0"

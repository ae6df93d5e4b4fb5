"""Conversation storage — messages, sessions, and their durable logs."""
from openclaw.memory.messages import Message, Session
from openclaw.memory.session_store import SessionStore

__all__ = ["Message", "Session", "SessionStore"]

"""
Session Store — durable, append-only conversation logs.

Every session lives in memory as a Session and on disk as
<sessions_dir>/<session_id>.jsonl, one serialized Message per line. The
in-memory map is a cache; the log file is the source of truth:

  - append_message() writes through to the log before returning
  - recover_all() rebuilds every session from disk at startup
  - get_session() transparently recovers an evicted session on a miss
  - a background task evicts idle sessions from memory, never from disk

The store is driven from a single event loop. At most one turn may be in
flight per session id; the RPC router enforces that with per-session locks.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from openclaw.errors import SessionPersistenceError
from openclaw.memory.messages import Message, Session

logger = structlog.get_logger(__name__)

SESSION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
RECOVERED_CHANNEL = "recovered"
RECOVERED_USER = "unknown"
LOG_SUFFIX = ".jsonl"


class SessionStore:
    """
    In-memory session map backed by per-session JSONL logs.

    Lifecycle: create → start() (recover + begin eviction) → ... → stop()
    """

    def __init__(
        self,
        sessions_dir: Path,
        session_ttl: float = 24 * 3600.0,
        eviction_interval: float = 15 * 60.0,
        strict_persistence: bool = False,
    ) -> None:
        self.sessions_dir = sessions_dir
        self._sessions_dir_resolved = sessions_dir.resolve()
        self._ttl = timedelta(seconds=session_ttl)
        self._eviction_interval = eviction_interval
        self._strict = strict_persistence
        self._sessions: dict[str, Session] = {}
        self._eviction_task: asyncio.Task[None] | None = None

        sessions_dir.mkdir(parents=True, exist_ok=True)
        self._best_effort_chmod(sessions_dir, 0o700)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover sessions from disk and start the eviction task."""
        self.recover_all()
        if self._eviction_task is None:
            self._eviction_task = asyncio.create_task(
                self._eviction_loop(), name="session-eviction"
            )

    async def stop(self) -> None:
        """Cancel the eviction task. Logs are already durable."""
        if self._eviction_task is not None:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_session(self, channel: str, user_id: str) -> Session:
        session = Session(channel=channel, user_id=user_id)
        self._sessions[session.id] = session
        logger.info(
            "session_store.created",
            session_id=session.id,
            channel=channel,
        )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        """Return the session, recovering it from its log if it was evicted."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        path = self._log_path(session_id)
        if path is None or not path.exists():
            return None
        session = self._recover_session(session_id, path)
        if session is not None:
            self._sessions[session_id] = session
            logger.info(
                "session_store.recovered_on_demand",
                session_id=session_id,
                message_count=len(session.messages),
            )
        return session

    def append_message(self, session_id: str, message: Message) -> None:
        """
        Append a message in memory and to the session's durable log.

        Unknown session ids are logged and ignored. A failed log write does not
        roll back the in-memory append; in strict mode it raises
        SessionPersistenceError after the in-memory append.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(
                "session_store.append_unknown_session",
                session_id=session_id,
                role=message.role,
            )
            return
        session.add_message(message)
        self._persist(session, message)

    def list_sessions(self, limit: int = 50) -> list[dict]:
        """In-memory sessions, most recently active first."""
        ordered = sorted(
            self._sessions.values(),
            key=lambda s: s.last_active_at,
            reverse=True,
        )
        return [s.summary() for s in ordered[: max(0, int(limit))]]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @staticmethod
    def is_valid_session_id(session_id: object) -> bool:
        """Return True when session_id is a canonical lowercase UUID string."""
        return isinstance(session_id, str) and bool(SESSION_ID_PATTERN.fullmatch(session_id))

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover_all(self) -> int:
        """Load every session log in the directory. Returns the number loaded."""
        loaded = 0
        try:
            files = sorted(self.sessions_dir.glob(f"*{LOG_SUFFIX}"))
        except OSError as e:
            logger.warning("session_store.scan_failed", error=str(e))
            return 0

        for path in files:
            session_id = path.name[: -len(LOG_SUFFIX)]
            if not self.is_valid_session_id(session_id):
                logger.debug("session_store.foreign_file_skipped", file=str(path))
                continue
            if session_id in self._sessions:
                continue
            session = self._recover_session(session_id, path)
            if session is not None:
                self._sessions[session_id] = session
                loaded += 1

        if loaded:
            logger.info("session_store.recovered", sessions=loaded)
        return loaded

    def _recover_session(self, session_id: str, path: Path) -> Optional[Session]:
        """Replay one log file. Returns None when no line could be parsed."""
        messages: list[Message] = []
        skipped = 0
        try:
            with path.open("r", encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        messages.append(Message.from_json_line(line))
                    except (ValidationError, ValueError):
                        skipped += 1
        except OSError as e:
            logger.warning("session_store.recover_failed", file=str(path), error=str(e))
            return None

        if skipped:
            logger.warning(
                "session_store.corrupted_lines_skipped",
                session_id=session_id,
                skipped=skipped,
            )
        if not messages:
            logger.info("session_store.empty_log_discarded", session_id=session_id)
            return None

        return Session(
            id=session_id,
            channel=RECOVERED_CHANNEL,
            user_id=RECOVERED_USER,
            messages=messages,
            created_at=messages[0].timestamp,
            last_active_at=messages[-1].timestamp,
        )

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop sessions idle longer than the TTL from memory. Logs stay on disk."""
        cutoff = (now or datetime.now(timezone.utc)) - self._ttl
        stale = [sid for sid, s in self._sessions.items() if s.last_active_at < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info(
                "session_store.evicted",
                evicted=len(stale),
                remaining=len(self._sessions),
            )
        return len(stale)

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self._eviction_interval)
            try:
                self.evict_expired()
            except Exception as e:
                logger.error("session_store.eviction_failed", error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _log_path(self, session_id: str) -> Optional[Path]:
        """Resolve the log path for an id, refusing anything outside sessions_dir."""
        if not self.is_valid_session_id(session_id):
            return None
        path = (self.sessions_dir / f"{session_id}{LOG_SUFFIX}").resolve()
        try:
            path.relative_to(self._sessions_dir_resolved)
        except ValueError:
            return None
        return path

    def _persist(self, session: Session, message: Message) -> None:
        path = self.sessions_dir / f"{session.id}{LOG_SUFFIX}"
        try:
            is_new = not path.exists()
            with path.open("a", encoding="utf-8") as fh:
                fh.write(message.to_json_line())
                fh.write("\n")
                fh.flush()
            if is_new:
                self._best_effort_chmod(path, 0o600)
        except OSError as e:
            logger.error(
                "session_store.write_failed",
                session_id=session.id,
                path=str(path),
                error=str(e),
                strict=self._strict,
            )
            if self._strict:
                raise SessionPersistenceError(
                    f"Failed to persist message for session {session.id}: {e}"
                ) from e
            return
        logger.debug("session_store.appended", session_id=session.id, role=message.role)

    @staticmethod
    def _best_effort_chmod(path: Path, mode: int) -> None:
        """Attempt to harden permissions without failing on unsupported filesystems."""
        try:
            path.chmod(mode)
        except OSError:
            logger.debug("session_store.chmod_skipped", path=str(path), mode=oct(mode))

"""
Conversation memory — bounded, expiring per-session message history.

The manager is the only mutator of session state. Appends for one session
are serialized by a per-session lock; different sessions never contend.
Expiry is lazy: a session idle longer than session_timeout is dropped the
next time sessions are looked up or enumerated.

Export/import use a plain record so a session can be persisted anywhere:

    {"id", "startTime", "lastActivityTime",
     "messages": [{"content", "role", "timestamp", "metadata"?}],
     "metadata"}
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from stepsync.config import get_section
from stepsync.models import ConversationMessage, utcnow
from stepsync.tokens import TokenCounter

logger = logging.getLogger(__name__)

CAPACITY_WARNING_PCT = 80


@dataclass
class ConversationSession:
    """One active conversation. Mutated only through ConversationMemory."""
    id: str
    start_time: datetime = field(default_factory=utcnow)
    last_activity_time: datetime = field(default_factory=utcnow)
    messages: list[ConversationMessage] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def touch(self, now: datetime):
        self.last_activity_time = now

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        return now - self.last_activity_time > timeout

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def bytes_used(self) -> int:
        return sum(len(m.content.encode("utf-8")) for m in self.messages)


class _SessionLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class ConversationMemory:
    """Owns the session-id → ConversationSession map."""

    def __init__(
        self,
        max_messages: int = 20,
        max_tokens: int = 4000,
        session_timeout: float = 86400,
        token_counter: TokenCounter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self.session_timeout = timedelta(seconds=session_timeout)
        self.token_counter = token_counter
        self._clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self._session_locks: dict[str, _SessionLock] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, token_counter: TokenCounter | None = None) -> "ConversationMemory":
        """Create a ConversationMemory from config.yaml settings."""
        m_cfg = get_section("memory")
        return cls(
            max_messages=int(m_cfg.get("max_messages", 20)),
            max_tokens=int(m_cfg.get("max_tokens", 4000)),
            session_timeout=float(m_cfg.get("session_timeout", 86400)),
            token_counter=token_counter,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @contextmanager
    def _session_lock(self, session_id: str):
        """
        Hold the per-session lock.

        The entry counts its holders and waiters, and is dropped only once
        that count is zero and the session is gone. A writer that is still
        inside never sees its lock replaced by a fresh one.
        """
        with self._lock:
            entry = self._session_locks.get(session_id)
            if entry is None:
                entry = self._session_locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0 and session_id not in self._sessions:
                    self._session_locks.pop(session_id, None)

    def _drop_idle_lock(self, session_id: str) -> None:
        """Caller must hold self._lock."""
        entry = self._session_locks.get(session_id)
        if entry is not None and entry.users == 0:
            del self._session_locks[session_id]

    def _purge_expired(self) -> None:
        """Caller must hold self._lock."""
        now = self._clock()
        expired = [
            sid for sid, s in self._sessions.items()
            if s.is_expired(now, self.session_timeout)
        ]
        for sid in expired:
            del self._sessions[sid]
            self._drop_idle_lock(sid)
        if expired:
            logger.info("Expired %d idle session(s)", len(expired))

    def get_session(self, session_id: str) -> ConversationSession:
        """Return the session, creating it on first access."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.is_expired(self._clock(), self.session_timeout):
                logger.info("Session %s expired, starting fresh", session_id[:16])
                session = None
            if session is None:
                now = self._clock()
                session = ConversationSession(
                    id=session_id, start_time=now, last_activity_time=now
                )
                self._sessions[session_id] = session
                logger.debug("Created session %s", session_id[:16])
            return session

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return session is not None and not session.is_expired(
                self._clock(), self.session_timeout
            )

    def get_active_session_ids(self) -> list[str]:
        with self._lock:
            self._purge_expired()
            return list(self._sessions)

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clear_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            self._drop_idle_lock(session_id)
        if removed:
            logger.info("Cleared session %s", session_id[:16])
        return removed

    def clear_all_sessions(self):
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            for sid in list(self._session_locks):
                self._drop_idle_lock(sid)
        logger.info("Cleared all sessions (%d total)", count)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(self, session_id: str, message: ConversationMessage) -> None:
        with self._session_lock(session_id):
            session = self.get_session(session_id)
            session.messages.append(message)
            session.touch(self._clock())
            self._enforce_limits(session)

    def add_user_message(
        self, session_id: str, content: str, metadata: Mapping[str, Any] | None = None
    ) -> None:
        self.add_message(
            session_id,
            ConversationMessage(role="user", content=content, timestamp=self._clock(), metadata=metadata),
        )

    def add_assistant_message(
        self, session_id: str, content: str, metadata: Mapping[str, Any] | None = None
    ) -> None:
        self.add_message(
            session_id,
            ConversationMessage(role="assistant", content=content, timestamp=self._clock(), metadata=metadata),
        )

    def get_history(self, session_id: str) -> tuple[ConversationMessage, ...]:
        """Read-only snapshot of the session's messages, oldest first."""
        with self._session_lock(session_id):
            return tuple(self.get_session(session_id).messages)

    def get_recent_messages(self, session_id: str, count: int) -> tuple[ConversationMessage, ...]:
        if count <= 0:
            return ()
        return self.get_history(session_id)[-count:]

    def _enforce_limits(self, session: ConversationSession) -> None:
        excess = session.message_count - self.max_messages
        if excess > 0:
            del session.messages[:excess]
            logger.info(
                "Trimmed session %s: removed %d oldest message(s)", session.id[:16], excess
            )
        else:
            pct = session.message_count * 100 // self.max_messages
            if CAPACITY_WARNING_PCT <= pct < 100:
                logger.warning(
                    "Session %s approaching message limit: %d/%d (%d%%)",
                    session.id[:16], session.message_count, self.max_messages, pct,
                )

        if self.token_counter is None:
            return
        total = sum(self.token_counter.count_tokens(m.content) for m in session.messages)
        dropped = 0
        while total > self.max_tokens and len(session.messages) > 1:
            oldest = session.messages.pop(0)
            total -= self.token_counter.count_tokens(oldest.content)
            dropped += 1
        if dropped:
            logger.info(
                "Trimmed session %s to %d tokens: removed %d message(s)",
                session.id[:16], total, dropped,
            )

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_session(self, session_id: str) -> dict:
        with self._session_lock(session_id):
            session = self.get_session(session_id)
            return {
                "id": session.id,
                "startTime": session.start_time.isoformat(),
                "lastActivityTime": session.last_activity_time.isoformat(),
                "messages": [m.to_record() for m in session.messages],
                "metadata": dict(session.metadata),
            }

    def import_session(self, data: Mapping[str, Any]) -> ConversationSession:
        """Install a session from an export record, replacing any existing one."""
        session = ConversationSession(
            id=data["id"],
            start_time=datetime.fromisoformat(data["startTime"]),
            last_activity_time=datetime.fromisoformat(data["lastActivityTime"]),
            messages=[ConversationMessage.from_record(m) for m in data.get("messages", [])],
            metadata=dict(data.get("metadata") or {}),
        )
        with self._session_lock(session.id):
            self._enforce_limits(session)
            with self._lock:
                self._sessions[session.id] = session
        logger.info(
            "Imported session %s (%d messages)", session.id[:16], session.message_count
        )
        return session

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        with self._lock:
            self._purge_expired()
            sessions = list(self._sessions.values())

        messages = [m for s in sessions for m in s.messages]
        fullest = max((s.message_count for s in sessions), default=0)
        if self.token_counter is not None:
            tokens = sum(self.token_counter.count_tokens(m.content) for m in messages)
        else:
            tokens = sum(-(-len(m.content) // 4) for m in messages)

        return {
            "active_sessions": len(sessions),
            "total_messages": len(messages),
            "user_messages": sum(1 for m in messages if m.is_user),
            "assistant_messages": sum(1 for m in messages if m.is_assistant),
            "estimated_tokens": tokens,
            "total_bytes": sum(s.bytes_used for s in sessions),
            "max_messages": self.max_messages,
            "capacity_used_pct": round(fullest * 100 / self.max_messages, 1),
        }

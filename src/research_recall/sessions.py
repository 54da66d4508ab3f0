"""Bounded in-process conversation history keyed by session id."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from .models import ChatMessage, RetrievalContext

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_SESSIONS = 1000
MAX_MESSAGES_PER_SESSION = 50


@dataclass
class _Session:
    messages: list[ChatMessage] = field(default_factory=list)
    last_seen: float = 0.0


class SessionStore:
    """Conversation history with idle expiry and least-recently-used eviction.

    A session expires ``ttl_seconds`` after it was last touched. Once more than
    ``max_sessions`` are live, the least recently touched one is dropped.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        max_messages: int = MAX_MESSAGES_PER_SESSION,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0 or max_sessions <= 0 or max_messages <= 0:
            raise ValueError("Session limits must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self.max_messages = max_messages
        self._clock = clock
        self._sessions: OrderedDict[str, _Session] = OrderedDict()

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._sessions)

    def _live(self, session_id: str) -> _Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._clock() - session.last_seen > self.ttl_seconds:
            del self._sessions[session_id]
            return None
        return session

    def append(self, session_id: str, role: str, content: str) -> None:
        session = self._live(session_id) or _Session()
        session.messages.append(ChatMessage(role=role, content=content))
        del session.messages[: -self.max_messages]
        session.last_seen = self._clock()
        self._sessions[session_id] = session
        self._sessions.move_to_end(session_id)
        while len(self._sessions) > self.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Evicted session %s", evicted)

    def history(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        session = self._live(session_id)
        if session is None:
            return []
        messages = session.messages if limit is None else session.messages[-limit:]
        return list(messages)

    def context(self, session_id: str, current_topic: str = "") -> RetrievalContext:
        recent = [m for m in self.history(session_id) if m.role != "system"]
        return RetrievalContext(recent_messages=recent, current_topic=current_topic)

    def clear(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if now - s.last_seen > self.ttl_seconds]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

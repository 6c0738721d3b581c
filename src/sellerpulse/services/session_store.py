import logging
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Protocol

from ..models import Message, Role, Session

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50
DEFAULT_TITLE = "New Chat"
_TITLE_PREFIX = re.compile(
    r"^(show me|what are|get|tell me|give me|i want|i need)\b", re.IGNORECASE
)


class SessionError(Exception):
    """Base class for session lookup failures."""


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found")
        self.session_id = session_id


class SessionAccessDeniedError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__("Access denied")
        self.session_id = session_id


class SessionRepository(Protocol):
    """Storage interface used by the orchestrator and the session routes.

    The default implementation keeps everything in process memory; a durable
    store only has to provide these coroutines.
    """

    async def create_session(self, user_id: str, session_id: str | None = None) -> str: ...

    async def get_session(self, session_id: str) -> Session | None: ...

    async def list_sessions(self, user_id: str) -> List[Session]: ...

    async def get_history(self, session_id: str) -> List[Message]: ...

    async def add_message(
        self,
        session_id: str,
        role: Role,
        content: str,
        metadata: Dict[str, Any] | None = None,
    ) -> bool: ...

    async def update_title(self, session_id: str, title: str) -> bool: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def clear_sessions(self, user_id: str) -> int: ...

    async def cleanup(self, max_age_days: int) -> int: ...


def generate_title(content: str) -> str:
    """Derive a session title from the first user message."""
    title = _TITLE_PREFIX.sub("", content.strip()).strip()
    title = title[:1].upper() + title[1:]
    if len(title) > TITLE_MAX_LENGTH:
        title = title[:TITLE_MAX_LENGTH].strip() + "..."
    return title or DEFAULT_TITLE


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore:
    """Volatile SessionRepository backed by dicts; lives as long as the process."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, List[str]] = {}

    def _tick(self, session: Session) -> datetime:
        # Clock reads can repeat (or step back); updated_at must strictly advance.
        now = _utcnow()
        if now <= session.updated_at:
            now = session.updated_at + timedelta(microseconds=1)
        session.updated_at = now
        return now

    async def create_session(self, user_id: str, session_id: str | None = None) -> str:
        sid = session_id or new_session_id()
        now = _utcnow()
        self._sessions[sid] = Session(id=sid, user_id=user_id, created_at=now, updated_at=now)
        self._user_sessions.setdefault(user_id, []).append(sid)
        logger.debug("Created session %s for user %s", sid, user_id)
        return sid

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def list_sessions(self, user_id: str) -> List[Session]:
        sessions = [
            self._sessions[sid]
            for sid in self._user_sessions.get(user_id, [])
            if sid in self._sessions
        ]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def get_history(self, session_id: str) -> List[Message]:
        session = self._sessions.get(session_id)
        return list(session.messages) if session else []

    async def add_message(
        self,
        session_id: str,
        role: Role,
        content: str,
        metadata: Dict[str, Any] | None = None,
    ) -> bool:
        """Append a message; returns False (and does nothing) for an unknown id."""
        session = self._sessions.get(session_id)
        if session is None:
            return False

        metadata = metadata or {}
        timestamp = self._tick(session)
        session.messages.append(
            Message(
                role=role,
                content=content,
                timestamp=timestamp,
                tool_calls=list(metadata.get("tool_calls") or []),
                tool_results=list(metadata.get("tool_results") or []),
            )
        )

        if len(session.messages) == 1 and role == "user":
            session.title = generate_title(content)
        return True

    async def update_title(self, session_id: str, title: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.title = title
        self._tick(session)
        return True

    async def delete_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        owned = self._user_sessions.get(session.user_id)
        if owned and session_id in owned:
            owned.remove(session_id)
        return True

    async def clear_sessions(self, user_id: str) -> int:
        deleted = 0
        for sid in self._user_sessions.pop(user_id, []):
            if self._sessions.pop(sid, None) is not None:
                deleted += 1
        return deleted

    async def cleanup(self, max_age_days: int) -> int:
        """Delete sessions not updated within max_age_days. Returns the count."""
        cutoff = _utcnow() - timedelta(days=max_age_days)
        stale = [sid for sid, s in self._sessions.items() if s.updated_at < cutoff]
        for sid in stale:
            await self.delete_session(sid)
        if stale:
            logger.info("Session cleanup removed %d sessions older than %d days", len(stale), max_age_days)
        return len(stale)


async def require_owned_session(
    store: SessionRepository, session_id: str, user_id: str
) -> Session:
    """Return the session if it exists and belongs to user_id, else raise SessionError."""
    session = await store.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    if session.user_id != user_id:
        raise SessionAccessDeniedError(session_id)
    return session

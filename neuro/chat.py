"""Chat sessions and the deterministic offline chat backend."""

from __future__ import annotations

import hashlib
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence

DEFAULT_SESSION_PREFIX = "Session"
SESSION_SORT_KEYS = ("created", "name", "updated")


class ChatBackendError(RuntimeError):
    """Raised when the chat backend cannot produce a completion."""


class ChatSessionError(LookupError):
    """Raised when a session cannot be created or located."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    role: str
    content: str


@dataclass
class ChatResponse:
    """Container for a completed chat exchange."""

    completion: str
    digest: str
    latency_ms: int
    token_count: int

    def to_metadata(self) -> Dict[str, int | str]:
        return {
            "digest": self.digest,
            "latency_ms": self.latency_ms,
            "tokens": self.token_count,
        }


@dataclass
class ChatSession:
    name: str = f"{DEFAULT_SESSION_PREFIX} 1"
    system_prompt: str = ""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    messages: List[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def short_id(self) -> str:
        return self.session_id[:8]

    def add(self, role: str, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        self.messages.append(message)
        self.updated_at = _utcnow()
        return message

    def contents(self) -> List[str]:
        return [message.content for message in self.messages]

    def reset(self) -> None:
        self.messages.clear()
        self.updated_at = _utcnow()


class ChatSessionManager:
    """Named chat sessions with a single active one.

    ``send`` always talks to the active session; :meth:`current` creates a
    default session on first use.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ChatSession] = {}
        self._active_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def active(self) -> Optional[ChatSession]:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    def default_name(self) -> str:
        taken = {session.name for session in self._sessions.values()}
        index = 1
        while f"{DEFAULT_SESSION_PREFIX} {index}" in taken:
            index += 1
        return f"{DEFAULT_SESSION_PREFIX} {index}"

    def create(self, name: Optional[str] = None, *, system_prompt: str = "") -> ChatSession:
        """Create a session and make it active; names must be unique."""

        name = (name or "").strip() or self.default_name()
        if any(session.name == name for session in self._sessions.values()):
            raise ChatSessionError(f"session name '{name}' is already in use")
        session = ChatSession(name=name, system_prompt=system_prompt)
        self._sessions[session.session_id] = session
        self._active_id = session.session_id
        return session

    def current(self) -> ChatSession:
        session = self.active
        if session is None:
            session = self.create()
        return session

    def find(self, text: str, *, by_id: bool = False) -> ChatSession:
        """Locate a session by name (exact, then substring) or by id prefix."""

        needle = text.strip()
        if not needle:
            raise ChatSessionError("session name or id is required")
        sessions = list(self._sessions.values())
        if by_id:
            matches = [session for session in sessions if session.session_id.startswith(needle)]
        else:
            exact = [session for session in sessions if session.name == needle]
            matches = exact or [session for session in sessions if needle in session.name]
        if not matches:
            kind = "id" if by_id else "name"
            raise ChatSessionError(f"no session matches {kind} '{needle}'")
        if len(matches) > 1:
            names = ", ".join(session.name for session in matches)
            raise ChatSessionError(f"multiple sessions match '{needle}': {names}")
        return matches[0]

    def activate(self, session: ChatSession) -> None:
        if session.session_id not in self._sessions:
            raise ChatSessionError(f"unknown session: {session.name}")
        self._active_id = session.session_id

    def delete(self, session: ChatSession) -> None:
        if self._sessions.pop(session.session_id, None) is None:
            raise ChatSessionError(f"unknown session: {session.name}")
        if self._active_id == session.session_id:
            remaining = self.list("updated")
            self._active_id = remaining[0].session_id if remaining else None

    def list(self, sort: str = "created") -> List[ChatSession]:
        sessions = list(self._sessions.values())
        if sort == "name":
            return sorted(sessions, key=lambda session: session.name.lower())
        if sort == "updated":
            return sorted(sessions, key=lambda session: session.updated_at, reverse=True)
        if sort == "created":
            return sessions
        raise ChatSessionError(f"invalid sort option '{sort}'; expected one of {', '.join(SESSION_SORT_KEYS)}")

    def reset(self) -> None:
        self._sessions.clear()
        self._active_id = None


class DeterministicChatBackend:
    """Produces deterministic responses suitable for offline use and testing."""

    def __init__(self, *, model: str = "deterministic", salt: str = "neuro-chat") -> None:
        self.model = model
        self._salt = salt

    def seed_material(self, messages: Sequence[ChatMessage]) -> str:
        transcript = "\n".join(f"{message.role}:{message.content}" for message in messages)
        return f"{self.model}::{transcript}::{self._salt}"

    def stream(self, messages: Sequence[ChatMessage]) -> Iterator[str]:
        """Yield the completion for ``messages`` one word at a time."""

        if not messages:
            raise ChatBackendError("no messages to send")
        prompt = messages[-1].content
        words = f"[{self.model}] {prompt}".split(" ")
        for index, word in enumerate(words):
            yield word if index == 0 else " " + word

    def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> ChatResponse:
        """Run the stream to completion, passing each chunk to ``on_chunk``."""

        start = time.perf_counter()
        chunks: List[str] = []
        for chunk in self.stream(messages):
            chunks.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)
        digest = hashlib.sha256(self.seed_material(messages).encode("utf-8")).hexdigest()
        latency_ms = int((time.perf_counter() - start) * 1000)
        return ChatResponse(
            completion="".join(chunks),
            digest=digest,
            latency_ms=latency_ms,
            token_count=max(1, len(messages[-1].content.split())),
        )


__all__ = [
    "ChatBackendError",
    "ChatMessage",
    "ChatResponse",
    "ChatSession",
    "ChatSessionError",
    "ChatSessionManager",
    "DeterministicChatBackend",
]

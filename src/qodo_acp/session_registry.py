from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional
from uuid import uuid4

from .errors import SessionNotFoundError

logger = logging.getLogger(__name__)


def create_session_id() -> str:
    return f"qodo_{uuid4().hex}"


@dataclass
class Session:
    """State of one conversation with the CLI."""

    id: str
    cancelled: bool = False
    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)

    @property
    def active_process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def is_active(self) -> bool:
        return self._process is not None

    def attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    def detach(self) -> None:
        self._process = None


class SessionRegistry:
    """Mapping from session id to session state."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def create(self, session_id: Optional[str] = None) -> Session:
        session_id = session_id or create_session_id()
        existing = self._sessions.get(session_id)
        if existing is not None:
            logger.debug("Session already registered", extra={"session_id": session_id})
            return existing
        session = Session(id=session_id)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def require(self, session_id: Optional[str]) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def ids(self) -> List[str]:
        return list(self._sessions)

    def active(self) -> List[Session]:
        return [session for session in self._sessions.values() if session.is_active]

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

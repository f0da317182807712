"""
Keyed registry of realtime sessions.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from .session import Session

logger = logging.getLogger(__name__)

SessionKey = Tuple[str, str]


class SessionPool:
    """
    Registry of live sessions keyed by (endpoint id, connection key).

    Connecting twice with the same key yields the same Session, so both
    handles share one websocket. The pool holds no transport state. Pass one
    pool to several clients to share connections between them.
    """

    def __init__(self):
        self._sessions: Dict[SessionKey, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        with self._lock:
            return key in self._sessions

    def get(self, endpoint_id: str, connection_key: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get((endpoint_id, connection_key))

    def get_or_create(
        self,
        endpoint_id: str,
        connection_key: str,
        factory: Callable[[], Session],
    ) -> Session:
        """Return the session for the key, creating it with factory if absent."""
        key = (endpoint_id, connection_key)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = factory()
                self._sessions[key] = session
                logger.debug(f"Created realtime session for {endpoint_id}[{connection_key}]")
            return session

    def remove(
        self,
        endpoint_id: str,
        connection_key: str,
        session: Optional[Session] = None,
    ) -> None:
        """
        Forget the session for the key.

        When session is given, the entry is only removed if it still refers to
        that instance, so a stale session cannot evict its replacement.
        """
        key = (endpoint_id, connection_key)
        with self._lock:
            current = self._sessions.get(key)
            if current is None or (session is not None and current is not session):
                return
            del self._sessions[key]

    async def close_all(self) -> None:
        """Close every pooled session."""
        with self._lock:
            sessions: List[Session] = list(self._sessions.values())
            self._sessions.clear()
        if sessions:
            await asyncio.gather(*(s.close() for s in sessions))

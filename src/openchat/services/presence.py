"""Live sessions: who is connected right now, and how to reach them.

Presence lives only in memory and is separate from the ``online`` flag in
personal stores. A session is added when a client's live channel connects
and removed when it disconnects.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from openchat.models import utcnow
from openchat.utils.logging_config import get_logger

logger = get_logger(__name__)

Sender = Callable[[str, Dict[str, Any]], Awaitable[None]]

DEFAULT_MAX_SESSIONS = 10000


@dataclass
class Session:
    username: str
    send: Sender
    session_id: str = ""
    push_subscription: Optional[str] = None
    connected_at: Any = field(default_factory=utcnow)


class SessionLimitReached(Exception):
    pass


class PushSender(Protocol):
    async def send(self, subscription: Dict[str, Any], payload: Dict[str, Any]) -> None: ...


class LoggingPushSender:
    """Push delivery stand-in that only records what would be sent."""

    async def send(self, subscription: Dict[str, Any], payload: Dict[str, Any]) -> None:
        logger.info("Push notification", endpoint=subscription.get("endpoint"), title=payload.get("title"))


class SessionRegistry:
    """Bounded map of username -> live session."""

    def __init__(self, push_sender: Optional[PushSender] = None, max_sessions: int = DEFAULT_MAX_SESSIONS):
        self._sessions: Dict[str, Session] = {}
        self.push_sender: PushSender = push_sender or LoggingPushSender()
        self.max_sessions = max_sessions

    def connect(self, session: Session) -> None:
        if session.username not in self._sessions and len(self._sessions) >= self.max_sessions:
            raise SessionLimitReached(f"Session limit {self.max_sessions} reached")
        previous = self._sessions.get(session.username)
        if previous is not None and session.push_subscription is None:
            session.push_subscription = previous.push_subscription
        self._sessions[session.username] = session
        logger.info("User connected", username=session.username, sessions=len(self._sessions))

    def disconnect(self, username: str, session_id: Optional[str] = None) -> bool:
        current = self._sessions.get(username)
        if current is None:
            return False
        # A newer session from the same user replaced this one already
        if session_id is not None and current.session_id != session_id:
            return False
        del self._sessions[username]
        logger.info("User disconnected", username=username, sessions=len(self._sessions))
        return True

    def is_online(self, username: str) -> bool:
        return username in self._sessions

    def online(self, usernames: Iterable[str]) -> List[str]:
        return [u for u in usernames if u in self._sessions]

    def set_push_subscription(self, username: str, subscription: Optional[str]) -> None:
        session = self._sessions.get(username)
        if session is not None:
            session.push_subscription = subscription

    def __len__(self) -> int:
        return len(self._sessions)

    async def emit(self, username: str, event: str, data: Any) -> bool:
        """Send one live event; returns ``False`` if the user is not connected."""
        session = self._sessions.get(username)
        if session is None:
            return False
        try:
            await session.send(event, data)
            return True
        except Exception as e:  # noqa: BLE001
            logger.error("Live event delivery failed", username=username, live_event=event, error=str(e))
            self.disconnect(username, session.session_id)
            return False

    async def broadcast(self, usernames: Iterable[str], event: str, data: Any, exclude: Optional[str] = None) -> List[str]:
        delivered = []
        for username in usernames:
            if username == exclude:
                continue
            if await self.emit(username, event, data):
                delivered.append(username)
        return delivered

    async def push(self, username: str, title: str, body: str) -> bool:
        session = self._sessions.get(username)
        if session is None or not session.push_subscription:
            return False
        try:
            subscription = json.loads(session.push_subscription)
            await self.push_sender.send(subscription, {"title": title, "body": body})
            return True
        except Exception as e:  # noqa: BLE001
            logger.error("Error sending push notification", username=username, error=str(e))
            return False

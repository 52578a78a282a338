"""
Session tokens for the gateway.

Signup, login and password setup hand out an opaque bearer token bound to
one username. HTTP routes resolve the caller from the ``Authorization``
header and the live channel from its ``token`` query parameter, so a
username sent in a body or query string never identifies the caller.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from openchat.config.settings import settings
from openchat.errors import NotAuthenticated
from openchat.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class AuthSession:
    token: str
    username: str
    expires_at: float


class SessionTokens:
    """In-memory map of live bearer tokens; tokens do not survive a restart."""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds or settings.SESSION_TTL_SECONDS
        self._clock = clock
        self._sessions: Dict[str, AuthSession] = {}

    def issue(self, username: str) -> AuthSession:
        session = AuthSession(
            token=secrets.token_urlsafe(32),
            username=username,
            expires_at=self._clock() + self.ttl_seconds,
        )
        self._sessions[session.token] = session
        logger.info("Session issued", username=username)
        return session

    def resolve(self, token: Optional[str]) -> str:
        """Return the username bound to ``token`` or raise ``NotAuthenticated``."""
        if not token:
            raise NotAuthenticated("Missing session token")
        session = self._sessions.get(token)
        if session is None:
            raise NotAuthenticated("Invalid session token")
        if session.expires_at <= self._clock():
            self._sessions.pop(token, None)
            raise NotAuthenticated("Session expired")
        return session.username

    def revoke(self, token: Optional[str]) -> bool:
        session = self._sessions.pop(token, None) if token else None
        if session is not None:
            logger.info("Session revoked", username=session.username)
        return session is not None

    def __len__(self) -> int:
        return len(self._sessions)

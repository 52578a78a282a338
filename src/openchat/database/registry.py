"""Connection registry for personal stores.

Handles are opened lazily, cached by normalized location and shared by every
service. Each location gets at most one in-flight open, a cap on concurrent
operations (excess callers poll-wait), and an idle reaper that closes
handles nobody has touched recently.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from openchat.config.settings import settings
from openchat.database.personal_store import MongoPersonalStore, PersonalStore
from openchat.errors import InvalidLocation, StoreUnreachable
from openchat.utils.logging_config import get_logger, redact_location

logger = get_logger(__name__)

SCHEMES = ("mongodb://", "mongodb+srv://")
DEFAULT_SCHEME = "mongodb+srv://"

Opener = Callable[[str], Awaitable[PersonalStore]]


def normalize_location(location: Optional[str]) -> str:
    """Return ``location`` with a recognized scheme.

    A location without a scheme that still looks like ``user:pass@host.tld``
    (contains both ``@`` and ``.``) is repaired by prefixing the default
    scheme. Anything else raises ``InvalidLocation``.
    """
    if not location or not location.strip():
        raise InvalidLocation("Store location is required")
    location = location.strip()
    if location.startswith(SCHEMES):
        return location
    if "@" in location and "." in location:
        return DEFAULT_SCHEME + location
    raise InvalidLocation(f"Invalid store location format: {redact_location(location)}")


class ConnectionRegistry:
    """Owns every open personal-store handle for the process."""

    def __init__(
        self,
        opener: Optional[Opener] = None,
        max_concurrent_ops: Optional[int] = None,
        idle_timeout: Optional[float] = None,
        reaper_interval: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self._opener: Opener = opener or MongoPersonalStore.open
        self.max_concurrent_ops = max_concurrent_ops or settings.MAX_CONCURRENT_OPS
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.IDLE_TIMEOUT_SECONDS
        self.reaper_interval = reaper_interval or settings.REAPER_INTERVAL_SECONDS
        self.poll_interval = poll_interval or settings.ADMISSION_POLL_INTERVAL

        self._handles: Dict[str, PersonalStore] = {}
        self._opening: Dict[str, asyncio.Future] = {}
        self._pending: Dict[str, int] = {}
        self._reaper_task: Optional[asyncio.Task] = None

    # Lifecycle

    def start(self) -> None:
        """Start the idle reaper on the running loop."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop())
            logger.info("Connection reaper started", interval=self.reaper_interval, idle_timeout=self.idle_timeout)

    async def close_all(self) -> None:
        """Stop the reaper and close every cached handle."""
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None
        handles = list(self._handles.items())
        self._handles.clear()
        for location, handle in handles:
            await self._close_quietly(location, handle)
        logger.info("Closed all personal store connections", count=len(handles))

    @property
    def open_locations(self):
        return list(self._handles)

    def pending_operations(self, location: str) -> int:
        return self._pending.get(normalize_location(location), 0)

    async def ping_all(self) -> Dict[str, bool]:
        """Ping every cached handle; unreachable ones are flagged for the reaper."""
        results = {}
        for key, handle in list(self._handles.items()):
            reachable = await handle.ping()
            if not reachable:
                handle.mark_unhealthy("ping failed")
            results[key] = reachable
        return results

    # Handles

    async def acquire(self, location: str) -> PersonalStore:
        """Return a healthy handle for ``location``, opening one if needed."""
        key = normalize_location(location)

        handle = self._handles.get(key)
        if handle is not None:
            if handle.healthy:
                handle.touch()
                return handle
            logger.info("Cached connection no longer healthy, reopening", location=redact_location(key))
            await self.evict(key)

        in_flight = self._opening.get(key)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        future = asyncio.get_running_loop().create_future()
        self._opening[key] = future
        try:
            handle = await self._open(key)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Consume so a lone opener does not leave "exception never retrieved"
            future.exception()
            raise
        else:
            future.set_result(handle)
            return handle
        finally:
            self._opening.pop(key, None)

    async def _open(self, key: str) -> PersonalStore:
        logger.info("Creating new personal store connection", location=redact_location(key))
        try:
            handle = await self._opener(key)
        except StoreUnreachable:
            raise
        except Exception as e:
            logger.error("Error creating personal store connection", location=redact_location(key), error=str(e))
            raise StoreUnreachable(str(e), location=key) from e
        handle.add_unhealthy_callback(self._on_unhealthy)
        handle.touch()
        self._handles[key] = handle
        return handle

    def _on_unhealthy(self, location: str) -> None:
        # Driver callbacks are synchronous; the handle is closed lazily on next acquire or reap
        logger.warning("Personal store reported unhealthy", location=redact_location(location))

    async def evict(self, location: str) -> None:
        key = normalize_location(location)
        handle = self._handles.pop(key, None)
        if handle is not None:
            await self._close_quietly(key, handle)

    async def _close_quietly(self, location: str, handle: PersonalStore) -> None:
        try:
            await handle.close()
        except Exception as e:  # noqa: BLE001
            logger.error("Error closing personal store connection", location=redact_location(location), error=str(e))

    # Admission control

    @asynccontextmanager
    async def operation(self, location: str) -> AsyncIterator[PersonalStore]:
        """Run one operation against ``location`` under the per-store cap.

        Callers above ``max_concurrent_ops`` poll until a slot frees up
        instead of opening further connections to the same store. Only a
        caller that holds a slot ever changes the in-flight count.
        """
        key = normalize_location(location)
        while self._pending.get(key, 0) >= self.max_concurrent_ops:
            logger.debug("Too many operations, waiting", location=redact_location(key), pending=self._pending.get(key, 0))
            await asyncio.sleep(self.poll_interval)
        self._pending[key] = self._pending.get(key, 0) + 1
        try:
            handle = await self.acquire(key)
            handle.touch()
            yield handle
            handle.touch()
        finally:
            remaining = self._pending.get(key, 0) - 1
            if remaining > 0:
                self._pending[key] = remaining
            else:
                self._pending.pop(key, None)

    # Idle reaper

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reaper_interval)
            try:
                await self.reap_idle()
            except Exception as e:  # noqa: BLE001
                logger.error("Connection cleanup failed", error=str(e))

    async def reap_idle(self, now: Optional[float] = None) -> int:
        """Close handles idle past ``idle_timeout`` or flagged unhealthy."""
        now = time.monotonic() if now is None else now
        logger.debug("Cleaning up idle connections", cache_size=len(self._handles))
        closed = 0
        for key, handle in list(self._handles.items()):
            if self._pending.get(key):
                continue
            if not handle.healthy or now - handle.last_used > self.idle_timeout:
                logger.info("Closing idle connection", location=redact_location(key))
                self._handles.pop(key, None)
                await self._close_quietly(key, handle)
                closed += 1
        return closed

"""The single automation session and the arbiter that serializes access to it.

There is exactly one browser page. On-demand reads, on-demand sends and the
background sweep all move that page around, so every unit of work goes through
``SessionArbiter.run``: callers queue in arrival order, one unit runs at a time,
and the unit receives a ``SessionGrant`` whose page reference stops working once
the unit ends.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TypeVar

import structlog
from playwright.async_api import BrowserContext, Page, Playwright, async_playwright

from .config import BrowserSettings
from .errors import SessionNotReady

T = TypeVar("T")

logger = structlog.get_logger("session")
arbiter_logger = structlog.get_logger("arbiter")


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


def inbox_url(base_url: str, account_index: int) -> str:
    return f"{base_url}/u/{account_index}/messages"


class BrowserSession:
    """Owns the Playwright process, the persistent context and its one page."""

    def __init__(self, settings: BrowserSettings):
        self.settings = settings
        self.state = SessionState.UNINITIALIZED
        self.last_error: Optional[str] = None
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._ready = asyncio.Event()

    async def start(self) -> None:
        """Launch the browser and open account 0's inbox.

        Failure leaves the session uninitialized; there is no automatic relaunch.
        """
        if self.state is not SessionState.UNINITIALIZED:
            return
        try:
            page = await self._launch()
            await page.goto(
                inbox_url(self.settings.base_url, 0),
                wait_until=self.settings.wait_until,
                timeout=self.settings.navigation_timeout_ms,
            )
        except Exception as exc:
            self.last_error = str(exc)
            logger.error("session_start_failed", error=str(exc))
            await self._teardown()
            raise
        self.adopt(page)
        logger.info("session_ready", url=page.url, hint="log in to the web client if needed")

    async def _launch(self) -> Page:
        settings = self.settings
        self._playwright = await async_playwright().start()
        launch_kwargs: dict[str, Any] = {
            "headless": settings.headless,
            "args": list(settings.args),
            "no_viewport": True,
        }
        if settings.executable_path:
            launch_kwargs["executable_path"] = settings.executable_path
        elif settings.channel:
            launch_kwargs["channel"] = settings.channel
        user_data_dir = Path(settings.user_data_dir).expanduser()
        user_data_dir.mkdir(parents=True, exist_ok=True)
        self._context = await self._playwright.chromium.launch_persistent_context(str(user_data_dir), **launch_kwargs)
        pages = self._context.pages
        return pages[0] if pages else await self._context.new_page()

    def adopt(self, page: Page) -> None:
        """Mark the session ready around an already-navigated page."""
        self._page = page
        self.state = SessionState.READY
        self.last_error = None
        self._ready.set()

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY and self._page is not None and not self._page.is_closed()

    def require_page(self) -> Page:
        if not self.is_ready:
            raise SessionNotReady()
        assert self._page is not None
        return self._page

    async def wait_until_ready(self) -> None:
        await self._ready.wait()

    async def close(self) -> None:
        await self._teardown()
        self._page = None
        self.state = SessionState.CLOSED
        self._ready.clear()
        logger.info("session_closed")

    async def _teardown(self) -> None:
        if self._context is not None:
            with contextlib.suppress(Exception):
                await self._context.close()
            self._context = None
        if self._playwright is not None:
            with contextlib.suppress(Exception):
                await self._playwright.stop()
            self._playwright = None


class SessionGrant:
    """Borrowed access to the session page for the duration of one unit."""

    def __init__(self, page: Page, owner: str, account_index: Optional[int] = None):
        self._page: Optional[Page] = page
        self.owner = owner
        self.account_index = account_index

    @property
    def page(self) -> Page:
        if self._page is None:
            raise SessionNotReady(f"session grant for {self.owner!r} is no longer valid")
        return self._page

    @property
    def active(self) -> bool:
        return self._page is not None

    def revoke(self) -> None:
        self._page = None


class SessionArbiter:
    """FIFO mutual exclusion over the shared session.

    ``asyncio.Lock`` wakes waiters in arrival order and lets a waiter drop out by
    being cancelled. Once a unit has the lock it runs as its own task, so
    cancelling the caller does not interrupt it and the lock is released only
    when the unit finishes.
    """

    def __init__(self, session: Any):
        self._session = session
        self._lock = asyncio.Lock()
        self._owner: Optional[str] = None
        self._waiting = 0
        self._completed = 0

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def waiting(self) -> int:
        return self._waiting

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def busy(self) -> bool:
        return self._owner is not None

    @property
    def session_ready(self) -> bool:
        return bool(self._session.is_ready)

    async def wait_until_ready(self) -> None:
        await self._session.wait_until_ready()

    async def run(
        self,
        owner: str,
        work: Callable[[SessionGrant], Awaitable[T]],
        *,
        account_index: Optional[int] = None,
    ) -> T:
        # No queuing until the session exists at all
        self._session.require_page()
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            page = self._session.require_page()
        except BaseException:
            self._lock.release()
            raise
        grant = SessionGrant(page, owner, account_index)
        unit = asyncio.ensure_future(self._run_unit(grant, work))
        unit.add_done_callback(self._log_orphaned_failure)
        return await asyncio.shield(unit)

    async def _run_unit(self, grant: SessionGrant, work: Callable[[SessionGrant], Awaitable[T]]) -> T:
        self._owner = grant.owner
        arbiter_logger.debug("unit_started", owner=grant.owner, account_index=grant.account_index, waiting=self._waiting)
        try:
            return await work(grant)
        finally:
            grant.revoke()
            self._owner = None
            self._completed += 1
            self._lock.release()
            arbiter_logger.debug("unit_finished", owner=grant.owner, account_index=grant.account_index)

    @staticmethod
    def _log_orphaned_failure(task: asyncio.Future) -> None:
        # Retrieve the exception so an abandoned unit's failure is logged, not lost
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            arbiter_logger.debug("unit_failed", error=str(exc), error_type=type(exc).__name__)

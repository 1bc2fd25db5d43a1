from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from gvoice_bridge.config import clear_settings_cache, get_settings
from gvoice_bridge.db import reset_database_state
from gvoice_bridge.extraction import (
    COMPOSER_INPUT,
    CONVERSATION_CONTAINER,
    CONVERSATION_ITEM,
    CONVERSATION_LIST,
    CONVERSATION_PARTICIPANTS,
    CONVERSATION_SNIPPET,
    CONVERSATION_TIMESTAMP,
    MESSAGE_CONTENT,
    MESSAGE_ENTRY,
    MESSAGE_FINE_TIMESTAMP,
    MESSAGE_LIST,
    MESSAGE_STATUS,
)
from gvoice_bridge.session import inbox_url

BASE_URL = "https://voice.test"


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database/browser settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("BACKEND_ID", "test-backend")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "3000")
    monkeypatch.setenv("VOICE_BASE_URL", BASE_URL)
    monkeypatch.setenv("BROWSER_USER_DATA_DIR", str(tmp_path / "profile"))
    monkeypatch.setenv("VIEW_READY_TIMEOUT_MS", "50")
    monkeypatch.setenv("COMPOSER_READY_TIMEOUT_MS", "50")
    monkeypatch.setenv("LIST_SETTLE_MS", "0")
    monkeypatch.setenv("COMPOSE_SETTLE_MS", "0")
    monkeypatch.setenv("SEND_SETTLE_MS", "0")
    monkeypatch.setenv("SYNC_ENABLED", "false")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest.fixture
def settings(isolated_env):
    return get_settings()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state and cached settings across tests."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()


# ---------------------------------------------------------------------------
# In-memory stand-ins for the Playwright objects the bridge touches
# ---------------------------------------------------------------------------


class FakeElement:
    def __init__(
        self,
        text: Optional[str] = "",
        classes: str = "",
        children: Optional[dict[str, Any]] = None,
        on_click: Optional[Callable[[], None]] = None,
        events: Optional[list] = None,
    ):
        self.text = text
        self.classes = classes
        self.children: dict[str, list[FakeElement]] = {}
        for selector, value in (children or {}).items():
            self.children[selector] = value if isinstance(value, list) else [value]
        self.on_click = on_click
        self.events = events if events is not None else []
        self.clicks = 0

    async def query_selector(self, selector: str) -> Optional["FakeElement"]:
        items = self.children.get(selector) or []
        return items[0] if items else None

    async def query_selector_all(self, selector: str) -> list["FakeElement"]:
        return list(self.children.get(selector, []))

    async def text_content(self) -> Optional[str]:
        return self.text

    async def get_attribute(self, name: str) -> Optional[str]:
        if name == "class":
            return self.classes or None
        return None

    async def click(self, **kwargs: Any) -> None:
        self.clicks += 1
        self.events.append(("click", self.text))
        if self.on_click is not None:
            self.on_click()

    async def type(self, text: str, **kwargs: Any) -> None:
        self.events.append(("type", text))

    async def focus(self) -> None:
        self.events.append(("focus", None))


class FakeKeyboard:
    def __init__(self, events: list):
        self.events = events

    async def press(self, key: str, **kwargs: Any) -> None:
        self.events.append(("press", key))


class FakePage:
    """A page whose 'rendered view' is a mapping of selector -> elements.

    ``goto`` swaps in the view registered for the URL (empty if none), and
    ``wait_for_selector`` times out immediately when nothing matches.
    """

    def __init__(self) -> None:
        self.views: dict[str, dict[str, list[FakeElement]]] = {}
        self.goto_errors: dict[str, Exception] = {}
        self.current: dict[str, list[FakeElement]] = {}
        self.url = "about:blank"
        self.visited: list[str] = []
        self.events: list = []
        self.keyboard = FakeKeyboard(self.events)
        self.closed = False
        self.goto_delay = 0.0

    def add_view(self, url: str, view: dict[str, list[FakeElement]]) -> None:
        self.views[url] = view

    def show(self, view: dict[str, list[FakeElement]]) -> None:
        self.current = view

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.visited.append(url)
        self.events.append(("goto", url))
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        if url in self.goto_errors:
            raise self.goto_errors[url]
        self.url = url
        self.current = self.views.get(url, {})

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> FakeElement:
        items = self.current.get(selector)
        if not items:
            raise PlaywrightTimeout(f"Timeout {kwargs.get('timeout')}ms exceeded waiting for {selector!r}")
        return items[0]

    async def query_selector(self, selector: str) -> Optional[FakeElement]:
        items = self.current.get(selector) or []
        return items[0] if items else None

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        return list(self.current.get(selector, []))

    def is_closed(self) -> bool:
        return self.closed


class FakeSession:
    """Duck-typed BrowserSession that is ready around a FakePage."""

    def __init__(self, page: Optional[FakePage] = None, ready: bool = True):
        self.page = page or FakePage()
        self.ready = ready
        self.started = 0
        self.closed = False

    @property
    def is_ready(self) -> bool:
        return self.ready and not self.page.is_closed()

    def require_page(self) -> FakePage:
        from gvoice_bridge.errors import SessionNotReady

        if not self.is_ready:
            raise SessionNotReady()
        return self.page

    async def wait_until_ready(self) -> None:
        while not self.is_ready:
            await asyncio.sleep(0.01)

    async def start(self) -> None:
        self.started += 1

    async def close(self) -> None:
        self.closed = True


def _inbox_item(
    label: Optional[str],
    snippet: Optional[str] = "",
    timestamp: Optional[str] = "",
    *,
    read: bool = True,
    container: bool = True,
    on_click: Optional[Callable[[], None]] = None,
) -> FakeElement:
    children: dict[str, Any] = {}
    if container:
        children[CONVERSATION_CONTAINER] = FakeElement(
            text=label, classes="container read" if read else "container", on_click=on_click
        )
    if label is not None:
        children[CONVERSATION_PARTICIPANTS] = FakeElement(text=f"  {label}  ")
    if snippet is not None:
        children[CONVERSATION_SNIPPET] = FakeElement(text=snippet)
    if timestamp is not None:
        children[CONVERSATION_TIMESTAMP] = FakeElement(text=timestamp)
    return FakeElement(classes="list-item", children=children)


def _message(
    text: Optional[str],
    direction: str = "incoming",
    *,
    timestamp: Optional[str] = None,
    status_text: Optional[str] = None,
) -> FakeElement:
    children: dict[str, Any] = {}
    if text is not None:
        children[MESSAGE_CONTENT] = FakeElement(text=text)
    if timestamp is not None or status_text is not None:
        status_children = {}
        if timestamp is not None:
            status_children[MESSAGE_FINE_TIMESTAMP] = FakeElement(text=timestamp)
        children[MESSAGE_STATUS] = FakeElement(text=status_text or "", children=status_children)
    return FakeElement(classes=f"full-container {direction}".strip(), children=children)


def _inbox_view(items: list[FakeElement]) -> dict[str, list[FakeElement]]:
    return {CONVERSATION_LIST: [FakeElement(classes="list")], CONVERSATION_ITEM: items}


def _thread_view(entries: list[FakeElement]) -> dict[str, list[FakeElement]]:
    return {MESSAGE_LIST: [FakeElement()], MESSAGE_ENTRY: entries}


def _with_composer(view: dict[str, list[FakeElement]], page: FakePage) -> dict[str, list[FakeElement]]:
    composed = dict(view)
    composed[COMPOSER_INPUT] = [FakeElement(classes="message-input", events=page.events)]
    return composed


@pytest.fixture
def dom():
    """Builders for fake pages, inbox entries and message entries."""
    return SimpleNamespace(
        Element=FakeElement,
        Page=FakePage,
        Session=FakeSession,
        inbox_item=_inbox_item,
        message=_message,
        inbox_view=_inbox_view,
        thread_view=_thread_view,
        with_composer=_with_composer,
        inbox_url=lambda account_index: inbox_url(BASE_URL, account_index),
        base_url=BASE_URL,
    )

"""Drive the session page to an account's inbox or to a specific conversation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .config import BrowserSettings
from .errors import ConversationNotFound, ExtractionContainerTimeout, NavigationTimeout
from .extraction import (
    CONVERSATION_CONTAINER,
    CONVERSATION_ITEM,
    CONVERSATION_LIST,
    CONVERSATION_PARTICIPANTS,
    MESSAGE_LIST,
)
from .session import SessionGrant, inbox_url
from .utils import quote_item_id

logger = structlog.get_logger("navigator")


@dataclass(slots=True, frozen=True)
class ConversationRef:
    """Either an opaque thread item id or a participant label to click in the inbox."""

    item_id: Optional[str] = None
    label: Optional[str] = None

    def __post_init__(self) -> None:
        if bool(self.item_id) == bool(self.label):
            raise ValueError("ConversationRef needs exactly one of item_id or label")

    @classmethod
    def by_item_id(cls, item_id: str) -> "ConversationRef":
        return cls(item_id=item_id)

    @classmethod
    def by_label(cls, label: str) -> "ConversationRef":
        return cls(label=label)


def conversation_url(base_url: str, account_index: int, item_id: str) -> str:
    return f"{inbox_url(base_url, account_index)}?itemId={quote_item_id(item_id)}"


class SessionNavigator:
    """Navigation steps for one arbiter unit.

    Every unit starts with an explicit navigation; nothing here assumes the page
    is still where a previous unit left it.
    """

    def __init__(self, grant: SessionGrant, settings: BrowserSettings):
        self.grant = grant
        self.settings = settings

    async def go_to_inbox(self, account_index: int) -> None:
        await self._goto(inbox_url(self.settings.base_url, account_index))
        await self._wait_for_view(CONVERSATION_LIST, view="inbox")
        # Entries keep populating after the list container first shows up and the
        # page exposes no "done" signal, so this is a fixed settle delay.
        await asyncio.sleep(self.settings.list_settle_ms / 1000)

    async def go_to_conversation(self, account_index: int, ref: ConversationRef) -> None:
        if ref.item_id:
            await self._goto(conversation_url(self.settings.base_url, account_index, ref.item_id))
        else:
            assert ref.label is not None
            await self.go_to_inbox(account_index)
            await self.open_by_label(ref.label)
        await self._wait_for_view(MESSAGE_LIST, view="conversation")

    async def open_by_label(self, label: str) -> None:
        """Click the first inbox entry whose participant label equals ``label`` exactly."""
        page = self.grant.page
        for item in await page.query_selector_all(CONVERSATION_ITEM):
            participants = await item.query_selector(CONVERSATION_PARTICIPANTS)
            if participants is None:
                continue
            if ((await participants.text_content()) or "").strip() != label:
                continue
            container = await item.query_selector(CONVERSATION_CONTAINER)
            if container is not None:
                await container.click()
            logger.debug("conversation_opened", label=label)
            return
        raise ConversationNotFound(label)

    async def _goto(self, url: str) -> None:
        try:
            await self.grant.page.goto(
                url,
                wait_until=self.settings.wait_until,
                timeout=self.settings.navigation_timeout_ms,
            )
        except PlaywrightTimeout as exc:
            raise NavigationTimeout(f"Timed out loading {url}") from exc

    async def _wait_for_view(self, selector: str, *, view: str) -> None:
        try:
            await self.grant.page.wait_for_selector(
                selector,
                state="visible",
                timeout=self.settings.view_ready_timeout_ms,
            )
        except PlaywrightTimeout as exc:
            raise ExtractionContainerTimeout(
                f"{view} view not ready: {selector!r} not visible after {self.settings.view_ready_timeout_ms}ms",
                data={"view": view, "selector": selector},
            ) from exc

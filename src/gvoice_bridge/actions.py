"""On-demand conversation reads and sends, each run as one arbiter unit."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .config import BrowserSettings
from .extraction import COMPOSER_INPUT, extract_messages
from .errors import ComposerNotReady
from .models import ThreadMessage
from .navigator import ConversationRef, SessionNavigator
from .session import SessionArbiter, SessionGrant

logger = structlog.get_logger("actions")


async def read_conversation(
    arbiter: SessionArbiter,
    settings: BrowserSettings,
    account_index: int,
    ref: ConversationRef,
) -> list[ThreadMessage]:
    """Open a conversation and return its messages in thread order.

    Nothing is persisted here; the sweep owns the store.
    """

    async def _unit(grant: SessionGrant) -> list[ThreadMessage]:
        navigator = SessionNavigator(grant, settings)
        await navigator.go_to_conversation(account_index, ref)
        return await extract_messages(grant.page)

    messages = await arbiter.run("read", _unit, account_index=account_index)
    logger.info(
        "conversation_read",
        account_index=account_index,
        item_id=ref.item_id,
        label=ref.label,
        messages=len(messages),
    )
    return messages


async def send_message(
    arbiter: SessionArbiter,
    settings: BrowserSettings,
    text: str,
    *,
    account_index: Optional[int] = None,
) -> None:
    """Type ``text`` into the composer of whatever conversation is open and submit it.

    Does not navigate. Delivery is best effort: success means the submit key was
    pressed and the post-send delay elapsed, not that the message went out.
    """

    async def _unit(grant: SessionGrant) -> None:
        page = grant.page
        try:
            composer = await page.wait_for_selector(
                COMPOSER_INPUT,
                state="visible",
                timeout=settings.composer_ready_timeout_ms,
            )
        except PlaywrightTimeout as exc:
            raise ComposerNotReady(
                f"Message input not visible after {settings.composer_ready_timeout_ms}ms"
            ) from exc
        if composer is None:
            raise ComposerNotReady("Message input not found")
        await composer.click()
        await page.keyboard.press("ControlOrMeta+A")
        await page.keyboard.press("Backspace")
        await composer.type(text)
        # Give the client's input validation time to enable sending
        await asyncio.sleep(settings.compose_settle_ms / 1000)
        await composer.focus()
        await page.keyboard.press("Enter")
        await asyncio.sleep(settings.send_settle_ms / 1000)

    await arbiter.run("send", _unit, account_index=account_index)
    logger.info("message_sent", account_index=account_index, length=len(text))

"""Projections from the rendered web client to structured records.

Every selector that depends on the client's markup lives here, grouped by the
view it reads. The extractors only query the page; they never navigate or wait,
and any optional sub-element that is missing becomes an empty/default field
instead of failing the whole extraction. Waiting for a view's root container is
the navigator's job (see ``navigator.SessionNavigator``).
"""

from __future__ import annotations

from typing import Any, Optional

from .models import ConversationPreview, Direction, SenderRole, ThreadMessage

# Inbox (conversation list) view
CONVERSATION_LIST = "ol.list"
CONVERSATION_ITEM = "li.list-item"
CONVERSATION_CONTAINER = ".container"
CONVERSATION_PARTICIPANTS = ".title .participants"
CONVERSATION_SNIPPET = ".subtitle .preview"
CONVERSATION_TIMESTAMP = ".title .timestamp"
READ_MARKER_CLASS = "read"

# Conversation (message thread) view
MESSAGE_LIST = "section .messages-container ul.list li gv-text-message-item"
MESSAGE_ENTRY = "section .messages-container ul.list li gv-text-message-item .full-container"
MESSAGE_CONTENT = ".content"
MESSAGE_STATUS = ".status"
MESSAGE_FINE_TIMESTAMP = ".sender-timestamp .timestamp"

# Composer
COMPOSER_INPUT = ".message-input-container textarea.message-input"


async def _text_of(node: Optional[Any]) -> str:
    if node is None:
        return ""
    return ((await node.text_content()) or "").strip()


async def _child_text(node: Any, selector: str) -> str:
    return await _text_of(await node.query_selector(selector))


async def _class_attr(node: Any) -> str:
    return (await node.get_attribute("class")) or ""


async def _class_tokens(node: Any) -> set[str]:
    return set((await _class_attr(node)).split())


async def extract_conversation_list(page: Any) -> list[ConversationPreview]:
    """Read every visible inbox entry, top to bottom.

    ``unread`` is true only when the entry's container exists and lacks the
    read marker; a missing container reads as not unread. Entries without a
    participant label are dropped.
    """
    previews: list[ConversationPreview] = []
    for item in await page.query_selector_all(CONVERSATION_ITEM):
        container = await item.query_selector(CONVERSATION_CONTAINER)
        unread = container is not None and READ_MARKER_CLASS not in await _class_tokens(container)
        label = await _child_text(item, CONVERSATION_PARTICIPANTS)
        if not label:
            continue
        previews.append(
            ConversationPreview(
                label=label,
                snippet=await _child_text(item, CONVERSATION_SNIPPET),
                display_timestamp=await _child_text(item, CONVERSATION_TIMESTAMP),
                unread=unread,
            )
        )
    return previews


async def _message_timestamp(entry: Any) -> str:
    status = await entry.query_selector(MESSAGE_STATUS)
    if status is None:
        return ""
    fine = await status.query_selector(MESSAGE_FINE_TIMESTAMP)
    if fine is not None:
        return await _text_of(fine)
    return await _text_of(status)


async def extract_messages(page: Any) -> list[ThreadMessage]:
    """Read the open thread in document order, which is its chronological order."""
    messages: list[ThreadMessage] = []
    for entry in await page.query_selector_all(MESSAGE_ENTRY):
        # Substring match on the raw class attribute; "outgoing-message" counts as outgoing
        classes = await _class_attr(entry)
        if Direction.OUTGOING.value in classes:
            direction = Direction.OUTGOING
        elif Direction.INCOMING.value in classes:
            direction = Direction.INCOMING
        else:
            direction = Direction.UNKNOWN
        messages.append(
            ThreadMessage(
                sender=SenderRole.for_direction(direction),
                text=await _child_text(entry, MESSAGE_CONTENT),
                display_timestamp=await _message_timestamp(entry),
                direction=direction,
            )
        )
    return messages

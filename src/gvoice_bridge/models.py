"""SQLModel tables for inbox summaries and campaigns, plus the ephemeral records
materialized from the web client on every extraction."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from .utils import utcnow_naive


class InboxSummary(SQLModel, table=True):
    """Latest observed preview of one conversation in one account's inbox.

    One row per (backend_id, account_index, phone_number); each sync overwrites
    the snippet, unread flag and timestamps, no history is kept.
    """

    __tablename__ = "inboxes"
    __table_args__ = (
        UniqueConstraint("backend_id", "account_index", "phone_number", name="uq_inbox_natural_key"),
        Index("idx_inboxes_backend_account", "backend_id", "account_index"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    backend_id: str = Field(max_length=128)
    account_index: int
    phone_number: str = Field(max_length=32)  # normalized, no plus sign
    last_message: str = Field(default="")
    # Time the sync observed the preview, not the message time shown in the UI
    last_message_timestamp: datetime = Field(default_factory=utcnow_naive)
    unread_count: int = Field(default=0)  # 1 when the entry is flagged unread, else 0
    updated_at: datetime = Field(default_factory=utcnow_naive)


class Campaign(SQLModel, table=True):
    """Outbound campaign; an ``active`` one suspends background inbox sweeps."""

    __tablename__ = "campaigns"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(default="", max_length=255)
    status: str = Field(default="draft", max_length=16, index=True)  # draft | active | paused | done
    created_at: datetime = Field(default_factory=utcnow_naive)


class Direction(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"
    UNKNOWN = ""


class SenderRole(str, Enum):
    SELF = "You"
    COUNTERPARTY = "Contact"
    UNKNOWN = ""

    @classmethod
    def for_direction(cls, direction: Direction) -> "SenderRole":
        if direction is Direction.OUTGOING:
            return cls.SELF
        if direction is Direction.INCOMING:
            return cls.COUNTERPARTY
        return cls.UNKNOWN


@dataclass(slots=True, frozen=True)
class ConversationPreview:
    label: str  # participant label as displayed, usually a formatted phone number
    snippet: str
    display_timestamp: str
    unread: bool


@dataclass(slots=True, frozen=True)
class ThreadMessage:
    sender: SenderRole
    text: str
    display_timestamp: str
    direction: Direction

    def to_payload(self) -> dict[str, Any]:
        return {
            "from": self.sender.value,
            "text": self.text,
            "time": self.display_timestamp,
            "direction": self.direction.value,
        }

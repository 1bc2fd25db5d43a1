"""Persistence for inbox summaries and the campaign exclusivity signal."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from .db import ensure_schema, get_engine, get_session, retry_on_db_lock
from .errors import StoreWriteFailed
from .models import Campaign, InboxSummary
from .utils import utcnow_naive

ACTIVE_CAMPAIGN_STATUS = "active"
_NATURAL_KEY = ("backend_id", "account_index", "phone_number")


def _insert_for(dialect_name: str) -> Any:
    if dialect_name == "postgresql":
        return pg_insert
    return sqlite_insert


@retry_on_db_lock()
async def _execute_upsert(values: dict[str, Any]) -> None:
    async with get_session() as session:
        insert = _insert_for(get_engine().dialect.name)
        stmt = insert(InboxSummary).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_NATURAL_KEY),
            set_={
                "last_message": stmt.excluded.last_message,
                "last_message_timestamp": stmt.excluded.last_message_timestamp,
                "unread_count": stmt.excluded.unread_count,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)
        await session.commit()


async def upsert_inbox_summary(
    *,
    backend_id: str,
    account_index: int,
    phone_number: str,
    last_message: str,
    unread: bool,
    observed_at: Optional[datetime] = None,
) -> None:
    """Insert or overwrite the summary row for one natural key (last writer wins)."""
    now = observed_at or utcnow_naive()
    values = {
        "backend_id": backend_id,
        "account_index": account_index,
        "phone_number": phone_number,
        "last_message": last_message,
        "last_message_timestamp": now,
        "unread_count": 1 if unread else 0,
        "updated_at": now,
    }
    try:
        await ensure_schema()
        await _execute_upsert(values)
    except SQLAlchemyError as exc:
        raise StoreWriteFailed(
            f"Failed to upsert inbox row for {phone_number}: {exc}",
            data={"account_index": account_index, "phone_number": phone_number},
        ) from exc


async def exclusive_activity_active() -> bool:
    """True while any campaign is running; background sweeps yield to it."""
    await ensure_schema()
    async with get_session() as session:
        result = await session.execute(
            select(Campaign.id).where(Campaign.status == ACTIVE_CAMPAIGN_STATUS).limit(1)
        )
        return result.first() is not None


async def list_inbox_summaries(
    *,
    backend_id: Optional[str] = None,
    account_index: Optional[int] = None,
) -> Sequence[InboxSummary]:
    await ensure_schema()
    stmt = select(InboxSummary)
    if backend_id is not None:
        stmt = stmt.where(InboxSummary.backend_id == backend_id)
    if account_index is not None:
        stmt = stmt.where(InboxSummary.account_index == account_index)
    stmt = stmt.order_by(InboxSummary.account_index, InboxSummary.updated_at.desc())
    async with get_session() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())

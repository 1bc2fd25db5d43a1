from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from gvoice_bridge import store
from gvoice_bridge.db import ensure_schema, get_session
from gvoice_bridge.errors import StoreWriteFailed
from gvoice_bridge.models import Campaign
from gvoice_bridge.store import exclusive_activity_active, list_inbox_summaries, upsert_inbox_summary


@pytest.mark.asyncio
async def test_upsert_is_idempotent_per_natural_key(isolated_env):
    t0 = datetime(2024, 5, 1, 12, 0, 0)
    t1 = t0 + timedelta(minutes=10)

    await upsert_inbox_summary(
        backend_id="b1", account_index=0, phone_number="15551234567", last_message="first", unread=True, observed_at=t0
    )
    await upsert_inbox_summary(
        backend_id="b1", account_index=0, phone_number="15551234567", last_message="second", unread=False, observed_at=t1
    )

    rows = await list_inbox_summaries()
    assert len(rows) == 1
    row = rows[0]
    assert row.last_message == "second"
    assert row.unread_count == 0
    assert row.updated_at == t1
    assert row.last_message_timestamp == t1


@pytest.mark.asyncio
async def test_natural_key_distinguishes_backend_and_account(isolated_env):
    for backend_id, account_index in [("b1", 0), ("b1", 1), ("b2", 0)]:
        await upsert_inbox_summary(
            backend_id=backend_id,
            account_index=account_index,
            phone_number="15551234567",
            last_message="hi",
            unread=False,
        )

    assert len(await list_inbox_summaries()) == 3
    assert [r.account_index for r in await list_inbox_summaries(backend_id="b1")] == [0, 1]
    assert sorted(r.backend_id for r in await list_inbox_summaries(account_index=0)) == ["b1", "b2"]
    assert len(await list_inbox_summaries(backend_id="b2", account_index=1)) == 0


@pytest.mark.asyncio
async def test_upsert_failure_is_wrapped(isolated_env, monkeypatch):
    async def locked(values):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "_execute_upsert", locked)

    with pytest.raises(StoreWriteFailed) as excinfo:
        await upsert_inbox_summary(
            backend_id="b1", account_index=2, phone_number="15550000000", last_message="x", unread=False
        )

    assert excinfo.value.data == {"account_index": 2, "phone_number": "15550000000"}


@pytest.mark.asyncio
async def test_exclusive_activity_tracks_active_campaigns(isolated_env):
    assert await exclusive_activity_active() is False

    await ensure_schema()
    async with get_session() as session:
        campaign = Campaign(name="promo", status="draft")
        session.add(campaign)
        await session.commit()
        assert await exclusive_activity_active() is False

        campaign.status = "active"
        session.add(campaign)
        await session.commit()

    assert await exclusive_activity_active() is True

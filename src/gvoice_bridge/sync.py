"""Periodic reconciliation of every account's inbox previews into the store."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from .config import Settings
from .errors import StoreWriteFailed
from .extraction import extract_conversation_list
from .models import ConversationPreview
from .navigator import SessionNavigator
from .session import SessionArbiter, SessionGrant
from .store import exclusive_activity_active, upsert_inbox_summary
from .utils import normalize_phone, utcnow_naive

logger = structlog.get_logger("sync")

SKIP_EXCLUSIVE_ACTIVITY = "exclusive_activity"
SKIP_GUARD_UNAVAILABLE = "guard_unavailable"
SKIP_SESSION_NOT_READY = "session_not_ready"


@dataclass(slots=True)
class AccountOutcome:
    account_index: int
    entries: int = 0
    written: int = 0
    skipped: int = 0
    row_failures: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class SweepReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None
    accounts: list[AccountOutcome] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def failed_accounts(self) -> list[int]:
        return [outcome.account_index for outcome in self.accounts if not outcome.ok]

    @property
    def rows_written(self) -> int:
        return sum(outcome.written for outcome in self.accounts)


class InboxSynchronizer:
    """Sweeps account inboxes through the arbiter and upserts one row per preview.

    A failing account or row is logged and the sweep moves on. The background
    task skips a tick, rather than queuing one, while a sweep is still running.
    """

    def __init__(
        self,
        arbiter: SessionArbiter,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow_naive,
    ):
        self.arbiter = arbiter
        self.settings = settings
        self._clock = clock
        self._sweeping = False
        self._task: Optional[asyncio.Task[Any]] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    def account_indices(self) -> range:
        return range(self.settings.sync.account_count)

    async def sweep(self, account_indices: Optional[Iterable[int]] = None) -> SweepReport:
        report = SweepReport(started_at=self._clock())
        skip_reason = await self._skip_reason()
        if skip_reason is not None:
            report.skipped_reason = skip_reason
            report.finished_at = self._clock()
            logger.info("sync_sweep_skipped", reason=skip_reason)
            self.last_report = report
            return report

        indices = list(self.account_indices() if account_indices is None else account_indices)
        for account_index in indices:
            outcome = AccountOutcome(account_index=account_index)
            report.accounts.append(outcome)
            try:
                await self.sync_account(account_index, outcome)
            except Exception as exc:
                outcome.error = str(exc) or type(exc).__name__
                logger.error(
                    "sync_account_failed",
                    account_index=account_index,
                    error=outcome.error,
                    error_type=type(exc).__name__,
                )
            else:
                logger.info(
                    "sync_account_updated",
                    account_index=account_index,
                    entries=outcome.entries,
                    written=outcome.written,
                )
        report.finished_at = self._clock()
        logger.info(
            "sync_sweep_finished",
            accounts=len(indices),
            rows_written=report.rows_written,
            failed_accounts=report.failed_accounts,
        )
        self.last_report = report
        if self.settings.log_rich_enabled:
            from . import rich_logger

            rich_logger.render_sweep_report(report)
        return report

    async def _skip_reason(self) -> Optional[str]:
        if not self.arbiter.session_ready:
            return SKIP_SESSION_NOT_READY
        if not self.settings.sync.campaign_guard_enabled:
            return None
        try:
            if await exclusive_activity_active():
                return SKIP_EXCLUSIVE_ACTIVITY
        except Exception as exc:
            logger.error("sync_guard_failed", error=str(exc))
            return SKIP_GUARD_UNAVAILABLE
        return None

    async def sync_account(self, account_index: int, outcome: Optional[AccountOutcome] = None) -> AccountOutcome:
        outcome = outcome or AccountOutcome(account_index=account_index)

        async def _unit(grant: SessionGrant) -> None:
            navigator = SessionNavigator(grant, self.settings.browser)
            await navigator.go_to_inbox(account_index)
            previews = await extract_conversation_list(grant.page)
            outcome.entries = len(previews)
            for preview in previews:
                await self._store_preview(account_index, preview, outcome)

        await self.arbiter.run("sync", _unit, account_index=account_index)
        return outcome

    async def _store_preview(self, account_index: int, preview: ConversationPreview, outcome: AccountOutcome) -> None:
        phone_number = normalize_phone(preview.label)
        if not phone_number:
            outcome.skipped += 1
            logger.debug("sync_entry_unidentifiable", account_index=account_index, label=preview.label)
            return
        try:
            await upsert_inbox_summary(
                backend_id=self.settings.backend_id,
                account_index=account_index,
                phone_number=phone_number,
                last_message=preview.snippet,
                unread=preview.unread,
                observed_at=self._clock(),
            )
        except StoreWriteFailed as exc:
            outcome.row_failures += 1
            logger.error(
                "sync_upsert_failed",
                account_index=account_index,
                phone_number=phone_number,
                error=str(exc),
            )
        else:
            outcome.written += 1

    async def tick(self) -> Optional[SweepReport]:
        if self._sweeping:
            logger.info("sync_tick_skipped", reason="previous_sweep_running")
            return None
        self._sweeping = True
        try:
            return await self.sweep()
        finally:
            self._sweeping = False

    def start(self) -> asyncio.Task[Any]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_forever())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run_forever(self) -> None:
        sync_settings = self.settings.sync
        if sync_settings.run_on_startup:
            await self.arbiter.wait_until_ready()
            await asyncio.sleep(sync_settings.initial_delay_seconds)
            await self._guarded_tick()
        while True:
            await asyncio.sleep(sync_settings.interval_seconds)
            await self._guarded_tick()

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception as exc:
            logger.error("sync_tick_failed", error=str(exc), error_type=type(exc).__name__)

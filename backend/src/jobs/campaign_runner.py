"""
Campaign Runner - background dispatch and periodic campaign jobs.

DispatchRunner owns the in-process asyncio tasks that send campaigns. A
route submits a campaign and returns immediately; `wait(campaign_id)` is the
completion signal for anyone that needs the dispatch result.

Scheduled jobs (registered with the APScheduler SchedulerManager):
1. Receipt-timeout sweep: messages left `sent` past
   settings.receipt_timeout_seconds are forced to `failed`, as are `pending`
   messages of campaigns no runner in this process is dispatching; then the
   completion check runs for every sending campaign
2. Due campaigns: `scheduled` campaigns whose time has come are claimed
   (moved to `sending`) and dispatched

Both jobs are synchronous for APScheduler compatibility; the dispatch job
wraps its async body with asyncio.run.
"""
import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Set
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from src.api.middleware.error_handler import AppException, ReconciliationConflict
from src.jobs.scheduler import with_job_lock
from src.lib.db import SessionLocal, get_db_context
from src.lib.logging import get_correlation_id, get_logger, log_context
from src.lib.settings import settings
from src.models.campaigns import Campaign, CampaignStatus
from src.services.delivery_provider import (
    DeliveryProvider,
    DeliveryReceipt,
    create_delivery_provider,
)
from src.services.dispatch_service import DispatchEngine, DispatchSummary
from src.services.receipt_reconciler import ReceiptReconciler

logger = get_logger(__name__)

# Campaign ids some DispatchRunner in this process is sending right now
_active_campaigns: Set[int] = set()
_active_lock = threading.Lock()


def active_dispatches() -> FrozenSet[int]:
    with _active_lock:
        return frozenset(_active_campaigns)


class DispatchRunner:
    """
    Runs campaign dispatches as background asyncio tasks.

    Each dispatch gets its own database session and runs under the
    correlation id of the request that submitted it.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        provider: Optional[DeliveryProvider] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider or create_delivery_provider(receipt_sink=self.apply_receipt)
        self._tasks: Dict[int, asyncio.Task] = {}

    def submit(self, campaign_id: int) -> asyncio.Task:
        """Start dispatching a campaign; a running dispatch is returned as-is."""
        existing = self._tasks.get(campaign_id)
        if existing is not None and not existing.done():
            return existing

        correlation_id = get_correlation_id() or str(uuid4())
        task = asyncio.create_task(
            self._run(campaign_id, correlation_id),
            name=f"dispatch-campaign-{campaign_id}",
        )
        task.add_done_callback(self._on_done)
        self._tasks[campaign_id] = task
        return task

    async def wait(self, campaign_id: int) -> Optional[DispatchSummary]:
        """
        Wait for a submitted dispatch to finish.

        Returns:
            The dispatch summary, or None if the campaign was never submitted

        Raises:
            AppException: whatever the dispatch raised
        """
        task = self._tasks.get(campaign_id)
        if task is None:
            return None
        return await task

    def is_running(self, campaign_id: int) -> bool:
        task = self._tasks.get(campaign_id)
        return task is not None and not task.done()

    async def _run(self, campaign_id: int, correlation_id: str) -> Optional[DispatchSummary]:
        with _active_lock:
            _active_campaigns.add(campaign_id)
        try:
            return await self._dispatch(campaign_id, correlation_id)
        finally:
            with _active_lock:
                _active_campaigns.discard(campaign_id)

    async def _dispatch(self, campaign_id: int, correlation_id: str) -> Optional[DispatchSummary]:
        with log_context(correlation_id=correlation_id, campaign_id=campaign_id):
            with self.session_factory() as db:
                campaign = db.get(Campaign, campaign_id)
                if campaign is None:
                    logger.warning(f"Campaign {campaign_id} disappeared before dispatch")
                    return None

                try:
                    summary = await DispatchEngine(db, self.provider).dispatch(campaign)
                except AppException as e:
                    logger.error(
                        f"Dispatch of campaign {campaign_id} failed: {e.message}",
                        extra={"details": e.details},
                    )
                    raise

            logger.info(
                "Dispatch finished",
                extra={
                    "total_messages": summary.total_messages,
                    "sent_messages": summary.sent_messages,
                    "failed_messages": summary.failed_messages,
                },
            )
            return summary

    def _on_done(self, task: asyncio.Task) -> None:
        # Mark the exception retrieved; it was logged in _run and re-raised by wait()
        if not task.cancelled():
            task.exception()

    async def apply_receipt(self, receipt: DeliveryReceipt) -> None:
        """Receipt sink for in-process providers."""
        with get_db_context(self.session_factory) as db:
            try:
                ReceiptReconciler(db).apply_receipt(
                    receipt.message_id,
                    receipt.outcome,
                    occurred_at=receipt.occurred_at,
                    vendor_message_id=receipt.vendor_message_id,
                    failure_reason=receipt.failure_reason,
                )
            except ReconciliationConflict as e:
                logger.warning(e.message, extra=e.details)

    async def aclose(self) -> None:
        """Wait for running dispatches and pending receipts, then release the provider."""
        running = [task for task in self._tasks.values() if not task.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        drain = getattr(self.provider, "drain", None)
        if drain is not None:
            await drain()
        await self.provider.aclose()


_dispatch_runner: Optional[DispatchRunner] = None


def get_dispatch_runner() -> DispatchRunner:
    """Get the process-wide dispatch runner used by the API."""
    global _dispatch_runner
    if _dispatch_runner is None:
        _dispatch_runner = DispatchRunner()
    return _dispatch_runner


async def close_dispatch_runner() -> None:
    """Drain and release the process-wide runner, if one was created."""
    global _dispatch_runner
    if _dispatch_runner is not None:
        await _dispatch_runner.aclose()
        _dispatch_runner = None


# ============================================================================
# Scheduled Jobs
# ============================================================================


@with_job_lock("receipt_timeout_sweep")
def sweep_overdue_receipts(
    session_factory: sessionmaker = SessionLocal,
    timeout_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Expire messages that never received a delivery receipt, and pending
    messages that a dispatch no longer running left behind.

    Returns:
        {"expired_messages": int, "finalized_campaigns": [campaign ids]}
    """
    timeout = timeout_seconds or settings.receipt_timeout_seconds

    with log_context(correlation_id=str(uuid4()), job="receipt_timeout_sweep"):
        with get_db_context(session_factory) as db:
            result = ReceiptReconciler(db).expire_overdue_receipts(
                timeout, active_campaign_ids=active_dispatches()
            )

    return {
        "expired_messages": result.expired_messages,
        "finalized_campaigns": result.finalized_campaigns,
    }


def claim_due_campaigns(db: Session, now: Optional[datetime] = None) -> List[int]:
    """
    Move due scheduled campaigns to sending.

    Each claim is a conditional UPDATE, so a campaign is only ever claimed once.
    """
    now = now or datetime.now(timezone.utc)
    due = db.execute(
        select(Campaign.id)
        .where(Campaign.status == CampaignStatus.SCHEDULED, Campaign.scheduled_at <= now)
        .order_by(Campaign.scheduled_at, Campaign.id)
    ).scalars().all()

    claimed = []
    for campaign_id in due:
        result = db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == CampaignStatus.SCHEDULED)
            .values(status=CampaignStatus.SENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            claimed.append(campaign_id)

    return claimed


async def dispatch_due_campaigns(
    runner: Optional[DispatchRunner] = None,
    session_factory: sessionmaker = SessionLocal,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    Claim and dispatch every due scheduled campaign.

    Returns:
        Ids of the campaigns that were dispatched
    """
    owns_runner = runner is None
    runner = runner or DispatchRunner(session_factory=session_factory)

    with get_db_context(session_factory) as db:
        claimed = claim_due_campaigns(db, now)

    if claimed:
        logger.info(f"Dispatching {len(claimed)} scheduled campaigns", extra={"campaign_ids": claimed})

    try:
        for campaign_id in claimed:
            runner.submit(campaign_id)
        for campaign_id in claimed:
            try:
                await runner.wait(campaign_id)
            except AppException:
                # Logged by the runner; the campaign is already marked failed
                continue
    finally:
        if owns_runner:
            await runner.aclose()

    return claimed


@with_job_lock("scheduled_campaign_dispatch")
def dispatch_due_campaigns_sync() -> List[int]:
    """
    Synchronous wrapper for APScheduler compatibility.

    APScheduler expects synchronous functions, so this wrapper
    creates an event loop and runs the async dispatch function.
    """
    return asyncio.run(dispatch_due_campaigns())


# ============================================================================
# Scheduler Registration
# ============================================================================


def register_campaign_jobs(scheduler_manager):
    """
    Register campaign jobs with the scheduler.

    Args:
        scheduler_manager: SchedulerManager instance from get_scheduler()

    Example:
        from src.jobs.scheduler import get_scheduler
        from src.jobs.campaign_runner import register_campaign_jobs

        scheduler = get_scheduler()
        register_campaign_jobs(scheduler)
        scheduler.start()
    """
    logger.info("Registering campaign jobs")

    scheduler_manager.add_interval_job(
        func=sweep_overdue_receipts,
        job_id="receipt_timeout_sweep",
        minutes=settings.receipt_sweep_interval_minutes,
    )
    scheduler_manager.add_interval_job(
        func=dispatch_due_campaigns_sync,
        job_id="scheduled_campaign_dispatch",
        minutes=1,
    )

    logger.info("Campaign jobs registered")

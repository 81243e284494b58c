"""
Receipt reconciler.

Single owner of message and campaign status transitions:
- Dispatch-time outcomes (provider accepted / rejected)
- Out-of-band delivery receipts from the vendor
- Receipt-timeout expiry
- Campaign completion

Every message transition is one conditional UPDATE guarded by the allowed
predecessor statuses, so status only ever moves up the
pending -> sent -> terminal ladder no matter how callers race. Campaign
completion is likewise one conditional UPDATE; the caller whose UPDATE
matched the row is the single finalizer.
"""
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Collection, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from src.api.middleware.error_handler import (
    BadRequestException,
    NotFoundException,
    ReconciliationConflict,
)
from src.lib.logging import get_logger
from src.lib.metrics import get_metrics_collector
from src.models.campaigns import Campaign, CampaignStatus
from src.models.messages import DeliveryStatus, Message, PROCESSED_STATUSES

logger = get_logger(__name__)


# Statuses a message may be in for the UPDATE to the key status to apply
ALLOWED_PREDECESSORS: Dict[DeliveryStatus, Tuple[DeliveryStatus, ...]] = {
    DeliveryStatus.SENT: (DeliveryStatus.PENDING,),
    DeliveryStatus.DELIVERED: (DeliveryStatus.PENDING, DeliveryStatus.SENT),
    DeliveryStatus.FAILED: (DeliveryStatus.PENDING, DeliveryStatus.SENT),
    DeliveryStatus.BOUNCED: (DeliveryStatus.PENDING, DeliveryStatus.SENT),
}

DEFAULT_FAILURE_REASONS = {
    DeliveryStatus.FAILED: "Delivery failed",
    DeliveryStatus.BOUNCED: "Message bounced",
}


class KeyedLock:
    """Per-key mutex; one lock per campaign id, created on demand."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, key: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
        with lock:
            yield


# Shared by every reconciler in the process (one per request/job session)
_campaign_locks = KeyedLock()


@dataclass
class ReceiptResult:
    """Outcome of applying one delivery receipt."""
    message_id: int
    campaign_id: int
    status: DeliveryStatus
    applied: bool
    duplicate: bool = False
    campaign_finalized: bool = False


@dataclass
class SweepResult:
    """Outcome of one receipt-timeout sweep."""
    expired_messages: int = 0
    finalized_campaigns: List[int] = field(default_factory=list)


class ReceiptReconciler:
    """Applies message outcomes and decides campaign completion."""

    def __init__(self, db_session: Session, locks: Optional[KeyedLock] = None):
        self.db = db_session
        self.locks = locks or _campaign_locks

    # ===== Message transitions =====

    def transition(
        self,
        message_id: int,
        target: DeliveryStatus,
        occurred_at: Optional[datetime] = None,
        vendor_message_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """
        Move a message to `target` if its current status allows it.

        Returns:
            True if the row changed, False if the guard rejected the move
        """
        now = datetime.now(timezone.utc)
        when = occurred_at or now

        values = {"status": target, "updated_at": now}
        if target is DeliveryStatus.SENT:
            values["sent_at"] = when
        elif target is DeliveryStatus.DELIVERED:
            values["delivered_at"] = when
        else:
            values["failure_reason"] = failure_reason or DEFAULT_FAILURE_REASONS[target]
        if vendor_message_id:
            values["vendor_message_id"] = vendor_message_id

        stmt = (
            update(Message)
            .where(
                Message.id == message_id,
                Message.status.in_(ALLOWED_PREDECESSORS[target]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        self.db.expire_all()
        return result.rowcount == 1

    def record_send_outcome(
        self,
        message_id: int,
        campaign_id: int,
        accepted: bool,
        vendor_message_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Apply the provider's immediate answer for one message.

        A receipt may already have moved the message to a terminal status, in
        which case this is a no-op and returns False.
        """
        if accepted:
            applied = self.transition(
                message_id,
                DeliveryStatus.SENT,
                vendor_message_id=vendor_message_id,
            )
        else:
            applied = self.transition(
                message_id,
                DeliveryStatus.FAILED,
                failure_reason=reason or "Provider rejected message",
            )

        if applied:
            self.finalize_if_complete(campaign_id)
        return applied

    def apply_receipt(
        self,
        message_id: int,
        outcome: DeliveryStatus,
        occurred_at: Optional[datetime] = None,
        vendor_message_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> ReceiptResult:
        """
        Apply an out-of-band delivery receipt.

        Raises:
            BadRequestException: outcome is not a terminal status
            NotFoundException: unknown message
            ReconciliationConflict: a different terminal outcome is already recorded
        """
        outcome = DeliveryStatus(outcome)
        metrics = get_metrics_collector()
        if not outcome.is_terminal:
            raise BadRequestException(
                f"Receipt outcome must be delivered, failed or bounced, got '{outcome.value}'"
            )

        campaign_id = self.db.execute(
            select(Message.campaign_id).where(Message.id == message_id)
        ).scalar_one_or_none()
        if campaign_id is None:
            raise NotFoundException("Message", message_id)

        applied = self.transition(
            message_id,
            outcome,
            occurred_at=occurred_at,
            vendor_message_id=vendor_message_id,
            failure_reason=failure_reason,
        )

        if not applied:
            current = self._current_status(message_id)
            if current is outcome:
                metrics.increment_receipts(outcome.value, "duplicate")
                logger.info(
                    f"Duplicate receipt for message {message_id} ignored",
                    extra={"message_id": message_id, "outcome": outcome.value},
                )
                return ReceiptResult(
                    message_id=message_id,
                    campaign_id=campaign_id,
                    status=current,
                    applied=False,
                    duplicate=True,
                )

            metrics.increment_receipts(outcome.value, "conflict")
            raise ReconciliationConflict(message_id, current.value, outcome.value)

        metrics.increment_receipts(outcome.value, "applied")
        finalized = self.finalize_if_complete(campaign_id)
        return ReceiptResult(
            message_id=message_id,
            campaign_id=campaign_id,
            status=outcome,
            applied=True,
            campaign_finalized=finalized,
        )

    def _current_status(self, message_id: int) -> DeliveryStatus:
        return self.db.execute(
            select(Message.status).where(Message.id == message_id)
        ).scalar_one()

    # ===== Campaign transitions =====

    def finalize_if_complete(self, campaign_id: int, allow_empty: bool = False) -> bool:
        """
        Mark a sending campaign as sent once every message is processed.

        Processed means sent, delivered, failed or bounced. A campaign with no
        messages is only finalized when `allow_empty` is set (empty audience
        at dispatch time).

        Returns:
            True for exactly one caller per campaign
        """
        total = (
            select(func.count())
            .select_from(Message)
            .where(Message.campaign_id == campaign_id)
            .scalar_subquery()
        )
        processed = (
            select(func.count())
            .select_from(Message)
            .where(
                Message.campaign_id == campaign_id,
                Message.status.in_(PROCESSED_STATUSES),
            )
            .scalar_subquery()
        )

        conditions = [
            Campaign.id == campaign_id,
            Campaign.status == CampaignStatus.SENDING,
            processed == total,
        ]
        if not allow_empty:
            conditions.append(total > 0)

        now = datetime.now(timezone.utc)
        stmt = (
            update(Campaign)
            .where(*conditions)
            .values(status=CampaignStatus.SENT, sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        with self.locks.hold(campaign_id):
            result = self.db.execute(stmt)
            self.db.commit()
        self.db.expire_all()

        finalized = result.rowcount == 1
        if finalized:
            get_metrics_collector().increment_campaigns("completed")
            logger.info(f"Campaign {campaign_id} completed", extra={"campaign_id": campaign_id})
        return finalized

    def fail_campaign(self, campaign_id: int, reason: str) -> bool:
        """Move a sending campaign to failed. Message rows are left as they are."""
        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == CampaignStatus.SENDING)
            .values(status=CampaignStatus.FAILED, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        with self.locks.hold(campaign_id):
            result = self.db.execute(stmt)
            self.db.commit()
        self.db.expire_all()

        failed = result.rowcount == 1
        if failed:
            get_metrics_collector().increment_campaigns("failed")
            logger.error(
                f"Campaign {campaign_id} failed: {reason}",
                extra={"campaign_id": campaign_id},
            )
        return failed

    # ===== Receipt timeout =====

    def expire_overdue_receipts(
        self,
        timeout_seconds: int,
        now: Optional[datetime] = None,
        active_campaign_ids: Collection[int] = (),
    ) -> SweepResult:
        """
        Force overdue messages to `failed`, then run the completion check on
        every campaign that is still sending.

        Overdue means stuck in `sent` past the timeout, or left `pending` past
        the timeout by a dispatch that is no longer running. Campaigns in
        `active_campaign_ids` are being dispatched right now, so their pending
        messages are left alone.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=timeout_seconds)
        result = SweepResult()

        overdue = self.db.execute(
            select(Message.id).where(
                Message.status == DeliveryStatus.SENT,
                Message.sent_at < cutoff,
            )
        ).scalars().all()
        self._expire(overdue, f"No delivery receipt within {timeout_seconds}s", result)

        abandoned_query = (
            select(Message.id)
            .join(Campaign, Campaign.id == Message.campaign_id)
            .where(
                Message.status == DeliveryStatus.PENDING,
                Message.created_at < cutoff,
                Campaign.status == CampaignStatus.SENDING,
            )
        )
        if active_campaign_ids:
            abandoned_query = abandoned_query.where(Message.campaign_id.not_in(list(active_campaign_ids)))
        abandoned = self.db.execute(abandoned_query).scalars().all()
        self._expire(abandoned, f"Not handed to the provider within {timeout_seconds}s", result)

        sending = self.db.execute(
            select(Campaign.id).where(Campaign.status == CampaignStatus.SENDING)
        ).scalars().all()
        for campaign_id in sending:
            if self.finalize_if_complete(campaign_id):
                result.finalized_campaigns.append(campaign_id)

        if result.expired_messages or result.finalized_campaigns:
            logger.info(
                f"Receipt sweep expired {result.expired_messages} messages",
                extra={"finalized_campaigns": result.finalized_campaigns},
            )
        return result

    def _expire(self, message_ids: List[int], reason: str, result: SweepResult) -> None:
        for message_id in message_ids:
            if self.transition(message_id, DeliveryStatus.FAILED, failure_reason=reason):
                result.expired_messages += 1
                get_metrics_collector().increment_receipts(DeliveryStatus.FAILED.value, "expired")

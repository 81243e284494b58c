"""
Campaign dispatch engine.

Fans a campaign out to its segment's current audience:
1. Re-compile the segment rules and resolve the audience
2. Persist one pending message per recipient, before any send
3. Submit every message to the delivery provider with bounded concurrency

Send outcomes are handed to the receipt reconciler, which owns every status
transition and decides when the campaign is complete.
"""
import asyncio
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.api.middleware.error_handler import (
    ConflictException,
    PersistenceError,
    RuleValidationError,
)
from src.lib.logging import get_logger
from src.lib.metrics import get_metrics_collector
from src.lib.settings import settings
from src.models.campaigns import Campaign, CampaignStatus
from src.models.customers import Customer
from src.models.messages import DeliveryStatus, Message
from src.models.segments import Segment
from src.services.delivery_provider import DeliveryProvider, ProviderError, ProviderResult
from src.services.predicate_compiler import compile_segment_rules
from src.services.receipt_reconciler import ReceiptReconciler
from src.services.segmentation_service import AudienceResolver

logger = get_logger(__name__)


PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


def _iso_date(value) -> Optional[str]:
    return value.date().isoformat() if value is not None else None


_PLACEHOLDERS: Dict[str, Callable[[Customer], Optional[object]]] = {
    "name": lambda c: c.name,
    "email": lambda c: c.email,
    "phone": lambda c: c.phone,
    "total_spent": lambda c: f"{c.total_spent:.2f}" if c.total_spent is not None else None,
    "total_orders": lambda c: c.total_orders,
    "status": lambda c: getattr(c.status, "value", c.status),
    "last_visit": lambda c: _iso_date(c.last_visit),
    "registration_date": lambda c: _iso_date(c.registration_date),
}

TEMPLATE_PLACEHOLDERS = tuple(_PLACEHOLDERS)


def render_message(template: str, customer: Customer) -> str:
    """
    Personalize a message template for one customer.

    Known placeholders are substituted (missing values render empty);
    unknown ones such as `{coupon}` are left verbatim.
    """
    def _substitute(match: re.Match) -> str:
        renderer = _PLACEHOLDERS.get(match.group(1))
        if renderer is None:
            return match.group(0)
        value = renderer(customer)
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


@dataclass
class DispatchSummary:
    """Counts for one dispatch run, taken from the provider's immediate answers."""
    campaign_id: int
    total_messages: int = 0
    sent_messages: int = 0
    failed_messages: int = 0


class DispatchEngine:
    """Sends one campaign to its audience."""

    def __init__(
        self,
        db_session: Session,
        provider: DeliveryProvider,
        reconciler: Optional[ReceiptReconciler] = None,
        concurrency: Optional[int] = None,
        batch_size: int = 500,
    ):
        self.db = db_session
        self.provider = provider
        self.reconciler = reconciler or ReceiptReconciler(db_session)
        self.concurrency = concurrency or settings.dispatch_concurrency
        self.batch_size = batch_size

    async def dispatch(self, campaign: Campaign, segment: Optional[Segment] = None) -> DispatchSummary:
        """
        Dispatch a sending campaign.

        Raises:
            ConflictException: campaign is not sending or was already dispatched
            PersistenceError: audience could not be resolved or stored; the
                campaign is marked failed and stored messages are kept
        """
        campaign_id = campaign.id
        segment = segment or campaign.segment
        template = campaign.message_template

        if campaign.status != CampaignStatus.SENDING:
            raise ConflictException(
                f"Campaign {campaign_id} is not sending",
                details={"campaign_id": campaign_id, "status": campaign.status.value},
            )
        if self._message_count(campaign_id):
            raise ConflictException(
                f"Campaign {campaign_id} was already dispatched",
                details={"campaign_id": campaign_id},
            )

        metrics = get_metrics_collector()
        metrics.increment_campaigns("dispatched")
        started = time.perf_counter()

        try:
            compiled = compile_segment_rules(segment.rules)
        except RuleValidationError as e:
            self.reconciler.fail_campaign(campaign_id, e.message)
            raise

        try:
            customers = AudienceResolver(self.db).matching_customers(compiled)
            outbox = self._persist_messages(campaign_id, template, customers)
        except SQLAlchemyError as e:
            self.db.rollback()
            self._fail(campaign_id, e)
            raise PersistenceError(
                "Failed to store campaign audience",
                details={"campaign_id": campaign_id},
            ) from e

        summary = DispatchSummary(campaign_id=campaign_id, total_messages=len(outbox))
        logger.info(
            f"Dispatching campaign {campaign_id} to {summary.total_messages} customers",
            extra={"campaign_id": campaign_id, "segment_id": segment.id},
        )

        if not outbox:
            self.reconciler.finalize_if_complete(campaign_id, allow_empty=True)
            metrics.observe_dispatch_duration(time.perf_counter() - started)
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [
            asyncio.create_task(self._send_one(semaphore, campaign_id, message_id, customer_id, content))
            for message_id, customer_id, content in outbox
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException as e:
            # No provider call may start once the batch is abandoned
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if not isinstance(e, SQLAlchemyError):
                raise
            self.db.rollback()
            self._fail(campaign_id, e)
            raise PersistenceError(
                "Failed to record send outcomes",
                details={"campaign_id": campaign_id},
            ) from e

        summary.sent_messages = sum(1 for accepted in outcomes if accepted)
        summary.failed_messages = summary.total_messages - summary.sent_messages
        metrics.observe_dispatch_duration(time.perf_counter() - started)

        logger.info(
            f"Campaign {campaign_id} dispatched: {summary.sent_messages} sent, "
            f"{summary.failed_messages} failed",
            extra={"campaign_id": campaign_id},
        )
        return summary

    def _message_count(self, campaign_id: int) -> int:
        return self.db.execute(
            select(func.count()).select_from(Message).where(Message.campaign_id == campaign_id)
        ).scalar_one()

    def _persist_messages(
        self,
        campaign_id: int,
        template: str,
        customers: List[Customer],
    ) -> List[Tuple[int, int, str]]:
        """Insert pending messages in committed batches; returns (id, customer_id, content)."""
        outbox: List[Tuple[int, int, str]] = []
        for start in range(0, len(customers), self.batch_size):
            batch = [
                Message(
                    campaign_id=campaign_id,
                    customer_id=customer.id,
                    message_content=render_message(template, customer),
                    status=DeliveryStatus.PENDING,
                )
                for customer in customers[start:start + self.batch_size]
            ]
            self.db.add_all(batch)
            self.db.commit()
            outbox.extend((m.id, m.customer_id, m.message_content) for m in batch)
        return outbox

    async def _send_one(
        self,
        semaphore: asyncio.Semaphore,
        campaign_id: int,
        message_id: int,
        customer_id: int,
        content: str,
    ) -> bool:
        async with semaphore:
            try:
                result = await self.provider.send(message_id, customer_id, content)
            except ProviderError as e:
                result = ProviderResult(accepted=False, reason=str(e))
            except Exception as e:
                logger.error(
                    f"Unexpected provider error for message {message_id}: {e}",
                    extra={"campaign_id": campaign_id, "message_id": message_id},
                )
                result = ProviderResult(accepted=False, reason=f"Provider error: {e}")

        self.reconciler.record_send_outcome(
            message_id,
            campaign_id,
            accepted=result.accepted,
            vendor_message_id=result.vendor_message_id,
            reason=result.reason,
        )
        get_metrics_collector().increment_sends(
            self.provider.name, "sent" if result.accepted else "failed"
        )
        return result.accepted

    def _fail(self, campaign_id: int, error: Exception) -> None:
        try:
            self.reconciler.fail_campaign(campaign_id, str(error))
        except SQLAlchemyError as e:
            logger.error(
                f"Could not mark campaign {campaign_id} failed: {e}",
                extra={"campaign_id": campaign_id},
            )

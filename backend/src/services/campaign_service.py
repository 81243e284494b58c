"""
Campaign service: creation, listing, delivery statistics and deletion.

Dispatch itself lives in dispatch_service; this module only decides the
initial status of a new campaign and reads aggregate message state.
"""
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.api.middleware.error_handler import (
    BadRequestException,
    ConflictException,
    NotFoundException,
)
from src.lib.logging import get_logger
from src.lib.metrics import get_metrics_collector
from src.models.campaigns import Campaign, CampaignStatus
from src.models.messages import DeliveryStatus, Message
from src.services.predicate_compiler import compile_segment_rules
from src.services.segmentation_service import SegmentService

logger = get_logger(__name__)


@dataclass
class CampaignStats:
    """Per-status message counts for one campaign."""
    campaign_id: int
    counts: Dict[DeliveryStatus, int] = field(default_factory=dict)

    def count(self, status: DeliveryStatus) -> int:
        return self.counts.get(status, 0)

    @property
    def total_messages(self) -> int:
        return sum(self.counts.values())

    @property
    def sent_messages(self) -> int:
        """Accepted by the provider (delivered included)."""
        return self.count(DeliveryStatus.SENT) + self.count(DeliveryStatus.DELIVERED)

    @property
    def failed_messages(self) -> int:
        return self.count(DeliveryStatus.FAILED) + self.count(DeliveryStatus.BOUNCED)

    @property
    def pending_messages(self) -> int:
        return self.count(DeliveryStatus.PENDING)

    @property
    def delivery_rate(self) -> float:
        """Delivered share of all messages, as a percentage."""
        if not self.total_messages:
            return 0.0
        return round(self.count(DeliveryStatus.DELIVERED) * 100 / self.total_messages, 2)


@dataclass
class CampaignOverview:
    campaign: Campaign
    stats: CampaignStats


@dataclass
class MessagePage:
    messages: List[Message]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class CampaignService:
    """Service for managing campaigns."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def create_campaign(
        self,
        name: str,
        segment_id: int,
        message_template: str,
        description: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Campaign:
        """
        Create a campaign against a stored segment.

        Campaigns scheduled in the future start as `scheduled`; everything
        else starts as `sending` and must be handed to the dispatch runner.

        Raises:
            NotFoundException: unknown segment
            BadRequestException: empty message template
            RuleValidationError: the segment's rules no longer compile
        """
        if not message_template or not message_template.strip():
            raise BadRequestException("Message template is required")

        segment = SegmentService(self.db).get_segment(segment_id)
        compile_segment_rules(segment.rules)

        now = datetime.now(timezone.utc)
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        is_future = scheduled_at is not None and scheduled_at > now

        campaign = Campaign(
            name=name,
            description=description,
            segment_id=segment.id,
            message_template=message_template,
            status=CampaignStatus.SCHEDULED if is_future else CampaignStatus.SENDING,
            scheduled_at=scheduled_at,
            created_by=created_by,
        )
        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)

        get_metrics_collector().increment_campaigns("created")
        logger.info(
            f"Created campaign {campaign.id} ({campaign.status.value}) for segment {segment.id}",
            extra={"campaign_id": campaign.id, "segment_id": segment.id, "created_by": created_by},
        )
        return campaign

    def get_campaign(self, campaign_id: int) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundException("Campaign", campaign_id)
        return campaign

    def list_campaigns(
        self,
        created_by: Optional[str] = None,
        status: Optional[CampaignStatus] = None,
    ) -> List[CampaignOverview]:
        """Campaigns, newest first, each with its aggregate message counts."""
        query = select(Campaign).order_by(Campaign.created_at.desc(), Campaign.id.desc())
        if created_by is not None:
            query = query.where(Campaign.created_by == created_by)
        if status is not None:
            query = query.where(Campaign.status == status)

        campaigns = list(self.db.execute(query).scalars().all())
        counts = self._status_counts([c.id for c in campaigns])
        return [
            CampaignOverview(campaign=c, stats=CampaignStats(c.id, counts.get(c.id, {})))
            for c in campaigns
        ]

    def get_campaign_stats(self, campaign_id: int) -> CampaignStats:
        self.get_campaign(campaign_id)
        counts = self._status_counts([campaign_id])
        return CampaignStats(campaign_id, counts.get(campaign_id, {}))

    def get_campaign_messages(
        self,
        campaign_id: int,
        page: int = 1,
        limit: int = 50,
        status: Optional[DeliveryStatus] = None,
    ) -> MessagePage:
        self.get_campaign(campaign_id)
        page = max(page, 1)
        limit = max(limit, 1)

        conditions = [Message.campaign_id == campaign_id]
        if status is not None:
            conditions.append(Message.status == status)

        total = self.db.execute(
            select(func.count()).select_from(Message).where(*conditions)
        ).scalar_one()
        messages = self.db.execute(
            select(Message)
            .where(*conditions)
            .order_by(Message.id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        return MessagePage(messages=list(messages), total=total, page=page, limit=limit)

    def delete_campaign(self, campaign_id: int) -> None:
        """
        Delete a campaign and its messages.

        Raises:
            ConflictException: the campaign is still sending
        """
        campaign = self.get_campaign(campaign_id)
        if campaign.status == CampaignStatus.SENDING:
            raise ConflictException(
                "Cannot delete a campaign while it is sending",
                details={"campaign_id": campaign_id},
            )

        self.db.delete(campaign)
        self.db.commit()
        logger.info(f"Deleted campaign {campaign_id}", extra={"campaign_id": campaign_id})

    def _status_counts(self, campaign_ids: List[int]) -> Dict[int, Dict[DeliveryStatus, int]]:
        if not campaign_ids:
            return {}

        rows = self.db.execute(
            select(Message.campaign_id, Message.status, func.count())
            .where(Message.campaign_id.in_(campaign_ids))
            .group_by(Message.campaign_id, Message.status)
        ).all()

        counts: Dict[int, Dict[DeliveryStatus, int]] = defaultdict(dict)
        for campaign_id, status, count in rows:
            counts[campaign_id][status] = count
        return counts

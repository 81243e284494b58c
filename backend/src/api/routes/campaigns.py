"""
Campaign API routes.

- GET    /campaigns: List campaigns with aggregate message counts
- POST   /campaigns: Create a campaign; immediate campaigns start dispatching
- GET    /campaigns/{id}: Campaign details with counts
- DELETE /campaigns/{id}: Delete a campaign that is not sending
- GET    /campaigns/{id}/messages: Communication log, paged
- GET    /campaigns/{id}/stats: Per-status delivery statistics
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.api.dependencies import get_db, get_operator_id, get_runner
from src.jobs.campaign_runner import DispatchRunner
from src.lib.logging import get_logger
from src.models.campaigns import Campaign, CampaignStatus
from src.models.messages import DeliveryStatus
from src.services.campaign_service import CampaignService, CampaignStats

logger = get_logger(__name__)
router = APIRouter(prefix="/campaigns", tags=["campaigns"])


# Pydantic schemas
class CampaignCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    segment_id: int
    message_template: str = Field(..., min_length=1, description="Supports {name}, {email}, {total_spent}, ...")
    scheduled_at: Optional[datetime] = Field(None, description="Send later; omitted or past sends now")


class CampaignResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    segment_id: int
    message_template: str
    status: CampaignStatus
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    total_messages: int = 0
    sent_messages: int = Field(0, description="Accepted by the provider: sent plus delivered")
    failed_messages: int = Field(0, description="Failed plus bounced")


class CampaignStatsResponse(BaseModel):
    campaign_id: int
    status: CampaignStatus
    total_messages: int
    pending_messages: int
    sent_messages: int = Field(description="Still waiting for a delivery receipt; delivered messages are counted separately")
    delivered_messages: int
    failed_messages: int
    bounced_messages: int
    delivery_rate: float = Field(description="Delivered share of all messages (%)")


class MessageResponse(BaseModel):
    id: int
    campaign_id: int
    customer_id: int
    message_content: str
    status: DeliveryStatus
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    vendor_message_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MessagePageResponse(BaseModel):
    messages: List[MessageResponse]
    total: int
    page: int
    limit: int
    pages: int


def _campaign_response(campaign: Campaign, stats: Optional[CampaignStats] = None) -> CampaignResponse:
    stats = stats or CampaignStats(campaign.id)
    return CampaignResponse(
        id=campaign.id,
        name=campaign.name,
        description=campaign.description,
        segment_id=campaign.segment_id,
        message_template=campaign.message_template,
        status=campaign.status,
        scheduled_at=campaign.scheduled_at,
        sent_at=campaign.sent_at,
        created_by=campaign.created_by,
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
        total_messages=stats.total_messages,
        sent_messages=stats.sent_messages,
        failed_messages=stats.failed_messages,
    )


@router.get("", response_model=List[CampaignResponse])
def list_campaigns(
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    created_by: Optional[str] = Query(None, description="Filter by operator"),
    db: Session = Depends(get_db),
):
    """List campaigns, newest first."""
    overviews = CampaignService(db).list_campaigns(created_by=created_by, status=status_filter)
    return [_campaign_response(o.campaign, o.stats) for o in overviews]


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    request: CampaignCreateRequest,
    db: Session = Depends(get_db),
    operator_id: Optional[str] = Depends(get_operator_id),
    runner: DispatchRunner = Depends(get_runner),
):
    """
    Create a campaign.

    Immediate campaigns are returned in `sending` while delivery runs in the
    background; the status becomes `sent` once every message is processed.
    Campaigns scheduled in the future are returned in `scheduled`.
    """
    campaign = CampaignService(db).create_campaign(
        name=request.name,
        description=request.description,
        segment_id=request.segment_id,
        message_template=request.message_template,
        scheduled_at=request.scheduled_at,
        created_by=operator_id,
    )
    response = _campaign_response(campaign)

    if campaign.status == CampaignStatus.SENDING:
        runner.submit(campaign.id)

    return response


@router.get("/{campaign_id}", response_model=CampaignResponse)
def get_campaign(campaign_id: int, db: Session = Depends(get_db)):
    service = CampaignService(db)
    campaign = service.get_campaign(campaign_id)
    return _campaign_response(campaign, service.get_campaign_stats(campaign_id))


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_campaign(campaign_id: int, db: Session = Depends(get_db)):
    """Delete a campaign and its messages; refused while it is sending."""
    CampaignService(db).delete_campaign(campaign_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{campaign_id}/messages", response_model=MessagePageResponse)
def get_campaign_messages(
    campaign_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    result = CampaignService(db).get_campaign_messages(
        campaign_id, page=page, limit=limit, status=status_filter
    )
    return MessagePageResponse(
        messages=[MessageResponse.model_validate(m) for m in result.messages],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
    )


@router.get("/{campaign_id}/stats", response_model=CampaignStatsResponse)
def get_campaign_stats(campaign_id: int, db: Session = Depends(get_db)):
    service = CampaignService(db)
    campaign = service.get_campaign(campaign_id)
    stats = service.get_campaign_stats(campaign_id)
    return CampaignStatsResponse(
        campaign_id=campaign_id,
        status=campaign.status,
        total_messages=stats.total_messages,
        pending_messages=stats.pending_messages,
        sent_messages=stats.count(DeliveryStatus.SENT),
        delivered_messages=stats.count(DeliveryStatus.DELIVERED),
        failed_messages=stats.count(DeliveryStatus.FAILED),
        bounced_messages=stats.count(DeliveryStatus.BOUNCED),
        delivery_rate=stats.delivery_rate,
    )

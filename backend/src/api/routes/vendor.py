"""
Vendor API routes - the receipt channel.

- POST /vendor/delivery-receipt: Delivery outcome callback from the messaging vendor
- GET  /vendor/status: Liveness of the delivery integration
"""
import time
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.api.dependencies import get_db
from src.lib.logging import get_logger
from src.lib.settings import settings
from src.models.messages import DeliveryStatus
from src.services.receipt_reconciler import ReceiptReconciler

logger = get_logger(__name__)
router = APIRouter(prefix="/vendor", tags=["vendor"])

_STARTED_AT = time.monotonic()


class DeliveryReceiptRequest(BaseModel):
    message_id: int
    status: Literal["delivered", "failed", "bounced"]
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = Field(None, max_length=1000)
    vendor_message_id: Optional[str] = Field(None, max_length=255)


class DeliveryReceiptResponse(BaseModel):
    success: bool = True
    message_id: int
    campaign_id: int
    status: DeliveryStatus
    applied: bool
    duplicate: bool
    campaign_finalized: bool


class VendorStatusResponse(BaseModel):
    status: str
    provider: str
    version: str
    uptime_seconds: float
    timestamp: datetime


@router.post("/delivery-receipt", response_model=DeliveryReceiptResponse)
def delivery_receipt(receipt: DeliveryReceiptRequest, db: Session = Depends(get_db)):
    """
    Apply a delivery receipt.

    Repeating an already-recorded outcome is acknowledged without changes;
    contradicting one returns 409.
    """
    outcome = DeliveryStatus(receipt.status)
    occurred_at = receipt.delivered_at if outcome is DeliveryStatus.DELIVERED else receipt.failed_at

    result = ReceiptReconciler(db).apply_receipt(
        receipt.message_id,
        outcome,
        occurred_at=occurred_at,
        vendor_message_id=receipt.vendor_message_id,
        failure_reason=receipt.failure_reason,
    )
    return DeliveryReceiptResponse(
        message_id=result.message_id,
        campaign_id=result.campaign_id,
        status=result.status,
        applied=result.applied,
        duplicate=result.duplicate,
        campaign_finalized=result.campaign_finalized,
    )


@router.get("/status", response_model=VendorStatusResponse)
def vendor_status():
    return VendorStatusResponse(
        status="operational",
        provider=settings.delivery_provider,
        version="1.0.0",
        uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
        timestamp=datetime.now(timezone.utc),
    )

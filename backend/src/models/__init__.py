"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from src.models.customers import Customer, CustomerStatus
from src.models.segments import Segment
from src.models.campaigns import Campaign, CampaignStatus
from src.models.messages import Message, DeliveryStatus

__all__ = [
    "Customer",
    "CustomerStatus",
    "Segment",
    "Campaign",
    "CampaignStatus",
    "Message",
    "DeliveryStatus",
]

"""
Message model - communication log, one row per (campaign, recipient).
"""
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING
import enum

from sqlalchemy import (
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.lib.db import Base

if TYPE_CHECKING:
    from src.models.campaigns import Campaign


class DeliveryStatus(str, enum.Enum):
    """Message delivery status."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"

    @property
    def rank(self) -> int:
        """Position on the pending -> sent -> terminal ladder."""
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _STATUS_RANK[DeliveryStatus.DELIVERED]


_STATUS_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.FAILED: 2,
    DeliveryStatus.BOUNCED: 2,
}

# Statuses counted as "processed" by the campaign completion check
PROCESSED_STATUSES = (
    DeliveryStatus.SENT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.FAILED,
    DeliveryStatus.BOUNCED,
)


class Message(Base):
    """
    Message entity - personalized content for one customer in one campaign.
    Owned by its campaign and deleted with it.
    """
    __tablename__ = "communication_log"
    __table_args__ = (
        UniqueConstraint("campaign_id", "customer_id", name="uq_communication_log_campaign_customer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    campaign_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Content
    message_content: Mapped[str] = mapped_column(Text, nullable=False)

    # Delivery tracking
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(
            DeliveryStatus,
            name="delivery_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True,
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vendor_message_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Identifier assigned by the delivery provider",
    )

    campaign: Mapped["Campaign"] = relationship(back_populates="messages")

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, campaign_id={self.campaign_id}, status={self.status})>"

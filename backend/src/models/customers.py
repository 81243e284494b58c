"""
Customer model - the queryable customer store that segments are evaluated against.
"""
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, Integer, Numeric, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.lib.db import Base


class CustomerStatus(str, enum.Enum):
    """Customer lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CHURNED = "churned"


class Customer(Base):
    """
    Customer entity - one row per end customer.
    Only the fields segment rules can reference are indexed.
    """
    __tablename__ = "customers"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Contact info
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Segmentable attributes
    registration_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_visit: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    total_spent: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False),
        nullable=False,
        default=0,
        index=True,
    )
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[CustomerStatus] = mapped_column(
        SQLEnum(
            CustomerStatus,
            name="customer_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=CustomerStatus.ACTIVE,
        index=True,
    )

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
        return f"<Customer(id={self.id}, status={self.status}, total_spent={self.total_spent})>"

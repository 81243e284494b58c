"""
Segment model - named audience definitions (rule tree + cached audience size).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import String, Text, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.lib.db import Base

if TYPE_CHECKING:
    from src.models.campaigns import Campaign


class Segment(Base):
    """
    Segment entity.

    `audience_size` is a point-in-time count taken whenever the rules are
    created or updated. It is not refreshed as customers change.
    """
    __tablename__ = "segments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Serialized rule tree (see src.services.segment_rules)
    rules: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Operator identifier (auth is handled upstream)",
    )

    campaigns: Mapped[List["Campaign"]] = relationship(
        back_populates="segment",
        cascade="all, delete-orphan",
        passive_deletes=True,
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
        return f"<Segment(id={self.id}, name={self.name!r}, audience_size={self.audience_size})>"

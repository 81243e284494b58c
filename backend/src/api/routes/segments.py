"""
Segment API routes.

- GET    /segments: List segments
- POST   /segments: Create a segment (rules compiled, audience counted)
- POST   /segments/preview: Count + sample for unsaved rules
- GET    /segments/{id}: Segment details
- PUT    /segments/{id}: Update name / description / rules
- DELETE /segments/{id}: Delete segment and its campaigns
- GET    /segments/{id}/customers: Current audience, paged
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.api.dependencies import get_db, get_operator_id
from src.lib.logging import get_logger
from src.models.customers import CustomerStatus
from src.services.segmentation_service import SegmentService

logger = get_logger(__name__)
router = APIRouter(prefix="/segments", tags=["segments"])


# Pydantic schemas
class SegmentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rules: Dict[str, Any] = Field(..., description="Rule tree (condition or AND/OR composite)")


class SegmentUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    rules: Optional[Dict[str, Any]] = None


class SegmentPreviewRequest(BaseModel):
    rules: Dict[str, Any]
    sample_size: Optional[int] = Field(None, ge=0, le=100)


class SegmentResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    rules: Dict[str, Any]
    audience_size: int
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CustomerResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    total_spent: float
    total_orders: int
    status: CustomerStatus
    last_visit: Optional[datetime] = None
    registration_date: datetime

    model_config = {"from_attributes": True}


class SegmentPreviewResponse(BaseModel):
    match_count: int
    sample_customers: List[CustomerResponse]
    warnings: List[str] = Field(default_factory=list, description="Conditions that were ignored")


class CustomerPageResponse(BaseModel):
    customers: List[CustomerResponse]
    total: int
    page: int
    limit: int
    pages: int


@router.get("", response_model=List[SegmentResponse])
def list_segments(
    created_by: Optional[str] = Query(None, description="Filter by operator"),
    db: Session = Depends(get_db),
):
    """List segments, newest first."""
    return SegmentService(db).list_segments(created_by=created_by)


@router.post("", response_model=SegmentResponse, status_code=status.HTTP_201_CREATED)
def create_segment(
    request: SegmentCreateRequest,
    db: Session = Depends(get_db),
    operator_id: Optional[str] = Depends(get_operator_id),
):
    """
    Create a segment.

    The rules are validated and compiled, and `audience_size` is the number of
    customers matching them right now.
    """
    return SegmentService(db).create_segment(
        name=request.name,
        description=request.description,
        rules=request.rules,
        created_by=operator_id,
    )


@router.post("/preview", response_model=SegmentPreviewResponse)
def preview_segment(request: SegmentPreviewRequest, db: Session = Depends(get_db)):
    """Preview the audience of unsaved rules: match count and a sample ordered by id."""
    compiled, preview = SegmentService(db).preview(request.rules, sample_size=request.sample_size)
    return SegmentPreviewResponse(
        match_count=preview.match_count,
        sample_customers=[CustomerResponse.model_validate(c) for c in preview.sample_customers],
        warnings=[f"{d.path or '/'}: {d.reason}" for d in compiled.dropped],
    )


@router.get("/{segment_id}", response_model=SegmentResponse)
def get_segment(segment_id: int, db: Session = Depends(get_db)):
    return SegmentService(db).get_segment(segment_id)


@router.put("/{segment_id}", response_model=SegmentResponse)
def update_segment(segment_id: int, request: SegmentUpdateRequest, db: Session = Depends(get_db)):
    """Update a segment; new rules recompute `audience_size`."""
    return SegmentService(db).update_segment(
        segment_id,
        name=request.name,
        description=request.description,
        rules=request.rules,
    )


@router.delete("/{segment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_segment(segment_id: int, db: Session = Depends(get_db)):
    """Delete a segment with its campaigns; refused while one of them is sending."""
    SegmentService(db).delete_segment(segment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{segment_id}/customers", response_model=CustomerPageResponse)
def get_segment_customers(
    segment_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """Customers currently matching the segment's rules."""
    result = SegmentService(db).get_segment_customers(segment_id, page=page, limit=limit)
    return CustomerPageResponse(
        customers=[CustomerResponse.model_validate(c) for c in result.customers],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
    )

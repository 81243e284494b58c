"""
Customer segmentation service.

Resolves compiled segment predicates against the customer store and manages
persisted segments:
- Audience preview (match count + stable sample)
- Paged and full audience resolution
- Segment create / update / delete with cached audience size
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, func, select, text
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import TextClause

from src.api.middleware.error_handler import ConflictException, NotFoundException
from src.lib.logging import get_logger
from src.lib.metrics import get_metrics_collector
from src.lib.settings import settings
from src.models.campaigns import Campaign, CampaignStatus
from src.models.customers import Customer
from src.models.segments import Segment
from src.services.predicate_compiler import CompiledPredicate, compile_segment_rules
from src.services.segment_rules import parse_rule_tree

logger = get_logger(__name__)


@dataclass
class AudiencePreview:
    """Match count plus the first few matching customers."""
    match_count: int
    sample_customers: List[Customer]


@dataclass
class CustomerPage:
    """One page of a segment's audience."""
    customers: List[Customer]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def to_filter_clause(compiled: CompiledPredicate) -> TextClause:
    """
    Bind a compiled predicate to the customers table.

    Positional `?` placeholders become named bind parameters typed with the
    column they compare against, so datetimes and enums are stored and
    compared in the same representation the ORM writes.
    """
    if compiled.placeholder_count != len(compiled.params):
        raise ValueError(
            f"Predicate has {compiled.placeholder_count} placeholders "
            f"but {len(compiled.params)} parameters"
        )

    pieces = compiled.expression.split("?")
    sql = pieces[0]
    binds = []
    for index, ((field_name, value), tail) in enumerate(zip(compiled.bound_params(), pieces[1:])):
        name = f"p{index}"
        sql += f":{name}{tail}"
        binds.append(bindparam(name, value, type_=Customer.__table__.c[field_name].type))

    return text(sql).bindparams(*binds)


class AudienceResolver:
    """Read-only execution of compiled predicates against the customer store."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def count(self, compiled: CompiledPredicate) -> int:
        query = select(func.count()).select_from(Customer).where(to_filter_clause(compiled))
        return self.db.execute(query).scalar_one()

    def preview(
        self,
        compiled: CompiledPredicate,
        sample_size: Optional[int] = None,
    ) -> AudiencePreview:
        """
        Count matches and fetch a sample ordered by customer id.

        Both queries run against the same compiled (expression, params)
        pairing so the sample is always drawn from the counted set.
        """
        size = settings.preview_sample_size if sample_size is None else sample_size
        clause = to_filter_clause(compiled)

        match_count = self.db.execute(
            select(func.count()).select_from(Customer).where(clause)
        ).scalar_one()
        sample = self.db.execute(
            select(Customer).where(clause).order_by(Customer.id).limit(size)
        ).scalars().all()

        get_metrics_collector().increment_resolutions("preview")
        return AudiencePreview(match_count=match_count, sample_customers=list(sample))

    def page(self, compiled: CompiledPredicate, page: int = 1, limit: int = 50) -> CustomerPage:
        page = max(page, 1)
        limit = max(limit, 1)
        clause = to_filter_clause(compiled)

        total = self.db.execute(
            select(func.count()).select_from(Customer).where(clause)
        ).scalar_one()
        customers = self.db.execute(
            select(Customer)
            .where(clause)
            .order_by(Customer.id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        get_metrics_collector().increment_resolutions("page")
        return CustomerPage(customers=list(customers), total=total, page=page, limit=limit)

    def matching_customers(self, compiled: CompiledPredicate) -> List[Customer]:
        """Full match set, ordered by customer id."""
        customers = self.db.execute(
            select(Customer).where(to_filter_clause(compiled)).order_by(Customer.id)
        ).scalars().all()

        get_metrics_collector().increment_resolutions("full")
        return list(customers)


class SegmentService:
    """Service for managing persisted segments."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.resolver = AudienceResolver(db_session)

    def preview(
        self,
        rules: Dict[str, Any],
        sample_size: Optional[int] = None,
    ) -> tuple[CompiledPredicate, AudiencePreview]:
        compiled = compile_segment_rules(rules)
        return compiled, self.resolver.preview(compiled, sample_size=sample_size)

    def create_segment(
        self,
        name: str,
        rules: Dict[str, Any],
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Segment:
        """
        Validate rules, count the audience and persist the segment.

        Raises:
            RuleValidationError: rules are malformed or compile to nothing
        """
        tree = parse_rule_tree(rules)
        compiled = compile_segment_rules(tree)

        segment = Segment(
            name=name,
            description=description,
            rules=tree.to_dict(),
            audience_size=self.resolver.count(compiled),
            created_by=created_by,
        )
        self.db.add(segment)
        self.db.commit()
        self.db.refresh(segment)

        logger.info(
            f"Created segment {segment.id} with audience size {segment.audience_size}",
            extra={"segment_id": segment.id, "created_by": created_by},
        )
        return segment

    def update_segment(
        self,
        segment_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        rules: Optional[Dict[str, Any]] = None,
    ) -> Segment:
        """Update fields; new rules recompute the cached audience size."""
        segment = self.get_segment(segment_id)

        if name is not None:
            segment.name = name
        if description is not None:
            segment.description = description
        if rules is not None:
            tree = parse_rule_tree(rules)
            compiled = compile_segment_rules(tree)
            segment.rules = tree.to_dict()
            segment.audience_size = self.resolver.count(compiled)

        self.db.commit()
        self.db.refresh(segment)
        return segment

    def get_segment(self, segment_id: int) -> Segment:
        segment = self.db.get(Segment, segment_id)
        if segment is None:
            raise NotFoundException("Segment", segment_id)
        return segment

    def list_segments(self, created_by: Optional[str] = None) -> List[Segment]:
        query = select(Segment).order_by(Segment.created_at.desc(), Segment.id.desc())
        if created_by is not None:
            query = query.where(Segment.created_by == created_by)
        return list(self.db.execute(query).scalars().all())

    def delete_segment(self, segment_id: int) -> None:
        """
        Delete a segment together with its campaigns and their messages.

        Raises:
            ConflictException: one of its campaigns is still sending
        """
        segment = self.get_segment(segment_id)

        sending = self.db.execute(
            select(func.count())
            .select_from(Campaign)
            .where(Campaign.segment_id == segment_id, Campaign.status == CampaignStatus.SENDING)
        ).scalar_one()
        if sending:
            raise ConflictException(
                "Segment has campaigns that are still sending",
                details={"segment_id": segment_id, "sending_campaigns": sending},
            )

        self.db.delete(segment)
        self.db.commit()
        logger.info(f"Deleted segment {segment_id}", extra={"segment_id": segment_id})

    def get_segment_customers(self, segment_id: int, page: int = 1, limit: int = 50) -> CustomerPage:
        """Current audience of a stored segment, evaluated now."""
        segment = self.get_segment(segment_id)
        compiled = compile_segment_rules(segment.rules)
        return self.resolver.page(compiled, page=page, limit=limit)

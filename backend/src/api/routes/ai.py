"""
AI assistant routes.

- POST /ai/segment-rules: Natural-language audience description -> rule tree
- POST /ai/message-suggestions: Message template ideas for a campaign
- POST /ai/performance-summary: Analyst-style summary of a campaign's results
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.ai.rule_assistant import RuleAssistant
from src.api.dependencies import get_assistant, get_db
from src.models.messages import DeliveryStatus
from src.services.campaign_service import CampaignService
from src.services.predicate_compiler import compile_segment_rules
from src.services.segmentation_service import AudienceResolver

router = APIRouter(prefix="/ai", tags=["ai"])


class SegmentRulesRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)


class SegmentRulesResponse(BaseModel):
    prompt: str
    rules: Dict[str, Any]
    audience_size: int
    warnings: List[str] = Field(default_factory=list)


class MessageSuggestionsRequest(BaseModel):
    campaign_objective: str = Field(..., min_length=1, max_length=1000)
    segment_description: Optional[str] = Field(None, max_length=1000)
    tone: str = Field("friendly", max_length=50)


class MessageSuggestionResponse(BaseModel):
    title: str
    template: str
    reasoning: str = ""


class MessageSuggestionsResponse(BaseModel):
    suggestions: List[MessageSuggestionResponse]


class PerformanceSummaryRequest(BaseModel):
    campaign_id: int


class PerformanceStats(BaseModel):
    total_messages: int
    sent_messages: int = Field(description="Accepted by the provider: sent plus delivered")
    delivered_messages: int
    failed_messages: int = Field(description="Failed plus bounced")
    pending_messages: int
    delivery_rate: float = Field(description="Delivered share of all messages (%)")


class PerformanceSummaryResponse(BaseModel):
    campaign_id: int
    summary: str
    stats: PerformanceStats


@router.post("/segment-rules", response_model=SegmentRulesResponse)
async def generate_segment_rules(
    request: SegmentRulesRequest,
    db: Session = Depends(get_db),
    assistant: RuleAssistant = Depends(get_assistant),
):
    """
    Generate segment rules from a plain-language description.

    The generated tree is validated and compiled like operator input, and the
    response carries the size of the audience it matches right now.
    """
    generated = await assistant.generate_rules(request.prompt)
    audience_size = AudienceResolver(db).count(compile_segment_rules(generated.rules))
    return SegmentRulesResponse(
        prompt=generated.prompt,
        rules=generated.rules,
        audience_size=audience_size,
        warnings=generated.warnings,
    )


@router.post("/message-suggestions", response_model=MessageSuggestionsResponse)
async def message_suggestions(
    request: MessageSuggestionsRequest,
    assistant: RuleAssistant = Depends(get_assistant),
):
    suggestions = await assistant.suggest_messages(
        request.campaign_objective,
        segment_description=request.segment_description,
        tone=request.tone,
    )
    return MessageSuggestionsResponse(
        suggestions=[
            MessageSuggestionResponse(title=s.title, template=s.template, reasoning=s.reasoning)
            for s in suggestions
        ]
    )


@router.post("/performance-summary", response_model=PerformanceSummaryResponse)
async def performance_summary(
    request: PerformanceSummaryRequest,
    db: Session = Depends(get_db),
    assistant: RuleAssistant = Depends(get_assistant),
):
    """Summarize how a campaign performed, from its current message stats."""
    service = CampaignService(db)
    campaign = service.get_campaign(request.campaign_id)
    stats = service.get_campaign_stats(campaign.id)

    summary = await assistant.summarize_performance(campaign, stats)
    return PerformanceSummaryResponse(
        campaign_id=campaign.id,
        summary=summary,
        stats=PerformanceStats(
            total_messages=stats.total_messages,
            sent_messages=stats.sent_messages,
            delivered_messages=stats.count(DeliveryStatus.DELIVERED),
            failed_messages=stats.failed_messages,
            pending_messages=stats.pending_messages,
            delivery_rate=stats.delivery_rate,
        ),
    )

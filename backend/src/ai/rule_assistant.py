"""
Rule Assistant - natural-language segment rules, message suggestions and
campaign performance summaries.

Thin adapter over the OpenAI chat API:
- Turns an operator's plain-language audience description into a rule tree,
  then parses and compiles it exactly like operator input
- Suggests message templates that use the personalization placeholders
- Writes an analyst-style summary of a finished campaign from its stats

Model output is never trusted: rule trees go through the same parser and
compiler as hand-written rules, and suggestions are shape-checked.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai

from src.ai.client import OpenAIClient, get_openai_client
from src.api.middleware.error_handler import (
    BadRequestException,
    ServiceUnavailableException,
    UpstreamServiceError,
)
from src.lib.logging import get_logger
from src.models.campaigns import Campaign
from src.models.messages import DeliveryStatus
from src.services.campaign_service import CampaignStats
from src.services.predicate_compiler import SEGMENT_FIELDS, compile_segment_rules, operators_for
from src.services.segment_rules import parse_rule_tree

logger = get_logger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class GeneratedRules:
    """Rule tree produced from a prompt, already validated."""
    prompt: str
    rules: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)


@dataclass
class MessageSuggestion:
    title: str
    template: str
    reasoning: str = ""


def _rules_system_prompt() -> str:
    field_lines = "\n".join(
        f"- {name}: {', '.join(operators_for(name))}"
        + (" (values: active, inactive, churned)" if name == "status" else "")
        for name in SEGMENT_FIELDS
    )
    return f"""You are an expert at converting natural language descriptions into structured segment rules for a CRM system.

Available fields and operators:
{field_lines}

Value formats:
- between on total_spent: {{"min": number, "max": number}}
- between on registration_date: {{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}}
- days_ago / within_days: whole number of days
- is_null: null

You can combine conditions using AND/OR operators, nested to any depth.

Return ONLY a valid JSON object with this structure:
{{"operator": "AND" | "OR", "conditions": [{{"field": "field_name", "operator": "operator_name", "value": ...}}]}}

For single conditions, return:
{{"field": "field_name", "operator": "operator_name", "value": ...}}

Examples:
- "People who spent more than 10000" -> {{"field": "total_spent", "operator": "greater_than", "value": 10000}}
- "Active customers who haven't visited in 30 days" -> {{"operator": "AND", "conditions": [{{"field": "status", "operator": "equals", "value": "active"}}, {{"field": "last_visit", "operator": "days_ago", "value": 30}}]}}
- "High spenders or frequent buyers" -> {{"operator": "OR", "conditions": [{{"field": "total_spent", "operator": "greater_than", "value": 15000}}, {{"field": "total_orders", "operator": "greater_than", "value": 10}}]}}"""


SUGGESTIONS_SYSTEM_PROMPT = """You are a marketing copywriter specializing in personalized customer messages for CRM campaigns.

Generate 3 different message templates for the given campaign objective and segment description.

Each message should:
- Be personalized using the {name} placeholder
- Be engaging and relevant to the segment
- Match the specified tone
- Include a clear call-to-action
- Be 1-2 sentences long

Return ONLY a valid JSON array with this structure:
[{"title": "Brief title for this message", "template": "Message template with {name} placeholder", "reasoning": "Why this message works for this segment"}]"""


PERFORMANCE_SYSTEM_PROMPT = """You are a marketing analyst who creates insightful performance summaries for CRM campaigns.

Analyze the campaign data and create a comprehensive summary that includes:
1. Overall performance assessment
2. Key metrics and insights
3. Success factors or areas for improvement
4. Recommendations for future campaigns

Be specific, data-driven, and actionable in your analysis."""


def _percent(part: int, whole: int) -> str:
    return f"{part * 100 / whole:.1f}%" if whole else "0%"


def extract_json(text: str) -> Any:
    """
    Parse a model response as JSON, tolerating a surrounding code fence.

    Raises:
        BadRequestException: the response is not valid JSON
    """
    cleaned = text.strip()
    fenced = _CODE_FENCE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        raise BadRequestException(
            "Failed to parse AI response as valid JSON",
            details={"ai_response": text},
        ) from None


class RuleAssistant:
    """Generates segment rules, message templates and performance summaries with OpenAI."""

    def __init__(self, openai_client: Optional[OpenAIClient] = None):
        self.openai_client = openai_client or get_openai_client()

    async def _ask(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        if not self.openai_client.is_available():
            raise ServiceUnavailableException("AI service is not configured")

        try:
            return self.openai_client.complete(system_prompt, user_prompt, temperature=temperature)
        except openai.OpenAIError as e:
            logger.error(f"OpenAI request failed: {e}")
            raise UpstreamServiceError(
                "Failed to get a response from the AI service",
                details={"reason": str(e)},
            ) from e

    async def generate_rules(self, prompt: str) -> GeneratedRules:
        """
        Convert a natural-language audience description into a rule tree.

        Raises:
            BadRequestException: empty prompt or unparseable model output
            RuleValidationError: the generated tree is malformed or compiles to nothing
        """
        if not prompt or not prompt.strip():
            raise BadRequestException("Prompt is required")

        logger.info("Generating segment rules from prompt", extra={"prompt_length": len(prompt)})
        raw = await self._ask(_rules_system_prompt(), f"User Request: {prompt.strip()}", temperature=0.2)

        tree = parse_rule_tree(extract_json(raw))
        compiled = compile_segment_rules(tree)
        warnings = [f"{d.path or '/'}: {d.reason}" for d in compiled.dropped]

        return GeneratedRules(prompt=prompt.strip(), rules=tree.to_dict(), warnings=warnings)

    async def suggest_messages(
        self,
        campaign_objective: str,
        segment_description: Optional[str] = None,
        tone: str = "friendly",
    ) -> List[MessageSuggestion]:
        """
        Suggest message templates for a campaign.

        Raises:
            BadRequestException: empty objective or unusable model output
        """
        if not campaign_objective or not campaign_objective.strip():
            raise BadRequestException("Campaign objective is required")

        user_prompt = (
            f"Campaign Objective: {campaign_objective.strip()}\n"
            f"Segment Description: {segment_description or 'General customer segment'}\n"
            f"Tone: {tone}\n\n"
            "Generate 3 message templates."
        )
        raw = await self._ask(SUGGESTIONS_SYSTEM_PROMPT, user_prompt, temperature=0.8)
        payload = extract_json(raw)

        if not isinstance(payload, list):
            raise BadRequestException(
                "AI response must be a list of suggestions",
                details={"ai_response": raw},
            )

        suggestions = [
            MessageSuggestion(
                title=str(item.get("title") or f"Suggestion {index + 1}"),
                template=item["template"].strip(),
                reasoning=str(item.get("reasoning") or ""),
            )
            for index, item in enumerate(payload)
            if isinstance(item, dict) and isinstance(item.get("template"), str) and item["template"].strip()
        ]
        if not suggestions:
            raise BadRequestException(
                "AI response contained no usable templates",
                details={"ai_response": raw},
            )
        return suggestions

    async def summarize_performance(self, campaign: Campaign, stats: CampaignStats) -> str:
        """
        Write a performance summary for a campaign from its message stats.

        Success rate is the share of messages the provider accepted; delivery
        rate is the share of accepted messages that were confirmed delivered.

        Raises:
            BadRequestException: the model returned nothing
        """
        delivered = stats.count(DeliveryStatus.DELIVERED)
        user_prompt = (
            f"Campaign: {campaign.name}\n"
            f"Description: {campaign.description or 'No description'}\n"
            f"Segment: {campaign.segment.name}\n"
            f"Target Audience Size: {campaign.segment.audience_size}\n"
            f"Message Template: {campaign.message_template}\n\n"
            "Performance Stats:\n"
            f"- Total Messages: {stats.total_messages}\n"
            f"- Sent: {stats.sent_messages}\n"
            f"- Delivered: {delivered}\n"
            f"- Failed: {stats.failed_messages}\n"
            f"- Pending: {stats.pending_messages}\n"
            f"- Success Rate: {_percent(stats.sent_messages, stats.total_messages)}\n"
            f"- Delivery Rate: {_percent(delivered, stats.sent_messages)}\n\n"
            "Generate a performance summary."
        )

        logger.info("Generating performance summary", extra={"campaign_id": campaign.id})
        summary = (await self._ask(PERFORMANCE_SYSTEM_PROMPT, user_prompt, temperature=0.5)).strip()
        if not summary:
            raise BadRequestException(
                "AI response was empty",
                details={"campaign_id": campaign.id},
            )
        return summary


def get_rule_assistant() -> RuleAssistant:
    """Get a rule assistant bound to the global OpenAI client."""
    return RuleAssistant()

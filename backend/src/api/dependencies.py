"""
API dependencies for FastAPI dependency injection.

Provides database sessions, the operator identity forwarded by the upstream
auth layer, the dispatch runner and the rule assistant.
"""
from typing import Optional

from fastapi import Header

from src.ai.rule_assistant import RuleAssistant, get_rule_assistant
from src.jobs.campaign_runner import DispatchRunner, get_dispatch_runner
from src.lib.db import get_db as get_db_session


# Re-export get_db for convenience
get_db = get_db_session


def get_operator_id(
    x_operator_id: Optional[str] = Header(None, alias="X-Operator-Id"),
) -> Optional[str]:
    """
    Operator identifier set by the authenticating proxy.

    Authentication happens upstream; the id is only recorded as `created_by`.
    """
    if x_operator_id is None:
        return None
    return x_operator_id.strip() or None


def get_runner() -> DispatchRunner:
    """Dispatch runner dependency (overridable in tests)."""
    return get_dispatch_runner()


def get_assistant() -> RuleAssistant:
    """Rule assistant dependency (overridable in tests)."""
    return get_rule_assistant()

"""AI Agents package."""

from clarity.agents.ai_agents import (
    TipsAgent,
    TipsResult,
    fallback_tips,
    parse_expense_action,
    projection_confidence,
)

__all__ = [
    "TipsAgent",
    "TipsResult",
    "fallback_tips",
    "parse_expense_action",
    "projection_confidence",
]

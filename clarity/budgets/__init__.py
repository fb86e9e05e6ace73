"""Budget aggregation, alerts and spending summaries."""

from clarity.budgets.aggregation import (
    AggregationEngine,
    aggregate,
    budget_alerts,
    filter_expenses,
    fingerprint,
    percentage_of,
    summarize_spending,
)

__all__ = [
    "AggregationEngine",
    "aggregate",
    "budget_alerts",
    "filter_expenses",
    "fingerprint",
    "percentage_of",
    "summarize_spending",
]

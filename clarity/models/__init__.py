"""
Data Models Package

This package contains all Pydantic models used in Clarity.
All data flowing through the capture pipeline must conform to these schemas.
"""

from clarity.models.expense import (
    INFINITE_PERCENTAGE,
    Budget,
    BudgetAlert,
    BudgetReport,
    CandidateExpense,
    Category,
    CategoryBreakdown,
    CategoryCandidate,
    CategoryTotal,
    ConfirmationField,
    Expense,
    ExpenseFilter,
    MatchTier,
    NormalizedUtterance,
    PaymentMethod,
    SpendingSummary,
    ValidationIssue,
    ValidationResult,
)
from clarity.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Expense models
    "INFINITE_PERCENTAGE",
    "Budget",
    "BudgetAlert",
    "BudgetReport",
    "CandidateExpense",
    "Category",
    "CategoryBreakdown",
    "CategoryCandidate",
    "CategoryTotal",
    "ConfirmationField",
    "Expense",
    "ExpenseFilter",
    "MatchTier",
    "NormalizedUtterance",
    "PaymentMethod",
    "SpendingSummary",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

"""
Core Data Models for Clarity

These models define the strict schemas for all data flowing through
the capture pipeline and the budget reports built on top of it.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage, export and logging
4. Keep saved records immutable (edits produce new values)

DESIGN DECISION: Pydantic v2. Saved records (Expense, Budget, Category)
are frozen; derived values (reports, candidates) are plain models that
are rebuilt on every pass and never persisted.
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> dt.datetime:
    """Timezone-aware current UTC time."""
    return dt.datetime.now(dt.timezone.utc)


# Sentinel percentage for spending against a zero budget.
INFINITE_PERCENTAGE = float("inf")


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class PaymentMethod(str, Enum):
    """
    How an expense was paid.

    Values are the labels stored and exported by the application.
    """
    CARD = "Tarjeta"
    CASH = "Efectivo"
    BANK_TRANSFER = "Transferencia"
    MOBILE_TRANSFER = "Bizum"


class MatchTier(str, Enum):
    """Which resolver tier produced a category candidate."""
    EXACT = "exact"
    SUBSTRING = "substring"
    SYNONYM = "synonym"
    SUBCATEGORY = "subcategory"  # category implied by one of its subcategories
    LEARNED = "learned"          # keyword seen in previous expenses


class ConfirmationField(str, Enum):
    """Fields of a CandidateExpense that can require user confirmation."""
    AMOUNT = "amount"
    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    PAYMENT_METHOD = "payment_method"
    DATE = "date"


# =============================================================================
# TAXONOMY
# =============================================================================

class Category(BaseModel):
    """
    A category and its ordered subcategories.

    Insertion order of subcategories matters: the first one is the
    default selection when a capture names the category only.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Category name (unique in the taxonomy)"
    )
    subcategories: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Subcategory names in insertion order"
    )

    def has_subcategory(self, name: str) -> bool:
        folded = name.strip().casefold()
        return any(sub.casefold() == folded for sub in self.subcategories)


# =============================================================================
# CORE EXPENSE MODEL
# =============================================================================

class Expense(BaseModel):
    """
    A saved expense.

    CRITICAL: Expenses are immutable once saved. An edit produces a new
    value through edit(), which re-runs validation. Nothing mutates an
    Expense in place.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique expense ID"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Short description of the expense"
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
        description="Amount in the account currency"
    )
    category: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Category name at the time of creation"
    )
    subcategory: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Subcategory name at the time of creation"
    )
    date: dt.date = Field(
        ...,
        description="Day the expense happened"
    )
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.CARD,
        description="How it was paid"
    )
    recurring: bool = Field(
        default=False,
        description="Whether this is a recurring charge"
    )

    @field_validator('subcategory')
    @classmethod
    def empty_subcategory_is_none(cls, v: Optional[str]) -> Optional[str]:
        """The original app stores a missing subcategory as ''."""
        if v is not None and not v.strip():
            return None
        return v

    def edit(self, **changes: Any) -> "Expense":
        """
        Return a new Expense with the given fields changed.

        The id is kept; every field is validated again.
        """
        if "id" in changes:
            raise ValueError("Expense id cannot be changed")
        data = self.model_dump()
        data.update(changes)
        return Expense.model_validate(data)

    def to_export_row(self) -> dict[str, Any]:
        """
        Field set consumed by CSV export and notifications.

        Keys and formatting are fixed: amount always has two decimals.
        """
        return {
            "name": self.name,
            "amount": f"{self.amount:.2f}",
            "category": self.category,
            "subcategory": self.subcategory or "",
            "date": self.date.isoformat(),
            "paymentMethod": self.payment_method.value,
            "recurring": self.recurring,
        }


class Budget(BaseModel):
    """
    Monthly spending limit for one category.

    A limit of zero is a deliberate "block all spending" setting.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    category: str = Field(
        ...,
        min_length=1,
        max_length=100,
    )
    monthly_limit: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
        description="Monthly limit in the account currency"
    )


# =============================================================================
# CAPTURE PIPELINE MODELS
# =============================================================================

class NormalizedUtterance(BaseModel):
    """
    Tokens extracted from one utterance.

    All fields are optional because speech is noisy. A missing amount
    makes the utterance non-actionable.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    raw_text: str = Field(
        default="",
        description="The utterance exactly as received"
    )
    amount: Optional[Decimal] = Field(
        default=None,
        ge=0,
        decimal_places=2,
    )
    currency_hint: Optional[str] = Field(
        default=None,
        description="ISO currency code named next to the amount"
    )
    category_hint: Optional[str] = Field(
        default=None,
        description="Content words left after extraction"
    )
    payment_hint: Optional[PaymentMethod] = None
    date_hint: Optional[dt.date] = None
    residual_text: str = Field(
        default="",
        description="Everything not consumed by amount/currency/date/payment"
    )

    @property
    def is_actionable(self) -> bool:
        return self.amount is not None


class CategoryCandidate(BaseModel):
    """A ranked category/subcategory guess produced by the resolver."""

    category: str
    subcategory: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    subcategory_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    tier: MatchTier


class CandidateExpense(BaseModel):
    """
    An expense proposed by the capture pipeline.

    CRITICAL: This is PROPOSED data, NOT confirmed.
    Every field carries a confidence; fields listed in
    needs_confirmation must be shown to the user before saving.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    capture_id: UUID = Field(
        default_factory=uuid4,
        description="Unique ID for this capture attempt"
    )
    created_at: dt.datetime = Field(default_factory=utcnow)
    source_text: str = Field(
        default="",
        description="Utterance this candidate was built from"
    )

    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    date: dt.date
    payment_method: PaymentMethod
    recurring: bool = False

    confidence: dict[str, float] = Field(
        default_factory=dict,
        description="Per-field confidence (0-1)"
    )
    needs_confirmation: list[str] = Field(
        default_factory=list,
        description="Fields the user must confirm before saving"
    )

    @field_validator('needs_confirmation')
    @classmethod
    def dedupe_fields(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.needs_confirmation)

    @property
    def overall_confidence(self) -> float:
        """Lowest field confidence; one weak field makes the whole guess weak."""
        if not self.confidence:
            return 0.0
        return min(self.confidence.values())

    def to_expense(self, **overrides: Any) -> Expense:
        """
        Turn this candidate into an Expense.

        Called ONLY after the user confirmed; overrides carry the
        user's corrections (e.g. category="Ocio").
        """
        data = {
            "name": self.name,
            "amount": self.amount,
            "category": self.category,
            "subcategory": self.subcategory,
            "date": self.date,
            "payment_method": self.payment_method,
            "recurring": self.recurring,
        }
        unknown = set(overrides) - set(data)
        if unknown:
            raise ValueError(f"Unknown expense fields: {sorted(unknown)}")
        data.update(overrides)
        # A new category invalidates the proposed subcategory
        if "category" in overrides and "subcategory" not in overrides:
            data["subcategory"] = None
        return Expense.model_validate(data)


# =============================================================================
# AGGREGATION MODELS
# =============================================================================

class CategoryTotal(BaseModel):
    """Total spent in a category, or in one subcategory of it."""

    category: str
    subcategory: Optional[str] = None
    total: Decimal = Field(default=Decimal("0.00"))
    expense_count: int = Field(default=0, ge=0)
    percentage_of_budget: Optional[float] = Field(
        default=None,
        description="Only set when the category has a budget"
    )


class CategoryBreakdown(BaseModel):
    """Per-category result of one aggregation pass."""

    category: str
    total: Decimal = Field(default=Decimal("0.00"))
    expense_count: int = Field(default=0, ge=0)
    subcategories: list[CategoryTotal] = Field(default_factory=list)

    # Only set when a budget exists for the category
    monthly_limit: Optional[Decimal] = None
    percentage_of_budget: Optional[float] = Field(
        default=None,
        description="total / limit * 100, unbounded; inf for a zero limit"
    )
    over_budget: bool = False

    @property
    def has_budget(self) -> bool:
        return self.monthly_limit is not None

    @property
    def remaining(self) -> Optional[Decimal]:
        """Budget left (negative when over)."""
        if self.monthly_limit is None:
            return None
        return self.monthly_limit - self.total

    def to_category_total(self) -> CategoryTotal:
        return CategoryTotal(
            category=self.category,
            total=self.total,
            expense_count=self.expense_count,
            percentage_of_budget=self.percentage_of_budget,
        )


class BudgetReport(BaseModel):
    """
    Result of aggregating expenses against budgets.

    Recomputed from scratch; never persisted.
    """

    generated_at: dt.datetime = Field(default_factory=utcnow)
    categories: list[CategoryBreakdown] = Field(default_factory=list)
    grand_total: Decimal = Field(default=Decimal("0.00"))
    total_budgeted: Decimal = Field(default=Decimal("0.00"))
    over_budget: list[str] = Field(
        default_factory=list,
        description="Categories whose total exceeds their limit"
    )

    def get(self, category: str) -> Optional[CategoryBreakdown]:
        for breakdown in self.categories:
            if breakdown.category == category:
                return breakdown
        return None

    def category_totals(self) -> list[CategoryTotal]:
        """Flatten into rows: each category followed by its subcategories."""
        rows = []
        for breakdown in self.categories:
            rows.append(breakdown.to_category_total())
            rows.extend(breakdown.subcategories)
        return rows

    def content_equals(self, other: "BudgetReport") -> bool:
        """Compare everything except the generation timestamp."""
        exclude = {"generated_at"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)


class BudgetAlert(BaseModel):
    """A budget that reached one of the configured alert thresholds."""

    category: str
    threshold: int = Field(ge=0)
    percentage: float
    over_budget: bool
    message: str


class SpendingSummary(BaseModel):
    """
    Month-to-date spending context.

    This is what the tips agent sees; it never sees raw expenses.
    """

    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    total_spent: Decimal = Field(default=Decimal("0.00"))
    expense_count: int = Field(default=0, ge=0)
    average_daily: Decimal = Field(default=Decimal("0.00"))
    days_left: int = Field(default=0, ge=0)
    projected_total: Decimal = Field(default=Decimal("0.00"))
    small_expenses_total: Decimal = Field(default=Decimal("0.00"))
    recurring_total: Decimal = Field(default=Decimal("0.00"))
    top_categories: list[CategoryTotal] = Field(default_factory=list)


class ExpenseFilter(BaseModel):
    """Filters applied to an expense collection before aggregation."""

    month: Optional[str] = Field(
        default=None,
        pattern=r"^\d{4}-\d{2}$",
        description="YYYY-MM"
    )
    category: Optional[str] = None
    subcategory: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    search_query: Optional[str] = None
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_amount: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode='after')
    def validate_amount_range(self) -> 'ExpenseFilter':
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.max_amount < self.min_amount
        ):
            raise ValueError("max_amount cannot be below min_amount")
        return self


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'unknown_category', 'suspicious_value')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage validation.

    Stage 1: Schema validation (required fields, taxonomy references)
    Stage 2: Semantic validation (logic checks)
    """

    subject_id: UUID = Field(
        ...,
        description="ID of the candidate or expense being validated"
    )
    validated_at: dt.datetime = Field(default_factory=utcnow)

    schema_valid: bool
    semantic_valid: bool
    is_valid: bool
    can_save: bool = Field(
        ...,
        description="No error-level issues; warnings may remain"
    )

    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-blocking warnings"
    )

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

"""
Two-Stage Validation Pipeline

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Required field presence (amount, name, category)
- Taxonomy references (category exists, subcategory belongs to it)
- This catches recognition errors and stale categories

STAGE 2 - SEMANTIC VALIDATION:
- Future date detection
- Very old date detection
- Absurd amount detection
- Foreign currency
- Duplicate detection (needs storage)
- This catches logically impossible or suspicious data

Stage 2 only runs when stage 1 passes.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them for human review.
"""

import datetime as dt
from decimal import Decimal
from typing import Optional, Union

from clarity.config import get_settings
from clarity.models.expense import (
    CandidateExpense,
    Expense,
    ValidationIssue,
    ValidationResult,
)
from clarity.services.storage import ExpenseStorageInterface, StorageError
from clarity.taxonomy.store import TaxonomyStore


Subject = Union[CandidateExpense, Expense]


class ExpenseValidator:
    """
    Validates candidate and saved expenses through a two-stage pipeline.

    Stage 1: Schema validation (needs the taxonomy)
    Stage 2: Semantic validation (may need storage for duplicate checks)
    """

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        expense_storage: Optional[ExpenseStorageInterface] = None,
    ):
        """
        Initialize validator.

        Args:
            taxonomy: Current categories, used for reference checks
            expense_storage: Storage interface for duplicate checking.
                             If None, duplicate checking is skipped.
        """
        self._taxonomy = taxonomy
        self._storage = expense_storage
        self._settings = get_settings().app

    @staticmethod
    def _subject_id(subject: Subject):
        if isinstance(subject, CandidateExpense):
            return subject.capture_id
        return subject.id

    def _validate_schema(
        self,
        subject: Subject,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if subject.amount is None:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="missing",
                message="Amount is required",
                severity="error",
                suggested_fix="Say or type the amount",
            ))
        elif subject.amount < 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Amount cannot be negative",
                severity="error",
                suggested_fix="Check if the amount was heard correctly",
            ))
        elif subject.amount == 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="zero_amount",
                message="Amount is zero",
                severity="warning",
                suggested_fix="Check if the amount was heard correctly",
            ))

        if not subject.name or not subject.name.strip():
            issues.append(ValidationIssue(
                field="name",
                issue_type="missing",
                message="Expense name is required",
                severity="error",
            ))

        if not subject.category:
            issues.append(ValidationIssue(
                field="category",
                issue_type="missing",
                message="Category is required",
                severity="error",
                suggested_fix="Create a category or pick an existing one",
            ))
        elif not self._taxonomy.has_category(subject.category):
            issues.append(ValidationIssue(
                field="category",
                issue_type="unknown_category",
                message=f"Category '{subject.category}' does not exist",
                severity="error",
                suggested_fix="Pick an existing category",
            ))
        elif not self._taxonomy.has_pair(subject.category, subject.subcategory):
            issues.append(ValidationIssue(
                field="subcategory",
                issue_type="unknown_subcategory",
                message=(
                    f"Subcategory '{subject.subcategory}' does not belong to "
                    f"'{subject.category}'"
                ),
                severity="error",
                suggested_fix="Pick a subcategory of the selected category",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        subject: Subject,
        today: dt.date,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        max_future_date = today + dt.timedelta(days=self._settings.future_date_tolerance_days)
        if subject.date > max_future_date:
            issues.append(ValidationIssue(
                field="date",
                issue_type="future_date",
                message=f"Expense date ({subject.date}) is in the future",
                severity="warning",
                suggested_fix="Please verify the date is correct",
            ))

        min_reasonable_date = today - dt.timedelta(days=365 * 2)
        if subject.date < min_reasonable_date:
            issues.append(ValidationIssue(
                field="date",
                issue_type="suspicious_date",
                message=f"Expense date ({subject.date}) seems unusually old",
                severity="warning",
                suggested_fix="Please verify the date was heard correctly",
            ))

        max_amount = Decimal(str(self._settings.max_expense_amount))
        if subject.amount > max_amount:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount ({subject.amount:,.2f}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

        currency = getattr(subject, "currency", None)
        if currency and currency.upper() != self._settings.default_currency:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="foreign_currency",
                message=(
                    f"Amount is in {currency}; it will be saved as "
                    f"{self._settings.default_currency} without conversion"
                ),
                severity="warning",
                suggested_fix="Convert the amount before saving",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    async def _check_duplicates(
        self,
        subject: Subject,
    ) -> list[ValidationIssue]:
        """Check for an identical expense already stored."""
        issues = []

        if self._storage is None:
            return issues

        try:
            is_duplicate = await self._storage.expense_exists(
                name=subject.name,
                amount=subject.amount,
                date=subject.date,
                exclude_id=subject.id if isinstance(subject, Expense) else None,
            )
        except StorageError:
            # Don't fail validation due to storage errors
            return issues

        if is_duplicate:
            issues.append(ValidationIssue(
                field="duplicate",
                issue_type="potential_duplicate",
                message=(
                    f"An expense '{subject.name}' of {subject.amount} on "
                    f"{subject.date} may already exist"
                ),
                severity="warning",
                suggested_fix="Please verify this isn't a duplicate entry",
            ))
        return issues

    async def validate(
        self,
        subject: Subject,
        check_duplicates: bool = True,
        today: Optional[dt.date] = None,
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            subject: Candidate (before confirmation) or Expense (edits)
            check_duplicates: Whether to check for duplicates (requires storage)
            today: Reference date for date checks

        Returns:
            ValidationResult with all issues found
        """
        today = today or dt.date.today()
        all_issues = []

        # Stage 1: Schema validation
        schema_valid, schema_issues = self._validate_schema(subject)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(subject, today)
            all_issues.extend(semantic_issues)

            if check_duplicates:
                all_issues.extend(await self._check_duplicates(subject))

        warnings = [
            issue.message for issue in all_issues
            if issue.severity == "warning"
        ]

        return ValidationResult(
            subject_id=self._subject_id(subject),
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            can_save=not any(issue.severity == "error" for issue in all_issues),
            issues=all_issues,
            warnings=warnings,
        )

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """Short summary shown next to the confirmation form."""
        if result.is_valid and not result.warnings:
            return "✅ Todo correcto. Revisa los datos y confirma."

        lines = []

        if not result.schema_valid:
            lines.append("❌ Falta información o no es válida:")
            for issue in result.issues:
                if issue.severity == "error":
                    lines.append(f"   • {issue.message}")
                    if issue.suggested_fix:
                        lines.append(f"     💡 {issue.suggested_fix}")

        if result.warnings:
            lines.append("")
            lines.append("⚠️ Revisa lo siguiente:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        lines.append("")
        if result.can_save:
            lines.append("Puedes guardar, pero revisa los datos.")
        else:
            lines.append("Corrige los errores antes de guardar.")

        return "\n".join(lines)

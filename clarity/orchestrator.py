"""
Main Orchestrator for Clarity

This module ties together all the components and defines the
end-to-end flows for:
1. Expense capture (utterance → normalize → resolve → synthesize →
   validate → confirm → save)
2. Taxonomy and budget management
3. Insights (monthly report, alerts, summary, tips)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No expense persists without human confirmation
- Tips are generated from computed figures only
- Every step is audited

The core pipeline components are synchronous and pure; the flows
here are async only because storage and the tips model are.
"""

import calendar
import datetime as dt
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel

from clarity.agents import TipsAgent, TipsResult, parse_expense_action
from clarity.audit import AuditLogger, create_correlation_id
from clarity.budgets import (
    AggregationEngine,
    budget_alerts,
    filter_expenses,
    summarize_spending,
)
from clarity.capture import (
    CategoryResolver,
    ExpenseSynthesizer,
    InsufficientDataError,
    LearnedPatterns,
    UtteranceNormalizer,
    split_utterance,
)
from clarity.config import get_settings
from clarity.models.expense import (
    Budget,
    BudgetAlert,
    BudgetReport,
    CandidateExpense,
    Category,
    Expense,
    ExpenseFilter,
    NormalizedUtterance,
    SpendingSummary,
    ValidationResult,
)
from clarity.services.storage import (
    AuditStorageInterface,
    BudgetStorageInterface,
    ExpenseStorageInterface,
    InMemoryAuditStorage,
    InMemoryBudgetStorage,
    InMemoryExpenseStorage,
    NotFoundError,
    StorageError,
)
from clarity.taxonomy import TaxonomyStore
from clarity.validation import ExpenseValidator


class ExpenseRejectedError(Exception):
    """A confirmed expense failed validation and was not saved."""

    def __init__(self, validation: ValidationResult):
        self.validation = validation
        messages = [i.message for i in validation.issues if i.severity == "error"]
        super().__init__("Expense not saved: " + "; ".join(messages))


class CaptureResult(BaseModel):
    """A candidate ready to be shown on the confirmation form."""

    correlation_id: UUID
    candidate: CandidateExpense
    validation: ValidationResult
    message: str


def _issues_for_audit(result: ValidationResult) -> list[dict]:
    return [
        {"field": i.field, "type": i.issue_type, "message": i.message}
        for i in result.issues
    ]


def month_bounds(month: str) -> tuple[dt.date, dt.date]:
    """First and last day of a "YYYY-MM" month."""
    year, month_number = (int(part) for part in month.split("-"))
    last_day = calendar.monthrange(year, month_number)[1]
    return dt.date(year, month_number, 1), dt.date(year, month_number, last_day)


class ExpenseCaptureFlow:
    """
    Orchestrates voice/AI expense capture.

    Flow:
    1. Receive → one complete utterance from the speech/AI collaborator
    2. Normalize → amount, currency, payment, date, residual text
    3. Resolve → ranked category candidates
    4. Synthesize → CandidateExpense with needs_confirmation flags
    5. Validate → Two-stage validation
    6. Review → Present to user (PAUSE - require confirmation)
    7. Confirm → User explicitly approves (with corrections)
    8. Save → Persist to storage

    Human confirmation (step 7) is MANDATORY.
    The system NEVER auto-saves.
    """

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        expense_storage: Optional[ExpenseStorageInterface] = None,
        normalizer: Optional[UtteranceNormalizer] = None,
        resolver: Optional[CategoryResolver] = None,
        synthesizer: Optional[ExpenseSynthesizer] = None,
        validator: Optional[ExpenseValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._taxonomy = taxonomy
        self._expense_storage = expense_storage
        self._normalizer = normalizer or UtteranceNormalizer()
        self._resolver = resolver or CategoryResolver(taxonomy)
        self._synthesizer = synthesizer or ExpenseSynthesizer(taxonomy)
        self._validator = validator or ExpenseValidator(taxonomy, expense_storage)
        self._audit_logger = audit_logger
        self._learned: Optional[LearnedPatterns] = None

    @property
    def resolver(self) -> CategoryResolver:
        return self._resolver

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    async def capture(
        self,
        text: str,
        correlation_id: Optional[UUID] = None,
        today: Optional[dt.date] = None,
    ) -> CaptureResult:
        """
        Turn one utterance into a candidate expense.

        Raises:
            InsufficientDataError: If no amount could be read
        """
        correlation_id = correlation_id or create_correlation_id()
        normalized = self._normalizer.normalize(text, today=today)
        return await self._build_candidate(normalized, correlation_id, today)

    async def capture_many(
        self,
        text: str,
        correlation_id: Optional[UUID] = None,
        today: Optional[dt.date] = None,
    ) -> list[CaptureResult]:
        """
        Capture an utterance naming several expenses.

        "50 en gasolina y 20 en comida" yields two candidates sharing one
        correlation id. Segments without an amount are skipped.

        Raises:
            InsufficientDataError: If no segment has an amount
        """
        correlation_id = correlation_id or create_correlation_id()
        segments = split_utterance(text) or [text]

        results = []
        for segment in segments:
            try:
                results.append(await self.capture(segment, correlation_id, today))
            except InsufficientDataError:
                continue

        if not results:
            raise InsufficientDataError(
                self._normalizer.normalize(text, today=today)
            )
        return results

    async def capture_from_assistant(
        self,
        reply: str,
        correlation_id: Optional[UUID] = None,
        today: Optional[dt.date] = None,
    ) -> Optional[CaptureResult]:
        """
        Capture the expense command embedded in an assistant reply.

        Returns None when the reply has no expense command.
        """
        normalized = parse_expense_action(reply)
        if normalized is None:
            return None
        correlation_id = correlation_id or create_correlation_id()
        return await self._build_candidate(normalized, correlation_id, today)

    async def capture_failed(
        self,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Record that the speech/AI collaborator delivered nothing."""
        if self._audit_logger:
            await self._audit_logger.log_capture_failed(
                reason=reason,
                correlation_id=correlation_id or create_correlation_id(),
            )

    async def _build_candidate(
        self,
        normalized: NormalizedUtterance,
        correlation_id: UUID,
        today: Optional[dt.date],
    ) -> CaptureResult:
        capture_id = uuid4()

        if self._audit_logger:
            await self._audit_logger.log_utterance_received(
                capture_id=capture_id,
                text=normalized.raw_text,
                correlation_id=correlation_id,
            )
            await self._audit_logger.log_utterance_normalized(
                capture_id=capture_id,
                normalized=normalized,
                correlation_id=correlation_id,
            )

        if not normalized.is_actionable:
            if self._audit_logger:
                await self._audit_logger.log_insufficient_data(
                    capture_id=capture_id,
                    text=normalized.raw_text,
                    correlation_id=correlation_id,
                )
            raise InsufficientDataError(normalized)

        candidates = self._resolver.resolve(normalized.residual_text)
        candidate = self._synthesizer.synthesize(
            normalized,
            candidates,
            today=today,
            capture_id=capture_id,
        )

        if self._audit_logger:
            await self._audit_logger.log_category_resolved(
                capture_id=capture_id,
                candidates=candidates,
                correlation_id=correlation_id,
            )
            await self._audit_logger.log_candidate_synthesized(
                candidate=candidate,
                correlation_id=correlation_id,
            )

        validation = await self._validator.validate(candidate, today=today)
        return CaptureResult(
            correlation_id=correlation_id,
            candidate=candidate,
            validation=validation,
            message=self._validator.get_user_friendly_summary(validation),
        )

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    async def confirm_and_save(
        self,
        candidate: CandidateExpense,
        corrections: Optional[dict[str, Any]] = None,
        correlation_id: Optional[UUID] = None,
        today: Optional[dt.date] = None,
    ) -> Expense:
        """
        Confirm and save a captured expense.

        CRITICAL: This is called ONLY after explicit user confirmation.

        Args:
            candidate: The candidate shown to the user
            corrections: Fields the user changed on the form

        Raises:
            ExpenseRejectedError: If the confirmed values fail validation
        """
        correlation_id = correlation_id or create_correlation_id()
        corrections = corrections or {}

        expense = candidate.to_expense(**corrections)
        await self._validate_or_reject(expense, correlation_id, today)

        if self._audit_logger:
            await self._audit_logger.log_user_confirmed(
                expense_id=expense.id,
                capture_id=candidate.capture_id,
                corrected_fields=sorted(corrections),
                correlation_id=correlation_id,
            )

        await self._save(expense, correlation_id)
        return expense

    async def reject(
        self,
        candidate: CandidateExpense,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Record that the user discarded the candidate.

        Nothing is persisted.
        """
        if self._audit_logger:
            await self._audit_logger.log_user_rejected(
                capture_id=candidate.capture_id,
                reason=reason,
                correlation_id=correlation_id or create_correlation_id(),
            )

    # -------------------------------------------------------------------------
    # Manual entry & edits
    # -------------------------------------------------------------------------

    async def record_manual_expense(
        self,
        expense: Expense,
        correlation_id: Optional[UUID] = None,
        today: Optional[dt.date] = None,
    ) -> Expense:
        """Save an expense typed in by the user (already confirmed)."""
        correlation_id = correlation_id or create_correlation_id()
        await self._validate_or_reject(expense, correlation_id, today)
        await self._save(expense, correlation_id)
        return expense

    async def edit_expense(
        self,
        expense_id: UUID,
        correlation_id: Optional[UUID] = None,
        today: Optional[dt.date] = None,
        **changes: Any,
    ) -> Expense:
        """
        Replace a saved expense with an edited copy.

        Raises:
            NotFoundError: If the expense doesn't exist
            ExpenseRejectedError: If the edited values fail validation
        """
        existing = await self._require_storage().get_expense_by_id(expense_id)
        if existing is None:
            raise NotFoundError(f"Expense not found: {expense_id}")

        edited = existing.edit(**changes)
        await self._validate_or_reject(edited, correlation_id, today)
        await self._require_storage().update_expense(edited)

        changed = sorted(
            field for field in changes
            if getattr(existing, field) != getattr(edited, field)
        )
        if self._audit_logger:
            await self._audit_logger.log_expense_updated(
                expense_id=edited.id,
                changed_fields=changed,
                correlation_id=correlation_id,
            )
        return edited

    async def delete_expense(
        self,
        expense_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        deleted = await self._require_storage().delete_expense(expense_id)
        if deleted and self._audit_logger:
            await self._audit_logger.log_expense_deleted(
                expense_id=expense_id,
                correlation_id=correlation_id,
            )
        return deleted

    # -------------------------------------------------------------------------
    # Learned patterns & suggestions
    # -------------------------------------------------------------------------

    async def refresh_learned_patterns(self) -> LearnedPatterns:
        """Rebuild keyword patterns from the most recent saved expenses."""
        expenses = await self._require_storage().list_expenses()
        self._learned = LearnedPatterns.from_expenses(
            expenses,
            window=get_settings().app.learned_pattern_window,
        )
        self._resolver.set_learned_patterns(self._learned)
        return self._learned

    def suggest(self, prefix: str, limit: int = 3) -> list[str]:
        return self._resolver.suggest(prefix, limit=limit)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require_storage(self) -> ExpenseStorageInterface:
        if self._expense_storage is None:
            raise RuntimeError("Expense storage is not configured")
        return self._expense_storage

    async def _validate_or_reject(
        self,
        expense: Expense,
        correlation_id: Optional[UUID],
        today: Optional[dt.date],
    ) -> ValidationResult:
        result = await self._validator.validate(expense, today=today)
        if not result.can_save:
            if self._audit_logger:
                await self._audit_logger.log_validation_failed(
                    subject_id=expense.id,
                    issues=_issues_for_audit(result),
                    correlation_id=correlation_id or create_correlation_id(),
                )
            raise ExpenseRejectedError(result)
        return result

    async def _save(self, expense: Expense, correlation_id: UUID) -> None:
        if self._expense_storage is not None:
            try:
                await self._expense_storage.save_expense(expense)
            except StorageError as e:
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        error_type=type(e).__name__,
                        error_message=str(e),
                        details={"expense_id": str(expense.id)},
                        correlation_id=correlation_id,
                    )
                raise

            if self._audit_logger:
                await self._audit_logger.log_expense_saved(
                    expense=expense,
                    correlation_id=correlation_id,
                )

        if self._learned is not None:
            self._learned.learn(expense)


class BudgetFlow:
    """
    Orchestrates category and budget changes.

    The TaxonomyStore enforces uniqueness and the cascade; this flow
    mirrors the result into budget storage and the audit trail.
    """

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        budget_storage: Optional[BudgetStorageInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._taxonomy = taxonomy
        self._budget_storage = budget_storage
        self._audit_logger = audit_logger

    async def load(self) -> list[Budget]:
        """Load persisted budgets into the taxonomy (orphans included)."""
        if self._budget_storage is None:
            return []
        budgets = await self._budget_storage.list_budgets()
        self._taxonomy.load_budgets(budgets)
        return budgets

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def add_category(self, name: str) -> Category:
        category = self._taxonomy.add_category(name)
        await self._audit_taxonomy("add_category", category.name)
        return category

    async def remove_category(self, name: str) -> Category:
        """Remove a category with its subcategories and budget."""
        had_budget = self._taxonomy.get_budget(name) is not None
        removed = self._taxonomy.remove_category(name)
        await self._audit_taxonomy("remove_category", removed.name)
        if had_budget:
            await self._forget_budget(removed.name)
        return removed

    async def add_subcategory(self, category: str, name: str) -> Category:
        updated = self._taxonomy.add_subcategory(category, name)
        await self._audit_taxonomy("add_subcategory", updated.name, name)
        return updated

    async def remove_subcategory(self, category: str, name: str) -> Category:
        updated = self._taxonomy.remove_subcategory(category, name)
        await self._audit_taxonomy("remove_subcategory", updated.name, name)
        return updated

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    async def add_budget(
        self,
        category: str,
        monthly_limit: Union[Decimal, int, str],
    ) -> Budget:
        """
        Create a budget.

        Raises:
            UnknownCategoryError: If the category does not exist
            DuplicateBudgetError: If the category already has a budget
        """
        budget = self._taxonomy.add_budget(category, monthly_limit)
        await self._persist_budget(budget)
        return budget

    async def set_budget(
        self,
        category: str,
        monthly_limit: Union[Decimal, int, str],
    ) -> Budget:
        """Create the budget, or change its limit if it exists."""
        if self._taxonomy.get_budget(category) is None:
            budget = self._taxonomy.add_budget(category, monthly_limit)
        else:
            budget = self._taxonomy.set_budget_limit(category, monthly_limit)
        await self._persist_budget(budget)
        return budget

    async def remove_budget(self, category: str) -> Optional[Budget]:
        removed = self._taxonomy.remove_budget(category)
        if removed is not None:
            await self._forget_budget(removed.category)
        return removed

    def budgets(self) -> dict[str, Budget]:
        return self._taxonomy.budgets()

    async def _persist_budget(self, budget: Budget) -> None:
        if self._budget_storage is not None:
            await self._budget_storage.save_budget(budget)
        if self._audit_logger:
            await self._audit_logger.log_budget_saved(
                category=budget.category,
                monthly_limit=budget.monthly_limit,
            )

    async def _forget_budget(self, category: str) -> None:
        if self._budget_storage is not None:
            await self._budget_storage.delete_budget(category)
        if self._audit_logger:
            await self._audit_logger.log_budget_removed(category=category)

    async def _audit_taxonomy(
        self,
        action: str,
        category: str,
        subcategory: Optional[str] = None,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_taxonomy_changed(
                action=action,
                category=category,
                subcategory=subcategory,
            )


class InsightsFlow:
    """
    Monthly report, alerts, spending summary and tips.

    Everything is recomputed from storage on each call; the
    AggregationEngine memoizes unchanged inputs.
    """

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        expense_storage: ExpenseStorageInterface,
        engine: Optional[AggregationEngine] = None,
        tips_agent: Optional[TipsAgent] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._taxonomy = taxonomy
        self._expense_storage = expense_storage
        self._engine = engine or AggregationEngine()
        self._tips_agent = tips_agent
        self._audit_logger = audit_logger

    async def month_expenses(
        self,
        month: str,
        criteria: Optional[ExpenseFilter] = None,
    ) -> list[Expense]:
        first, last = month_bounds(month)
        expenses = await self._expense_storage.list_expenses(
            date_from=first,
            date_to=last,
            limit=100_000,
        )
        if criteria is not None:
            expenses = filter_expenses(expenses, criteria)
        return expenses

    async def monthly_report(
        self,
        month: str,
        criteria: Optional[ExpenseFilter] = None,
    ) -> BudgetReport:
        expenses = await self.month_expenses(month, criteria)
        return self._engine.report(expenses, self._taxonomy.budgets())

    async def alerts(self, month: str) -> list[BudgetAlert]:
        report = await self.monthly_report(month)
        return budget_alerts(report, get_settings().app.alert_thresholds_list)

    async def summary(
        self,
        month: str,
        today: Optional[dt.date] = None,
    ) -> SpendingSummary:
        expenses = await self.month_expenses(month)
        return summarize_spending(expenses, month, today=today)

    async def tips(
        self,
        month: str,
        today: Optional[dt.date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TipsResult:
        """
        Tips for a month.

        The agent only sees the summary, the report and the alerts.
        """
        expenses = await self.month_expenses(month)
        summary = summarize_spending(expenses, month, today=today)
        report = self._engine.report(expenses, self._taxonomy.budgets())
        alerts = budget_alerts(report, get_settings().app.alert_thresholds_list)

        if self._tips_agent is None:
            self._tips_agent = TipsAgent()
        result = await self._tips_agent.generate_tips(summary, report, alerts)

        if self._audit_logger:
            if self._tips_agent.is_available and result.source == "rules":
                await self._audit_logger.log_external_service_error(
                    service="gemini",
                    error_message="Tips model failed; rule-based tips used",
                    correlation_id=correlation_id,
                )
            await self._audit_logger.log_tips_generated(
                month=month,
                tip_count=len(result.tips),
                source=result.source,
                correlation_id=correlation_id,
            )
        return result


def create_app_components(
    taxonomy: Optional[TaxonomyStore] = None,
    expense_storage: Optional[ExpenseStorageInterface] = None,
    budget_storage: Optional[BudgetStorageInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> tuple[ExpenseCaptureFlow, BudgetFlow, InsightsFlow]:
    """
    Factory function to create all application components.

    Any storage not supplied is in-memory; the taxonomy defaults to
    DEFAULT_TAXONOMY.

    Returns:
        (capture_flow, budget_flow, insights_flow)
    """
    if taxonomy is None:
        taxonomy = TaxonomyStore.with_defaults()
    if expense_storage is None:
        expense_storage = InMemoryExpenseStorage()
    if budget_storage is None:
        budget_storage = InMemoryBudgetStorage()
    if audit_storage is None:
        audit_storage = InMemoryAuditStorage()
    audit_logger = AuditLogger(audit_storage)

    capture_flow = ExpenseCaptureFlow(
        taxonomy=taxonomy,
        expense_storage=expense_storage,
        audit_logger=audit_logger,
    )

    budget_flow = BudgetFlow(
        taxonomy=taxonomy,
        budget_storage=budget_storage,
        audit_logger=audit_logger,
    )

    insights_flow = InsightsFlow(
        taxonomy=taxonomy,
        expense_storage=expense_storage,
        audit_logger=audit_logger,
    )

    return capture_flow, budget_flow, insights_flow

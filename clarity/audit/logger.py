"""
Audit Logger

DESIGN DECISION: Every step of the capture pipeline and every change to
expenses, categories and budgets is logged. This provides:
1. Complete traceability of what was heard versus what was saved
2. Debugging capability for misrecognised utterances
3. A history the user can inspect

The audit logger:
- Is async so persistence never blocks the capture flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace one capture end to end
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from clarity.models.audit import AuditEvent, AuditEventBuilder
from clarity.models.expense import (
    CandidateExpense,
    CategoryCandidate,
    Expense,
    NormalizedUtterance,
)
from clarity.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def _amount(value: Optional[Decimal]) -> Optional[str]:
    return f"{value:.2f}" if value is not None else None


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (JSON via structlog)
    2. An AuditStorageInterface, when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("clarity.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage is not None:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # -------------------------------------------------------------------------
    # Capture pipeline
    # -------------------------------------------------------------------------

    async def log_utterance_received(
        self,
        capture_id: UUID,
        text: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.utterance_received(
            capture_id=capture_id,
            text=text,
            correlation_id=correlation_id,
        ))

    async def log_utterance_normalized(
        self,
        capture_id: UUID,
        normalized: NormalizedUtterance,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.utterance_normalized(
            capture_id=capture_id,
            amount=_amount(normalized.amount),
            payment_hint=normalized.payment_hint.value if normalized.payment_hint else None,
            residual_text=normalized.residual_text,
            correlation_id=correlation_id,
        ))

    async def log_category_resolved(
        self,
        capture_id: UUID,
        candidates: list[CategoryCandidate],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.category_resolved(
            capture_id=capture_id,
            candidates=[candidate.model_dump(mode="json") for candidate in candidates],
            correlation_id=correlation_id,
        ))

    async def log_candidate_synthesized(
        self,
        candidate: CandidateExpense,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.candidate_synthesized(
            capture_id=candidate.capture_id,
            needs_confirmation=candidate.needs_confirmation,
            confidence=candidate.confidence,
            correlation_id=correlation_id,
        ))

    async def log_insufficient_data(
        self,
        capture_id: UUID,
        text: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.insufficient_data(
            capture_id=capture_id,
            text=text,
            correlation_id=correlation_id,
        ))

    async def log_capture_failed(
        self,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        """Log a speech/AI collaborator failure (nothing was heard)."""
        await self.log(AuditEventBuilder.capture_failed(
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        subject_id: UUID,
        issues: list[dict],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.validation_failed(
            subject_id=subject_id,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_user_confirmed(
        self,
        expense_id: UUID,
        capture_id: UUID,
        corrected_fields: list[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.user_confirmed(
            expense_id=expense_id,
            capture_id=capture_id,
            corrected_fields=corrected_fields,
            correlation_id=correlation_id,
        ))

    async def log_user_rejected(
        self,
        capture_id: UUID,
        reason: Optional[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.user_rejected(
            capture_id=capture_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Expenses, taxonomy, budgets
    # -------------------------------------------------------------------------

    async def log_expense_saved(
        self,
        expense: Expense,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_saved(
            expense_id=expense.id,
            name=expense.name,
            amount=_amount(expense.amount),
            category=expense.category,
            correlation_id=correlation_id,
        ))

    async def log_expense_updated(
        self,
        expense_id: UUID,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_updated(
            expense_id=expense_id,
            changed_fields=changed_fields,
            correlation_id=correlation_id,
        ))

    async def log_expense_deleted(
        self,
        expense_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_deleted(
            expense_id=expense_id,
            correlation_id=correlation_id,
        ))

    async def log_taxonomy_changed(
        self,
        action: str,
        category: str,
        subcategory: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.taxonomy_changed(
            action=action,
            category=category,
            subcategory=subcategory,
            correlation_id=correlation_id,
        ))

    async def log_budget_saved(
        self,
        category: str,
        monthly_limit: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_saved(
            category=category,
            monthly_limit=_amount(monthly_limit),
            correlation_id=correlation_id,
        ))

    async def log_budget_removed(
        self,
        category: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_removed(
            category=category,
            correlation_id=correlation_id,
        ))

    async def log_tips_generated(
        self,
        month: str,
        tip_count: int,
        source: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.tips_generated(
            month=month,
            tip_count=tip_count,
            source=source,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., one voice capture).
    Pass it through all subsequent operations.
    """
    return uuid4()

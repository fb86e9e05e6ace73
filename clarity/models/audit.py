"""
Audit Models for Clarity

Every significant action in the capture pipeline is logged for audit purposes.
This provides:
1. Traceability from utterance to saved expense
2. Debugging information when recognition goes wrong
3. Data for measuring how often users correct the pipeline

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import datetime as dt
import json
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from clarity.models.expense import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of the capture pipeline has its own event type.
    """
    # Capture
    UTTERANCE_RECEIVED = "utterance_received"
    UTTERANCE_NORMALIZED = "utterance_normalized"
    CATEGORY_RESOLVED = "category_resolved"
    CANDIDATE_SYNTHESIZED = "candidate_synthesized"
    INSUFFICIENT_DATA = "insufficient_data"
    CAPTURE_FAILED = "capture_failed"

    # Human confirmation
    USER_CONFIRMED = "user_confirmed"
    USER_REJECTED = "user_rejected"
    VALIDATION_FAILED = "validation_failed"

    # Persistence
    EXPENSE_SAVED = "expense_saved"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"

    # Taxonomy and budgets
    TAXONOMY_CHANGED = "taxonomy_changed"
    BUDGET_SAVED = "budget_saved"
    BUDGET_REMOVED = "budget_removed"

    # Insights
    TIPS_GENERATED = "tips_generated"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: dt.datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'capture', 'budget')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - all events of one capture share this
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_row(self) -> list:
        """
        Convert to a flat row for tabular storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.utterance_received(capture_id, text, correlation_id)
        event = AuditEventBuilder.user_confirmed(expense_id, capture_id, correlation_id)
    """

    @staticmethod
    def utterance_received(
        capture_id: UUID,
        text: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UTTERANCE_RECEIVED,
            entity_type="capture",
            entity_id=capture_id,
            correlation_id=correlation_id,
            description=f"Utterance received ({len(text)} chars)",
            details={
                "text": text[:200],
            },
            is_user_action=True,
        )

    @staticmethod
    def utterance_normalized(
        capture_id: UUID,
        amount: Optional[str],
        payment_hint: Optional[str],
        residual_text: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UTTERANCE_NORMALIZED,
            entity_type="capture",
            entity_id=capture_id,
            correlation_id=correlation_id,
            description=f"Utterance normalized: amount={amount}",
            details={
                "amount": amount,
                "payment_hint": payment_hint,
                "residual_text": residual_text,
            },
        )

    @staticmethod
    def category_resolved(
        capture_id: UUID,
        candidates: list[dict],
        correlation_id: UUID
    ) -> AuditEvent:
        top = candidates[0]["category"] if candidates else None
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_RESOLVED,
            entity_type="capture",
            entity_id=capture_id,
            correlation_id=correlation_id,
            description=(
                f"Category resolved: {top}" if top
                else "No category matched"
            ),
            details={
                "candidates": candidates[:5],
            },
        )

    @staticmethod
    def candidate_synthesized(
        capture_id: UUID,
        needs_confirmation: list[str],
        confidence: dict[str, float],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CANDIDATE_SYNTHESIZED,
            entity_type="capture",
            entity_id=capture_id,
            correlation_id=correlation_id,
            description=(
                f"Candidate built, {len(needs_confirmation)} field(s) to confirm"
            ),
            details={
                "needs_confirmation": needs_confirmation,
                "confidence": confidence,
            },
        )

    @staticmethod
    def insufficient_data(
        capture_id: UUID,
        text: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSUFFICIENT_DATA,
            severity=AuditSeverity.WARNING,
            entity_type="capture",
            entity_id=capture_id,
            correlation_id=correlation_id,
            description="Capture abandoned: no amount could be extracted",
            details={
                "text": text[:200],
            },
        )

    @staticmethod
    def capture_failed(
        reason: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CAPTURE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="capture",
            correlation_id=correlation_id,
            description="Speech capture failed or was cancelled",
            details={
                "reason": reason,
            },
        )

    @staticmethod
    def validation_failed(
        subject_id: UUID,
        issues: list[dict],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="capture",
            entity_id=subject_id,
            correlation_id=correlation_id,
            description=f"Validation failed with {len(issues)} issues",
            details={
                "issues": issues,
            },
        )

    @staticmethod
    def user_confirmed(
        expense_id: UUID,
        capture_id: UUID,
        corrected_fields: list[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USER_CONFIRMED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description="User confirmed captured expense",
            details={
                "capture_id": str(capture_id),
                "corrected_fields": corrected_fields,
            },
            is_user_action=True,
        )

    @staticmethod
    def user_rejected(
        capture_id: UUID,
        reason: Optional[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USER_REJECTED,
            entity_type="capture",
            entity_id=capture_id,
            correlation_id=correlation_id,
            description="User rejected captured expense",
            details={
                "reason": reason or "No reason provided",
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_saved(
        expense_id: UUID,
        name: str,
        amount: str,
        category: str,
        correlation_id: Optional[UUID]
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_SAVED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense saved: {name} - €{amount}",
            details={
                "name": name,
                "amount": amount,
                "category": category,
            },
        )

    @staticmethod
    def expense_updated(
        expense_id: UUID,
        changed_fields: list[str],
        correlation_id: Optional[UUID]
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_UPDATED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense updated: {', '.join(changed_fields) or 'no changes'}",
            details={
                "changed_fields": changed_fields,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_deleted(
        expense_id: UUID,
        correlation_id: Optional[UUID]
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description="Expense deleted",
            is_user_action=True,
        )

    @staticmethod
    def taxonomy_changed(
        action: str,
        category: str,
        subcategory: Optional[str] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        target = f"{category}/{subcategory}" if subcategory else category
        return AuditEvent(
            event_type=AuditEventType.TAXONOMY_CHANGED,
            entity_type="taxonomy",
            correlation_id=correlation_id,
            description=f"Taxonomy {action}: {target}",
            details={
                "action": action,
                "category": category,
                "subcategory": subcategory,
            },
            is_user_action=True,
        )

    @staticmethod
    def budget_saved(
        category: str,
        monthly_limit: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_SAVED,
            entity_type="budget",
            correlation_id=correlation_id,
            description=f"Budget saved: {category} - €{monthly_limit}",
            details={
                "category": category,
                "monthly_limit": monthly_limit,
            },
            is_user_action=True,
        )

    @staticmethod
    def budget_removed(
        category: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_REMOVED,
            entity_type="budget",
            correlation_id=correlation_id,
            description=f"Budget removed: {category}",
            details={
                "category": category,
            },
        )

    @staticmethod
    def tips_generated(
        month: str,
        tip_count: int,
        source: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TIPS_GENERATED,
            entity_type="insights",
            correlation_id=correlation_id,
            description=f"{tip_count} tips generated for {month} ({source})",
            details={
                "month": month,
                "tip_count": tip_count,
                "source": source,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )

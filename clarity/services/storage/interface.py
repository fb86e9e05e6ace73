"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Keep the capture pipeline free of any persistence format
2. Use in-memory storage for testing
3. Swap in a remote backend without touching business logic

The interface is intentionally simple - we're not building a full ORM.
Just the operations we need for expenses, budgets and the audit trail.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from clarity.models.audit import AuditEvent
from clarity.models.expense import Budget, Expense, PaymentMethod


class ExpenseStorageInterface(ABC):
    """
    Abstract interface for expense storage operations.

    Expenses are immutable values: update replaces the stored value
    with the same id, it never patches fields in place.
    """

    @abstractmethod
    async def save_expense(self, expense: Expense) -> bool:
        """
        Save a confirmed expense.

        Returns:
            True if saved successfully

        Raises:
            DuplicateError: If an expense with this id is already stored
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def get_expense_by_id(self, expense_id: UUID) -> Optional[Expense]:
        """The expense if found, None otherwise."""
        pass

    @abstractmethod
    async def update_expense(self, expense: Expense) -> bool:
        """
        Replace a stored expense with an edited value.

        Raises:
            NotFoundError: If the expense doesn't exist
        """
        pass

    @abstractmethod
    async def delete_expense(self, expense_id: UUID) -> bool:
        """
        Delete an expense by ID.

        Returns:
            True if deleted, False if it did not exist
        """
        pass

    @abstractmethod
    async def list_expenses(
        self,
        category: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        payment_method: Optional[PaymentMethod] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[Expense]:
        """
        List expenses with optional filters, oldest first.

        Args:
            category: Filter by category (case-insensitive)
            date_from: Expenses on or after this date
            date_to: Expenses on or before this date
            payment_method: Filter by payment method
            limit: Maximum number of results
            offset: Number of results to skip
        """
        pass

    @abstractmethod
    async def expense_exists(
        self,
        name: str,
        amount: Decimal,
        date: date,
        exclude_id: Optional[UUID] = None,
    ) -> bool:
        """
        Check if an identical expense already exists (duplicate detection).

        Same name (case-insensitive), amount and date.
        """
        pass


class BudgetStorageInterface(ABC):
    """Abstract interface for budget storage. One budget per category."""

    @abstractmethod
    async def save_budget(self, budget: Budget) -> bool:
        """Insert or replace the budget for budget.category."""
        pass

    @abstractmethod
    async def delete_budget(self, category: str) -> bool:
        """True if a budget was removed."""
        pass

    @abstractmethod
    async def list_budgets(self) -> list[Budget]:
        """All budgets, in creation order."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """All events of one flow (e.g. one capture), chronological."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'capture', 'expense')
            entity_id: The entity's ID
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass

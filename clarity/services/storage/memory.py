"""
In-memory storage implementations.

Used by the tests and by embedders that persist elsewhere (they load
expenses and budgets into these stores at startup). Values are kept
as-is: Expense and Budget are frozen, so no defensive copies are needed.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from clarity.models.audit import AuditEvent
from clarity.models.expense import Budget, Expense, PaymentMethod
from clarity.services.storage.interface import (
    AuditStorageInterface,
    BudgetStorageInterface,
    DuplicateError,
    ExpenseStorageInterface,
    NotFoundError,
)


def _key(name: str) -> str:
    return " ".join(name.split()).casefold()


class InMemoryExpenseStorage(ExpenseStorageInterface):
    """Dict-backed expense storage preserving insertion order."""

    def __init__(self, expenses: Optional[list[Expense]] = None):
        self._expenses: dict[UUID, Expense] = {}
        for expense in expenses or []:
            self._expenses[expense.id] = expense

    async def save_expense(self, expense: Expense) -> bool:
        if expense.id in self._expenses:
            raise DuplicateError(f"Expense already exists: {expense.id}")
        self._expenses[expense.id] = expense
        return True

    async def get_expense_by_id(self, expense_id: UUID) -> Optional[Expense]:
        return self._expenses.get(expense_id)

    async def update_expense(self, expense: Expense) -> bool:
        if expense.id not in self._expenses:
            raise NotFoundError(f"Expense not found: {expense.id}")
        self._expenses[expense.id] = expense
        return True

    async def delete_expense(self, expense_id: UUID) -> bool:
        return self._expenses.pop(expense_id, None) is not None

    async def list_expenses(
        self,
        category: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        payment_method: Optional[PaymentMethod] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[Expense]:
        expenses = []
        for expense in self._expenses.values():
            # Apply filters
            if category and _key(expense.category) != _key(category):
                continue
            if date_from and expense.date < date_from:
                continue
            if date_to and expense.date > date_to:
                continue
            if payment_method and expense.payment_method != payment_method:
                continue
            expenses.append(expense)

        # Stable: same-day expenses keep insertion order
        expenses.sort(key=lambda e: e.date)
        return expenses[offset:offset + limit]

    async def expense_exists(
        self,
        name: str,
        amount: Decimal,
        date: date,
        exclude_id: Optional[UUID] = None,
    ) -> bool:
        for expense in self._expenses.values():
            if expense.id == exclude_id:
                continue
            if (
                _key(expense.name) == _key(name)
                and expense.amount == amount
                and expense.date == date
            ):
                return True
        return False

    def __len__(self) -> int:
        return len(self._expenses)


class InMemoryBudgetStorage(BudgetStorageInterface):
    """Budgets keyed by case-insensitive category name."""

    def __init__(self, budgets: Optional[list[Budget]] = None):
        self._budgets: dict[str, Budget] = {}
        for budget in budgets or []:
            self._budgets[_key(budget.category)] = budget

    async def save_budget(self, budget: Budget) -> bool:
        self._budgets[_key(budget.category)] = budget
        return True

    async def delete_budget(self, category: str) -> bool:
        return self._budgets.pop(_key(category), None) is not None

    async def list_budgets(self) -> list[Budget]:
        return list(self._budgets.values())


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def __len__(self) -> int:
        return len(self._events)

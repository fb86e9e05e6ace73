"""Expense validation."""

from clarity.validation.validator import ExpenseValidator

__all__ = ["ExpenseValidator"]

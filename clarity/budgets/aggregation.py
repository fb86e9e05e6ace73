"""
Budget Aggregation Engine

DESIGN DECISION: Aggregation is DETERMINISTIC and PURE.
Totals, percentages and over-budget flags are computed from the
expenses and budgets passed in, and nothing else. The same inputs
always produce the same report, so reports are recomputed freely
instead of being stored.

Rules:
- every category that appears in either input gets a breakdown
- percentage_of_budget = total / limit * 100, never clamped
- limit 0: any spending is over budget (percentage is infinite);
  no spending is 0 % and not over
- budgets whose category no longer exists are aggregated like any other
"""

import calendar
import datetime as dt
import hashlib
from collections import OrderedDict
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence, Union

from clarity.capture.numbers import fold, quantize
from clarity.config import get_settings
from clarity.models.expense import (
    INFINITE_PERCENTAGE,
    Budget,
    BudgetAlert,
    BudgetReport,
    CategoryBreakdown,
    CategoryTotal,
    Expense,
    ExpenseFilter,
    SpendingSummary,
)


ZERO = Decimal("0.00")
DEFAULT_ALERT_THRESHOLDS = (80, 90, 100)

BudgetsInput = Union[Mapping[str, Budget], Iterable[Budget]]


def _key(name: str) -> str:
    return " ".join(name.split()).casefold()


def _budget_list(budgets: BudgetsInput) -> list[Budget]:
    if isinstance(budgets, Mapping):
        return list(budgets.values())
    return list(budgets)


def percentage_of(total: Decimal, limit: Decimal) -> float:
    """total / limit * 100; infinite when a zero limit has spending."""
    if limit == 0:
        return INFINITE_PERCENTAGE if total > 0 else 0.0
    return float(total / limit * 100)


# =============================================================================
# AGGREGATION
# =============================================================================

def aggregate(
    expenses: Iterable[Expense],
    budgets: BudgetsInput,
) -> BudgetReport:
    """
    Aggregate expenses against budgets.

    Categories are ordered by budget order first, then by first
    appearance in the expenses.
    """
    budget_list = _budget_list(budgets)

    names: dict[str, str] = {}
    limits: dict[str, Decimal] = {}
    for budget in budget_list:
        key = _key(budget.category)
        names.setdefault(key, budget.category)
        # Later duplicates win, as when loading from persistence
        limits[key] = budget.monthly_limit

    totals: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    sub_totals: dict[str, dict[str, Decimal]] = {}
    sub_counts: dict[str, dict[str, int]] = {}
    sub_names: dict[str, dict[str, str]] = {}

    for expense in expenses:
        key = _key(expense.category)
        names.setdefault(key, expense.category)
        totals[key] = totals.get(key, ZERO) + expense.amount
        counts[key] = counts.get(key, 0) + 1

        if expense.subcategory:
            sub_key = _key(expense.subcategory)
            sub_names.setdefault(key, {}).setdefault(sub_key, expense.subcategory)
            by_sub = sub_totals.setdefault(key, {})
            by_sub[sub_key] = by_sub.get(sub_key, ZERO) + expense.amount
            by_count = sub_counts.setdefault(key, {})
            by_count[sub_key] = by_count.get(sub_key, 0) + 1

    breakdowns: list[CategoryBreakdown] = []
    for key, name in names.items():
        total = quantize(totals.get(key, ZERO))
        limit = limits.get(key)

        subcategories = []
        for sub_key, sub_name in sub_names.get(key, {}).items():
            sub_total = quantize(sub_totals[key][sub_key])
            subcategories.append(CategoryTotal(
                category=name,
                subcategory=sub_name,
                total=sub_total,
                expense_count=sub_counts[key][sub_key],
                percentage_of_budget=(
                    percentage_of(sub_total, limit) if limit is not None else None
                ),
            ))

        breakdown = CategoryBreakdown(
            category=name,
            total=total,
            expense_count=counts.get(key, 0),
            subcategories=subcategories,
        )
        if limit is not None:
            breakdown.monthly_limit = limit
            breakdown.percentage_of_budget = percentage_of(total, limit)
            breakdown.over_budget = total > limit
        breakdowns.append(breakdown)

    return BudgetReport(
        categories=breakdowns,
        grand_total=quantize(sum((b.total for b in breakdowns), ZERO)),
        total_budgeted=quantize(sum(limits.values(), ZERO)),
        over_budget=[b.category for b in breakdowns if b.over_budget],
    )


def fingerprint(expenses: Sequence[Expense], budgets: Sequence[Budget]) -> str:
    """SHA-256 over the inputs, in order (order decides category order)."""
    digest = hashlib.sha256()
    for expense in expenses:
        digest.update(b"E")
        digest.update(expense.model_dump_json().encode("utf-8"))
    for budget in budgets:
        digest.update(b"B")
        digest.update(budget.model_dump_json().encode("utf-8"))
    return digest.hexdigest()


class AggregationEngine:
    """
    Memoizing front for aggregate().

    Reports are cached by input fingerprint, so repeated renders of an
    unchanged month cost one hash instead of a full pass.
    """

    def __init__(self, max_entries: int = 32):
        self._max_entries = max_entries
        self._cache: "OrderedDict[str, BudgetReport]" = OrderedDict()

    def report(
        self,
        expenses: Iterable[Expense],
        budgets: BudgetsInput,
    ) -> BudgetReport:
        expense_list = list(expenses)
        budget_list = _budget_list(budgets)
        key = fingerprint(expense_list, budget_list)

        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached.model_copy(deep=True)

        report = aggregate(expense_list, budget_list)
        self._cache[key] = report
        if len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)
        return report.model_copy(deep=True)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


# =============================================================================
# ALERTS
# =============================================================================

def budget_alerts(
    report: BudgetReport,
    thresholds: Optional[Sequence[int]] = None,
) -> list[BudgetAlert]:
    """
    One alert per budgeted category: the highest threshold it reached.

    Categories below every threshold produce no alert.
    """
    levels = sorted(thresholds if thresholds is not None else DEFAULT_ALERT_THRESHOLDS)
    alerts = []
    for breakdown in report.categories:
        if not breakdown.has_budget or breakdown.percentage_of_budget is None:
            continue
        percentage = breakdown.percentage_of_budget
        reached = [level for level in levels if percentage >= level]
        if not reached or (breakdown.total == 0 and not breakdown.over_budget):
            continue
        threshold = reached[-1]
        if breakdown.over_budget:
            message = f"Has superado el presupuesto de {breakdown.category}"
        else:
            message = (
                f"Has usado el {percentage:.0f}% del presupuesto de "
                f"{breakdown.category}"
            )
        alerts.append(BudgetAlert(
            category=breakdown.category,
            threshold=threshold,
            percentage=percentage,
            over_budget=breakdown.over_budget,
            message=message,
        ))
    return alerts


# =============================================================================
# FILTERING & SUMMARIES
# =============================================================================

def month_of(date: dt.date) -> str:
    return date.strftime("%Y-%m")


def filter_expenses(
    expenses: Iterable[Expense],
    criteria: ExpenseFilter,
) -> list[Expense]:
    """Expenses matching every criterion that is set (amount bounds inclusive)."""
    query = fold(criteria.search_query.strip()) if criteria.search_query else ""
    results = []
    for expense in expenses:
        if criteria.month and month_of(expense.date) != criteria.month:
            continue
        if criteria.category and _key(expense.category) != _key(criteria.category):
            continue
        if criteria.subcategory and (
            not expense.subcategory
            or _key(expense.subcategory) != _key(criteria.subcategory)
        ):
            continue
        if criteria.payment_method and expense.payment_method != criteria.payment_method:
            continue
        if criteria.min_amount is not None and expense.amount < criteria.min_amount:
            continue
        if criteria.max_amount is not None and expense.amount > criteria.max_amount:
            continue
        if query:
            haystack = fold(" ".join(
                filter(None, (expense.name, expense.category, expense.subcategory))
            ))
            if query not in haystack:
                continue
        results.append(expense)
    return results


def summarize_spending(
    expenses: Iterable[Expense],
    month: str,
    today: Optional[dt.date] = None,
    small_expense_limit: Optional[Decimal] = None,
    top: int = 3,
) -> SpendingSummary:
    """
    Month-to-date figures for one month ("YYYY-MM").

    For the current month the projection extrapolates the daily
    average to the whole month; past months project their actual total.
    """
    today = today or dt.date.today()
    if small_expense_limit is None:
        small_expense_limit = Decimal(str(get_settings().app.small_expense_limit))

    year, month_number = (int(part) for part in month.split("-"))
    days_in_month = calendar.monthrange(year, month_number)[1]
    month_expenses = filter_expenses(expenses, ExpenseFilter(month=month))

    total = sum((expense.amount for expense in month_expenses), ZERO)

    current = month_of(today)
    if month == current:
        days_elapsed = today.day
        days_left = days_in_month - today.day
    elif month < current:
        days_elapsed = days_in_month
        days_left = 0
    else:
        days_elapsed = 0
        days_left = days_in_month

    average_daily = quantize(total / days_elapsed) if days_elapsed else ZERO
    if month == current:
        projected = quantize(total / days_elapsed * days_in_month)
    else:
        projected = quantize(total)

    report = aggregate(month_expenses, [])
    top_categories = sorted(
        (breakdown.to_category_total() for breakdown in report.categories),
        key=lambda row: row.total,
        reverse=True,
    )[:top]

    return SpendingSummary(
        month=month,
        total_spent=quantize(total),
        expense_count=len(month_expenses),
        average_daily=average_daily,
        days_left=days_left,
        projected_total=projected,
        small_expenses_total=quantize(sum(
            (e.amount for e in month_expenses if e.amount < small_expense_limit),
            ZERO,
        )),
        recurring_total=quantize(sum(
            (e.amount for e in month_expenses if e.recurring),
            ZERO,
        )),
        top_categories=top_categories,
    )

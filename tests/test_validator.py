"""
Tests for the two-stage validation pipeline and in-memory storage
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from clarity.models.expense import Budget, CandidateExpense, Expense, PaymentMethod
from clarity.services.storage import (
    DuplicateError,
    InMemoryBudgetStorage,
    InMemoryExpenseStorage,
    NotFoundError,
    StorageError,
)
from clarity.taxonomy import TaxonomyStore
from clarity.validation import ExpenseValidator


TODAY = date(2024, 5, 15)


def make_expense(**overrides) -> Expense:
    data = {
        "name": "Mercadona",
        "amount": Decimal("23.40"),
        "category": "Comida",
        "subcategory": "Supermercado",
        "date": TODAY,
    }
    data.update(overrides)
    return Expense(**data)


def make_candidate(**overrides) -> CandidateExpense:
    data = {
        "name": "Comida",
        "amount": Decimal("20.00"),
        "category": "Comida",
        "date": TODAY,
        "payment_method": PaymentMethod.CARD,
    }
    data.update(overrides)
    return CandidateExpense(**data)


def validate(validator, subject, **kwargs):
    return asyncio.run(validator.validate(subject, today=TODAY, **kwargs))


class FailingStorage(InMemoryExpenseStorage):
    async def expense_exists(self, name, amount, date, exclude_id=None):
        raise StorageError("backend unavailable")


@pytest.fixture
def taxonomy():
    return TaxonomyStore.with_defaults()


@pytest.fixture
def validator(taxonomy):
    return ExpenseValidator(taxonomy)


class TestSchemaValidation:
    """Tests for stage 1."""

    def test_valid_expense(self, validator):
        """Test that a correct expense passes both stages."""
        result = validate(validator, make_expense())
        assert result.is_valid
        assert result.can_save
        assert result.issues == []

    def test_zero_amount(self, validator):
        """Test that a zero amount is allowed with a warning."""
        result = validate(validator, make_expense(amount=Decimal("0")))
        assert result.schema_valid
        assert result.can_save
        assert result.issues[0].issue_type == "zero_amount"
        assert result.warnings == ["Amount is zero"]

    def test_negative_amount(self, validator):
        """Test that a negative amount is an error."""
        expense = make_expense().model_copy(update={"amount": Decimal("-1.00")})
        result = validate(validator, expense)
        assert not result.schema_valid
        assert not result.can_save
        assert result.issues[0].issue_type == "invalid_value"

    def test_missing_category(self, validator):
        """Test a candidate whose category was never resolved."""
        result = validate(validator, make_candidate(category=None))
        assert not result.can_save
        assert result.issues[0].field == "category"
        assert result.issues[0].issue_type == "missing"

    def test_unknown_category(self, validator):
        """Test a category that is not in the taxonomy."""
        result = validate(validator, make_expense(category="Mascotas", subcategory=None))
        assert not result.is_valid
        assert result.issues[0].issue_type == "unknown_category"

    def test_subcategory_of_another_category(self, validator):
        """Test an invalid (category, subcategory) pair."""
        result = validate(validator, make_expense(subcategory="Cine"))
        assert result.issues[0].field == "subcategory"
        assert result.issues[0].issue_type == "unknown_subcategory"

    def test_removed_category_invalidates(self, taxonomy, validator):
        """Test that taxonomy changes are honoured immediately."""
        expense = make_expense(category="Ocio", subcategory="Cine")
        assert validate(validator, expense).can_save
        taxonomy.remove_category("Ocio")
        assert not validate(validator, expense).can_save

    def test_semantic_stage_skipped_on_errors(self, validator):
        """Test that stage 2 does not run after stage 1 fails."""
        result = validate(
            validator,
            make_expense(category="Mascotas", subcategory=None, date=date(2030, 1, 1)),
        )
        assert not result.semantic_valid
        assert all(issue.issue_type != "future_date" for issue in result.issues)


class TestSemanticValidation:
    """Tests for stage 2 warnings."""

    def test_future_date(self, validator):
        """Test that dates beyond the tolerance are warned about."""
        result = validate(validator, make_expense(date=date(2024, 5, 20)))
        assert result.can_save
        assert result.issues[0].issue_type == "future_date"
        assert len(result.warnings) == 1

    def test_tomorrow_is_tolerated(self, validator):
        """Test the one-day tolerance for time zones."""
        assert validate(validator, make_expense(date=date(2024, 5, 16))).issues == []

    def test_old_date(self, validator):
        """Test that very old dates are warned about."""
        result = validate(validator, make_expense(date=date(2020, 1, 1)))
        assert result.issues[0].issue_type == "suspicious_date"

    def test_high_amount(self, validator):
        """Test that absurd amounts are warned about."""
        result = validate(validator, make_expense(amount=Decimal("250000.00")))
        assert result.issues[0].issue_type == "suspicious_value"
        assert result.can_save

    def test_foreign_currency(self, validator):
        """Test that candidates in another currency are warned about."""
        result = validate(validator, make_candidate(currency="USD"))
        assert [issue.issue_type for issue in result.issues] == ["foreign_currency"]


class TestDuplicateDetection:
    """Tests for the storage-backed duplicate check."""

    def test_duplicate_is_warned(self, taxonomy):
        """Test an identical expense already stored."""
        stored = make_expense()
        validator = ExpenseValidator(taxonomy, InMemoryExpenseStorage([stored]))
        result = validate(validator, make_expense(name="mercadona"))
        assert result.issues[0].issue_type == "potential_duplicate"
        assert result.can_save

    def test_editing_does_not_match_itself(self, taxonomy):
        """Test that an edited expense is not its own duplicate."""
        stored = make_expense()
        validator = ExpenseValidator(taxonomy, InMemoryExpenseStorage([stored]))
        assert validate(validator, stored).issues == []

    def test_duplicate_check_can_be_skipped(self, taxonomy):
        """Test check_duplicates=False."""
        validator = ExpenseValidator(taxonomy, InMemoryExpenseStorage([make_expense()]))
        assert validate(validator, make_expense(), check_duplicates=False).issues == []

    def test_storage_errors_do_not_block(self, taxonomy):
        """Test that a failing backend skips the duplicate check."""
        validator = ExpenseValidator(taxonomy, FailingStorage())
        assert validate(validator, make_expense()).can_save


class TestSummary:
    """Tests for the user-facing summary."""

    def test_all_good(self, validator):
        """Test the summary for a clean result."""
        summary = validator.get_user_friendly_summary(validate(validator, make_expense()))
        assert summary.startswith("✅")

    def test_errors_listed(self, validator):
        """Test that errors and their fixes are listed."""
        result = validate(validator, make_expense(category="Mascotas", subcategory=None))
        summary = validator.get_user_friendly_summary(result)
        assert "Mascotas" in summary
        assert "Corrige los errores" in summary


class TestInMemoryStorage:
    """Tests for the in-memory storage backends."""

    def test_save_twice_is_duplicate(self):
        """Test that an id can only be saved once."""
        storage = InMemoryExpenseStorage()
        expense = make_expense()
        asyncio.run(storage.save_expense(expense))
        with pytest.raises(DuplicateError):
            asyncio.run(storage.save_expense(expense))

    def test_update_missing(self):
        """Test updating an expense that was never saved."""
        with pytest.raises(NotFoundError):
            asyncio.run(InMemoryExpenseStorage().update_expense(make_expense()))

    def test_list_filters_and_orders_by_date(self):
        """Test date ordering and filters."""
        later = make_expense(date=date(2024, 5, 20), name="Later")
        earlier = make_expense(date=date(2024, 5, 1), name="Earlier")
        other = make_expense(category="Ocio", subcategory=None, name="Cine")
        storage = InMemoryExpenseStorage([later, earlier, other])

        listed = asyncio.run(storage.list_expenses(category="comida"))
        assert [e.name for e in listed] == ["Earlier", "Later"]

        listed = asyncio.run(storage.list_expenses(date_from=date(2024, 5, 10)))
        assert [e.name for e in listed] == ["Cine", "Later"]

    def test_delete(self):
        """Test deletion reports whether something was removed."""
        expense = make_expense()
        storage = InMemoryExpenseStorage([expense])
        assert asyncio.run(storage.delete_expense(expense.id)) is True
        assert asyncio.run(storage.delete_expense(expense.id)) is False

    def test_budget_upsert(self):
        """Test that saving a budget twice replaces it."""
        storage = InMemoryBudgetStorage()
        asyncio.run(storage.save_budget(Budget(category="Comida", monthly_limit=Decimal("100"))))
        asyncio.run(storage.save_budget(Budget(category="comida", monthly_limit=Decimal("150"))))
        budgets = asyncio.run(storage.list_budgets())
        assert len(budgets) == 1
        assert budgets[0].monthly_limit == Decimal("150")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Tests for the end-to-end flows

All storage is in-memory and the tips model is never called over the
network: agents either run without a model or with a fake one.
"""

import asyncio
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from clarity.agents import TipsAgent, fallback_tips, parse_expense_action, projection_confidence
from clarity.audit import AuditLogger, create_correlation_id
from clarity.capture import InsufficientDataError
from clarity.models.audit import AuditEvent, AuditEventType
from clarity.models.expense import (
    BudgetReport,
    Expense,
    MatchTier,
    PaymentMethod,
    SpendingSummary,
)
from clarity.orchestrator import (
    ExpenseCaptureFlow,
    ExpenseRejectedError,
    create_app_components,
    month_bounds,
)
from clarity.services.storage import (
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryBudgetStorage,
    InMemoryExpenseStorage,
    NotFoundError,
)
from clarity.taxonomy import TaxonomyStore


TODAY = date(2024, 5, 15)


def run(coro):
    return asyncio.run(coro)


class FakeModel:
    """Stands in for the Gemini model."""

    def __init__(self, text: str):
        self.text = text
        self.prompts = []

    async def generate_content_async(self, prompt):
        self.prompts.append(prompt)
        return SimpleNamespace(text=self.text)


def offline_agent() -> TipsAgent:
    agent = TipsAgent()
    agent._model = None
    return agent


@pytest.fixture
def app():
    expenses = InMemoryExpenseStorage()
    budgets = InMemoryBudgetStorage()
    audit = InMemoryAuditStorage()
    capture, budget_flow, insights = create_app_components(
        expense_storage=expenses,
        budget_storage=budgets,
        audit_storage=audit,
    )
    insights._tips_agent = offline_agent()
    return SimpleNamespace(
        capture=capture,
        budgets=budget_flow,
        insights=insights,
        expense_storage=expenses,
        budget_storage=budgets,
        audit=audit,
        taxonomy=capture._taxonomy,
    )


def event_types(app, correlation_id):
    events = run(app.audit.get_events_by_correlation_id(correlation_id))
    return [event.event_type for event in events]


def manual_expense(amount, category="Comida", subcategory=None, day=10, name=None):
    return Expense(
        name=name or category,
        amount=Decimal(amount),
        category=category,
        subcategory=subcategory,
        date=date(2024, 5, day),
    )


class TestCaptureFlow:
    """Tests for voice capture through confirmation."""

    def test_capture_and_confirm(self, app):
        """Test the full flow and its audit trail."""
        correlation_id = create_correlation_id()
        result = run(app.capture.capture(
            "veinte euros en comida con tarjeta ayer",
            correlation_id=correlation_id,
            today=TODAY,
        ))

        candidate = result.candidate
        assert candidate.amount == Decimal("20.00")
        assert candidate.category == "Comida"
        assert candidate.payment_method == PaymentMethod.CARD
        assert candidate.date == date(2024, 5, 14)
        assert candidate.needs_confirmation == ["subcategory"]
        assert result.validation.can_save
        assert len(app.expense_storage) == 0

        expense = run(app.capture.confirm_and_save(
            candidate,
            corrections={"subcategory": "Restaurantes"},
            correlation_id=correlation_id,
            today=TODAY,
        ))

        assert expense.subcategory == "Restaurantes"
        assert len(app.expense_storage) == 1
        assert event_types(app, correlation_id) == [
            AuditEventType.UTTERANCE_RECEIVED,
            AuditEventType.UTTERANCE_NORMALIZED,
            AuditEventType.CATEGORY_RESOLVED,
            AuditEventType.CANDIDATE_SYNTHESIZED,
            AuditEventType.USER_CONFIRMED,
            AuditEventType.EXPENSE_SAVED,
        ]

    def test_capture_without_amount(self, app):
        """Test that an utterance without amount is abandoned and audited."""
        correlation_id = create_correlation_id()
        with pytest.raises(InsufficientDataError):
            run(app.capture.capture("hola que tal", correlation_id=correlation_id, today=TODAY))
        assert AuditEventType.INSUFFICIENT_DATA in event_types(app, correlation_id)
        assert len(app.expense_storage) == 0

    def test_fallback_category_needs_confirmation(self, app):
        """Test that an amount without category still yields a candidate."""
        result = run(app.capture.capture("15 euros", today=TODAY))
        assert result.candidate.category == "Comida"
        assert "category" in result.candidate.needs_confirmation

    def test_capture_many(self, app):
        """Test two expenses in one utterance."""
        results = run(app.capture.capture_many("50 en gasolina y 20 en comida", today=TODAY))
        assert [r.candidate.amount for r in results] == [Decimal("50.00"), Decimal("20.00")]
        assert [r.candidate.category for r in results] == ["Transporte", "Comida"]
        assert results[0].candidate.subcategory == "Gasolina"
        assert results[0].correlation_id == results[1].correlation_id

    def test_capture_many_without_amounts(self, app):
        """Test that capture_many fails when no segment has an amount."""
        with pytest.raises(InsufficientDataError):
            run(app.capture.capture_many("comida y cena", today=TODAY))

    def test_capture_failed_is_audited(self, app):
        """Test recording a collaborator failure."""
        correlation_id = create_correlation_id()
        run(app.capture.capture_failed("no speech detected", correlation_id=correlation_id))
        assert event_types(app, correlation_id) == [AuditEventType.CAPTURE_FAILED]

    def test_category_correction(self, app):
        """Test that a corrected category drops the proposed subcategory."""
        result = run(app.capture.capture("veinte euros en comida", today=TODAY))
        expense = run(app.capture.confirm_and_save(
            result.candidate, corrections={"category": "Ocio"}, today=TODAY,
        ))
        assert expense.category == "Ocio"
        assert expense.subcategory is None

    def test_invalid_correction_is_rejected(self, app):
        """Test that a correction to an unknown category is not saved."""
        correlation_id = create_correlation_id()
        result = run(app.capture.capture("veinte euros en comida", today=TODAY))
        with pytest.raises(ExpenseRejectedError) as exc_info:
            run(app.capture.confirm_and_save(
                result.candidate,
                corrections={"category": "Mascotas"},
                correlation_id=correlation_id,
                today=TODAY,
            ))
        assert not exc_info.value.validation.can_save
        assert len(app.expense_storage) == 0
        assert event_types(app, correlation_id) == [AuditEventType.VALIDATION_FAILED]

    def test_reject(self, app):
        """Test that rejecting persists nothing."""
        correlation_id = create_correlation_id()
        result = run(app.capture.capture("veinte euros en comida", today=TODAY))
        run(app.capture.reject(result.candidate, reason="wrong amount", correlation_id=correlation_id))
        assert len(app.expense_storage) == 0
        assert event_types(app, correlation_id) == [AuditEventType.USER_REJECTED]

    def test_storage_failure_is_audited(self, app):
        """Test that a failed save is logged and re-raised."""
        expense = manual_expense("10.00")
        run(app.capture.record_manual_expense(expense, today=TODAY))
        correlation_id = create_correlation_id()
        with pytest.raises(DuplicateError):
            run(app.capture.record_manual_expense(expense, correlation_id=correlation_id, today=TODAY))
        assert event_types(app, correlation_id) == [AuditEventType.SYSTEM_ERROR]


class TestAssistantCapture:
    """Tests for expense commands embedded in assistant replies."""

    REPLY = (
        "¡Apuntado! "
        '[ACTION:{"type":"ADD_EXPENSE","amount":12.5,"category":"Comida",'
        '"description":"cena","date":"2024-05-14"}]'
    )

    def test_parse_action(self):
        """Test reading an ADD_EXPENSE command."""
        normalized = parse_expense_action(self.REPLY)
        assert normalized.amount == Decimal("12.50")
        assert normalized.currency_hint == "EUR"
        assert normalized.date_hint == date(2024, 5, 14)
        assert normalized.category_hint == "cena"
        assert normalized.residual_text == "Comida cena"

    @pytest.mark.parametrize("reply", [
        "Hola, ¿en qué te ayudo?",
        "[ACTION:{not json}]",
        '[ACTION:{"type":"DELETE_EXPENSE","amount":5}]',
    ])
    def test_no_usable_action(self, reply):
        """Test replies without a usable command."""
        assert parse_expense_action(reply) is None

    def test_invalid_date_is_left_unset(self):
        """Test that a bad date is flagged later instead of guessed."""
        normalized = parse_expense_action(
            '[ACTION:{"type":"ADD_EXPENSE","amount":"8","category":"Ocio","date":"ayer"}]'
        )
        assert normalized.date_hint is None

    def test_capture_from_assistant(self, app):
        """Test that assistant commands still need confirmation."""
        result = run(app.capture.capture_from_assistant(self.REPLY, today=TODAY))
        candidate = result.candidate
        assert candidate.amount == Decimal("12.50")
        assert candidate.category == "Comida"
        assert candidate.subcategory == "Restaurantes"
        assert candidate.name == "Cena"
        assert candidate.needs_confirmation == ["payment_method"]
        assert len(app.expense_storage) == 0

    def test_capture_from_plain_reply(self, app):
        """Test that replies without a command capture nothing."""
        assert run(app.capture.capture_from_assistant("De nada", today=TODAY)) is None


class TestExpenseMaintenance:
    """Tests for manual entry, edits, deletes and learned patterns."""

    def test_edit_expense(self, app):
        """Test editing a saved expense."""
        expense = run(app.capture.record_manual_expense(manual_expense("10.00"), today=TODAY))
        correlation_id = create_correlation_id()
        edited = run(app.capture.edit_expense(
            expense.id, correlation_id=correlation_id, today=TODAY, amount=Decimal("12.00"),
        ))
        assert edited.id == expense.id
        stored = run(app.expense_storage.get_expense_by_id(expense.id))
        assert stored.amount == Decimal("12.00")

        events = run(app.audit.get_events_by_correlation_id(correlation_id))
        assert events[0].event_type == AuditEventType.EXPENSE_UPDATED
        assert events[0].details["changed_fields"] == ["amount"]

    def test_zero_amount_is_saved(self, app):
        """Test that a free (0.00) expense can be recorded."""
        expense = run(app.capture.record_manual_expense(
            manual_expense("0", category="Otros"), today=TODAY,
        ))
        stored = run(app.expense_storage.get_expense_by_id(expense.id))
        assert stored.amount == Decimal("0.00")

    def test_edit_missing_expense(self, app):
        """Test editing an unknown id."""
        with pytest.raises(NotFoundError):
            run(app.capture.edit_expense(manual_expense("1.00").id, amount=Decimal("2.00")))

    def test_invalid_edit_is_rejected(self, app):
        """Test that edits go through validation."""
        expense = run(app.capture.record_manual_expense(manual_expense("10.00"), today=TODAY))
        with pytest.raises(ExpenseRejectedError):
            run(app.capture.edit_expense(expense.id, today=TODAY, category="Mascotas"))

    def test_delete_expense(self, app):
        """Test deleting an expense."""
        expense = run(app.capture.record_manual_expense(manual_expense("10.00"), today=TODAY))
        assert run(app.capture.delete_expense(expense.id)) is True
        assert run(app.capture.delete_expense(expense.id)) is False
        assert len(app.expense_storage) == 0

    def test_flow_without_storage(self):
        """Test that storage-backed operations need storage."""
        flow = ExpenseCaptureFlow(TaxonomyStore.with_defaults())
        with pytest.raises(RuntimeError):
            run(flow.delete_expense(manual_expense("1.00").id))

    def test_learned_patterns(self, app):
        """Test that saved expenses teach the resolver new words."""
        run(app.capture.record_manual_expense(
            manual_expense("30.00", "Ocio", name="Zumba clase"), today=TODAY,
        ))
        run(app.capture.refresh_learned_patterns())

        result = run(app.capture.capture("10 euros zumba", today=TODAY))
        assert result.candidate.category == "Ocio"
        assert app.capture.resolver.resolve("zumba")[0].tier == MatchTier.LEARNED

        run(app.capture.record_manual_expense(
            manual_expense("8.00", "Ocio", name="Pilates", day=11), today=TODAY,
        ))
        assert app.capture.suggest("pi") == ["pilates"]


class TestBudgetFlow:
    """Tests for taxonomy and budget management."""

    def test_add_budget_is_persisted(self, app):
        """Test that budgets reach storage."""
        run(app.budgets.add_budget("Comida", 300))
        stored = run(app.budget_storage.list_budgets())
        assert [b.category for b in stored] == ["Comida"]
        assert app.budgets.budgets()["Comida"].monthly_limit == Decimal("300")

    def test_remove_category_cascades_to_storage(self, app):
        """Test that removing a category removes its stored budget."""
        run(app.budgets.add_budget("Comida", 300))
        run(app.budgets.remove_category("Comida"))
        assert run(app.budget_storage.list_budgets()) == []
        assert app.taxonomy.get_budget("Comida") is None
        assert not app.taxonomy.has_category("Comida")

    def test_set_budget_upserts(self, app):
        """Test creating then changing a limit."""
        run(app.budgets.set_budget("Ocio", 50))
        run(app.budgets.set_budget("Ocio", "75.50"))
        assert app.taxonomy.get_budget("Ocio").monthly_limit == Decimal("75.50")
        stored = run(app.budget_storage.list_budgets())
        assert stored[0].monthly_limit == Decimal("75.50")

    def test_remove_budget(self, app):
        """Test removing a budget but keeping the category."""
        run(app.budgets.add_budget("Ocio", 50))
        assert run(app.budgets.remove_budget("Ocio")).category == "Ocio"
        assert run(app.budgets.remove_budget("Ocio")) is None
        assert app.taxonomy.has_category("Ocio")

    def test_subcategories_are_audited(self, app):
        """Test taxonomy change events."""
        run(app.budgets.add_category("Mascotas"))
        run(app.budgets.add_subcategory("Mascotas", "Veterinario"))
        run(app.budgets.remove_subcategory("Mascotas", "Veterinario"))
        events = run(app.audit.get_recent_events())
        taxonomy_events = [e for e in events if e.event_type == AuditEventType.TAXONOMY_CHANGED]
        assert len(taxonomy_events) == 3
        assert app.taxonomy.subcategories_of("Mascotas") == ()

    def test_load_keeps_orphan_budgets(self, app):
        """Test loading persisted budgets for removed categories."""
        run(app.budgets.add_budget("Ocio", 50))
        app.taxonomy.remove_category("Ocio")
        loaded = run(app.budgets.load())
        assert [b.category for b in loaded] == ["Ocio"]
        assert "Ocio" in app.budgets.budgets()


class TestInsightsFlow:
    """Tests for reports, alerts, summaries and tips."""

    @pytest.fixture
    def over_budget_app(self, app):
        run(app.budgets.add_budget("Comida", 100))
        for amount, day in (("50.00", 2), ("30.00", 3), ("25.00", 4)):
            run(app.capture.record_manual_expense(
                manual_expense(amount, day=day, name=f"Compra {day}"), today=TODAY,
            ))
        run(app.capture.record_manual_expense(
            manual_expense("9.00", "Comida", day=30, name="Abril").edit(date=date(2024, 4, 30)),
            today=TODAY,
        ))
        return app

    def test_month_bounds(self):
        """Test month boundaries, including leap years."""
        assert month_bounds("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))

    def test_monthly_report(self, over_budget_app):
        """Test that only the month's expenses are aggregated."""
        report = run(over_budget_app.insights.monthly_report("2024-05"))
        comida = report.get("Comida")
        assert comida.total == Decimal("105.00")
        assert comida.percentage_of_budget == pytest.approx(105.0)
        assert report.over_budget == ["Comida"]

    def test_alerts(self, over_budget_app):
        """Test alerts for the month."""
        alerts = run(over_budget_app.insights.alerts("2024-05"))
        assert len(alerts) == 1
        assert alerts[0].over_budget

    def test_summary(self, over_budget_app):
        """Test the month summary."""
        summary = run(over_budget_app.insights.summary("2024-05", today=date(2024, 5, 20)))
        assert summary.total_spent == Decimal("105.00")
        assert summary.days_left == 11

    def test_rule_based_tips(self, over_budget_app):
        """Test fallback tips and their audit event."""
        result = run(over_budget_app.insights.tips("2024-05", today=date(2024, 5, 20)))
        assert result.source == "rules"
        assert result.projection_confidence == "media"
        assert result.tips[0] == "⚠️ Has superado el presupuesto de Comida en €5.00."

        events = run(over_budget_app.audit.get_recent_events())
        tips_events = [e for e in events if e.event_type == AuditEventType.TIPS_GENERATED]
        assert tips_events[0].details["source"] == "rules"

    def test_model_tips(self, over_budget_app):
        """Test tips produced by the model from computed figures."""
        agent = TipsAgent()
        agent._model = FakeModel("- Reduce restaurantes\n- Revisa suscripciones\n")
        over_budget_app.insights._tips_agent = agent

        result = run(over_budget_app.insights.tips("2024-05", today=date(2024, 5, 20)))

        assert result.source == "ai"
        assert result.tips == ["Reduce restaurantes", "Revisa suscripciones"]
        assert "Total gastado: €105.00" in agent._model.prompts[0]

    def test_model_failure_falls_back(self, over_budget_app):
        """Test that a failing model still gives tips and is audited."""
        async def failing(prompt):
            raise RuntimeError("quota exceeded")

        agent = TipsAgent()
        agent._model = FakeModel("")
        agent._generate = failing
        over_budget_app.insights._tips_agent = agent

        correlation_id = create_correlation_id()
        result = run(over_budget_app.insights.tips(
            "2024-05", today=date(2024, 5, 20), correlation_id=correlation_id,
        ))

        assert result.source == "rules"
        assert event_types(over_budget_app, correlation_id) == [
            AuditEventType.EXTERNAL_SERVICE_ERROR,
            AuditEventType.TIPS_GENERATED,
        ]


class TestTipsRules:
    """Tests for the deterministic tips."""

    def test_empty_month(self):
        """Test tips when nothing was spent."""
        tips = fallback_tips(SpendingSummary(month="2024-05"), BudgetReport(), [])
        assert tips == ["💡 Aún no hay gastos este mes. Registra el primero por voz."]

    def test_on_track(self):
        """Test tips when everything is within budget."""
        summary = SpendingSummary(
            month="2024-05", total_spent=Decimal("50.00"), expense_count=2,
        )
        assert fallback_tips(summary, BudgetReport(), [])[0].startswith("✅")

    def test_small_expenses(self):
        """Test the small-expense tip."""
        summary = SpendingSummary(
            month="2024-05",
            total_spent=Decimal("100.00"),
            expense_count=10,
            small_expenses_total=Decimal("30.00"),
        )
        assert fallback_tips(summary, BudgetReport(), [])[0].startswith("☕")

    @pytest.mark.parametrize("days_left, expected", [
        (25, "baja"),
        (10, "media"),
        (3, "alta"),
    ])
    def test_projection_confidence(self, days_left, expected):
        """Test confidence grows as the month progresses."""
        summary = SpendingSummary(month="2024-05", days_left=days_left)
        assert projection_confidence(summary) == expected


class TestAuditLogger:
    """Tests for the audit logger itself."""

    def test_storage_failure_does_not_raise(self):
        """Test that audit storage errors never break the flow."""
        class BrokenStorage(InMemoryAuditStorage):
            async def append_event(self, event):
                raise ConnectionError("down")

        logger = AuditLogger(BrokenStorage())
        event = AuditEvent(
            event_type=AuditEventType.EXPENSE_SAVED,
            description="Expense saved",
        )
        assert run(logger.log(event)) is False

    def test_without_storage(self):
        """Test logging locally only."""
        event = AuditEvent(
            event_type=AuditEventType.EXPENSE_SAVED,
            description="Expense saved",
        )
        assert run(AuditLogger().log(event)) is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
AI Agents for Clarity

CRITICAL BOUNDARIES:

1. TIPS AGENT:
   - CAN: Turn computed spending figures into short advice
   - CANNOT: See raw expenses, only the SpendingSummary and BudgetReport
   - CANNOT: Invent amounts; every figure in the prompt comes from the
     aggregation engine
   - MUST: Fall back to deterministic rule-based tips when the model
     is unavailable

2. ASSISTANT EXPENSE ACTIONS:
   - The chat assistant may append an [ACTION:{...}] command when the
     user mentions an expense
   - The command is parsed into a NormalizedUtterance and goes through
     the same resolver/synthesizer/confirmation path as voice input
   - It NEVER saves an expense by itself

The LLM is a TRANSLATOR, not an ORACLE.
"""

import calendar
import json
import re
from datetime import date
from decimal import Decimal
from typing import Optional

import google.generativeai as genai
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, stop_after_attempt, wait_exponential

from clarity.capture.numbers import parse_digits
from clarity.config import get_settings
from clarity.models.expense import (
    BudgetAlert,
    BudgetReport,
    NormalizedUtterance,
    SpendingSummary,
)


logger = structlog.get_logger("clarity.agents")

MAX_TIPS = 4
ACTION_PATTERN = re.compile(r"\[ACTION:(\{.*?\})\]", re.DOTALL)


class TipsResult(BaseModel):
    """Tips shown under the monthly summary."""

    tips: list[str] = Field(default_factory=list)
    source: str = Field(
        description="'ai' when produced by the model, 'rules' for the fallback"
    )
    projection_confidence: str = Field(
        description="baja, media or alta depending on how much of the month has passed"
    )


def projection_confidence(summary: SpendingSummary) -> str:
    """Early in the month projections move a lot."""
    year, month = (int(part) for part in summary.month.split("-"))
    days_in_month = calendar.monthrange(year, month)[1]
    progress = (days_in_month - summary.days_left) / days_in_month * 100
    if progress < 50:
        return "baja"
    if progress < 75:
        return "media"
    return "alta"


class TipsAgent:
    """
    AI agent that writes monthly spending tips.

    BOUNDARIES:
    - NEVER sees individual expenses
    - NEVER persists anything
    - ALWAYS returns something: rule-based tips when the model fails
    """

    def __init__(self):
        self._settings = get_settings().gemini
        self._model = None
        if self._settings.api_key:
            self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            }
        )

    @property
    def is_available(self) -> bool:
        return self._model is not None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _generate(self, prompt: str) -> str:
        response = await self._model.generate_content_async(prompt)
        return response.text.strip()

    def build_prompt(
        self,
        summary: SpendingSummary,
        report: BudgetReport,
        alerts: list[BudgetAlert],
    ) -> str:
        confidence = projection_confidence(summary)

        category_lines = []
        for index, breakdown in enumerate(report.categories[:8], start=1):
            line = f"{index}. {breakdown.category}: €{breakdown.total:.2f}"
            if breakdown.has_budget:
                line += f" | Presupuesto: €{breakdown.monthly_limit:.2f}"
                if breakdown.over_budget:
                    line += " ⚠️ SUPERADO"
            category_lines.append(line)

        alert_lines = [f"- {alert.message}" for alert in alerts] or ["- Ninguna"]

        return f"""Eres un asistente financiero experto en gastos personales.

DATOS DEL MES {summary.month} (calculados, no los modifiques):
- Total gastado: €{summary.total_spent:.2f} en {summary.expense_count} gastos
- Media diaria: €{summary.average_daily:.2f}
- Días restantes: {summary.days_left}
- Proyección del mes: €{summary.projected_total:.2f} (confianza: {confidence})
- Gastos pequeños (hormiga): €{summary.small_expenses_total:.2f}
- Gastos recurrentes: €{summary.recurring_total:.2f}

CATEGORÍAS:
{chr(10).join(category_lines) or "Sin gastos"}

ALERTAS:
{chr(10).join(alert_lines)}

Escribe como máximo {MAX_TIPS} consejos breves en español, uno por línea,
empezando cada línea con "- ". Sé concreto y positivo.

IMPORTANTE: Usa SOLO los datos anteriores. No inventes cantidades ni categorías.
Si estamos a principios de mes, no felicites por cumplir objetivos."""

    async def generate_tips(
        self,
        summary: SpendingSummary,
        report: BudgetReport,
        alerts: Optional[list[BudgetAlert]] = None,
    ) -> TipsResult:
        """
        Generate tips for one month.

        The model is only consulted when an API key is configured;
        any failure after retries falls back to rule-based tips.
        """
        alerts = alerts or []
        confidence = projection_confidence(summary)

        if self._model is not None:
            try:
                text = await self._generate(self.build_prompt(summary, report, alerts))
                tips = self._parse_tips(text)
                if tips:
                    return TipsResult(
                        tips=tips,
                        source="ai",
                        projection_confidence=confidence,
                    )
            except Exception as e:
                # Fallback to rule-based tips
                logger.warning("tips_model_failed", error=str(e), month=summary.month)

        return TipsResult(
            tips=fallback_tips(summary, report, alerts),
            source="rules",
            projection_confidence=confidence,
        )

    @staticmethod
    def _parse_tips(text: str) -> list[str]:
        tips = []
        for line in text.splitlines():
            line = line.strip().lstrip("-•*").strip()
            if line:
                tips.append(line)
        return tips[:MAX_TIPS]


def fallback_tips(
    summary: SpendingSummary,
    report: BudgetReport,
    alerts: list[BudgetAlert],
) -> list[str]:
    """Deterministic tips computed from the same figures the model would see."""
    tips = []

    for category in report.over_budget:
        breakdown = report.get(category)
        excess = -breakdown.remaining if breakdown and breakdown.remaining is not None else None
        if excess is not None and excess > 0:
            tips.append(
                f"⚠️ Has superado el presupuesto de {category} en €{excess:.2f}."
            )
        else:
            tips.append(f"⚠️ Has superado el presupuesto de {category}.")

    for alert in alerts:
        if not alert.over_budget:
            tips.append(f"📊 {alert.message}. Modera el gasto en esta categoría.")

    if report.total_budgeted > 0 and summary.projected_total > report.total_budgeted:
        tips.append(
            f"📈 Al ritmo actual gastarás €{summary.projected_total:.2f} este mes, "
            f"por encima de tus presupuestos (€{report.total_budgeted:.2f})."
        )

    if summary.small_expenses_total > 0 and summary.total_spent > 0:
        share = summary.small_expenses_total / summary.total_spent * 100
        if share >= 20:
            tips.append(
                f"☕ Los gastos pequeños suman €{summary.small_expenses_total:.2f} "
                f"({share:.0f}% del total)."
            )

    if not tips:
        if summary.expense_count == 0:
            tips.append("💡 Aún no hay gastos este mes. Registra el primero por voz.")
        else:
            tips.append("✅ Vas bien: ninguna categoría supera su presupuesto.")

    return tips[:MAX_TIPS]


# =============================================================================
# ASSISTANT EXPENSE ACTIONS
# =============================================================================

def parse_expense_action(reply: str) -> Optional[NormalizedUtterance]:
    """
    Read an [ACTION:{"type":"ADD_EXPENSE",...}] command from an assistant reply.

    Returns None when the reply carries no usable command. The date is
    only set when the command states a valid ISO date; otherwise the
    synthesizer flags it for confirmation.
    """
    match = ACTION_PATTERN.search(reply or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        logger.warning("assistant_action_unparseable", action=match.group(1)[:200])
        return None
    if not isinstance(data, dict) or data.get("type") != "ADD_EXPENSE":
        return None

    amount: Optional[Decimal] = parse_digits(str(data.get("amount", "")).strip())

    date_hint = None
    raw_date = data.get("date")
    if isinstance(raw_date, str):
        try:
            date_hint = date.fromisoformat(raw_date[:10])
        except ValueError:
            date_hint = None

    description = str(data.get("description") or "").strip()[:50]
    category = str(data.get("category") or "").strip()
    residual = " ".join(part for part in (category, description) if part)

    return NormalizedUtterance(
        raw_text=reply,
        amount=amount,
        currency_hint="EUR" if amount is not None else None,
        category_hint=description or category or None,
        payment_hint=None,
        date_hint=date_hint,
        residual_text=residual,
    )

"""
Expense Synthesizer

Combines a NormalizedUtterance and the resolver's candidates into a
single CandidateExpense.

CRITICAL: The synthesizer NEVER guesses silently. Every field it had to
default or could only weakly resolve is listed in needs_confirmation,
and the caller must show those fields to the user before saving.

The only hard failure is a missing amount: without it there is nothing
to propose, so InsufficientDataError is raised.
"""

import datetime as dt
from typing import Optional, Sequence
from uuid import UUID, uuid4

from clarity.config import get_settings
from clarity.models.expense import (
    CandidateExpense,
    CategoryCandidate,
    ConfirmationField,
    NormalizedUtterance,
    PaymentMethod,
)
from clarity.taxonomy.store import TaxonomyStore


FALLBACK_NAME = "Gasto"
MAX_NAME_LENGTH = 200


class InsufficientDataError(Exception):
    """The utterance has no usable amount."""

    def __init__(self, normalized: NormalizedUtterance, message: Optional[str] = None):
        self.normalized = normalized
        super().__init__(message or f"No amount found in: {normalized.raw_text!r}")


class ExpenseSynthesizer:
    """
    Builds CandidateExpense values with per-field confidence.

    Confidence rules:
    - amount: 1.0 with a currency hint, 0.8 without one
    - category/subcategory: the resolver's confidence, 0.0 when defaulted
    - payment method and date: 1.0 when stated, 0.0 when defaulted

    A field is flagged when its confidence is below the acceptance
    threshold, or when it was filled in by a default.
    """

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        acceptance_threshold: Optional[float] = None,
        default_payment: Optional[PaymentMethod] = None,
        default_currency: Optional[str] = None,
    ):
        settings = get_settings().app
        self._taxonomy = taxonomy
        self.acceptance_threshold = (
            acceptance_threshold
            if acceptance_threshold is not None
            else settings.acceptance_threshold
        )
        self.default_payment = default_payment or PaymentMethod(settings.default_payment_method)
        self.default_currency = (default_currency or settings.default_currency).upper()

    def synthesize(
        self,
        normalized: NormalizedUtterance,
        candidates: Sequence[CategoryCandidate],
        today: Optional[dt.date] = None,
        default_payment: Optional[PaymentMethod] = None,
        capture_id: Optional[UUID] = None,
    ) -> CandidateExpense:
        """
        Build a CandidateExpense.

        Args:
            normalized: Output of the UtteranceNormalizer
            candidates: Resolver output, best first (may be empty)
            today: Date used when the utterance did not state one
            default_payment: Overrides the configured default payment method
            capture_id: Id to give the candidate (a new one by default)

        Raises:
            InsufficientDataError: If normalized.amount is None
        """
        if normalized.amount is None:
            raise InsufficientDataError(normalized)

        today = today or dt.date.today()
        confidence: dict[str, float] = {}
        flagged: list[str] = []

        # Amount
        currency = (normalized.currency_hint or self.default_currency).upper()
        confidence[ConfirmationField.AMOUNT.value] = 1.0 if normalized.currency_hint else 0.8
        if currency != self.default_currency:
            flagged.append(ConfirmationField.AMOUNT.value)

        # Category / subcategory
        category, subcategory = self._resolve_category(candidates, confidence, flagged)

        # Payment method
        if normalized.payment_hint is not None:
            payment_method = normalized.payment_hint
            confidence[ConfirmationField.PAYMENT_METHOD.value] = 1.0
        else:
            payment_method = default_payment or self.default_payment
            confidence[ConfirmationField.PAYMENT_METHOD.value] = 0.0
            flagged.append(ConfirmationField.PAYMENT_METHOD.value)

        # Date
        if normalized.date_hint is not None:
            date = normalized.date_hint
            confidence[ConfirmationField.DATE.value] = 1.0
        else:
            date = today
            confidence[ConfirmationField.DATE.value] = 0.0
            flagged.append(ConfirmationField.DATE.value)

        return CandidateExpense(
            capture_id=capture_id or uuid4(),
            source_text=normalized.raw_text,
            name=self._name_for(normalized, category, subcategory),
            amount=normalized.amount,
            currency=currency,
            category=category,
            subcategory=subcategory,
            date=date,
            payment_method=payment_method,
            confidence=confidence,
            needs_confirmation=flagged,
        )

    def _resolve_category(
        self,
        candidates: Sequence[CategoryCandidate],
        confidence: dict[str, float],
        flagged: list[str],
    ) -> tuple[Optional[str], Optional[str]]:
        category_field = ConfirmationField.CATEGORY.value
        subcategory_field = ConfirmationField.SUBCATEGORY.value

        if candidates:
            top = candidates[0]
            category = top.category
            confidence[category_field] = top.confidence
            if top.confidence < self.acceptance_threshold:
                flagged.append(category_field)
        else:
            first = self._taxonomy.first_category()
            category = first.name if first else None
            confidence[category_field] = 0.0
            flagged.append(category_field)
            top = None

        if top is not None and top.subcategory:
            confidence[subcategory_field] = top.subcategory_confidence
            if top.subcategory_confidence < self.acceptance_threshold:
                flagged.append(subcategory_field)
            return category, top.subcategory

        subcategories = self._taxonomy.subcategories_of(category) if category else ()
        if not subcategories:
            # Nothing to choose from: no subcategory is a valid answer
            confidence[subcategory_field] = 1.0
            return category, None

        confidence[subcategory_field] = 0.0
        flagged.append(subcategory_field)
        return category, subcategories[0]

    @staticmethod
    def _name_for(
        normalized: NormalizedUtterance,
        category: Optional[str],
        subcategory: Optional[str],
    ) -> str:
        hint = (normalized.category_hint or "").strip()
        if hint:
            name = hint[0].upper() + hint[1:]
        else:
            name = subcategory or category or FALLBACK_NAME
        return name[:MAX_NAME_LENGTH]

"""
Utterance Normalizer

Turns a raw transcript or AI-generated sentence into structured hints:

    "veinte euros en comida con tarjeta ayer"
        amount=20.00  currency_hint=EUR  payment_hint=CARD
        date_hint=<yesterday>  residual_text="en comida con"
        category_hint="comida"

DESIGN DECISION: Nothing here raises on bad input. A field that cannot
be read is None; only the synthesizer decides whether the result is
usable (it needs an amount). Extraction order is date, payment method,
then amount, so "hace dos días" is never read as an amount of 2.
"""

import datetime as dt
import re
from typing import Callable, Optional, Sequence

from clarity.capture.numbers import (
    TENS,
    UNITS,
    NumberMatch,
    Token,
    find_numbers,
    fold,
    number_at,
    quantize,
    tokenize,
)
from clarity.models.expense import NormalizedUtterance, PaymentMethod


CURRENCY_WORDS: dict[str, str] = {
    "€": "EUR", "eur": "EUR", "euro": "EUR", "euros": "EUR", "pavos": "EUR",
    "$": "USD", "usd": "USD", "dolar": "USD", "dolares": "USD",
    "£": "GBP", "gbp": "GBP", "libra": "GBP", "libras": "GBP",
}

CENT_WORDS = frozenset({"centimo", "centimos", "centavo", "centavos", "cent"})

# Longest phrases first so "transferencia movil" wins over "transferencia"
PAYMENT_SYNONYMS: list[tuple[tuple[str, ...], PaymentMethod]] = sorted(
    [
        (("transferencia", "movil"), PaymentMethod.MOBILE_TRANSFER),
        (("transferencia", "bancaria"), PaymentMethod.BANK_TRANSFER),
        (("bizum",), PaymentMethod.MOBILE_TRANSFER),
        (("tarjeta",), PaymentMethod.CARD),
        (("visa",), PaymentMethod.CARD),
        (("mastercard",), PaymentMethod.CARD),
        (("credito",), PaymentMethod.CARD),
        (("debito",), PaymentMethod.CARD),
        (("efectivo",), PaymentMethod.CASH),
        (("metalico",), PaymentMethod.CASH),
        (("cash",), PaymentMethod.CASH),
        (("transferencia",), PaymentMethod.BANK_TRANSFER),
    ],
    key=lambda entry: -len(entry[0]),
)

# Relative dates: phrase -> days back
RELATIVE_DATES: list[tuple[tuple[str, ...], int]] = [
    (("antes", "de", "ayer"), 2),
    (("anteayer",), 2),
    (("ayer",), 1),
    (("hoy",), 0),
]
DAY_WORDS = frozenset({"dia", "dias"})
WEEK_WORDS = frozenset({"semana", "semanas"})

# Connecting words that carry no category meaning
STOP_WORDS = frozenset({
    "a", "al", "de", "del", "el", "la", "los", "las", "lo", "en", "por",
    "para", "con", "sin", "y", "o", "e", "un", "una", "unos", "unas",
    "me", "mi", "mis", "he", "ha", "que", "es", "son", "se",
    "gaste", "gastado", "gastar", "pague", "pagado", "pagar",
    "compre", "comprado", "anade", "anadir", "anadi", "apunta", "apuntar",
    "tambien", "ademas", "hace",
})

SPLIT_PATTERN = re.compile(
    r"\s*;\s*|,\s+|\s+(?:y|también|tambien|además|ademas)\s+",
    re.IGNORECASE,
)


def _matches(tokens: Sequence[Token], index: int, phrase: Sequence[str]) -> bool:
    if index + len(phrase) > len(tokens):
        return False
    return all(
        tokens[index + offset].folded == word
        for offset, word in enumerate(phrase)
    )


class UtteranceNormalizer:
    """
    Extracts amount, currency, payment method and date from an utterance.

    The reference date is injectable so behaviour is reproducible in tests.
    """

    def __init__(
        self,
        today_provider: Callable[[], dt.date] = dt.date.today,
    ):
        self._today_provider = today_provider

    def normalize(
        self,
        text: str,
        today: Optional[dt.date] = None,
    ) -> NormalizedUtterance:
        """
        Normalize one complete utterance.

        Args:
            text: Transcript or AI text (may be empty or noisy)
            today: Reference date for "hoy"/"ayer"; defaults to the provider

        Returns:
            NormalizedUtterance; amount is None when none could be read
        """
        today = today or self._today_provider()
        tokens = tokenize(text or "")
        consumed: set[int] = set()

        date_hint = self._extract_date(tokens, consumed, today)
        payment_hint = self._extract_payment(tokens, consumed)
        amount, currency_hint = self._extract_amount(tokens, consumed)

        residual_tokens = [
            token for index, token in enumerate(tokens)
            if index not in consumed
        ]
        residual_text = " ".join(token.text for token in residual_tokens)
        content = [
            token.text for token in residual_tokens
            if token.folded not in STOP_WORDS and token.kind == "word"
        ]

        return NormalizedUtterance(
            raw_text=text or "",
            amount=amount,
            currency_hint=currency_hint,
            category_hint=" ".join(content) or None,
            payment_hint=payment_hint,
            date_hint=date_hint,
            residual_text=residual_text,
        )

    # -------------------------------------------------------------------------
    # Extraction steps
    # -------------------------------------------------------------------------

    def _extract_date(
        self,
        tokens: Sequence[Token],
        consumed: set[int],
        today: dt.date,
    ) -> dt.date:
        """First relative date expression; today when there is none."""
        for index in range(len(tokens)):
            if index in consumed:
                continue

            for phrase, days_back in RELATIVE_DATES:
                if _matches(tokens, index, phrase):
                    consumed.update(range(index, index + len(phrase)))
                    return today - dt.timedelta(days=days_back)

            # "hace 3 días", "hace dos semanas"
            if tokens[index].folded == "hace" and index + 1 < len(tokens):
                number = number_at(tokens, index + 1)
                if number is None or number.end >= len(tokens):
                    continue
                unit = tokens[number.end].folded
                if unit in DAY_WORDS or unit in WEEK_WORDS:
                    count = int(number.value)
                    days = count * 7 if unit in WEEK_WORDS else count
                    try:
                        found = today - dt.timedelta(days=days)
                    except (OverflowError, ValueError):
                        # Out of the calendar range: not a usable hint
                        continue
                    consumed.update(range(index, number.end + 1))
                    return found

        return today

    def _extract_payment(
        self,
        tokens: Sequence[Token],
        consumed: set[int],
    ) -> Optional[PaymentMethod]:
        """First payment-method synonym, case- and accent-insensitive."""
        for index in range(len(tokens)):
            if index in consumed:
                continue
            for phrase, method in PAYMENT_SYNONYMS:
                span = range(index, index + len(phrase))
                if _matches(tokens, index, phrase) and not consumed.intersection(span):
                    consumed.update(span)
                    return method
        return None

    def _currency_of(self, tokens: Sequence[Token], index: int) -> Optional[str]:
        if 0 <= index < len(tokens):
            return CURRENCY_WORDS.get(tokens[index].folded)
        return None

    def _extract_amount(
        self,
        tokens: Sequence[Token],
        consumed: set[int],
    ):
        """
        Pick the amount.

        Preference: the first number directly next to a currency word or
        symbol; otherwise the first number at all. Articles ("un", "una")
        only count when a currency follows them.
        """
        numbers = [
            match for match in find_numbers(tokens)
            if not consumed.intersection(range(match.start, match.end))
        ]

        chosen: Optional[NumberMatch] = None
        currency_index: Optional[int] = None
        for match in numbers:
            if self._currency_of(tokens, match.end) and match.end not in consumed:
                chosen, currency_index = match, match.end
                break
            if (
                not match.weak
                and self._currency_of(tokens, match.start - 1)
                and match.start - 1 not in consumed
            ):
                chosen, currency_index = match, match.start - 1
                break

        if chosen is None:
            strong = [match for match in numbers if not match.weak]
            if not strong:
                return None, self._loose_currency(tokens, consumed)
            chosen = strong[0]

        amount = chosen.value
        consumed.update(range(chosen.start, chosen.end))
        currency = None

        if currency_index is not None:
            currency = self._currency_of(tokens, currency_index)
            consumed.add(currency_index)
            # "veinte euros con cincuenta (céntimos)"
            if currency_index == chosen.end:
                amount = self._add_cents(tokens, consumed, currency_index + 1, amount)
        elif chosen.end < len(tokens) and tokens[chosen.end].folded in CENT_WORDS:
            # "cincuenta céntimos"
            amount = quantize(amount / 100)
            currency = "EUR"
            consumed.add(chosen.end)
        else:
            currency = self._loose_currency(tokens, consumed)

        return amount, currency

    def _add_cents(self, tokens, consumed, index, amount):
        if index + 1 >= len(tokens) or tokens[index].folded not in ("con", "y"):
            return amount
        cents = number_at(tokens, index + 1)
        if (
            cents is None
            or cents.weak
            or cents.value >= 100
            or cents.value != int(cents.value)
        ):
            return amount
        consumed.update(range(index, cents.end))
        if cents.end < len(tokens) and tokens[cents.end].folded in CENT_WORDS:
            consumed.add(cents.end)
        return quantize(amount + cents.value / 100)

    def _loose_currency(self, tokens, consumed) -> Optional[str]:
        """A currency word anywhere, when none sits next to the amount."""
        for index, token in enumerate(tokens):
            if index not in consumed and token.folded in CURRENCY_WORDS:
                consumed.add(index)
                return CURRENCY_WORDS[token.folded]
        return None


def _has_amount(segment: str) -> bool:
    return any(not match.weak for match in find_numbers(tokenize(segment)))


def split_utterance(text: str) -> list[str]:
    """
    Split an utterance naming several expenses into one segment each.

    "50 en gasolina y 20 en comida" -> ["50 en gasolina", "20 en comida"]

    A boundary is only kept when both sides carry their own amount, so
    "treinta y dos euros" and "20 en comida y bebida" stay whole.
    Segments shorter than 4 characters are dropped.
    """
    if not text or not text.strip():
        return []

    pieces: list[str] = []
    last = 0
    for match in SPLIT_PATTERN.finditer(text):
        before = text[last:match.start()]
        after = text[match.end():]
        separator = fold(match.group(0).strip())
        if separator == "y":
            previous_word = fold(before.split()[-1]) if before.split() else ""
            next_word = fold(after.split()[0]) if after.split() else ""
            if previous_word in TENS and next_word in UNITS:
                continue
        pieces.append(before)
        last = match.end()
    pieces.append(text[last:])

    segments: list[str] = []
    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        if segments and not _has_amount(piece):
            segments[-1] = f"{segments[-1]} y {piece}"
        else:
            segments.append(piece)

    if segments and not _has_amount(segments[0]) and len(segments) > 1:
        segments[1] = f"{segments[0]} {segments[1]}"
        segments.pop(0)

    return [segment for segment in segments if len(segment) >= 4]

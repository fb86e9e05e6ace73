"""
Text folding and Spanish numeric parsing.

Speech-to-text hands us amounts in many shapes: "32,5", "32.5",
"1.234,56", "veinte", "treinta y dos", "nueve coma sesenta".
Everything here is total: malformed input yields None, never an
exception, because user speech is inherently noisy.
"""

import re
import unicodedata
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import NamedTuple, Optional, Sequence

CENT = Decimal("0.01")

TOKEN_PATTERN = re.compile(
    r"(?P<number>\d+(?:[.,]\d+)*)"
    r"|(?P<word>[^\W\d_]+)"
    r"|(?P<symbol>[€$£])"
)

# Folded (accent-free, casefolded) Spanish number words
UNITS = {
    "cero": 0, "uno": 1, "un": 1, "una": 1, "dos": 2, "tres": 3,
    "cuatro": 4, "cinco": 5, "seis": 6, "siete": 7, "ocho": 8, "nueve": 9,
}
TEENS = {
    "diez": 10, "once": 11, "doce": 12, "trece": 13, "catorce": 14,
    "quince": 15, "dieciseis": 16, "diecisiete": 17, "dieciocho": 18,
    "diecinueve": 19, "veintiuno": 21, "veintiun": 21, "veintidos": 22,
    "veintitres": 23, "veinticuatro": 24, "veinticinco": 25,
    "veintiseis": 26, "veintisiete": 27, "veintiocho": 28, "veintinueve": 29,
}
TENS = {
    "veinte": 20, "treinta": 30, "cuarenta": 40, "cincuenta": 50,
    "sesenta": 60, "setenta": 70, "ochenta": 80, "noventa": 90,
}
HUNDREDS = {
    "cien": 100, "ciento": 100, "doscientos": 200, "trescientos": 300,
    "cuatrocientos": 400, "quinientos": 500, "seiscientos": 600,
    "setecientos": 700, "ochocientos": 800, "novecientos": 900,
}
THOUSAND = "mil"

NUMBER_WORDS: dict[str, int] = {**UNITS, **TEENS, **TENS, **HUNDREDS, THOUSAND: 1000}

# Articles that read as "1" only when a currency follows ("un euro")
WEAK_NUMBER_WORDS = frozenset({"un", "una", "uno"})
ARTICLE_WORDS = frozenset({"un", "una"})

DECIMAL_WORDS = frozenset({"coma", "con", "punto"})


def fold(text: str) -> str:
    """Casefold and strip accents: 'Súper' -> 'super'."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


class Token(NamedTuple):
    """One lexical unit of an utterance."""
    text: str
    folded: str
    kind: str  # "number", "word" or "symbol"


def tokenize(text: str) -> list[Token]:
    """Split on whitespace/punctuation, keeping digit groups and currency symbols."""
    tokens = []
    for match in TOKEN_PATTERN.finditer(text or ""):
        kind = match.lastgroup or "word"
        value = match.group(0)
        tokens.append(Token(text=value, folded=fold(value), kind=kind))
    return tokens


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_digits(raw: str) -> Optional[Decimal]:
    """
    Parse a digit token accepting comma or dot as decimal separator.

    - both separators present: the last one is the decimal separator
    - one separator repeated: thousands grouping ("1.234.567")
    - a single dot followed by exactly three digits: thousands ("1.500")
    - otherwise the single separator is decimal ("32,5", "32.5")
    """
    if not raw or not re.fullmatch(r"\d+(?:[.,]\d+)*", raw):
        return None

    dots = raw.count(".")
    commas = raw.count(",")
    cleaned = raw

    if dots and commas:
        decimal_sep = "." if raw.rfind(".") > raw.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        if raw.count(decimal_sep) > 1:
            return None
        cleaned = raw.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif dots > 1 or commas > 1:
        cleaned = raw.replace(".", "").replace(",", "")
    elif dots == 1:
        head, tail = raw.split(".")
        cleaned = head + tail if len(tail) == 3 else raw
    elif commas == 1:
        cleaned = raw.replace(",", ".")

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return quantize(value)


def _word_value(words: Sequence[str]) -> Optional[int]:
    """
    Combine a run of folded number words into an integer.

    Handles "treinta y dos", "ciento veinte", "mil doscientos".
    Returns None if the run is not a well-formed number.
    """
    total = 0
    current = 0
    previous: Optional[str] = None
    for index, word in enumerate(words):
        if word == "y":
            # Only valid between tens and a unit: "treinta y dos"
            if previous not in TENS or index + 1 >= len(words):
                return None
            if words[index + 1] not in UNITS or words[index + 1] == "cero":
                return None
            previous = word
            continue
        if word == THOUSAND:
            total += (current or 1) * 1000
            current = 0
        elif word in NUMBER_WORDS:
            current += NUMBER_WORDS[word]
        else:
            return None
        previous = word
    return total + current


class NumberMatch(NamedTuple):
    """A numeric value found at tokens[start:end]."""
    value: Decimal
    start: int
    end: int
    weak: bool  # a bare article such as "un", "una"


def _number_run_end(tokens: Sequence[Token], start: int) -> int:
    """End index (exclusive) of a run of number words starting at start."""
    end = start
    while end < len(tokens):
        folded = tokens[end].folded
        if tokens[end].kind == "word" and folded in NUMBER_WORDS:
            end += 1
            continue
        # "treinta y dos": the "y" belongs to the number only between tens and units
        if (
            folded == "y"
            and end > start
            and tokens[end - 1].folded in TENS
            and end + 1 < len(tokens)
            and tokens[end + 1].folded in UNITS
        ):
            end += 1
            continue
        break
    return end


def _integer_at(tokens: Sequence[Token], start: int) -> Optional[tuple[Decimal, int]]:
    """Integer-or-decimal value at start, ignoring coma/con composition."""
    token = tokens[start]
    if token.kind == "number":
        value = parse_digits(token.text)
        if value is None:
            return None
        return value, start + 1
    if token.kind == "word" and token.folded in NUMBER_WORDS:
        end = _number_run_end(tokens, start)
        words = [t.folded for t in tokens[start:end]]
        value = _word_value(words)
        if value is None:
            return None
        return Decimal(value), end
    return None


def _fraction_at(tokens: Sequence[Token], start: int) -> Optional[tuple[Decimal, int]]:
    """
    Fraction digits after 'coma', kept as spoken.

    'sesenta' -> 0.60, 'cinco' -> 0.5, 'cero cinco' -> 0.05, '05' -> 0.05.
    Articles ("un", "una") are never fraction digits.
    """
    token = tokens[start]
    if token.kind == "number":
        if not token.text.isdigit():
            return None
        return Decimal("0." + token.text), start + 1

    zeros = 0
    index = start
    while index < len(tokens) and tokens[index].kind == "word" and tokens[index].folded == "cero":
        zeros += 1
        index += 1

    digits = "0" * zeros
    if index < len(tokens) and tokens[index].folded not in ARTICLE_WORDS:
        rest = _integer_at(tokens, index)
        if rest is not None and rest[0] == rest[0].to_integral_value():
            digits += str(int(rest[0]))
            index = rest[1]

    if not digits:
        return None
    return Decimal("0." + digits), index


def number_at(tokens: Sequence[Token], start: int) -> Optional[NumberMatch]:
    """
    Read a number starting at tokens[start], if there is one.

    Supports "<n> coma|con|punto <m>" decimals built from words or digits.
    """
    head = _integer_at(tokens, start)
    if head is None:
        return None
    value, end = head
    weak = (
        tokens[start].kind == "word"
        and end - start == 1
        and tokens[start].folded in WEAK_NUMBER_WORDS
    )

    if (
        end + 1 < len(tokens)
        and tokens[end].folded in DECIMAL_WORDS
        and value == value.to_integral_value()
    ):
        tail = _fraction_at(tokens, end + 1)
        if tail is not None:
            value = value + tail[0]
            end = tail[1]
            weak = False

    return NumberMatch(value=quantize(value), start=start, end=end, weak=weak)


def find_numbers(tokens: Sequence[Token]) -> list[NumberMatch]:
    """All non-overlapping numbers in the token stream, left to right."""
    found = []
    index = 0
    while index < len(tokens):
        match = number_at(tokens, index)
        if match is None:
            index += 1
            continue
        found.append(match)
        index = match.end
    return found

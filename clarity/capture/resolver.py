"""
Category Resolver

Matches the residual text of an utterance against the user's taxonomy
and returns ranked category/subcategory candidates.

TIERS (first tier with any match wins, lower tiers are not consulted):
1. Exact: a taxonomy name equals a word/phrase of the text    -> 1.0
2. Substring: name inside the text, or a text word inside name -> 0.75
3. Synonym: colloquial term from SYNONYMS ("súper" -> Comida)  -> 0.6

Subcategories repeat the same tiers, scoped to the matched category.

When no category matches at all, two weaker sources are tried, in order:
- a subcategory matched anywhere implies its parent category
- keywords learned from previous expenses (confidence 0.5)

DESIGN DECISION: Exact and substring matches are trusted over heuristics.
The result is deterministic: equal confidences are ordered by taxonomy
insertion order.
"""

from collections import Counter, defaultdict
from typing import Iterable, NamedTuple, Optional, Sequence

from clarity.capture.normalizer import STOP_WORDS
from clarity.capture.numbers import fold, tokenize
from clarity.models.expense import Category, CategoryCandidate, Expense, MatchTier
from clarity.taxonomy.store import TaxonomyStore


TIER_CONFIDENCE: dict[MatchTier, float] = {
    MatchTier.EXACT: 1.0,
    MatchTier.SUBSTRING: 0.75,
    MatchTier.SYNONYM: 0.6,
    MatchTier.LEARNED: 0.5,
}

# Concept -> colloquial terms. A concept applies to every taxonomy name
# equal to it or containing it ("restaurante" -> "Restaurantes").
SYNONYMS: dict[str, tuple[str, ...]] = {
    "comida": (
        "super", "supermercado", "mercado", "mercadona", "lidl", "carrefour",
        "dia", "alcampo", "eroski", "alimentos", "compra", "fruteria",
        "carniceria", "panaderia",
    ),
    "alimentacion": (
        "comida", "alimentos", "super", "supermercado", "mercado", "mercadona",
        "lidl", "carrefour", "dia",
    ),
    "supermercado": ("super", "mercadona", "lidl", "carrefour", "dia", "compra"),
    "restaurante": (
        "restaurante", "comer", "cenar", "cena", "almuerzo", "bar", "menu",
        "pizza", "hamburguesa", "sushi", "kebab", "glovo", "uber eats",
    ),
    "cafeteria": ("cafe", "cafes", "desayuno", "starbucks"),
    "transporte": (
        "gasolina", "diesel", "gasoil", "metro", "bus", "autobus", "taxi",
        "uber", "cabify", "tren", "renfe", "peaje", "parking",
    ),
    "gasolina": ("diesel", "gasoil", "repsol", "cepsa", "gasolinera"),
    "ocio": (
        "cine", "teatro", "concierto", "spotify", "netflix", "hbo", "juegos",
        "copas", "fiesta",
    ),
    "suscripcion": ("spotify", "netflix", "hbo", "disney", "amazon prime", "icloud"),
    "salud": ("medico", "farmacia", "hospital", "dentista", "fisio", "optica"),
    "ropa": ("moda", "zapatos", "zapatillas", "zara", "primark", "camiseta", "pantalon"),
    "vivienda": ("casa", "hogar", "alquiler", "hipoteca", "luz", "agua", "gas", "internet"),
    "casa": ("hogar", "alquiler", "hipoteca", "luz", "agua", "gas", "internet", "ikea"),
    "tabaco": ("cigarrillos", "cigarros", "vaper", "estanco"),
    "vicios": ("tabaco", "cigarrillos", "vaper", "estanco"),
    "viaje": ("hotel", "vuelo", "avion", "airbnb", "booking"),
    "mascota": ("veterinario", "pienso", "perro", "gato"),
    "educacion": ("libros", "curso", "academia", "colegio", "universidad", "matricula"),
}

MIN_WORD_LENGTH = 3
MIN_REVERSE_CONTAINMENT = 4


def content_words(text: str, keep: frozenset[str] = frozenset()) -> list[str]:
    """
    Folded words that can carry category meaning.

    Words in keep (short words of taxonomy names, such as "tv") survive
    the length and stop-word filters.
    """
    return [
        token.folded for token in tokenize(text)
        if token.kind == "word"
        and (
            token.folded in keep
            or (len(token.folded) >= MIN_WORD_LENGTH and token.folded not in STOP_WORDS)
        )
    ]


def _phrases(words: Sequence[str], max_length: int) -> set[str]:
    """All contiguous n-grams up to max_length words."""
    found = set()
    for size in range(1, max(1, max_length) + 1):
        for start in range(len(words) - size + 1):
            found.add(" ".join(words[start:start + size]))
    return found


class _Name(NamedTuple):
    name: str
    folded: str
    order: int


class _CategoryEntry(NamedTuple):
    name: _Name
    subcategories: tuple[_Name, ...]


class _Text(NamedTuple):
    words: list[str]
    joined: str
    phrases: set[str]


class LearnedPatterns:
    """
    Keyword → category statistics built from previous expenses.

    "mercadona" used three times for Comida/Supermercado means the next
    "mercadona" is probably Comida/Supermercado too.
    """

    def __init__(self):
        self._categories: dict[str, Counter] = defaultdict(Counter)
        self._subcategories: dict[tuple[str, str], Counter] = defaultdict(Counter)

    @classmethod
    def from_expenses(
        cls,
        expenses: Iterable[Expense],
        window: int = 100,
    ) -> "LearnedPatterns":
        """Learn from the `window` most recent expenses."""
        patterns = cls()
        recent = sorted(expenses, key=lambda expense: expense.date)
        if window >= 0:
            recent = recent[-window:] if window else []
        for expense in recent:
            patterns.learn(expense)
        return patterns

    def learn(self, expense: Expense) -> None:
        for word in set(content_words(expense.name)):
            self._categories[word][expense.category] += 1
            if expense.subcategory:
                self._subcategories[(word, expense.category)][expense.subcategory] += 1

    def keywords(self) -> list[str]:
        return sorted(self._categories)

    def lookup(self, words: Sequence[str]) -> list[tuple[str, Optional[str], int]]:
        """(category, most common subcategory, uses) for the given words."""
        totals: Counter = Counter()
        subs: dict[str, Counter] = defaultdict(Counter)
        for word in words:
            for category, count in self._categories.get(word, {}).items():
                totals[category] += count
                subs[category].update(self._subcategories.get((word, category), {}))
        results = []
        for category, count in totals.most_common():
            common = subs[category].most_common(1)
            results.append((category, common[0][0] if common else None, count))
        return results

    def __len__(self) -> int:
        return len(self._categories)


class CategoryResolver:
    """
    Resolves free text to ranked taxonomy candidates.

    The folded name index is cached per taxonomy version and rebuilt
    on the first read after any mutation of the store.
    """

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        learned: Optional[LearnedPatterns] = None,
        synonyms: Optional[dict[str, tuple[str, ...]]] = None,
    ):
        self._taxonomy = taxonomy
        self._learned = learned
        self._synonyms = synonyms if synonyms is not None else SYNONYMS
        self._cached_version: Optional[int] = None
        self._index: tuple[_CategoryEntry, ...] = ()
        self._max_words = 1
        self._short_words: frozenset[str] = frozenset()
        self._max_synonym_words = max(
            (len(term.split()) for terms in self._synonyms.values() for term in terms),
            default=1,
        )

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    def invalidate(self) -> None:
        """Drop the cached index; the next resolve rebuilds it."""
        self._cached_version = None

    def set_learned_patterns(self, learned: Optional[LearnedPatterns]) -> None:
        self._learned = learned

    def _current_index(self) -> tuple[_CategoryEntry, ...]:
        version, categories = self._taxonomy.snapshot()
        if version != self._cached_version:
            self._index = self._build_index(categories)
            self._cached_version = version
        return self._index

    def _build_index(self, categories: Sequence[Category]) -> tuple[_CategoryEntry, ...]:
        entries = []
        max_words = 1
        short_words = set()
        for order, category in enumerate(categories):
            subs = tuple(
                _Name(sub, fold(sub), sub_order)
                for sub_order, sub in enumerate(category.subcategories)
            )
            entries.append(_CategoryEntry(_Name(category.name, fold(category.name), order), subs))
            for name in (category.name, *category.subcategories):
                max_words = max(max_words, len(name.split()))
                short_words.update(
                    token.folded for token in tokenize(name)
                    if token.kind == "word" and len(token.folded) < MIN_WORD_LENGTH
                )
        self._max_words = max_words
        self._short_words = frozenset(short_words)
        return tuple(entries)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def _prepare(self, text: str) -> _Text:
        words = content_words(text, keep=self._short_words)
        return _Text(
            words=words,
            joined=" ".join(words),
            phrases=_phrases(words, max(self._max_words, self._max_synonym_words)),
        )

    def _synonym_hit(self, folded_name: str, text: _Text) -> bool:
        for concept, terms in self._synonyms.items():
            if not (folded_name == concept or concept in folded_name):
                continue
            if any(term in text.phrases for term in terms):
                return True
        return False

    def _match_tier(
        self,
        names: Sequence[_Name],
        text: _Text,
    ) -> tuple[Optional[MatchTier], list[_Name]]:
        """Names matched by the first tier that matches anything."""
        exact = [name for name in names if name.folded in text.phrases]
        if exact:
            return MatchTier.EXACT, exact

        substring = [
            name for name in names
            if (text.joined and name.folded in text.joined)
            or any(
                len(word) >= MIN_REVERSE_CONTAINMENT and word in name.folded
                for word in text.words
            )
        ]
        if substring:
            return MatchTier.SUBSTRING, substring

        synonym = [name for name in names if self._synonym_hit(name.folded, text)]
        if synonym:
            return MatchTier.SYNONYM, synonym

        return None, []

    def _best_subcategory(
        self,
        entry: _CategoryEntry,
        text: _Text,
    ) -> tuple[Optional[str], float]:
        tier, matches = self._match_tier(entry.subcategories, text)
        if tier is None:
            return None, 0.0
        return matches[0].name, TIER_CONFIDENCE[tier]

    def resolve(self, residual_text: str) -> list[CategoryCandidate]:
        """
        Rank taxonomy candidates for the given text.

        Returns an empty list when nothing matches; callers must then
        leave the category unresolved rather than guess.
        """
        index = self._current_index()
        if not index:
            return []
        text = self._prepare(residual_text or "")
        if not text.words:
            return []

        ranked: list[tuple[CategoryCandidate, int]] = []

        tier, matches = self._match_tier([entry.name for entry in index], text)
        if tier is not None:
            for name in matches:
                entry = index[name.order]
                subcategory, sub_confidence = self._best_subcategory(entry, text)
                ranked.append((
                    CategoryCandidate(
                        category=entry.name.name,
                        subcategory=subcategory,
                        confidence=TIER_CONFIDENCE[tier],
                        subcategory_confidence=sub_confidence,
                        tier=tier,
                    ),
                    name.order,
                ))
        else:
            ranked = self._implied_by_subcategory(index, text)
            if not ranked:
                ranked = self._from_learned(index, text)

        ranked.sort(key=lambda item: (-item[0].confidence, item[1]))
        return [candidate for candidate, _ in ranked]

    def _implied_by_subcategory(
        self,
        index: Sequence[_CategoryEntry],
        text: _Text,
    ) -> list[tuple[CategoryCandidate, int]]:
        """A matching subcategory anywhere implies its parent category."""
        for tier in (MatchTier.EXACT, MatchTier.SUBSTRING, MatchTier.SYNONYM):
            found = []
            for entry in index:
                sub_tier, matches = self._match_tier(entry.subcategories, text)
                if sub_tier is tier:
                    confidence = TIER_CONFIDENCE[tier]
                    found.append((
                        CategoryCandidate(
                            category=entry.name.name,
                            subcategory=matches[0].name,
                            confidence=confidence,
                            subcategory_confidence=confidence,
                            tier=MatchTier.SUBCATEGORY,
                        ),
                        entry.name.order,
                    ))
            if found:
                return found
        return []

    def _from_learned(
        self,
        index: Sequence[_CategoryEntry],
        text: _Text,
    ) -> list[tuple[CategoryCandidate, int]]:
        if not self._learned:
            return []
        by_key = {entry.name.folded: entry for entry in index}
        confidence = TIER_CONFIDENCE[MatchTier.LEARNED]
        found = []
        for rank, (category, subcategory, _uses) in enumerate(self._learned.lookup(text.words)):
            entry = by_key.get(fold(category))
            if entry is None:
                # Learned from a category that has since been removed
                continue
            if subcategory and not any(
                sub.folded == fold(subcategory) for sub in entry.subcategories
            ):
                subcategory = None
            found.append((
                CategoryCandidate(
                    category=entry.name.name,
                    subcategory=subcategory,
                    confidence=confidence,
                    subcategory_confidence=confidence if subcategory else 0.0,
                    tier=MatchTier.LEARNED,
                ),
                # Most used first; ties fall back to taxonomy order
                rank * len(index) + entry.name.order,
            ))
        return found

    def suggest(self, prefix: str, limit: int = 3) -> list[str]:
        """Autocomplete names starting with prefix (at least 2 characters)."""
        folded = fold(prefix.strip())
        if len(folded) < 2:
            return []
        suggestions: dict[str, None] = {}
        for entry in self._current_index():
            if entry.name.folded.startswith(folded):
                suggestions[entry.name.name] = None
        for entry in self._current_index():
            for sub in entry.subcategories:
                if sub.folded.startswith(folded):
                    suggestions[sub.name] = None
        if self._learned:
            for keyword in self._learned.keywords():
                if keyword.startswith(folded):
                    suggestions[keyword] = None
        return list(suggestions)[:limit]

"""
Tests for category resolution

Tier order is exact > substring > synonym; subcategory-implied and
learned matches are only consulted when no category matches at all.
"""

from datetime import date
from decimal import Decimal

import pytest

from clarity.capture import CategoryResolver, LearnedPatterns
from clarity.models.expense import Expense, MatchTier
from clarity.taxonomy import TaxonomyStore


@pytest.fixture
def taxonomy():
    return TaxonomyStore.with_defaults()


@pytest.fixture
def resolver(taxonomy):
    return CategoryResolver(taxonomy)


def expense(name, category, subcategory=None, day=1):
    return Expense(
        name=name,
        amount=Decimal("10.00"),
        category=category,
        subcategory=subcategory,
        date=date(2024, 5, day),
    )


class TestTiers:
    """Tests for the matching tiers."""

    def test_exact_category(self, resolver):
        """Test an exact category name."""
        candidates = resolver.resolve("en comida con")
        assert len(candidates) == 1
        assert candidates[0].category == "Comida"
        assert candidates[0].confidence == 1.0
        assert candidates[0].tier == MatchTier.EXACT
        assert candidates[0].subcategory is None

    def test_substring_category(self, resolver):
        """Test a category name contained in a word."""
        top = resolver.resolve("comidas")[0]
        assert top.category == "Comida"
        assert top.tier == MatchTier.SUBSTRING
        assert top.confidence == 0.75

    def test_synonym_category(self, resolver):
        """Test a colloquial synonym, ignoring accents."""
        top = resolver.resolve("súper")[0]
        assert top.category == "Comida"
        assert top.tier == MatchTier.SYNONYM
        assert top.confidence == 0.6
        assert top.subcategory == "Supermercado"
        assert top.subcategory_confidence == 0.75

    def test_exact_beats_synonym(self, resolver):
        """Test that an exact name wins over a synonym in the same text."""
        candidates = resolver.resolve("ocio en el super")
        assert [c.category for c in candidates] == ["Ocio"]
        assert candidates[0].tier == MatchTier.EXACT

    def test_exact_beats_substring(self, resolver):
        """Test that lower tiers are not consulted once one matches."""
        candidates = resolver.resolve("transporte comidas")
        assert [c.category for c in candidates] == ["Transporte"]

    def test_exact_subcategory(self, resolver):
        """Test category and subcategory both named."""
        top = resolver.resolve("comida supermercado")[0]
        assert top.category == "Comida"
        assert top.subcategory == "Supermercado"
        assert top.subcategory_confidence == 1.0

    def test_synonym_with_accented_subcategory(self, resolver):
        """Test accent-insensitive subcategory matching."""
        top = resolver.resolve("MÉDICO")[0]
        assert top.category == "Salud"
        assert top.subcategory == "Médico"

    def test_subcategory_implies_category(self, resolver):
        """Test that a bare subcategory name resolves to its parent."""
        top = resolver.resolve("calzado")[0]
        assert top.category == "Ropa"
        assert top.subcategory == "Calzado"
        assert top.tier == MatchTier.SUBCATEGORY

    @pytest.mark.parametrize("text", ["", "   ", "xyzzy", "en el de"])
    def test_no_match(self, resolver, text):
        """Test that unmatched text yields no candidates."""
        assert resolver.resolve(text) == []

    def test_ties_follow_insertion_order(self):
        """Test deterministic order for equal confidences."""
        first = CategoryResolver(TaxonomyStore.from_mapping({"Casa": [], "Vivienda": []}))
        second = CategoryResolver(TaxonomyStore.from_mapping({"Vivienda": [], "Casa": []}))
        assert [c.category for c in first.resolve("alquiler")] == ["Casa", "Vivienda"]
        assert [c.category for c in second.resolve("alquiler")] == ["Vivienda", "Casa"]

    def test_subcategory_match_does_not_reorder_ties(self):
        """Test that equal category confidences keep taxonomy order."""
        resolver = CategoryResolver(TaxonomyStore.from_mapping({
            "Casa": [],
            "Vivienda": ["Alquiler"],
        }))
        candidates = resolver.resolve("alquiler")
        assert [c.category for c in candidates] == ["Casa", "Vivienda"]
        assert candidates[1].subcategory == "Alquiler"

    def test_short_category_name(self):
        """Test that two-letter names such as "TV" resolve exactly."""
        resolver = CategoryResolver(TaxonomyStore.from_mapping({"Comida": [], "TV": []}))
        candidates = resolver.resolve("en tv")
        assert [c.category for c in candidates] == ["TV"]
        assert candidates[0].tier == MatchTier.EXACT

    def test_short_subcategory_name(self):
        """Test a short subcategory under a matched category."""
        resolver = CategoryResolver(TaxonomyStore.from_mapping({"Ocio": ["TV", "Cine"]}))
        top = resolver.resolve("ocio tv")[0]
        assert top.category == "Ocio"
        assert top.subcategory == "TV"

    def test_empty_taxonomy(self):
        """Test resolving against no categories."""
        assert CategoryResolver(TaxonomyStore()).resolve("comida") == []


class TestIndexRefresh:
    """Tests for the version-cached name index."""

    def test_new_category_is_seen(self, taxonomy, resolver):
        """Test that taxonomy changes are picked up without a restart."""
        assert resolver.resolve("mascotas") == []
        taxonomy.add_category("Mascotas")
        assert resolver.resolve("mascotas")[0].category == "Mascotas"

    def test_removed_category_is_gone(self, taxonomy, resolver):
        """Test that removed categories are no longer proposed."""
        assert resolver.resolve("cine")[0].category == "Ocio"
        taxonomy.remove_category("Ocio")
        assert resolver.resolve("cine") == []


class TestLearnedPatterns:
    """Tests for keywords learned from earlier expenses."""

    def test_learned_keyword(self, taxonomy):
        """Test that an unknown word learned from history resolves."""
        learned = LearnedPatterns.from_expenses([expense("Zumba clase", "Ocio")])
        resolver = CategoryResolver(taxonomy, learned=learned)
        top = resolver.resolve("zumba")[0]
        assert top.category == "Ocio"
        assert top.tier == MatchTier.LEARNED
        assert top.confidence == 0.5

    def test_most_used_category_first(self, taxonomy):
        """Test ranking of learned categories by use count."""
        learned = LearnedPatterns.from_expenses([
            expense("Regalo tienda", "Otros"),
            expense("Regalo tienda", "Ropa", "Ropa", day=2),
            expense("Regalo tienda", "Ropa", "Ropa", day=3),
        ])
        resolver = CategoryResolver(taxonomy, learned=learned)
        candidates = resolver.resolve("regalo")
        assert [c.category for c in candidates] == ["Ropa", "Otros"]
        assert candidates[0].subcategory == "Ropa"

    def test_window_keeps_most_recent(self):
        """Test that only the most recent expenses are learned."""
        learned = LearnedPatterns.from_expenses(
            [expense("Antiguo", "Otros", day=1), expense("Reciente", "Ocio", day=2)],
            window=1,
        )
        assert learned.keywords() == ["reciente"]

    def test_learned_category_removed_later(self, taxonomy):
        """Test that learned categories missing from the taxonomy are skipped."""
        learned = LearnedPatterns.from_expenses([expense("Zumba clase", "Ocio")])
        resolver = CategoryResolver(taxonomy, learned=learned)
        taxonomy.remove_category("Ocio")
        assert resolver.resolve("zumba") == []


class TestSuggest:
    """Tests for autocomplete suggestions."""

    def test_suggest_subcategories(self, resolver):
        """Test prefix completion over subcategories."""
        assert resolver.suggest("su") == ["Supermercado", "Suscripciones"]

    def test_suggest_category_first(self, resolver):
        """Test that categories come before subcategories."""
        assert resolver.suggest("tra") == ["Transporte", "Transporte público"]

    def test_short_prefix(self, resolver):
        """Test that one-character prefixes give nothing."""
        assert resolver.suggest("s") == []

    def test_limit(self, resolver):
        """Test the suggestion limit."""
        assert len(resolver.suggest("ca", limit=1)) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

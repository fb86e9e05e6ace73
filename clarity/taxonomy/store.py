"""
Taxonomy Store

Holds the category → ordered subcategories mapping and the per-category
monthly budgets.

DESIGN DECISION: The store is the only place where categories,
subcategories and budgets are mutated. Uniqueness and the cascade on
category removal (subcategories + budget) are enforced here instead
of at every call site.

CONCURRENCY: State is an immutable snapshot (a tuple of frozen Category
values plus a budget dict that is never mutated after publication).
Mutations build a new snapshot and swap it under a lock, so a reader
sees either the whole change or none of it.

Every mutation bumps `version`. Components that cache derived indexes
(the CategoryResolver) compare versions instead of being notified.
"""

import threading
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Union

from clarity.models.expense import Budget, Category


# Seed categories for a new user.
DEFAULT_TAXONOMY: dict[str, list[str]] = {
    "Comida": ["Supermercado", "Restaurantes", "Cafeterías"],
    "Transporte": ["Gasolina", "Transporte público", "Taxi", "Parking"],
    "Vivienda": ["Alquiler", "Luz", "Agua", "Gas", "Internet"],
    "Salud": ["Farmacia", "Médico", "Dentista"],
    "Ocio": ["Cine", "Suscripciones", "Viajes", "Conciertos"],
    "Ropa": ["Ropa", "Calzado"],
    "Otros": [],
}


class TaxonomyError(Exception):
    """Base class for rejected taxonomy mutations."""
    pass


class DuplicateCategoryError(TaxonomyError):
    """A category with this name already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Category already exists: {name}")


class DuplicateSubcategoryError(TaxonomyError):
    """The category already has a subcategory with this name."""

    def __init__(self, category: str, name: str):
        self.category = category
        self.name = name
        super().__init__(f"Subcategory already exists in {category}: {name}")


class UnknownCategoryError(TaxonomyError):
    """The referenced category does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown category: {name}")


class DuplicateBudgetError(TaxonomyError):
    """A budget for this category already exists."""

    def __init__(self, category: str):
        self.category = category
        super().__init__(f"Budget already exists for category: {category}")


def _key(name: str) -> str:
    """Identity key for names: whitespace- and case-insensitive."""
    return " ".join(name.split()).casefold()


def _clean(name: str) -> str:
    cleaned = " ".join(name.split())
    if not cleaned:
        raise ValueError("Name cannot be empty")
    return cleaned


class TaxonomyStore:
    """
    Thread-safe, snapshot-based category and budget store.

    Lookups that miss (unknown category) return empty results rather
    than raising, because callers routinely probe speculative names
    coming out of speech recognition.
    """

    def __init__(
        self,
        categories: Optional[Iterable[Category]] = None,
        budgets: Optional[Iterable[Budget]] = None,
    ):
        self._lock = threading.RLock()
        self._categories: tuple[Category, ...] = ()
        self._budgets: dict[str, Budget] = {}
        self._version = 0

        for category in categories or ():
            self.add_category(category.name)
            for sub in category.subcategories:
                self.add_subcategory(category.name, sub)
        if budgets:
            self.load_budgets(budgets)

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Union[list[str], Mapping]],
    ) -> "TaxonomyStore":
        """
        Build a store from the persisted shape.

        Accepts both {"Comida": ["Supermercado"]} and the newer
        {"Comida": {"subcategories": [...], "color": ...}} format.
        """
        store = cls()
        for name, data in mapping.items():
            if isinstance(data, Mapping):
                subs = data.get("subcategories") or []
            else:
                subs = data or []
            store.add_category(name)
            for sub in subs:
                try:
                    store.add_subcategory(name, sub)
                except DuplicateSubcategoryError:
                    # Legacy documents sometimes repeat a subcategory
                    continue
        return store

    @classmethod
    def with_defaults(cls) -> "TaxonomyStore":
        return cls.from_mapping(DEFAULT_TAXONOMY)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> tuple[int, tuple[Category, ...]]:
        """Consistent (version, categories) pair for one resolution pass."""
        with self._lock:
            return self._version, self._categories

    def list_categories(self) -> tuple[Category, ...]:
        return self._categories

    def category_names(self) -> list[str]:
        return [category.name for category in self._categories]

    def get_category(self, name: str) -> Optional[Category]:
        key = _key(name)
        for category in self._categories:
            if _key(category.name) == key:
                return category
        return None

    def has_category(self, name: str) -> bool:
        return self.get_category(name) is not None

    def subcategories_of(self, category: str) -> tuple[str, ...]:
        """Subcategories in insertion order; empty if the category is unknown."""
        found = self.get_category(category)
        if found is None:
            return ()
        return found.subcategories

    def has_pair(self, category: str, subcategory: Optional[str]) -> bool:
        """
        Is (category, subcategory) a valid reference right now?

        A missing subcategory is valid for any existing category.
        """
        found = self.get_category(category)
        if found is None:
            return False
        if subcategory is None:
            return True
        return found.has_subcategory(subcategory)

    def first_category(self) -> Optional[Category]:
        categories = self._categories
        return categories[0] if categories else None

    def to_mapping(self) -> dict[str, list[str]]:
        return {
            category.name: list(category.subcategories)
            for category in self._categories
        }

    def __len__(self) -> int:
        return len(self._categories)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has_category(name)

    # -------------------------------------------------------------------------
    # Category mutations
    # -------------------------------------------------------------------------

    def _publish(
        self,
        categories: tuple[Category, ...],
        budgets: Optional[dict[str, Budget]] = None,
    ) -> None:
        """Swap in a new snapshot. Caller holds the lock."""
        self._categories = categories
        if budgets is not None:
            self._budgets = budgets
        self._version += 1

    def _index_of(self, name: str) -> int:
        key = _key(name)
        for index, category in enumerate(self._categories):
            if _key(category.name) == key:
                return index
        raise UnknownCategoryError(name)

    def add_category(self, name: str) -> Category:
        name = _clean(name)
        with self._lock:
            if self.has_category(name):
                raise DuplicateCategoryError(name)
            category = Category(name=name)
            self._publish(self._categories + (category,))
            return category

    def remove_category(self, name: str) -> Category:
        """
        Remove a category, its subcategories and its budget.

        Raises UnknownCategoryError if the category does not exist.
        """
        with self._lock:
            index = self._index_of(name)
            removed = self._categories[index]
            categories = self._categories[:index] + self._categories[index + 1:]
            budgets = {
                key: budget
                for key, budget in self._budgets.items()
                if key != _key(removed.name)
            }
            self._publish(categories, budgets)
            return removed

    def add_subcategory(self, category: str, name: str) -> Category:
        name = _clean(name)
        with self._lock:
            index = self._index_of(category)
            current = self._categories[index]
            if current.has_subcategory(name):
                raise DuplicateSubcategoryError(current.name, name)
            updated = Category(
                name=current.name,
                subcategories=current.subcategories + (name,),
            )
            self._publish(
                self._categories[:index] + (updated,) + self._categories[index + 1:]
            )
            return updated

    def remove_subcategory(self, category: str, name: str) -> Category:
        """
        Remove a subcategory from a category.

        Removing a subcategory that is not there is a no-op; the
        category itself must exist.
        """
        with self._lock:
            index = self._index_of(category)
            current = self._categories[index]
            key = _key(name)
            remaining = tuple(
                sub for sub in current.subcategories if _key(sub) != key
            )
            if remaining == current.subcategories:
                return current
            updated = Category(name=current.name, subcategories=remaining)
            self._publish(
                self._categories[:index] + (updated,) + self._categories[index + 1:]
            )
            return updated

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    def budgets(self) -> dict[str, Budget]:
        """Budgets keyed by category name, in creation order."""
        return {budget.category: budget for budget in self._budgets.values()}

    def get_budget(self, category: str) -> Optional[Budget]:
        return self._budgets.get(_key(category))

    def add_budget(self, category: str, monthly_limit: Union[Decimal, int, str]) -> Budget:
        """
        Create the budget for a category.

        At most one budget per category: a second one is rejected.
        """
        with self._lock:
            existing = self.get_category(category)
            if existing is None:
                raise UnknownCategoryError(category)
            key = _key(existing.name)
            if key in self._budgets:
                raise DuplicateBudgetError(existing.name)
            budget = Budget(
                category=existing.name,
                monthly_limit=Decimal(str(monthly_limit)),
            )
            budgets = dict(self._budgets)
            budgets[key] = budget
            self._publish(self._categories, budgets)
            return budget

    def set_budget_limit(self, category: str, monthly_limit: Union[Decimal, int, str]) -> Budget:
        """Change the limit of an existing budget."""
        with self._lock:
            key = _key(category)
            current = self._budgets.get(key)
            if current is None:
                raise UnknownCategoryError(category)
            budget = Budget(
                category=current.category,
                monthly_limit=Decimal(str(monthly_limit)),
            )
            budgets = dict(self._budgets)
            budgets[key] = budget
            self._publish(self._categories, budgets)
            return budget

    def remove_budget(self, category: str) -> Optional[Budget]:
        with self._lock:
            key = _key(category)
            if key not in self._budgets:
                return None
            budgets = dict(self._budgets)
            removed = budgets.pop(key)
            self._publish(self._categories, budgets)
            return removed

    def load_budgets(self, budgets: Iterable[Budget]) -> None:
        """
        Replace budgets with ones read from persistence.

        Budgets for categories that no longer exist are kept: stale
        budgets are tolerated, not errors. Later duplicates win.
        """
        with self._lock:
            loaded: dict[str, Budget] = {}
            for budget in budgets:
                loaded[_key(budget.category)] = budget
            self._publish(self._categories, loaded)

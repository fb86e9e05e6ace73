"""Category taxonomy package."""

from clarity.taxonomy.store import (
    DEFAULT_TAXONOMY,
    DuplicateBudgetError,
    DuplicateCategoryError,
    DuplicateSubcategoryError,
    TaxonomyError,
    TaxonomyStore,
    UnknownCategoryError,
)

__all__ = [
    "DEFAULT_TAXONOMY",
    "DuplicateBudgetError",
    "DuplicateCategoryError",
    "DuplicateSubcategoryError",
    "TaxonomyError",
    "TaxonomyStore",
    "UnknownCategoryError",
]

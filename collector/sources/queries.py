"""
Query Builder - search terms recorded for a collection attempt.

Terms come from:
- The item name and its category
- Caller-supplied custom terms
- A plural/singular variation of the name
"""

from typing import Iterable, List, Optional


def _unique(terms: Iterable[str]) -> List[str]:
    seen = set()
    unique = []
    for term in terms:
        term = " ".join(term.split())
        key = term.lower()
        if term and key not in seen:
            seen.add(key)
            unique.append(term)
    return unique


def pluralize_variation(item_name: str) -> str:
    """Naive plural/singular flip used as an extra search variant."""
    name = item_name.strip().lower()
    if name.endswith("s"):
        return name[:-1]
    return name + "s"


class QueryBuilder:
    """
    Build the search terms for a vocabulary item.

    Usage:
        builder = QueryBuilder()
        terms = builder.build_collection_terms("dog", "Animals", ["golden retriever"])
    """

    def build_collection_terms(
        self,
        item_name: str,
        category: str,
        custom_terms: Optional[List[str]] = None,
    ) -> List[str]:
        """
        Build the search terms recorded for a collection attempt.

        Args:
            item_name: Vocabulary item
            category: Category display name
            custom_terms: Extra terms from the collection strategy
        """
        terms = [item_name]
        if category and category.lower() != item_name.lower():
            terms.append(f"{item_name} {category.lower()}")
        terms.extend(custom_terms or [])
        terms.append(pluralize_variation(item_name))
        return _unique(terms)


def get_query_builder() -> QueryBuilder:
    return QueryBuilder()

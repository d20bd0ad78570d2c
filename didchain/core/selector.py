"""
Selector matching for point lookups.

Works on both shapes of document:
- LogDocument (in-progress, unfiltered) during traversal, for early exit
- RenderedDocument after resolution, for point queries

Entries are compared through their alias-keyed view, so selector
properties use DID document names ("publicKey", "serviceEndpoint", ...).
"""

from typing import Any, Iterable, Optional, Union

from ..schemas import LogDocument, LogEntry, RenderedDocument, Selector, SelectorCategory


Document = Union[LogDocument, RenderedDocument]


def _collection(document: Document, category: SelectorCategory) -> Iterable[Any]:
    if category == SelectorCategory.PUBLIC_KEY:
        entries = document.public_key
    elif category == SelectorCategory.AUTHENTICATION:
        entries = document.authentication
    else:
        entries = document.service
    # LogDocument holds mappings, RenderedDocument holds lists
    return entries.values() if isinstance(entries, dict) else entries


def _view(entry: Any) -> dict[str, Any]:
    return entry.as_dict() if isinstance(entry, LogEntry) else entry


def matches(entry: Any, selector: Selector) -> bool:
    """True if every selector property is present on the entry and equal."""
    view = _view(entry)
    return all(
        view.get(prop) and view.get(prop) == value
        for prop, value in selector.conditions.items()
    )


def query(document: Document, selector: Selector) -> Optional[Any]:
    """
    Return the first entry of the selected category that matches, or None.

    Iteration follows insertion order of the underlying collection.
    """
    for entry in _collection(document, selector.category):
        if matches(entry, selector):
            return entry
    return None

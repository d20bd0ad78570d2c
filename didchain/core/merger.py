"""
Log merging.

Restores one LogDocument from several partial ones for the same identity,
e.g. a cached log plus the traversal that resumed from it, or traversals
of disjoint block ranges.
"""

from typing import Iterable

from ..schemas import LogDocument


def merge_logs(logs: Iterable[LogDocument]) -> LogDocument:
    """
    Merge partial logs, lowest topBlock first.

    Each later log's entries overwrite earlier entries under the same key,
    per collection. The inputs are left untouched.
    """
    ordered = sorted(logs, key=lambda log: log.top_block)
    if not ordered:
        raise ValueError("merge_logs requires at least one log")

    merged = ordered[0].model_copy(deep=True)
    for log in ordered[1:]:
        incoming = log.model_copy(deep=True)
        merged.public_key = {**merged.public_key, **incoming.public_key}
        merged.authentication = {**merged.authentication, **incoming.authentication}
        merged.service = {**merged.service, **incoming.service}
        merged.attributes = {**merged.attributes, **incoming.attributes}
        if incoming.owner is not None:
            merged.owner = incoming.owner
        merged.top_block = incoming.top_block

    return merged

from __future__ import annotations

from typing import Iterable

from shiki.core.graph.neighbours import blocking_predecessors
from shiki.core.model import FudaStatus
from shiki.core.store.db import Store


def is_eligible_for_ready(store: Store, fuda_id: str) -> bool:
    """True iff the fuda is live, BLOCKED and every BLOCKS predecessor is DONE."""
    fuda = store.get_fuda(fuda_id)
    if fuda is None or fuda.status is not FudaStatus.BLOCKED:
        return False
    return not blocking_predecessors(store, fuda_id)


def eligible_among(store: Store, fuda_ids: Iterable[str]) -> list[str]:
    return sorted(fid for fid in set(fuda_ids) if is_eligible_for_ready(store, fid))

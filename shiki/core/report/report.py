from __future__ import annotations

from collections import Counter, defaultdict
from typing import Iterable, Optional

from shiki.core.model import STATUS_ORDER, FudaStatus, StatusCounts
from shiki.core.store.db import Store


def status_breakdown(store: Store, prd_id: Optional[str] = None) -> StatusCounts:
    """Per-status counts of non-deleted fuda, optionally within one PRD."""
    counts: Counter[FudaStatus] = Counter()
    for _, status, n in store.status_rows(prd_id=prd_id):
        counts[status] += n
    return StatusCounts(counts={s: counts.get(s, 0) for s in STATUS_ORDER})


def prd_breakdown(store: Store) -> dict[Optional[str], StatusCounts]:
    """Status counts grouped by prd_id (None groups fuda without a PRD)."""
    grouped: dict[Optional[str], Counter[FudaStatus]] = defaultdict(Counter)
    for prd_id, status, n in store.status_rows():
        grouped[prd_id][status] += n
    return {
        prd_id: StatusCounts(counts={s: c.get(s, 0) for s in STATUS_ORDER})
        for prd_id, c in sorted(grouped.items(), key=lambda kv: (kv[0] is None, kv[0] or ""))
    }


def orphans(store: Store, valid_prd_ids: Iterable[str]) -> list[tuple[str, int]]:
    """(prd_id, count) for PRD references with no matching document, sorted by prd_id."""
    valid = set(valid_prd_ids)
    return [(prd_id, n) for prd_id, n in store.prd_reference_counts() if prd_id not in valid]


def summarize_status(counts: StatusCounts) -> str:
    parts = [f"{s.value}={counts.get(s)}" for s in STATUS_ORDER]
    return f"OK: {counts.total} fuda (" + ", ".join(parts) + ")"

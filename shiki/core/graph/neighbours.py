from __future__ import annotations

from typing import Union

from shiki.core.errors import InvalidKind
from shiki.core.model import DependencyKind, FudaStatus
from shiki.core.store.db import Store

KindLike = Union[DependencyKind, str]


def parse_kind(value: KindLike) -> DependencyKind:
    """Accept an enum, its value ("parent-child") or its name ("PARENT_CHILD")."""
    if isinstance(value, DependencyKind):
        return value
    if isinstance(value, str):
        v = value.strip()
        for kind in DependencyKind:
            if v.lower() == kind.value or v.upper().replace("-", "_") == kind.name:
                return kind
    allowed = ", ".join(k.value for k in DependencyKind)
    raise InvalidKind(
        code="E_INVALID_KIND",
        message=f"unknown dependency kind: {value!r} (choose one of: {allowed})",
    )


def _live(store: Store, candidates: set[str]) -> set[str]:
    if not candidates:
        return set()
    return {f.id for f in store.list_fuda(ids_in=candidates)}


def predecessors(store: Store, fuda_id: str, kind: KindLike) -> set[str]:
    k = parse_kind(kind)
    return _live(store, {e.from_id for e in store.edges(kind=k, to_id=fuda_id)})


def successors(store: Store, fuda_id: str, kind: KindLike) -> set[str]:
    k = parse_kind(kind)
    return _live(store, {e.to_id for e in store.edges(kind=k, from_id=fuda_id)})


def blocking_predecessors(store: Store, fuda_id: str) -> set[str]:
    """Live BLOCKS predecessors that are not DONE yet."""
    preds = predecessors(store, fuda_id, DependencyKind.BLOCKS)
    if not preds:
        return set()
    return {f.id for f in store.list_fuda(ids_in=preds) if f.status is not FudaStatus.DONE}

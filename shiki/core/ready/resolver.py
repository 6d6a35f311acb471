from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from shiki.core.graph.neighbours import blocking_predecessors, successors
from shiki.core.model import DependencyKind, Fuda, FudaStatus
from shiki.core.ready.eligibility import is_eligible_for_ready
from shiki.core.status.state_machine import transition
from shiki.core.store.db import Store

logger = logging.getLogger(__name__)

__all__ = [
    "Scope",
    "blocked_on",
    "is_eligible_for_ready",
    "promote_eligible",
    "ready_fuda",
]


@dataclass(frozen=True)
class Scope:
    """Which BLOCKED fuda a promotion pass looks at. Empty scope = all of them."""

    prd_id: Optional[str] = None
    successors_of: Optional[str] = None
    ids: Optional[tuple[str, ...]] = None

    @classmethod
    def prd(cls, prd_id: str) -> "Scope":
        return cls(prd_id=prd_id)

    @classmethod
    def after(cls, fuda_id: str) -> "Scope":
        return cls(successors_of=fuda_id)

    @classmethod
    def only(cls, fuda_ids: Iterable[str]) -> "Scope":
        return cls(ids=tuple(sorted(set(fuda_ids))))


def _candidates(store: Store, scope: Optional[Scope]) -> list[Fuda]:
    scope = scope or Scope()
    ids_in: Optional[set[str]] = None
    if scope.successors_of is not None:
        ids_in = successors(store, scope.successors_of, DependencyKind.BLOCKS)
    if scope.ids is not None:
        ids_in = set(scope.ids) if ids_in is None else ids_in & set(scope.ids)
    return store.list_fuda(statuses=[FudaStatus.BLOCKED], prd_id=scope.prd_id, ids_in=ids_in)


def promote_eligible(
    store: Store, scope: Optional[Scope] = None, *, actor: str = "engine"
) -> list[str]:
    """Move every eligible BLOCKED fuda in scope to READY; return the promoted ids.

    Each promotion goes through the state machine. Calling this again with
    no intervening mutation promotes nothing.
    """
    promoted: list[str] = []
    with store.transaction():
        for fuda in _candidates(store, scope):
            if not is_eligible_for_ready(store, fuda.id):
                continue
            transition(store, fuda.id, FudaStatus.READY, actor=actor)
            promoted.append(fuda.id)

    if promoted:
        logger.info("promoted %d fuda to ready: %s", len(promoted), ", ".join(promoted))
    else:
        logger.debug("promotion pass found nothing eligible")
    return promoted


def blocked_on(store: Store, fuda_id: str) -> list[Fuda]:
    """Unresolved blocking predecessors, for 'why is this blocked' diagnostics."""
    store.require_fuda(fuda_id, allow_deleted=True)
    blockers = blocking_predecessors(store, fuda_id)
    if not blockers:
        return []
    return store.list_fuda(ids_in=blockers)


def ready_fuda(
    store: Store, *, prd_id: Optional[str] = None, limit: Optional[int] = None
) -> list[Fuda]:
    return store.list_fuda(statuses=[FudaStatus.READY], prd_id=prd_id, limit=limit)

"""Status transitions for a single fuda.

Transitions are deliberately permissive: any recognised status may follow
any other (DONE and FAILED can be reopened). The engine enforces only the
dependency gate on READY, and `force_transition` is the one named way to
bypass it. A DONE fuda that is reopened sends its READY successors back to
BLOCKED in the same transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Union

from shiki.core.errors import InvalidStatus, UnsatisfiedDependency
from shiki.core.graph.neighbours import blocking_predecessors, successors
from shiki.core.model import AuditOperation, DependencyKind, Fuda, FudaStatus
from shiki.core.ready.eligibility import eligible_among
from shiki.core.store.db import Store

logger = logging.getLogger(__name__)


StatusLike = Union[FudaStatus, str]


@dataclass(frozen=True)
class TransitionResult:
    fuda: Fuda
    previous: FudaStatus
    # BLOCKS successors that became READY-eligible because this fuda reached DONE
    newly_eligible: list[str] = field(default_factory=list)
    # filled in only when a promotion pass ran as part of the same operation
    promoted: list[str] = field(default_factory=list)
    # READY successors moved back to BLOCKED because this fuda left DONE
    demoted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previous is not self.fuda.status


def parse_status(value: StatusLike) -> FudaStatus:
    """Accept an enum, its value ("in_progress") or its name ("IN_PROGRESS")."""
    if isinstance(value, FudaStatus):
        return value
    if isinstance(value, str):
        v = value.strip()
        for status in FudaStatus:
            if v.lower() == status.value or v.upper().replace("-", "_") == status.name:
                return status
    allowed = ", ".join(s.value for s in FudaStatus)
    raise InvalidStatus(
        code="E_INVALID_STATUS",
        message=f"invalid status: {value!r} (valid statuses are: {allowed})",
    )


def transition(
    store: Store, fuda_id: str, status: StatusLike, *, actor: str = "engine"
) -> TransitionResult:
    return _apply(store, fuda_id, status, actor=actor, enforce_dependencies=True)


def force_transition(
    store: Store, fuda_id: str, status: StatusLike, *, actor: str = "engine"
) -> TransitionResult:
    """Operator override: like transition() but skips the READY dependency gate."""
    return _apply(store, fuda_id, status, actor=actor, enforce_dependencies=False)


def _apply(
    store: Store,
    fuda_id: str,
    status: StatusLike,
    *,
    actor: str,
    enforce_dependencies: bool,
) -> TransitionResult:
    target = parse_status(status)

    with store.transaction():
        current = store.require_fuda(fuda_id)

        if target is FudaStatus.READY and enforce_dependencies:
            blockers = sorted(blocking_predecessors(store, fuda_id))
            if blockers:
                raise UnsatisfiedDependency(
                    code="E_UNSATISFIED_DEPENDENCY",
                    message=f"cannot mark ready, blocked by: {', '.join(blockers)}",
                    ids=(fuda_id, *blockers),
                )

        if current.status is not target:
            store.set_status(fuda_id, target)
            store.append_audit(
                fuda_id=fuda_id,
                operation=AuditOperation.UPDATE,
                field="status",
                old_value=current.status.value,
                new_value=target.value,
                actor=actor,
            )
            logger.info(
                "%s: %s -> %s%s",
                fuda_id,
                current.status.value,
                target.value,
                "" if enforce_dependencies else " (forced)",
            )

        newly_eligible: list[str] = []
        demoted: list[str] = []
        if target is FudaStatus.DONE:
            # re-evaluated only; the successors themselves are not mutated here
            newly_eligible = eligible_among(
                store, successors(store, fuda_id, DependencyKind.BLOCKS)
            )
        elif current.status is FudaStatus.DONE:
            demoted = demote_blocked(
                store, successors(store, fuda_id, DependencyKind.BLOCKS), actor=actor
            )

        updated = store.require_fuda(fuda_id)

    return TransitionResult(
        fuda=updated,
        previous=current.status,
        newly_eligible=newly_eligible,
        demoted=demoted,
    )


def demote_blocked(store: Store, fuda_ids: Iterable[str], *, actor: str = "engine") -> list[str]:
    """Move READY fuda that have an unfinished blocker back to BLOCKED.

    Only READY is touched; work already IN_PROGRESS or later keeps its status.
    Returns the demoted ids, sorted.
    """
    demoted: list[str] = []
    with store.transaction():
        for fid in sorted(set(fuda_ids)):
            fuda = store.get_fuda(fid)
            if fuda is None or fuda.status is not FudaStatus.READY:
                continue
            if not blocking_predecessors(store, fid):
                continue
            _apply(store, fid, FudaStatus.BLOCKED, actor=actor, enforce_dependencies=True)
            demoted.append(fid)
    if demoted:
        logger.info("demoted %d fuda to blocked: %s", len(demoted), ", ".join(demoted))
    return demoted

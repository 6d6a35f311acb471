from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Optional

from shiki.core import lifecycle
from shiki.core.config import DEFAULT_CONFIG, ShikiConfig, db_path, load_config, prds_dir
from shiki.core.graph import graph
from shiki.core.graph.graph import KindLike, parse_kind
from shiki.core.model import (
    AuditEntry,
    DependencyKind,
    Edge,
    Fuda,
    FudaStatus,
    StatusCounts,
)
from shiki.core.prd.prd_files import list_prd_ids
from shiki.core.ready import resolver
from shiki.core.ready.resolver import Scope
from shiki.core.report import report
from shiki.core.status import state_machine
from shiki.core.status.state_machine import StatusLike, TransitionResult
from shiki.core.store.db import Store

logger = logging.getLogger(__name__)


class Tracker:
    """One project's engine handle: a store plus the config that governs it.

    The calling command owns the lifecycle (open, use, close). Every
    operation reads fresh state from the store.
    """

    def __init__(
        self, store: Store, config: ShikiConfig = DEFAULT_CONFIG, *, root: Optional[Path] = None
    ) -> None:
        self.store = store
        self.config = config
        self.root = root

    @classmethod
    def open(
        cls, root: Path, *, create: bool = False, config: Optional[ShikiConfig] = None
    ) -> "Tracker":
        cfg = config if config is not None else load_config(root)
        store = Store.open(
            db_path(root),
            create=create,
            busy_timeout_ms=cfg.busy_timeout_ms,
            id_attempts=cfg.id_attempts,
        )
        return cls(store, cfg, root=root)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "Tracker":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def actor(self) -> str:
        return self.config.actor

    @property
    def eager(self) -> bool:
        return self.config.promotion == "eager"

    def _auto_promote(self, scope: Scope) -> list[str]:
        if not self.eager:
            return []
        return resolver.promote_eligible(self.store, scope, actor=self.actor)

    # -- fuda records -------------------------------------------------

    def create(
        self,
        title: str,
        *,
        description: str = "",
        prd_id: Optional[str] = None,
        priority: int = 0,
        depends_on: Iterable[str] = (),
        dep_kind: KindLike = DependencyKind.BLOCKS,
        parent_id: Optional[str] = None,
    ) -> Fuda:
        """Create a fuda and its initial edges atomically.

        `depends_on` ids become `dep_kind` edges into the new fuda; `parent_id`
        becomes a PARENT_CHILD edge parent -> new fuda.
        """
        kind = parse_kind(dep_kind)
        with self.store.transaction():
            fuda = lifecycle.create_fuda(
                self.store,
                title=title,
                description=description,
                prd_id=prd_id,
                priority=priority,
                actor=self.actor,
            )
            for dep in depends_on:
                graph.add_edge(self.store, dep, fuda.id, kind, actor=self.actor)
            if parent_id is not None:
                graph.add_edge(
                    self.store, parent_id, fuda.id, DependencyKind.PARENT_CHILD, actor=self.actor
                )
            self._auto_promote(Scope.only([fuda.id]))
            created = self.store.require_fuda(fuda.id)
        return created

    def get(self, fuda_id: str, *, include_deleted: bool = False) -> Fuda:
        return self.store.require_fuda(fuda_id, allow_deleted=include_deleted)

    def resolve(self, ref: str, *, include_deleted: bool = False) -> Fuda:
        return lifecycle.resolve_fuda(self.store, ref, include_deleted=include_deleted)

    def list_fuda(
        self,
        *,
        statuses: Optional[Iterable[StatusLike]] = None,
        prd_id: Optional[str] = None,
        active_only: bool = False,
        deleted_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Fuda]:
        selected: Optional[list[FudaStatus]] = None
        if statuses is not None:
            selected = [state_machine.parse_status(s) for s in statuses]
        elif active_only:
            selected = [s for s in FudaStatus if s not in (FudaStatus.DONE, FudaStatus.FAILED)]
        return self.store.list_fuda(
            statuses=selected, prd_id=prd_id, deleted_only=deleted_only, limit=limit
        )

    def update(self, fuda_id: str, **fields: Any) -> Fuda:
        return lifecycle.update_fuda(self.store, fuda_id, actor=self.actor, **fields)

    def delete(self, fuda_id: str, *, reason: Optional[str] = None) -> Fuda:
        with self.store.transaction():
            # successors must be read before the marker flips
            freed = graph.successors(self.store, fuda_id, DependencyKind.BLOCKS)
            deleted = lifecycle.delete_fuda(self.store, fuda_id, reason=reason, actor=self.actor)
            if freed:
                self._auto_promote(Scope.only(freed))
        return deleted

    def restore(self, fuda_id: str) -> lifecycle.RestoreResult:
        with self.store.transaction():
            result = lifecycle.restore_fuda(self.store, fuda_id, actor=self.actor)
            promoted = self._auto_promote(Scope.only([fuda_id]))
            if promoted:
                result = replace(
                    result, fuda=self.store.require_fuda(fuda_id), promoted=promoted
                )
        return result

    def purge(self, fuda_id: str) -> None:
        lifecycle.purge_fuda(self.store, fuda_id, actor=self.actor)

    def history(self, fuda_id: str, *, limit: Optional[int] = None) -> list[AuditEntry]:
        self.store.require_fuda(fuda_id, allow_deleted=True)
        return self.store.audit_entries(fuda_id, limit=limit)

    # -- status -------------------------------------------------------

    def _after_transition(self, result: TransitionResult) -> TransitionResult:
        fuda_id = result.fuda.id
        if result.fuda.status is FudaStatus.DONE and result.newly_eligible:
            scope = Scope.only(result.newly_eligible)
        elif result.fuda.status is FudaStatus.BLOCKED:
            # reopened work with nothing left to wait on
            scope = Scope.only([fuda_id])
        else:
            return result
        promoted = self._auto_promote(scope)
        if not promoted:
            return result
        return replace(result, fuda=self.store.require_fuda(fuda_id), promoted=promoted)

    def transition(self, fuda_id: str, status: StatusLike) -> TransitionResult:
        with self.store.transaction():
            result = state_machine.transition(self.store, fuda_id, status, actor=self.actor)
            return self._after_transition(result)

    def force_transition(self, fuda_id: str, status: StatusLike) -> TransitionResult:
        with self.store.transaction():
            result = state_machine.force_transition(self.store, fuda_id, status, actor=self.actor)
            return self._after_transition(result)

    def start(self, fuda_id: str) -> TransitionResult:
        return self.transition(fuda_id, FudaStatus.IN_PROGRESS)

    def finish(self, fuda_id: str) -> TransitionResult:
        return self.transition(fuda_id, FudaStatus.DONE)

    def fail(self, fuda_id: str) -> TransitionResult:
        return self.transition(fuda_id, FudaStatus.FAILED)

    # -- graph --------------------------------------------------------

    def add_edge(self, from_id: str, to_id: str, kind: KindLike = DependencyKind.BLOCKS) -> Edge:
        return graph.add_edge(self.store, from_id, to_id, kind, actor=self.actor)

    def remove_edge(
        self, from_id: str, to_id: str, kind: KindLike = DependencyKind.BLOCKS
    ) -> Edge:
        with self.store.transaction():
            edge = graph.remove_edge(self.store, from_id, to_id, kind, actor=self.actor)
            if edge.kind is DependencyKind.BLOCKS:
                self._auto_promote(Scope.only([to_id]))
        return edge

    def predecessors(self, fuda_id: str, kind: KindLike) -> set[str]:
        return graph.predecessors(self.store, fuda_id, kind)

    def successors(self, fuda_id: str, kind: KindLike) -> set[str]:
        return graph.successors(self.store, fuda_id, kind)

    def blocking_predecessors(self, fuda_id: str) -> set[str]:
        return graph.blocking_predecessors(self.store, fuda_id)

    def edges(self, fuda_id: Optional[str] = None) -> list[Edge]:
        if fuda_id is None:
            return self.store.edges()
        return graph.edges_for(self.store, fuda_id)

    def dependency_tree(self, fuda_id: str, *, max_depth: int = 10) -> dict[str, list[Edge]]:
        self.store.require_fuda(fuda_id, allow_deleted=True)
        return graph.dependency_tree(self.store, fuda_id, max_depth=max_depth)

    # -- readiness ----------------------------------------------------

    def is_eligible_for_ready(self, fuda_id: str) -> bool:
        return resolver.is_eligible_for_ready(self.store, fuda_id)

    def promote_eligible(self, scope: Optional[Scope] = None) -> list[str]:
        return resolver.promote_eligible(self.store, scope, actor=self.actor)

    def blocked_on(self, fuda_id: str) -> list[Fuda]:
        return resolver.blocked_on(self.store, fuda_id)

    def ready(self, *, prd_id: Optional[str] = None, limit: Optional[int] = None) -> list[Fuda]:
        return resolver.ready_fuda(self.store, prd_id=prd_id, limit=limit)

    # -- reporting ----------------------------------------------------

    def status_breakdown(self, prd_id: Optional[str] = None) -> StatusCounts:
        return report.status_breakdown(self.store, prd_id)

    def prd_breakdown(self) -> dict[Optional[str], StatusCounts]:
        return report.prd_breakdown(self.store)

    def prd_ids(self) -> set[str]:
        if self.root is None:
            return set()
        return list_prd_ids(prds_dir(self.root))

    def orphans(self, valid_prd_ids: Optional[Iterable[str]] = None) -> list[tuple[str, int]]:
        """Orphan PRD references; defaults to the PRD files found under the project root."""
        valid = self.prd_ids() if valid_prd_ids is None else valid_prd_ids
        return report.orphans(self.store, valid)

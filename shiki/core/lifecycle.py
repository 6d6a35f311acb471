from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from shiki.core.errors import AmbiguousId, HasChildren, InvalidInput, NotFound
from shiki.core.graph.graph import check_acyclic, successors
from shiki.core.model import AuditOperation, DependencyKind, Fuda
from shiki.core.status.state_machine import demote_blocked
from shiki.core.store.db import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoreResult:
    fuda: Fuda
    # READY fuda sent back to BLOCKED because the restored fuda blocks them again
    demoted: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)


def _clean_title(title: Any, fuda_id: Optional[str] = None) -> str:
    if not isinstance(title, str) or not title.strip():
        raise InvalidInput(
            code="E_INVALID_TITLE",
            message="title is required and must be a non-empty string",
            ids=(fuda_id,) if fuda_id else (),
        )
    return title.strip()


def _clean_priority(priority: Any, fuda_id: Optional[str] = None) -> int:
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise InvalidInput(
            code="E_INVALID_PRIORITY",
            message="priority must be an integer",
            ids=(fuda_id,) if fuda_id else (),
        )
    return priority


def _clean_prd(prd_id: Any) -> Optional[str]:
    if prd_id is None:
        return None
    if not isinstance(prd_id, str):
        raise InvalidInput(code="E_INVALID_PRD", message="prd_id must be a string")
    return prd_id.strip() or None


def create_fuda(
    store: Store,
    *,
    title: str,
    description: str = "",
    prd_id: Optional[str] = None,
    priority: int = 0,
    actor: str = "engine",
) -> Fuda:
    """Create a fuda in BLOCKED status; it may still gain dependencies."""
    clean_title = _clean_title(title)
    clean_priority = _clean_priority(priority)
    clean_prd = _clean_prd(prd_id)
    with store.transaction():
        fuda = store.insert_fuda(
            title=clean_title,
            description=description or "",
            prd_id=clean_prd,
            priority=clean_priority,
        )
        store.append_audit(fuda_id=fuda.id, operation=AuditOperation.CREATE, actor=actor)
    logger.info("created %s (%s)", fuda.id, fuda.title)
    return fuda


def resolve_fuda(store: Store, ref: str, *, include_deleted: bool = False) -> Fuda:
    """Look a fuda up by exact id or by a unique id prefix ("ab12" or "sk-ab")."""
    matches = store.find_by_prefix(ref, include_deleted=include_deleted)
    if not matches:
        raise NotFound(code="E_NOT_FOUND", message=f"fuda not found: {ref}", ids=(ref,))
    if len(matches) > 1:
        raise AmbiguousId(
            code="E_AMBIGUOUS_ID",
            message=f"id prefix {ref!r} matches {len(matches)} fuda",
            ids=tuple(m.id for m in matches),
        )
    return matches[0]


def update_fuda(store: Store, fuda_id: str, *, actor: str = "engine", **fields: Any) -> Fuda:
    """Change title, description, priority or prd_id; status has its own path."""
    changes: dict[str, Any] = {}
    for name, value in fields.items():
        if name == "title":
            changes[name] = _clean_title(value, fuda_id)
        elif name == "priority":
            changes[name] = _clean_priority(value, fuda_id)
        elif name == "prd_id":
            changes[name] = _clean_prd(value)
        elif name == "description":
            changes[name] = value or ""
        else:
            raise InvalidInput(
                code="E_INVALID_FIELD",
                message=f"field cannot be updated: {name}",
                ids=(fuda_id,),
            )

    with store.transaction():
        current = store.require_fuda(fuda_id)
        changed = {k: v for k, v in changes.items() if getattr(current, k) != v}
        store.update_fields(fuda_id, changed)
        for name in sorted(changed):
            old = getattr(current, name)
            new = changed[name]
            store.append_audit(
                fuda_id=fuda_id,
                operation=AuditOperation.UPDATE,
                field=name,
                old_value=None if old is None else str(old),
                new_value=None if new is None else str(new),
                actor=actor,
            )
        updated = store.require_fuda(fuda_id)
    return updated


def delete_fuda(
    store: Store,
    fuda_id: str,
    *,
    reason: Optional[str] = None,
    actor: str = "engine",
) -> Fuda:
    """Soft delete. Edges stay for history; children are not touched."""
    with store.transaction():
        store.require_fuda(fuda_id)
        store.mark_deleted(fuda_id, deleted_by=actor, reason=reason)
        store.append_audit(
            fuda_id=fuda_id,
            operation=AuditOperation.DELETE,
            new_value=reason,
            actor=actor,
        )
        deleted = store.require_fuda(fuda_id, allow_deleted=True)
    logger.info("soft-deleted %s", fuda_id)
    return deleted


def restore_fuda(store: Store, fuda_id: str, *, actor: str = "engine") -> RestoreResult:
    """Clear the soft-delete marker, refusing if its retained edges close a BLOCKS cycle.

    Its retained BLOCKS edges count again, so READY fuda it now blocks (or the
    fuda itself, if a blocker was reopened meanwhile) go back to BLOCKED.
    """
    with store.transaction():
        current = store.require_fuda(fuda_id, allow_deleted=True)
        if not current.is_deleted:
            raise InvalidInput(
                code="E_NOT_DELETED",
                message=f"fuda is not deleted: {fuda_id}",
                ids=(fuda_id,),
            )
        store.clear_deleted(fuda_id)
        check_acyclic(store)
        store.append_audit(
            fuda_id=fuda_id,
            operation=AuditOperation.UPDATE,
            field="deleted_at",
            old_value="(deleted)",
            new_value="(restored)",
            actor=actor,
        )
        demoted = demote_blocked(
            store,
            [fuda_id, *successors(store, fuda_id, DependencyKind.BLOCKS)],
            actor=actor,
        )
        restored = store.require_fuda(fuda_id)
    logger.info("restored %s", fuda_id)
    return RestoreResult(fuda=restored, demoted=demoted)


def purge_fuda(store: Store, fuda_id: str, *, actor: str = "engine") -> None:
    """Hard removal of the row and its edges. Refused while live children remain."""
    with store.transaction():
        store.require_fuda(fuda_id, allow_deleted=True)
        children = sorted(successors(store, fuda_id, DependencyKind.PARENT_CHILD))
        if children:
            raise HasChildren(
                code="E_HAS_CHILDREN",
                message=f"cannot purge a parent with live children: {', '.join(children)}",
                ids=(fuda_id, *children),
            )
        store.append_audit(
            fuda_id=fuda_id,
            operation=AuditOperation.DELETE,
            field="hard_delete",
            actor=actor,
        )
        store.hard_delete(fuda_id)
    logger.info("purged %s", fuda_id)

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FudaStatus(str, Enum):
    BLOCKED = "blocked"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    FAILED = "failed"
    DONE = "done"


class DependencyKind(str, Enum):
    BLOCKS = "blocks"
    PARENT_CHILD = "parent-child"
    RELATED = "related"
    DISCOVERED_FROM = "discovered-from"


class AuditOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Display order for breakdowns and summaries.
STATUS_ORDER: list[FudaStatus] = [
    FudaStatus.BLOCKED,
    FudaStatus.READY,
    FudaStatus.IN_PROGRESS,
    FudaStatus.IN_REVIEW,
    FudaStatus.FAILED,
    FudaStatus.DONE,
]


@dataclass(frozen=True)
class Fuda:
    id: str
    title: str
    description: str
    status: FudaStatus
    created_at: str
    updated_at: str

    prd_id: Optional[str] = None
    priority: int = 0
    deleted_at: Optional[str] = None
    deleted_by: Optional[str] = None
    delete_reason: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "prd_id": self.prd_id,
            "priority": self.priority,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
            "deleted_by": self.deleted_by,
            "delete_reason": self.delete_reason,
        }


@dataclass(frozen=True)
class Edge:
    from_id: str
    to_id: str
    kind: DependencyKind

    def to_dict(self) -> dict:
        return {"from_id": self.from_id, "to_id": self.to_id, "kind": self.kind.value}


@dataclass(frozen=True)
class AuditEntry:
    id: int
    fuda_id: str
    operation: AuditOperation
    actor: str
    timestamp: str

    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fuda_id": self.fuda_id,
            "operation": self.operation.value,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "actor": self.actor,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StatusCounts:
    counts: dict[FudaStatus, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def get(self, status: FudaStatus) -> int:
        return self.counts.get(status, 0)

    def to_dict(self) -> dict:
        out = {s.value: self.get(s) for s in STATUS_ORDER}
        out["total"] = self.total
        return out

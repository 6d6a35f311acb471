from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FudaError(Exception):
    """Base error envelope for engine failures.

    Raise the subclasses, never this class directly. `ids` names the
    offending fuda ids so callers can render a precise message.
    """

    code: str
    message: str
    ids: tuple[str, ...] = ()

    def __str__(self) -> str:
        loc = ",".join(self.ids) if self.ids else "<shiki>"
        return f"{loc}: {self.code}: {self.message}"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "ids": list(self.ids)}


class NotFound(FudaError):
    pass


class EdgeNotFound(NotFound):
    pass


class AmbiguousId(FudaError):
    pass


class TaskDeleted(FudaError):
    pass


class InvalidStatus(FudaError):
    pass


class InvalidKind(FudaError):
    pass


class InvalidInput(FudaError):
    pass


class UnsatisfiedDependency(FudaError):
    pass


class CycleDetected(FudaError):
    pass


class SelfReference(FudaError):
    pass


class DuplicateEdge(FudaError):
    pass


class HasChildren(FudaError):
    pass


class IdExhausted(FudaError):
    pass


class StorageFailure(FudaError):
    pass


class ConfigError(FudaError, ValueError):
    pass

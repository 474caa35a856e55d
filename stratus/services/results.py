from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from stratus.backends.base import ResourceHandle
from stratus.services.constants import (
    INSTANCE_STATUS_ERROR,
    INSTANCE_STATUS_PROVISIONING,
    INSTANCE_STATUS_RUNNING,
)
from stratus.services.errors import StratusException


@dataclass(frozen=True)
class StageResult:
    stage: str
    handle: ResourceHandle | None
    outputs: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    adopted: bool = False
    completed_at: datetime = field(default_factory=datetime.utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "resource": self.handle.describe() if self.handle else None,
            "outputs": dict(self.outputs),
            "adopted": self.adopted,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True)
class ErrorDetail:
    kind: str
    message: str
    stage: str | None
    retry_safe: bool
    unresolved: tuple[ResourceHandle, ...] = ()
    exception: StratusException | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_exception(cls, exc: StratusException) -> "ErrorDetail":
        return cls(
            kind=exc.kind,
            message=str(exc),
            stage=getattr(exc, "stage", None),
            retry_safe=exc.retry_safe,
            unresolved=tuple(getattr(exc, "unresolved", ()) or ()),
            exception=exc,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
            "retry_safe": self.retry_safe,
            "unresolved": [handle.describe() for handle in self.unresolved],
        }


_ALLOWED_TRANSITIONS = {
    INSTANCE_STATUS_PROVISIONING: (INSTANCE_STATUS_RUNNING, INSTANCE_STATUS_ERROR),
    INSTANCE_STATUS_RUNNING: (),
    INSTANCE_STATUS_ERROR: (),
}


@dataclass
class ProvisionResult:
    instance_id: str
    status: str = INSTANCE_STATUS_PROVISIONING
    stages: list[StageResult] = field(default_factory=list)
    url: str | None = None
    error: ErrorDetail | None = None

    def stage(self, name: str) -> StageResult | None:
        return next((result for result in self.stages if result.stage == name), None)

    def mark_running(self, url: str) -> None:
        self._transition(INSTANCE_STATUS_RUNNING)
        self.url = url

    def mark_error(self, exc: StratusException) -> None:
        self._transition(INSTANCE_STATUS_ERROR)
        self.error = ErrorDetail.from_exception(exc)

    def raise_for_error(self) -> None:
        if self.error is not None and self.error.exception is not None:
            raise self.error.exception

    def as_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "status": self.status,
            "url": self.url,
            "stages": [result.as_dict() for result in self.stages],
            "error": self.error.as_dict() if self.error else None,
        }

    def _transition(self, target: str) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise RuntimeError(f"Illegal status transition {self.status} -> {target} for {self.instance_id}")
        self.status = target


@dataclass(frozen=True)
class DestroyResult:
    instance_id: str
    deleted: tuple[ResourceHandle, ...] = ()
    already_absent: tuple[ResourceHandle, ...] = ()
    pool_slot_released: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "deleted": [handle.describe() for handle in self.deleted],
            "already_absent": [handle.describe() for handle in self.already_absent],
            "pool_slot_released": self.pool_slot_released,
        }

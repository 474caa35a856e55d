"""Ordered provisioning pipeline with compensating rollback.

A run walks the stages in order. Each stage records every resource it brings
into existence in the :class:`RollbackLedger` as soon as the resource exists,
not when the stage finishes, so a stage that dies while waiting on its own
resource still gets that resource compensated. When any stage (or the final
verification step) fails, no further stages run and the ledger is unwound in
reverse creation order. Compensation is best-effort: every entry is attempted
and entries whose undo failed are reported back as unresolved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
from typing import Callable, Mapping, Optional, Protocol, Sequence

from stratus.backends.base import DeleteOutcome, ResourceHandle
from stratus.config import StageTimeouts
from stratus.models import ProvisionRequest
from stratus.services.constants import STAGE_HEALTH_CHECK
from stratus.services.errors import (
    RollbackPartialFailure,
    StageFailure,
    StageTimeout,
    StratusException,
)
from stratus.services.naming import ResourceNames
from stratus.services.results import StageResult
from stratus.services.waits import Deadline, ensure_not_cancelled

logger = logging.getLogger(__name__)


class StageState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


def _same_resource(left: ResourceHandle | None, right: ResourceHandle) -> bool:
    return left is not None and (left.kind, left.identifier) == (right.kind, right.identifier)


class RollbackLedger:
    """Resources known to exist for the current run, in creation order."""

    def __init__(self) -> None:
        self._entries: list[StageResult] = []

    def record(self, result: StageResult) -> None:
        if result.handle is None:
            return
        for index, entry in enumerate(self._entries):
            if entry.stage == result.stage and _same_resource(entry.handle, result.handle):
                self._entries[index] = result
                return
        self._entries.append(result)
        logger.debug("Ledger recorded %s from stage %s", result.handle.describe(), result.stage)

    def resolve(self, result: StageResult) -> None:
        self._entries = [entry for entry in self._entries if entry is not result]

    def entries(self) -> tuple[StageResult, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def unwind(self, stages: Mapping[str, "ProvisioningStage"]) -> list[ResourceHandle]:
        unresolved: list[ResourceHandle] = []
        for entry in reversed(self._entries[:]):
            assert entry.handle is not None
            stage = stages[entry.stage]
            try:
                outcome = stage.compensate(entry)
            except Exception:
                logger.exception("Compensation failed for %s (stage %s)", entry.handle.describe(), entry.stage)
                unresolved.append(entry.handle)
                continue
            logger.info(
                "Compensated %s (stage %s): %s",
                entry.handle.describe(),
                entry.stage,
                outcome.value,
            )
            self.resolve(entry)
        return unresolved


@dataclass
class StageContext:
    request: ProvisionRequest
    names: ResourceNames
    ledger: RollbackLedger = field(default_factory=RollbackLedger)
    cancel: threading.Event | None = None
    deadline: Deadline | None = None
    results: dict[str, StageResult] = field(default_factory=dict)

    @property
    def instance_id(self) -> str:
        return self.request.instance_id

    def require(self, stage: str) -> StageResult:
        if (result := self.results.get(stage)) is None:
            raise RuntimeError(f"Requires output of stage '{stage}', which has not completed")
        return result

    def track(self, result: StageResult) -> None:
        self.ledger.record(result)


class ProvisioningStage(Protocol):
    name: str

    def run(self, ctx: StageContext) -> StageResult: ...

    def compensate(self, result: StageResult) -> DeleteOutcome: ...


@dataclass
class SagaOutcome:
    state: PipelineState
    stage_states: dict[str, StageState]
    results: list[StageResult] = field(default_factory=list)
    error: Optional[StratusException] = None
    unresolved: list[ResourceHandle] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.state == PipelineState.COMPLETED


class SagaExecutor:
    def __init__(
        self,
        stages: Sequence[ProvisioningStage],
        *,
        timeouts: StageTimeouts,
        verify: Callable[[StageContext], None] | None = None,
    ) -> None:
        self._stages = list(stages)
        self._by_name = {stage.name: stage for stage in self._stages}
        self._timeouts = timeouts
        self._verify = verify

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self._stages]

    def execute(self, ctx: StageContext) -> SagaOutcome:
        outcome = SagaOutcome(
            state=PipelineState.RUNNING,
            stage_states={stage.name: StageState.PENDING for stage in self._stages},
        )
        failure: StratusException | None = None

        for stage in self._stages:
            try:
                ensure_not_cancelled(ctx.cancel)
            except StratusException as exc:
                failure = self._classify(stage.name, exc)
                break

            budget = self._timeouts.for_stage(stage.name)
            ctx.deadline = Deadline.after(budget)
            outcome.stage_states[stage.name] = StageState.RUNNING
            logger.info("Stage %s started", stage.name)
            try:
                result = stage.run(ctx)
                if ctx.deadline.expired():
                    ctx.track(result)
                    raise StageTimeout(f"Stage '{stage.name}' exceeded its {budget:.0f}s budget")
            except Exception as exc:
                outcome.stage_states[stage.name] = StageState.FAILED
                failure = self._classify(stage.name, exc)
                logger.warning("Stage %s failed: %s", stage.name, exc)
                break

            ctx.track(result)
            ctx.results[stage.name] = result
            outcome.results.append(result)
            outcome.stage_states[stage.name] = StageState.SUCCEEDED
            logger.info(
                "Stage %s succeeded%s",
                stage.name,
                " (adopted existing resource)" if result.adopted else "",
            )
        ctx.deadline = None

        if failure is None and self._verify is not None:
            try:
                self._verify(ctx)
            except Exception as exc:
                failure = self._classify(STAGE_HEALTH_CHECK, exc)
                logger.warning("Verification failed: %s", exc)

        if failure is None:
            outcome.state = PipelineState.COMPLETED
            return outcome

        logger.info("Rolling back %s resource(s)", len(ctx.ledger))
        unresolved = ctx.ledger.unwind(self._by_name)
        outcome.state = PipelineState.ROLLED_BACK
        outcome.unresolved = unresolved
        if unresolved:
            logger.error(
                "Rollback incomplete; manual cleanup required for: %s",
                ", ".join(handle.describe() for handle in unresolved),
            )
            outcome.error = RollbackPartialFailure(unresolved, cause=failure, stage=getattr(failure, "stage", None))
        else:
            logger.info("Rollback complete; instance is safe to retry")
            outcome.error = failure
        return outcome

    @staticmethod
    def _classify(stage: str, exc: BaseException) -> StratusException:
        if isinstance(exc, StageFailure):
            return exc
        if isinstance(exc, StageTimeout):
            return StageFailure(stage, exc)
        if isinstance(exc, StratusException):
            exc.stage = stage
            return exc
        return StageFailure(stage, exc)

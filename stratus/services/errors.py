from __future__ import annotations

from typing import Sequence

from stratus.backends.base import ResourceHandle


class StratusException(Exception):
    kind = "Error"
    retry_safe = True


class ValidationException(StratusException):
    """Malformed request; raised before any resource is touched."""

    kind = "ValidationError"


class NotFoundException(StratusException):
    kind = "NotFound"


class ProvisioningInProgressException(StratusException):
    kind = "ProvisioningInProgress"


class AllocationExhausted(StratusException):
    kind = "AllocationExhausted"


class OperationCancelled(StratusException):
    kind = "Cancelled"


class StageTimeout(StratusException):
    kind = "StageTimeout"


class HealthCheckTimeout(StratusException):
    kind = "HealthCheckTimeout"

    def __init__(self, url: str, attempts: int, elapsed: float) -> None:
        self.url = url
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(f"{url} did not report healthy after {attempts} attempts ({elapsed:.1f}s)")


class StageFailure(StratusException):
    kind = "StageFailure"

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage}' failed: {cause}")


class RollbackPartialFailure(StratusException):
    """Compensation left resources behind; they need manual or deferred cleanup."""

    kind = "RollbackPartialFailure"
    retry_safe = False

    def __init__(
        self,
        unresolved: Sequence[ResourceHandle],
        *,
        cause: BaseException | None = None,
        stage: str | None = None,
    ) -> None:
        self.unresolved = list(unresolved)
        self.cause = cause
        self.stage = stage
        described = ", ".join(handle.describe() for handle in self.unresolved)
        message = f"Rollback left {len(self.unresolved)} resource(s) behind: {described}"
        if cause is not None:
            message = f"{message} (after: {cause})"
        super().__init__(message)


class TeardownIncomplete(StratusException):
    kind = "TeardownIncomplete"
    retry_safe = False

    def __init__(self, instance_id: str, unresolved: Sequence[ResourceHandle]) -> None:
        self.instance_id = instance_id
        self.unresolved = list(unresolved)
        described = ", ".join(handle.describe() for handle in self.unresolved)
        super().__init__(f"Destroy of instance {instance_id} left resources behind: {described}")

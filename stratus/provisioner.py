"""Entry points for provisioning and destroying tenant instances.

:class:`Orchestrator` wires the resource providers, the shared pool allocator
and the instance registry into the staged pipeline. Surfaces (HTTP API, CLI)
obtain the process-wide instance through :func:`get_orchestrator`.
"""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
import logging
import threading
from typing import Any, Callable, Iterator, Mapping

from pydantic import ValidationError

from stratus.backends.aws_lambda import LambdaComputeBackend
from stratus.backends.base import Backends, DeleteOutcome, ResourceHandle
from stratus.backends.cloudfront import CloudFrontEdgeBackend
from stratus.backends.database import PostgresDatabaseBackend
from stratus.backends.instance_api import HttpInstanceClient
from stratus.backends.s3 import S3StorageBackend
from stratus.config import Settings
from stratus.db import SessionFactory, build_engine, init_db, session_factory_for
from stratus.logging_config import instance_log_context
from stratus.models import InstanceRead, ProvisionRequest
from stratus.services.constants import (
    INSTANCE_STATUS_RUNNING,
    RESOURCE_BUCKET,
    RESOURCE_DEDICATED_DATABASE,
    RESOURCE_DISTRIBUTION,
    RESOURCE_FUNCTION,
    RESOURCE_SHARED_DATABASE,
    STAGE_COMPUTE,
    STAGE_EDGE_ROUTING,
)
from stratus.services.environment import validate_overrides
from stratus.services.errors import (
    NotFoundException,
    ProvisioningInProgressException,
    TeardownIncomplete,
    ValidationException,
)
from stratus.services.health import HealthProber
from stratus.services.naming import RandomSource, ResourceNames, derive_resource_names, system_random
from stratus.services.pool import SharedPoolAllocator
from stratus.services.registry import InstanceRegistry, SqlInstanceRegistry
from stratus.services.results import DestroyResult, ProvisionResult, StageResult
from stratus.services.saga import SagaExecutor, StageContext
from stratus.services.stages import build_stages

logger = logging.getLogger(__name__)


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "request"
        problems.append(f"{location}: {error.get('msg')}")
    return "; ".join(problems)


def _resources_summary(results: list[StageResult]) -> dict[str, Any]:
    return {
        result.stage: {
            "resource": result.handle.describe() if result.handle else None,
            "adopted": result.adopted,
            **dict(result.outputs),
        }
        for result in results
    }


class _Teardown:
    """Bookkeeping for one destroy run."""

    def __init__(self) -> None:
        self.deleted: list[ResourceHandle] = []
        self.absent: list[ResourceHandle] = []
        self.unresolved: list[ResourceHandle] = []

    def attempt(self, handle: ResourceHandle, delete: Callable[[], DeleteOutcome]) -> bool:
        try:
            outcome = delete()
        except Exception:
            logger.exception("Failed to delete %s", handle.describe())
            self.unresolved.append(handle)
            return False
        if outcome == DeleteOutcome.NOT_FOUND:
            logger.info("%s already absent", handle.describe())
            self.absent.append(handle)
        else:
            logger.info("Deleted %s", handle.describe())
            self.deleted.append(handle)
        return True

    def lookup(self, handle: ResourceHandle, find: Callable[[], Any]) -> Any:
        try:
            return find()
        except Exception:
            logger.exception("Failed to look up %s", handle.describe())
            self.unresolved.append(handle)
            return None


class Orchestrator:
    def __init__(
        self,
        *,
        backends: Backends,
        allocator: SharedPoolAllocator,
        registry: InstanceRegistry,
        settings: Settings | None = None,
        rng: RandomSource = system_random,
        prober: HealthProber | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._backends = backends
        self._allocator = allocator
        self._registry = registry
        self._prober = prober or HealthProber(backends.instance, self._settings.health)
        self._executor = SagaExecutor(
            build_stages(backends, allocator, self._settings, rng),
            timeouts=self._settings.stage_timeouts,
            verify=self._verify_healthy,
        )
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def allocator(self) -> SharedPoolAllocator:
        return self._allocator

    @property
    def registry(self) -> InstanceRegistry:
        return self._registry

    def names_for(self, instance_id: str) -> ResourceNames:
        return derive_resource_names(instance_id, prefix=self._settings.resource_prefix)

    def provision_instance(
        self,
        request: ProvisionRequest | Mapping[str, Any],
        *,
        cancel: threading.Event | None = None,
    ) -> ProvisionResult:
        """Bring up every resource for an instance, or leave nothing behind.

        Safe to call again with the same ``instance_id``. A running instance is
        returned as it is, without touching its resources. After a failed or
        interrupted attempt, resources left behind are found by their derived
        names and adopted.

        Raises:
            ValidationException: the request is malformed; nothing was touched.
            ProvisioningInProgressException: the same instance is already being
                provisioned or destroyed in this process.

        Every other failure is reported on the returned result with status
        ``error`` after rollback.
        """
        request = self._validate(request)
        names = self.names_for(request.instance_id)
        with self._claim(request.instance_id):
            record = self._registry.begin_provisioning(request)
            if record.status == INSTANCE_STATUS_RUNNING:
                logger.info("Instance %s is already running at %s", request.instance_id, record.url)
                current = ProvisionResult(instance_id=request.instance_id)
                current.mark_running(record.url)
                return current
            logger.info(
                "Provisioning instance_id=%s tier=%s/%s key=%s",
                request.instance_id,
                request.database_tier,
                request.compute_tier,
                names.instance_key,
            )
            ctx = StageContext(request=request, names=names, cancel=cancel)
            outcome = self._executor.execute(ctx)

            result = ProvisionResult(instance_id=request.instance_id, stages=list(outcome.results))
            resources = _resources_summary(outcome.results)
            if outcome.completed:
                url = ctx.require(STAGE_EDGE_ROUTING).outputs["url"]
                result.mark_running(url)
                self._registry.mark_running(request.instance_id, url=url, resources=resources)
                logger.info("Instance %s is running at %s", request.instance_id, url)
            else:
                assert outcome.error is not None
                result.mark_error(outcome.error)
                self._registry.mark_error(request.instance_id, error=result.error, resources=resources)
                logger.warning(
                    "Provisioning of instance %s ended in error kind=%s retry_safe=%s",
                    request.instance_id,
                    result.error.kind,
                    result.error.retry_safe,
                )
            return result

    def destroy_instance(self, instance_id: str) -> DestroyResult:
        """Tear down everything an instance owns; absent resources count as done.

        Raises:
            TeardownIncomplete: one or more resources could not be removed; the
                call can be repeated.
        """
        if not instance_id:
            raise ValidationException("instance_id must not be empty")
        names = self.names_for(instance_id)
        backends = self._backends
        teardown = _Teardown()
        slot_released = False

        with self._claim(instance_id):
            logger.info("Destroying instance_id=%s key=%s", instance_id, names.instance_key)

            alias = ResourceHandle(RESOURCE_DISTRIBUTION, names.distribution_alias)
            distribution = teardown.lookup(alias, lambda: backends.edge.find_distribution(names.distribution_alias))
            if distribution is not None:
                teardown.attempt(distribution.handle, lambda: backends.edge.unpublish(distribution.handle.identifier))
            elif alias not in teardown.unresolved:
                teardown.absent.append(alias)

            teardown.attempt(
                ResourceHandle(RESOURCE_FUNCTION, names.function_name),
                lambda: backends.compute.teardown(names.function_name),
            )
            teardown.attempt(
                ResourceHandle(RESOURCE_BUCKET, names.bucket_name),
                lambda: backends.storage.delete_bucket(names.bucket_name),
            )

            placement = self._allocator.reservation_for(instance_id)
            if placement is not None:
                shared = ResourceHandle(RESOURCE_SHARED_DATABASE, placement.database_name, placement.endpoint)
                if teardown.attempt(shared, lambda: backends.database.delete(shared)):
                    slot_released = self._allocator.release(instance_id)

            dedicated = ResourceHandle(RESOURCE_DEDICATED_DATABASE, names.dedicated_identifier)
            found = teardown.lookup(dedicated, lambda: backends.database.find_dedicated(names.dedicated_identifier))
            if found is not None:
                teardown.attempt(found, lambda: backends.database.delete(found))

            if teardown.unresolved:
                raise TeardownIncomplete(instance_id, teardown.unresolved)

            self._registry.mark_destroyed(instance_id)
            logger.info(
                "Destroyed instance_id=%s deleted=%s already_absent=%s",
                instance_id,
                len(teardown.deleted),
                len(teardown.absent),
            )
            return DestroyResult(
                instance_id=instance_id,
                deleted=tuple(teardown.deleted),
                already_absent=tuple(teardown.absent),
                pool_slot_released=slot_released,
            )

    def health_check(self, instance_id: str, url: str | None = None) -> bool:
        if url is None:
            url = self._registry.get(instance_id).url
            if not url:
                raise NotFoundException(f"Instance {instance_id} has no published URL")
        healthy = self._prober.check_once(url)
        logger.info("Health check instance_id=%s url=%s healthy=%s", instance_id, url, healthy)
        return healthy

    def get_instance(self, instance_id: str) -> InstanceRead:
        return self._registry.get(instance_id)

    def _verify_healthy(self, ctx: StageContext) -> None:
        endpoint = ctx.require(STAGE_COMPUTE).outputs["endpoint"]
        self._prober.wait_until_healthy(endpoint, cancel=ctx.cancel)

    @staticmethod
    def _validate(request: ProvisionRequest | Mapping[str, Any]) -> ProvisionRequest:
        try:
            payload = request.model_dump() if isinstance(request, ProvisionRequest) else dict(request)
            validated = ProvisionRequest.model_validate(payload)
        except ValidationError as exc:
            raise ValidationException(_format_validation_error(exc)) from exc
        validate_overrides(validated.environment)
        return validated

    @contextmanager
    def _claim(self, instance_id: str) -> Iterator[None]:
        with self._in_flight_lock:
            if instance_id in self._in_flight:
                raise ProvisioningInProgressException(f"Instance {instance_id} has an operation in progress")
            self._in_flight.add(instance_id)
        try:
            with instance_log_context(instance_id):
                yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(instance_id)


def build_backends(settings: Settings) -> Backends:
    return Backends(
        database=PostgresDatabaseBackend.from_settings(settings),
        storage=S3StorageBackend.from_settings(settings),
        compute=LambdaComputeBackend.from_settings(settings),
        edge=CloudFrontEdgeBackend.from_settings(settings),
        instance=HttpInstanceClient(),
    )


def build_orchestrator(
    settings: Settings,
    *,
    session_factory: SessionFactory | None = None,
    backends: Backends | None = None,
) -> Orchestrator:
    if session_factory is None:
        engine = build_engine(settings.database_url)
        init_db(engine)
        session_factory = session_factory_for(engine)
    return Orchestrator(
        backends=backends or build_backends(settings),
        allocator=SharedPoolAllocator(session_factory),
        registry=SqlInstanceRegistry(session_factory),
        settings=settings,
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    return build_orchestrator(Settings.from_env())

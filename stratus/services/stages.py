from __future__ import annotations

from dataclasses import replace
import logging

from stratus.backends.base import (
    AdapterError,
    Backends,
    ComputeBackend,
    DatabaseBackend,
    DatabaseCredentials,
    DedicatedDatabaseSpec,
    DeleteOutcome,
    EdgeRoutingBackend,
    InstanceClient,
    PollStatus,
    ResourceHandle,
    StorageBackend,
)
from stratus.config import Settings
from stratus.services.constants import (
    COMPUTE_TIER_MEMORY_MB,
    DATABASE_TIER_SHARED,
    RESOURCE_SHARED_DATABASE,
    STAGE_COMPUTE,
    STAGE_DATABASE,
    STAGE_EDGE_ROUTING,
    STAGE_INITIALIZE,
    STAGE_STORAGE,
)
from stratus.services.environment import merge_environment
from stratus.services.naming import RandomSource, generate_secret, instance_hostname
from stratus.services.pool import SharedPoolAllocator
from stratus.services.results import StageResult
from stratus.services.saga import ProvisioningStage, StageContext
from stratus.services.waits import Deadline, poll_until

logger = logging.getLogger(__name__)

DATABASE_PASSWORD_LENGTH = 32
JWT_SECRET_LENGTH = 64
DEDICATED_MIN_STORAGE_GB = 20
APP_PORT = "8080"


def _stage_deadline(ctx: StageContext, settings: Settings, stage: str) -> Deadline:
    if ctx.deadline is not None:
        return ctx.deadline
    return Deadline.after(settings.stage_timeouts.for_stage(stage))


def public_url(ctx: StageContext, settings: Settings) -> str:
    return f"https://{instance_hostname(ctx.request.subdomain, settings.base_domain)}"


class DatabaseStage:
    """Creates or adopts the tenant database on the tier the request asks for."""

    name = STAGE_DATABASE

    def __init__(
        self,
        database: DatabaseBackend,
        allocator: SharedPoolAllocator,
        settings: Settings,
        rng: RandomSource,
    ) -> None:
        self._database = database
        self._allocator = allocator
        self._settings = settings
        self._rng = rng

    def run(self, ctx: StageContext) -> StageResult:
        password = generate_secret(DATABASE_PASSWORD_LENGTH, rng=self._rng)
        if ctx.request.database_tier == DATABASE_TIER_SHARED:
            return self._run_shared(ctx, password)
        return self._run_dedicated(ctx, password)

    def _run_shared(self, ctx: StageContext, password: str) -> StageResult:
        names = ctx.names
        placement = self._allocator.reserve(ctx.instance_id, database_name=names.database_name)
        # The slot is held from here on; the ledger entry releases it even if
        # the create below fails half way.
        planned = ResourceHandle(RESOURCE_SHARED_DATABASE, names.database_name, placement.endpoint)
        ctx.track(self._result(ctx, planned, placement_member=placement.member_id))

        existing = self._database.find_shared(placement, names.database_name)
        if existing is not None:
            logger.info("Adopting shared database %s", existing.describe())
            creds = self._database.reset_password(
                existing, database=names.database_name, user=names.database_user, password=password
            )
        else:
            creds = self._database.create_shared(placement, names.database_name, names.database_user, password)
        return self._result(
            ctx,
            creds.handle,
            creds=creds,
            placement_member=placement.member_id,
            adopted=existing is not None,
        )

    def _run_dedicated(self, ctx: StageContext, password: str) -> StageResult:
        names = ctx.names
        existing = self._database.find_dedicated(names.dedicated_identifier)
        creds: DatabaseCredentials | None = None
        if existing is not None:
            logger.info("Adopting dedicated database %s", existing.describe())
            ctx.track(self._result(ctx, existing))
            poll_handle = existing.identifier
        else:
            spec = DedicatedDatabaseSpec(
                identifier=names.dedicated_identifier,
                database=names.database_name,
                master_user=names.database_user,
                master_password=password,
                allocated_storage_gb=max(ctx.request.database_quota_gb, DEDICATED_MIN_STORAGE_GB),
                instance_class=self._settings.dedicated_db_class,
                tags={"instance_id": ctx.instance_id, "owner_id": ctx.request.owner_id},
            )
            creds, poll_handle = self._database.create_dedicated(spec)
            ctx.track(self._result(ctx, creds.handle))

        def _ready() -> PollStatus | None:
            status = self._database.poll_ready(poll_handle)
            return status if status.ready else None

        outcome = poll_until(
            _ready,
            description=f"dedicated database {names.dedicated_identifier}",
            deadline=_stage_deadline(ctx, self._settings, self.name),
            initial_interval=self._settings.dedicated_poll_interval,
            multiplier=1.0,
            cancel=ctx.cancel,
        )
        if creds is None:
            # RDS refuses credential changes until the instance is available.
            creds = self._database.reset_password(
                existing, database=names.database_name, user=names.database_user, password=password
            )
        if outcome.value.host:
            creds = replace(creds, host=outcome.value.host)
        return self._result(ctx, creds.handle, creds=creds, adopted=existing is not None)

    def _result(
        self,
        ctx: StageContext,
        handle: ResourceHandle,
        *,
        creds: DatabaseCredentials | None = None,
        placement_member: str | None = None,
        adopted: bool = False,
    ) -> StageResult:
        outputs = {"instance_id": ctx.instance_id, "tier": ctx.request.database_tier}
        secrets: dict[str, str] = {}
        if placement_member is not None:
            outputs["pool_member"] = placement_member
        if creds is not None:
            outputs.update(
                host=creds.host or "",
                port=str(creds.port),
                database=creds.database,
                user=creds.user,
            )
            secrets = {"password": creds.password, "url": creds.url()}
        return StageResult(stage=self.name, handle=handle, outputs=outputs, secrets=secrets, adopted=adopted)

    def compensate(self, result: StageResult) -> DeleteOutcome:
        assert result.handle is not None
        outcome = self._database.delete(result.handle)
        if result.handle.kind == RESOURCE_SHARED_DATABASE:
            self._allocator.release(result.outputs["instance_id"])
        return outcome


class StorageStage:
    name = STAGE_STORAGE

    def __init__(self, storage: StorageBackend, settings: Settings) -> None:
        self._storage = storage
        self._settings = settings

    def run(self, ctx: StageContext) -> StageResult:
        ctx.require(STAGE_DATABASE)
        existing = self._storage.find_bucket(ctx.names.bucket_name)
        if existing is not None:
            logger.info("Adopting bucket %s; issuing a fresh access key", existing.identifier)
            ctx.track(StageResult(stage=self.name, handle=existing))
            access_key = self._storage.issue_access_key(existing.identifier)
            handle = existing
        else:
            bucket = self._storage.create_bucket(ctx.names.bucket_name)
            ctx.track(StageResult(stage=self.name, handle=bucket.handle))
            access_key = bucket.access_key
            handle = bucket.handle

        return StageResult(
            stage=self.name,
            handle=handle,
            outputs={
                "bucket": handle.identifier,
                "endpoint": self._settings.storage_endpoint_url or "",
                "region": self._settings.storage_region or self._settings.aws_region,
                "access_key_id": access_key.key_id,
                "quota_gb": str(ctx.request.storage_quota_gb),
            },
            secrets={"secret_access_key": access_key.secret},
            adopted=existing is not None,
        )

    def compensate(self, result: StageResult) -> DeleteOutcome:
        assert result.handle is not None
        return self._storage.delete_bucket(result.handle.identifier)


class ComputeStage:
    name = STAGE_COMPUTE

    def __init__(self, compute: ComputeBackend, settings: Settings, rng: RandomSource) -> None:
        self._compute = compute
        self._settings = settings
        self._rng = rng

    def system_environment(self, ctx: StageContext) -> dict[str, str]:
        database = ctx.require(STAGE_DATABASE)
        storage = ctx.require(STAGE_STORAGE)
        return {
            "DATABASE_URL": database.secrets["url"],
            "S3_ENDPOINT": storage.outputs["endpoint"],
            "S3_BUCKET": storage.outputs["bucket"],
            "S3_REGION": storage.outputs["region"],
            "S3_ACCESS_KEY_ID": storage.outputs["access_key_id"],
            "S3_SECRET_ACCESS_KEY": storage.secrets["secret_access_key"],
            "JWT_SECRET": generate_secret(JWT_SECRET_LENGTH, rng=self._rng),
            "PORT": APP_PORT,
            "INSTANCE_ID": ctx.instance_id,
            "INSTANCE_URL": public_url(ctx, self._settings),
        }

    def run(self, ctx: StageContext) -> StageResult:
        env = merge_environment(self.system_environment(ctx), ctx.request.environment)
        version = ctx.request.app_version or self._settings.default_app_version
        memory_mb = COMPUTE_TIER_MEMORY_MB[ctx.request.compute_tier]

        existing = self._compute.find_function(ctx.names.function_name)
        if existing is not None:
            logger.info("Updating existing function %s", existing.handle.identifier)
            ctx.track(StageResult(stage=self.name, handle=existing.handle))
            deployment = self._compute.update(existing, env, version)
        else:
            deployment = self._compute.deploy(ctx.names.function_name, env, version, memory_mb=memory_mb)
        ctx.track(StageResult(stage=self.name, handle=deployment.handle))

        return StageResult(
            stage=self.name,
            handle=deployment.handle,
            outputs={
                "function": deployment.handle.identifier,
                "endpoint": deployment.endpoint_url,
                "artifact_version": version,
                "memory_mb": str(memory_mb),
            },
            adopted=existing is not None,
        )

    def compensate(self, result: StageResult) -> DeleteOutcome:
        assert result.handle is not None
        return self._compute.teardown(result.handle.identifier)


class EdgeRoutingStage:
    name = STAGE_EDGE_ROUTING

    def __init__(self, edge: EdgeRoutingBackend, settings: Settings) -> None:
        self._edge = edge
        self._settings = settings

    def run(self, ctx: StageContext) -> StageResult:
        origin = ctx.require(STAGE_COMPUTE).outputs["endpoint"]
        hostname = instance_hostname(ctx.request.subdomain, self._settings.base_domain)

        distribution = self._edge.find_distribution(ctx.names.distribution_alias)
        adopted = distribution is not None
        if distribution is None:
            distribution = self._edge.publish(ctx.names.distribution_alias, origin, hostname=hostname)
        ctx.track(StageResult(stage=self.name, handle=distribution.handle))
        # A recreated function gets a new URL; an adopted distribution may still forward to the old one.
        if adopted and not distribution.routes_to(origin):
            logger.info(
                "Distribution %s forwards to %s; repointing it at %s",
                distribution.handle.identifier,
                distribution.origin_domain,
                origin,
            )
            distribution = self._edge.update_origin(distribution.handle.identifier, origin)

        return StageResult(
            stage=self.name,
            handle=distribution.handle,
            outputs={
                "domain": distribution.domain,
                "hostname": hostname,
                "url": public_url(ctx, self._settings),
            },
            adopted=adopted,
        )

    def compensate(self, result: StageResult) -> DeleteOutcome:
        assert result.handle is not None
        return self._edge.unpublish(result.handle.identifier)


class InitializeStage:
    """Creates the first admin account inside the running application."""

    name = STAGE_INITIALIZE

    def __init__(self, instance: InstanceClient, settings: Settings, *, retry_interval: float = 2.0) -> None:
        self._instance = instance
        self._settings = settings
        self._retry_interval = retry_interval

    def run(self, ctx: StageContext) -> StageResult:
        endpoint = ctx.require(STAGE_COMPUTE).outputs["endpoint"]

        def _attempt() -> bool | None:
            try:
                return self._instance.initialize(
                    endpoint,
                    admin_email=ctx.request.admin_email,
                    admin_password=ctx.request.admin_password,
                )
            except AdapterError as exc:
                if not exc.retryable:
                    raise
                logger.info("Instance not ready for setup yet: %s", exc)
                return None

        outcome = poll_until(
            _attempt,
            description=f"setup of {endpoint}",
            deadline=_stage_deadline(ctx, self._settings, self.name),
            initial_interval=self._retry_interval,
            max_interval=self._retry_interval * 4,
            cancel=ctx.cancel,
        )
        created = outcome.value
        if not created:
            logger.info("Admin account already present; leaving it untouched")
        return StageResult(
            stage=self.name,
            handle=None,
            outputs={"admin_email": ctx.request.admin_email, "admin_created": "true" if created else "false"},
            adopted=not created,
        )

    def compensate(self, result: StageResult) -> DeleteOutcome:
        return DeleteOutcome.NOT_FOUND


def build_stages(
    backends: Backends,
    allocator: SharedPoolAllocator,
    settings: Settings,
    rng: RandomSource,
) -> list[ProvisioningStage]:
    return [
        DatabaseStage(backends.database, allocator, settings, rng),
        StorageStage(backends.storage, settings),
        ComputeStage(backends.compute, settings, rng),
        EdgeRoutingStage(backends.edge, settings),
        InitializeStage(backends.instance, settings),
    ]

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from stratus.backends.base import (
    AccessKey,
    AdapterError,
    Backends,
    BucketResult,
    DatabaseCredentials,
    DedicatedDatabaseSpec,
    DeleteOutcome,
    Distribution,
    FunctionDeployment,
    PollStatus,
    PoolPlacement,
    ResourceHandle,
    origin_host,
)
from stratus.services.constants import (
    RESOURCE_BUCKET,
    RESOURCE_DEDICATED_DATABASE,
    RESOURCE_DISTRIBUTION,
    RESOURCE_FUNCTION,
    RESOURCE_SHARED_DATABASE,
)


class _Recorder:
    """Call log shared by all fakes, plus per-operation failure injection.

    ``failures[op]`` may be an exception (raised on every call) or a callable
    run before the operation, e.g. to sleep or to set a cancel event.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, BaseException | Callable[[], None]] = {}
        # Shared across fakes by FakeBackends to observe cross-provider ordering.
        self.journal: list[str] = []

    def _record(self, op: str, **kwargs: Any) -> None:
        self.calls.append((op, kwargs))
        self.journal.append(op)
        hook = self.failures.get(op)
        if isinstance(hook, BaseException):
            raise hook
        if hook is not None:
            hook()

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]


class FakeDatabaseBackend(_Recorder):
    def __init__(self, *, polls_before_ready: int = 0) -> None:
        super().__init__()
        self.shared: dict[tuple[str, str], DatabaseCredentials] = {}
        self.dedicated: dict[str, dict[str, Any]] = {}
        self.polls_before_ready = polls_before_ready

    def find_shared(self, placement: PoolPlacement, name: str) -> ResourceHandle | None:
        self._record("find_shared", endpoint=placement.endpoint, name=name)
        creds = self.shared.get((placement.endpoint, name))
        return creds.handle if creds else None

    def create_shared(self, placement: PoolPlacement, name: str, user: str, password: str) -> DatabaseCredentials:
        self._record("create_shared", endpoint=placement.endpoint, name=name, user=user)
        creds = DatabaseCredentials(
            handle=ResourceHandle(RESOURCE_SHARED_DATABASE, name, placement.endpoint),
            host=placement.endpoint.partition(":")[0],
            port=5432,
            database=name,
            user=user,
            password=password,
        )
        self.shared[(placement.endpoint, name)] = creds
        return creds

    def find_dedicated(self, identifier: str) -> ResourceHandle | None:
        self._record("find_dedicated", identifier=identifier)
        if identifier in self.dedicated:
            return ResourceHandle(RESOURCE_DEDICATED_DATABASE, identifier)
        return None

    def create_dedicated(self, spec: DedicatedDatabaseSpec) -> tuple[DatabaseCredentials, str]:
        self._record("create_dedicated", identifier=spec.identifier, storage=spec.allocated_storage_gb)
        self.dedicated[spec.identifier] = {"spec": spec, "polls": 0}
        creds = DatabaseCredentials(
            handle=ResourceHandle(RESOURCE_DEDICATED_DATABASE, spec.identifier),
            host=None,
            port=5432,
            database=spec.database,
            user=spec.master_user,
            password=spec.master_password,
        )
        return creds, spec.identifier

    def poll_ready(self, poll_handle: str) -> PollStatus:
        self._record("poll_ready", poll_handle=poll_handle)
        entry = self.dedicated[poll_handle]
        entry["polls"] += 1
        if entry["polls"] > self.polls_before_ready:
            return PollStatus(ready=True, host=f"{poll_handle}.rds.test", state="available")
        return PollStatus(ready=False, state="creating")

    def reset_password(
        self, handle: ResourceHandle, *, database: str, user: str, password: str
    ) -> DatabaseCredentials:
        self._record("reset_password", handle=handle, user=user)
        entry = self.dedicated.get(handle.identifier) if handle.kind == RESOURCE_DEDICATED_DATABASE else None
        if entry is not None and entry["polls"] <= self.polls_before_ready:
            raise AdapterError(
                f"Database instance {handle.identifier} is not in available state",
                code="InvalidDBInstanceState",
            )
        creds = DatabaseCredentials(
            handle=handle,
            host=handle.location,
            port=5432,
            database=database,
            user=user,
            password=password,
        )
        if handle.kind == RESOURCE_SHARED_DATABASE:
            self.shared[(handle.location, handle.identifier)] = creds
        return creds

    def delete(self, handle: ResourceHandle) -> DeleteOutcome:
        self._record("delete", handle=handle)
        if handle.kind == RESOURCE_SHARED_DATABASE:
            found = self.shared.pop((handle.location, handle.identifier), None)
        else:
            found = self.dedicated.pop(handle.identifier, None)
        return DeleteOutcome.DELETED if found is not None else DeleteOutcome.NOT_FOUND


class FakeStorageBackend(_Recorder):
    def __init__(self) -> None:
        super().__init__()
        self.buckets: dict[str, list[AccessKey]] = {}
        self._issued = 0

    def _new_key(self, bucket_id: str) -> AccessKey:
        self._issued += 1
        key = AccessKey(key_id=f"AKID{self._issued:04d}", secret=f"secret-{bucket_id}-{self._issued}")
        self.buckets[bucket_id] = [key]
        return key

    def find_bucket(self, name: str) -> ResourceHandle | None:
        self._record("find_bucket", name=name)
        return ResourceHandle(RESOURCE_BUCKET, name, "test-region") if name in self.buckets else None

    def create_bucket(self, name: str) -> BucketResult:
        self._record("create_bucket", name=name)
        key = self._new_key(name)
        return BucketResult(handle=ResourceHandle(RESOURCE_BUCKET, name, "test-region"), access_key=key)

    def issue_access_key(self, bucket_id: str) -> AccessKey:
        self._record("issue_access_key", bucket_id=bucket_id)
        return self._new_key(bucket_id)

    def delete_bucket(self, bucket_id: str) -> DeleteOutcome:
        self._record("delete_bucket", bucket_id=bucket_id)
        if self.buckets.pop(bucket_id, None) is None:
            return DeleteOutcome.NOT_FOUND
        return DeleteOutcome.DELETED


class FakeComputeBackend(_Recorder):
    def __init__(self) -> None:
        super().__init__()
        self.functions: dict[str, dict[str, Any]] = {}
        # Like a real function URL, the endpoint changes every time a function is created.
        self._created: dict[str, int] = {}

    @staticmethod
    def _deployment(name: str, endpoint_url: str) -> FunctionDeployment:
        return FunctionDeployment(
            handle=ResourceHandle(RESOURCE_FUNCTION, name, f"arn:aws:lambda:test:000000000000:function:{name}"),
            endpoint_url=endpoint_url,
        )

    def find_function(self, name: str) -> FunctionDeployment | None:
        self._record("find_function", name=name)
        entry = self.functions.get(name)
        return self._deployment(name, entry["endpoint"]) if entry else None

    def deploy(
        self, name: str, env: Mapping[str, str], artifact_version: str, *, memory_mb: int
    ) -> FunctionDeployment:
        self._record("deploy", name=name, version=artifact_version, memory_mb=memory_mb)
        created = self._created[name] = self._created.get(name, 0) + 1
        host = name if created == 1 else f"{name}-{created}"
        endpoint = f"https://{host}.lambda-url.test"
        self.functions[name] = {"env": dict(env), "version": artifact_version, "memory_mb": memory_mb, "endpoint": endpoint}
        return self._deployment(name, endpoint)

    def update(
        self, deployment: FunctionDeployment, env: Mapping[str, str], artifact_version: str
    ) -> FunctionDeployment:
        name = deployment.handle.identifier
        self._record("update", name=name, version=artifact_version)
        self.functions[name].update(env=dict(env), version=artifact_version)
        return deployment

    def teardown(self, function_handle: str) -> DeleteOutcome:
        self._record("teardown", name=function_handle)
        if self.functions.pop(function_handle, None) is None:
            return DeleteOutcome.NOT_FOUND
        return DeleteOutcome.DELETED


class FakeEdgeBackend(_Recorder):
    def __init__(self) -> None:
        super().__init__()
        self.distributions: dict[str, dict[str, str]] = {}

    @staticmethod
    def _distribution(alias: str, entry: dict[str, str]) -> Distribution:
        return Distribution(
            handle=ResourceHandle(RESOURCE_DISTRIBUTION, entry["id"], alias),
            domain=f"{entry['id'].lower()}.cloudfront.test",
            origin_domain=origin_host(entry["origin"]),
        )

    def find_distribution(self, alias: str) -> Distribution | None:
        self._record("find_distribution", alias=alias)
        entry = self.distributions.get(alias)
        return self._distribution(alias, entry) if entry else None

    def publish(self, alias: str, origin_url: str, *, hostname: str) -> Distribution:
        self._record("publish", alias=alias, origin_url=origin_url, hostname=hostname)
        entry = {"id": f"E{len(self.distributions) + 1:04d}{alias[-4:].upper()}", "origin": origin_url, "hostname": hostname}
        self.distributions[alias] = entry
        return self._distribution(alias, entry)

    def update_origin(self, distribution_handle: str, origin_url: str) -> Distribution:
        self._record("update_origin", distribution_id=distribution_handle, origin_url=origin_url)
        for alias, entry in self.distributions.items():
            if entry["id"] == distribution_handle:
                entry["origin"] = origin_url
                return self._distribution(alias, entry)
        raise AdapterError(f"No distribution {distribution_handle}", code="NoSuchDistribution")

    def unpublish(self, distribution_handle: str) -> DeleteOutcome:
        self._record("unpublish", distribution_id=distribution_handle)
        for alias, entry in list(self.distributions.items()):
            if entry["id"] == distribution_handle:
                del self.distributions[alias]
                return DeleteOutcome.DELETED
        return DeleteOutcome.NOT_FOUND


class FakeInstanceClient(_Recorder):
    def __init__(self) -> None:
        super().__init__()
        self.initialized: set[str] = set()
        self.healthy = True
        # Consumed first, one answer per probe; falls back to ``healthy``.
        self.health_answers: list[bool] = []

    def initialize(self, endpoint: str, *, admin_email: str, admin_password: str) -> bool:
        self._record("initialize", endpoint=endpoint, admin_email=admin_email)
        if endpoint in self.initialized:
            return False
        self.initialized.add(endpoint)
        return True

    def is_healthy(self, endpoint: str) -> bool:
        self._record("is_healthy", endpoint=endpoint)
        if self.health_answers:
            return self.health_answers.pop(0)
        return self.healthy


@dataclass
class FakeBackends:
    database: FakeDatabaseBackend = field(default_factory=FakeDatabaseBackend)
    storage: FakeStorageBackend = field(default_factory=FakeStorageBackend)
    compute: FakeComputeBackend = field(default_factory=FakeComputeBackend)
    edge: FakeEdgeBackend = field(default_factory=FakeEdgeBackend)
    instance: FakeInstanceClient = field(default_factory=FakeInstanceClient)
    journal: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        for fake in (self.database, self.storage, self.compute, self.edge, self.instance):
            fake.journal = self.journal

    def as_backends(self) -> Backends:
        return Backends(
            database=self.database,
            storage=self.storage,
            compute=self.compute,
            edge=self.edge,
            instance=self.instance,
        )

    def live_resources(self) -> dict[str, int]:
        return {
            "databases": len(self.database.shared) + len(self.database.dedicated),
            "buckets": len(self.storage.buckets),
            "functions": len(self.compute.functions),
            "distributions": len(self.edge.distributions),
        }

"""Contracts between the orchestrator and the resource providers.

Every provider is consumed through a ``Protocol`` so the orchestrator never
depends on a concrete SDK. Real implementations live next to this module; the
test doubles live in ``tests/backend_fakes.py``.

Conventions shared by all providers:

* ``find_*`` returns ``None`` when the deterministically named resource does
  not exist, which is how stages detect resources left by an earlier attempt.
* Deletes return :class:`DeleteOutcome` and report an absent resource as
  ``NOT_FOUND`` instead of raising.
* Any other provider failure raises :class:`AdapterError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Mapping, Protocol
from urllib.parse import urlparse

from sqlalchemy.engine import URL

ErrorCategory = Literal["retryable", "fatal"]

_RETRYABLE_PATTERNS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "throttl",
    "too many requests",
    "rate exceeded",
    "slow down",
    "service unavailable",
    "internal error",
)


class DeleteOutcome(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not-found"


@dataclass(frozen=True)
class ResourceHandle:
    kind: str
    identifier: str
    location: str | None = None

    def describe(self) -> str:
        if self.location:
            return f"{self.kind}:{self.identifier}@{self.location}"
        return f"{self.kind}:{self.identifier}"


@dataclass(frozen=True)
class PoolPlacement:
    member_id: str
    endpoint: str
    database_name: str


@dataclass(frozen=True)
class DatabaseCredentials:
    handle: ResourceHandle
    host: str | None
    port: int
    database: str
    user: str
    password: str

    def url(self) -> str:
        return URL.create(
            "postgresql",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        ).render_as_string(hide_password=False)


@dataclass(frozen=True)
class DedicatedDatabaseSpec:
    identifier: str
    database: str
    master_user: str
    master_password: str
    allocated_storage_gb: int
    instance_class: str
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PollStatus:
    ready: bool
    host: str | None = None
    state: str | None = None


@dataclass(frozen=True)
class AccessKey:
    key_id: str
    secret: str


@dataclass(frozen=True)
class BucketResult:
    handle: ResourceHandle
    access_key: AccessKey

    @property
    def bucket_id(self) -> str:
        return self.handle.identifier


@dataclass(frozen=True)
class FunctionDeployment:
    handle: ResourceHandle
    endpoint_url: str


@dataclass(frozen=True)
class Distribution:
    handle: ResourceHandle
    domain: str
    # Host name of the origin the distribution forwards to, when known.
    origin_domain: str | None = None

    def routes_to(self, origin_url: str) -> bool:
        return self.origin_domain == origin_host(origin_url)


def origin_host(origin_url: str) -> str:
    parsed = urlparse(origin_url)
    return parsed.netloc or parsed.path.split("/")[0]


class AdapterError(RuntimeError):
    """A provider call failed for a reason other than 'resource absent'."""

    def __init__(self, message: str, *, category: ErrorCategory = "fatal", code: str | None = None) -> None:
        self.category = category
        self.code = code
        detail = f" (category={category}, code={code})" if code else f" (category={category})"
        super().__init__(f"{message}{detail}")

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"


def classify_error(*, text: str, status: int | None = None) -> ErrorCategory:
    if status is not None and (status >= 500 or status == 429):
        return "retryable"
    lowered = text.lower()
    if any(pattern in lowered for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    return "fatal"


class DatabaseBackend(Protocol):
    def find_shared(self, placement: PoolPlacement, name: str) -> ResourceHandle | None: ...

    def create_shared(
        self, placement: PoolPlacement, name: str, user: str, password: str
    ) -> DatabaseCredentials: ...

    def find_dedicated(self, identifier: str) -> ResourceHandle | None: ...

    def create_dedicated(self, spec: DedicatedDatabaseSpec) -> tuple[DatabaseCredentials, str]: ...

    def poll_ready(self, poll_handle: str) -> PollStatus: ...

    def reset_password(
        self, handle: ResourceHandle, *, database: str, user: str, password: str
    ) -> DatabaseCredentials: ...

    def delete(self, handle: ResourceHandle) -> DeleteOutcome: ...


class StorageBackend(Protocol):
    def find_bucket(self, name: str) -> ResourceHandle | None: ...

    def create_bucket(self, name: str) -> BucketResult: ...

    def issue_access_key(self, bucket_id: str) -> AccessKey: ...

    def delete_bucket(self, bucket_id: str) -> DeleteOutcome: ...


class ComputeBackend(Protocol):
    def find_function(self, name: str) -> FunctionDeployment | None: ...

    def deploy(
        self, name: str, env: Mapping[str, str], artifact_version: str, *, memory_mb: int
    ) -> FunctionDeployment: ...

    def update(
        self, deployment: FunctionDeployment, env: Mapping[str, str], artifact_version: str
    ) -> FunctionDeployment: ...

    def teardown(self, function_handle: str) -> DeleteOutcome: ...


class EdgeRoutingBackend(Protocol):
    def find_distribution(self, alias: str) -> Distribution | None: ...

    def publish(self, alias: str, origin_url: str, *, hostname: str) -> Distribution: ...

    def update_origin(self, distribution_handle: str, origin_url: str) -> Distribution: ...

    def unpublish(self, distribution_handle: str) -> DeleteOutcome: ...


class InstanceClient(Protocol):
    def initialize(self, endpoint: str, *, admin_email: str, admin_password: str) -> bool: ...

    def is_healthy(self, endpoint: str) -> bool: ...


@dataclass(frozen=True)
class Backends:
    database: DatabaseBackend
    storage: StorageBackend
    compute: ComputeBackend
    edge: EdgeRoutingBackend
    instance: InstanceClient

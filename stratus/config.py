from __future__ import annotations

from dataclasses import dataclass, field
import os

_DEFAULT_DATABASE_URL = "sqlite:///./stratus.db"


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class StageTimeouts:
    """Per-stage wall-clock budgets in seconds."""

    database: float = 900.0
    storage: float = 120.0
    compute: float = 300.0
    edge_routing: float = 1800.0
    initialize: float = 120.0

    def for_stage(self, stage: str) -> float:
        return float(getattr(self, stage))


@dataclass(frozen=True)
class HealthProbeSettings:
    initial_delay: float = 1.0
    max_delay: float = 8.0
    budget: float = 45.0


@dataclass(frozen=True)
class Settings:
    database_url: str = _DEFAULT_DATABASE_URL
    resource_prefix: str = "stratus"
    base_domain: str = "stratus.cloud"
    default_app_version: str = "latest"

    aws_region: str = "us-east-1"
    artifact_bucket: str = "stratus-artifacts"
    lambda_role_arn: str | None = None
    storage_endpoint_url: str | None = None
    storage_region: str | None = None
    certificate_arn: str | None = None

    shared_db_admin_user: str = "postgres"
    shared_db_admin_password: str | None = None
    shared_db_port: int = 5432
    dedicated_db_class: str = "db.t3.small"
    dedicated_poll_interval: float = 15.0

    stage_timeouts: StageTimeouts = field(default_factory=StageTimeouts)
    health: HealthProbeSettings = field(default_factory=HealthProbeSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        timeouts = StageTimeouts(
            database=_env_float("STRATUS_TIMEOUT_DATABASE", defaults.stage_timeouts.database),
            storage=_env_float("STRATUS_TIMEOUT_STORAGE", defaults.stage_timeouts.storage),
            compute=_env_float("STRATUS_TIMEOUT_COMPUTE", defaults.stage_timeouts.compute),
            edge_routing=_env_float("STRATUS_TIMEOUT_EDGE_ROUTING", defaults.stage_timeouts.edge_routing),
            initialize=_env_float("STRATUS_TIMEOUT_INITIALIZE", defaults.stage_timeouts.initialize),
        )
        health = HealthProbeSettings(
            initial_delay=_env_float("STRATUS_HEALTH_INITIAL_DELAY", defaults.health.initial_delay),
            max_delay=_env_float("STRATUS_HEALTH_MAX_DELAY", defaults.health.max_delay),
            budget=_env_float("STRATUS_HEALTH_BUDGET", defaults.health.budget),
        )
        return cls(
            database_url=_env_str("DATABASE_URL", defaults.database_url),
            resource_prefix=_env_str("STRATUS_RESOURCE_PREFIX", defaults.resource_prefix),
            base_domain=_env_str("STRATUS_BASE_DOMAIN", defaults.base_domain),
            default_app_version=_env_str("STRATUS_DEFAULT_APP_VERSION", defaults.default_app_version),
            aws_region=_env_str("STRATUS_AWS_REGION", defaults.aws_region),
            artifact_bucket=_env_str("STRATUS_ARTIFACT_BUCKET", defaults.artifact_bucket),
            lambda_role_arn=_env_str("STRATUS_LAMBDA_ROLE_ARN"),
            storage_endpoint_url=_env_str("STRATUS_STORAGE_ENDPOINT_URL"),
            storage_region=_env_str("STRATUS_STORAGE_REGION"),
            certificate_arn=_env_str("STRATUS_CERTIFICATE_ARN"),
            shared_db_admin_user=_env_str("STRATUS_SHARED_DB_ADMIN_USER", defaults.shared_db_admin_user),
            shared_db_admin_password=_env_str("STRATUS_SHARED_DB_ADMIN_PASSWORD"),
            shared_db_port=_env_int("STRATUS_SHARED_DB_PORT", defaults.shared_db_port),
            dedicated_db_class=_env_str("STRATUS_DEDICATED_DB_CLASS", defaults.dedicated_db_class),
            dedicated_poll_interval=_env_float("STRATUS_DEDICATED_POLL_INTERVAL", defaults.dedicated_poll_interval),
            stage_timeouts=timeouts,
            health=health,
        )

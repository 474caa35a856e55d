from __future__ import annotations

INSTANCE_STATUS_PROVISIONING = "provisioning"
INSTANCE_STATUS_RUNNING = "running"
INSTANCE_STATUS_ERROR = "error"
INSTANCE_STATUS_DESTROYED = "destroyed"

DATABASE_TIER_SHARED = "shared"

STAGE_DATABASE = "database"
STAGE_STORAGE = "storage"
STAGE_COMPUTE = "compute"
STAGE_EDGE_ROUTING = "edge_routing"
STAGE_INITIALIZE = "initialize"
STAGE_HEALTH_CHECK = "health_check"

STAGE_ORDER = (
    STAGE_DATABASE,
    STAGE_STORAGE,
    STAGE_COMPUTE,
    STAGE_EDGE_ROUTING,
    STAGE_INITIALIZE,
)

RESOURCE_SHARED_DATABASE = "shared-database"
RESOURCE_DEDICATED_DATABASE = "dedicated-database"
RESOURCE_BUCKET = "bucket"
RESOURCE_FUNCTION = "function"
RESOURCE_DISTRIBUTION = "distribution"

# Memory (MB) per compute tier.
COMPUTE_TIER_MEMORY_MB = {
    "small": 512,
    "medium": 1024,
    "large": 2048,
}

# Environment keys the orchestrator always sets on the compute function.
RESERVED_ENV_KEYS = frozenset(
    {
        "DATABASE_URL",
        "S3_ENDPOINT",
        "S3_BUCKET",
        "S3_REGION",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "JWT_SECRET",
        "PORT",
        "INSTANCE_ID",
        "INSTANCE_URL",
    }
)

from __future__ import annotations

from typing import Any, Mapping

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate

from stratus.services.constants import RESERVED_ENV_KEYS
from stratus.services.errors import ValidationException

ENVIRONMENT_OVERRIDES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "propertyNames": {"pattern": "^[A-Z_][A-Z0-9_]{0,127}$"},
    "additionalProperties": {"type": "string", "maxLength": 4096},
    "maxProperties": 64,
}


def validate_overrides(overrides: Mapping[str, Any] | None) -> None:
    """Validate caller-supplied environment overrides before anything is provisioned."""
    if overrides is None:
        return
    if not isinstance(overrides, Mapping):
        raise ValidationException("environment must be a JSON object")
    try:
        jsonschema_validate(instance=dict(overrides), schema=ENVIRONMENT_OVERRIDES_SCHEMA)
    except ValidationError as exc:
        raise ValidationException(f"environment is invalid: {exc.message}") from exc

    collisions = sorted(RESERVED_ENV_KEYS.intersection(overrides))
    if collisions:
        raise ValidationException(f"environment overrides reserved keys: {', '.join(collisions)}")


def merge_environment(
    system: Mapping[str, str],
    overrides: Mapping[str, str] | None,
) -> dict[str, str]:
    """Combine system values with caller overrides; overlapping keys are rejected."""
    merged = dict(overrides or {})
    colliding = set(merged).intersection(system)
    if colliding:
        raise ValidationException(f"environment overrides reserved keys: {', '.join(sorted(colliding))}")
    merged.update(system)
    return merged

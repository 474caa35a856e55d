from __future__ import annotations

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from stratus.backends.base import AdapterError, classify_error
from stratus.config import Settings

_RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


def session_for(settings: Settings) -> boto3.Session:
    return boto3.Session(region_name=settings.aws_region)


def client_for(settings: Settings, service: str, **kwargs):
    return session_for(settings).client(service, config=_RETRY_CONFIG, **kwargs)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def http_status(exc: ClientError) -> int | None:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def adapter_error(message: str, exc: Exception) -> AdapterError:
    """Translate a botocore failure into the provider-neutral error."""
    if isinstance(exc, ClientError):
        code = error_code(exc)
        category = classify_error(text=f"{code} {exc}", status=http_status(exc))
        return AdapterError(f"{message}: {exc}", category=category, code=code or None)
    if isinstance(exc, BotoCoreError):
        return AdapterError(f"{message}: {exc}", category=classify_error(text=str(exc)))
    return AdapterError(f"{message}: {exc}")

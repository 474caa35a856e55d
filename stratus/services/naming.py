from __future__ import annotations

import base64
from dataclasses import dataclass
import hashlib
import re
import secrets
from typing import Callable

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
SQL_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_HYPHEN_RUN_RE = re.compile(r"-+")

MAX_DNS_LABEL_LEN = 63
INSTANCE_KEY_LEN = 12
PREFIX_MAX_LEN = MAX_DNS_LABEL_LEN - (INSTANCE_KEY_LEN + 1)

RandomSource = Callable[[int], bytes]


@dataclass(frozen=True)
class ResourceNames:
    instance_key: str
    database_name: str
    database_user: str
    dedicated_identifier: str
    bucket_name: str
    function_name: str
    distribution_alias: str


def slugify_token(value: str) -> str:
    lowered = value.lower()
    replaced = _NON_ALNUM_RE.sub("-", lowered)
    collapsed = _HYPHEN_RUN_RE.sub("-", replaced)
    return collapsed.strip("-")


def is_valid_dns_label(value: str) -> bool:
    return bool(DNS_LABEL_RE.fullmatch(value))


def is_safe_sql_identifier(value: str) -> bool:
    return bool(SQL_IDENTIFIER_RE.fullmatch(value))


def instance_key(instance_id: str) -> str:
    """Stable short key for an instance: truncated SHA-256 of its identifier."""
    if not instance_id:
        raise ValueError("instance_id must not be empty")
    digest = hashlib.sha256(instance_id.encode("utf-8")).hexdigest()
    return digest[:INSTANCE_KEY_LEN]


def _normalize_prefix(prefix: str) -> str:
    slug = slugify_token(prefix)[:PREFIX_MAX_LEN].strip("-")
    if not slug or not slug[0].isalpha():
        raise ValueError("resource prefix must start with a letter")
    return slug


def derive_resource_names(instance_id: str, *, prefix: str = "stratus") -> ResourceNames:
    key = instance_key(instance_id)
    label = f"{_normalize_prefix(prefix)}-{key}"
    if not is_valid_dns_label(label):
        raise ValueError("derived resource name is not a valid DNS label")
    return ResourceNames(
        instance_key=key,
        database_name=f"instance_{key}",
        database_user=f"user_{key}",
        dedicated_identifier=label,
        bucket_name=label,
        function_name=label,
        distribution_alias=label,
    )


def system_random(length: int) -> bytes:
    return secrets.token_bytes(length)


def generate_secret(length: int, *, rng: RandomSource) -> str:
    if length <= 0:
        raise ValueError("length must be positive")
    encoded = base64.urlsafe_b64encode(rng(length)).decode("ascii")
    return encoded[:length]


def instance_hostname(subdomain: str, base_domain: str) -> str:
    if not is_valid_dns_label(subdomain):
        raise ValueError("subdomain is not a valid DNS label")
    return f"{subdomain}.{base_domain}"

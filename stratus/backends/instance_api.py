from __future__ import annotations

import logging

import httpx

from stratus.backends.base import AdapterError, classify_error

logger = logging.getLogger(__name__)

SETUP_PATH = "/api/auth/setup"
HEALTH_PATH = "/health"
DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def _join(endpoint: str, path: str) -> str:
    return f"{endpoint.rstrip('/')}{path}"


class HttpInstanceClient:
    """Talks to the application running inside a provisioned instance."""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(timeout=DEFAULT_TIMEOUT, follow_redirects=True)

    def initialize(self, endpoint: str, *, admin_email: str, admin_password: str) -> bool:
        """Create the first admin account; ``False`` when one already exists."""
        url = _join(endpoint, SETUP_PATH)
        try:
            response = self._client.post(url, json={"email": admin_email, "password": admin_password})
        except httpx.HTTPError as exc:
            # Transport errors mean the app is not accepting requests yet.
            raise AdapterError(f"Setup request to {url} failed: {exc}", category="retryable") from exc

        if response.status_code in (200, 201):
            logger.info("Initialized admin account at %s", endpoint)
            return True
        if response.status_code == 409:
            logger.info("Admin account already present at %s", endpoint)
            return False
        raise AdapterError(
            f"Setup request to {url} returned HTTP {response.status_code}",
            category=classify_error(text=response.text, status=response.status_code),
            code=str(response.status_code),
        )

    def is_healthy(self, endpoint: str) -> bool:
        url = _join(endpoint, HEALTH_PATH)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("Health probe of %s failed: %s", url, exc)
            return False
        return response.status_code == 200

from __future__ import annotations

import logging
import threading

from stratus.backends.base import InstanceClient
from stratus.config import HealthProbeSettings
from stratus.services.errors import HealthCheckTimeout
from stratus.services.waits import Deadline, WaitExpired, poll_until

logger = logging.getLogger(__name__)


class HealthProber:
    """Waits for a freshly provisioned endpoint to report healthy."""

    def __init__(self, client: InstanceClient, settings: HealthProbeSettings | None = None) -> None:
        self._client = client
        self._settings = settings or HealthProbeSettings()

    def check_once(self, url: str) -> bool:
        return self._client.is_healthy(url)

    def wait_until_healthy(
        self,
        url: str,
        *,
        cancel: threading.Event | None = None,
        deadline: Deadline | None = None,
    ) -> int:
        """Probe ``url`` with exponential backoff; returns the number of attempts used."""
        budget = Deadline.after(self._settings.budget).earliest(deadline)
        logger.info("Probing health of %s (budget %.1fs)", url, budget.remaining())
        try:
            outcome = poll_until(
                lambda: True if self._client.is_healthy(url) else None,
                description=f"health of {url}",
                deadline=budget,
                initial_interval=self._settings.initial_delay,
                max_interval=self._settings.max_delay,
                cancel=cancel,
            )
        except WaitExpired as exc:
            logger.warning("Health probe for %s gave up after %s attempts", url, exc.attempts)
            raise HealthCheckTimeout(url, exc.attempts, exc.elapsed) from exc
        logger.info("%s is healthy after %s attempt(s)", url, outcome.attempts)
        return outcome.attempts

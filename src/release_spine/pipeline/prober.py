"""Health prober: liveness gate between deploy and success.

Polls an HTTP endpoint at a fixed interval until it answers 2xx or the
attempt budget runs out. Never mutates the deployment target; the
scheduler decides what an unhealthy verdict means.

Example::

    prober = HealthProber()
    verdict = prober.probe("web", "http://10.0.0.4:80/health", max_attempts=20, interval=3)
    if not verdict.healthy:
        ...

Tags:
    health, liveness, httpx, polling, release-spine
"""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx

from release_spine.core.logging import get_logger
from release_spine.pipeline.models import HealthVerdict

logger = get_logger(__name__)


class HealthProber:
    """HTTP liveness poller.

    Args:
        timeout: Per-request timeout in seconds
        sleep: Wait between attempts (injected in tests)
        transport: Optional httpx transport (``httpx.MockTransport`` in tests)
    """

    def __init__(
        self,
        timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._sleep = sleep
        self._transport = transport

    def check(self, client: httpx.Client, endpoint: str) -> str | None:
        """One GET; None when healthy, otherwise a short error description."""
        try:
            response = client.get(endpoint)
        except httpx.TimeoutException:
            return "timeout"
        except httpx.HTTPError as exc:
            return f"{type(exc).__name__}: {exc}"
        if response.is_success:
            return None
        return f"HTTP {response.status_code}"

    def probe(
        self,
        target: str,
        endpoint: str,
        max_attempts: int = 20,
        interval: float = 3.0,
    ) -> HealthVerdict:
        """Poll ``endpoint`` until healthy or ``max_attempts`` are spent."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        last_error: str | None = None
        with httpx.Client(
            timeout=self.timeout, transport=self._transport, follow_redirects=True
        ) as client:
            for attempt in range(1, max_attempts + 1):
                last_error = self.check(client, endpoint)
                if last_error is None:
                    logger.info("probe.healthy", target=target, endpoint=endpoint, attempt=attempt)
                    return HealthVerdict(
                        target=target, endpoint=endpoint, healthy=True, attempts=attempt
                    )
                logger.debug(
                    "probe.not_ready",
                    target=target,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=last_error,
                )
                if attempt < max_attempts:
                    self._sleep(interval)

        logger.warning(
            "probe.unhealthy",
            target=target,
            endpoint=endpoint,
            attempts=max_attempts,
            last_error=last_error,
        )
        return HealthVerdict(
            target=target,
            endpoint=endpoint,
            healthy=False,
            attempts=max_attempts,
            last_error=last_error,
        )


__all__ = ["HealthProber"]

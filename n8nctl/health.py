"""
HTTP health checks for n8n.

n8n counts as up when it answers 200, 401 (basic auth in front of the
editor) or 302 (redirect to the sign-in page). Redirects are not followed,
so a 302 is seen as-is. Connection failures report status 0.
"""

import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import requests

from n8nctl.config import Config
from n8nctl.errors import HealthCheckError
from n8nctl.ui import get_logger

DEFAULT_ACCEPTED: List[int] = [200, 401, 302]


@dataclass
class HealthResult:
    url: str
    healthy: bool
    status_code: int
    attempts: int
    elapsed: float

    @property
    def status_text(self) -> str:
        return f"{self.status_code:03d}"


def probe(url: str, timeout: float = 5.0, verify: bool = True) -> int:
    """Perform a single GET and return the status code (0 when unreachable)."""
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False, verify=verify)
    except requests.RequestException as e:
        get_logger().debug(f"Probe of {url} failed: {e}")
        return 0
    response.close()
    return response.status_code


def wait_for_n8n(
    url: str,
    accepted: Iterable[int] = DEFAULT_ACCEPTED,
    max_attempts: int = 30,
    interval: float = 2.0,
    timeout: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthResult:
    """Poll ``url`` until it answers with an accepted status or attempts run out."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    logger = get_logger()
    accepted_codes = set(accepted)
    start = time.monotonic()
    status = 0
    for attempt in range(1, max_attempts + 1):
        status = probe(url, timeout=timeout)
        if status in accepted_codes:
            logger.info(f"n8n is responding at {url} (HTTP {status})")
            return HealthResult(url, True, status, attempt, time.monotonic() - start)
        logger.debug(f"Waiting for n8n at {url}... ({attempt}/{max_attempts}, HTTP {status:03d})")
        if attempt < max_attempts:
            sleep(interval)

    logger.warning(f"n8n did not respond at {url} after {max_attempts} attempts (HTTP {status:03d})")
    return HealthResult(url, False, status, max_attempts, time.monotonic() - start)


def wait_with_config(config: Config, url: Optional[str] = None) -> HealthResult:
    return wait_for_n8n(
        url or config.local_url,
        accepted=config.accepted_status,
        max_attempts=config.max_attempts,
        interval=config.poll_interval,
        timeout=config.request_timeout,
    )


def check_endpoints(config: Config) -> List[HealthResult]:
    """Probe local n8n, the nginx proxy and the public URL once each."""
    urls = [config.local_url, config.proxy_url]
    if config.public_url:
        urls.append(config.public_url)

    accepted = set(config.accepted_status)
    results = []
    for url in urls:
        start = time.monotonic()
        status = probe(url, timeout=config.request_timeout)
        results.append(
            HealthResult(url, status in accepted, status, 1, time.monotonic() - start)
        )
    return results


def require_healthy(result: HealthResult) -> HealthResult:
    if not result.healthy:
        raise HealthCheckError(
            f"n8n is not responding at {result.url} (HTTP {result.status_text} "
            f"after {result.attempts} attempts)"
        )
    return result

"""
adapters/base.py
────────────────
The Remote Gateway contract and the retry loop shared by every HTTP client.

The migrator never talks HTTP itself.  It calls ``gateway.call(action, body,
token)`` and gets JSON back, or a GatewayError once retries are exhausted.
Tests substitute a recording fake for the real StoatGateway.
"""

from __future__ import annotations
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import requests

from errors import GatewayError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 502)


class RemoteGateway(ABC):
    """
    One conceptual operation: call a named remote action with a JSON body.

    To add a new target platform:
      1. Subclass RemoteGateway
      2. Implement call() for the action vocabulary the migrator uses
      3. Wire it up in main.py
    """

    # Human-readable name shown in the CLI
    platform_name: str = "Unknown Platform"

    @abstractmethod
    def call(self, action: str, body: dict | None = None, auth_token: str | None = None) -> Any:
        """
        Perform ``action`` and return the decoded JSON result.
        Raises GatewayError (with HTTP status and body) on failure.
        """


@dataclass
class RetryPolicy:
    """Bounded retries for rate-limited (429) and upstream (502) responses."""

    max_retries: int = 3
    fallback_wait: float = 3.0  # seconds, when no retry_after is given
    padding: float = 1.0  # added to a server-provided retry_after
    max_wait: float = 15.0
    retry_after_scale: float = 0.001  # Stoat reports milliseconds; Discord seconds

    def wait_for(self, response: requests.Response, attempt: int) -> float:
        if response.status_code == 429:
            retry_after = _retry_after(response)
            if retry_after is None:
                return min(self.fallback_wait, self.max_wait)
            return min(retry_after * self.retry_after_scale + self.padding, self.max_wait)
        return min(self.fallback_wait * (2**attempt), self.max_wait)


def _retry_after(response: requests.Response) -> float | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("retry_after") is not None:
        try:
            return float(data["retry_after"])
        except (TypeError, ValueError):
            return None
    return None


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    action: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> requests.Response:
    """Send a request, retrying 429/502 up to ``policy.max_retries`` times.

    Returns the successful response; raises GatewayError otherwise.
    """
    for attempt in range(policy.max_retries + 1):
        try:
            r = session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise GatewayError(action, None, str(e)) from e

        if r.status_code in RETRYABLE_STATUSES and attempt < policy.max_retries:
            wait = policy.wait_for(r, attempt)
            logger.warning(
                "%s %s → %d, waiting %.1fs (%d retries left)",
                method,
                url,
                r.status_code,
                wait,
                policy.max_retries - attempt,
            )
            sleep(wait)
            continue

        if not r.ok:
            logger.debug("%s %s failed → %d", method, url, r.status_code)
            raise GatewayError(action, r.status_code, r.text)
        return r

    # Unreachable: the final attempt either returns or raises above.
    raise GatewayError(action, None, "retries exhausted")

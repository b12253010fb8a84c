"""
cryptotax/utils/http.py

Retry policy for the price API. backoff_delay is also used by the ccxt
exchange adapters between network retries.
Retries network errors, 429 and 5xx with exponential backoff; everything else
is returned to the caller as-is.
"""

import logging
import time
from typing import Callable

import httpx

from cryptotax.constants import (
    HTTP_BACKOFF_BASE_SECONDS,
    HTTP_BACKOFF_MAX_SECONDS,
    HTTP_MAX_ATTEMPTS,
)

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def backoff_delay(attempt: int, base: float = HTTP_BACKOFF_BASE_SECONDS,
                  cap: float = HTTP_BACKOFF_MAX_SECONDS) -> float:
    """attempt=1 -> base, attempt=2 -> 2*base, ... capped."""
    return min(cap, base * (2 ** (attempt - 1)))


def send_with_retry(
    client: httpx.Client,
    build_request: Callable[[], httpx.Request],
    *,
    attempts: int = HTTP_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    """
    Send the request returned by build_request(), retrying on failure.

    build_request is called once per attempt so signed requests get a fresh
    timestamp/nonce. After the last attempt the final response is returned
    (even a 5xx), or the last network error is re-raised.
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        request = build_request()
        try:
            response = client.send(request)
        except httpx.TransportError as e:
            last_error = e
            logger.warning(f"{request.method} {request.url.path} failed (attempt {attempt}/{attempts}): {e}")
        else:
            if not is_retryable_status(response.status_code) or attempt == attempts:
                return response
            logger.warning(
                f"{request.method} {request.url.path} returned {response.status_code} "
                f"(attempt {attempt}/{attempts})"
            )
        if attempt < attempts:
            sleep(backoff_delay(attempt))
    raise last_error

"""
Shared async HTTP helper for generation vendors.

Retries 429 / 5xx gateway errors and transport failures with exponential
backoff plus jitter. Anything else that is not 2xx becomes a ProviderError,
so vendor clients never leak raw httpx exceptions into the pipeline.
"""

import asyncio
import logging
import random
from typing import Optional

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds — doubles each retry: 2, 4, 8, 16, 32
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


def _backoff_delay(attempt: int, base_delay: float) -> float:
    return base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX if base_delay else 0)


async def request_with_backoff(
    provider: str,
    method: str,
    url: str,
    *,
    timeout: float = 30,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Uses: base_delay * 2^attempt + random jitter, honouring Retry-After.
    Raises ProviderError on a non-retryable status or once retries run out.
    """
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise ProviderError(provider, f"{provider} request failed: {e}") from e
            delay = _backoff_delay(attempt, base_delay)
            logger.warning(
                f"{provider} transport error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        if response.is_success:
            return response

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < max_retries:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = int(retry_after)
            else:
                delay = _backoff_delay(attempt, base_delay)
            logger.warning(
                f"{provider} {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
                f"— retrying in {delay:.1f}s (url={url})"
            )
            await asyncio.sleep(delay)
            continue

        raise ProviderError(
            provider,
            f"{provider} API error: {response.status_code} - {response.text[:300]}",
            status_code=response.status_code,
            details={"body": response.text[:1000]},
        )

    # Unreachable: the loop either returns or raises on its final attempt.
    raise ProviderError(provider, f"Request to {url} failed after {max_retries + 1} attempts")


def json_body(provider: str, response: httpx.Response) -> dict:
    """Parse a JSON object body or raise ProviderError for malformed responses."""
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(
            provider,
            f"{provider} returned a non-JSON response: {response.text[:200]}",
            status_code=response.status_code,
        ) from e
    if not isinstance(data, dict):
        raise ProviderError(provider, f"{provider} returned unexpected JSON: {str(data)[:200]}")
    return data

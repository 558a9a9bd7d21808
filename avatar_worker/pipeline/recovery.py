"""
Lip-sync recovery probe.

Sync Labs occasionally reports a job as completed while its normal status
response carries no output URL. The probe fetches the raw job record once and
scans it with an ordered list of extraction strategies. Supporting a new
response shape means appending a strategy, nothing else.
"""

import logging
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlparse

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class RawStatusSource(Protocol):
    async def raw_status(self, job_id: str) -> dict: ...


def is_well_formed_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _field_path(*path: Any) -> Callable[[Any], Optional[str]]:
    """Strategy that walks ``path`` (dict keys / list indexes) and returns a URL there."""

    def extract(payload: Any) -> Optional[str]:
        node = payload
        for part in path:
            if isinstance(part, int):
                if not isinstance(node, list) or len(node) <= part:
                    return None
            elif not isinstance(node, dict):
                return None
            node = node[part] if isinstance(part, int) else node.get(part)
            if node is None:
                return None
        return node.strip() if is_well_formed_url(node) else None

    return extract


# Ordered: first hit wins.
OUTPUT_URL_STRATEGIES: list[tuple[str, Callable[[Any], Optional[str]]]] = [
    ("output_url", _field_path("output_url")),
    ("outputUrl", _field_path("outputUrl")),
    ("video_url", _field_path("video_url")),
    ("videoUrl", _field_path("videoUrl")),
    ("result.url", _field_path("result", "url")),
    ("output.url", _field_path("output", "url")),
    ("result", _field_path("result")),
    ("output[0].url", _field_path("output", 0, "url")),
    ("outputs[0].url", _field_path("outputs", 0, "url")),
    ("data.output_url", _field_path("data", "output_url")),
    ("data.outputUrl", _field_path("data", "outputUrl")),
]


def extract_output_url(payload: Any) -> tuple[Optional[str], Optional[str]]:
    """Return ``(url, strategy_name)`` for the first strategy that finds a URL."""
    for name, strategy in OUTPUT_URL_STRATEGIES:
        url = strategy(payload)
        if url:
            return url, name
    return None, None


class ProbeResult(BaseModel):
    found: bool
    url: Optional[str] = None
    strategy: Optional[str] = None
    vendor_status: Optional[str] = None
    available_fields: list[str] = []


class RecoveryProbe:
    """
    Single direct status fetch for a lip-sync job.

    Returns ``found=False`` when no URL can be extracted; only transport or
    provider errors raise.
    """

    def __init__(self, source: RawStatusSource):
        self.source = source

    async def probe(self, job_id: str) -> ProbeResult:
        raw = await self.source.raw_status(job_id)
        if not isinstance(raw, dict):
            logger.warning(f"Recovery probe for {job_id}: non-object response {type(raw).__name__}")
            return ProbeResult(found=False)

        status = raw.get("status")
        vendor_status = str(status).lower() if status is not None else None
        url, strategy = extract_output_url(raw)

        if url:
            logger.info(f"Recovery probe for {job_id} found output via '{strategy}'")
            return ProbeResult(
                found=True,
                url=url,
                strategy=strategy,
                vendor_status=vendor_status,
                available_fields=sorted(raw.keys()),
            )

        logger.warning(
            f"Recovery probe for {job_id}: no output URL (status={vendor_status}, fields={sorted(raw.keys())})"
        )
        return ProbeResult(
            found=False,
            vendor_status=vendor_status,
            available_fields=sorted(raw.keys()),
        )

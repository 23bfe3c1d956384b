"""Shared httpx request helper for outbound integrations."""

import json
import logging
from typing import Any, Optional

import httpx

from app.services.commission.errors import ExternalSystemError, NotFoundError, TransientError

logger = logging.getLogger(__name__)


def encode_json(payload: dict) -> bytes:
    return json.dumps(payload, default=str).encode("utf-8")


async def send_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    system: str,
    content: Optional[bytes] = None,
    headers: Optional[dict] = None,
) -> dict[str, Any]:
    """Send a request and decode the JSON reply.

    Timeouts, connection failures, 429 and 5xx raise TransientError; 404
    raises NotFoundError and any other 4xx raises ExternalSystemError.
    """
    try:
        response = await client.request(method, url, content=content, headers=headers)
    except httpx.TimeoutException as exc:
        logger.warning("%s request to %s timed out", system, url)
        raise TransientError(f"{system} request timed out", url=url) from exc
    except httpx.TransportError as exc:
        logger.warning("%s request to %s failed: %s", system, url, exc)
        raise TransientError(f"{system} unreachable", url=url) from exc

    if response.status_code >= 500 or response.status_code == 429:
        logger.warning("%s returned %s for %s", system, response.status_code, url)
        raise TransientError(f"{system} returned {response.status_code}", url=url)
    if response.status_code == 404:
        raise NotFoundError(f"{system} resource not found", url=url)
    if response.status_code >= 400:
        logger.error("%s rejected %s: %s %s", system, url, response.status_code, response.text[:500])
        raise ExternalSystemError(
            f"{system} returned {response.status_code}",
            url=url,
            body=response.text[:500],
        )
    if not response.content:
        return {}
    return response.json()

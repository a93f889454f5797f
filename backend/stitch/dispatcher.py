"""Outbound worker webhook delivery.

One shared httpx client with connection pooling serves every dispatch. A
dispatch is fire-once: non-2xx responses, timeouts and connection errors
come back as a failed Result and the caller records the node as failed.
Nothing here retries.
"""

from __future__ import annotations

from typing import Optional

import httpx

from .errors import ErrorKind, Result
from .logging_config import get_engine_logger
from .protocol import WorkerPayload
from .settings import (
    WORKER_HTTP_MAX_CONNECTIONS,
    WORKER_HTTP_MAX_KEEPALIVE,
    WORKER_HTTP_TIMEOUT,
)

logger = get_engine_logger()

_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    """Get or create the shared httpx client."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=WORKER_HTTP_TIMEOUT,
            limits=httpx.Limits(
                max_connections=WORKER_HTTP_MAX_CONNECTIONS,
                max_keepalive_connections=WORKER_HTTP_MAX_KEEPALIVE,
            ),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


class WebhookDispatcher:
    """POSTs WorkerPayloads to worker webhook URLs."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or _get_http_client()

    async def dispatch(self, url: str, payload: WorkerPayload) -> Result:
        """Fire the webhook once.

        Returns:
            Result.success(status_code) on 2xx, otherwise a WORKER_FAILURE
            Result whose message is recorded as the node error.
        """
        logger.info(f"[Worker call] run={payload.run_id} node={payload.node_id} url={url}")
        try:
            resp = await self.client.post(url, json=payload.to_wire())
        except httpx.TimeoutException:
            logger.error(f"[Worker call] Timeout after {WORKER_HTTP_TIMEOUT}s: {url}")
            return Result.failure(ErrorKind.WORKER_FAILURE, f"Webhook timed out after {WORKER_HTTP_TIMEOUT}s")
        except httpx.HTTPError as e:
            logger.error(f"[Worker call] Request failed for {url}: {e}")
            return Result.failure(ErrorKind.WORKER_FAILURE, f"Webhook request failed: {e}")

        if resp.status_code >= 300:
            body = resp.text[:500]
            logger.error(f"[Worker call] HTTP {resp.status_code} from {url}: {body}")
            return Result.failure(
                ErrorKind.WORKER_FAILURE,
                f"Webhook returned HTTP {resp.status_code}: {body}",
            )
        return Result.success(resp.status_code)

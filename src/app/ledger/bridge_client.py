"""Async HTTP client for the ledger bridge push endpoint.

The bridge is a local intermediary that can reach the external
bookkeeping system. The worker transport POSTs one queue item per call to
``{BRIDGE_URL}/api/ledger/push-update``.

Only connection failures (nothing was sent) are retried here, with
tenacity. Timeouts and error responses end the attempt immediately: the
bridge may already have applied the change, so the queue's own retry
budget decides what happens next.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.app.ledger.schemas import BridgeConfigRead, BridgeOutcome, QueueItemRead
from src.app.ledger.transitions import BRIDGE_TIMEOUT_ERROR

logger = structlog.get_logger(__name__)


def build_push_payload(item: QueueItemRead, config: BridgeConfigRead) -> dict[str, Any]:
    """Request body for one push-update delivery."""
    return {
        "idempotency_key": item.idempotency_key,
        "queue_item_id": item.id,
        "client_id": item.client_id,
        "external_id": item.external_id,
        "external_company_name": config.external_company_name,
        "username": config.username,
        "credential": config.credential,
        "operation": item.operation.value,
        "data": item.payload,
    }


class BridgeClient:
    """Push-update client for the ledger bridge.

    Args:
        base_url: Bridge base URL (e.g. http://localhost:5001).
        timeout: Per-request timeout in seconds.
        shared_secret: Sent as X-Bridge-Token so the bridge can authenticate us.
        connect_retries: Extra attempts after a refused connection.
        retry_wait: tenacity wait strategy between connection retries.
    """

    PUSH_PATH = "/api/ledger/push-update"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        shared_secret: str | None = None,
        connect_retries: int = 2,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"Content-Type": "application/json"}
        if shared_secret:
            self._headers["X-Bridge-Token"] = shared_secret
        self._post = retry(
            stop=stop_after_attempt(connect_retries + 1),
            wait=retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type(httpx.ConnectError),
            reraise=True,
        )(self._post_once)

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    async def _post_once(self, body: dict[str, Any]) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                f"{self._base_url}{self.PUSH_PATH}",
                json=body,
                headers={"Idempotency-Key": body["idempotency_key"]},
            )

    async def push_update(
        self, item: QueueItemRead, config: BridgeConfigRead
    ) -> BridgeOutcome:
        """Deliver one queue item and translate the reply into a BridgeOutcome.

        Never raises for transport problems; they come back as failed
        outcomes carrying the error text.
        """
        body = build_push_payload(item, config)
        try:
            response = await self._post(body)
        except httpx.TimeoutException:
            logger.warning("bridge.timeout", queue_item_id=item.id)
            return BridgeOutcome(success=False, error=BRIDGE_TIMEOUT_ERROR)
        except httpx.ConnectError as exc:
            logger.warning("bridge.unreachable", queue_item_id=item.id, error=str(exc))
            return BridgeOutcome(success=False, error=f"bridge unreachable: {exc}")
        except httpx.HTTPError as exc:
            logger.warning("bridge.transport_error", queue_item_id=item.id, error=str(exc))
            return BridgeOutcome(success=False, error=f"bridge error: {exc}")

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = {"raw": data if data is not None else response.text}

        if response.is_error:
            error = data.get("error") or f"bridge returned HTTP {response.status_code}"
            logger.warning(
                "bridge.error_response",
                queue_item_id=item.id,
                status_code=response.status_code,
                error=error,
            )
            return BridgeOutcome(
                success=False,
                error=str(error),
                external_response=data.get("external_response", data),
            )

        success = bool(data.get("success"))
        error = data.get("error")
        return BridgeOutcome(
            success=success,
            error=None if success else str(error or "bridge reported failure"),
            external_response=data.get("external_response", data),
            external_id=data.get("external_id"),
        )

"""
Webhook relay: forwards incoming messages to an external HTTP endpoint.

Delivery is best-effort. Failures are logged and never reach the session.
"""

from typing import Optional

import httpx

from wabridge.client.base import SessionEvent, SessionEventType
from wabridge.logger import get_logger
from wabridge.models import WebhookPayload
from wabridge.utils import to_serializable, trunc

logger = get_logger(__name__)


class WebhookRelay:
    """POSTs message events to ``url`` as JSON."""

    def __init__(
        self,
        url: str,
        session_name: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.session_name = session_name
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def __call__(self, event: SessionEvent) -> None:
        if event.type is not SessionEventType.MESSAGE:
            return
        await self.relay(event)

    async def relay(self, event: SessionEvent) -> bool:
        """Deliver one event. Returns True on a 2xx answer."""
        data = to_serializable(event.data) if event.data is not None else {}
        if not isinstance(data, dict):
            data = {"body": data}
        payload = WebhookPayload(
            session=self.session_name,
            event=event.type.value,
            data=data,
            timestamp=event.timestamp,
        )

        try:
            resp = await self._get_client().post(self.url, json=payload.model_dump())
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Webhook answered {e.response.status_code} for {self.url}")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery to {self.url} failed: {e}")
            return False

        logger.debug(f"Relayed message to webhook: {trunc(str(data.get('body', '')))}")
        return True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

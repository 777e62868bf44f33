from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import Settings

logger = logging.getLogger("order_bridge.graph_api")

GRAPH_API_BASE_URL = "https://graph.facebook.com"


class GraphApiError(RuntimeError):
    """Raised when the Send API rejects a request."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Graph API returned {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class GraphApiClient:
    """Send API client for text replies and sender actions on a page conversation."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = GRAPH_API_BASE_URL,
    ) -> None:
        self._page_id = settings.page_id
        self._access_token = settings.page_access_token
        self._url = f"{base_url}/{settings.graph_api_version}/{settings.page_id}/messages"
        self._client = client or httpx.AsyncClient(timeout=settings.send_timeout_s)
        self._owns_client = client is None

    async def send_text_message(self, recipient_id: str, text: str) -> Dict[str, Any]:
        """Purpose: Deliver a text reply to a conversation.
        Inputs/Outputs: Inputs are the recipient PSID and text; returns the Send API JSON.
        Side Effects / State: Marks the thread as seen and shows the typing indicator first.
        Dependencies: Uses _post and the best-effort sender actions.
        Failure Modes: Raises GraphApiError on non-2xx and httpx errors on transport failure.
        If Removed: Replies are generated but never reach the customer.
        Testing Notes: Use httpx.MockTransport and assert the request body.
        """
        # Sender actions are cosmetic; only the message itself may fail the call.
        await self.mark_seen(recipient_id)
        await self.typing_on(recipient_id)
        return await self._post({"recipient": {"id": recipient_id}, "message": {"text": text}})

    async def mark_seen(self, recipient_id: str) -> None:
        await self._sender_action(recipient_id, "mark_seen")

    async def typing_on(self, recipient_id: str) -> None:
        await self._sender_action(recipient_id, "typing_on")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _sender_action(self, recipient_id: str, action: str) -> None:
        try:
            await self._post({"recipient": {"id": recipient_id}, "sender_action": action})
        except (GraphApiError, httpx.HTTPError) as exc:
            logger.warning("[GraphApi] Could not send %s: %s", action, exc)

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.post(
            self._url,
            params={"access_token": self._access_token},
            json=body,
        )
        if response.status_code >= 400:
            logger.error("[GraphApi] Send API error %s: %s", response.status_code, response.text)
            raise GraphApiError(response.status_code, response.text)
        data = response.json()
        logger.debug("[GraphApi] Send API call successful: %s", data)
        return data

"""Telnyx Call Control client."""
import logging
from typing import Any, Dict, Optional

import httpx

from callbridge.core.exceptions import PhoneProviderError
from callbridge.services.telephony.base import PhoneProvider

logger = logging.getLogger(__name__)

TELNYX_API_BASE = "https://api.telnyx.com/v2"


class TelnyxPhoneProvider(PhoneProvider):
    """Places and controls calls through the Telnyx v2 Call Control API."""

    def __init__(
        self,
        api_key: str,
        connection_id: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = TELNYX_API_BASE,
    ):
        self.connection_id = connection_id
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=15.0,
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PhoneProviderError(
                f"Telnyx {path} failed: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise PhoneProviderError(f"Telnyx {path} failed: {type(e).__name__}: {e}") from e

        if not response.content:
            return {}
        return response.json()

    async def initiate_call(self, to: str, from_: str, webhook_url: str) -> str:
        """
        Place an outbound call.

        Args:
            to: Destination number (E.164)
            from_: Caller number owned by the account
            webhook_url: URL that receives call lifecycle events

        Returns:
            Telnyx call_control_id
        """
        data = await self._post(
            "/calls",
            {
                "connection_id": self.connection_id,
                "to": to,
                "from": from_,
                "webhook_url": webhook_url,
                "webhook_url_method": "POST",
                "timeout_secs": 60,
            },
        )
        call_control_id = (data.get("data") or {}).get("call_control_id")
        if not call_control_id:
            raise PhoneProviderError("Telnyx did not return a call_control_id")
        logger.info(f"[TELNYX] Call placed to {to}, call_control_id: {call_control_id}")
        return call_control_id

    async def start_streaming(self, call_handle: str, stream_url: str) -> None:
        await self._post(
            f"/calls/{call_handle}/actions/streaming_start",
            {
                "stream_url": stream_url,
                "stream_track": "inbound_track",
                "stream_bidirectional_mode": "rtp",
                "stream_bidirectional_codec": "PCMU",
            },
        )
        logger.info(f"[TELNYX] Streaming requested for {call_handle}")

    async def hangup(self, call_handle: str) -> None:
        await self._post(f"/calls/{call_handle}/actions/hangup", {})
        logger.info(f"[TELNYX] Hangup requested for {call_handle}")

    async def aclose(self) -> None:
        await self.client.aclose()

"""
WhatsApp Service
HTTP client for the external WhatsApp API service (whatsapp-web.js over REST)
Based on: https://github.com/chrishubert/whatsapp-api

The API service owns the browser automation and the on-disk auth state; one
API session id maps to one WhatsApp account id.
"""
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class WhatsAppAPIError(Exception):
    """Request to the WhatsApp API service failed"""


def format_chat_id(phone_number: str) -> str:
    """Keep ids that already carry a suffix (@c.us, @lid, @g.us), else assume @c.us."""
    chat_id = str(phone_number).strip()
    if "@" in chat_id:
        return chat_id
    return f"{chat_id}@c.us"


class WhatsAppService:
    """Service for managing WhatsApp sessions and messaging"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize WhatsApp Service

        Args:
            base_url: WhatsApp API base URL (default: WHATSAPP_API_URL)
            api_key: Optional API key (default: WHATSAPP_API_KEY)
            timeout: Request timeout in seconds (default: HTTP_TIMEOUT)
        """
        self.base_url = (base_url or settings.WHATSAPP_API_URL).rstrip("/")
        self.api_key = api_key or settings.WHATSAPP_API_KEY
        self.timeout = timeout or settings.HTTP_TIMEOUT

        logger.info(f"WhatsApp Service initialized with base URL: {self.base_url}")

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=json, headers=self._get_headers())
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            raise WhatsAppAPIError(f"HTTP {e.response.status_code}: {e.response.text}") from e
        except httpx.HTTPError as e:
            raise WhatsAppAPIError(f"{type(e).__name__}: {e}") from e

    async def register_session(self, session_id: str) -> Dict[str, Any]:
        """
        Start a session on the API service.

        The service then calls back the webhook with a `qr` event (pairing) or
        `ready` (auth state restored from disk).

        Raises:
            WhatsAppAPIError: If the session could not be started
        """
        response = await self._request("GET", f"/session/start/{session_id}")
        logger.info(f"✅ WhatsApp session registered: {session_id}")
        return response.json()

    async def terminate_session(self, session_id: str) -> Dict[str, Any]:
        """
        Terminate a session (releases the browser and its file handles).

        Raises:
            WhatsAppAPIError: If termination fails
        """
        response = await self._request("GET", f"/session/terminate/{session_id}")
        logger.info(f"✅ WhatsApp session terminated: {session_id}")
        return response.json()

    async def get_qr_image(self, session_id: str) -> Optional[str]:
        """
        Fetch the current pairing QR as a PNG data URL.

        Returns:
            "data:image/png;base64,..." or None when no image is available
        """
        try:
            response = await self._request("GET", f"/session/qr/{session_id}/image")
        except WhatsAppAPIError as e:
            logger.warning(f"⚠️ Could not fetch QR image for {session_id}: {e}")
            return None

        content_type = response.headers.get("content-type", "").lower()
        if "image" not in content_type:
            return None

        encoded = base64.b64encode(response.content).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    async def send_text_message(self, session_id: str, chat_id: str, message: str) -> Dict[str, Any]:
        """
        Send a plain text message.

        Raises:
            WhatsAppAPIError: If the API rejects the message
        """
        payload = {
            "chatId": format_chat_id(chat_id),
            "contentType": "string",
            "content": message,
        }
        response = await self._request("POST", f"/client/sendMessage/{session_id}", json=payload)
        return response.json()

    async def get_client_class_info(self, session_id: str) -> Dict[str, Any]:
        """
        Client info for an authenticated session (wid, pushname).

        Returns:
            The `sessionInfo` object, or {} on failure
        """
        try:
            response = await self._request("GET", f"/client/getClassInfo/{session_id}")
        except WhatsAppAPIError as e:
            logger.error(f"Failed to get client class info: {e}")
            return {}

        data = response.json()
        return data.get("sessionInfo") or data


_whatsapp_service: Optional[WhatsAppService] = None


def get_whatsapp_service() -> WhatsAppService:
    """Get or create WhatsAppService singleton"""
    global _whatsapp_service
    if _whatsapp_service is None:
        _whatsapp_service = WhatsAppService()
    return _whatsapp_service

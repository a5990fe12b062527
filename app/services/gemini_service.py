"""
Gemini Service
Thin REST client for Google Generative Language (text generation + embeddings)
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class GeminiAPIError(Exception):
    """Non-2xx answer from the Gemini API"""

    def __init__(self, status_code: int, detail: Any = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Gemini API returned HTTP {status_code}")


class GeminiService:
    """Service for Gemini generateContent / embedContent calls"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        embed_model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.embed_model = embed_model or settings.GEMINI_EMBED_MODEL
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT

        if not self.api_key:
            logger.warning("⚠️ GOOGLE_API_KEY is not set. Gemini calls will fail.")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key or "",
        }

    async def generate_content(self, system_instruction: str, user_prompt: str) -> str:
        """
        Call generateContent and return the concatenated text parts.

        Args:
            system_instruction: System prompt
            user_prompt: Assembled user turn

        Returns:
            Generated text (may be empty)

        Raises:
            GeminiAPIError: On non-2xx responses
            httpx.HTTPError: On transport failures / timeouts
        """
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = {
            "system_instruction": {"parts": [{"text": system_instruction}]},
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, json=payload, headers=self._get_headers())

        if response.status_code < 200 or response.status_code >= 300:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            raise GeminiAPIError(response.status_code, detail)

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return " ".join(p.get("text", "") for p in parts).strip()

    async def embed_text(self, text: str) -> List[float]:
        """
        Create an embedding for ``text``.

        Returns:
            Embedding values, or an empty list on any failure
        """
        url = f"{self.base_url}/models/{self.embed_model}:embedContent"
        payload = {"content": {"parts": [{"text": text}]}}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self._get_headers())

            if response.status_code != 200:
                logger.error(f"❌ Gemini Embedding Error {response.status_code}: {response.text[:300]}")
                return []

            data = response.json()
            return (data.get("embedding") or {}).get("values") or []

        except Exception as e:
            logger.error(f"❌ embed_text Error: {e}")
            return []


_gemini_service: Optional[GeminiService] = None


def get_gemini_service() -> GeminiService:
    """Get or create GeminiService singleton"""
    global _gemini_service
    if _gemini_service is None:
        _gemini_service = GeminiService()
    return _gemini_service

import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from .base import ProviderAdapter

logger = logging.getLogger(__name__)

# config keys sent at the request root; everything else goes into generationConfig
_ROOT_CONFIG_KEYS = {"systemInstruction", "safetySettings", "tools", "toolConfig"}


class GeminiAPIError(Exception):
    def __init__(self, message: str, status_code: int, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers or {}
        self.retry_after = self.headers.get("retry-after") or self.headers.get("Retry-After")

    def __str__(self) -> str:
        return f"GeminiAPIError(status_code={self.status_code}, message={self.args[0]!r})"


class GeminiAdapter(ProviderAdapter):
    """Google Gemini adapter using the REST generateContent endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key or os.getenv("GEMINI_API_KEY", "").strip()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        if not self._api_key:
            logger.warning("GEMINI_API_KEY not set; calls will fail until configured.")

    @property
    def name(self) -> str:
        return "gemini"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_payload(self, contents: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": contents}]}],
        }
        generation: Dict[str, Any] = {}
        for key, value in (config or {}).items():
            if value is None:
                continue
            if key == "systemInstruction":
                if isinstance(value, str):
                    value = {"parts": [{"text": value}]}
                payload["systemInstruction"] = value
            elif key in _ROOT_CONFIG_KEYS:
                payload[key] = value
            else:
                generation[key] = value
        if generation:
            payload["generationConfig"] = generation
        return payload

    async def generate_content(
        self,
        model: str,
        contents: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        client = self._get_client()
        payload = self.build_payload(contents, config)

        try:
            resp = await client.post(
                f"/models/{model}:generateContent",
                headers=self._headers(),
                content=json.dumps(payload),
            )
        except httpx.HTTPError as e:
            logger.error("Gemini request failed: %s", e)
            raise

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error("Gemini API error (%s): %s", resp.status_code, message)
            raise GeminiAPIError(message, resp.status_code, dict(resp.headers))

        data = resp.json()
        data["text"] = extract_text(data)
        return data


def extract_text(data: Dict[str, Any]) -> Optional[str]:
    candidates: List[Dict[str, Any]] = data.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
    if not texts:
        return None
    return "".join(texts)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return resp.text or f"HTTP {resp.status_code}"

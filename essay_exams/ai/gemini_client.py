from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from essay_exams.config import get_settings

logger = logging.getLogger(__name__)

GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class GeminiClient:
    """Thin async wrapper over the Gemini generateContent REST endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.gemini_api_key
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY is not configured")
        self.model = model or settings.gemini_model
        self.base_url = base_url or settings.gemini_base_url or GENERATE_URL.format(model=self.model)
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.grading_timeout_seconds,
            transport=transport,
        )

    async def generate_json(
        self,
        content: str,
        *,
        system_instruction: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
        temperature: float = 0.0,
    ) -> str:
        """Send one prompt and return the raw text of the first candidate."""
        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "responseMimeType": "application/json",
        }
        if response_schema is not None:
            generation_config["responseSchema"] = response_schema
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": content}]}],
            "generationConfig": generation_config,
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        r = await self._client.post(self.base_url, params={"key": self.api_key}, json=payload)
        r.raise_for_status()
        try:
            data = r.json()
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as err:
            raise RuntimeError(f"Unexpected Gemini response: {r.text[:500]}") from err

    async def aclose(self) -> None:
        await self._client.aclose()

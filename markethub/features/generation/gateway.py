"""
AI gateway client.

Thin httpx wrapper around the OpenAI-compatible chat completions endpoint.
Every call has a caller-side timeout and is not retried; transport errors,
non-2xx responses and empty completions raise ExternalServiceError.
"""
from typing import Any, Dict, List, Optional

import httpx

from markethub.core.config import settings
from markethub.core.errors import ExternalServiceError
from markethub.core.logging import log_event
from markethub.core.tracing import start_span


class AIGateway:
    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key or settings.AI_GATEWAY_API_KEY
        self.url = url or settings.AI_GATEWAY_URL
        self.timeout = timeout if timeout is not None else settings.AI_GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ExternalServiceError("AI gateway is not configured", code="ai_gateway_unconfigured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        with start_span("ai_gateway.request", {"model": payload.get("model")}):
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.post(self.url, headers=headers, json=payload)
            except httpx.TimeoutException:
                log_event("error", "ai_gateway.timeout", error_code="ai_gateway_timeout", extra={"model": payload.get("model")})
                raise ExternalServiceError("AI gateway timed out", code="ai_gateway_timeout")
            except httpx.HTTPError as e:
                log_event("error", "ai_gateway.transport_error", error_code="ai_gateway_error", extra={"error": str(e)})
                raise ExternalServiceError("AI gateway request failed")

        if response.status_code >= 300:
            log_event(
                "error",
                "ai_gateway.bad_status",
                error_code="ai_gateway_error",
                extra={"status": response.status_code, "body": response.text},
            )
            raise ExternalServiceError(
                "AI gateway request failed",
                details={"status": response.status_code},
            )

        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError("AI gateway returned invalid JSON")

    @staticmethod
    def _first_message(data: Dict[str, Any]) -> Dict[str, Any]:
        choices = data.get("choices") or []
        if not choices:
            raise ExternalServiceError("AI gateway returned no choices")
        return choices[0].get("message") or {}

    def complete(self, system: str, user: str, model: Optional[str] = None) -> str:
        """Single-turn text completion; returns the assistant content."""
        payload = {
            "model": model or settings.AI_TEXT_MODEL,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        content = self._first_message(self._post(payload)).get("content")
        if not content or not str(content).strip():
            raise ExternalServiceError("AI gateway returned empty content")
        return str(content).strip()

    def generate_image(self, prompt: str, image_url: Optional[str] = None, model: Optional[str] = None) -> str:
        """Image generation (optionally editing a source image); returns the image URL or data URI."""
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        if image_url:
            content.append({"type": "image_url", "image_url": {"url": image_url}})
        payload = {
            "model": model or settings.AI_IMAGE_MODEL,
            "messages": [{"role": "user", "content": content}],
            "modalities": ["image", "text"],
        }
        images = self._first_message(self._post(payload)).get("images") or []
        url = images[0].get("image_url", {}).get("url") if images else None
        if not url:
            raise ExternalServiceError("AI gateway returned no image")
        return url

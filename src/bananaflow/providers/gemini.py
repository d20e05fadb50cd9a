"""
Google Gemini Provider - Image and text generation via :generateContent.

Image requests go to a Gemini image model, text and JSON requests to a
Gemini text model. Reference images are sent as inline parts ahead of the
prompt.

API Reference:
- https://ai.google.dev/gemini-api/docs/image-generation
"""

from __future__ import annotations

import logging
import time
from typing import Any

import aiohttp

from bananaflow.core.media import format_data_url, inline_part
from bananaflow.providers.base import (
    AuthenticationError,
    GenerationError,
    GenerationRequest,
    GenerationResult,
    GenerationService,
    OutputFormat,
    ProviderConfig,
    RateLimitError,
    ServiceOverloadedError,
)


logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_TEXT_MODEL = "gemini-2.5-flash"


class GeminiService(GenerationService):
    """
    Google Gemini generation service.

    Handles both image output (Gemini image models) and text/JSON output
    (Gemini text models) through the same endpoint.
    """

    id = "gemini"
    name = "Google Gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, config: ProviderConfig, session: aiohttp.ClientSession | None = None):
        super().__init__(config)
        if config.base_url:
            self.base_url = config.base_url
        self._session = session

    @property
    def image_model(self) -> str:
        return self.config.image_model or DEFAULT_IMAGE_MODEL

    @property
    def text_model(self) -> str:
        return self.config.text_model or DEFAULT_TEXT_MODEL

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate images or text using :generateContent."""
        if not self.is_configured:
            raise AuthenticationError("API key is missing. Please provide a valid API key.")

        model_id = self.image_model if request.output is OutputFormat.IMAGE else self.text_model
        url = f"{self.base_url}/models/{model_id}:generateContent"

        started = time.monotonic()
        data = await self._post(url, self.build_body(request))
        result = self.parse_response(data)
        result.model_id = model_id
        result.generation_time = time.monotonic() - started
        return result

    def build_body(self, request: GenerationRequest) -> dict[str, Any]:
        """Build the :generateContent request body."""
        parts: list[dict[str, Any]] = [inline_part(img) for img in request.images]
        parts.append({"text": request.prompt})

        generation_config: dict[str, Any] = {}
        if request.output is OutputFormat.IMAGE:
            if request.aspect_ratio:
                generation_config["imageConfig"] = {"aspectRatio": request.aspect_ratio}
        elif request.output is OutputFormat.JSON:
            generation_config["responseMimeType"] = "application/json"
            if request.response_schema:
                generation_config["responseSchema"] = request.response_schema

        generation_config.update(request.extra_params)

        body: dict[str, Any] = {"contents": [{"parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    def parse_response(self, data: dict) -> GenerationResult:
        """Parse a :generateContent response into a GenerationResult."""
        images: list[str] = []
        texts: list[str] = []

        candidates = data.get("candidates") or []
        if candidates:
            for part in candidates[0].get("content", {}).get("parts", []):
                if "inlineData" in part:
                    inline = part["inlineData"]
                    images.append(format_data_url(inline["data"], inline.get("mimeType", "image/png")))
                elif "text" in part:
                    texts.append(part["text"])

        return GenerationResult(
            images=images,
            text="".join(texts) if texts else None,
        )

    async def _post(self, url: str, body: dict) -> dict:
        """Make POST request with JSON body and API key in query string."""
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        params = {"key": self.config.api_key}
        try:
            if self._session is not None:
                return await self._send(self._session, url, params, body, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, url, params, body, timeout)
        except aiohttp.ClientError as e:
            raise GenerationError(f"Network error: {e}") from e

    async def _send(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: dict[str, str],
        body: dict,
        timeout: aiohttp.ClientTimeout,
    ) -> dict:
        async with session.post(url, params=params, json=body, timeout=timeout) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {}
            self.check_error(resp.status, data, resp.headers.get("Retry-After"))
            return data

    def check_error(self, status: int, data: dict, retry_after: str | None = None) -> None:
        """Check for API errors."""
        message = (data.get("error") or {}).get("message", "Unknown error")
        if status == 401 or status == 403:
            raise AuthenticationError("Invalid Google API key")
        elif status == 429:
            error = RateLimitError(f"Google API rate limit exceeded: {message}")
            error.retry_after = _parse_retry_after(retry_after)
            raise error
        elif status == 503:
            error = ServiceOverloadedError(f"Google API overloaded: {message}")
            error.retry_after = _parse_retry_after(retry_after)
            raise error
        elif status >= 400:
            raise GenerationError(f"Google API error ({status}): {message}")


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logger.debug("Ignoring non-numeric Retry-After header: %s", value)
        return None

"""HTTP transport for the OpenAI-style chat completion endpoint."""

import json
import logging
from importlib import metadata
from typing import AsyncIterator

import httpx

from .errors import TransportError
from .messages import ChatCompletionRequest, ChatCompletionResponse, StreamChunk
from .streaming import decode_sse_stream

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT = 120.0
MAX_ERROR_BODY = 2000


def _user_agent() -> str:
    try:
        version = metadata.version("opencode-cli")
    except metadata.PackageNotFoundError:
        version = "unknown"
    return f"opencode-cli/{version}"


class ApiClient:
    """Async client for ``POST {base_url}/chat/completions``.

    One instance owns one ``httpx.AsyncClient``; close it with ``aclose()``
    or use the client as an async context manager.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.endpoint = f"{self.base_url}/chat/completions"
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "User-Agent": _user_agent(),
                "HTTP-Referer": "http://localhost:3000",
                "X-Title": "OpenCode CLI",
            },
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _transport_error(self, e: httpx.HTTPError) -> TransportError:
        if isinstance(e, httpx.TimeoutException):
            return TransportError(f"request to {self.endpoint} timed out: {e}")
        return TransportError(f"request to {self.endpoint} failed: {e}")

    async def chat_completion(
        self, request: ChatCompletionRequest
    ) -> ChatCompletionResponse:
        payload = request.to_dict()
        payload.pop("stream", None)
        logger.debug(
            "POST %s model=%s messages=%d",
            self.endpoint,
            request.model,
            len(request.messages),
        )
        try:
            response = await self._http.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e

        if not response.is_success:
            raise TransportError(
                f"API request failed with status {response.status_code}: "
                f"{response.text[:MAX_ERROR_BODY]}"
            )
        try:
            return ChatCompletionResponse.from_dict(response.json())
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            raise TransportError(
                f"Failed to parse API response from {self.endpoint}: {e}"
            ) from e

    async def chat_completion_stream(
        self, request: ChatCompletionRequest
    ) -> AsyncIterator[StreamChunk]:
        """Send the request with ``stream: true`` and yield decoded chunks."""
        payload = request.to_dict()
        payload["stream"] = True
        logger.debug("POST %s (stream) model=%s", self.endpoint, request.model)
        try:
            async with self._http.stream(
                "POST",
                self.endpoint,
                json=payload,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"API request failed with status {response.status_code}: "
                        f"{body[:MAX_ERROR_BODY]}"
                    )
                async for chunk in decode_sse_stream(response.aiter_bytes()):
                    yield chunk
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e

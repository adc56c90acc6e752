from collections.abc import Sequence
from typing import Any

import httpx

from relay.exceptions import (
    AuthFailure,
    MalformedResponse,
    TransportFailure,
    UpstreamFailure,
)
from relay.schemas import CompletionOptions, Turn

AUTH_STATUS_CODES = frozenset({401, 403})


class LLMClient:
    """Async client for OpenAI-compatible chat completion endpoints."""

    def __init__(
        self,
        base_url: str,
        model_name: str,
        api_key: str | None = None,
        temperature: float = 0.8,
        max_output_tokens: int = 500,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client and create an underlying HTTPX session."""
        self.base_url = base_url
        self.model_name = model_name
        self.api_key = api_key
        self._chat_url = f"{base_url}chat/completions"
        self.default_options = CompletionOptions(
            model=model_name,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=timeout,
            http2=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        """Create HTTP headers for completion requests."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def close(self) -> None:
        """Close the underlying HTTPX client."""
        await self._client.aclose()

    def _payload(
        self, transcript: Sequence[Turn], options: CompletionOptions
    ) -> dict[str, Any]:
        return {
            "model": options.model,
            "messages": [turn.model_dump() for turn in transcript],
            "temperature": options.temperature,
            "max_tokens": options.max_output_tokens,
        }

    @staticmethod
    def _extract_reply(data: Any) -> str:
        """Pull ``choices[0].message.content`` out of a response body."""
        if not isinstance(data, dict):
            raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}")

        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise MalformedResponse(f"No choices returned: {data}")

        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise MalformedResponse("Reply has no message content")

        reply = content.strip()
        if not reply:
            raise MalformedResponse("Reply content is empty")
        return reply

    async def complete(
        self,
        transcript: Sequence[Turn],
        options: CompletionOptions | None = None,
    ) -> str:
        """Send the transcript to the model and return its trimmed reply.

        Raises one of the ``CompletionError`` subclasses instead of
        returning a partial result. No retries are attempted.
        """
        options = options or self.default_options
        payload = self._payload(transcript, options)

        try:
            response = await self._client.post(self._chat_url, json=payload)
        except httpx.DecodingError as exc:
            raise MalformedResponse(f"Response body could not be decoded: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransportFailure(str(exc) or type(exc).__name__) from exc

        if response.status_code in AUTH_STATUS_CODES:
            raise AuthFailure(response.status_code, response.text[:200])
        if not response.is_success:
            raise UpstreamFailure(response.status_code, response.text[:200])

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse(f"Response body is not JSON: {exc}") from exc

        return self._extract_reply(data)

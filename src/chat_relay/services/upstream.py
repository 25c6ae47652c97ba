"""
Upstream completion provider invocation.

Builds the OpenAI-compatible request body, opens the streaming connection
and waits for the first body bytes before handing the stream to the relay:

    POST {UPSTREAM_URL}
    Authorization: Bearer {AZURE_API_KEY}
    {
        "messages": [{"role": "system", "content": "..."}, ...],
        "stream": true,
        "model": "DeepSeek-V3",
        "temperature": 0.7,
        "max_tokens": 2048,
        "top_p": 0.95
    }

Everything that can go wrong before the first byte (missing credential,
non-2xx status, connection failure, timeout, empty body) raises
``UpstreamError`` so the route can still answer with a plain 500. Failures
while reading the rest of the body raise ``StreamError``.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
import structlog

from chat_relay.config import RelaySettings
from chat_relay.services.errors import StreamError, UpstreamError
from chat_relay.services.validation import PartsContent, TextContent, Turn

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GenerationParams:
    model: str
    temperature: float
    max_tokens: int
    top_p: float


# ============================================================================
# Request Construction
# ============================================================================

def render_turn(turn: Turn) -> dict[str, Any]:
    """Render one turn in the provider's message format."""
    content = turn.content
    if isinstance(content, TextContent):
        return {"role": turn.role, "content": content.text}
    if isinstance(content, PartsContent):
        parts: list[dict[str, Any]] = []
        for part in content.parts:
            if part.kind == "text":
                parts.append({"type": "text", "text": part.value})
            else:
                parts.append({"type": "image_url", "image_url": {"url": part.value}})
        return {"role": turn.role, "content": parts}
    raise TypeError(f"Unsupported content variant: {type(content).__name__}")


def build_payload(
    turns: Sequence[Turn],
    system_prompt: str,
    params: GenerationParams,
) -> dict[str, Any]:
    """
    Build the streaming request body with the system turn prepended.

    Args:
        turns: Normalized conversation turns
        system_prompt: System prompt for this request
        params: Resolved generation parameters

    Returns:
        JSON-serializable provider request body
    """
    return {
        "messages": [
            {"role": "system", "content": system_prompt},
            *(render_turn(turn) for turn in turns),
        ],
        "stream": True,
        "model": params.model,
        "temperature": params.temperature,
        "max_tokens": params.max_tokens,
        "top_p": params.top_p,
    }


# ============================================================================
# Open Stream
# ============================================================================

class UpstreamStream:
    """
    An open upstream response whose first body bytes were already read.

    Iterate ``chunks()`` exactly once, then ``aclose()`` (idempotent) to
    release the pooled connection.
    """

    def __init__(self, response: httpx.Response, first_chunk: bytes, iterator: AsyncIterator[bytes]) -> None:
        self._response = response
        self._first_chunk = first_chunk
        self._iterator = iterator
        self.closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        yield self._first_chunk
        try:
            async for chunk in self._iterator:
                if chunk:
                    yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise StreamError("transport", f"Upstream stream interrupted: {e}") from e

    async def aclose(self) -> None:
        if not self.closed:
            self.closed = True
            await self._response.aclose()


class UpstreamInvoker:
    """Opens streaming chat completions against the configured provider."""

    def __init__(self, client: httpx.AsyncClient, settings: RelaySettings) -> None:
        self._client = client
        self._settings = settings

    async def open(
        self,
        turns: Sequence[Turn],
        system_prompt: str,
        params: GenerationParams,
    ) -> UpstreamStream:
        """
        Issue the streaming POST and wait for the first body bytes.

        The whole wait (connect, response headers, first bytes) is bounded by
        ``upstream_timeout``. No retries are attempted.

        Raises:
            UpstreamError: kind ``missing_credential``, ``http_status``,
                ``credential_rejected``, ``empty_body``, ``timeout`` or
                ``connection``
        """
        api_key = self._settings.upstream_api_key
        if not api_key:
            raise UpstreamError(
                "missing_credential",
                "Upstream API key is not configured",
                details="AZURE_API_KEY is not set",
            )

        request = self._client.build_request(
            "POST",
            self._settings.upstream_url,
            json=build_payload(turns, system_prompt, params),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "text/event-stream",
            },
        )

        logger.info(
            "upstream.open",
            model=params.model,
            turns=len(turns),
            url=self._settings.upstream_url,
        )

        try:
            return await asyncio.wait_for(self._start(request), timeout=self._settings.upstream_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                "timeout",
                "Upstream provider did not start streaming in time",
                details=f"No response within {self._settings.upstream_timeout:g}s",
            ) from e
        except httpx.TimeoutException as e:
            raise UpstreamError("timeout", "Upstream provider timed out", details=str(e) or type(e).__name__) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                "connection",
                "Could not reach upstream provider",
                details=str(e) or type(e).__name__,
            ) from e

    async def _start(self, request: httpx.Request) -> UpstreamStream:
        response = await self._client.send(request, stream=True)
        try:
            if not response.is_success:
                raise await _status_error(response)

            iterator = response.aiter_bytes().__aiter__()
            first_chunk = await _first_non_empty(iterator)
            if first_chunk is None:
                raise UpstreamError(
                    "empty_body",
                    "Upstream provider returned an empty body",
                    status_code=response.status_code,
                    details="Response body is empty",
                )
        except BaseException:
            await response.aclose()
            raise
        return UpstreamStream(response, first_chunk, iterator)


# ============================================================================
# Helpers
# ============================================================================

async def _first_non_empty(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    async for chunk in iterator:
        if chunk:
            return chunk
    return None


async def _status_error(response: httpx.Response) -> UpstreamError:
    status = response.status_code
    reason = response.reason_phrase
    body = await response.aread()

    provider_message: Optional[str] = None
    try:
        data = json.loads(body) if body else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            provider_message = error.get("message")
        elif isinstance(error, str):
            provider_message = error
        if provider_message is None and isinstance(data.get("message"), str):
            provider_message = data["message"]

    details = f"Upstream provider error: {status} {reason}".rstrip()
    if provider_message:
        details = f"{details} - {provider_message}"

    logger.warning(
        "upstream.status_error",
        status_code=status,
        reason=reason,
        provider_message=(provider_message or "")[:200],
    )

    kind = "credential_rejected" if status in (401, 403) else "http_status"
    return UpstreamError(kind, provider_message or reason or f"HTTP {status}", status_code=status, details=details)

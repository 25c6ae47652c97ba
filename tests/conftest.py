import json
from typing import Callable, Iterable, Optional

import httpx
import pytest

from chat_relay.config import RelaySettings
from chat_relay.services.observability import reset_observability
from chat_relay.services.upstream import UpstreamInvoker

UPSTREAM_URL = "https://upstream.test/chat/completions"


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the given reads, optionally failing afterwards."""

    def __init__(self, chunks: Iterable[bytes], error: Optional[Exception] = None) -> None:
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True


def delta(content: str) -> bytes:
    payload = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def sse_body(*fragments: str, done: bool = True) -> bytes:
    body = b"".join(delta(fragment) for fragment in fragments)
    if done:
        body += b"data: [DONE]\n\n"
    return body


def make_settings(**overrides) -> RelaySettings:
    values = {
        "upstream_url": UPSTREAM_URL,
        "upstream_api_key": "test-key",
        "upstream_timeout": 5.0,
        "message_store_backend": "memory",
    }
    values.update(overrides)
    return RelaySettings(_env_file=None, **values)


def make_invoker(handler: Callable, settings: Optional[RelaySettings] = None) -> UpstreamInvoker:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamInvoker(client, settings or make_settings())


@pytest.fixture
def settings() -> RelaySettings:
    return make_settings()


@pytest.fixture(autouse=True)
def _reset_observability():
    reset_observability()
    yield
    reset_observability()

import asyncio
import json

import httpx
import pytest
from conftest import UPSTREAM_URL, ChunkedStream, make_invoker, make_settings, sse_body

from chat_relay.services.errors import StreamError, UpstreamError
from chat_relay.services.upstream import GenerationParams, build_payload
from chat_relay.services.validation import validate_chat_request

PARAMS = GenerationParams(model="DeepSeek-V3", temperature=0.7, max_tokens=2048, top_p=0.95)


def _turns(**overrides):
    body = {"message": "Hi", "chatId": "c1", "userId": "u1", **overrides}
    return validate_chat_request(body).turns


def test_payload_prepends_system_turn():
    payload = build_payload(_turns(), "You are helpful", PARAMS)
    assert payload == {
        "messages": [
            {"role": "system", "content": "You are helpful"},
            {"role": "user", "content": "Hi"},
        ],
        "stream": True,
        "model": "DeepSeek-V3",
        "temperature": 0.7,
        "max_tokens": 2048,
        "top_p": 0.95,
    }


def test_payload_renders_image_parts():
    turns = _turns(
        message=None,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Look"},
                    {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}},
                ],
            }
        ],
    )
    payload = build_payload(turns, "sys", PARAMS)
    assert payload["messages"][1]["content"] == [
        {"type": "text", "text": "Look"},
        {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}},
    ]


@pytest.mark.asyncio
async def test_open_sends_bearer_and_streams_chunks():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, stream=ChunkedStream([b"", sse_body("Hel"), sse_body("lo")]))

    stream = await make_invoker(handler).open(_turns(), "sys", PARAMS)
    chunks = [chunk async for chunk in stream.chunks()]
    await stream.aclose()

    assert seen["url"] == UPSTREAM_URL
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["stream"] is True
    assert seen["body"]["messages"][0] == {"role": "system", "content": "sys"}
    assert b"".join(chunks) == sse_body("Hel") + sse_body("lo")
    assert stream.closed


@pytest.mark.asyncio
async def test_status_error_reports_reason():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, content=b"")

    with pytest.raises(UpstreamError) as exc_info:
        await make_invoker(handler).open(_turns(), "sys", PARAMS)
    error = exc_info.value
    assert error.kind == "http_status"
    assert error.upstream_status == 503
    assert error.details == "Upstream provider error: 503 Service Unavailable"


@pytest.mark.asyncio
async def test_status_error_includes_provider_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})

    with pytest.raises(UpstreamError) as exc_info:
        await make_invoker(handler).open(_turns(), "sys", PARAMS)
    assert exc_info.value.details == "Upstream provider error: 429 Too Many Requests - Rate limit exceeded"


@pytest.mark.asyncio
async def test_rejected_credential():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Bad credentials"}})

    with pytest.raises(UpstreamError) as exc_info:
        await make_invoker(handler).open(_turns(), "sys", PARAMS)
    assert exc_info.value.kind == "credential_rejected"


@pytest.mark.asyncio
async def test_empty_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=ChunkedStream([]))

    with pytest.raises(UpstreamError) as exc_info:
        await make_invoker(handler).open(_turns(), "sys", PARAMS)
    assert exc_info.value.kind == "empty_body"


@pytest.mark.asyncio
async def test_missing_credential_never_calls_upstream():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, stream=ChunkedStream([sse_body("x")]))

    invoker = make_invoker(handler, make_settings(upstream_api_key=None))
    with pytest.raises(UpstreamError) as exc_info:
        await invoker.open(_turns(), "sys", PARAMS)
    assert exc_info.value.kind == "missing_credential"
    assert calls == []


@pytest.mark.asyncio
async def test_first_bytes_timeout():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, stream=ChunkedStream([sse_body("late")]))

    invoker = make_invoker(handler, make_settings(upstream_timeout=0.05))
    with pytest.raises(UpstreamError) as exc_info:
        await invoker.open(_turns(), "sys", PARAMS)
    assert exc_info.value.kind == "timeout"


@pytest.mark.asyncio
async def test_connection_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError) as exc_info:
        await make_invoker(handler).open(_turns(), "sys", PARAMS)
    assert exc_info.value.kind == "connection"


@pytest.mark.asyncio
async def test_read_error_mid_stream_becomes_stream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            stream=ChunkedStream([sse_body("Hel", done=False)], error=httpx.ReadError("connection reset")),
        )

    stream = await make_invoker(handler).open(_turns(), "sys", PARAMS)
    received = []
    with pytest.raises(StreamError) as exc_info:
        async for chunk in stream.chunks():
            received.append(chunk)
    await stream.aclose()
    assert received == [sse_body("Hel", done=False)]
    assert exc_info.value.kind == "transport"

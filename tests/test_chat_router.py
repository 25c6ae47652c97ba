import httpx
import pytest
from conftest import ChunkedStream, make_invoker, make_settings, sse_body

from chat_relay.config import get_settings
from chat_relay.dependencies import get_message_store, get_upstream_invoker
from chat_relay.main import app
from chat_relay.services.message_store import InMemoryMessageStore


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def wire(store):
    """Point the app at a mock upstream; returns a function taking a handler and settings overrides."""

    def _wire(handler, **overrides):
        settings = make_settings(**overrides)
        invoker = make_invoker(handler, settings)
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_message_store] = lambda: store
        app.dependency_overrides[get_upstream_invoker] = lambda: invoker

    yield _wire
    app.dependency_overrides.clear()


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_streams_completion(wire, store):
    wire(lambda request: httpx.Response(200, stream=ChunkedStream([sse_body("Hel", "lo")])))

    async with _client() as client:
        response = await client.post("/api/chat", json={"message": "Hi", "chatId": "c1", "userId": "u1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["connection"] == "keep-alive"
    assert response.headers["x-accel-buffering"] == "no"
    assert response.text == 'data: {"content":"Hel"}\n\ndata: {"content":"lo"}\n\ndata: [DONE]\n\n'
    assert [(m.role, m.content) for m in store.list_messages("c1")] == [("user", "Hi"), ("assistant", "Hello")]


@pytest.mark.asyncio
async def test_missing_chat_id_is_400(wire, store):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, stream=ChunkedStream([sse_body("x")]))

    wire(handler)

    async with _client() as client:
        response = await client.post("/api/chat", json={"message": "Hi", "userId": "u1"})

    assert response.status_code == 400
    body = response.json()
    assert body["kind"] == "missing_fields"
    assert "chatId" in body["error"]
    assert body["fields"] == ["chatId"]
    assert body["received"] == ["message", "userId"]
    assert calls == []
    assert store.list_messages("c1") == []


@pytest.mark.asyncio
async def test_invalid_json_is_400(wire):
    wire(lambda request: httpx.Response(200))

    async with _client() as client:
        response = await client.post(
            "/api/chat",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

    assert response.status_code == 400
    assert response.json()["kind"] == "invalid_json"


@pytest.mark.asyncio
async def test_upstream_unavailable_is_500(wire, store):
    wire(lambda request: httpx.Response(503))

    async with _client() as client:
        response = await client.post("/api/chat", json={"message": "Hi", "chatId": "c1", "userId": "u1"})

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    body = response.json()
    assert body["error"] == "Failed to process request"
    assert "Service Unavailable" in body["details"]
    assert [m.role for m in store.list_messages("c1")] == ["user"]


@pytest.mark.asyncio
async def test_require_auth_rejects_anonymous_caller(wire, store):
    wire(lambda request: httpx.Response(200, stream=ChunkedStream([sse_body("x")])), require_auth=True)

    async with _client() as client:
        response = await client.post("/api/chat", json={"message": "Hi", "chatId": "c1", "userId": "u1"})

    assert response.status_code == 401
    assert response.json()["kind"] == "missing_identity"
    assert store.list_messages("c1") == []


@pytest.mark.asyncio
async def test_health_endpoints(wire):
    wire(lambda request: httpx.Response(200))

    async with _client() as client:
        health = await client.get("/health")
        live = await client.get("/health/live")
        metrics = await client.get("/internal/metrics")

    assert health.json()["status"] == "ok"
    assert live.json() == {"status": "alive"}
    assert metrics.json() == {"metrics": {}}


@pytest.mark.asyncio
async def test_require_auth_checked_before_body(wire):
    wire(lambda request: httpx.Response(200), require_auth=True)

    async with _client() as client:
        response = await client.post("/api/chat", json={"message": "Hi"})

    assert response.status_code == 401
    assert response.json()["kind"] == "missing_identity"


@pytest.mark.asyncio
async def test_require_auth_rejects_mismatched_user(wire, store):
    wire(lambda request: httpx.Response(200, stream=ChunkedStream([sse_body("x")])), require_auth=True)

    async with _client() as client:
        response = await client.post(
            "/api/chat",
            json={"message": "Hi", "chatId": "c1", "userId": "u1"},
            headers={"X-User-Id": "u2"},
        )

    assert response.status_code == 401
    assert response.json()["kind"] == "identity_mismatch"
    assert store.list_messages("c1") == []

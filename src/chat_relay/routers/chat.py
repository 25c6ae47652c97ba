"""
Chat relay router.

Implements POST /api/chat: validates the browser's request, persists the
user's turn, relays the provider's completion stream as Server-Sent Events
and persists the assistant's reply when the stream ends.

Request Schema:
{
    "message": "Hi",                          # message and/or messages
    "messages": [{"role": "user", "content": "Hi"}],
    "chatId": "c1",                           # Required
    "userId": "u1",                           # Required
    "systemPrompt": "...",                    # Optional
    "model": "DeepSeek-V3",                   # Optional (selection policy otherwise)
    "temperature": 0.7,                       # Optional
    "maxTokens": 2048,                        # Optional
    "topP": 0.95,                             # Optional
    "attachments": ["file-id"]                # Optional
}

Success Response (200, text/event-stream):
    data: {"content":"Hel"}

    data: {"content":"lo"}

    data: [DONE]

Error Responses:
    400 {"error": "Missing required fields: chatId are required", "kind": "missing_fields", ...}
    401 {"error": "Caller identity could not be established", "kind": "missing_identity"}
    500 {"error": "Failed to process request", "kind": "http_status", "details": "..."}

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import json

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from chat_relay.config import RelaySettings, get_settings
from chat_relay.dependencies import get_message_store, get_model_selector, get_upstream_invoker
from chat_relay.services.errors import ValidationError
from chat_relay.services.events import STREAM_HEADERS
from chat_relay.services.message_store import MessageStore
from chat_relay.services.model_policy import ModelSelector
from chat_relay.services.relay import ChatRelay
from chat_relay.services.request_context import bind_caller_context, identify_caller
from chat_relay.services.upstream import UpstreamInvoker

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/api/chat")
async def relay_chat(
    request: Request,
    settings: RelaySettings = Depends(get_settings),
    store: MessageStore = Depends(get_message_store),
    invoker: UpstreamInvoker = Depends(get_upstream_invoker),
    selector: ModelSelector = Depends(get_model_selector),
) -> StreamingResponse:
    """
    Relay a chat completion stream to the browser.

    Errors raised here (ValidationError, AuthenticationError, UpstreamError)
    are mapped to JSON responses by the application exception handlers;
    nothing has been streamed at that point.

    Args:
        request: Incoming HTTP request (JSON body)
        settings: Relay settings (injected)
        store: Message store (injected)
        invoker: Upstream invoker (injected)
        selector: Model selection strategy (injected)

    Returns:
        StreamingResponse with text/event-stream media type
    """
    identity = identify_caller(request, settings.require_auth)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(
            kind="invalid_json",
            message="Request body must be valid JSON",
            fields=["body"],
        ) from e

    relay = ChatRelay(settings, store, invoker, selector)
    chat_request = relay.validate(body)
    context = bind_caller_context(identity, chat_request.user_id, settings.require_auth)

    logger.info(
        "chat.relay.accepted",
        chat_id=chat_request.chat_id,
        model=relay.model,
        turns=len(chat_request.turns),
        attachments=len(chat_request.attachments),
    )

    frames = await relay.start(chat_request, context)

    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )

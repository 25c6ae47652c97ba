r"""
Client-facing SSE wire format.

Frames written to the browser:

    data: {"content":"Hel"}\n\n            one per content fragment, in order
    data: [DONE]\n\n                        terminal sentinel
    event: error\ndata: {...}\n\n           in-band failure after streaming began
"""
from typing import Optional

from pydantic import BaseModel

DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"data: {DONE_SENTINEL}\n\n"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class ContentEvent(BaseModel):
    content: str


class ErrorEvent(BaseModel):
    error: str
    kind: str
    details: Optional[str] = None


def content_frame(fragment: str) -> str:
    return f"data: {ContentEvent(content=fragment).model_dump_json()}\n\n"


def error_frame(message: str, kind: str, details: Optional[str] = None) -> str:
    payload = ErrorEvent(error=message, kind=kind, details=details)
    return f"event: error\ndata: {payload.model_dump_json(exclude_none=True)}\n\n"

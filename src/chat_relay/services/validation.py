"""
Inbound chat request validation and normalization.

Turns the raw JSON body posted by the browser into a ``ChatRequest``:

    {
        "message": "Hi",                       # and/or
        "messages": [{"role": "user", "content": "Hi"}],
        "chatId": "c1",                        # Required
        "userId": "u1",                        # Required
        "systemPrompt": "...",                 # Optional
        "model": "DeepSeek-V3",                # Optional
        "temperature": 0.7,                    # Optional
        "maxTokens": 2048,                     # Optional
        "topP": 0.95,                          # Optional
        "attachments": ["file-1"]              # Optional
    }

Turn content is either plain text or a list of OpenAI-style parts
(``{"type": "text", "text": ...}`` / ``{"type": "image_url", ...}``),
represented as the ``TextContent`` / ``PartsContent`` variants so callers
branch on the tag instead of probing shapes.

Validation is a pure transform; nothing is persisted here.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
from typing import Annotated, Any, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from chat_relay.services.errors import ValidationError

logger = structlog.get_logger(__name__)

Role = Literal["system", "user", "assistant"]


# ============================================================================
# Content Variants
# ============================================================================

class ContentPart(BaseModel):
    """A single multimodal part. ``value`` is text or an image URL."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["text", "image"]
    value: str


class TextContent(BaseModel):
    """Plain text turn content."""
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str

    def plain_text(self) -> str:
        return self.text


class PartsContent(BaseModel):
    """Multimodal turn content made of ordered parts."""
    model_config = ConfigDict(frozen=True)

    type: Literal["parts"] = "parts"
    parts: tuple[ContentPart, ...]

    def plain_text(self) -> str:
        return "\n".join(part.value for part in self.parts if part.kind == "text")


Content = Annotated[Union[TextContent, PartsContent], Field(discriminator="type")]


class Turn(BaseModel):
    """One conversation turn after normalization."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: Content


class ChatRequest(BaseModel):
    """
    Normalized chat request handed to the orchestrator.

    Attributes:
        chat_id: Target conversation
        user_id: Caller identity claimed by the body
        turns: Non-empty ordered turns; the last one has role "user"
        system_prompt: Caller-supplied system prompt (None = relay default)
        model: Explicitly requested model (None = selection policy decides)
        temperature / max_tokens / top_p: Generation overrides (None = defaults)
        attachments: Opaque attachment identifiers for the latest user turn
    """
    model_config = ConfigDict(frozen=True)

    chat_id: str
    user_id: str
    turns: tuple[Turn, ...]
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    attachments: tuple[str, ...] = ()

    @property
    def last_turn(self) -> Turn:
        return self.turns[-1]


# ============================================================================
# Raw Body Schema
# ============================================================================

class _RawMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: Union[str, List[dict[str, Any]]]


class _RawChatBody(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message: Optional[str] = None
    messages: Optional[List[_RawMessage]] = None
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", gt=0)
    top_p: Optional[float] = Field(default=None, alias="topP", ge=0.0, le=1.0)
    attachments: List[str] = Field(default_factory=list)


# ============================================================================
# Public API
# ============================================================================

def validate_chat_request(body: Any) -> ChatRequest:
    """
    Validate and normalize a raw chat request body.

    Args:
        body: Decoded JSON body

    Returns:
        ChatRequest with a non-empty turn sequence ending in a user turn

    Raises:
        ValidationError: kind ``invalid_fields`` for wrong types or values,
            ``missing_fields`` listing every absent required field,
            ``no_user_message`` when ``messages`` has no user turn,
            ``last_turn_not_user`` when the final turn is not from the user
    """
    if not isinstance(body, dict):
        raise ValidationError(
            kind="invalid_fields",
            message="Request body must be a JSON object",
            fields=["body"],
        )

    received = sorted(str(key) for key in body.keys())

    try:
        raw = _RawChatBody.model_validate(body)
    except PydanticValidationError as exc:
        fields = _error_fields(exc)
        raise ValidationError(
            kind="invalid_fields",
            message=f"Invalid fields: {', '.join(fields)}",
            fields=fields,
            received=received,
        ) from exc

    missing: list[str] = []
    if not raw.messages and not raw.message:
        missing.append("messages")
    if not raw.chat_id:
        missing.append("chatId")
    if not raw.user_id:
        missing.append("userId")

    if missing:
        raise ValidationError(
            kind="missing_fields",
            message=f"Missing required fields: {', '.join(missing)} are required",
            fields=missing,
            received=received,
        )

    if raw.messages:
        if raw.message:
            logger.debug("validation.message_ignored", reason="messages takes precedence")
        turns = tuple(_normalize_message(m, i) for i, m in enumerate(raw.messages))
    else:
        turns = (Turn(role="user", content=TextContent(text=raw.message)),)

    if not any(turn.role == "user" for turn in turns):
        raise ValidationError(
            kind="no_user_message",
            message="No user message found in the messages array",
            fields=["messages"],
            received=received,
        )

    if turns[-1].role != "user":
        raise ValidationError(
            kind="last_turn_not_user",
            message="The last message must have role 'user'",
            fields=[f"messages[{len(turns) - 1}].role"],
            received=received,
        )

    return ChatRequest(
        chat_id=raw.chat_id,
        user_id=raw.user_id,
        turns=turns,
        system_prompt=raw.system_prompt or None,
        model=raw.model or None,
        temperature=raw.temperature,
        max_tokens=raw.max_tokens,
        top_p=raw.top_p,
        attachments=tuple(raw.attachments),
    )


# ============================================================================
# Helpers
# ============================================================================

def _normalize_message(message: _RawMessage, index: int) -> Turn:
    if isinstance(message.content, str):
        return Turn(role=message.role, content=TextContent(text=message.content))

    parts: list[ContentPart] = []
    for part_index, part in enumerate(message.content):
        part_type = part.get("type")
        if part_type == "text" and isinstance(part.get("text"), str):
            parts.append(ContentPart(kind="text", value=part["text"]))
        elif part_type == "image_url":
            image = part.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            if not isinstance(url, str) or not url:
                raise _invalid_part(index, part_index)
            parts.append(ContentPart(kind="image", value=url))
        else:
            raise _invalid_part(index, part_index)

    if not parts:
        raise ValidationError(
            kind="invalid_fields",
            message=f"messages[{index}].content must not be empty",
            fields=[f"messages[{index}].content"],
        )
    return Turn(role=message.role, content=PartsContent(parts=tuple(parts)))


def _invalid_part(index: int, part_index: int) -> ValidationError:
    field = f"messages[{index}].content[{part_index}]"
    return ValidationError(
        kind="invalid_fields",
        message=f"Unsupported content part at {field}",
        fields=[field],
    )


def _error_fields(exc: PydanticValidationError) -> list[str]:
    fields: list[str] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        name = ""
        for item in loc:
            if isinstance(item, int):
                name += f"[{item}]"
            else:
                name += f".{item}" if name else str(item)
        if name and name not in fields:
            fields.append(name)
    return fields

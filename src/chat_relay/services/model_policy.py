"""Upstream model selection strategy and allowed-family policy."""
from __future__ import annotations

from typing import Protocol

import structlog

from chat_relay.config import RelaySettings
from chat_relay.services.errors import ValidationError
from chat_relay.services.validation import ChatRequest, PartsContent

logger = structlog.get_logger(__name__)


class ModelSelector(Protocol):
    """Picks the upstream model identifier for a validated request."""

    def select(self, request: ChatRequest) -> str: ...


class HeuristicModelSelector:
    """
    Default selection policy.

    An explicitly requested model always wins. Otherwise attachments (or
    image parts in the latest turn) select the vision model, a system prompt
    containing the reasoning trigger selects the reasoning model, and
    everything else falls back to the default model.
    """

    def __init__(self, settings: RelaySettings) -> None:
        self._settings = settings

    def select(self, request: ChatRequest) -> str:
        if request.model:
            return request.model
        if request.attachments or _has_image(request):
            return self._settings.vision_model
        trigger = self._settings.reasoning_trigger
        if trigger and request.system_prompt and trigger in request.system_prompt:
            return self._settings.reasoning_model
        return self._settings.default_model


def _has_image(request: ChatRequest) -> bool:
    content = request.last_turn.content
    return isinstance(content, PartsContent) and any(p.kind == "image" for p in content.parts)


def is_model_allowed(model_id: str, allowed_families: tuple[str, ...]) -> bool:
    """Determine if the requested model belongs to an allowed family."""
    if not allowed_families:
        return True
    model_lower = model_id.lower()
    return any(model_lower.startswith(family.lower()) for family in allowed_families)


def resolve_model(selector: ModelSelector, request: ChatRequest, settings: RelaySettings) -> str:
    """Run the selector and enforce the allowed-family policy."""
    model = selector.select(request)
    if not is_model_allowed(model, settings.get_allowed_models()):
        logger.warning("model_policy.rejected", model=model)
        raise ValidationError(
            kind="unsupported_model",
            message=f"The model '{model}' is not available",
            fields=["model"],
        )
    return model

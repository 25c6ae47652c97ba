"""
Streaming relay orchestrator.

One ``ChatRelay`` instance handles exactly one inbound request and walks the
state machine:

    RECEIVED -> VALIDATED -> USER_MESSAGE_PERSISTED -> UPSTREAM_STREAMING -> COMPLETED
        |            |                  |                       |
        +------------+------------------+-----------------------+-> FAILED

Before streaming begins, failures are raised (ValidationError -> 400,
UpstreamError -> 500) and nothing has been written to the client. Once
streaming begins, failures are reported in-band and the fallback assistant
message is persisted.

A client disconnect cancels the relay: the upstream response is closed and
no assistant message is persisted.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import asyncio
import time
from enum import Enum
from typing import Any, AsyncIterator, Optional

import structlog

from chat_relay.config import RelaySettings
from chat_relay.services import observability
from chat_relay.services.errors import RelayError, UpstreamError, ValidationError
from chat_relay.services.events import DONE_FRAME, content_frame, error_frame
from chat_relay.services.finalizer import ResponseFinalizer, append_logged
from chat_relay.services.message_store import MessageStore, NewMessage
from chat_relay.services.model_policy import ModelSelector, resolve_model
from chat_relay.services.request_context import CallerContext
from chat_relay.services.sse_parser import SSEChunkParser
from chat_relay.services.upstream import GenerationParams, UpstreamInvoker, UpstreamStream
from chat_relay.services.validation import ChatRequest, validate_chat_request

logger = structlog.get_logger(__name__)


class RelayState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    UPSTREAM_STREAMING = "upstream_streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[RelayState, frozenset[RelayState]] = {
    RelayState.RECEIVED: frozenset({RelayState.VALIDATED, RelayState.FAILED}),
    RelayState.VALIDATED: frozenset({RelayState.USER_MESSAGE_PERSISTED, RelayState.FAILED}),
    RelayState.USER_MESSAGE_PERSISTED: frozenset({RelayState.UPSTREAM_STREAMING, RelayState.FAILED}),
    RelayState.UPSTREAM_STREAMING: frozenset({RelayState.COMPLETED, RelayState.FAILED}),
    RelayState.COMPLETED: frozenset(),
    RelayState.FAILED: frozenset(),
}


class ChatRelay:
    """
    Orchestrates one chat request from raw body to persisted reply.

    Usage:
        relay = ChatRelay(settings, store, invoker, selector)
        request = relay.validate(body)
        frames = await relay.start(request, context)   # may raise UpstreamError
        async for frame in frames:
            ...

    Attributes:
        state: Current RelayState
        model: Upstream model chosen during validation
        failure: The error that moved the relay to FAILED, if any
    """

    def __init__(
        self,
        settings: RelaySettings,
        store: MessageStore,
        invoker: UpstreamInvoker,
        selector: ModelSelector,
    ) -> None:
        self._settings = settings
        self._store = store
        self._invoker = invoker
        self._selector = selector
        self._log = logger
        self.state: RelayState = RelayState.RECEIVED
        self.model: Optional[str] = None
        self.failure: Optional[BaseException] = None
        self.finalizer: Optional[ResponseFinalizer] = None

    # ------------------------------------------------------------------------
    # RECEIVED -> VALIDATED
    # ------------------------------------------------------------------------

    def validate(self, body: Any) -> ChatRequest:
        """
        Validate the raw body and resolve the upstream model.

        Raises:
            ValidationError: Request is malformed or the model is not allowed
        """
        try:
            request = validate_chat_request(body)
            self.model = resolve_model(self._selector, request, self._settings)
        except ValidationError as e:
            self._fail(e)
            self._log.warning("relay.validation_failed", kind=e.kind, fields=e.fields)
            raise

        self._log = logger.bind(chat_id=request.chat_id, model=self.model)
        self._transition(RelayState.VALIDATED)
        return request

    # ------------------------------------------------------------------------
    # VALIDATED -> USER_MESSAGE_PERSISTED -> UPSTREAM_STREAMING
    # ------------------------------------------------------------------------

    async def start(self, request: ChatRequest, context: CallerContext) -> AsyncIterator[str]:
        """
        Persist the user's turn, open the upstream stream, and return the
        client frame iterator.

        Args:
            request: Output of ``validate``
            context: Caller identity for message store calls

        Returns:
            Async iterator of SSE frames for the client

        Raises:
            UpstreamError: The provider could not be opened (nothing streamed)
        """
        if self.state is not RelayState.VALIDATED:
            raise RuntimeError(f"start() requires state VALIDATED, got {self.state.value}")

        last_turn = request.last_turn
        await append_logged(
            self._store,
            request.chat_id,
            NewMessage(
                role="user",
                content=last_turn.content.plain_text(),
                attachments=request.attachments,
            ),
            context,
        )
        self._transition(RelayState.USER_MESSAGE_PERSISTED)

        params = GenerationParams(
            model=self.model or self._settings.default_model,
            temperature=_or_default(request.temperature, self._settings.default_temperature),
            max_tokens=_or_default(request.max_tokens, self._settings.default_max_tokens),
            top_p=_or_default(request.top_p, self._settings.default_top_p),
        )
        system_prompt = request.system_prompt or self._settings.default_system_prompt

        try:
            with observability.timed(observability.UPSTREAM_OPEN):
                upstream = await self._invoker.open(request.turns, system_prompt, params)
        except UpstreamError as e:
            self._fail(e)
            self._log.error(
                "relay.upstream_failed",
                kind=e.kind,
                upstream_status=e.upstream_status,
                details=e.details,
            )
            raise

        self._transition(RelayState.UPSTREAM_STREAMING)
        self.finalizer = ResponseFinalizer(
            self._store,
            request.chat_id,
            context,
            self._settings.fallback_error_message,
        )
        return self._relay(upstream, self.finalizer)

    # ------------------------------------------------------------------------
    # UPSTREAM_STREAMING -> COMPLETED | FAILED
    # ------------------------------------------------------------------------

    async def _relay(self, upstream: UpstreamStream, finalizer: ResponseFinalizer) -> AsyncIterator[str]:
        parser = SSEChunkParser()
        started = time.perf_counter()
        self._log.info("relay.stream.start")

        try:
            try:
                async for chunk in upstream.chunks():
                    for fragment in parser.feed(chunk):
                        yield content_frame(fragment)
                for fragment in parser.flush():
                    yield content_frame(fragment)
            except Exception as e:
                if not parser.done:
                    async for frame in self._fail_stream(e, parser, finalizer):
                        yield frame
                    return
                # The answer is complete once [DONE] was seen
                self._log.warning(
                    "relay.stream.drain_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    fragments=parser.fragments,
                )

            if not parser.done:
                self._log.warning("relay.stream.missing_done_sentinel", fragments=parser.fragments)

            await finalizer.complete(parser.accumulated)
            self._transition(RelayState.COMPLETED)
            self._log.info(
                "relay.stream.complete",
                fragments=parser.fragments,
                recovered=parser.recovered,
                skipped=parser.skipped,
                ignored_after_done=parser.ignored_after_done,
                chars=len(parser.accumulated),
            )
            yield DONE_FRAME
        except (asyncio.CancelledError, GeneratorExit) as e:
            if self.state is RelayState.UPSTREAM_STREAMING:
                self._fail(e)
                self._log.info(
                    "relay.stream.client_disconnected",
                    fragments=parser.fragments,
                    chars=len(parser.accumulated),
                )
            raise
        finally:
            await upstream.aclose()
            observability.record_metric(
                observability.STREAM,
                (time.perf_counter() - started) * 1000,
                self.state is RelayState.COMPLETED,
            )

    async def _fail_stream(
        self,
        error: Exception,
        parser: SSEChunkParser,
        finalizer: ResponseFinalizer,
    ) -> AsyncIterator[str]:
        self._fail(error)
        if isinstance(error, RelayError):
            kind, details = error.kind, error.message
            self._log.error(
                "relay.stream.failed",
                kind=kind,
                error=details,
                fragments=parser.fragments,
            )
        else:
            kind, details = "internal", None
            self._log.exception("relay.stream.unexpected_error", fragments=parser.fragments)

        await finalizer.fail()
        yield error_frame(self._settings.fallback_error_message, kind, details)
        yield DONE_FRAME

    # ------------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------------

    def _transition(self, target: RelayState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal relay transition {self.state.value} -> {target.value}")
        self._log.debug("relay.state", from_state=self.state.value, to_state=target.value)
        self.state = target

    def _fail(self, error: BaseException) -> None:
        self.failure = error
        if self.state is not RelayState.FAILED:
            self._transition(RelayState.FAILED)


def _or_default(value, default):
    return default if value is None else value

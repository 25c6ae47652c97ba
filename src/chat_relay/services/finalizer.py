"""Bridges the end of an upstream stream to the message store."""
from typing import Optional

import structlog

from chat_relay.services import observability
from chat_relay.services.errors import PersistenceError
from chat_relay.services.message_store import MessageStore, NewMessage
from chat_relay.services.request_context import CallerContext

logger = structlog.get_logger(__name__)


class ResponseFinalizer:
    """
    Persists the assistant turn of one relay invocation, at most once.

    ``complete`` records the full accumulated text (an empty completion is
    still recorded); ``fail`` records the fixed fallback message instead.
    Persistence failures are logged and counted, never raised.
    """

    def __init__(
        self,
        store: MessageStore,
        chat_id: str,
        context: CallerContext,
        fallback_message: str,
    ) -> None:
        self._store = store
        self._chat_id = chat_id
        self._context = context
        self._fallback_message = fallback_message
        self.persisted: bool = False
        self.message_id: Optional[str] = None

    async def complete(self, text: str) -> Optional[str]:
        return await self._persist(text, outcome="completed")

    async def fail(self) -> Optional[str]:
        return await self._persist(self._fallback_message, outcome="failed")

    async def _persist(self, content: str, outcome: str) -> Optional[str]:
        if self.persisted:
            logger.warning("finalizer.already_persisted", chat_id=self._chat_id, outcome=outcome)
            return self.message_id
        self.persisted = True

        self.message_id = await append_logged(
            self._store,
            self._chat_id,
            NewMessage(role="assistant", content=content),
            self._context,
        )
        if self.message_id is not None:
            logger.info(
                "finalizer.persisted",
                chat_id=self._chat_id,
                outcome=outcome,
                content_length=len(content),
            )
        return self.message_id


async def append_logged(
    store: MessageStore,
    chat_id: str,
    message: NewMessage,
    context: CallerContext,
) -> Optional[str]:
    """
    Append through the store, swallowing and reporting any failure.

    Returns:
        The message id, or None when the append failed
    """
    with observability.timed(observability.STORE_APPEND) as outcome:
        try:
            return await store.append(chat_id, message, context)
        except Exception as e:
            outcome.fail()
            error = e if isinstance(e, PersistenceError) else PersistenceError("append_failed", str(e), chat_id=chat_id)
            logger.error(
                "relay.persist.failed",
                chat_id=chat_id,
                role=message.role,
                kind=error.kind,
                error=error.message,
                error_type=type(e).__name__,
            )
            observability.emit_audit_event(
                "message_store.append_failed",
                chat_id=chat_id,
                role=message.role,
                user_id=context.user_id,
            )
            return None

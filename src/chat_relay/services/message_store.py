"""
Append-only message store used by the relay.

Contract:
    await store.append(chat_id, NewMessage(role, content, attachments), context) -> message id

The caller's identity travels in ``context`` on every call; backends never
read identity from process-wide state.

Backends:
    - InMemoryMessageStore: per-chat ordered lists, for development and tests
    - SqlMessageStore: SQLModel tables via async SQLAlchemy

Every backend failure surfaces as ``PersistenceError``.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Optional, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_relay.db.engine import session_scope
from chat_relay.db.models import Chat, ChatMessage, make_title
from chat_relay.services.errors import PersistenceError
from chat_relay.services.request_context import CallerContext

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NewMessage:
    role: Literal["user", "assistant", "system"]
    content: str
    attachments: tuple[str, ...] = ()


@dataclass(frozen=True)
class StoredMessage:
    id: str
    chat_id: str
    role: str
    content: str
    attachments: tuple[str, ...]
    timestamp: datetime


class MessageStore(Protocol):
    async def append(self, chat_id: str, message: NewMessage, context: CallerContext) -> str: ...


# ============================================================================
# In-Memory Backend
# ============================================================================

@dataclass
class InMemoryMessageStore:
    """Process-local store. Appends for one chat are serialized by a lock."""

    _chats: dict[str, list[StoredMessage]] = field(default_factory=lambda: defaultdict(list))
    _owners: dict[str, str] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def append(self, chat_id: str, message: NewMessage, context: CallerContext) -> str:
        stored = StoredMessage(
            id=uuid.uuid4().hex,
            chat_id=chat_id,
            role=message.role,
            content=message.content,
            attachments=message.attachments,
            timestamp=datetime.now(timezone.utc),
        )
        async with self._lock:
            self._owners.setdefault(chat_id, context.user_id)
            self._chats[chat_id].append(stored)
        logger.debug(
            "message_store.appended",
            backend="memory",
            chat_id=chat_id,
            role=message.role,
            content_length=len(message.content),
        )
        return stored.id

    def list_messages(self, chat_id: str) -> list[StoredMessage]:
        return list(self._chats.get(chat_id, ()))

    def owner_of(self, chat_id: str) -> Optional[str]:
        return self._owners.get(chat_id)


# ============================================================================
# SQL Backend
# ============================================================================

class SqlMessageStore:
    """
    SQLModel-backed store.

    ``append`` inserts the message and bumps ``chat.updated_at`` in one
    transaction. A chat row that does not exist yet is created, owned by the
    calling user and titled from the message.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, chat_id: str, message: NewMessage, context: CallerContext) -> str:
        now = datetime.now(timezone.utc)
        try:
            async with session_scope(self._session_factory) as session:
                chat = await session.get(Chat, chat_id)
                if chat is None:
                    chat = Chat(
                        id=chat_id,
                        user_id=context.user_id,
                        title=make_title(message.content),
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(chat)
                    # Parent row must exist before the message row
                    await session.flush()
                else:
                    chat.updated_at = now
                    session.add(chat)

                row = ChatMessage(
                    chat_id=chat_id,
                    role=message.role,
                    content=message.content,
                    attachments=list(message.attachments) or None,
                    created_at=now,
                )
                session.add(row)
                message_id = str(row.id)
        except SQLAlchemyError as e:
            raise PersistenceError("append_failed", f"Failed to append message: {e}", chat_id=chat_id) from e

        logger.debug(
            "message_store.appended",
            backend="sql",
            chat_id=chat_id,
            role=message.role,
            content_length=len(message.content),
        )
        return message_id

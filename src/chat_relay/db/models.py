"""
SQLModel database models for the SQL-backed message store.

Defines the database schema for:
    - Chat: Conversation header (owner, title, timestamps)
    - ChatMessage: Individual turns within a chat, append-only

Chat ids are opaque strings chosen by the client; message ids are UUIDs.
All timestamps are UTC.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, Relationship, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Chat(SQLModel, table=True):
    """
    Conversation header.

    Attributes:
        id: Client-chosen chat identifier
        user_id: Owner of the chat
        title: First message excerpt (30 chars, "..." when truncated)
        is_starred: Whether the user starred the chat
        created_at: UTC timestamp of creation
        updated_at: UTC timestamp of the last appended message
        messages: Related ChatMessage rows (relationship)

    Table: chat
    """
    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    title: str = Field(default="New Chat")
    is_starred: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow, index=True)

    messages: List["ChatMessage"] = Relationship(back_populates="chat")


class ChatMessage(SQLModel, table=True):
    """
    Chat message model.

    Attributes:
        id: Unique message identifier (UUID)
        chat_id: Parent chat ID (foreign key)
        role: Message author role ('user', 'assistant', 'system')
        content: Message text content
        attachments: Attachment identifiers sent with the turn
        created_at: UTC timestamp of creation

    Table: chat_message
    """
    __tablename__ = "chat_message"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    chat_id: str = Field(foreign_key="chat.id", index=True)
    role: str  # 'user', 'assistant', 'system'
    content: str
    attachments: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow, index=True)

    chat: Optional[Chat] = Relationship(back_populates="messages")


def make_title(first_message: str, max_length: int = 30) -> str:
    """Derive a chat title from its first message."""
    text = first_message.strip()
    if not text:
        return "New Chat"
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text

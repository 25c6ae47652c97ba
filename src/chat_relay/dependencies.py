"""FastAPI dependency providers for the relay's collaborators."""
from typing import Optional

from fastapi import Depends

from chat_relay.config import RelaySettings, get_settings
from chat_relay.db.engine import get_session_factory
from chat_relay.services.http_client import get_client
from chat_relay.services.message_store import InMemoryMessageStore, MessageStore, SqlMessageStore
from chat_relay.services.model_policy import HeuristicModelSelector, ModelSelector
from chat_relay.services.upstream import UpstreamInvoker

_memory_store: Optional[InMemoryMessageStore] = None


def get_message_store(settings: RelaySettings = Depends(get_settings)) -> MessageStore:
    """Message store for the configured backend."""
    global _memory_store

    if settings.message_store_backend == "sql":
        return SqlMessageStore(get_session_factory(settings))
    if _memory_store is None:
        _memory_store = InMemoryMessageStore()
    return _memory_store


async def get_upstream_invoker(settings: RelaySettings = Depends(get_settings)) -> UpstreamInvoker:
    client = await get_client(settings)
    return UpstreamInvoker(client, settings)


def get_model_selector(settings: RelaySettings = Depends(get_settings)) -> ModelSelector:
    return HeuristicModelSelector(settings)

from collab_hub.store.chat_store import ChatHistoryStore

__all__ = ["ChatHistoryStore"]

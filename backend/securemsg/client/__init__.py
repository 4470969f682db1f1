from .feed import FeedClient
from .live import LiveList, conversation_list, message_thread

__all__ = ["FeedClient", "LiveList", "conversation_list", "message_thread"]

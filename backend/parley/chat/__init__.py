"""Chats, participants, messages and live sessions.

Layers, bottom-up:
    - store / messages: DuckDB persistence with the room and history invariants
    - service: ChatOrchestrator, the use cases shared by both surfaces
    - manager: SessionManager, live WebSocket connections and fan-out
    - router / websocket: the HTTP and WebSocket edges
"""
from .manager import SessionManager
from .messages import MessageStore, compute_page_window
from .service import ChatEventListener, ChatOrchestrator
from .store import ChatStore

__all__ = [
    "ChatEventListener",
    "ChatOrchestrator",
    "ChatStore",
    "MessageStore",
    "SessionManager",
    "compute_page_window",
]

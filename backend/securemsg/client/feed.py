"""
Change-feed consumer for one signed-in client.

Keeps a `/ws` connection, follows the open conversation with `open`/`close`
frames and upserts pushed rows into the caller's LiveLists. Nothing runs in
the background: `drain()` pulls whatever the server has pushed since the last
call, which suits rerun-driven UIs.
"""
import json
import logging
from typing import Callable, List, Optional

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from . import api
from .live import LiveList

logger = logging.getLogger(__name__)

POLL_TIMEOUT = 0.05
MAX_FRAMES_PER_DRAIN = 200


def ws_url(base: str, token: str) -> str:
    if base.startswith("http"):
        base = "ws" + base[len("http"):]
    return f"{base.rstrip('/')}/ws?token={token}"


class FeedClient:

    def __init__(self, token: str, conversations: LiveList, base: Optional[str] = None,
                 connector: Callable = connect):
        self.url = ws_url(base or api.BASE, token)
        self.conversations = conversations
        self.connector = connector
        self.socket = None
        self.conversation_id: Optional[int] = None
        self.thread: Optional[LiveList] = None
        self.errors: List[dict] = []

    @property
    def connected(self) -> bool:
        return self.socket is not None

    def start(self):
        """Connects if needed and re-sends the open conversation after a reconnect."""
        if self.socket is not None:
            return
        self.socket = self.connector(self.url)
        logger.info("client: live feed connected")
        if self.conversation_id is not None:
            self._send({"action": "open", "conversation_id": self.conversation_id})

    def stop(self):
        if self.socket is not None:
            self.socket.close()
            self.socket = None

    def _send(self, frame: dict):
        try:
            self.socket.send(json.dumps(frame))
        except (ConnectionClosed, OSError) as exc:
            logger.warning(f"client: live feed lost while sending: {exc}")
            self.socket = None

    def open(self, conversation_id: int, thread: LiveList):
        """Scopes message notifications to one conversation; a new selection replaces the old one."""
        if conversation_id == self.conversation_id and thread is self.thread:
            return
        self.conversation_id = conversation_id
        self.thread = thread
        if self.socket is not None:
            self._send({"action": "open", "conversation_id": conversation_id})

    def close(self):
        if self.conversation_id is None:
            return
        self.conversation_id = None
        self.thread = None
        if self.socket is not None:
            self._send({"action": "close"})

    def apply(self, frame: dict) -> bool:
        """Applies one server frame; returns True when a list changed."""
        kind = frame.get("type")
        if kind in ("INSERT", "UPDATE"):
            row = frame.get("row") or {}
            table = frame.get("table")
            if table == "conversations":
                return self.conversations.upsert(row)
            if table == "messages" and self.thread is not None and row.get("conversation_id") == self.conversation_id:
                return self.thread.upsert(row)
        elif kind == "error":
            logger.warning(f"client: live feed error {frame.get('code')}: {frame.get('message')}")
            self.errors.append(frame)
        return False

    def drain(self) -> int:
        """Applies every frame already received; returns how many changed a list."""
        if self.socket is None:
            return 0
        changed = 0
        for _ in range(MAX_FRAMES_PER_DRAIN):
            try:
                raw = self.socket.recv(timeout=POLL_TIMEOUT)
            except TimeoutError:
                break
            except (WebSocketException, OSError) as exc:
                logger.warning(f"client: live feed closed: {exc}")
                self.socket = None
                break
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("client: ignoring malformed live feed frame")
                continue
            if isinstance(frame, dict) and self.apply(frame):
                changed += 1
        return changed

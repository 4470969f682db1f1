import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from sqlmodel import Session

from . import db
from .auth import decode_token
from .conversations import is_participant
from .errors import MessagingError, NotAParticipant
from .realtime import INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription, feed

logger = logging.getLogger(__name__)

router = APIRouter()


def member_of(user_id: int):
    """Row predicate on the participant ids published with every conversation row."""
    def check(row: dict) -> bool:
        return user_id in (row.get("participant_ids") or ())
    return check


class ClientConnection:
    """
    Subscriptions held on behalf of one socket.

    One conversations subscription lives as long as the socket; the
    messages subscription follows the open conversation and is replaced
    whenever the selection changes.
    """

    def __init__(self, websocket: WebSocket, user_id: int, change_feed: ChangeFeed):
        self.websocket = websocket
        self.user_id = user_id
        self.feed = change_feed
        self.conversation_id: Optional[int] = None
        self.subscriptions: Dict[str, Subscription] = {}

    async def push(self, event: ChangeEvent):
        await self.websocket.send_text(json.dumps(event.to_dict()))

    def _replace(self, name: str, subscription: Optional[Subscription]):
        old = self.subscriptions.pop(name, None)
        if old is not None:
            old.unsubscribe()
        if subscription is not None:
            self.subscriptions[name] = subscription

    def watch_conversations(self):
        self._replace("conversations", self.feed.subscribe(
            "conversations",
            self.push,
            event_types=[INSERT, UPDATE],
            predicate=member_of(self.user_id),
        ))

    def open_conversation(self, conversation_id: int):
        with Session(db.get_engine()) as session:
            if not is_participant(session, conversation_id, self.user_id):
                raise NotAParticipant("you are not a participant in this conversation")
        self._replace("messages", self.feed.subscribe(
            "messages",
            self.push,
            filters={"conversation_id": conversation_id},
            event_types=[INSERT, UPDATE],
        ))
        self.conversation_id = conversation_id

    def close_conversation(self):
        self._replace("messages", None)
        self.conversation_id = None

    def close(self):
        for name in list(self.subscriptions):
            self._replace(name, None)
        self.conversation_id = None


class ConnectionManager:
    def __init__(self, change_feed: ChangeFeed):
        self.feed = change_feed
        self.connections: Dict[int, set] = {}

    async def connect(self, websocket: WebSocket, user_id: int) -> ClientConnection:
        await websocket.accept()
        conn = ClientConnection(websocket, user_id, self.feed)
        conn.watch_conversations()
        self.connections.setdefault(user_id, set()).add(conn)
        logger.debug(f"WS connect: user {user_id}")
        return conn

    def disconnect(self, conn: ClientConnection):
        conn.close()
        conns = self.connections.get(conn.user_id)
        if conns is not None:
            conns.discard(conn)
            if not conns:
                del self.connections[conn.user_id]
        logger.debug(f"WS disconnect: user {conn.user_id}")

    async def handle(self, conn: ClientConnection, raw: str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await conn.websocket.send_json({"type": "error", "code": "VALIDATION_ERROR", "message": "invalid JSON"})
            return
        if not isinstance(data, dict):
            await conn.websocket.send_json({"type": "error", "code": "VALIDATION_ERROR", "message": "frame must be a JSON object"})
            return

        action = data.get("action")
        try:
            if action == "open":
                conn.open_conversation(int(data.get("conversation_id")))
                await conn.websocket.send_json({"type": "opened", "conversation_id": conn.conversation_id})
            elif action == "close":
                conn.close_conversation()
                await conn.websocket.send_json({"type": "closed"})
            elif action == "ping":
                await conn.websocket.send_json({"type": "pong"})
            else:
                await conn.websocket.send_json({"type": "error", "code": "VALIDATION_ERROR", "message": f"unknown action {action!r}"})
        except (TypeError, ValueError):
            await conn.websocket.send_json({"type": "error", "code": "VALIDATION_ERROR", "message": "conversation_id must be an integer"})
        except MessagingError as exc:
            await conn.websocket.send_json({"type": "error", "code": exc.code, "message": exc.message})


manager = ConnectionManager(feed)


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    try:
        user_id = decode_token(websocket.query_params.get("token"))
    except MessagingError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        logger.info("WS rejected: missing or invalid token")
        return

    conn = await manager.connect(websocket, user_id)
    try:
        while True:
            await manager.handle(conn, await websocket.receive_text())
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(conn)

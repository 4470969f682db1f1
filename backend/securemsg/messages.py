import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .auth import auth_required, current_user
from .conversations import publish_conversation, require_participant, touch
from .db import get_session, store_errors
from .errors import MessageNotFound, ValidationFailed
from .models import Conversation, ConversationParticipant, Message, utcnow
from .realtime import INSERT, UPDATE, ChangeEvent, feed, row_snapshot
from .schemas import MessageIn, MessageMetadataIn, MessageOut, ReadOut, message_out

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])

MAX_PAGE_SIZE = 200


def list_messages(session: Session, user_id: int, conversation_id: int, limit: int = 50, offset: int = 0) -> List[Message]:
    """
    One page of a conversation's messages, newest first.

    Callers reverse the page for oldest-first display. Store errors give an
    empty page; a caller who is not a participant gets NotAParticipant.
    """
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationFailed("offset must not be negative")

    require_participant(session, conversation_id, user_id)
    try:
        return list(session.exec(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.id.desc())
            .offset(offset)
            .limit(limit)
        ).all())
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Error fetching messages of conversation {conversation_id}: {exc}")
        return []


def _current_keys(session: Session, conversation_id: int, key_version: int) -> Dict[str, str]:
    parts = session.exec(select(ConversationParticipant).where(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.key_version == key_version
    )).all()
    return {str(p.user_id): p.encapsulated_key for p in parts if p.encapsulated_key}


def send_message(
    session: Session,
    user_id: int,
    conversation_id: int,
    encrypted_content: str,
    iv: str,
    encryption_metadata: dict = None,
    encapsulated_keys: Optional[Dict[str, str]] = None,
    metadata: dict = None,
) -> Message:
    """
    Stores an already-encrypted message.

    Encapsulated keys not supplied by the sender are taken from the
    participants' keys for the message's key version. The conversation
    preview is patched afterwards on a best-effort basis.
    """
    sender = current_user(session, user_id)
    part = require_participant(session, conversation_id, user_id)

    if not encrypted_content or not iv:
        raise ValidationFailed("encrypted content and iv are required")

    encryption_metadata = dict(encryption_metadata or {})
    key_version = encryption_metadata.setdefault("keyVersion", part.key_version)

    with store_errors(session, "send message"):
        if encapsulated_keys is None:
            encapsulated_keys = _current_keys(session, conversation_id, key_version)
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender.id,
            encrypted_content=encrypted_content,
            iv=iv,
            encryption_metadata=encryption_metadata,
            encapsulated_keys={str(k): v for k, v in encapsulated_keys.items()},
            meta=dict(metadata or {}),
        )
        session.add(message)
        session.commit()
        session.refresh(message)

    update_conversation_with_last_message(session, conversation_id, f"{sender.email}: New message")
    return message


def update_conversation_with_last_message(session: Session, conversation_id: int, preview: str) -> Optional[Conversation]:
    """Bumps the denormalized preview and message count. Failures are only logged."""
    try:
        conv = session.get(Conversation, conversation_id)
        if conv is None:
            return None
        current = conv.meta or {}
        conv.meta = {
            **current,
            "lastMessage": preview,
            "lastMessageTime": utcnow().isoformat(),
            "messageCount": (current.get("messageCount") or 0) + 1,
        }
        touch(conv)
        session.add(conv)
        session.commit()
        session.refresh(conv)
        return conv
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning(f"Error updating conversation {conversation_id} metadata: {exc}")
        return None


def _accessible_message(session: Session, user_id: int, message_id: int) -> Message:
    with store_errors(session, "load message"):
        message = session.get(Message, message_id)
    if message is None:
        raise MessageNotFound(f"message {message_id} not found")
    require_participant(session, message.conversation_id, user_id)
    return message


def update_message_metadata(session: Session, user_id: int, message_id: int, metadata: dict) -> Message:
    """Merges into the advisory metadata bag (read/delivery receipts)."""
    current_user(session, user_id)
    message = _accessible_message(session, user_id, message_id)
    with store_errors(session, "update message metadata"):
        message.meta = {**(message.meta or {}), **(metadata or {})}
        message.updated_at = utcnow()
        session.add(message)
        session.commit()
        session.refresh(message)
    return message


def _with_receipt(meta: dict, field: str, user_id: int) -> dict:
    readers = list(meta.get(field) or [])
    if user_id not in readers:
        readers.append(user_id)
    return {**meta, field: readers}


def mark_messages_read(session: Session, user_id: int, conversation_id: int) -> List[Message]:
    """Adds the caller to readBy on every message sent by someone else; returns the changed ones."""
    current_user(session, user_id)
    require_participant(session, conversation_id, user_id)
    changed = []
    with store_errors(session, "mark messages read"):
        rows = session.exec(select(Message).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id
        )).all()
        for message in rows:
            meta = message.meta or {}
            if user_id in (meta.get("readBy") or []):
                continue
            meta = _with_receipt(meta, "readBy", user_id)
            meta["isRead"] = True
            message.meta = meta
            message.updated_at = utcnow()
            session.add(message)
            changed.append(message)
        session.commit()
    for message in changed:
        session.refresh(message)
    return changed


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageOut])
def get_messages(
    conversation_id: int,
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(auth_required),
    session: Session = Depends(get_session),
):
    return [message_out(m) for m in list_messages(session, user_id, conversation_id, limit, offset)]


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut, status_code=201)
async def send(conversation_id: int, data: MessageIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    message = send_message(
        session,
        user_id,
        conversation_id,
        data.encrypted_content,
        data.iv,
        data.encryption_metadata,
        data.encapsulated_keys,
        data.metadata,
    )
    await feed.publish(ChangeEvent("messages", INSERT, row_snapshot(message)))
    conv = session.get(Conversation, conversation_id)
    if conv is not None:
        await publish_conversation(session, conv)
    return message_out(message)


@router.patch("/messages/{message_id}/metadata", response_model=MessageOut)
async def patch_message_metadata(message_id: int, data: MessageMetadataIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    message = update_message_metadata(session, user_id, message_id, data.metadata)
    await feed.publish(ChangeEvent("messages", UPDATE, row_snapshot(message)))
    return message_out(message)


@router.post("/conversations/{conversation_id}/read", response_model=ReadOut)
async def read_all(conversation_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    changed = mark_messages_read(session, user_id, conversation_id)
    for message in changed:
        await feed.publish(ChangeEvent("messages", UPDATE, row_snapshot(message)))
    return ReadOut(marked=len(changed))

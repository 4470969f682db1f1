import logging
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .audit import log_event
from .auth import auth_required, current_user
from .contacts import find_user_by_email
from .db import get_session, store_errors
from .errors import (
    AlreadyParticipant,
    ConversationNotFound,
    NotAParticipant,
    UserNotFound,
    ValidationFailed,
)
from .models import Conversation, ConversationParticipant, User, utcnow
from .realtime import INSERT, UPDATE, ChangeEvent, feed, row_snapshot
from .schemas import (
    AddParticipantIn,
    ConversationCreateIn,
    ConversationMetadataIn,
    ConversationOut,
    ParticipantOut,
    conversation_out,
    participant_out,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def touch(conv: Conversation) -> None:
    """Advances updated_at, strictly, even if the clock has not moved."""
    now = utcnow()
    if conv.updated_at is not None and now <= conv.updated_at:
        now = conv.updated_at + timedelta(microseconds=1)
    conv.updated_at = now


def get_participant(session: Session, conversation_id: int, user_id: int) -> Optional[ConversationParticipant]:
    return session.exec(select(ConversationParticipant).where(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id
    )).first()


def is_participant(session: Session, conversation_id: int, user_id: int) -> bool:
    return get_participant(session, conversation_id, user_id) is not None


def require_participant(session: Session, conversation_id: int, user_id: int) -> ConversationParticipant:
    with store_errors(session, "check conversation membership"):
        part = get_participant(session, conversation_id, user_id)
    if part is None:
        raise NotAParticipant("you are not a participant in this conversation")
    return part


def count_participants(session: Session, conversation_id: int) -> int:
    return session.exec(select(func.count(ConversationParticipant.id)).where(
        ConversationParticipant.conversation_id == conversation_id
    )).one()


def list_conversations_for_user(session: Session, user_id: Optional[int]) -> List[Conversation]:
    """
    Conversations the user participates in, most recently updated first.

    Fails open: unknown users and store errors give an empty list.
    """
    if user_id is None:
        return []
    try:
        conv_ids = session.exec(select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == user_id
        )).all()
        if not conv_ids:
            return []
        return list(session.exec(
            select(Conversation)
            .where(Conversation.id.in_(conv_ids))
            .order_by(Conversation.updated_at.desc())
        ).all())
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Error fetching conversations for user {user_id}: {exc}")
        return []


def get_conversation(session: Session, user_id: int, conversation_id: int) -> Conversation:
    with store_errors(session, "load conversation"):
        conv = session.get(Conversation, conversation_id)
    if conv is None:
        raise ConversationNotFound(f"conversation {conversation_id} not found")
    require_participant(session, conversation_id, user_id)
    return conv


def get_conversation_participants(session: Session, user_id: int, conversation_id: int) -> List[ConversationParticipant]:
    require_participant(session, conversation_id, user_id)
    try:
        return list(session.exec(select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id
        ).order_by(ConversationParticipant.id)).all())
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Error fetching participants of conversation {conversation_id}: {exc}")
        return []


def create_conversation_with_participants(
    session: Session,
    creator_id: int,
    participant_ids: List[int],
    metadata: dict,
    encapsulated_keys: Optional[Dict[str, str]] = None,
) -> int:
    """
    Creates one conversation row and one participant row per member in a
    single transaction and returns the new conversation id.
    """
    key_version = 1 if encapsulated_keys else 0
    with store_errors(session, "create conversation"):
        users = {u.id: u for u in session.exec(select(User).where(User.id.in_(participant_ids))).all()}
        missing = [uid for uid in participant_ids if uid not in users]
        if missing:
            raise UserNotFound(f"unknown users: {', '.join(str(uid) for uid in missing)}")

        conv = Conversation(meta=metadata)
        session.add(conv)
        session.flush()

        for uid in participant_ids:
            session.add(ConversationParticipant(
                conversation_id=conv.id,
                user_id=uid,
                public_key=users[uid].public_key,
                encapsulated_key=(encapsulated_keys or {}).get(str(uid)),
                key_version=key_version,
            ))
        log_event(session, creator_id, "CREATE_CONVERSATION", {
            "conversation_id": conv.id,
            "participants": participant_ids,
        })
        session.commit()
        return conv.id


def create_conversation(
    session: Session,
    user_id: int,
    participant_ids: List[int],
    metadata: dict = None,
    encapsulated_keys: Optional[Dict[str, str]] = None,
) -> Conversation:
    user = current_user(session, user_id)

    members = []
    for uid in list(participant_ids or []) + [user.id]:
        if uid not in members:
            members.append(uid)

    if encapsulated_keys is not None:
        encapsulated_keys = {str(k): v for k, v in encapsulated_keys.items()}
        uncovered = [uid for uid in members if not encapsulated_keys.get(str(uid))]
        if uncovered:
            raise ValidationFailed(f"missing encapsulated keys for: {', '.join(str(uid) for uid in uncovered)}")

    meta = dict(metadata or {})
    meta.setdefault("isGroup", len(members) > 2)
    meta["participantCount"] = len(members)
    meta.setdefault("messageCount", 0)

    logger.info(f"Creating conversation with participants: {members}")
    conv_id = create_conversation_with_participants(session, user.id, members, meta, encapsulated_keys)

    with store_errors(session, "load created conversation"):
        conv = session.get(Conversation, conv_id)
    return conv


def update_conversation_metadata(session: Session, user_id: int, conversation_id: int, metadata: dict) -> Conversation:
    conv = get_conversation(session, user_id, conversation_id)
    with store_errors(session, "update conversation metadata"):
        conv.meta = {**(conv.meta or {}), **(metadata or {})}
        touch(conv)
        session.add(conv)
        session.commit()
        session.refresh(conv)
    return conv


def add_participant(session: Session, user_id: int, conversation_id: int, email: str) -> bool:
    """
    Adds the user registered under `email`. The new member gets no content
    key until someone rekeys the conversation.
    """
    current_user(session, user_id)
    conv = get_conversation(session, user_id, conversation_id)

    user_to_add = find_user_by_email(session, email)
    if user_to_add is None:
        raise UserNotFound("no user found with that email")

    with store_errors(session, "add participant"):
        if is_participant(session, conversation_id, user_to_add.id):
            raise AlreadyParticipant("user is already a participant in this conversation")
        try:
            session.add(ConversationParticipant(
                conversation_id=conversation_id,
                user_id=user_to_add.id,
                public_key=user_to_add.public_key,
            ))
            session.flush()
        except IntegrityError:
            session.rollback()
            raise AlreadyParticipant("user is already a participant in this conversation")

        participant_count = count_participants(session, conversation_id)
        conv.meta = {
            **(conv.meta or {}),
            "participantCount": participant_count,
            "isGroup": participant_count > 2,
        }
        touch(conv)
        session.add(conv)
        log_event(session, user_id, "ADD_PARTICIPANT", {
            "conversation_id": conversation_id,
            "user_id": user_to_add.id,
        })
        session.commit()

    logger.info(f"User {user_to_add.id} added to conversation {conversation_id} by {user_id}")
    return True


def member_ids(session: Session, conversation_id: int) -> List[int]:
    return list(session.exec(select(ConversationParticipant.user_id).where(
        ConversationParticipant.conversation_id == conversation_id
    ).order_by(ConversationParticipant.id)).all())


async def publish_conversation(session: Session, conv: Conversation, event_type: str = UPDATE):
    """Publishes the row together with its members so subscribers can be scoped without a query."""
    row = row_snapshot(conv)
    with store_errors(session, "load conversation members"):
        row["participant_ids"] = member_ids(session, conv.id)
    await feed.publish(ChangeEvent("conversations", event_type, row))


@router.get("", response_model=List[ConversationOut])
def list_conversations(user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return [conversation_out(c) for c in list_conversations_for_user(session, user_id)]


@router.post("", response_model=ConversationOut, status_code=201)
async def create(data: ConversationCreateIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    conv = create_conversation(session, user_id, data.participant_ids, data.metadata, data.encapsulated_keys)
    await publish_conversation(session, conv, INSERT)
    return conversation_out(conv)


@router.get("/{conversation_id}", response_model=ConversationOut)
def read(conversation_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return conversation_out(get_conversation(session, user_id, conversation_id))


@router.patch("/{conversation_id}/metadata", response_model=ConversationOut)
async def patch_metadata(conversation_id: int, data: ConversationMetadataIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    conv = update_conversation_metadata(session, user_id, conversation_id, data.metadata)
    await publish_conversation(session, conv)
    return conversation_out(conv)


@router.get("/{conversation_id}/participants", response_model=List[ParticipantOut])
def list_participants(conversation_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return [participant_out(p) for p in get_conversation_participants(session, user_id, conversation_id)]


@router.post("/{conversation_id}/participants")
async def add(conversation_id: int, data: AddParticipantIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    ok = add_participant(session, user_id, conversation_id, data.email)
    conv = session.get(Conversation, conversation_id)
    if conv is not None:
        await publish_conversation(session, conv)
    return {"ok": ok}

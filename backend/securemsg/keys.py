import logging
from typing import Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from cryptography.exceptions import UnsupportedAlgorithm

from .audit import log_event
from .auth import auth_required, current_user
from .conversations import get_conversation, publish_conversation, require_participant, touch
from .crypto_utils import KEY_ENCAPSULATION, rsa_encrypt
from .db import get_session, store_errors
from .errors import UserNotFound, ValidationFailed
from .models import ConversationParticipant, User
from .schemas import (
    PublicKeyIn,
    PublicKeyOut,
    RekeyIn,
    RekeyOut,
    SessionInfoOut,
    UserProfileWithKeys,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["keys"])


def _check_public_key(public_key: str) -> None:
    # a throwaway encryption proves the PEM is a usable OAEP key
    try:
        rsa_encrypt(public_key, b"\0" * 32)
    except (ValueError, TypeError, AttributeError, UnsupportedAlgorithm) as exc:
        raise ValidationFailed(f"invalid public key: {exc}") from exc


def store_user_public_key(session: Session, user_id: int, public_key: str) -> bool:
    """Sets the user's public key and copies it onto every participation."""
    user = current_user(session, user_id)
    if not public_key:
        raise ValidationFailed("public key is required")
    _check_public_key(public_key)

    with store_errors(session, "store public key"):
        user.public_key = public_key
        session.add(user)
        parts = session.exec(select(ConversationParticipant).where(
            ConversationParticipant.user_id == user.id
        )).all()
        for p in parts:
            p.public_key = public_key
            session.add(p)
        session.commit()
    logger.info(f"Stored public key of user {user.id} on {len(parts)} participations")
    return True


def get_conversation_participants_with_keys(session: Session, user_id: int, conversation_id: int) -> List[UserProfileWithKeys]:
    require_participant(session, conversation_id, user_id)
    try:
        rows = session.exec(
            select(ConversationParticipant, User)
            .where(ConversationParticipant.conversation_id == conversation_id)
            .where(ConversationParticipant.user_id == User.id)
            .order_by(ConversationParticipant.id)
        ).all()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Error getting participants with keys for conversation {conversation_id}: {exc}")
        return []

    return [
        UserProfileWithKeys(
            id=user.id,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            email=user.email,
            public_key=part.public_key,
            publicKeyAlgorithm=KEY_ENCAPSULATION if part.public_key else None,
        )
        for part, user in rows
    ]


def get_session_info(session: Session, user_id: int, conversation_id: int) -> SessionInfoOut:
    part = require_participant(session, conversation_id, user_id)
    return SessionInfoOut(key_version=part.key_version, encapsulated_key=part.encapsulated_key)


def rekey_conversation(session: Session, user_id: int, conversation_id: int, encapsulated_keys: Dict[str, str]) -> int:
    """
    Installs a new content key version. The caller supplies the new key
    encapsulated for exactly the current participants.
    """
    current_user(session, user_id)
    conv = get_conversation(session, user_id, conversation_id)
    keys = {str(k): v for k, v in (encapsulated_keys or {}).items()}

    with store_errors(session, "rekey conversation"):
        parts = session.exec(select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id
        )).all()
        member_ids = {str(p.user_id) for p in parts}
        missing = sorted(member_ids - {k for k, v in keys.items() if v})
        extra = sorted(set(keys) - member_ids)
        if missing:
            raise ValidationFailed(f"missing encapsulated keys for: {', '.join(missing)}")
        if extra:
            raise ValidationFailed(f"keys given for non-participants: {', '.join(extra)}")

        new_version = max(p.key_version for p in parts) + 1
        for p in parts:
            p.encapsulated_key = keys[str(p.user_id)]
            p.key_version = new_version
            session.add(p)
        touch(conv)
        session.add(conv)
        log_event(session, user_id, "REKEY_CONVERSATION", {
            "conversation_id": conversation_id,
            "key_version": new_version,
        })
        session.commit()

    logger.info(f"Conversation {conversation_id} rekeyed to version {new_version}")
    return new_version


@router.get("/users/{target_id}/public_key", response_model=PublicKeyOut)
def get_user_public_key(target_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    current_user(session, user_id)
    with store_errors(session, "load public key"):
        user = session.get(User, target_id)
    if not user or not user.public_key:
        raise UserNotFound("public key not found for user")
    return PublicKeyOut(public_key=user.public_key)


@router.put("/keys/public")
def put_public_key(data: PublicKeyIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return {"ok": store_user_public_key(session, user_id, data.public_key)}


@router.get("/conversations/{conversation_id}/participants/keys", response_model=List[UserProfileWithKeys])
def participants_with_keys(conversation_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return get_conversation_participants_with_keys(session, user_id, conversation_id)


@router.get("/conversations/{conversation_id}/session_info", response_model=SessionInfoOut)
def session_info(conversation_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return get_session_info(session, user_id, conversation_id)


@router.post("/conversations/{conversation_id}/rekey", response_model=RekeyOut)
async def rekey(conversation_id: int, data: RekeyIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    version = rekey_conversation(session, user_id, conversation_id, data.encapsulated_keys)
    await publish_conversation(session, get_conversation(session, user_id, conversation_id))
    return RekeyOut(key_version=version)

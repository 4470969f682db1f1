import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .audit import log_event
from .auth import auth_required, current_user, normalize_email
from .db import get_session, store_errors
from .errors import ContactExists, ContactNotFound, UserNotFound, ValidationFailed
from .models import Contact, User, utcnow
from .schemas import ContactIn, ContactOut, ContactStatusIn, UserProfileWithKeys, contact_out

logger = logging.getLogger(__name__)

router = APIRouter(tags=["contacts"])


def find_user_by_email(session: Session, email: str) -> Optional[User]:
    """Single lookup on the normalized address; None when nobody matches."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    with store_errors(session, "look up user by email"):
        return session.exec(select(User).where(User.email == normalized)).first()


def get_user_contacts(session: Session, user_id: int) -> List[Contact]:
    current_user(session, user_id)
    try:
        return list(session.exec(
            select(Contact).where(Contact.user_id == user_id).order_by(Contact.id)
        ).all())
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Error fetching contacts of user {user_id}: {exc}")
        return []


def add_contact(session: Session, user_id: int, contact_user_id: int) -> Contact:
    user = current_user(session, user_id)
    if user.id == contact_user_id:
        raise ValidationFailed("you can't add yourself as a contact")

    with store_errors(session, "add contact"):
        if session.get(User, contact_user_id) is None:
            raise UserNotFound(f"user {contact_user_id} not found")
        existing = session.exec(select(Contact).where(
            Contact.user_id == user.id,
            Contact.contact_user_id == contact_user_id
        )).first()
        if existing:
            raise ContactExists("contact already exists")

        contact = Contact(user_id=user.id, contact_user_id=contact_user_id, status="pending")
        try:
            session.add(contact)
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ContactExists("contact already exists")
        log_event(session, user.id, "ADD_CONTACT", {"contact_user_id": contact_user_id})
        session.commit()
        session.refresh(contact)
    return contact


def _owned_contact(session: Session, user_id: int, contact_id: int) -> Contact:
    with store_errors(session, "load contact"):
        contact = session.get(Contact, contact_id)
    if contact is None or contact.user_id != user_id:
        raise ContactNotFound(f"contact {contact_id} not found")
    return contact


def update_contact_status(session: Session, user_id: int, contact_id: int, status: str) -> Contact:
    current_user(session, user_id)
    if status not in ("accepted", "blocked"):
        raise ValidationFailed(f"invalid contact status: {status!r}")
    contact = _owned_contact(session, user_id, contact_id)
    with store_errors(session, "update contact"):
        contact.status = status
        contact.updated_at = utcnow()
        session.add(contact)
        session.commit()
        session.refresh(contact)
    return contact


def delete_contact(session: Session, user_id: int, contact_id: int) -> None:
    current_user(session, user_id)
    contact = _owned_contact(session, user_id, contact_id)
    with store_errors(session, "delete contact"):
        session.delete(contact)
        session.commit()


@router.get("/users/lookup", response_model=UserProfileWithKeys)
def lookup(email: str = Query(...), user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    current_user(session, user_id)
    user = find_user_by_email(session, email)
    if user is None:
        raise UserNotFound("no user found with that email")
    return UserProfileWithKeys(
        id=user.id,
        full_name=user.full_name,
        avatar_url=user.avatar_url,
        public_key=user.public_key,
        email=user.email,
    )


@router.get("/contacts", response_model=List[ContactOut])
def list_contacts(user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return [contact_out(c) for c in get_user_contacts(session, user_id)]


@router.post("/contacts", response_model=ContactOut, status_code=201)
def create_contact(data: ContactIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return contact_out(add_contact(session, user_id, data.contact_user_id))


@router.patch("/contacts/{contact_id}", response_model=ContactOut)
def patch_contact(contact_id: int, data: ContactStatusIn, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    return contact_out(update_contact_status(session, user_id, contact_id, data.status))


@router.delete("/contacts/{contact_id}")
def remove_contact(contact_id: int, user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    delete_contact(session, user_id, contact_id)
    return {"ok": True}

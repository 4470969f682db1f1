from typing import Optional
from sqlmodel import Session

from .models import AuditEvent


def log_event(session: Session, actor_id: Optional[int], action: str, details: dict = None):
    """
    Records an audit event in the caller's transaction.

    :param session: The request-scoped session; the event is committed with the write it describes.
    :param actor_id: The user that performed the action.
    :param action: The action performed (e.g. 'CREATE_CONVERSATION', 'ADD_PARTICIPANT').
    :param details: Extra details about the event.
    """
    if details is None:
        details = {}

    session.add(AuditEvent(actor_id=actor_id, action=action, details=details))

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON, Text, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from typing import Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stored as naive UTC, always read back timezone-aware."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    password_hash: str
    public_key: Optional[str] = Field(default=None, sa_column=Column(Text))
    encrypted_private_key: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    # name, isGroup, avatar, lastMessage, lastMessageTime, messageCount, participantCount
    meta: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))


class ConversationParticipant(SQLModel, table=True):
    __tablename__ = "conversation_participants"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversations.id", index=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    joined_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    public_key: Optional[str] = Field(default=None, sa_column=Column(Text))
    # conversation content key, encapsulated for this participant's public key
    encapsulated_key: Optional[str] = Field(default=None, sa_column=Column(Text))
    key_version: int = 0


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversations.id", index=True)
    sender_id: int = Field(foreign_key="users.id", index=True)
    encrypted_content: str = Field(sa_column=Column(Text, nullable=False))
    iv: str
    encryption_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    encapsulated_keys: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    # readBy, deliveredTo, clientId; advisory only
    meta: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))


class Contact(SQLModel, table=True):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("user_id", "contact_user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    contact_user_id: int = Field(foreign_key="users.id")
    status: str = "pending"
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class AuditEvent(SQLModel, table=True):
    __tablename__ = "audit_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    actor_id: Optional[int] = None
    action: str
    details: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

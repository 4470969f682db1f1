from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional
from datetime import datetime


class RegisterIn(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None


class LoginIn(BaseModel):
    email: str
    password: str


class TokenOut(BaseModel):
    token: str
    user_id: int
    email: str
    private_key: Optional[str] = None
    public_key: Optional[str] = None


class UserProfileWithKeys(BaseModel):
    id: int
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    public_key: Optional[str] = None
    publicKeyAlgorithm: Optional[str] = None
    email: Optional[str] = None


class PublicKeyIn(BaseModel):
    public_key: str


class PublicKeyOut(BaseModel):
    public_key: str


class ConversationCreateIn(BaseModel):
    participant_ids: List[int] = []
    metadata: dict = {}
    # participant id -> content key encapsulated for that participant
    encapsulated_keys: Optional[Dict[str, str]] = None


class ConversationOut(BaseModel):
    id: int
    created_at: datetime
    updated_at: datetime
    metadata: dict


class ConversationMetadataIn(BaseModel):
    metadata: dict


class ParticipantOut(BaseModel):
    id: int
    conversation_id: int
    user_id: int
    joined_at: datetime
    public_key: Optional[str] = None
    key_version: int


class AddParticipantIn(BaseModel):
    email: str


class SessionInfoOut(BaseModel):
    key_version: int
    encapsulated_key: Optional[str] = None


class RekeyIn(BaseModel):
    encapsulated_keys: Dict[str, str]


class RekeyOut(BaseModel):
    key_version: int


class MessageIn(BaseModel):
    encrypted_content: str
    iv: str
    encryption_metadata: dict = {}
    encapsulated_keys: Optional[Dict[str, str]] = None
    metadata: dict = {}


class MessageOut(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    encrypted_content: str
    iv: str
    encryption_metadata: dict
    encapsulated_keys: Dict[str, str]
    created_at: datetime
    updated_at: datetime
    metadata: dict


class MessageMetadataIn(BaseModel):
    metadata: dict


class EncryptedContent(BaseModel):
    encrypted_content: str
    iv: str
    algorithm: str


class EncryptedMessagePayload(BaseModel):
    """Everything a sender hands to the store for one message."""
    encapsulatedKeys: Dict[str, str] = {}
    message: EncryptedContent
    encryption_metadata: dict = {}
    metadata: dict = {}

    def to_message_in(self) -> MessageIn:
        return MessageIn(
            encrypted_content=self.message.encrypted_content,
            iv=self.message.iv,
            encryption_metadata=self.encryption_metadata,
            encapsulated_keys=self.encapsulatedKeys or None,
            metadata=self.metadata,
        )


class ContactIn(BaseModel):
    contact_user_id: int


class ContactStatusIn(BaseModel):
    status: Literal["accepted", "blocked"]


class ContactOut(BaseModel):
    id: int
    user_id: int
    contact_user_id: int
    status: str
    created_at: datetime
    updated_at: datetime


class ReadOut(BaseModel):
    marked: int = Field(ge=0)


def conversation_out(conv) -> ConversationOut:
    return ConversationOut(
        id=conv.id,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        metadata=conv.meta or {},
    )


def message_out(m) -> MessageOut:
    return MessageOut(
        id=m.id,
        conversation_id=m.conversation_id,
        sender_id=m.sender_id,
        encrypted_content=m.encrypted_content,
        iv=m.iv,
        encryption_metadata=m.encryption_metadata or {},
        encapsulated_keys=m.encapsulated_keys or {},
        created_at=m.created_at,
        updated_at=m.updated_at,
        metadata=m.meta or {},
    )


def participant_out(p) -> ParticipantOut:
    return ParticipantOut(
        id=p.id,
        conversation_id=p.conversation_id,
        user_id=p.user_id,
        joined_at=p.joined_at,
        public_key=p.public_key,
        key_version=p.key_version,
    )


def contact_out(c) -> ContactOut:
    return ContactOut(
        id=c.id,
        user_id=c.user_id,
        contact_user_id=c.contact_user_id,
        status=c.status,
        created_at=c.created_at,
        updated_at=c.updated_at,
    )

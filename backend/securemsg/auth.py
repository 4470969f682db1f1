import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
import jwt
import bcrypt
from fastapi import Depends, APIRouter
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session, select
from cryptography.fernet import InvalidToken

from .db import get_session, store_errors
from .audit import log_event
from .crypto_utils import rsa_generate_2048_pem_pair
from .errors import MessagingError, NotAuthenticated, ValidationFailed
from .models import User
from .schemas import RegisterIn, LoginIn, TokenOut
from .vault import vault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

JWT_SECRET = os.getenv("JWT_SECRET") or "dev-secret-change-me"
JWT_ALG = "HS256"
JWT_TTL_HOURS = int(os.getenv("JWT_TTL_HOURS", "24"))
security = HTTPBearer(auto_error=False)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def make_hash(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt()).decode()


def verify_hash(pw: str, ph: str) -> bool:
    if not ph:
        return False
    return bcrypt.checkpw(pw.encode(), ph.encode())


def create_token(user_id: int) -> str:
    payload = {
        "sub": str(user_id),
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_TTL_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> int:
    if not token:
        raise NotAuthenticated("missing token")
    try:
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        return int(data["sub"])
    except (jwt.PyJWTError, KeyError, ValueError):
        raise NotAuthenticated("invalid token")


def auth_required(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> int:
    if creds is None:
        raise NotAuthenticated("missing token")
    return decode_token(creds.credentials)


def current_user(session: Session, user_id: Optional[int]) -> User:
    """Loads the caller; a token for a user that no longer exists is not authenticated."""
    if user_id is None:
        raise NotAuthenticated("user not authenticated")
    user = session.get(User, user_id)
    if user is None:
        raise NotAuthenticated("user not authenticated")
    return user


def generate_user_keys() -> dict:
    priv_pem, pub_pem = rsa_generate_2048_pem_pair()
    return {
        "public_key": pub_pem,
        "encrypted_private_key": vault.encrypt(priv_pem.encode()),
        "private_key_pem": priv_pem,
    }


def register_user(session: Session, data: RegisterIn) -> TokenOut:
    email = normalize_email(data.email)
    if not email or "@" not in email:
        raise ValidationFailed("a valid email is required")
    if not data.password or len(data.password) < 8:
        raise ValidationFailed("password must be at least 8 characters")
    if len(data.password.encode()) > 72:
        raise ValidationFailed("password must be at most 72 bytes")

    with store_errors(session, "register user"):
        if session.exec(select(User).where(User.email == email)).first():
            raise ValidationFailed("email already registered")

        key_data = generate_user_keys()
        user = User(
            email=email,
            full_name=data.full_name,
            password_hash=make_hash(data.password),
            public_key=key_data["public_key"],
            encrypted_private_key=key_data["encrypted_private_key"],
        )
        session.add(user)
        session.flush()
        log_event(session, user.id, "REGISTER_USER", {"email": email})
        session.commit()
        session.refresh(user)

    logger.info(f"Registered user {user.id}")
    return TokenOut(
        token=create_token(user.id),
        user_id=user.id,
        email=user.email,
        private_key=key_data["private_key_pem"],
        public_key=user.public_key,
    )


def login_user(session: Session, data: LoginIn) -> TokenOut:
    email = normalize_email(data.email)
    with store_errors(session, "load user"):
        user = session.exec(select(User).where(User.email == email)).first()

    if not user or not verify_hash(data.password, user.password_hash):
        raise NotAuthenticated("invalid credentials")

    private_key_pem = None
    if user.encrypted_private_key:
        try:
            private_key_pem = vault.decrypt(user.encrypted_private_key).decode()
        except InvalidToken:
            logger.error(f"[VAULT] Stored private key of user {user.id} could not be decrypted")
            raise MessagingError("failed to decrypt private key")

    return TokenOut(
        token=create_token(user.id),
        user_id=user.id,
        email=user.email,
        private_key=private_key_pem,
        public_key=user.public_key,
    )


@router.post("/register", response_model=TokenOut)
def register(data: RegisterIn, session: Session = Depends(get_session)):
    return register_user(session, data)


@router.post("/login", response_model=TokenOut)
def login(data: LoginIn, session: Session = Depends(get_session)):
    return login_user(session, data)

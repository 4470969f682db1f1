import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("VAULT_SECRET", "test-vault-secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from securemsg import db
from securemsg.encryption import MessageEncryption, generate_keypair
from securemsg.models import User


@pytest.fixture(scope="session")
def keypairs():
    return [generate_keypair() for _ in range(4)]


@pytest.fixture
def engine():
    engine = db.configure_engine("sqlite://")
    db.create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def make_user(session, keypairs):
    """Creates a user with a long-term keypair and returns its id, email and crypto helper."""
    created = []

    def _make(email: str, with_key: bool = True):
        priv, pub = keypairs[len(created) % len(keypairs)]
        user = User(email=email, password_hash="not-a-real-hash", public_key=pub if with_key else None)
        session.add(user)
        session.commit()
        session.refresh(user)
        member = SimpleNamespace(
            id=user.id,
            email=user.email,
            public_key=user.public_key,
            crypto=MessageEncryption(user.id, priv),
        )
        created.append(member)
        return member

    return _make


@pytest.fixture
def client(engine):
    from securemsg.main import app

    with TestClient(app) as c:
        yield c

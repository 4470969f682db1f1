from dotenv import load_dotenv
load_dotenv()

import os
import logging
from typing import List

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session, select

from .db import create_db_and_tables, get_session, store_errors
from .auth import auth_required, current_user, router as auth_router
from .errors import register_error_handlers
from .models import User
from .schemas import UserProfileWithKeys
from .conversations import router as conversations_router
from .messages import router as messages_router
from .keys import router as keys_router
from .contacts import router as contacts_router
from .websocket import router as ws_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Secure Messaging Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

register_error_handlers(app)


@app.on_event("startup")
def _startup():
    create_db_and_tables()


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/users", response_model=List[UserProfileWithKeys])
def list_users(user_id: int = Depends(auth_required), session: Session = Depends(get_session)):
    current_user(session, user_id)
    with store_errors(session, "list users"):
        users = session.exec(select(User).where(User.id != user_id).order_by(User.email)).all()
    return [
        UserProfileWithKeys(id=u.id, email=u.email, full_name=u.full_name, avatar_url=u.avatar_url, public_key=u.public_key)
        for u in users
    ]


app.include_router(auth_router)
app.include_router(contacts_router)
app.include_router(keys_router)
app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(ws_router)

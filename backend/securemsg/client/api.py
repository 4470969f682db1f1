import os
import logging
from typing import Dict, List, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

BASE = os.getenv("CHAT_API_BASE", "http://127.0.0.1:8000")
TIMEOUT = float(os.getenv("CHAT_API_TIMEOUT", "10"))
READ_RETRY_ATTEMPTS = 3
READ_RETRY_BACKOFF = 0.5


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"{status_code} {code}: {message}")


class TransientApiError(ApiError):
    """A 5xx answer; reads retry on it."""


def _auth_headers(token: str):
    return {"Authorization": f"Bearer {token}"} if token else {}


def _raise_for_status(r: requests.Response):
    if r.status_code < 400:
        return
    try:
        err = r.json().get("error") or {}
        code, message = err.get("code", "HTTP_ERROR"), err.get("message", r.text)
    except ValueError:
        code, message = "HTTP_ERROR", r.text
    if r.status_code >= 500:
        raise TransientApiError(r.status_code, code, message)
    raise ApiError(r.status_code, code, message)


def _get(path: str, token: str, params: dict = None):
    """GET with bounded exponential backoff on connection errors, timeouts and 5xx."""
    for attempt in Retrying(
        stop=stop_after_attempt(READ_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=READ_RETRY_BACKOFF, max=8),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, TransientApiError)),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.info(f"client: retrying GET {path} (attempt {attempt.retry_state.attempt_number})")
            r = requests.get(f"{BASE}{path}", headers=_auth_headers(token), params=params, timeout=TIMEOUT)
            _raise_for_status(r)
            return r.json()


def _send(method: str, path: str, token: str, payload: dict = None):
    """Writes are never retried; failures surface to the caller."""
    r = requests.request(method, f"{BASE}{path}", headers=_auth_headers(token), json=payload, timeout=TIMEOUT)
    _raise_for_status(r)
    return r.json()


def register(email: str, password: str, full_name: Optional[str] = None) -> dict:
    data = _send("POST", "/auth/register", None, {"email": email, "password": password, "full_name": full_name})
    logger.info("client: register ok")
    return data


def login(email: str, password: str) -> dict:
    data = _send("POST", "/auth/login", None, {"email": email, "password": password})
    logger.info("client: login ok")
    return data


def list_users(token: str) -> List[dict]:
    return _get("/users", token)


def find_user_by_email(token: str, email: str) -> dict:
    return _get("/users/lookup", token, {"email": email})


def store_public_key(token: str, public_key: str) -> bool:
    return _send("PUT", "/keys/public", token, {"public_key": public_key})["ok"]


def list_conversations(token: str) -> List[dict]:
    """Fails open: an unreachable server gives an empty list."""
    try:
        return _get("/conversations", token)
    except (requests.RequestException, TransientApiError) as exc:
        logger.warning(f"client: could not load conversations: {exc}")
        return []


def create_conversation(token: str, participant_ids: List[int], metadata: dict = None,
                        encapsulated_keys: Optional[Dict[str, str]] = None) -> dict:
    return _send("POST", "/conversations", token, {
        "participant_ids": participant_ids,
        "metadata": metadata or {},
        "encapsulated_keys": encapsulated_keys,
    })


def get_conversation(token: str, conversation_id: int) -> dict:
    return _get(f"/conversations/{conversation_id}", token)


def list_participants(token: str, conversation_id: int) -> List[dict]:
    return _get(f"/conversations/{conversation_id}/participants", token)


def participants_with_keys(token: str, conversation_id: int) -> List[dict]:
    return _get(f"/conversations/{conversation_id}/participants/keys", token)


def add_participant(token: str, conversation_id: int, email: str) -> bool:
    return _send("POST", f"/conversations/{conversation_id}/participants", token, {"email": email})["ok"]


def session_info(token: str, conversation_id: int) -> dict:
    return _get(f"/conversations/{conversation_id}/session_info", token)


def rekey(token: str, conversation_id: int, encapsulated_keys: Dict[str, str]) -> int:
    return _send("POST", f"/conversations/{conversation_id}/rekey", token,
                 {"encapsulated_keys": encapsulated_keys})["key_version"]


def list_messages(token: str, conversation_id: int, limit: int = 50, offset: int = 0) -> List[dict]:
    return _get(f"/conversations/{conversation_id}/messages", token, {"limit": limit, "offset": offset})


def send_message(token: str, conversation_id: int, payload) -> dict:
    """`payload` is an EncryptedMessagePayload from securemsg.encryption."""
    data = _send("POST", f"/conversations/{conversation_id}/messages", token,
                 payload.to_message_in().model_dump())
    logger.info("client: message sent")
    return data


def mark_read(token: str, conversation_id: int) -> int:
    return _send("POST", f"/conversations/{conversation_id}/read", token)["marked"]


def list_contacts(token: str) -> List[dict]:
    return _get("/contacts", token)


def add_contact(token: str, contact_user_id: int) -> dict:
    return _send("POST", "/contacts", token, {"contact_user_id": contact_user_id})

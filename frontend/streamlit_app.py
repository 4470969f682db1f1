import html
import time

import requests
import streamlit as st
from websockets.exceptions import WebSocketException

from securemsg.client import FeedClient, api
from securemsg.client.live import conversation_list, message_thread
from securemsg.encryption import MessageEncryption
from securemsg.errors import DecryptionFailed

st.set_page_config(page_title="Secure Messages", layout="centered")

for key, default in (("token", ""), ("me", None), ("crypto", None), ("selected", None),
                     ("conversations", None), ("threads", {}), ("feed", None)):
    if key not in st.session_state:
        st.session_state[key] = default


def start_session(data: dict):
    st.session_state.token = data["token"]
    st.session_state.me = data
    st.session_state.crypto = MessageEncryption(data["user_id"], data.get("private_key"))
    if not data.get("private_key"):
        # no stored key: publish the session key so others can encapsulate for us
        api.store_public_key(data["token"], st.session_state.crypto.public_key)
    st.session_state.conversations = conversation_list()
    st.session_state.threads = {}
    st.session_state.feed = FeedClient(data["token"], st.session_state.conversations)


st.title("🔐 Secure Messages")

if not st.session_state.token:
    login_tab, register_tab = st.tabs(["Login", "Register"])

    with login_tab:
        email = st.text_input("Email", key="login_email")
        pw = st.text_input("Password", type="password", key="login_pass")
        if st.button("Sign in"):
            try:
                start_session(api.login(email, pw))
                st.rerun()
            except (api.ApiError, requests.RequestException) as e:
                st.error(f"Sign in failed: {e}")

    with register_tab:
        email = st.text_input("Email", key="reg_email")
        name = st.text_input("Full name", key="reg_name")
        pw = st.text_input("Password", type="password", key="reg_pass")
        if st.button("Register and sign in"):
            try:
                start_session(api.register(email, pw, name or None))
                st.rerun()
            except (api.ApiError, requests.RequestException) as e:
                st.error(f"Registration failed: {e}")

    st.stop()

token = st.session_state.token
me = st.session_state.me
crypto: MessageEncryption = st.session_state.crypto
conversations = st.session_state.conversations
feed: FeedClient = st.session_state.feed

# seconds between reruns while the live feed is connected
LIVE_REFRESH_SECONDS = 2


def conversation_title(conv: dict) -> str:
    meta = conv.get("metadata") or {}
    return meta.get("name") or f"Conversation {conv['id']}"


def establish_key(conversation_id: int):
    members = api.participants_with_keys(token, conversation_id)
    _, keys = crypto.establish_conversation_key({m["id"]: m.get("public_key") for m in members})
    return api.rekey(token, conversation_id, keys)


WRITE_ERRORS = (api.ApiError, requests.RequestException, ValueError)
failures = []


def report(message: str, area=st):
    area.error(message)
    failures.append(message)


def keep_live():
    """Reruns periodically so pushed changes get drained and rendered. A run that reported a failure stays put."""
    if failures:
        return
    if feed is not None and feed.connected:
        time.sleep(LIVE_REFRESH_SECONDS)
        st.rerun()


# Live feed: connect once, then apply whatever was pushed since the last run
if feed is not None:
    try:
        feed.start()
    except (WebSocketException, OSError) as e:
        st.sidebar.warning(f"Live updates unavailable, use Refresh ({e}).")
    feed.drain()

# Sidebar: conversation list and new conversation
st.sidebar.markdown(f"**Signed in as {me['email']}**")
if not len(conversations) or feed is None or not feed.connected:
    conversations.extend(api.list_conversations(token))

with st.sidebar.expander("New conversation"):
    emails = st.text_input("Participant emails (comma separated)", key="new_conv_emails")
    title = st.text_input("Name", key="new_conv_name")
    if st.button("Create"):
        try:
            people = [api.find_user_by_email(token, e.strip()) for e in emails.split(",") if e.strip()]
            _, keys = crypto.establish_conversation_key({p["id"]: p.get("public_key") for p in people})
            conv = api.create_conversation(
                token,
                [p["id"] for p in people],
                {"name": title or ", ".join(p["email"] for p in people)},
                keys,
            )
            conversations.upsert(conv)
            st.session_state.selected = conv["id"]
            st.rerun()
        except WRITE_ERRORS as e:
            report(f"Could not create the conversation: {e}", st.sidebar)

st.sidebar.subheader("Conversations")
if not len(conversations):
    st.sidebar.info("No conversations yet.")
for conv in conversations:
    meta = conv.get("metadata") or {}
    label = conversation_title(conv)
    if meta.get("lastMessage"):
        label += f" · {meta['lastMessage']}"
    if st.sidebar.button(label, key=f"conv_{conv['id']}"):
        st.session_state.selected = conv["id"]

if st.sidebar.button("Sign out"):
    if feed is not None:
        feed.stop()
    st.session_state.clear()
    st.rerun()

selected = st.session_state.selected
if not selected or selected not in conversations:
    if feed is not None:
        feed.close()
    st.info("Select a conversation or start a new one.")
    keep_live()
    st.stop()

conv = conversations.get(selected)
st.subheader(conversation_title(conv))

with st.expander("Add participant"):
    new_email = st.text_input("Email", key="add_participant_email")
    if st.button("Add"):
        try:
            api.add_participant(token, selected, new_email)
            version = establish_key(selected)
            st.success(f"Participant added, conversation rekeyed (key version {version}).")
        except WRITE_ERRORS as e:
            report(f"Could not add participant: {e}")

thread = st.session_state.threads.setdefault(selected, message_thread())
if feed is not None:
    feed.open(selected, thread)
try:
    if not len(thread) or feed is None or not feed.connected:
        thread.extend(api.list_messages(token, selected))
    unread = [
        m for m in thread
        if m["sender_id"] != me["user_id"] and me["user_id"] not in ((m.get("metadata") or {}).get("readBy") or [])
    ]
    if unread:
        api.mark_read(token, selected)
except (api.ApiError, requests.RequestException) as e:
    report(f"Could not load messages: {e}")

for m in thread:
    is_me = m["sender_id"] == me["user_id"]
    try:
        text = crypto.decrypt_message(m)
        style = ""
    except DecryptionFailed as e:
        text = f"⚠️ could not decrypt this message ({e.message})"
        style = "font-style:italic; opacity:0.7;"
    align = "flex-end" if is_me else "flex-start"
    bg = "#4CAF50" if is_me else "#1E1E1E"
    sender = "You" if is_me else f"User {m['sender_id']}"
    st.markdown(
        f"""
        <div style="display:flex; justify-content:{align}; margin:6px 0;">
            <div style="max-width:70%; padding:10px 14px; background:{bg};
                        border-radius:8px; color:#FFFFFF; {style}">
                <div style="font-size:12px; opacity:0.8;">
                    {sender} · <em>{m['created_at']}</em>
                </div>
                <div style="margin-top:4px; white-space:pre-wrap;">{html.escape(text)}</div>
            </div>
        </div>
        """,
        unsafe_allow_html=True
    )

st.divider()
msg = st.text_area("Message", height=100, key="message_draft")
col_send, col_refresh = st.columns(2)
if col_send.button("Send", key="send"):
    if not msg.strip():
        st.warning("Type a message.")
    else:
        try:
            info = api.session_info(token, selected)
            if not info.get("encapsulated_key"):
                establish_key(selected)
                info = api.session_info(token, selected)
            content_key = crypto.unwrap_key(info["encapsulated_key"])
            payload = crypto.encrypt_message(msg.strip(), selected, content_key, info["key_version"])
            thread.upsert(api.send_message(token, selected, payload))
            st.rerun()
        except WRITE_ERRORS + (DecryptionFailed,) as e:
            report(f"Failed to send message: {e}")
if col_refresh.button("Refresh"):
    # the next run refetches an empty thread
    thread.reset()
    st.rerun()

keep_live()
